"""
Ticket issuance, lifecycle state machine and revocation.

Lifecycle::

    pending_payment -> paid | revoked
    issued          -> paid | revoked
    paid            -> used | revoked | refunded
    used            -> revoked
    revoked, refunded: terminal

A transition to the current state is accepted as a no-op.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, FrozenSet, List, Optional, Sequence

from sqlalchemy.orm import Session

from taquilla import audit
from taquilla.db import models
from taquilla.db.models import TicketStatus
from taquilla.db.repositories import tickets as ticket_repo
from taquilla.errors import (
    ConcurrencyError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from taquilla.utils import token_crypto

logger = logging.getLogger("taquilla.tickets")

MAX_TICKET_QUANTITY_PER_PURCHASE = 10
_TICKET_NUMBER_ATTEMPTS = 5

VALID_TRANSITIONS: Dict[TicketStatus, FrozenSet[TicketStatus]] = {
    TicketStatus.PENDING_PAYMENT: frozenset({TicketStatus.PAID, TicketStatus.REVOKED}),
    TicketStatus.ISSUED: frozenset({TicketStatus.PAID, TicketStatus.REVOKED}),
    TicketStatus.PAID: frozenset({TicketStatus.USED, TicketStatus.REVOKED, TicketStatus.REFUNDED}),
    TicketStatus.USED: frozenset({TicketStatus.REVOKED}),
    TicketStatus.REVOKED: frozenset(),
    TicketStatus.REFUNDED: frozenset(),
}


def _status(value) -> TicketStatus:
    try:
        return TicketStatus(value)
    except ValueError as exc:
        raise ValidationError(f"Unknown ticket status: {value}") from exc


def can_transition(from_status, to_status) -> bool:
    src, dst = _status(from_status), _status(to_status)
    if src == dst:
        return True
    return dst in VALID_TRANSITIONS[src]


def valid_transitions(from_status) -> List[TicketStatus]:
    return sorted(VALID_TRANSITIONS[_status(from_status)], key=lambda s: s.value)


def is_terminal(status) -> bool:
    return not VALID_TRANSITIONS[_status(status)]


def can_revoke_ticket(ticket: models.Ticket) -> bool:
    return can_transition(ticket.status, TicketStatus.REVOKED) and ticket.status != TicketStatus.REVOKED.value


def generate_ticket_number(now: Optional[datetime] = None) -> str:
    """``TKT-YYYYMMDD-XXXXXX`` with six random upper-case hex characters."""
    now = now or datetime.now(timezone.utc)
    return f"TKT-{now.strftime('%Y%m%d')}-{token_crypto.generate_ticket_suffix()}"


def _unique_ticket_number(db: Session) -> str:
    for _ in range(_TICKET_NUMBER_ATTEMPTS):
        candidate = generate_ticket_number()
        if not ticket_repo.ticket_number_exists(db, candidate):
            return candidate
    raise ConcurrencyError("Could not allocate a unique ticket number")


@dataclass
class IssueParams:
    event_id: uuid.UUID
    ticket_type_id: uuid.UUID
    purchaser_email: str
    purchaser_name: Optional[str] = None
    purchaser_id: Optional[uuid.UUID] = None
    payment_id: Optional[str] = None


def _issue_one(db: Session, params: IssueParams, event: models.Event, actor_id: Optional[uuid.UUID]) -> models.Ticket:
    initial = TicketStatus.PAID if params.payment_id else TicketStatus.ISSUED
    ticket = models.Ticket(
        id=uuid.uuid4(),
        ticket_number=_unique_ticket_number(db),
        ticket_type_id=params.ticket_type_id,
        event_id=event.id,
        organization_id=event.organization_id,
        purchaser_id=params.purchaser_id,
        purchaser_email=params.purchaser_email,
        purchaser_name=params.purchaser_name,
        payment_id=params.payment_id,
        status=initial.value,
        scan_count=0,
    )
    signature, payload = token_crypto.sign_qr_payload(
        ticket.id,
        event.id,
        ticket.ticket_number,
        organization_id=event.organization_id,
        ticket_type_id=params.ticket_type_id,
    )
    ticket.qr_signature = signature
    ticket.qr_payload = payload.to_claims()
    db.add(ticket)
    db.flush()
    ticket_repo.create_nonce(db, ticket_id=ticket.id, nonce=payload.nonce)
    audit.log_ticket(
        db,
        action=audit.AuditAction.TICKET_ISSUE,
        ticket_id=ticket.id,
        actor_user_id=actor_id,
        organization_id=event.organization_id,
        metadata={
            "ticket_number": ticket.ticket_number,
            "event_id": event.id,
            "status": initial.value,
            "payment_id": params.payment_id,
        },
    )
    return ticket


def issue_tickets(
    db: Session,
    params: IssueParams,
    quantity: int = 1,
    *,
    actor_id: Optional[uuid.UUID] = None,
) -> List[models.Ticket]:
    """Issue ``quantity`` tickets in a single transaction."""
    if quantity < 1 or quantity > MAX_TICKET_QUANTITY_PER_PURCHASE:
        raise ValidationError(f"Quantity must be between 1 and {MAX_TICKET_QUANTITY_PER_PURCHASE}")
    event = ticket_repo.get_event(db, params.event_id)
    if event is None:
        raise NotFoundError("Event not found")
    ticket_type = ticket_repo.get_ticket_type(db, params.ticket_type_id)
    if ticket_type is None or ticket_type.event_id != event.id:
        raise NotFoundError("Ticket type not found for this event")

    try:
        tickets = [_issue_one(db, params, event, actor_id) for _ in range(quantity)]
        db.commit()
    except Exception:
        db.rollback()
        raise
    for ticket in tickets:
        db.refresh(ticket)
    logger.info("tickets_issued event=%s type=%s count=%d", event.id, ticket_type.id, len(tickets))
    return tickets


def issue_ticket(db: Session, params: IssueParams, *, actor_id: Optional[uuid.UUID] = None) -> models.Ticket:
    return issue_tickets(db, params, 1, actor_id=actor_id)[0]


def _apply_transition(
    db: Session,
    ticket: models.Ticket,
    new_status: TicketStatus,
    reason: Optional[str],
    actor_id: Optional[uuid.UUID],
) -> bool:
    """Flush one transition; returns False for same-state no-ops."""
    current = _status(ticket.status)
    if current == new_status:
        return False
    if not can_transition(current, new_status):
        raise InvalidTransitionError(current.value, new_status.value)
    if not ticket_repo.compare_and_set_status(
        db,
        ticket_id=ticket.id,
        expected_status=current.value,
        new_status=new_status.value,
        revoked_by=actor_id,
    ):
        raise ConcurrencyError("Ticket status changed concurrently; retry")
    if new_status == TicketStatus.REVOKED:
        action = audit.AuditAction.TICKET_REVOKE
    else:
        action = audit.AuditAction.TICKET_STATE_TRANSITION
    audit.log_ticket(
        db,
        action=action,
        ticket_id=ticket.id,
        actor_user_id=actor_id,
        organization_id=ticket.organization_id,
        reason=reason,
        metadata={"from": current.value, "to": new_status.value},
    )
    return True


def transition_ticket(
    db: Session,
    ticket_id: uuid.UUID,
    new_status,
    *,
    reason: Optional[str] = None,
    actor_id: Optional[uuid.UUID] = None,
) -> models.Ticket:
    target = _status(new_status)
    ticket = ticket_repo.get_ticket(db, ticket_id)
    if ticket is None:
        raise NotFoundError("Ticket not found")
    try:
        changed = _apply_transition(db, ticket, target, reason, actor_id)
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(ticket)
    if changed:
        logger.info("ticket_transition ticket=%s to=%s", ticket.id, target.value)
    return ticket


def transition_tickets(
    db: Session,
    ticket_ids: Sequence[uuid.UUID],
    new_status,
    *,
    reason: Optional[str] = None,
    actor_id: Optional[uuid.UUID] = None,
) -> List[models.Ticket]:
    """Transition several tickets, validating every one before changing any."""
    target = _status(new_status)
    tickets = ticket_repo.list_tickets_by_ids(db, ticket_ids)
    found = {t.id for t in tickets}
    missing = [tid for tid in ticket_ids if tid not in found]
    if missing:
        raise NotFoundError(f"Tickets not found: {', '.join(str(m) for m in missing)}")
    for ticket in tickets:
        if not can_transition(ticket.status, target):
            raise InvalidTransitionError(ticket.status, target.value)
    try:
        for ticket in tickets:
            _apply_transition(db, ticket, target, reason, actor_id)
        db.commit()
    except Exception:
        db.rollback()
        raise
    for ticket in tickets:
        db.refresh(ticket)
    return tickets


def revoke_ticket(
    db: Session,
    ticket_id: uuid.UUID,
    *,
    reason: Optional[str] = None,
    actor_id: Optional[uuid.UUID] = None,
) -> models.Ticket:
    return transition_ticket(db, ticket_id, TicketStatus.REVOKED, reason=reason, actor_id=actor_id)


def _revoke_many(
    db: Session,
    tickets: Sequence[models.Ticket],
    reason: Optional[str],
    actor_id: Optional[uuid.UUID],
) -> int:
    revoked = 0
    try:
        for ticket in tickets:
            if not can_revoke_ticket(ticket):
                continue
            if _apply_transition(db, ticket, TicketStatus.REVOKED, reason, actor_id):
                revoked += 1
        db.commit()
    except Exception:
        db.rollback()
        raise
    return revoked


def revoke_tickets_by_payment(
    db: Session,
    payment_id: str,
    *,
    reason: Optional[str] = None,
    actor_id: Optional[uuid.UUID] = None,
) -> int:
    count = _revoke_many(db, ticket_repo.list_tickets_by_payment(db, payment_id), reason, actor_id)
    logger.info("tickets_revoked payment=%s count=%d", payment_id, count)
    return count


def revoke_tickets_by_event(
    db: Session,
    event_id: uuid.UUID,
    *,
    reason: Optional[str] = None,
    actor_id: Optional[uuid.UUID] = None,
) -> int:
    if ticket_repo.get_event(db, event_id) is None:
        raise NotFoundError("Event not found")
    count = _revoke_many(db, ticket_repo.list_tickets_by_event(db, event_id), reason, actor_id)
    logger.info("tickets_revoked event=%s count=%d", event_id, count)
    return count
