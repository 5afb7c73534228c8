"""
Repositories for tickets, their QR nonces and scan records.

Scan-time writes are conditional updates: a nonce is consumed only while
``scan_id IS NULL`` and ``scan_count`` is bumped only from the value the
caller read, so two gates racing on one ticket cannot both admit it.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import List, Optional, Sequence

from sqlalchemy import update
from sqlalchemy.orm import Session

from taquilla.db import models


def _now() -> datetime:
    return datetime.now(timezone.utc)


def get_event(db: Session, event_id: uuid.UUID) -> Optional[models.Event]:
    return db.get(models.Event, event_id)


def get_ticket_type(db: Session, ticket_type_id: uuid.UUID) -> Optional[models.TicketType]:
    return db.get(models.TicketType, ticket_type_id)


def get_ticket(db: Session, ticket_id: uuid.UUID) -> Optional[models.Ticket]:
    return db.get(models.Ticket, ticket_id)


def get_ticket_by_signature(db: Session, *, ticket_id: uuid.UUID, qr_signature: str) -> Optional[models.Ticket]:
    return (
        db.query(models.Ticket)
        .filter(models.Ticket.id == ticket_id, models.Ticket.qr_signature == qr_signature)
        .first()
    )


def list_tickets_by_ids(db: Session, ticket_ids: Sequence[uuid.UUID]) -> List[models.Ticket]:
    if not ticket_ids:
        return []
    return db.query(models.Ticket).filter(models.Ticket.id.in_(list(ticket_ids))).all()


def list_tickets_by_payment(db: Session, payment_id: str) -> List[models.Ticket]:
    return db.query(models.Ticket).filter(models.Ticket.payment_id == payment_id).all()


def list_tickets_by_event(db: Session, event_id: uuid.UUID) -> List[models.Ticket]:
    return db.query(models.Ticket).filter(models.Ticket.event_id == event_id).all()


def ticket_number_exists(db: Session, ticket_number: str) -> bool:
    return (
        db.query(models.Ticket.id).filter(models.Ticket.ticket_number == ticket_number).first()
        is not None
    )


def create_nonce(db: Session, *, ticket_id: uuid.UUID, nonce: str) -> models.TicketNonce:
    row = models.TicketNonce(ticket_id=ticket_id, nonce=nonce, created_at=_now())
    db.add(row)
    db.flush()
    return row


def get_nonce(db: Session, *, ticket_id: uuid.UUID, nonce: str) -> Optional[models.TicketNonce]:
    return (
        db.query(models.TicketNonce)
        .filter(models.TicketNonce.ticket_id == ticket_id, models.TicketNonce.nonce == nonce)
        .first()
    )


def consume_nonce(
    db: Session,
    *,
    ticket_id: uuid.UUID,
    nonce: str,
    scan_id: uuid.UUID,
    used_at: Optional[datetime] = None,
) -> bool:
    """Mark the nonce as used by ``scan_id``; False when it was already consumed."""
    result = db.execute(
        update(models.TicketNonce)
        .where(
            models.TicketNonce.ticket_id == ticket_id,
            models.TicketNonce.nonce == nonce,
            models.TicketNonce.scan_id.is_(None),
        )
        .values(scan_id=scan_id, used_at=used_at or _now())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def increment_scan_count(
    db: Session,
    *,
    ticket_id: uuid.UUID,
    expected_count: int,
    scanned_at: datetime,
    first_scan: bool,
) -> bool:
    values = {
        "scan_count": expected_count + 1,
        "last_scan_at": scanned_at,
        "updated_at": _now(),
    }
    if first_scan:
        values["first_scan_at"] = scanned_at
    result = db.execute(
        update(models.Ticket)
        .where(models.Ticket.id == ticket_id, models.Ticket.scan_count == expected_count)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def compare_and_set_status(
    db: Session,
    *,
    ticket_id: uuid.UUID,
    expected_status: str,
    new_status: str,
    revoked_by: Optional[uuid.UUID] = None,
) -> bool:
    values = {"status": new_status, "updated_at": _now()}
    if new_status == models.TicketStatus.REVOKED.value:
        values["revoked_at"] = _now()
        values["revoked_by"] = revoked_by
    result = db.execute(
        update(models.Ticket)
        .where(models.Ticket.id == ticket_id, models.Ticket.status == expected_status)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def create_scan(
    db: Session,
    *,
    ticket_id: uuid.UUID,
    scanned_by: Optional[uuid.UUID],
    is_valid: bool,
    rejection_reason: Optional[str] = None,
    scan_location: Optional[str] = None,
    scan_method: str = "qr",
    scanned_at: Optional[datetime] = None,
) -> models.TicketScan:
    scan = models.TicketScan(
        ticket_id=ticket_id,
        scanned_by=scanned_by,
        is_valid=is_valid,
        rejection_reason=rejection_reason,
        scan_location=scan_location,
        scan_method=scan_method,
        scanned_at=scanned_at or _now(),
    )
    db.add(scan)
    db.flush()
    return scan


def list_scans(db: Session, ticket_id: uuid.UUID) -> List[models.TicketScan]:
    return (
        db.query(models.TicketScan)
        .filter(models.TicketScan.ticket_id == ticket_id)
        .order_by(models.TicketScan.scanned_at.asc())
        .all()
    )


def get_active_usage_rules(db: Session, ticket_type_id: uuid.UUID) -> List[models.TicketUsageRule]:
    return (
        db.query(models.TicketUsageRule)
        .filter(
            models.TicketUsageRule.ticket_type_id == ticket_type_id,
            models.TicketUsageRule.is_active.is_(True),
        )
        .order_by(models.TicketUsageRule.priority.desc())
        .all()
    )
