"""
Ticket API endpoints.

Issuance, lifecycle transitions, revocation and QR rendering.
"""
import uuid
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Response, status
from sqlalchemy.orm import Session

from taquilla.api.deps import get_current_user_context
from taquilla.api.permissions import can_manage_tickets, can_scan
from taquilla.db import schemas
from taquilla.db.database import get_db
from taquilla.db.repositories import tickets as ticket_repo
from taquilla.services import qr_service, ticket_service

router = APIRouter(prefix="/tickets", tags=["tickets"])
events_router = APIRouter(prefix="/events", tags=["tickets"])


def _load_event_or_404(db: Session, event_id: uuid.UUID):
    event = ticket_repo.get_event(db, event_id)
    if event is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Event not found")
    return event


def _load_ticket_or_404(db: Session, ticket_id: uuid.UUID):
    ticket = ticket_repo.get_ticket(db, ticket_id)
    if ticket is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Ticket not found")
    return ticket


def _is_holder(ticket, user) -> bool:
    if ticket.purchaser_id is not None and ticket.purchaser_id == user.id:
        return True
    return (ticket.purchaser_email or "").lower() == (user.email or "").lower()


def _require_ticket_admin(current_user, event) -> None:
    if not can_manage_tickets(current_user, event):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")


@router.post("", response_model=List[schemas.IssuedTicketResponse], status_code=status.HTTP_201_CREATED)
def issue_tickets(
    payload: schemas.TicketIssueRequest,
    db: Session = Depends(get_db),
    user_context=Depends(get_current_user_context),
):
    user, current_user = user_context
    event = _load_event_or_404(db, payload.event_id)
    _require_ticket_admin(current_user, event)
    params = ticket_service.IssueParams(
        event_id=payload.event_id,
        ticket_type_id=payload.ticket_type_id,
        purchaser_email=payload.purchaser_email,
        purchaser_name=payload.purchaser_name,
        purchaser_id=payload.purchaser_id,
        payment_id=payload.payment_id,
    )
    return ticket_service.issue_tickets(db, params, payload.quantity, actor_id=user.id)


@router.get("/{ticket_id}", response_model=schemas.TicketResponse)
def get_ticket(
    ticket_id: uuid.UUID,
    db: Session = Depends(get_db),
    user_context=Depends(get_current_user_context),
):
    user, current_user = user_context
    ticket = _load_ticket_or_404(db, ticket_id)
    if not (_is_holder(ticket, user) or can_manage_tickets(current_user, ticket.event) or can_scan(current_user, ticket.event)):
        # Hide existence from unrelated users
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Ticket not found")
    return ticket


@router.get("/{ticket_id}/scans", response_model=List[schemas.TicketScanEntry])
def list_ticket_scans(
    ticket_id: uuid.UUID,
    db: Session = Depends(get_db),
    user_context=Depends(get_current_user_context),
):
    """Scan history of a ticket, accepted and rejected, oldest first."""
    _, current_user = user_context
    ticket = _load_ticket_or_404(db, ticket_id)
    if not (can_manage_tickets(current_user, ticket.event) or can_scan(current_user, ticket.event)):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")
    return ticket_repo.list_scans(db, ticket_id)


def _ticket_for_qr(db: Session, ticket_id: uuid.UUID, user, current_user):
    ticket = _load_ticket_or_404(db, ticket_id)
    if not (_is_holder(ticket, user) or can_manage_tickets(current_user, ticket.event)):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Ticket not found")
    if ticket.status in ("revoked", "refunded"):
        raise HTTPException(status_code=status.HTTP_410_GONE, detail=f"Ticket has been {ticket.status}")
    return ticket


@router.get("/{ticket_id}/qr.svg")
def get_ticket_qr_svg(
    ticket_id: uuid.UUID,
    db: Session = Depends(get_db),
    user_context=Depends(get_current_user_context),
):
    user, current_user = user_context
    ticket = _ticket_for_qr(db, ticket_id, user, current_user)
    return Response(
        content=qr_service.render_qr_svg(ticket.qr_signature),
        media_type="image/svg+xml",
        headers={"Cache-Control": "no-store"},
    )


@router.get("/{ticket_id}/qr")
def get_ticket_qr(
    ticket_id: uuid.UUID,
    db: Session = Depends(get_db),
    user_context=Depends(get_current_user_context),
):
    user, current_user = user_context
    ticket = _ticket_for_qr(db, ticket_id, user, current_user)
    return {
        "ticket_id": ticket.id,
        "ticket_number": ticket.ticket_number,
        "qr_signature": ticket.qr_signature,
        "data_url": qr_service.render_qr_png_data_url(ticket.qr_signature),
    }


@router.post("/{ticket_id}/transition", response_model=schemas.TicketResponse)
def transition_ticket(
    ticket_id: uuid.UUID,
    payload: schemas.TicketTransitionRequest,
    db: Session = Depends(get_db),
    user_context=Depends(get_current_user_context),
):
    user, current_user = user_context
    ticket = _load_ticket_or_404(db, ticket_id)
    _require_ticket_admin(current_user, ticket.event)
    return ticket_service.transition_ticket(
        db, ticket_id, payload.status, reason=payload.reason, actor_id=user.id
    )


@router.post("/{ticket_id}/revoke", response_model=schemas.TicketResponse)
def revoke_ticket(
    ticket_id: uuid.UUID,
    payload: schemas.TicketRevokeRequest,
    db: Session = Depends(get_db),
    user_context=Depends(get_current_user_context),
):
    user, current_user = user_context
    ticket = _load_ticket_or_404(db, ticket_id)
    _require_ticket_admin(current_user, ticket.event)
    return ticket_service.revoke_ticket(db, ticket_id, reason=payload.reason, actor_id=user.id)


@events_router.post("/{event_id}/tickets/revoke", response_model=schemas.BulkRevokeResponse)
def revoke_event_tickets(
    event_id: uuid.UUID,
    payload: schemas.TicketRevokeRequest,
    db: Session = Depends(get_db),
    user_context=Depends(get_current_user_context),
):
    user, current_user = user_context
    event = _load_event_or_404(db, event_id)
    _require_ticket_admin(current_user, event)
    revoked = ticket_service.revoke_tickets_by_event(db, event_id, reason=payload.reason, actor_id=user.id)
    return {"revoked": revoked}
