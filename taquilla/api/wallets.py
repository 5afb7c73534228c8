"""
Wallet API endpoints.

Balance and history for the signed-in user, staff top-ups and the ledger
integrity report.
"""
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from taquilla.api.deps import get_current_user_context
from taquilla.api.permissions import can_manage_finances
from taquilla.db import models, schemas
from taquilla.db.database import get_db
from taquilla.db.repositories import tickets as ticket_repo
from taquilla.db.repositories import users as user_repo
from taquilla.db.repositories import wallets as wallet_repo
from taquilla.services import wallet_service
from taquilla.utils.money import from_cents

router = APIRouter(prefix="/wallets", tags=["wallets"])


def _tx_out(tx: models.WalletTransaction) -> schemas.WalletTransaction:
    # Ledger stores cents; the API speaks decimal currency units
    return schemas.WalletTransaction(
        id=tx.id,
        wallet_id=tx.wallet_id,
        transaction_type=tx.transaction_type,
        amount=from_cents(tx.amount_cents),
        balance_after=from_cents(tx.balance_after_cents),
        reference_type=tx.reference_type,
        reference_id=tx.reference_id,
        description=tx.description,
        event_id=tx.event_id,
        sequence_number=tx.sequence_number,
        metadata=tx.get_metadata() or None,
        created_at=tx.created_at,
    )


def _finance_event(db: Session, event_id: Optional[uuid.UUID]):
    if event_id is None:
        return None
    event = ticket_repo.get_event(db, event_id)
    if event is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Event not found")
    return event


def _require_finance_access(current_user, owner: models.User, event) -> None:
    if not can_manage_finances(current_user, event):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")
    # Org-wide staff only reach wallets of their own organization's users
    if event is None and not current_user.get("is_superadmin"):
        if owner is None or owner.organization_id != current_user.get("organization_id"):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")


@router.get("/me", response_model=schemas.WalletBalance)
def get_my_wallet(
    event_id: Optional[uuid.UUID] = None,
    db: Session = Depends(get_db),
    user_context=Depends(get_current_user_context),
):
    user, _ = user_context
    wallet = wallet_service.get_or_create_wallet(db, user.id, event_id)
    return schemas.WalletBalance(
        wallet_id=wallet.id,
        user_id=wallet.user_id,
        event_id=wallet.event_id,
        balance=from_cents(wallet_repo.read_balance(db, wallet.id)),
    )


@router.get("/me/transactions", response_model=schemas.WalletTransactionList)
def list_my_transactions(
    event_id: Optional[uuid.UUID] = None,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    user_context=Depends(get_current_user_context),
):
    user, _ = user_context
    items = wallet_service.list_transactions(db, user.id, limit=limit, offset=offset, event_id=event_id)
    return schemas.WalletTransactionList(items=[_tx_out(tx) for tx in items], limit=limit, offset=offset)


@router.get("/me/transactions/{transaction_id}", response_model=schemas.WalletTransaction)
def get_my_transaction(
    transaction_id: uuid.UUID,
    db: Session = Depends(get_db),
    user_context=Depends(get_current_user_context),
):
    user, _ = user_context
    return _tx_out(wallet_service.get_transaction(db, transaction_id, user.id))


@router.post("/{user_id}/credit", response_model=schemas.WalletTransaction, status_code=status.HTTP_201_CREATED)
def credit_wallet(
    user_id: uuid.UUID,
    payload: schemas.WalletCreditRequest,
    db: Session = Depends(get_db),
    user_context=Depends(get_current_user_context),
):
    user, current_user = user_context
    target = user_repo.get_user(db, user_id)
    if target is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    _require_finance_access(current_user, target, _finance_event(db, payload.event_id))

    tx = wallet_service.credit(
        db,
        user_id,
        payload.amount,
        wallet_service.Reference(
            type=payload.reference_type,
            id=payload.reference_id,
            description=payload.description,
            event_id=payload.event_id,
        ),
        idempotency_key=payload.idempotency_key,
        event_id=payload.event_id,
        actor_id=user.id,
    )
    return _tx_out(tx)


@router.get("/{wallet_id}/integrity", response_model=schemas.LedgerIntegrityReport)
def check_wallet_integrity(
    wallet_id: uuid.UUID,
    db: Session = Depends(get_db),
    user_context=Depends(get_current_user_context),
):
    user, current_user = user_context
    wallet = wallet_repo.get_wallet(db, wallet_id)
    if wallet is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Wallet not found")
    if wallet.user_id != user.id:
        owner = user_repo.get_user(db, wallet.user_id)
        _require_finance_access(current_user, owner, _finance_event(db, wallet.event_id))

    report = wallet_service.validate_ledger_integrity(db, wallet_id)
    return schemas.LedgerIntegrityReport(
        wallet_id=report.wallet_id,
        is_valid=report.is_valid,
        calculated_balance=from_cents(report.calculated_cents),
        ledger_balance=from_cents(report.ledger_cents),
        stored_balance=from_cents(report.stored_cents),
        discrepancy=from_cents(report.discrepancy_cents),
        transaction_count=report.transaction_count,
        sequence_gaps=report.sequence_gaps,
    )
