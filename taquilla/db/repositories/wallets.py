"""
Wallet and ledger repository functions.

``compare_and_swap_balance`` is the only writer of ``wallets.balance_cents``.
Ledger rows are only ever inserted.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import case, func, select, update
from sqlalchemy.orm import Session

from taquilla.db import models


def _now() -> datetime:
    return datetime.now(timezone.utc)


def get_wallet(db: Session, wallet_id: uuid.UUID) -> Optional[models.Wallet]:
    return db.get(models.Wallet, wallet_id)


def find_wallet(db: Session, *, user_id: uuid.UUID, event_id: Optional[uuid.UUID] = None) -> Optional[models.Wallet]:
    query = db.query(models.Wallet).filter(models.Wallet.user_id == user_id)
    if event_id is None:
        query = query.filter(models.Wallet.event_id.is_(None))
    else:
        query = query.filter(models.Wallet.event_id == event_id)
    return query.first()


def create_wallet(db: Session, *, user_id: uuid.UUID, event_id: Optional[uuid.UUID] = None) -> models.Wallet:
    wallet = models.Wallet(user_id=user_id, event_id=event_id, balance_cents=0, created_at=_now(), updated_at=_now())
    db.add(wallet)
    db.flush()
    return wallet


def read_balance(db: Session, wallet_id: uuid.UUID) -> int:
    """Read the balance straight from the database, bypassing the identity map."""
    return db.execute(
        select(models.Wallet.balance_cents).where(models.Wallet.id == wallet_id)
    ).scalar_one()


def compare_and_swap_balance(db: Session, *, wallet_id: uuid.UUID, expected_cents: int, new_cents: int) -> bool:
    result = db.execute(
        update(models.Wallet)
        .where(models.Wallet.id == wallet_id, models.Wallet.balance_cents == expected_cents)
        .values(balance_cents=new_cents, updated_at=_now())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def get_transaction_by_idempotency_key(db: Session, idempotency_key: str) -> Optional[models.WalletTransaction]:
    return (
        db.query(models.WalletTransaction)
        .filter(models.WalletTransaction.idempotency_key == idempotency_key)
        .first()
    )


def next_sequence_number(db: Session, wallet_id: uuid.UUID) -> int:
    current = db.execute(
        select(func.max(models.WalletTransaction.sequence_number)).where(
            models.WalletTransaction.wallet_id == wallet_id
        )
    ).scalar()
    return int(current or 0) + 1


def append_transaction(
    db: Session,
    *,
    wallet: models.Wallet,
    transaction_type: str,
    amount_cents: int,
    balance_after_cents: int,
    reference_type: str,
    reference_id: str,
    description: Optional[str] = None,
    event_id: Optional[uuid.UUID] = None,
    idempotency_key: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> models.WalletTransaction:
    tx = models.WalletTransaction(
        wallet_id=wallet.id,
        user_id=wallet.user_id,
        transaction_type=transaction_type,
        amount_cents=amount_cents,
        balance_after_cents=balance_after_cents,
        reference_type=reference_type,
        reference_id=reference_id,
        description=description,
        event_id=event_id if event_id is not None else wallet.event_id,
        idempotency_key=idempotency_key,
        sequence_number=next_sequence_number(db, wallet.id),
        metadata_json=metadata or {},
        created_at=_now(),
    )
    db.add(tx)
    db.flush()
    return tx


def list_transactions(
    db: Session,
    *,
    wallet_id: uuid.UUID,
    limit: int = 50,
    offset: int = 0,
) -> List[models.WalletTransaction]:
    return (
        db.query(models.WalletTransaction)
        .filter(models.WalletTransaction.wallet_id == wallet_id)
        .order_by(models.WalletTransaction.sequence_number.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )


def get_transaction_for_user(
    db: Session, *, transaction_id: uuid.UUID, user_id: uuid.UUID
) -> Optional[models.WalletTransaction]:
    return (
        db.query(models.WalletTransaction)
        .filter(
            models.WalletTransaction.id == transaction_id,
            models.WalletTransaction.user_id == user_id,
        )
        .first()
    )


def ledger_totals(db: Session, wallet_id: uuid.UUID) -> Tuple[int, int, int]:
    """Return ``(credits, debits, count)`` in cents for a wallet's ledger."""
    credit = case((models.WalletTransaction.transaction_type == "credit", models.WalletTransaction.amount_cents), else_=0)
    debit = case((models.WalletTransaction.transaction_type == "debit", models.WalletTransaction.amount_cents), else_=0)
    row = db.execute(
        select(func.coalesce(func.sum(credit), 0), func.coalesce(func.sum(debit), 0), func.count())
        .where(models.WalletTransaction.wallet_id == wallet_id)
    ).one()
    return int(row[0]), int(row[1]), int(row[2])


def last_transaction(db: Session, wallet_id: uuid.UUID) -> Optional[models.WalletTransaction]:
    return (
        db.query(models.WalletTransaction)
        .filter(models.WalletTransaction.wallet_id == wallet_id)
        .order_by(models.WalletTransaction.sequence_number.desc())
        .first()
    )


def sequence_numbers(db: Session, wallet_id: uuid.UUID) -> List[int]:
    rows = db.execute(
        select(models.WalletTransaction.sequence_number)
        .where(models.WalletTransaction.wallet_id == wallet_id)
        .order_by(models.WalletTransaction.sequence_number.asc())
    ).scalars().all()
    return [int(r) for r in rows]
