"""
Wallet balances and the append-only ledger.

Balance mutation protocol (credit and debit):

1. reject non-positive amounts;
2. an existing ``idempotency_key`` returns the stored transaction unchanged;
3. read the balance, compute the new one (debits never go below zero);
4. ``UPDATE wallets SET balance = new WHERE id = ? AND balance = previous``;
   zero rows means another writer got there first, so re-read and retry;
5. append the ledger row with the next per-wallet sequence number and the
   resulting ``balance_after``.

Steps 4 and 5 share one transaction.
"""
from __future__ import annotations

import logging
import os
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from taquilla import audit
from taquilla.db import models
from taquilla.db.models import CREDIT_REFERENCE_TYPES, DEBIT_REFERENCE_TYPES
from taquilla.db.repositories import wallets as wallet_repo
from taquilla.errors import ConcurrencyError, ConflictError, NotFoundError, ValidationError
from taquilla.utils.money import Amount, from_cents, to_cents

logger = logging.getLogger("taquilla.wallets")


def _max_attempts() -> int:
    try:
        return max(1, int(os.getenv("WALLET_CAS_MAX_ATTEMPTS", "3")))
    except ValueError:
        return 3


@dataclass
class Reference:
    type: str
    id: str
    description: Optional[str] = None
    event_id: Optional[uuid.UUID] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class IntegrityReport:
    wallet_id: uuid.UUID
    is_valid: bool
    calculated_cents: int
    ledger_cents: int
    stored_cents: int
    transaction_count: int
    sequence_gaps: List[int]

    @property
    def discrepancy_cents(self) -> int:
        return self.stored_cents - self.calculated_cents


def get_or_create_wallet(db: Session, user_id: uuid.UUID, event_id: Optional[uuid.UUID] = None) -> models.Wallet:
    wallet = wallet_repo.find_wallet(db, user_id=user_id, event_id=event_id)
    if wallet is not None:
        return wallet
    try:
        wallet = wallet_repo.create_wallet(db, user_id=user_id, event_id=event_id)
        db.commit()
    except IntegrityError:
        # Created concurrently
        db.rollback()
        wallet = wallet_repo.find_wallet(db, user_id=user_id, event_id=event_id)
        if wallet is None:
            raise
    return wallet


def get_balance(db: Session, user_id: uuid.UUID, event_id: Optional[uuid.UUID] = None) -> Decimal:
    wallet = get_or_create_wallet(db, user_id, event_id)
    return from_cents(wallet_repo.read_balance(db, wallet.id))


def _positive_cents(amount: Amount) -> int:
    cents = to_cents(amount)
    if cents <= 0:
        raise ValidationError("Amount must be greater than zero")
    return cents


def _apply(
    db: Session,
    *,
    wallet: models.Wallet,
    transaction_type: str,
    cents: int,
    reference: Reference,
    idempotency_key: Optional[str],
    actor_id: Optional[uuid.UUID],
    commit: bool,
) -> models.WalletTransaction:
    attempts = _max_attempts()
    try:
        for attempt in range(1, attempts + 1):
            previous = wallet_repo.read_balance(db, wallet.id)
            if transaction_type == "debit":
                if previous < cents:
                    raise ValidationError(
                        "Insufficient balance",
                        details={"balance": str(from_cents(previous)), "requested": str(from_cents(cents))},
                    )
                new_balance = previous - cents
            else:
                new_balance = previous + cents
            if wallet_repo.compare_and_swap_balance(
                db, wallet_id=wallet.id, expected_cents=previous, new_cents=new_balance
            ):
                break
            logger.info("wallet_cas_conflict wallet=%s attempt=%d", wallet.id, attempt)
        else:
            raise ConcurrencyError("Wallet balance changed concurrently; retry the operation")

        tx = wallet_repo.append_transaction(
            db,
            wallet=wallet,
            transaction_type=transaction_type,
            amount_cents=cents,
            balance_after_cents=new_balance,
            reference_type=reference.type,
            reference_id=reference.id,
            description=reference.description,
            event_id=reference.event_id,
            idempotency_key=idempotency_key,
            metadata=reference.metadata,
        )
        audit.log_wallet(
            db,
            action=audit.AuditAction.WALLET_CREDIT if transaction_type == "credit" else audit.AuditAction.WALLET_DEBIT,
            wallet_id=wallet.id,
            actor_user_id=actor_id,
            metadata={
                "transaction_id": tx.id,
                "amount": from_cents(cents),
                "balance_after": from_cents(new_balance),
                "reference_type": reference.type,
                "reference_id": reference.id,
            },
        )
        if commit:
            db.commit()
    except IntegrityError as exc:
        db.rollback()
        if idempotency_key:
            existing = wallet_repo.get_transaction_by_idempotency_key(db, idempotency_key)
            if existing is not None:
                return existing
        raise ConflictError("Ledger write conflicted with a concurrent transaction") from exc
    except Exception:
        db.rollback()
        raise

    logger.info(
        "wallet_%s wallet=%s amount_cents=%d balance_after_cents=%d",
        transaction_type,
        wallet.id,
        cents,
        new_balance,
    )
    return tx


def credit(
    db: Session,
    user_id: uuid.UUID,
    amount: Amount,
    reference: Reference,
    *,
    idempotency_key: Optional[str] = None,
    event_id: Optional[uuid.UUID] = None,
    actor_id: Optional[uuid.UUID] = None,
    commit: bool = True,
) -> models.WalletTransaction:
    if reference.type not in CREDIT_REFERENCE_TYPES:
        raise ValidationError(f"Invalid credit reference type: {reference.type}")
    cents = _positive_cents(amount)
    if idempotency_key:
        existing = wallet_repo.get_transaction_by_idempotency_key(db, idempotency_key)
        if existing is not None:
            return existing
    wallet = get_or_create_wallet(db, user_id, event_id)
    return _apply(
        db,
        wallet=wallet,
        transaction_type="credit",
        cents=cents,
        reference=reference,
        idempotency_key=idempotency_key,
        actor_id=actor_id,
        commit=commit,
    )


def debit(
    db: Session,
    user_id: uuid.UUID,
    amount: Amount,
    reference: Reference,
    *,
    idempotency_key: Optional[str] = None,
    event_id: Optional[uuid.UUID] = None,
    actor_id: Optional[uuid.UUID] = None,
    commit: bool = True,
) -> models.WalletTransaction:
    if reference.type not in DEBIT_REFERENCE_TYPES:
        raise ValidationError(f"Invalid debit reference type: {reference.type}")
    cents = _positive_cents(amount)
    if idempotency_key:
        existing = wallet_repo.get_transaction_by_idempotency_key(db, idempotency_key)
        if existing is not None:
            return existing
    wallet = wallet_repo.find_wallet(db, user_id=user_id, event_id=event_id)
    if wallet is None:
        raise NotFoundError("Wallet not found")
    return _apply(
        db,
        wallet=wallet,
        transaction_type="debit",
        cents=cents,
        reference=reference,
        idempotency_key=idempotency_key,
        actor_id=actor_id,
        commit=commit,
    )


def list_transactions(
    db: Session,
    user_id: uuid.UUID,
    *,
    limit: int = 50,
    offset: int = 0,
    event_id: Optional[uuid.UUID] = None,
) -> List[models.WalletTransaction]:
    wallet = wallet_repo.find_wallet(db, user_id=user_id, event_id=event_id)
    if wallet is None:
        return []
    return wallet_repo.list_transactions(db, wallet_id=wallet.id, limit=limit, offset=offset)


def get_transaction(db: Session, transaction_id: uuid.UUID, user_id: uuid.UUID) -> models.WalletTransaction:
    tx = wallet_repo.get_transaction_for_user(db, transaction_id=transaction_id, user_id=user_id)
    if tx is None:
        raise NotFoundError("Transaction not found")
    return tx


def check_sequence_gaps(db: Session, wallet_id: uuid.UUID) -> List[int]:
    """Return the sequence numbers missing between 1 and the highest one."""
    seen = wallet_repo.sequence_numbers(db, wallet_id)
    if not seen:
        return []
    present = set(seen)
    return [n for n in range(1, seen[-1] + 1) if n not in present]


def validate_ledger_integrity(db: Session, wallet_id: uuid.UUID) -> IntegrityReport:
    wallet = wallet_repo.get_wallet(db, wallet_id)
    if wallet is None:
        raise NotFoundError("Wallet not found")
    credits, debits, count = wallet_repo.ledger_totals(db, wallet_id)
    last = wallet_repo.last_transaction(db, wallet_id)
    calculated = credits - debits
    ledger_balance = last.balance_after_cents if last is not None else 0
    stored = wallet_repo.read_balance(db, wallet_id)
    gaps = check_sequence_gaps(db, wallet_id)
    is_valid = calculated == ledger_balance == stored and not gaps
    if not is_valid:
        logger.error(
            "wallet_ledger_mismatch wallet=%s calculated=%d ledger=%d stored=%d gaps=%s",
            wallet_id,
            calculated,
            ledger_balance,
            stored,
            gaps,
        )
    return IntegrityReport(
        wallet_id=wallet_id,
        is_valid=is_valid,
        calculated_cents=calculated,
        ledger_cents=ledger_balance,
        stored_cents=stored,
        transaction_count=count,
        sequence_gaps=gaps,
    )
