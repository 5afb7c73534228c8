"""Cashless payments authorised by an NFC band tap."""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Session

from taquilla import audit
from taquilla.db import models
from taquilla.db.repositories import nfc as nfc_repo
from taquilla.db.repositories import wallets as wallet_repo
from taquilla.errors import AuthorizationError, NotFoundError, ValidationError
from taquilla.services import anti_cloning, nfc_validation_service, wallet_service
from taquilla.utils.feature_flags import nfc_payments_enabled
from taquilla.utils.geo import Location
from taquilla.utils.money import from_cents, to_cents

logger = logging.getLogger("taquilla.nfc.payments")


@dataclass
class PaymentResult:
    transaction_id: uuid.UUID
    wallet_transaction_id: uuid.UUID
    new_balance: Decimal


def payment_idempotency_key(band_id: uuid.UUID, nonce: str) -> str:
    return f"nfc_payment_{band_id}_{nonce}"


def process_nfc_payment(
    db: Session,
    band_uid: str,
    amount,
    event_id: uuid.UUID,
    *,
    token: Optional[str] = None,
    nonce: Optional[str] = None,
    location: Optional[Location] = None,
    description: Optional[str] = None,
    operator_id: Optional[uuid.UUID] = None,
) -> PaymentResult:
    """Debit the band owner's wallet for ``amount``.

    With ``token`` and ``nonce`` the tap goes through full request
    validation first and the nonce doubles as the idempotency key, so a
    retried terminal request cannot charge twice.
    """
    if not nfc_payments_enabled():
        raise AuthorizationError("NFC payments are disabled")
    cents = to_cents(amount)
    if cents <= 0:
        raise ValidationError("Amount must be greater than zero")

    band = nfc_repo.get_band_by_uid(db, (band_uid or "").strip())
    if band is None:
        raise NotFoundError("NFC band not found")
    if band.status != "active":
        raise ValidationError(f"NFC band is {band.status}")
    if band.user_id is None:
        raise ValidationError("NFC band is not bound to a user")

    session_token = None
    idempotency_key = None
    if token and nonce:
        idempotency_key = payment_idempotency_key(band.id, nonce)
        existing = wallet_repo.get_transaction_by_idempotency_key(db, idempotency_key)
        if existing is not None:
            nfc_tx = db.query(models.NfcTransaction).filter(
                models.NfcTransaction.wallet_transaction_id == existing.id
            ).first()
            if nfc_tx is not None:
                return PaymentResult(nfc_tx.id, existing.id, from_cents(existing.balance_after_cents))
        access = nfc_validation_service.validate_nfc_request(db, token, nonce, event_id, location)
        if not access.valid:
            raise ValidationError(access.reason or "NFC validation failed")
        if access.band_id != band.id:
            raise ValidationError("NFC token does not belong to this band")
        session_token = access.session_token
    elif token or nonce:
        raise ValidationError("Both token and nonce are required")

    user_id = band.user_id
    band_id = band.id
    try:
        wallet_tx = wallet_service.debit(
            db,
            user_id,
            from_cents(cents),
            wallet_service.Reference(
                type="purchase",
                id=str(band_id),
                description=description or "NFC payment",
                event_id=event_id,
                metadata={"band_uid": band.band_uid, "operator_id": str(operator_id) if operator_id else None},
            ),
            idempotency_key=idempotency_key,
            actor_id=operator_id,
            commit=False,
        )
        nfc_tx = models.NfcTransaction(
            nfc_band_id=band_id,
            user_id=user_id,
            event_id=event_id,
            transaction_type="payment",
            amount_cents=cents,
            wallet_transaction_id=wallet_tx.id,
        )
        db.add(nfc_tx)
        db.flush()
        if nonce:
            nfc_repo.link_nonce_transaction(db, band_id=band_id, nonce=nonce, transaction_id=nfc_tx.id)
        band.last_used_at = datetime.now(timezone.utc)
        if session_token:
            session = anti_cloning.end_usage_session(db, session_token, band_id=band_id)
            session.transaction_count = (session.transaction_count or 0) + 1
        audit.log_band(
            db,
            action=audit.AuditAction.NFC_PAYMENT,
            band_id=band_id,
            actor_user_id=operator_id,
            metadata={"nfc_transaction_id": nfc_tx.id, "amount": from_cents(cents), "event_id": event_id},
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info("nfc_payment band=%s amount_cents=%d", band_id, cents)
    return PaymentResult(
        transaction_id=nfc_tx.id,
        wallet_transaction_id=wallet_tx.id,
        new_balance=from_cents(wallet_tx.balance_after_cents),
    )
