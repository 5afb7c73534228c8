"""
Repositories for NFC bands, binding tokens, nonces, rate limits and usage
sessions.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from taquilla.db import models


def _now() -> datetime:
    return datetime.now(timezone.utc)


# --- bands -------------------------------------------------------------------

def get_band(db: Session, band_id: uuid.UUID) -> Optional[models.NfcBand]:
    return db.get(models.NfcBand, band_id)


def get_band_by_uid(db: Session, band_uid: str) -> Optional[models.NfcBand]:
    return db.query(models.NfcBand).filter(models.NfcBand.band_uid == band_uid).first()


def list_bands_for_user(db: Session, user_id: uuid.UUID) -> List[models.NfcBand]:
    return (
        db.query(models.NfcBand)
        .filter(models.NfcBand.user_id == user_id)
        .order_by(models.NfcBand.registered_at.desc())
        .all()
    )


def create_band(
    db: Session,
    *,
    band_uid: str,
    user_id: Optional[uuid.UUID],
    event_id: Optional[uuid.UUID] = None,
    registered_by: Optional[uuid.UUID] = None,
    binding_verified_at: Optional[datetime] = None,
) -> models.NfcBand:
    band = models.NfcBand(
        band_uid=band_uid,
        user_id=user_id,
        event_id=event_id,
        registered_by=registered_by,
        status="active",
        binding_verified_at=binding_verified_at,
        concurrent_use_count=0,
        max_concurrent_uses=1,
        metadata_json={},
        registered_at=_now(),
    )
    db.add(band)
    db.flush()
    return band


def ensure_rate_limit(db: Session, band_id: uuid.UUID) -> models.NfcRateLimit:
    row = db.query(models.NfcRateLimit).filter(models.NfcRateLimit.nfc_band_id == band_id).first()
    if row is None:
        row = models.NfcRateLimit(nfc_band_id=band_id, window_start=_now(), request_count=0)
        db.add(row)
        db.flush()
    return row


def restart_rate_limit_window(
    db: Session, *, row_id: uuid.UUID, expected_window_start: datetime, now: datetime
) -> bool:
    """Open a new window counting the current request; False if another request already did."""
    result = db.execute(
        update(models.NfcRateLimit)
        .where(
            models.NfcRateLimit.id == row_id,
            models.NfcRateLimit.window_start == expected_window_start,
        )
        .values(window_start=now, request_count=1)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def increment_rate_limit(db: Session, *, row_id: uuid.UUID) -> bool:
    result = db.execute(
        update(models.NfcRateLimit)
        .where(
            models.NfcRateLimit.id == row_id,
            models.NfcRateLimit.request_count < models.NfcRateLimit.max_requests,
        )
        .values(request_count=models.NfcRateLimit.request_count + 1)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


# --- binding tokens ------------------------------------------------------------

def create_binding_token(db: Session, *, token: str, user_id: uuid.UUID, expires_at: datetime) -> models.BindingToken:
    row = models.BindingToken(token=token, user_id=user_id, expires_at=expires_at, created_at=_now())
    db.add(row)
    db.flush()
    return row


def get_binding_token(db: Session, token: str) -> Optional[models.BindingToken]:
    return db.query(models.BindingToken).filter(models.BindingToken.token == token).first()


def consume_binding_token(db: Session, *, token_id: uuid.UUID) -> bool:
    result = db.execute(
        update(models.BindingToken)
        .where(models.BindingToken.id == token_id, models.BindingToken.used_at.is_(None))
        .values(used_at=_now())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


# --- nonces --------------------------------------------------------------------

def get_nfc_nonce(db: Session, *, band_id: uuid.UUID, nonce: str) -> Optional[models.NfcNonce]:
    return (
        db.query(models.NfcNonce)
        .filter(models.NfcNonce.nfc_band_id == band_id, models.NfcNonce.nonce == nonce)
        .first()
    )


def link_nonce_transaction(db: Session, *, band_id: uuid.UUID, nonce: str, transaction_id: uuid.UUID) -> None:
    db.execute(
        update(models.NfcNonce)
        .where(models.NfcNonce.nfc_band_id == band_id, models.NfcNonce.nonce == nonce)
        .values(transaction_id=transaction_id)
        .execution_options(synchronize_session=False)
    )


# --- usage sessions --------------------------------------------------------------

def open_sessions(db: Session, band_id: uuid.UUID) -> List[models.NfcUsageSession]:
    return (
        db.query(models.NfcUsageSession)
        .filter(models.NfcUsageSession.nfc_band_id == band_id, models.NfcUsageSession.ended_at.is_(None))
        .order_by(models.NfcUsageSession.started_at.desc())
        .all()
    )


def recent_sessions(db: Session, band_id: uuid.UUID, limit: int = 5) -> List[models.NfcUsageSession]:
    return (
        db.query(models.NfcUsageSession)
        .filter(models.NfcUsageSession.nfc_band_id == band_id)
        .order_by(models.NfcUsageSession.started_at.desc())
        .limit(limit)
        .all()
    )


def get_session_by_token(db: Session, session_token: str) -> Optional[models.NfcUsageSession]:
    return (
        db.query(models.NfcUsageSession)
        .filter(models.NfcUsageSession.session_token == session_token)
        .first()
    )
