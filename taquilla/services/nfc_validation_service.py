"""
Request validation for NFC band taps: token plus single-use nonce, per-band
rate limit, band state and cloning heuristics.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from taquilla.db import models
from taquilla.db.models import as_utc
from taquilla.db.repositories import nfc as nfc_repo
from taquilla.errors import ValidationError
from taquilla.services import anti_cloning
from taquilla.services.nfc_binding_service import verify_security_token
from taquilla.utils import token_crypto
from taquilla.utils.feature_flags import anti_cloning_enabled
from taquilla.utils.geo import Location

logger = logging.getLogger("taquilla.nfc.validation")

REASON_NONCE_REPLAY = "Nonce already used (replay attack detected)"


@dataclass
class RateLimitStatus:
    allowed: bool
    remaining: int
    reset_at: datetime


@dataclass
class BandAccessResult:
    valid: bool
    band_id: Optional[uuid.UUID] = None
    user_id: Optional[uuid.UUID] = None
    reason: Optional[str] = None
    alerts: List[str] = field(default_factory=list)
    session_token: Optional[str] = None


def validate_nfc_token(db: Session, token: str, nonce: str) -> token_crypto.BandTokenPayload:
    """Verify the band token and burn ``nonce`` for that band."""
    nonce = (nonce or "").strip()
    if not nonce:
        raise ValidationError("Nonce is required")
    payload = verify_security_token(db, token)
    band_id = uuid.UUID(payload.band_id)
    if nfc_repo.get_nfc_nonce(db, band_id=band_id, nonce=nonce) is not None:
        raise ValidationError(REASON_NONCE_REPLAY)
    db.add(models.NfcNonce(nfc_band_id=band_id, nonce=nonce, used_at=datetime.now(timezone.utc)))
    try:
        db.flush()
    except IntegrityError as exc:
        # Lost the race against a concurrent request carrying the same nonce
        db.rollback()
        raise ValidationError(REASON_NONCE_REPLAY) from exc
    return payload


def check_rate_limit(db: Session, band_id: uuid.UUID, now: Optional[datetime] = None) -> RateLimitStatus:
    now = as_utc(now) or datetime.now(timezone.utc)
    row = nfc_repo.ensure_rate_limit(db, band_id)
    window = timedelta(seconds=row.window_duration_seconds)
    window_end = as_utc(row.window_start) + window

    if now > window_end and nfc_repo.restart_rate_limit_window(
        db, row_id=row.id, expected_window_start=row.window_start, now=now
    ):
        db.refresh(row)
        return RateLimitStatus(True, row.max_requests - 1, now + window)

    # Increment is bounded by max_requests in the UPDATE itself
    admitted = nfc_repo.increment_rate_limit(db, row_id=row.id)
    db.refresh(row)
    window_end = as_utc(row.window_start) + window
    if not admitted:
        return RateLimitStatus(False, 0, window_end)
    return RateLimitStatus(True, row.max_requests - row.request_count, window_end)


def validate_band_access(
    db: Session,
    band_id: uuid.UUID,
    event_id: Optional[uuid.UUID],
    location: Optional[Location] = None,
    now: Optional[datetime] = None,
) -> BandAccessResult:
    band = nfc_repo.get_band(db, band_id)
    if band is None:
        return BandAccessResult(False, reason="NFC band not found")
    if band.status != "active":
        return BandAccessResult(False, band.id, band.user_id, reason=f"NFC band is {band.status}")
    if band.binding_verified_at is None:
        return BandAccessResult(False, band.id, band.user_id, reason="NFC band binding not verified")
    if band.event_id is not None and band.event_id != event_id:
        return BandAccessResult(False, band.id, band.user_id, reason="NFC band not valid for this event")

    if location is not None and anti_cloning_enabled():
        verdict = anti_cloning.detect_cloning(db, band, location, now)
        if verdict.is_cloned:
            if verdict.confidence == "high":
                anti_cloning.handle_cloning_alert(db, band, verdict)
            return BandAccessResult(
                False, band.id, band.user_id, reason=verdict.reason or "Cloning detected", alerts=verdict.alerts
            )

    session_token = None
    if location is not None:
        session_token = anti_cloning.start_usage_session(db, band, location, now).session_token
    return BandAccessResult(True, band.id, band.user_id, session_token=session_token)


def validate_nfc_request(
    db: Session,
    token: str,
    nonce: str,
    event_id: Optional[uuid.UUID],
    location: Optional[Location] = None,
    *,
    commit: bool = True,
) -> BandAccessResult:
    """Token and nonce, then rate limit, then band access.

    Domain validation failures become an invalid result; the burned nonce and
    any cloning alert are kept.
    """
    try:
        payload = validate_nfc_token(db, token, nonce)
        band_id = uuid.UUID(payload.band_id)
        limit = check_rate_limit(db, band_id)
        if not limit.allowed:
            result = BandAccessResult(False, band_id, uuid.UUID(payload.user_id), reason="Rate limit exceeded")
        else:
            result = validate_band_access(db, band_id, event_id, location)
    except ValidationError as exc:
        logger.info("nfc_request_rejected reason=%s", exc.message)
        result = BandAccessResult(False, reason=exc.message)
    if commit:
        db.commit()
    return result
