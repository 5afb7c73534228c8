"""
NFC band binding and band security tokens.

Binding flow:

1. ``prepare_binding`` hands the signed-in user a five minute, single-use
   binding token.
2. The client writes the 38-byte binding payload to the band, optionally
   asking ``sign_binding_payload_for_user`` for its HMAC signature.
3. ``complete_binding`` consumes the token (compare-and-swap on
   ``used_at IS NULL``), binds or registers the band and issues a 24h
   security token stored on the band.
"""
from __future__ import annotations

import logging
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from taquilla import audit
from taquilla.db import models
from taquilla.db.models import as_utc
from taquilla.db.repositories import nfc as nfc_repo
from taquilla.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from taquilla.utils import token_crypto

logger = logging.getLogger("taquilla.nfc.binding")

BAND_STATUSES = ("active", "lost", "deactivated")


@dataclass
class BindingTokenIssued:
    token: str
    expires_at: datetime

    @property
    def expires_in(self) -> int:
        return token_crypto.BINDING_TOKEN_TTL_SECONDS


@dataclass
class SignedBindingPayload:
    version: int
    flags: int
    token: str
    expires_at: int
    signature: str


def _now() -> datetime:
    return datetime.now(timezone.utc)


def prepare_binding(db: Session, user: models.User) -> BindingTokenIssued:
    token = token_crypto.generate_binding_token()
    expires_at = _now() + timedelta(seconds=token_crypto.BINDING_TOKEN_TTL_SECONDS)
    row = nfc_repo.create_binding_token(db, token=token, user_id=user.id, expires_at=expires_at)
    audit.log(
        db,
        action=audit.AuditAction.NFC_BINDING_PREPARED,
        target_type="binding_token",
        target_id=row.id,
        actor_user_id=user.id,
        organization_id=user.organization_id,
    )
    db.commit()
    return BindingTokenIssued(token=token, expires_at=expires_at)


def load_binding_token(db: Session, token: str, user: models.User) -> models.BindingToken:
    row = nfc_repo.get_binding_token(db, token)
    if row is None:
        raise ValidationError("Invalid or expired binding token")
    if as_utc(row.expires_at) < _now():
        raise ValidationError("Binding token expired")
    if row.used_at is not None:
        raise ValidationError("Binding token already used")
    if row.user_id != user.id:
        raise AuthorizationError("Binding token does not belong to current user")
    return row


def sign_binding_payload_for_user(db: Session, token: str, user: models.User) -> SignedBindingPayload:
    row = load_binding_token(db, token, user)
    expires = int(as_utc(row.expires_at).timestamp())
    signature = token_crypto.sign_binding_payload(token, expires)
    return SignedBindingPayload(
        version=token_crypto.BINDING_PAYLOAD_VERSION,
        flags=0,
        token=token,
        expires_at=expires,
        signature=signature,
    )


def _generated_band_uid() -> str:
    return f"web-nfc-{int(_now().timestamp() * 1000)}-{secrets.token_hex(4)}"


def issue_security_token(db: Session, band: models.NfcBand) -> Tuple[str, datetime]:
    if band.user_id is None:
        raise ValidationError("NFC band is not bound to a user")
    token, expires_at = token_crypto.sign_band_token(
        band.id,
        band.user_id,
        band.event_id,
        binding_verified=band.binding_verified_at is not None,
    )
    band.security_token = token
    band.token_issued_at = _now()
    band.token_expires_at = expires_at
    db.flush()
    return token, expires_at


def verify_security_token(db: Session, token: str) -> token_crypto.BandTokenPayload:
    """Decode a band token and require it to be the one stored on the band."""
    payload = token_crypto.verify_band_token(token)
    try:
        band_id = uuid.UUID(payload.band_id)
    except ValueError as exc:
        raise ValidationError("Invalid NFC token") from exc
    band = nfc_repo.get_band(db, band_id)
    if band is None or not band.security_token or not secrets.compare_digest(band.security_token, token):
        raise ValidationError("Invalid NFC token: token does not match stored token")
    return payload


def refresh_security_token(db: Session, band_id: uuid.UUID, user: models.User) -> Tuple[str, datetime]:
    band = nfc_repo.get_band(db, band_id)
    if band is None:
        raise NotFoundError("NFC band not found")
    if band.user_id != user.id and not user.is_superadmin:
        raise AuthorizationError("NFC band does not belong to current user")
    if band.status != "active":
        raise ValidationError(f"NFC band is {band.status}")
    token, expires_at = issue_security_token(db, band)
    audit.log_band(db, action=audit.AuditAction.NFC_TOKEN_REFRESH, band_id=band.id, actor_user_id=user.id)
    db.commit()
    return token, expires_at


def _bind_existing(band: models.NfcBand, user_id: uuid.UUID, event_id: Optional[uuid.UUID]) -> None:
    if band.user_id is not None and band.user_id != user_id:
        raise ConflictError("NFC band is already bound to another user")
    if band.status != "active":
        raise ValidationError(f"NFC band is {band.status}")
    band.user_id = user_id
    if event_id is not None:
        band.event_id = event_id
    band.binding_verified_at = _now()


def complete_binding(
    db: Session,
    token: str,
    user: models.User,
    *,
    band_uid: Optional[str] = None,
    payload_signature: Optional[str] = None,
    event_id: Optional[uuid.UUID] = None,
) -> Tuple[models.NfcBand, str]:
    row = load_binding_token(db, token, user)
    if payload_signature is not None and not token_crypto.verify_binding_payload(
        payload_signature, token, as_utc(row.expires_at)
    ):
        raise ValidationError("Invalid payload signature")

    try:
        if not nfc_repo.consume_binding_token(db, token_id=row.id):
            raise ValidationError("Binding token already used")

        band = nfc_repo.get_band_by_uid(db, band_uid) if band_uid else None
        created = band is None
        if band is None:
            band = nfc_repo.create_band(
                db,
                band_uid=band_uid or _generated_band_uid(),
                user_id=user.id,
                event_id=event_id,
                registered_by=user.id,
                binding_verified_at=_now(),
            )
            nfc_repo.ensure_rate_limit(db, band.id)
        else:
            _bind_existing(band, user.id, event_id)

        security_token, _ = issue_security_token(db, band)
        audit.log_band(
            db,
            action=audit.AuditAction.NFC_BAND_BOUND,
            band_id=band.id,
            actor_user_id=user.id,
            metadata={"band_uid": band.band_uid, "created": created, "event_id": band.event_id},
        )
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise ConflictError("NFC band is already registered") from exc
    except Exception:
        db.rollback()
        raise

    db.refresh(band)
    logger.info("nfc_band_bound band=%s user=%s created=%s", band.id, user.id, created)
    return band, security_token


def register_band(
    db: Session,
    band_uid: str,
    user_id: uuid.UUID,
    *,
    event_id: Optional[uuid.UUID] = None,
    registered_by: Optional[uuid.UUID] = None,
) -> Tuple[models.NfcBand, str]:
    """Staff-side registration of a physical band for a user."""
    band_uid = (band_uid or "").strip()
    if not band_uid:
        raise ValidationError("Band UID is required")
    band = nfc_repo.get_band_by_uid(db, band_uid)
    try:
        if band is not None:
            _bind_existing(band, user_id, event_id)
        else:
            band = nfc_repo.create_band(
                db,
                band_uid=band_uid,
                user_id=user_id,
                event_id=event_id,
                registered_by=registered_by,
                binding_verified_at=_now(),
            )
        nfc_repo.ensure_rate_limit(db, band.id)
        token, _ = issue_security_token(db, band)
        audit.log_band(
            db,
            action=audit.AuditAction.NFC_BAND_REGISTERED,
            band_id=band.id,
            actor_user_id=registered_by,
            metadata={"band_uid": band_uid, "user_id": user_id},
        )
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(band)
    return band, token


def verify_binding(db: Session, band_id: uuid.UUID, challenge: str, response: str) -> bool:
    band = nfc_repo.get_band(db, band_id)
    if band is None:
        raise NotFoundError("NFC band not found")
    return token_crypto.verify_challenge_response(band.band_uid, challenge, response)


def list_bands_for_user(db: Session, user_id: uuid.UUID) -> List[models.NfcBand]:
    return nfc_repo.list_bands_for_user(db, user_id)


def set_band_status(db: Session, band_id: uuid.UUID, status: str, user: models.User) -> models.NfcBand:
    if status not in BAND_STATUSES:
        raise ValidationError(f"Invalid band status: {status}")
    band = nfc_repo.get_band(db, band_id)
    if band is None:
        raise NotFoundError("NFC band not found")
    if band.user_id != user.id and not user.is_superadmin:
        raise AuthorizationError("NFC band does not belong to current user")
    if status == "active" and band.status == "deactivated" and not user.is_superadmin:
        # Deactivation follows a cloning alert; only staff may lift it
        raise AuthorizationError("Only administrators can reactivate a deactivated band")
    previous = band.status
    band.status = status
    if status != "active":
        band.security_token = None
        band.token_expires_at = None
    audit.log_band(
        db,
        action=audit.AuditAction.NFC_BAND_STATUS_CHANGE,
        band_id=band.id,
        actor_user_id=user.id,
        metadata={"from": previous, "to": status},
    )
    db.commit()
    db.refresh(band)
    return band
