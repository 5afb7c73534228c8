"""
Signing and token utilities for admission credentials and NFC bands.

Responsibilities:
- Sign and verify QR admission payloads (HS256 JWT) carrying a per-ticket nonce
- Sign and verify NFC band security tokens (HS256 JWT)
- Generate single-use binding tokens and sign the 38-byte binding payload
  written to a band (HMAC-SHA256, constant-time verification)
- Challenge/response and idempotency key helpers
"""
from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import os
import secrets
import struct
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

import jwt

from taquilla.errors import InvalidSignatureError, ValidationError
from taquilla.utils.runtime import dev_mode_requested, running_under_pytest

JWT_ALGORITHM = "HS256"
QR_CODE_EXPIRY_HOURS = 24 * 30
NFC_TOKEN_EXPIRY_HOURS = 24
BINDING_TOKEN_BYTES = 32
BINDING_TOKEN_TTL_SECONDS = 5 * 60
BINDING_PAYLOAD_VERSION = 0x01
BINDING_PAYLOAD_SIZE = 1 + 1 + BINDING_TOKEN_BYTES + 4

_DEV_SECRET = "taquilla-dev-secret-do-not-use-in-production"


@dataclass(frozen=True)
class QRPayload:
    ticket_id: str
    event_id: str
    ticket_number: str
    issued_at: int
    nonce: str
    organization_id: Optional[str] = None
    ticket_type_id: Optional[str] = None

    def to_claims(self) -> Dict[str, Any]:
        claims: Dict[str, Any] = {
            "ticketId": self.ticket_id,
            "eventId": self.event_id,
            "ticketNumber": self.ticket_number,
            "issuedAt": self.issued_at,
            "nonce": self.nonce,
        }
        if self.organization_id:
            claims["organizationId"] = self.organization_id
        if self.ticket_type_id:
            claims["ticketTypeId"] = self.ticket_type_id
        return claims


@dataclass(frozen=True)
class BandTokenPayload:
    band_id: str
    user_id: str
    issued_at: int
    expires_at: int
    nonce: str
    binding_verified: bool
    event_id: Optional[str] = None


def get_signing_secret() -> str:
    """Return the HMAC secret shared by every signer in this module.

    Falls back to a fixed development secret only for DEV_MODE or test runs.
    """
    secret = os.getenv("JWT_SECRET")
    if secret:
        return secret
    if dev_mode_requested() or running_under_pytest():
        return _DEV_SECRET
    raise RuntimeError("JWT_SECRET must be set to sign tickets and NFC tokens")


def _epoch(now: Optional[datetime]) -> int:
    if now is None:
        return int(time.time())
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return int(now.timestamp())


# --- QR admission payloads -------------------------------------------------

def sign_qr_payload(
    ticket_id: uuid.UUID | str,
    event_id: uuid.UUID | str,
    ticket_number: str,
    organization_id: uuid.UUID | str | None = None,
    ticket_type_id: uuid.UUID | str | None = None,
    *,
    now: Optional[datetime] = None,
) -> Tuple[str, QRPayload]:
    issued_at = _epoch(now)
    payload = QRPayload(
        ticket_id=str(ticket_id),
        event_id=str(event_id),
        ticket_number=ticket_number,
        issued_at=issued_at,
        nonce=str(uuid.uuid4()),
        organization_id=str(organization_id) if organization_id else None,
        ticket_type_id=str(ticket_type_id) if ticket_type_id else None,
    )
    claims = payload.to_claims()
    claims["iat"] = issued_at
    claims["exp"] = issued_at + QR_CODE_EXPIRY_HOURS * 3600
    token = jwt.encode(claims, get_signing_secret(), algorithm=JWT_ALGORITHM)
    return token, payload


def verify_qr_payload(token: str) -> QRPayload:
    """Decode a signed QR payload; any failure is reported as a bad signature."""
    if not token or not token.strip():
        raise InvalidSignatureError("Invalid QR code signature")
    try:
        claims = jwt.decode(
            token.strip(),
            get_signing_secret(),
            algorithms=[JWT_ALGORITHM],
            options={"require": ["exp"]},
        )
        return QRPayload(
            ticket_id=str(claims["ticketId"]),
            event_id=str(claims["eventId"]),
            ticket_number=str(claims["ticketNumber"]),
            issued_at=int(claims["issuedAt"]),
            nonce=str(claims["nonce"]),
            organization_id=claims.get("organizationId"),
            ticket_type_id=claims.get("ticketTypeId"),
        )
    except (jwt.PyJWTError, KeyError, TypeError, ValueError) as exc:
        raise InvalidSignatureError("Invalid QR code signature") from exc


# --- NFC band security tokens ----------------------------------------------

def sign_band_token(
    band_id: uuid.UUID | str,
    user_id: uuid.UUID | str,
    event_id: uuid.UUID | str | None,
    binding_verified: bool,
    expires_in_hours: int = NFC_TOKEN_EXPIRY_HOURS,
    *,
    now: Optional[datetime] = None,
) -> Tuple[str, datetime]:
    issued_at = _epoch(now)
    expires_at = issued_at + expires_in_hours * 3600
    claims: Dict[str, Any] = {
        "bandId": str(band_id),
        "userId": str(user_id),
        "issuedAt": issued_at,
        "expiresAt": expires_at,
        "nonce": str(uuid.uuid4()),
        "bindingVerified": bool(binding_verified),
        "iat": issued_at,
        "exp": expires_at,
    }
    if event_id:
        claims["eventId"] = str(event_id)
    token = jwt.encode(claims, get_signing_secret(), algorithm=JWT_ALGORITHM)
    return token, datetime.fromtimestamp(expires_at, tz=timezone.utc)


def verify_band_token(token: str) -> BandTokenPayload:
    try:
        claims = jwt.decode(token, get_signing_secret(), algorithms=[JWT_ALGORITHM])
        return BandTokenPayload(
            band_id=str(claims["bandId"]),
            user_id=str(claims["userId"]),
            issued_at=int(claims["issuedAt"]),
            expires_at=int(claims["expiresAt"]),
            nonce=str(claims["nonce"]),
            binding_verified=bool(claims.get("bindingVerified", False)),
            event_id=claims.get("eventId"),
        )
    except jwt.ExpiredSignatureError as exc:
        raise ValidationError("Invalid NFC token: token expired") from exc
    except (jwt.PyJWTError, KeyError, TypeError, ValueError) as exc:
        raise ValidationError("Invalid NFC token") from exc


# --- Binding tokens and payloads -------------------------------------------

def generate_binding_token() -> str:
    """Return a base64 encoded 32 byte random token."""
    return base64.b64encode(secrets.token_bytes(BINDING_TOKEN_BYTES)).decode("ascii")


def _decode_binding_token(token: str) -> bytes:
    try:
        raw = base64.b64decode(token, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValidationError("Invalid token format") from exc
    if len(raw) != BINDING_TOKEN_BYTES:
        raise ValidationError("Invalid token format")
    return raw


def build_binding_payload(
    token: str,
    expires_at: datetime | int,
    version: int = BINDING_PAYLOAD_VERSION,
    flags: int = 0,
) -> bytes:
    """Pack ``version | flags | token[32] | expiresAt (uint32, big-endian)``."""
    raw = _decode_binding_token(token)
    expires = expires_at if isinstance(expires_at, int) else _epoch(expires_at)
    payload = struct.pack(">BB", version & 0xFF, flags & 0xFF) + raw + struct.pack(">I", expires & 0xFFFFFFFF)
    return payload


def _digest_matches(expected_hex: str, supplied: Optional[str]) -> bool:
    # compare_digest only accepts ASCII str; compare bytes so any input is a plain mismatch
    return hmac.compare_digest(expected_hex.encode("ascii"), (supplied or "").lower().encode("utf-8"))


def sign_binding_payload(token: str, expires_at: datetime | int, version: int = BINDING_PAYLOAD_VERSION, flags: int = 0) -> str:
    payload = build_binding_payload(token, expires_at, version, flags)
    return hmac.new(get_signing_secret().encode("utf-8"), payload, hashlib.sha256).hexdigest()


def verify_binding_payload(
    signature: str,
    token: str,
    expires_at: datetime | int,
    version: int = BINDING_PAYLOAD_VERSION,
    flags: int = 0,
) -> bool:
    try:
        expected = sign_binding_payload(token, expires_at, version, flags)
    except ValidationError:
        return False
    return _digest_matches(expected, signature)


# --- Misc helpers -------------------------------------------------------------

def generate_binding_challenge() -> str:
    return str(uuid.uuid4())


def challenge_response(band_uid: str, challenge: str) -> str:
    return hashlib.sha256(f"{band_uid}:{challenge}".encode("utf-8")).hexdigest()


def verify_challenge_response(band_uid: str, challenge: str, response: str) -> bool:
    return _digest_matches(challenge_response(band_uid, challenge), response)


def generate_idempotency_key() -> str:
    return f"idemp_{int(time.time() * 1000)}_{uuid.uuid4()}"


def generate_ticket_suffix() -> str:
    """Six upper-case hex characters used in ticket numbers."""
    return secrets.token_hex(3).upper()

