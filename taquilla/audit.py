"""
Audit logging helpers and enums.

Every scan decision, binding and ledger mutation is recorded through ``log``
so the trail shares one schema. Records are added to the caller's session;
they commit or roll back together with the change they describe.
"""
from __future__ import annotations

import uuid
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from taquilla.db import schemas
from taquilla.db.repositories import audits as audit_repo


class AuditAction(str, Enum):
    # Tickets
    TICKET_ISSUE = "ticket_issue"
    TICKET_STATE_TRANSITION = "ticket_state_transition"
    TICKET_REVOKE = "ticket_revoke"
    TICKET_SCANNED = "ticket_scanned"
    TICKET_SCAN_FAILED = "ticket_scan_failed"
    TICKET_SCAN_BATCH = "ticket_scan_batch"
    # NFC
    NFC_BINDING_PREPARED = "nfc_binding_prepared"
    NFC_BAND_BOUND = "nfc_band_bound"
    NFC_BAND_REGISTERED = "nfc_band_registered"
    NFC_BAND_STATUS_CHANGE = "nfc_band_status_change"
    NFC_TOKEN_REFRESH = "nfc_token_refresh"
    NFC_CLONING_DETECTED = "nfc_cloning_detected"
    NFC_PAYMENT = "nfc_payment"
    # Wallets
    WALLET_CREDIT = "wallet_credit"
    WALLET_DEBIT = "wallet_debit"


class AuditStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


def _jsonable(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_jsonable(v) for v in value]
    if isinstance(value, (uuid.UUID, Decimal)):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return value


def log(
    db: Session,
    *,
    action: AuditAction | str,
    status: AuditStatus | str = AuditStatus.SUCCESS,
    target_type: str,
    target_id: Optional[uuid.UUID] = None,
    actor_user_id: Optional[uuid.UUID] = None,
    organization_id: Optional[uuid.UUID] = None,
    reason: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
):
    """Add an audit record to the session (flushed, not committed)."""
    action_value = action.value if isinstance(action, AuditAction) else str(action)
    status_value = status.value if isinstance(status, AuditStatus) else str(status)
    entry = schemas.AuditLogCreate(
        action_type=action_value,
        status=status_value,
        target_type=target_type,
        target_id=target_id,
        reason=reason,
        metadata=_jsonable(metadata or {}),
    )
    return audit_repo.create_audit_log(
        db,
        audit_log=entry,
        actor_user_id=actor_user_id,
        organization_id=organization_id,
    )


def log_ticket(
    db: Session,
    *,
    action: AuditAction,
    ticket_id: uuid.UUID,
    actor_user_id: Optional[uuid.UUID],
    organization_id: Optional[uuid.UUID] = None,
    status: AuditStatus | str = AuditStatus.SUCCESS,
    reason: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
):
    return log(
        db,
        action=action,
        status=status,
        target_type="ticket",
        target_id=ticket_id,
        actor_user_id=actor_user_id,
        organization_id=organization_id,
        reason=reason,
        metadata=metadata,
    )


def log_band(
    db: Session,
    *,
    action: AuditAction,
    band_id: Optional[uuid.UUID],
    actor_user_id: Optional[uuid.UUID],
    status: AuditStatus | str = AuditStatus.SUCCESS,
    reason: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
):
    return log(
        db,
        action=action,
        status=status,
        target_type="nfc_band",
        target_id=band_id,
        actor_user_id=actor_user_id,
        reason=reason,
        metadata=metadata,
    )


def log_wallet(
    db: Session,
    *,
    action: AuditAction,
    wallet_id: uuid.UUID,
    actor_user_id: Optional[uuid.UUID],
    metadata: Optional[Dict[str, Any]] = None,
):
    return log(
        db,
        action=action,
        target_type="wallet",
        target_id=wallet_id,
        actor_user_id=actor_user_id,
        metadata=metadata,
    )


__all__ = ["AuditAction", "AuditStatus", "log", "log_ticket", "log_band", "log_wallet"]
