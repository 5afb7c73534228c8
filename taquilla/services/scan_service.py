"""
Gate scan validation and recording.

Validation order: QR signature, nonce replay table, ticket lookup by exact
signature, tenant match, ticket status, event time window, usage rules.

Admitting a scan is a sequence of conditional updates inside one transaction:
the nonce is consumed only while unused (single-use tickets) and the scan
counter only moves from the value that was validated. Losing either race
rolls the transaction back and the scan is rejected.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from taquilla import audit
from taquilla.db import models
from taquilla.db.models import TicketStatus, as_utc
from taquilla.db.repositories import tickets as ticket_repo
from taquilla.errors import InvalidSignatureError
from taquilla.services import usage_rules
from taquilla.utils import token_crypto
from taquilla.utils.feature_flags import event_time_window_enabled

logger = logging.getLogger("taquilla.scanner")

REASON_BAD_SIGNATURE = "Invalid QR code signature"
REASON_REPLAY = "QR code has already been scanned (replay attack detected)"
REASON_NOT_FOUND = "Ticket not found"
REASON_WRONG_ORG = "Ticket does not belong to your organization"
REASON_REVOKED = "Ticket has been revoked"
REASON_REFUNDED = "Ticket has been refunded"
REASON_USED = "Ticket has already been used"
REASON_UNPAID = "Ticket payment not completed"
REASON_CONCURRENT = "Ticket was scanned concurrently at another gate"


@dataclass
class Scanner:
    """Identity of the staff member or device performing the scan."""

    user_id: Optional[uuid.UUID]
    organization_id: Optional[uuid.UUID] = None
    is_superadmin: bool = False


@dataclass
class TicketValidationResult:
    valid: bool
    error: Optional[str] = None
    ticket: Optional[models.Ticket] = None
    payload: Optional[token_crypto.QRPayload] = None
    is_multi_scan: bool = False
    rule_id: Optional[uuid.UUID] = None
    rule_type: Optional[str] = None

    @property
    def ticket_id(self) -> Optional[uuid.UUID]:
        return self.ticket.id if self.ticket is not None else None


@dataclass
class ScanResult:
    success: bool
    ticket_id: Optional[uuid.UUID] = None
    scan_id: Optional[uuid.UUID] = None
    ticket_number: Optional[str] = None
    status: Optional[str] = None
    scan_count: Optional[int] = None
    error: Optional[str] = None
    rule_id: Optional[uuid.UUID] = None
    rule_type: Optional[str] = None


@dataclass
class QueuedScan:
    qr_signature: str
    scanned_at: datetime
    location: Optional[str] = None
    client_scan_id: Optional[str] = None


@dataclass
class BatchResult:
    total: int
    successful: int
    failed: int
    duplicates: int
    results: List[Dict[str, Any]] = field(default_factory=list)


def _reject(error: str, **kwargs) -> TicketValidationResult:
    return TicketValidationResult(valid=False, error=error, **kwargs)


def _parse_uuid(value: str) -> Optional[uuid.UUID]:
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        return None


def validate_ticket_with_replay_prevention(
    db: Session,
    qr_signature: str,
    scanner: Scanner,
    scan_time: Optional[datetime] = None,
) -> TicketValidationResult:
    """Run every admission check without writing anything."""
    scan_time = as_utc(scan_time) or datetime.now(timezone.utc)

    try:
        payload = token_crypto.verify_qr_payload(qr_signature)
    except InvalidSignatureError:
        return _reject(REASON_BAD_SIGNATURE)

    ticket_id = _parse_uuid(payload.ticket_id)
    if ticket_id is None:
        return _reject(REASON_BAD_SIGNATURE)

    nonce_row = ticket_repo.get_nonce(db, ticket_id=ticket_id, nonce=payload.nonce)
    if nonce_row is not None and nonce_row.scan_id is not None:
        return _reject(REASON_REPLAY, payload=payload, ticket=ticket_repo.get_ticket(db, ticket_id))

    ticket = ticket_repo.get_ticket_by_signature(db, ticket_id=ticket_id, qr_signature=qr_signature.strip())
    if ticket is None:
        return _reject(REASON_NOT_FOUND, payload=payload)

    if (
        not scanner.is_superadmin
        and scanner.organization_id is not None
        and ticket.organization_id is not None
        and scanner.organization_id != ticket.organization_id
    ):
        return _reject(REASON_WRONG_ORG, ticket=ticket, payload=payload)

    status = ticket.status
    if status == TicketStatus.REVOKED.value:
        return _reject(REASON_REVOKED, ticket=ticket, payload=payload)
    if status == TicketStatus.REFUNDED.value:
        return _reject(REASON_REFUNDED, ticket=ticket, payload=payload)
    if status == TicketStatus.USED.value:
        return _reject(REASON_USED, ticket=ticket, payload=payload)
    if status not in (TicketStatus.PAID.value, TicketStatus.ISSUED.value):
        return _reject(REASON_UNPAID, ticket=ticket, payload=payload)

    event = ticket.event
    window = usage_rules.EventWindow.from_model(event)
    if event_time_window_enabled():
        time_check = usage_rules.validate_event_time_range(scan_time, window)
        if not time_check.is_valid:
            return _reject(time_check.reason, ticket=ticket, payload=payload)

    ticket_type = ticket.ticket_type
    is_multi_scan = bool(ticket_type.is_multi_scan) if ticket_type is not None else False
    rules = [usage_rules.UsageRule.from_model(r) for r in ticket_repo.get_active_usage_rules(db, ticket.ticket_type_id)]
    rule_check = usage_rules.evaluate_usage_rules(
        rules,
        scan_time,
        window,
        scan_count=ticket.scan_count or 0,
        max_scans=ticket_type.max_scans if ticket_type is not None else None,
        is_multi_scan=is_multi_scan,
    )
    if not rule_check.is_valid:
        return _reject(
            rule_check.reason,
            ticket=ticket,
            payload=payload,
            is_multi_scan=is_multi_scan,
            rule_id=rule_check.rule_id,
            rule_type=rule_check.rule_type,
        )

    return TicketValidationResult(valid=True, ticket=ticket, payload=payload, is_multi_scan=is_multi_scan)


def _record_rejection(
    db: Session,
    validation: TicketValidationResult,
    scanner: Scanner,
    location: Optional[str],
    scan_time: datetime,
) -> ScanResult:
    ticket = validation.ticket
    scan_id = None
    if ticket is not None:
        scan = ticket_repo.create_scan(
            db,
            ticket_id=ticket.id,
            scanned_by=scanner.user_id,
            is_valid=False,
            rejection_reason=validation.error,
            scan_location=location,
            scanned_at=scan_time,
        )
        scan_id = scan.id
    audit.log(
        db,
        action=audit.AuditAction.TICKET_SCAN_FAILED,
        status=audit.AuditStatus.FAILURE,
        target_type="ticket",
        target_id=ticket.id if ticket is not None else None,
        actor_user_id=scanner.user_id,
        organization_id=ticket.organization_id if ticket is not None else scanner.organization_id,
        reason=validation.error,
        metadata={
            "location": location,
            "rule_id": validation.rule_id,
            "rule_type": validation.rule_type,
        },
    )
    db.commit()
    logger.info("scan_rejected ticket=%s reason=%s", validation.ticket_id, validation.error)
    return ScanResult(
        success=False,
        ticket_id=validation.ticket_id,
        scan_id=scan_id,
        ticket_number=ticket.ticket_number if ticket is not None else None,
        status=ticket.status if ticket is not None else None,
        error=validation.error,
        rule_id=validation.rule_id,
        rule_type=validation.rule_type,
    )


def process_scan(
    db: Session,
    qr_signature: str,
    scanner: Scanner,
    *,
    location: Optional[str] = None,
    scan_time: Optional[datetime] = None,
) -> ScanResult:
    """Validate a scan and, when admitted, record it atomically."""
    scan_time = as_utc(scan_time) or datetime.now(timezone.utc)
    validation = validate_ticket_with_replay_prevention(db, qr_signature, scanner, scan_time)
    if not validation.valid:
        return _record_rejection(db, validation, scanner, location, scan_time)

    ticket = validation.ticket
    payload = validation.payload
    ticket_id = ticket.id
    previous_count = ticket.scan_count or 0
    previous_status = ticket.status
    try:
        scan = ticket_repo.create_scan(
            db,
            ticket_id=ticket_id,
            scanned_by=scanner.user_id,
            is_valid=True,
            scan_location=location,
            scanned_at=scan_time,
        )
        if not validation.is_multi_scan:
            if not ticket_repo.consume_nonce(
                db, ticket_id=ticket_id, nonce=payload.nonce, scan_id=scan.id, used_at=scan_time
            ):
                db.rollback()
                return _record_rejection(db, _reject(REASON_REPLAY, ticket=ticket), scanner, location, scan_time)
        if not ticket_repo.increment_scan_count(
            db,
            ticket_id=ticket_id,
            expected_count=previous_count,
            scanned_at=scan_time,
            first_scan=previous_count == 0,
        ):
            db.rollback()
            return _record_rejection(db, _reject(REASON_CONCURRENT, ticket=ticket), scanner, location, scan_time)
        if not validation.is_multi_scan and previous_status == TicketStatus.PAID.value:
            ticket_repo.compare_and_set_status(
                db,
                ticket_id=ticket_id,
                expected_status=TicketStatus.PAID.value,
                new_status=TicketStatus.USED.value,
            )
        audit.log_ticket(
            db,
            action=audit.AuditAction.TICKET_SCANNED,
            ticket_id=ticket_id,
            actor_user_id=scanner.user_id,
            organization_id=ticket.organization_id,
            metadata={"scan_id": scan.id, "location": location, "scan_count": previous_count + 1},
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(ticket)
    logger.info("scan_admitted ticket=%s count=%d", ticket_id, ticket.scan_count)
    return ScanResult(
        success=True,
        ticket_id=ticket_id,
        scan_id=scan.id,
        ticket_number=ticket.ticket_number,
        status=ticket.status,
        scan_count=ticket.scan_count,
    )


def _ticket_key(qr_signature: str) -> Optional[str]:
    try:
        return token_crypto.verify_qr_payload(qr_signature).ticket_id
    except InvalidSignatureError:
        return None


def process_scan_batch(db: Session, scans: List[QueuedScan], scanner: Scanner) -> BatchResult:
    """Replay an offline scan queue.

    Scans of the same ticket collapse to the earliest one; later copies are
    reported as duplicates. Undecodable entries are kept and rejected
    individually. A failing entry never aborts the rest of the batch.
    """
    earliest: Dict[str, QueuedScan] = {}
    undecodable: List[QueuedScan] = []
    duplicates: List[QueuedScan] = []
    for queued in scans:
        key = _ticket_key(queued.qr_signature)
        if key is None:
            undecodable.append(queued)
            continue
        current = earliest.get(key)
        if current is None:
            earliest[key] = queued
        elif as_utc(queued.scanned_at) < as_utc(current.scanned_at):
            duplicates.append(current)
            earliest[key] = queued
        else:
            duplicates.append(queued)

    ordered = sorted(list(earliest.values()) + undecodable, key=lambda q: as_utc(q.scanned_at))
    results: List[Dict[str, Any]] = []
    successful = 0
    for queued in ordered:
        try:
            outcome = process_scan(
                db,
                queued.qr_signature,
                scanner,
                location=queued.location,
                scan_time=queued.scanned_at,
            )
        except Exception:
            db.rollback()
            logger.exception("batch_scan_failed client_scan_id=%s", queued.client_scan_id)
            outcome = ScanResult(success=False, error="Scan could not be processed")
        if outcome.success:
            successful += 1
        results.append({
            "client_scan_id": queued.client_scan_id,
            "success": outcome.success,
            "ticket_id": outcome.ticket_id,
            "error": outcome.error,
        })
    for dup in duplicates:
        results.append({
            "client_scan_id": dup.client_scan_id,
            "success": False,
            "ticket_id": _parse_uuid(_ticket_key(dup.qr_signature)),
            "error": "Duplicate scan in batch",
        })

    audit.log(
        db,
        action=audit.AuditAction.TICKET_SCAN_BATCH,
        target_type="scan_batch",
        actor_user_id=scanner.user_id,
        organization_id=scanner.organization_id,
        metadata={"total": len(scans), "successful": successful, "duplicates": len(duplicates)},
    )
    db.commit()
    return BatchResult(
        total=len(scans),
        successful=successful,
        failed=len(scans) - successful,
        duplicates=len(duplicates),
        results=results,
    )
