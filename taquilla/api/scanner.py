"""
Gate scanner API endpoints.

Online scans, dry-run validation and offline queue synchronisation. The
scanner must hold a scan role for the event named in the QR payload.
"""
import uuid
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from taquilla.api.deps import get_current_user_context
from taquilla.api.permissions import can_scan
from taquilla.db import schemas
from taquilla.db.database import get_db
from taquilla.db.repositories import tickets as ticket_repo
from taquilla.errors import InvalidSignatureError
from taquilla.services import scan_service
from taquilla.utils import token_crypto

router = APIRouter(prefix="/scanner", tags=["scanner"])

NOT_AUTHORIZED = "Not authorized to scan tickets for this event"


def _scanner_from(current_user) -> scan_service.Scanner:
    return scan_service.Scanner(
        user_id=current_user["id"],
        organization_id=current_user.get("organization_id"),
        is_superadmin=bool(current_user.get("is_superadmin")),
    )


def _scan_permitted(db: Session, qr_signature: str, current_user) -> bool:
    """False only when the payload names an event the user cannot scan for.

    Undecodable payloads and unknown events fall through to the scan service,
    which rejects and records them with the precise reason.
    """
    try:
        payload = token_crypto.verify_qr_payload(qr_signature)
        event_id = uuid.UUID(payload.event_id)
    except (InvalidSignatureError, ValueError):
        return True
    event = ticket_repo.get_event(db, event_id)
    if event is None:
        return True
    return can_scan(current_user, event)


def _require_scan_permission(db: Session, qr_signature: str, current_user) -> None:
    if not _scan_permitted(db, qr_signature, current_user):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=NOT_AUTHORIZED)


@router.post("/validate", response_model=schemas.ValidationResponse)
def validate_scan(
    payload: schemas.ScanRequest,
    db: Session = Depends(get_db),
    user_context=Depends(get_current_user_context),
):
    _, current_user = user_context
    _require_scan_permission(db, payload.qr_signature, current_user)
    result = scan_service.validate_ticket_with_replay_prevention(
        db, payload.qr_signature, _scanner_from(current_user), payload.scanned_at
    )
    return schemas.ValidationResponse(
        valid=result.valid,
        ticket_id=result.ticket_id,
        error=result.error,
        rule_id=result.rule_id,
        rule_type=result.rule_type,
    )


@router.post("/scan", response_model=schemas.ScanResponse)
def scan_ticket(
    payload: schemas.ScanRequest,
    db: Session = Depends(get_db),
    user_context=Depends(get_current_user_context),
):
    _, current_user = user_context
    _require_scan_permission(db, payload.qr_signature, current_user)
    result = scan_service.process_scan(
        db,
        payload.qr_signature,
        _scanner_from(current_user),
        location=payload.location,
        scan_time=payload.scanned_at,
    )
    return schemas.ScanResponse(
        success=result.success,
        ticket_id=result.ticket_id,
        scan_id=result.scan_id,
        ticket_number=result.ticket_number,
        status=result.status,
        scan_count=result.scan_count,
        error=result.error,
        rule_id=result.rule_id,
        rule_type=result.rule_type,
    )


@router.post("/batch", response_model=schemas.BatchScanResponse)
def sync_offline_scans(
    payload: schemas.BatchScanRequest,
    db: Session = Depends(get_db),
    user_context=Depends(get_current_user_context),
):
    _, current_user = user_context
    permitted, refused = [], []
    for item in payload.scans:
        queued = scan_service.QueuedScan(
            qr_signature=item.qr_signature.strip(),
            scanned_at=item.scanned_at,
            location=item.location,
            client_scan_id=item.client_scan_id,
        )
        (permitted if _scan_permitted(db, queued.qr_signature, current_user) else refused).append(queued)

    outcome = scan_service.process_scan_batch(db, permitted, _scanner_from(current_user))
    results = [schemas.BatchScanResult(**r) for r in outcome.results]
    results.extend(
        schemas.BatchScanResult(client_scan_id=q.client_scan_id, success=False, error=NOT_AUTHORIZED)
        for q in refused
    )
    return schemas.BatchScanResponse(
        total=len(payload.scans),
        successful=outcome.successful,
        failed=outcome.failed + len(refused),
        duplicates=outcome.duplicates,
        results=results,
    )
