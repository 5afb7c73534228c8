"""
Cloned-band heuristics.

A physical band cannot be in two places at once. Three signals are checked,
strongest first:

* an open usage session more than 100 m away that started under 5 s ago (high)
* more open sessions than the band allows (medium)
* consecutive sessions more than 100 m apart and under 10 s apart (medium)
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional, Sequence

from sqlalchemy.orm import Session

from taquilla import audit
from taquilla.db import models
from taquilla.db.models import as_utc
from taquilla.db.repositories import nfc as nfc_repo
from taquilla.errors import NotFoundError, ValidationError
from taquilla.utils.geo import Location, haversine_meters

logger = logging.getLogger("taquilla.nfc.anti_cloning")

DISTANCE_THRESHOLD_METERS = 100.0
CONCURRENT_WINDOW_SECONDS = 5.0
RAPID_MOVE_WINDOW_SECONDS = 10.0
RECENT_SESSION_LIMIT = 5


@dataclass
class CloningVerdict:
    is_cloned: bool
    confidence: str  # none|low|medium|high
    reason: Optional[str] = None
    alerts: List[str] = field(default_factory=list)


def _session_location(session) -> Optional[Location]:
    if session.location_lat is None or session.location_lng is None:
        return None
    return Location(session.location_lat, session.location_lng)


def find_concurrent_use(open_sessions: Sequence, location: Location, now: datetime) -> Optional[str]:
    for session in open_sessions:
        other = _session_location(session)
        if other is None:
            continue
        elapsed = (now - as_utc(session.started_at)).total_seconds()
        distance = haversine_meters(location, other)
        if distance > DISTANCE_THRESHOLD_METERS and elapsed < CONCURRENT_WINDOW_SECONDS:
            return f"Concurrent use detected: {distance:.0f}m apart in {elapsed:.1f}s"
    return None


def find_rapid_movements(recent_sessions: Sequence) -> List[str]:
    """``recent_sessions`` must be ordered newest first."""
    alerts: List[str] = []
    for newer, older in zip(recent_sessions, recent_sessions[1:]):
        a, b = _session_location(newer), _session_location(older)
        if a is None or b is None:
            continue
        distance = haversine_meters(a, b)
        elapsed = (as_utc(newer.started_at) - as_utc(older.started_at)).total_seconds()
        if distance > DISTANCE_THRESHOLD_METERS and elapsed < RAPID_MOVE_WINDOW_SECONDS:
            alerts.append(f"Rapid location change: {distance:.0f}m in {elapsed:.1f}s")
    return alerts


def detect_cloning(
    db: Session,
    band: models.NfcBand,
    location: Optional[Location],
    now: Optional[datetime] = None,
) -> CloningVerdict:
    if location is None:
        return CloningVerdict(False, "none", "No location provided for cloning detection")
    now = as_utc(now) or datetime.now(timezone.utc)

    concurrent = find_concurrent_use(nfc_repo.open_sessions(db, band.id), location, now)
    if concurrent:
        return CloningVerdict(True, "high", concurrent, ["Concurrent use in distant locations detected"])

    if (band.concurrent_use_count or 0) > (band.max_concurrent_uses or 1):
        return CloningVerdict(
            True,
            "medium",
            f"Concurrent use count ({band.concurrent_use_count}) exceeds maximum ({band.max_concurrent_uses})",
            ["Concurrent use limit exceeded"],
        )

    alerts = find_rapid_movements(nfc_repo.recent_sessions(db, band.id, RECENT_SESSION_LIMIT))
    if alerts:
        return CloningVerdict(True, "medium", "Rapid location changes detected", alerts)

    return CloningVerdict(False, "low")


def handle_cloning_alert(db: Session, band: models.NfcBand, verdict: CloningVerdict) -> None:
    """Deactivate the band and keep the evidence in its metadata."""
    metadata = band.get_metadata()
    metadata["cloningAlert"] = {
        "reason": verdict.reason,
        "confidence": verdict.confidence,
        "alerts": list(verdict.alerts),
        "detectedAt": datetime.now(timezone.utc).isoformat(),
    }
    band.set_metadata(metadata)
    band.status = "deactivated"
    audit.log_band(
        db,
        action=audit.AuditAction.NFC_CLONING_DETECTED,
        band_id=band.id,
        actor_user_id=None,
        status=audit.AuditStatus.FAILURE,
        reason=verdict.reason,
        metadata={"confidence": verdict.confidence, "alerts": verdict.alerts},
    )
    db.flush()
    logger.warning("nfc_cloning_detected band=%s confidence=%s", band.id, verdict.confidence)


def start_usage_session(
    db: Session,
    band: models.NfcBand,
    location: Optional[Location] = None,
    now: Optional[datetime] = None,
) -> models.NfcUsageSession:
    now = as_utc(now) or datetime.now(timezone.utc)
    session = models.NfcUsageSession(
        nfc_band_id=band.id,
        session_token=str(uuid.uuid4()),
        location_lat=location.lat if location else None,
        location_lng=location.lng if location else None,
        started_at=now,
        transaction_count=0,
    )
    db.add(session)
    band.concurrent_use_count = (band.concurrent_use_count or 0) + 1
    if location is not None:
        band.last_location_lat = location.lat
        band.last_location_lng = location.lng
    db.flush()
    return session


def end_usage_session(db: Session, session_token: str, *, band_id: Optional[uuid.UUID] = None) -> models.NfcUsageSession:
    session = nfc_repo.get_session_by_token(db, session_token)
    if session is None or (band_id is not None and session.nfc_band_id != band_id):
        raise NotFoundError("Usage session not found")
    if session.ended_at is not None:
        raise ValidationError("Usage session already ended")
    session.ended_at = datetime.now(timezone.utc)
    band = nfc_repo.get_band(db, session.nfc_band_id)
    if band is not None and band.concurrent_use_count:
        band.concurrent_use_count = band.concurrent_use_count - 1
    db.flush()
    return session
