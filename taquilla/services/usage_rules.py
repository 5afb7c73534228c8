"""
Usage rule evaluation for ticket scans.

Pure functions over plain values; the scan service loads the rules and the
event and passes them in. Rules are evaluated by descending priority and the
first failing rule decides the rejection.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from taquilla.db.models import as_utc

logger = logging.getLogger("taquilla.usage_rules")

RULE_SCAN_LIMIT = "scan_limit"
RULE_TIME_WINDOW = "time_window"
RULE_ZONE_RESTRICTION = "zone_restriction"
RULE_MULTI_DAY_ACCESS = "multi_day_access"
RULE_DATE_RANGE = "date_range"

EARLY_ACCESS = timedelta(minutes=60)
LATE_ACCESS = timedelta(minutes=30)

_DAY_NAMES = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]


@dataclass(frozen=True)
class UsageRule:
    id: Optional[uuid.UUID]
    rule_type: str
    config: Dict[str, Any]
    priority: int = 0
    is_active: bool = True

    @classmethod
    def from_model(cls, row) -> "UsageRule":
        return cls(
            id=row.id,
            rule_type=row.rule_type,
            config=dict(row.rule_config or {}),
            priority=row.priority or 0,
            is_active=bool(row.is_active),
        )


@dataclass(frozen=True)
class EventWindow:
    start: datetime
    end: datetime
    is_multi_day: bool = False

    @classmethod
    def from_model(cls, event) -> "EventWindow":
        return cls(start=as_utc(event.start_date), end=as_utc(event.end_date), is_multi_day=bool(event.is_multi_day))


@dataclass(frozen=True)
class RuleResult:
    is_valid: bool
    reason: Optional[str] = None
    rule_id: Optional[uuid.UUID] = None
    rule_type: Optional[str] = None


_OK = RuleResult(True)


def validate_event_time_range(scan_time: datetime, event: EventWindow) -> RuleResult:
    scan_time = as_utc(scan_time)
    if scan_time < event.start - EARLY_ACCESS:
        return RuleResult(False, "Event has not started yet")
    if scan_time > event.end + LATE_ACCESS:
        return RuleResult(False, "Event has ended")
    return _OK


def _single_use_or_limit(scan_count: int, limit: Optional[int], is_multi_scan: bool) -> RuleResult:
    if not is_multi_scan and scan_count > 0:
        return RuleResult(False, "Ticket has already been scanned (single-use ticket)")
    if limit and scan_count >= limit:
        return RuleResult(False, f"Ticket has reached maximum scan limit ({limit})")
    return _OK


def _parse_hhmm(value: Any) -> Optional[int]:
    try:
        hours, minutes = str(value).split(":")[:2]
        h, m = int(hours), int(minutes)
    except (TypeError, ValueError):
        return None
    if not (0 <= h < 24 and 0 <= m < 60):
        return None
    return h * 60 + m


def _local(scan_time: datetime, tz_name: Optional[str]) -> datetime:
    if not tz_name:
        return scan_time
    try:
        return scan_time.astimezone(ZoneInfo(tz_name))
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("usage_rule_unknown_timezone tz=%s", tz_name)
        return scan_time


def _time_window(config: Dict[str, Any], scan_time: datetime) -> RuleResult:
    start_raw, end_raw = config.get("startTime"), config.get("endTime")
    start, end = _parse_hhmm(start_raw), _parse_hhmm(end_raw)
    if start is None or end is None:
        return _OK
    local = _local(scan_time, config.get("timezone"))
    minute_of_day = local.hour * 60 + local.minute
    if start <= end:
        inside = start <= minute_of_day <= end
    else:
        # Window wraps past midnight, e.g. 22:00-02:00
        inside = minute_of_day >= start or minute_of_day <= end
    if not inside:
        return RuleResult(False, f"Ticket is only valid between {start_raw} and {end_raw}")
    return _OK


def _js_weekday(value: date) -> int:
    # Sunday = 0
    return (value.weekday() + 1) % 7


def _multi_day_access(config: Dict[str, Any], scan_time: datetime, event: EventWindow) -> RuleResult:
    if not event.is_multi_day:
        return _OK
    allowed_days = config.get("allowedDays")
    if isinstance(allowed_days, list):
        if _js_weekday(scan_time.date()) not in allowed_days:
            names = ", ".join(_DAY_NAMES[d] for d in allowed_days if isinstance(d, int) and 0 <= d < 7)
            return RuleResult(False, f"Ticket is only valid on: {names}")
    allowed_dates = config.get("allowedDates")
    if isinstance(allowed_dates, list):
        if scan_time.date().isoformat() not in allowed_dates:
            return RuleResult(False, f"Ticket is not valid on this date. Valid dates: {', '.join(allowed_dates)}")
    return _OK


def _date_range(config: Dict[str, Any], scan_time: datetime) -> RuleResult:
    start_raw, end_raw = config.get("startDate"), config.get("endDate")
    if not start_raw or not end_raw:
        return _OK
    try:
        start = date.fromisoformat(str(start_raw)[:10])
        end = date.fromisoformat(str(end_raw)[:10])
    except ValueError:
        logger.warning("usage_rule_bad_date_range start=%s end=%s", start_raw, end_raw)
        return _OK
    if not (start <= scan_time.date() <= end):
        return RuleResult(False, f"Ticket is only valid between {start_raw} and {end_raw}")
    return _OK


def evaluate_rule(
    rule: UsageRule,
    scan_time: datetime,
    event: EventWindow,
    scan_count: int,
    max_scans: Optional[int],
    is_multi_scan: bool,
) -> RuleResult:
    if rule.rule_type == RULE_SCAN_LIMIT:
        limit = rule.config.get("maxScans", max_scans)
        return _single_use_or_limit(scan_count, limit, is_multi_scan)
    if rule.rule_type == RULE_TIME_WINDOW:
        return _time_window(rule.config, scan_time)
    if rule.rule_type == RULE_MULTI_DAY_ACCESS:
        return _multi_day_access(rule.config, scan_time, event)
    if rule.rule_type == RULE_DATE_RANGE:
        return _date_range(rule.config, scan_time)
    if rule.rule_type == RULE_ZONE_RESTRICTION:
        # Zones are not captured at scan time
        return _OK
    logger.warning("usage_rule_unknown_type type=%s rule=%s", rule.rule_type, rule.id)
    return _OK


def evaluate_usage_rules(
    rules: Iterable[UsageRule],
    scan_time: datetime,
    event: EventWindow,
    scan_count: int,
    max_scans: Optional[int] = None,
    is_multi_scan: bool = False,
) -> RuleResult:
    scan_time = as_utc(scan_time) or datetime.now(timezone.utc)
    active: List[UsageRule] = sorted(
        (r for r in rules if r.is_active), key=lambda r: r.priority, reverse=True
    )
    if not active:
        return _single_use_or_limit(scan_count, max_scans, is_multi_scan)
    for rule in active:
        result = evaluate_rule(rule, scan_time, event, scan_count, max_scans, is_multi_scan)
        if not result.is_valid:
            return RuleResult(False, result.reason, rule.id, rule.rule_type)
    return _OK
