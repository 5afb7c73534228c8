import uuid
from datetime import datetime, timedelta, timezone

import pytest

from taquilla.services.usage_rules import (
    EventWindow,
    UsageRule,
    evaluate_usage_rules,
    validate_event_time_range,
)

START = datetime(2026, 7, 10, 18, 0, tzinfo=timezone.utc)  # a Friday
END = datetime(2026, 7, 12, 23, 0, tzinfo=timezone.utc)
FESTIVAL = EventWindow(start=START, end=END, is_multi_day=True)


def _rule(rule_type, config, priority=0, active=True):
    return UsageRule(id=uuid.uuid4(), rule_type=rule_type, config=config, priority=priority, is_active=active)


def test_event_window_allows_early_and_late_grace():
    assert validate_event_time_range(START - timedelta(minutes=59), FESTIVAL).is_valid
    assert validate_event_time_range(END + timedelta(minutes=29), FESTIVAL).is_valid


def test_event_window_rejects_outside_grace():
    early = validate_event_time_range(START - timedelta(minutes=61), FESTIVAL)
    late = validate_event_time_range(END + timedelta(minutes=31), FESTIVAL)
    assert early.reason == "Event has not started yet"
    assert late.reason == "Event has ended"


def test_naive_scan_time_is_treated_as_utc():
    naive = (START + timedelta(hours=1)).replace(tzinfo=None)
    assert validate_event_time_range(naive, FESTIVAL).is_valid


def test_without_rules_single_use_ticket_admits_once():
    scan_time = START + timedelta(hours=1)
    assert evaluate_usage_rules([], scan_time, FESTIVAL, scan_count=0).is_valid
    second = evaluate_usage_rules([], scan_time, FESTIVAL, scan_count=1)
    assert not second.is_valid
    assert "single-use" in second.reason


def test_multi_scan_ticket_respects_max_scans():
    scan_time = START + timedelta(hours=1)
    assert evaluate_usage_rules([], scan_time, FESTIVAL, scan_count=2, max_scans=3, is_multi_scan=True).is_valid
    result = evaluate_usage_rules([], scan_time, FESTIVAL, scan_count=3, max_scans=3, is_multi_scan=True)
    assert result.reason == "Ticket has reached maximum scan limit (3)"


def test_scan_limit_rule_overrides_ticket_type_limit():
    rule = _rule("scan_limit", {"maxScans": 2})
    result = evaluate_usage_rules([rule], START, FESTIVAL, scan_count=2, max_scans=10, is_multi_scan=True)
    assert not result.is_valid
    assert result.rule_id == rule.id
    assert result.rule_type == "scan_limit"


def test_time_window_rule():
    rule = _rule("time_window", {"startTime": "18:00", "endTime": "23:30"})
    assert evaluate_usage_rules([rule], START.replace(hour=19), FESTIVAL, 0).is_valid
    outside = evaluate_usage_rules([rule], START.replace(hour=12), FESTIVAL, 0)
    assert outside.reason == "Ticket is only valid between 18:00 and 23:30"


def test_time_window_wrapping_midnight():
    rule = _rule("time_window", {"startTime": "22:00", "endTime": "02:00"})
    assert evaluate_usage_rules([rule], START.replace(hour=23), FESTIVAL, 0).is_valid
    assert evaluate_usage_rules([rule], START.replace(hour=1), FESTIVAL, 0).is_valid
    assert not evaluate_usage_rules([rule], START.replace(hour=12), FESTIVAL, 0).is_valid


def test_time_window_uses_configured_timezone():
    # 18:00 UTC is 20:00 in Madrid during summer time
    rule = _rule("time_window", {"startTime": "19:30", "endTime": "21:00", "timezone": "Europe/Madrid"})
    assert evaluate_usage_rules([rule], START, FESTIVAL, 0).is_valid


def test_multi_day_allowed_days():
    rule = _rule("multi_day_access", {"allowedDays": [5, 6]})  # Friday, Saturday
    saturday = START + timedelta(days=1)
    sunday = START + timedelta(days=2)
    assert evaluate_usage_rules([rule], saturday, FESTIVAL, 0).is_valid
    result = evaluate_usage_rules([rule], sunday, FESTIVAL, 0)
    assert result.reason == "Ticket is only valid on: Friday, Saturday"


def test_multi_day_rule_ignored_for_single_day_event():
    single_day = EventWindow(start=START, end=START + timedelta(hours=5), is_multi_day=False)
    rule = _rule("multi_day_access", {"allowedDates": ["2026-01-01"]})
    assert evaluate_usage_rules([rule], START, single_day, 0).is_valid


def test_date_range_rule():
    rule = _rule("date_range", {"startDate": "2026-07-11", "endDate": "2026-07-12"})
    assert not evaluate_usage_rules([rule], START, FESTIVAL, 0).is_valid
    assert evaluate_usage_rules([rule], START + timedelta(days=1), FESTIVAL, 0).is_valid


def test_highest_priority_failure_is_reported():
    low = _rule("date_range", {"startDate": "2030-01-01", "endDate": "2030-01-02"}, priority=1)
    high = _rule("time_window", {"startTime": "08:00", "endTime": "09:00"}, priority=10)
    result = evaluate_usage_rules([low, high], START, FESTIVAL, 0)
    assert result.rule_id == high.id


def test_inactive_and_unknown_rules_are_ignored():
    inactive = _rule("time_window", {"startTime": "08:00", "endTime": "09:00"}, active=False)
    unknown = _rule("moon_phase", {"phase": "full"})
    zone = _rule("zone_restriction", {"zones": ["vip"]})
    assert evaluate_usage_rules([inactive, unknown, zone], START, FESTIVAL, 0).is_valid


@pytest.mark.parametrize("config", [{}, {"startTime": "25:00", "endTime": "26:00"}, {"startTime": "x"}])
def test_malformed_time_window_config_does_not_block(config):
    assert evaluate_usage_rules([_rule("time_window", config)], START, FESTIVAL, 0).is_valid
