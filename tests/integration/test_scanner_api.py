from datetime import datetime, timedelta, timezone

import pytest

from taquilla.db import models
from taquilla.db.repositories import tickets as ticket_repo
from taquilla.services import scan_service, ticket_service
from taquilla.utils.feature_flags import refresh_feature_flag_cache


@pytest.fixture
def issue(db):
    def _issue(event, ticket_type, email="attendee@example.com", payment_id=None):
        return ticket_service.issue_ticket(
            db,
            ticket_service.IssueParams(
                event_id=event.id,
                ticket_type_id=ticket_type.id,
                purchaser_email=email,
                payment_id=payment_id,
            ),
        )
    return _issue


def _scan(client, headers, signature, **extra):
    resp = client.post("/scanner/scan", json={"qr_signature": signature, **extra}, headers=headers)
    assert resp.status_code == 200, resp.text
    return resp.json()


def test_scan_admits_once_then_detects_replay(client, auth, festival, issue, db):
    ticket = issue(festival["event"], festival["ticket_type"], payment_id="pay_1")
    headers = auth(festival["scanner"])

    first = _scan(client, headers, ticket.qr_signature, location="Gate A")
    assert first["success"] is True
    assert first["scan_count"] == 1
    assert first["status"] == "used"

    second = _scan(client, headers, ticket.qr_signature, location="Gate B")
    assert second["success"] is False
    assert second["error"] == scan_service.REASON_REPLAY

    scans = db.query(models.TicketScan).filter(models.TicketScan.ticket_id == ticket.id).all()
    assert sorted(s.is_valid for s in scans) == [False, True]
    nonce = db.query(models.TicketNonce).filter(models.TicketNonce.ticket_id == ticket.id).one()
    assert nonce.used_at is not None
    assert str(nonce.scan_id) == first["scan_id"]


def test_issued_ticket_is_admitted_without_status_change(client, auth, festival, issue):
    ticket = issue(festival["event"], festival["ticket_type"])
    result = _scan(client, auth(festival["scanner"]), ticket.qr_signature)
    assert result["success"] is True
    assert result["status"] == "issued"


def test_validate_does_not_consume(client, auth, festival, issue):
    ticket = issue(festival["event"], festival["ticket_type"])
    headers = auth(festival["scanner"])
    for _ in range(2):
        resp = client.post("/scanner/validate", json={"qr_signature": ticket.qr_signature}, headers=headers)
        assert resp.status_code == 200
        assert resp.json()["valid"] is True
    assert _scan(client, headers, ticket.qr_signature)["success"] is True


def test_tampered_signature_is_rejected(client, auth, festival, issue):
    ticket = issue(festival["event"], festival["ticket_type"])
    tampered = ticket.qr_signature[:-2] + ("AA" if not ticket.qr_signature.endswith("AA") else "BB")
    result = _scan(client, auth(festival["scanner"]), tampered)
    assert result["success"] is False
    assert result["error"] == scan_service.REASON_BAD_SIGNATURE


def test_revoked_ticket_is_rejected(client, auth, festival, issue, db):
    ticket = issue(festival["event"], festival["ticket_type"])
    ticket_service.revoke_ticket(db, ticket.id, reason="refund")
    result = _scan(client, auth(festival["scanner"]), ticket.qr_signature)
    assert result["success"] is False
    assert result["error"] == scan_service.REASON_REVOKED


def test_scanner_without_role_is_forbidden(client, auth, festival, issue):
    ticket = issue(festival["event"], festival["ticket_type"])
    resp = client.post("/scanner/scan", json={"qr_signature": ticket.qr_signature}, headers=auth(festival["attendee"]))
    assert resp.status_code == 403
    assert resp.json()["detail"] == "Not authorized to scan tickets for this event"


def test_scanner_from_other_organization_is_rejected(
    client, auth, festival, issue, organization_factory, user_factory, role_factory
):
    outsider = user_factory("gate@other.example", organization=organization_factory())
    role_factory(outsider, "scanner", festival["event"])
    ticket = issue(festival["event"], festival["ticket_type"])
    result = _scan(client, auth(outsider), ticket.qr_signature)
    assert result["success"] is False
    assert result["error"] == scan_service.REASON_WRONG_ORG


def test_multi_scan_ticket_respects_max_scans(client, auth, festival, issue, ticket_type_factory):
    day_pass = ticket_type_factory(festival["event"], is_multi_scan=True, max_scans=2)
    ticket = issue(festival["event"], day_pass)
    headers = auth(festival["scanner"])

    assert _scan(client, headers, ticket.qr_signature)["scan_count"] == 1
    assert _scan(client, headers, ticket.qr_signature)["scan_count"] == 2
    third = _scan(client, headers, ticket.qr_signature)
    assert third["success"] is False
    assert third["error"] == "Ticket has reached maximum scan limit (2)"


def test_event_not_started(client, auth, festival, issue, event_factory, ticket_type_factory, role_factory):
    now = datetime.now(timezone.utc)
    later = event_factory(festival["org"], start=now + timedelta(hours=3), end=now + timedelta(hours=9))
    role_factory(festival["scanner"], "scanner", later)
    ticket = issue(later, ticket_type_factory(later))
    result = _scan(client, auth(festival["scanner"]), ticket.qr_signature)
    assert result["success"] is False
    assert result["error"] == "Event has not started yet"


def test_event_window_check_can_be_disabled(
    monkeypatch, client, auth, festival, issue, event_factory, ticket_type_factory, role_factory
):
    monkeypatch.setenv("FEATURE_EVENT_TIME_WINDOW_ENABLED", "false")
    refresh_feature_flag_cache()
    now = datetime.now(timezone.utc)
    later = event_factory(festival["org"], start=now + timedelta(hours=3), end=now + timedelta(hours=9))
    role_factory(festival["scanner"], "scanner", later)
    ticket = issue(later, ticket_type_factory(later))
    assert _scan(client, auth(festival["scanner"]), ticket.qr_signature)["success"] is True


def test_failing_usage_rule_is_reported(client, auth, festival, issue, usage_rule_factory):
    rule = usage_rule_factory(
        festival["ticket_type"], "date_range", {"startDate": "2020-01-01", "endDate": "2020-01-02"}
    )
    ticket = issue(festival["event"], festival["ticket_type"])
    result = _scan(client, auth(festival["scanner"]), ticket.qr_signature)
    assert result["success"] is False
    assert result["rule_id"] == str(rule.id)
    assert result["rule_type"] == "date_range"
    assert result["error"] == "Ticket is only valid between 2020-01-01 and 2020-01-02"


def test_batch_collapses_duplicates_to_earliest(client, auth, festival, issue):
    first = issue(festival["event"], festival["ticket_type"])
    second = issue(festival["event"], festival["ticket_type"])
    now = datetime.now(timezone.utc)
    scans = [
        {"qr_signature": first.qr_signature, "scanned_at": (now - timedelta(minutes=5)).isoformat(), "client_scan_id": "a-late"},
        {"qr_signature": first.qr_signature, "scanned_at": (now - timedelta(minutes=10)).isoformat(), "client_scan_id": "a-early"},
        {"qr_signature": second.qr_signature, "scanned_at": (now - timedelta(minutes=7)).isoformat(), "client_scan_id": "b"},
    ]
    resp = client.post("/scanner/batch", json={"scans": scans}, headers=auth(festival["scanner"]))
    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["total"] == 3
    assert body["successful"] == 2
    assert body["failed"] == 1
    assert body["duplicates"] == 1

    by_client = {r["client_scan_id"]: r for r in body["results"]}
    assert by_client["a-early"]["success"] is True
    assert by_client["b"]["success"] is True
    assert by_client["a-late"]["success"] is False
    assert by_client["a-late"]["error"] == "Duplicate scan in batch"


def test_batch_refuses_entries_for_events_without_scan_role(
    client, auth, festival, issue, event_factory, ticket_type_factory
):
    allowed = issue(festival["event"], festival["ticket_type"])
    other_event = event_factory(festival["org"])
    refused = issue(other_event, ticket_type_factory(other_event))
    now = datetime.now(timezone.utc).isoformat()
    scans = [
        {"qr_signature": allowed.qr_signature, "scanned_at": now, "client_scan_id": "ok"},
        {"qr_signature": refused.qr_signature, "scanned_at": now, "client_scan_id": "nope"},
    ]
    body = client.post("/scanner/batch", json={"scans": scans}, headers=auth(festival["scanner"])).json()
    assert body["successful"] == 1
    assert body["failed"] == 1
    by_client = {r["client_scan_id"]: r for r in body["results"]}
    assert by_client["nope"]["error"] == "Not authorized to scan tickets for this event"


def test_batch_keeps_going_after_bad_entries(client, auth, festival, issue):
    good = issue(festival["event"], festival["ticket_type"])
    now = datetime.now(timezone.utc).isoformat()
    scans = [
        {"qr_signature": "not-a-token", "scanned_at": now, "client_scan_id": "junk"},
        {"qr_signature": good.qr_signature, "scanned_at": now, "client_scan_id": "good"},
    ]
    body = client.post("/scanner/batch", json={"scans": scans}, headers=auth(festival["scanner"])).json()
    by_client = {r["client_scan_id"]: r for r in body["results"]}
    assert by_client["junk"]["error"] == scan_service.REASON_BAD_SIGNATURE
    assert by_client["good"]["success"] is True


def test_scan_history_lists_accepted_and_rejected(client, auth, festival, issue):
    ticket = issue(festival["event"], festival["ticket_type"], payment_id="pay_9")
    headers = auth(festival["scanner"])
    _scan(client, headers, ticket.qr_signature, location="Gate A")
    _scan(client, headers, ticket.qr_signature, location="Gate B")

    resp = client.get(f"/tickets/{ticket.id}/scans", headers=headers)
    assert resp.status_code == 200
    history = resp.json()
    assert [entry["scan_location"] for entry in history] == ["Gate A", "Gate B"]
    assert [entry["is_valid"] for entry in history] == [True, False]
    assert history[1]["rejection_reason"] == scan_service.REASON_REPLAY

    assert client.get(f"/tickets/{ticket.id}/scans", headers=auth(festival["attendee"])).status_code == 403


def _gate(festival):
    return scan_service.Scanner(user_id=festival["scanner"].id, organization_id=festival["org"].id)


def test_lost_scan_count_race_rolls_back_the_admission(monkeypatch, db, festival, issue):
    ticket = issue(festival["event"], festival["ticket_type"], payment_id="pay_race")
    monkeypatch.setattr(ticket_repo, "increment_scan_count", lambda db, **kwargs: False)

    result = scan_service.process_scan(db, ticket.qr_signature, _gate(festival), location="Gate C")
    assert result.success is False
    assert result.error == scan_service.REASON_CONCURRENT

    db.expire_all()
    stored = db.get(models.Ticket, ticket.id)
    assert stored.scan_count == 0
    assert stored.status == "paid"
    nonce = db.query(models.TicketNonce).filter(models.TicketNonce.ticket_id == ticket.id).one()
    assert nonce.used_at is None
    scans = db.query(models.TicketScan).filter(models.TicketScan.ticket_id == ticket.id).all()
    assert [(s.is_valid, s.rejection_reason) for s in scans] == [(False, scan_service.REASON_CONCURRENT)]

    monkeypatch.undo()
    retry = scan_service.process_scan(db, ticket.qr_signature, _gate(festival), location="Gate C")
    assert retry.success is True
    assert retry.status == "used"


def test_lost_nonce_race_is_reported_as_replay(monkeypatch, db, festival, issue):
    ticket = issue(festival["event"], festival["ticket_type"], payment_id="pay_race_2")
    monkeypatch.setattr(ticket_repo, "consume_nonce", lambda db, **kwargs: False)

    result = scan_service.process_scan(db, ticket.qr_signature, _gate(festival))
    assert result.success is False
    assert result.error == scan_service.REASON_REPLAY

    db.expire_all()
    stored = db.get(models.Ticket, ticket.id)
    assert stored.scan_count == 0
    assert stored.status == "paid"
    assert db.query(models.TicketScan).filter(models.TicketScan.is_valid.is_(True)).count() == 0
