import re
import uuid

from taquilla.db import models


def _issue(client, auth, festival, **overrides):
    payload = {
        "event_id": str(festival["event"].id),
        "ticket_type_id": str(festival["ticket_type"].id),
        "purchaser_email": festival["attendee"].email,
    }
    payload.update(overrides)
    resp = client.post("/tickets", json=payload, headers=auth(festival["admin"]))
    assert resp.status_code == 201, resp.text
    return resp.json()


def test_issue_requires_ticket_admin(client, auth, festival):
    payload = {
        "event_id": str(festival["event"].id),
        "ticket_type_id": str(festival["ticket_type"].id),
        "purchaser_email": "someone@example.com",
    }
    assert client.post("/tickets", json=payload, headers=auth(festival["scanner"])).status_code == 403
    assert client.post("/tickets", json=payload, headers=auth(festival["attendee"])).status_code == 403


def test_issue_many_returns_distinct_signed_tickets(client, auth, festival, db):
    tickets = _issue(client, auth, festival, quantity=3)
    assert len(tickets) == 3
    assert len({t["qr_signature"] for t in tickets}) == 3
    for t in tickets:
        assert re.fullmatch(r"TKT-\d{8}-[0-9A-F]{6}", t["ticket_number"])
        assert t["status"] == "issued"
        assert t["scan_count"] == 0
        assert t["organization_id"] == str(festival["org"].id)

    ticket_id = uuid.UUID(tickets[0]["id"])
    nonces = db.query(models.TicketNonce).filter(models.TicketNonce.ticket_id == ticket_id).all()
    assert len(nonces) == 1
    assert nonces[0].used_at is None


def test_issue_with_payment_starts_paid(client, auth, festival):
    ticket = _issue(client, auth, festival, payment_id="pay_123")[0]
    assert ticket["status"] == "paid"
    assert ticket["payment_id"] == "pay_123"


def test_issue_quantity_over_limit_is_rejected(client, auth, festival):
    payload = {
        "event_id": str(festival["event"].id),
        "ticket_type_id": str(festival["ticket_type"].id),
        "purchaser_email": "bulk@example.com",
        "quantity": 11,
    }
    resp = client.post("/tickets", json=payload, headers=auth(festival["admin"]))
    assert resp.status_code == 400
    assert resp.json()["code"] == "validation_error"


def test_issue_for_foreign_ticket_type_is_not_found(client, auth, festival, event_factory, ticket_type_factory):
    other_type = ticket_type_factory(event_factory(festival["org"]))
    payload = {
        "event_id": str(festival["event"].id),
        "ticket_type_id": str(other_type.id),
        "purchaser_email": "someone@example.com",
    }
    resp = client.post("/tickets", json=payload, headers=auth(festival["admin"]))
    assert resp.status_code == 404


def test_ticket_visible_to_holder_but_hidden_from_strangers(client, auth, festival):
    ticket = _issue(client, auth, festival)[0]
    assert client.get(f"/tickets/{ticket['id']}", headers=auth(festival["attendee"])).status_code == 200
    assert client.get(f"/tickets/{ticket['id']}", headers=auth("stranger@example.com")).status_code == 404


def test_qr_renderings(client, auth, festival):
    ticket = _issue(client, auth, festival)[0]
    svg = client.get(f"/tickets/{ticket['id']}/qr.svg", headers=auth(festival["attendee"]))
    assert svg.status_code == 200
    assert svg.headers["content-type"].startswith("image/svg+xml")
    assert svg.headers["cache-control"] == "no-store"
    assert b"<svg" in svg.content

    png = client.get(f"/tickets/{ticket['id']}/qr", headers=auth(festival["attendee"]))
    assert png.status_code == 200
    body = png.json()
    assert body["qr_signature"] == ticket["qr_signature"]
    assert body["data_url"].startswith("data:image/png;base64,")


def test_qr_of_revoked_ticket_is_gone(client, auth, festival):
    ticket = _issue(client, auth, festival)[0]
    resp = client.post(f"/tickets/{ticket['id']}/revoke", json={"reason": "chargeback"}, headers=auth(festival["admin"]))
    assert resp.status_code == 200
    assert resp.json()["status"] == "revoked"
    assert client.get(f"/tickets/{ticket['id']}/qr", headers=auth(festival["attendee"])).status_code == 410


def test_transitions_follow_lifecycle(client, auth, festival):
    ticket = _issue(client, auth, festival)[0]
    url = f"/tickets/{ticket['id']}/transition"

    resp = client.post(url, json={"status": "paid"}, headers=auth(festival["admin"]))
    assert resp.status_code == 200
    assert resp.json()["status"] == "paid"

    # Same-state transition is a no-op
    assert client.post(url, json={"status": "paid"}, headers=auth(festival["admin"])).status_code == 200

    resp = client.post(url, json={"status": "issued"}, headers=auth(festival["admin"]))
    assert resp.status_code == 409
    assert resp.json()["code"] == "invalid_transition"
    assert resp.json()["details"] == {"from": "paid", "to": "issued"}


def test_transition_requires_ticket_admin(client, auth, festival):
    ticket = _issue(client, auth, festival)[0]
    resp = client.post(f"/tickets/{ticket['id']}/transition", json={"status": "paid"}, headers=auth(festival["scanner"]))
    assert resp.status_code == 403


def test_revoked_ticket_cannot_be_revived(client, auth, festival):
    ticket = _issue(client, auth, festival)[0]
    client.post(f"/tickets/{ticket['id']}/revoke", json={}, headers=auth(festival["admin"]))
    resp = client.post(f"/tickets/{ticket['id']}/transition", json={"status": "paid"}, headers=auth(festival["admin"]))
    assert resp.status_code == 409


def test_bulk_revoke_by_event_skips_terminal_tickets(client, auth, festival):
    tickets = _issue(client, auth, festival, quantity=3)
    client.post(f"/tickets/{tickets[0]['id']}/revoke", json={}, headers=auth(festival["admin"]))

    resp = client.post(
        f"/events/{festival['event'].id}/tickets/revoke",
        json={"reason": "event cancelled"},
        headers=auth(festival["admin"]),
    )
    assert resp.status_code == 200
    assert resp.json() == {"revoked": 2}
    for t in tickets:
        assert client.get(f"/tickets/{t['id']}", headers=auth(festival["admin"])).json()["status"] == "revoked"


def test_revocations_are_audited(client, auth, festival, db):
    ticket = _issue(client, auth, festival)[0]
    client.post(f"/tickets/{ticket['id']}/revoke", json={"reason": "fraud"}, headers=auth(festival["admin"]))
    log = (
        db.query(models.AuditLog)
        .filter(models.AuditLog.action_type == "ticket_revoke", models.AuditLog.target_id == uuid.UUID(ticket["id"]))
        .one()
    )
    assert log.reason == "fraud"
    assert log.actor_user_id == festival["admin"].id
    assert log.organization_id == festival["org"].id
