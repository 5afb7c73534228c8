import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from taquilla.db import models
from taquilla.db.models import as_utc
from taquilla.db.repositories import nfc as nfc_repo
from taquilla.services import nfc_validation_service, wallet_service
from taquilla.utils import token_crypto
from taquilla.utils.feature_flags import refresh_feature_flag_cache

MADRID = {"lat": 40.4168, "lng": -3.7038}
BARCELONA = {"lat": 41.3874, "lng": 2.1686}


def _bind(client, auth, user, band_uid="04:A1:B2:C3:D4:E5:F6"):
    headers = auth(user)
    token = client.post("/nfc/bind/prepare", headers=headers).json()["token"]
    signed = client.post("/nfc/bind/sign-payload", json={"token": token}, headers=headers).json()
    resp = client.post(
        "/nfc/bind/complete",
        json={"token": token, "band_uid": band_uid, "payload_signature": signed["signature"]},
        headers=headers,
    )
    assert resp.status_code == 200, resp.text
    return token, resp.json()


@pytest.fixture
def bound_band(client, auth, festival):
    _, body = _bind(client, auth, festival["attendee"])
    return body


def _validate(client, auth, festival, token, nonce, **extra):
    payload = {"token": token, "nonce": nonce, "event_id": str(festival["event"].id)}
    payload.update(extra)
    resp = client.post("/nfc/validate", json=payload, headers=auth(festival["scanner"]))
    assert resp.status_code == 200, resp.text
    return resp.json()


def test_prepare_returns_five_minute_token(client, auth, festival):
    resp = client.post("/nfc/bind/prepare", headers=auth(festival["attendee"]))
    assert resp.status_code == 200
    body = resp.json()
    assert body["expires_in"] == 300
    assert len(body["token"]) == 44


def test_sign_payload_matches_binding_payload(client, auth, festival):
    headers = auth(festival["attendee"])
    token = client.post("/nfc/bind/prepare", headers=headers).json()["token"]
    signed = client.post("/nfc/bind/sign-payload", json={"token": token}, headers=headers).json()
    assert signed["version"] == token_crypto.BINDING_PAYLOAD_VERSION
    assert signed["flags"] == 0
    assert signed["signature"] == token_crypto.sign_binding_payload(token, signed["expires_at"])


def test_complete_binding_issues_security_token(bound_band, festival, db):
    band = bound_band["band"]
    assert band["band_uid"] == "04:A1:B2:C3:D4:E5:F6"
    assert band["user_id"] == str(festival["attendee"].id)
    assert band["status"] == "active"
    assert band["binding_verified_at"] is not None

    payload = token_crypto.verify_band_token(bound_band["security_token"])
    assert payload.band_id == band["id"]
    assert payload.binding_verified is True
    stored = db.query(models.NfcBand).filter(models.NfcBand.band_uid == band["band_uid"]).one()
    assert stored.security_token == bound_band["security_token"]


def test_binding_token_is_single_use(client, auth, festival):
    token, _ = _bind(client, auth, festival["attendee"])
    resp = client.post(
        "/nfc/bind/complete",
        json={"token": token, "band_uid": "04:FF:FF:FF"},
        headers=auth(festival["attendee"]),
    )
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Binding token already used"


def test_binding_token_belongs_to_preparing_user(client, auth, festival):
    token = client.post("/nfc/bind/prepare", headers=auth(festival["attendee"])).json()["token"]
    resp = client.post("/nfc/bind/complete", json={"token": token}, headers=auth("thief@example.com"))
    assert resp.status_code == 403
    assert resp.json()["detail"] == "Binding token does not belong to current user"


def test_bad_payload_signature_leaves_token_usable(client, auth, festival):
    headers = auth(festival["attendee"])
    token = client.post("/nfc/bind/prepare", headers=headers).json()["token"]
    resp = client.post("/nfc/bind/complete", json={"token": token, "payload_signature": "00" * 32}, headers=headers)
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Invalid payload signature"

    resp = client.post("/nfc/bind/complete", json={"token": token, "payload_signature": "\u00e9" * 64}, headers=headers)
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Invalid payload signature"

    resp = client.post("/nfc/bind/complete", json={"token": token}, headers=headers)
    assert resp.status_code == 200
    assert resp.json()["band"]["band_uid"].startswith("web-nfc-")


def test_band_bound_to_someone_else_conflicts(client, auth, festival, bound_band):
    headers = auth("second@example.com")
    token = client.post("/nfc/bind/prepare", headers=headers).json()["token"]
    resp = client.post(
        "/nfc/bind/complete",
        json={"token": token, "band_uid": bound_band["band"]["band_uid"]},
        headers=headers,
    )
    assert resp.status_code == 409


def test_list_and_refresh_own_band(client, auth, festival, bound_band):
    headers = auth(festival["attendee"])
    bands = client.get("/nfc/bands", headers=headers).json()
    assert [b["id"] for b in bands] == [bound_band["band"]["id"]]

    resp = client.post(f"/nfc/bands/{bound_band['band']['id']}/refresh-token", headers=headers)
    assert resp.status_code == 200
    fresh = resp.json()["security_token"]
    assert fresh != bound_band["security_token"]

    # The previous token no longer matches the stored one
    stale = _validate(client, auth, festival, bound_band["security_token"], "nonce-stale-1")
    assert stale["valid"] is False
    assert stale["error"] == "Invalid NFC token: token does not match stored token"


def test_refresh_of_foreign_band_is_forbidden(client, auth, bound_band):
    resp = client.post(f"/nfc/bands/{bound_band['band']['id']}/refresh-token", headers=auth("other@example.com"))
    assert resp.status_code == 403


def test_lost_band_clears_token_and_only_staff_reactivate_deactivated(client, auth, festival, bound_band, user_factory):
    band_id = uuid.UUID(bound_band["band"]["id"])
    headers = auth(festival["attendee"])

    resp = client.post(f"/nfc/bands/{band_id}/status", json={"status": "lost"}, headers=headers)
    assert resp.status_code == 200
    assert resp.json()["status"] == "lost"
    assert resp.json()["token_expires_at"] is None

    client.post(f"/nfc/bands/{band_id}/status", json={"status": "deactivated"}, headers=headers)
    resp = client.post(f"/nfc/bands/{band_id}/status", json={"status": "active"}, headers=headers)
    assert resp.status_code == 403

    root = user_factory("root@taquilla.example", is_superadmin=True)
    resp = client.post(f"/nfc/bands/{band_id}/status", json={"status": "active"}, headers=auth(root))
    assert resp.status_code == 200
    assert resp.json()["status"] == "active"


def test_challenge_response_verification(client, auth, bound_band):
    headers = auth("anyone@example.com")
    challenge = client.get("/nfc/challenge", headers=headers).json()["challenge"]
    band = bound_band["band"]
    good = token_crypto.challenge_response(band["band_uid"], challenge)
    url = f"/nfc/bands/{band['id']}/verify"
    assert client.post(url, json={"challenge": challenge, "response": good}, headers=headers).json() == {"verified": True}
    assert client.post(url, json={"challenge": challenge, "response": "0" * len(good)}, headers=headers).json() == {"verified": False}
    assert client.post(url, json={"challenge": challenge, "response": "\u00e9"}, headers=headers).json() == {"verified": False}


def test_staff_register_band(client, auth, festival):
    payload = {"band_uid": "04:11:22:33", "user_id": str(festival["attendee"].id), "event_id": str(festival["event"].id)}
    resp = client.post("/nfc/bands", json=payload, headers=auth(festival["scanner"]))
    assert resp.status_code == 201, resp.text
    body = resp.json()
    assert body["band"]["event_id"] == str(festival["event"].id)
    assert body["security_token"]

    assert client.post("/nfc/bands", json=payload, headers=auth(festival["attendee"])).status_code == 403


def test_validate_accepts_once_per_nonce(client, auth, festival, bound_band):
    token = bound_band["security_token"]
    first = _validate(client, auth, festival, token, "nonce-0001")
    assert first["valid"] is True
    assert first["band_id"] == bound_band["band"]["id"]
    assert first["user_id"] == str(festival["attendee"].id)

    replay = _validate(client, auth, festival, token, "nonce-0001")
    assert replay["valid"] is False
    assert replay["error"] == nfc_validation_service.REASON_NONCE_REPLAY


def test_validate_requires_terminal_role(client, auth, festival, bound_band):
    payload = {"token": bound_band["security_token"], "nonce": "nonce-0002", "event_id": str(festival["event"].id)}
    assert client.post("/nfc/validate", json=payload, headers=auth(festival["attendee"])).status_code == 403
    # No event means no role can apply
    del payload["event_id"]
    assert client.post("/nfc/validate", json=payload, headers=auth(festival["scanner"])).status_code == 403


def test_validate_rate_limit(client, auth, festival, bound_band):
    token = bound_band["security_token"]
    for i in range(10):
        assert _validate(client, auth, festival, token, f"nonce-rate-{i:02d}")["valid"] is True
    limited = _validate(client, auth, festival, token, "nonce-rate-10")
    assert limited["valid"] is False
    assert limited["error"] == "Rate limit exceeded"


def test_band_scoped_to_other_event_is_rejected(client, auth, festival, event_factory, role_factory):
    other = event_factory(festival["org"])
    role_factory(festival["scanner"], "scanner", other)
    payload = {"band_uid": "04:EE:EE:EE", "user_id": str(festival["attendee"].id), "event_id": str(other.id)}
    token = client.post("/nfc/bands", json=payload, headers=auth(festival["scanner"])).json()["security_token"]
    result = _validate(client, auth, festival, token, "nonce-event-1")
    assert result["valid"] is False
    assert result["error"] == "NFC band not valid for this event"


def test_concurrent_use_far_apart_deactivates_band(client, auth, festival, bound_band, db):
    token = bound_band["security_token"]
    first = _validate(client, auth, festival, token, "nonce-geo-01", location=MADRID)
    assert first["valid"] is True
    assert first["session_token"]

    second = _validate(client, auth, festival, token, "nonce-geo-02", location=BARCELONA)
    assert second["valid"] is False
    assert second["error"].startswith("Concurrent use detected")

    band = db.query(models.NfcBand).filter(models.NfcBand.id == first["band_id"]).one()
    db.refresh(band)
    assert band.status == "deactivated"
    assert band.get_metadata()["cloningAlert"]["confidence"] == "high"

    third = _validate(client, auth, festival, token, "nonce-geo-03")
    assert third["error"] == "NFC band is deactivated"


def test_usage_session_can_be_ended_by_owner(client, auth, festival, bound_band):
    session_token = _validate(client, auth, festival, bound_band["security_token"], "nonce-sess-1", location=MADRID)[
        "session_token"
    ]
    assert client.post(f"/nfc/sessions/{session_token}/end", headers=auth("nobody@example.com")).status_code == 403

    resp = client.post(f"/nfc/sessions/{session_token}/end", headers=auth(festival["attendee"]))
    assert resp.status_code == 200
    assert resp.json()["session_token"] == session_token

    again = client.post(f"/nfc/sessions/{session_token}/end", headers=auth(festival["attendee"]))
    assert again.status_code == 400


@pytest.fixture
def funded_band(db, festival, bound_band):
    wallet_service.credit(
        db,
        festival["attendee"].id,
        Decimal("50.00"),
        wallet_service.Reference(type="reload", id="cash-desk-1"),
    )
    return bound_band


def _pay(client, auth, festival, band, amount, nonce):
    payload = {
        "band_uid": band["band"]["band_uid"],
        "amount": amount,
        "event_id": str(festival["event"].id),
        "token": band["security_token"],
        "nonce": nonce,
    }
    return client.post("/nfc/payment", json=payload, headers=auth(festival["scanner"]))


def test_payment_debits_wallet_and_is_idempotent_per_nonce(client, auth, festival, funded_band, db):
    resp = _pay(client, auth, festival, funded_band, "12.50", "nonce-pay-01")
    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert Decimal(body["new_balance"]) == Decimal("37.50")

    retry = _pay(client, auth, festival, funded_band, "12.50", "nonce-pay-01")
    assert retry.status_code == 200
    assert retry.json()["transaction_id"] == body["transaction_id"]
    assert wallet_service.get_balance(db, festival["attendee"].id) == Decimal("37.50")

    nfc_tx = db.query(models.NfcTransaction).one()
    assert nfc_tx.amount_cents == 1250
    nonce = db.query(models.NfcNonce).filter(models.NfcNonce.nonce == "nonce-pay-01").one()
    assert nonce.transaction_id == nfc_tx.id


def test_payment_with_insufficient_balance(client, auth, festival, funded_band, db):
    resp = _pay(client, auth, festival, funded_band, "80.00", "nonce-pay-02")
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Insufficient balance"
    assert wallet_service.get_balance(db, festival["attendee"].id) == Decimal("50.00")


def test_payment_disabled_by_flag(monkeypatch, client, auth, festival, funded_band):
    monkeypatch.setenv("FEATURE_NFC_PAYMENTS_ENABLED", "false")
    refresh_feature_flag_cache()
    resp = _pay(client, auth, festival, funded_band, "1.00", "nonce-pay-03")
    assert resp.status_code == 403
    assert resp.json()["detail"] == "NFC payments are disabled"


def test_payment_for_unknown_band(client, auth, festival):
    payload = {"band_uid": "04:00:00:00", "amount": "1.00", "event_id": str(festival["event"].id)}
    resp = client.post("/nfc/payment", json=payload, headers=auth(festival["scanner"]))
    assert resp.status_code == 404


def test_expired_binding_token_is_rejected(client, auth, festival, db):
    headers = auth(festival["attendee"])
    token = client.post("/nfc/bind/prepare", headers=headers).json()["token"]
    row = db.query(models.BindingToken).filter(models.BindingToken.token == token).one()
    row.expires_at = datetime.now(timezone.utc) - timedelta(seconds=1)
    db.commit()

    resp = client.post("/nfc/bind/complete", json={"token": token}, headers=headers)
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Binding token expired"
    assert client.post("/nfc/bind/sign-payload", json={"token": token}, headers=headers).status_code == 400


def test_rate_limit_window_restarts_after_a_minute(db, bound_band):
    band_id = uuid.UUID(bound_band["band"]["id"])
    row = db.query(models.NfcRateLimit).filter(models.NfcRateLimit.nfc_band_id == band_id).one()
    start = as_utc(row.window_start)

    remaining = [nfc_validation_service.check_rate_limit(db, row.nfc_band_id, start).remaining for _ in range(10)]
    assert remaining == list(range(9, -1, -1))
    assert nfc_validation_service.check_rate_limit(db, row.nfc_band_id, start).allowed is False

    later = start + timedelta(seconds=61)
    status = nfc_validation_service.check_rate_limit(db, row.nfc_band_id, later)
    assert status.allowed is True
    assert status.remaining == 9
    assert status.reset_at == later + timedelta(seconds=60)
    db.refresh(row)
    assert row.request_count == 1
    assert as_utc(row.window_start) == later
    assert nfc_validation_service.check_rate_limit(db, row.nfc_band_id, later).remaining == 8


def test_rate_limit_counts_in_the_database_not_the_session(db, bound_band):
    band_id = uuid.UUID(bound_band["band"]["id"])
    row = db.query(models.NfcRateLimit).filter(models.NfcRateLimit.nfc_band_id == band_id).one()
    row.request_count = 9
    db.commit()
    start = as_utc(row.window_start)

    # Another terminal takes the last slot; this session still holds request_count=9
    db.execute(
        models.NfcRateLimit.__table__.update()
        .where(models.NfcRateLimit.id == row.id)
        .values(request_count=10)
    )
    assert row.request_count == 9
    status = nfc_validation_service.check_rate_limit(db, row.nfc_band_id, start)
    assert status.allowed is False
    db.refresh(row)
    assert row.request_count == 10


def test_register_refuses_inactive_band(client, auth, festival, db):
    payload = {"band_uid": "04:99:88:77", "user_id": str(festival["attendee"].id), "event_id": str(festival["event"].id)}
    assert client.post("/nfc/bands", json=payload, headers=auth(festival["scanner"])).status_code == 201
    band = nfc_repo.get_band_by_uid(db, "04:99:88:77")
    band.status = "deactivated"
    db.commit()

    resp = client.post("/nfc/bands", json=payload, headers=auth(festival["scanner"]))
    assert resp.status_code == 400
    assert resp.json()["detail"] == "NFC band is deactivated"
    db.refresh(band)
    assert band.status == "deactivated"


def test_register_existing_unbound_band_verifies_binding(client, auth, festival, db):
    band = nfc_repo.create_band(db, band_uid="04:55:44:33", user_id=None, event_id=festival["event"].id)
    db.commit()
    assert band.binding_verified_at is None

    payload = {"band_uid": "04:55:44:33", "user_id": str(festival["attendee"].id), "event_id": str(festival["event"].id)}
    resp = client.post("/nfc/bands", json=payload, headers=auth(festival["scanner"]))
    assert resp.status_code == 201, resp.text
    db.refresh(band)
    assert band.user_id == festival["attendee"].id
    assert band.binding_verified_at is not None

    tap = _validate(client, auth, festival, resp.json()["security_token"], "nonce-registered-1")
    assert tap["valid"] is True
