import uuid
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

import taquilla.db.database as db_module
from taquilla.db import models
from taquilla.db.repositories import users as user_repo
from taquilla.api.main import app
from taquilla.utils.feature_flags import refresh_feature_flag_cache

TEST_JWT_SECRET = "taquilla-test-secret"

_ENV_TO_CLEAR = [
    "DEV_MODE",
    "ADMIN_EMAILS",
    "FEATURE_NFC_PAYMENTS_ENABLED",
    "FEATURE_ANTI_CLONING_ENABLED",
    "FEATURE_EVENT_TIME_WINDOW_ENABLED",
    "WALLET_CAS_MAX_ATTEMPTS",
]


@pytest.fixture(autouse=True)
def _test_env():
    # Own MonkeyPatch so a test's monkeypatch.undo() does not drop the base env
    with pytest.MonkeyPatch.context() as env:
        env.setenv("JWT_SECRET", TEST_JWT_SECRET)
        for name in _ENV_TO_CLEAR:
            env.delenv(name, raising=False)
        refresh_feature_flag_cache()
        yield
        refresh_feature_flag_cache()


# Session shared between test code and API requests of the current test
_CURRENT_SESSION = None


@pytest.fixture(autouse=True)
def db_session():
    """Fresh in-memory SQLite schema per test."""
    global _CURRENT_SESSION
    db_module.init_sqlite_schema()
    session = db_module.SessionLocal()
    _CURRENT_SESSION = session
    try:
        yield session
    finally:
        _CURRENT_SESSION = None
        session.close()
        models.Base.metadata.drop_all(bind=db_module.engine)


def _override_get_db():
    if _CURRENT_SESSION is not None:
        yield _CURRENT_SESSION
        return
    session = db_module.SessionLocal()
    try:
        yield session
    finally:
        session.close()


app.dependency_overrides[db_module.get_db] = _override_get_db


@pytest.fixture
def db(db_session):
    return db_session


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def auth():
    """Build oauth2-proxy identity headers for a user or email."""
    def _headers(who):
        email = who if isinstance(who, str) else who.email
        return {"x-auth-request-user": email.split("@")[0], "x-auth-request-email": email}
    return _headers


# Factories

@pytest.fixture
def organization_factory(db_session: Session):
    def _create(name: str = None):
        suffix = uuid.uuid4().hex[:8]
        org = models.Organization(name=name or f"Org {suffix}", slug=f"org-{suffix}")
        db_session.add(org)
        db_session.commit()
        db_session.refresh(org)
        return org
    return _create


@pytest.fixture
def user_factory(db_session: Session):
    def _create(email: str = None, organization=None, is_superadmin: bool = False):
        email = email or f"user_{uuid.uuid4().hex[:8]}@example.com"
        user = models.User(
            email=email,
            display_name=email.split("@")[0],
            is_superadmin=is_superadmin,
            organization_id=organization.id if organization is not None else None,
        )
        db_session.add(user)
        db_session.commit()
        db_session.refresh(user)
        return user
    return _create


@pytest.fixture
def event_factory(db_session: Session):
    def _create(organization=None, start=None, end=None, is_multi_day: bool = False):
        now = datetime.now(timezone.utc)
        event = models.Event(
            organization_id=organization.id if organization is not None else None,
            name="Festival",
            slug=f"festival-{uuid.uuid4().hex[:8]}",
            start_date=start or now - timedelta(hours=1),
            end_date=end or now + timedelta(hours=6),
            is_multi_day=is_multi_day,
            status="live",
        )
        db_session.add(event)
        db_session.commit()
        db_session.refresh(event)
        return event
    return _create


@pytest.fixture
def ticket_type_factory(db_session: Session):
    def _create(event, is_multi_scan: bool = False, max_scans: int = None, price_cents: int = 2500):
        ticket_type = models.TicketType(
            event_id=event.id,
            name="General Admission",
            price_cents=price_cents,
            is_multi_scan=is_multi_scan,
            max_scans=max_scans,
        )
        db_session.add(ticket_type)
        db_session.commit()
        db_session.refresh(ticket_type)
        return ticket_type
    return _create


@pytest.fixture
def usage_rule_factory(db_session: Session):
    def _create(ticket_type, rule_type: str, config: dict, priority: int = 0):
        rule = models.TicketUsageRule(
            ticket_type_id=ticket_type.id,
            rule_type=rule_type,
            rule_config=config,
            priority=priority,
            is_active=True,
        )
        db_session.add(rule)
        db_session.commit()
        db_session.refresh(rule)
        return rule
    return _create


@pytest.fixture
def role_factory(db_session: Session):
    def _create(user, role: str, event=None):
        row = user_repo.grant_role(
            db_session, user_id=user.id, role=role, event_id=event.id if event is not None else None
        )
        db_session.commit()
        return row
    return _create


@pytest.fixture
def festival(organization_factory, user_factory, event_factory, ticket_type_factory, role_factory):
    """An organization with a live event, a ticket type and its staff."""
    org = organization_factory()
    event = event_factory(org)
    ticket_type = ticket_type_factory(event)
    admin = user_factory("admin@festival.example", organization=org)
    role_factory(admin, "event_admin", event)
    scanner = user_factory("scanner@festival.example", organization=org)
    role_factory(scanner, "scanner", event)
    accountant = user_factory("accounting@festival.example", organization=org)
    role_factory(accountant, "accounting")
    attendee = user_factory("attendee@example.com")
    return {
        "org": org,
        "event": event,
        "ticket_type": ticket_type,
        "admin": admin,
        "scanner": scanner,
        "accountant": accountant,
        "attendee": attendee,
    }
