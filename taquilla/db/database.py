"""
Database engine and session management.

Builds the SQLAlchemy engine from environment configuration. Under pytest the
engine points at an in-memory SQLite database shared through ``StaticPool``
unless ``TAQUILLA_TEST_DB`` or ``TEST_DATABASE_URL`` selects another one.
"""
import os

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from taquilla.utils.runtime import running_under_pytest

_POSTGRES_VARS = ("POSTGRES_USER", "POSTGRES_PASSWORD", "POSTGRES_HOST", "POSTGRES_PORT", "POSTGRES_DB")

SQLITE_MEMORY_URL = "sqlite+pysqlite:///:memory:"


def _get_database_url() -> str:
    if os.getenv("DATABASE_URL"):
        return os.getenv("DATABASE_URL")

    values = {name: os.getenv(name) for name in _POSTGRES_VARS}
    missing = [name for name, value in values.items() if not value]
    if missing:
        if running_under_pytest():
            return SQLITE_MEMORY_URL
        raise ValueError(f"Missing required database environment variables: {', '.join(missing)}")

    return (
        f"postgresql://{values['POSTGRES_USER']}:{values['POSTGRES_PASSWORD']}"
        f"@{values['POSTGRES_HOST']}:{values['POSTGRES_PORT']}/{values['POSTGRES_DB']}"
    )


def _resolve_url() -> str:
    # Test override order: TAQUILLA_TEST_DB, then TEST_DATABASE_URL (e2e), then sqlite under pytest.
    explicit_test_db = os.getenv("TAQUILLA_TEST_DB")
    if explicit_test_db:
        return explicit_test_db
    e2e_db = os.getenv("TEST_DATABASE_URL")
    if e2e_db:
        return e2e_db
    if running_under_pytest():
        return SQLITE_MEMORY_URL
    return _get_database_url()


def _engine_kwargs(url: str) -> dict:
    if not url.startswith("sqlite"):
        return {"pool_pre_ping": True}
    kwargs = {"connect_args": {"check_same_thread": False}}
    if ":memory:" in url:
        # One shared connection so the schema survives across sessions
        kwargs["poolclass"] = StaticPool
    return kwargs


DATABASE_URL = _resolve_url()
engine = create_engine(DATABASE_URL, **_engine_kwargs(DATABASE_URL))

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_sqlite_schema() -> None:
    """Create tables directly for SQLite databases; Postgres uses Alembic."""
    if str(engine.url).startswith("sqlite"):
        from taquilla.db import models

        models.Base.metadata.create_all(bind=engine)


def get_db():
    """Dependency to get a database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
