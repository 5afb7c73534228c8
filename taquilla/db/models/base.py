"""
Shared SQLAlchemy base and helpers.
"""
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import declarative_base

# Registers the JSONB compiler used when tests run on SQLite
from .. import sqlite_compiler_shims  # noqa: F401


def now_utc() -> datetime:
    """Return an aware UTC datetime for default/updated timestamps."""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


Base = declarative_base()
