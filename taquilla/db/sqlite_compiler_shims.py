"""SQLite compilation shims for PostgreSQL-specific SQLAlchemy types.

Lets ``Base.metadata.create_all()`` run against the in-memory SQLite engine
used by unit tests. JSONB becomes plain JSON; operators and indexes are lost.

Imported for side effects by ``taquilla.db.models``.
"""
from __future__ import annotations

from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.compiler import compiles


@compiles(JSONB, "sqlite")
def _compile_jsonb_sqlite(element, compiler, **kw):  # pragma: no cover - trivial
    return "JSON"
