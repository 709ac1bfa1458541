"""Dialect-aware INSERT constructs.

PostgreSQL and SQLite both support ``INSERT .. ON CONFLICT DO NOTHING``; the
generic ``sqlalchemy.insert`` does not expose it, so callers pick the
dialect-specific construct through ``insert_for``.
"""

from typing import Any

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession


def insert_for(session: AsyncSession, model: Any) -> Any:
    """Return an insert statement for ``model`` supporting ``on_conflict_do_nothing``."""
    dialect_name = session.get_bind().dialect.name
    if dialect_name == "postgresql":
        return pg_insert(model)
    if dialect_name == "sqlite":
        return sqlite_insert(model)
    raise NotImplementedError(f"ON CONFLICT inserts are not supported on {dialect_name}")
