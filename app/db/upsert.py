"""Dialect-aware INSERT .. ON CONFLICT.

PostgreSQL in production, SQLite in the test suite; both support
on_conflict_do_update() and RETURNING with the same call shape.
"""

from __future__ import annotations

from typing import Any

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession


def upsert_stmt(session: AsyncSession, table: Any):
    if session.get_bind().dialect.name == "sqlite":
        return sqlite_insert(table)
    return pg_insert(table)
