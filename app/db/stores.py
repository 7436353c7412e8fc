"""Unit of work over the progress stores.

open_progress_stores() yields the legacy backend, the relational
backend and the migration-state repo bound to ONE transaction.  With
DATABASE_URL set they share an AsyncSession that commits when the block
exits cleanly and rolls back otherwise; without it they are the
process-wide in-memory stores below.

Sharing the session is what lets the migration runner advance its
cursor in the same commit as the batch it copied, and lets a request
read the migration flag and the progress it selects in one snapshot.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from app.db.engine import async_session_factory, session_scope
from app.repos.activity_log_store import InMemoryActivityLogStore
from app.repos.migration_state_repo import (
    InMemoryMigrationStateRepo,
    MigrationStateRepo,
)
from app.repos.pg_activity_log_store import PgActivityLogStore
from app.repos.pg_migration_state_repo import PgMigrationStateRepo
from app.repos.pg_progress_repo import PgProgressTableRepo
from app.repos.progress_repo import (
    InMemoryProgressTableRepo,
    LegacyLogProgressRepo,
    LegacyProgressSource,
    RelationalProgressSink,
)


@dataclass(frozen=True, slots=True)
class ProgressStores:
    legacy: LegacyProgressSource
    relational: RelationalProgressSink
    migration_state: MigrationStateRepo


# In-memory fallbacks, shared by every request in this process
memory_activity_log = InMemoryActivityLogStore()
memory_progress_tables = InMemoryProgressTableRepo()
memory_migration_state = InMemoryMigrationStateRepo()


def reset_memory_stores() -> None:
    """Empty the in-memory stores (tests)."""
    memory_activity_log.clear()
    memory_progress_tables.clear()
    memory_migration_state.clear()


@asynccontextmanager
async def open_progress_stores() -> AsyncGenerator[ProgressStores, None]:
    if async_session_factory is None:
        yield ProgressStores(
            legacy=LegacyLogProgressRepo(memory_activity_log),
            relational=memory_progress_tables,
            migration_state=memory_migration_state,
        )
        return

    async with session_scope(async_session_factory) as session:
        yield ProgressStores(
            legacy=LegacyLogProgressRepo(PgActivityLogStore(session)),
            relational=PgProgressTableRepo(session),
            migration_state=PgMigrationStateRepo(session),
        )


@asynccontextmanager
async def open_relational_tables() -> AsyncGenerator[RelationalProgressSink, None]:
    """The relational tables in a unit of work of their own (dual-write copies)."""
    if async_session_factory is None:
        yield memory_progress_tables
        return

    async with session_scope(async_session_factory) as session:
        yield PgProgressTableRepo(session)
