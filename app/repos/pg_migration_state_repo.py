"""PostgreSQL implementation of MigrationStateRepo."""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.tables import ProgressMigrationStateRow
from app.db.upsert import upsert_stmt
from app.models.migration import MigrationPhase, MigrationState, MigrationStatus
from app.models.progress import ensure_utc

_ROW_ID = 1


class PgMigrationStateRepo:
    """Satisfies the MigrationStateRepo Protocol with a single-row table.

    The flag is one column of one row, so flipping it is a single-row
    write that commits atomically with the rest of the transaction.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def load(self) -> MigrationStatus:
        stmt = (
            select(ProgressMigrationStateRow)
            .where(ProgressMigrationStateRow.id == _ROW_ID)
            .execution_options(populate_existing=True)
        )
        row = (await self._session.execute(stmt)).scalar_one_or_none()
        if row is None:
            return MigrationStatus()
        return _row_to_status(row)

    async def save(self, status: MigrationStatus) -> None:
        values = {
            "state": status.state.value,
            "phase": status.phase.value,
            "cursor": status.cursor,
            "copied_total": status.copied_total,
            "copy_started_at": status.copy_started_at,
            "catch_up_since": status.catch_up_since,
            "round_started_at": status.round_started_at,
            "reconciled_at": status.reconciled_at,
            "updated_at": status.updated_at,
        }
        insert = upsert_stmt(self._session, ProgressMigrationStateRow.__table__).values(
            id=_ROW_ID, **values
        )
        await self._session.execute(
            insert.on_conflict_do_update(index_elements=["id"], set_=values)
        )


def _row_to_status(row: ProgressMigrationStateRow) -> MigrationStatus:
    return MigrationStatus(
        state=MigrationState(row.state),
        phase=MigrationPhase(row.phase),
        cursor=row.cursor,
        copied_total=row.copied_total,
        copy_started_at=ensure_utc(row.copy_started_at),
        catch_up_since=ensure_utc(row.catch_up_since),
        round_started_at=ensure_utc(row.round_started_at),
        reconciled_at=ensure_utc(row.reconciled_at),
        updated_at=ensure_utc(row.updated_at),
    )
