"""PostgreSQL implementation of ActivityLogStore."""

from __future__ import annotations

import datetime
from collections.abc import Mapping, Sequence

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.tables import ActivityLogMetaRow, ActivityLogRow
from app.db.upsert import upsert_stmt
from app.models.activity import ActivityEntry, ActivityKey
from app.models.progress import Clock, ensure_utc, utcnow


class PgActivityLogStore:
    """Satisfies the ActivityLogStore Protocol.

    Uniqueness per key comes from uq_activity_log_key; concurrent first
    writes for the same key collapse into one entry via ON CONFLICT.
    """

    def __init__(self, session: AsyncSession, clock: Clock = utcnow) -> None:
        self._session = session
        self._clock = clock

    async def find(self, key: ActivityKey) -> ActivityEntry | None:
        stmt = (
            select(ActivityLogRow)
            .where(
                ActivityLogRow.user_id == key.user_id,
                ActivityLogRow.entity_id == key.entity_id,
                ActivityLogRow.type == key.type,
            )
            .execution_options(populate_existing=True)
        )
        row = (await self._session.execute(stmt)).scalar_one_or_none()
        if row is None:
            return None
        meta = await self._load_meta([row.id])
        return _row_to_entry(row, meta.get(row.id, {}))

    async def upsert(
        self,
        key: ActivityKey,
        meta: Mapping[str, str | None],
        *,
        created_at: datetime.datetime,
    ) -> ActivityEntry:
        now = self._clock()
        insert = upsert_stmt(self._session, ActivityLogRow.__table__).values(
            user_id=key.user_id,
            entity_id=key.entity_id,
            type=key.type,
            created_at=created_at,
            logged_at=now,
        )
        stmt = insert.on_conflict_do_update(
            index_elements=["user_id", "entity_id", "type"],
            set_={"logged_at": insert.excluded.logged_at},
        ).returning(ActivityLogRow.__table__.c.id)
        entry_id = (await self._session.execute(stmt)).scalar_one()

        removed = [k for k, v in meta.items() if v is None]
        if removed:
            await self._session.execute(
                delete(ActivityLogMetaRow).where(
                    ActivityLogMetaRow.entry_id == entry_id,
                    ActivityLogMetaRow.meta_key.in_(removed),
                )
            )
        values = [
            {"entry_id": entry_id, "meta_key": k, "meta_value": v}
            for k, v in meta.items()
            if v is not None
        ]
        if values:
            meta_insert = upsert_stmt(self._session, ActivityLogMetaRow.__table__).values(
                values
            )
            await self._session.execute(
                meta_insert.on_conflict_do_update(
                    index_elements=["entry_id", "meta_key"],
                    set_={"meta_value": meta_insert.excluded.meta_value},
                )
            )

        row = (
            await self._session.execute(
                select(ActivityLogRow)
                .where(ActivityLogRow.id == entry_id)
                .execution_options(populate_existing=True)
            )
        ).scalar_one()
        loaded = await self._load_meta([entry_id])
        return _row_to_entry(row, loaded.get(entry_id, {}))

    async def scan(
        self,
        types: Sequence[str],
        *,
        after_id: int = 0,
        limit: int = 100,
        logged_since: datetime.datetime | None = None,
    ) -> list[ActivityEntry]:
        stmt = (
            select(ActivityLogRow)
            .where(ActivityLogRow.type.in_(list(types)), ActivityLogRow.id > after_id)
            .order_by(ActivityLogRow.id)
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        if logged_since is not None:
            stmt = stmt.where(ActivityLogRow.logged_at >= logged_since)
        rows = (await self._session.execute(stmt)).scalars().all()
        meta = await self._load_meta([r.id for r in rows])
        return [_row_to_entry(r, meta.get(r.id, {})) for r in rows]

    async def count(self, type: str) -> int:
        stmt = select(func.count()).select_from(ActivityLogRow).where(
            ActivityLogRow.type == type
        )
        return (await self._session.execute(stmt)).scalar_one()

    async def _load_meta(self, entry_ids: list[int]) -> dict[int, dict[str, str]]:
        if not entry_ids:
            return {}
        stmt = (
            select(ActivityLogMetaRow)
            .where(ActivityLogMetaRow.entry_id.in_(entry_ids))
            .execution_options(populate_existing=True)
        )
        grouped: dict[int, dict[str, str]] = {}
        for m in (await self._session.execute(stmt)).scalars():
            grouped.setdefault(m.entry_id, {})[m.meta_key] = m.meta_value
        return grouped


def _row_to_entry(row: ActivityLogRow, meta: dict[str, str]) -> ActivityEntry:
    return ActivityEntry(
        id=row.id,
        user_id=row.user_id,
        entity_id=row.entity_id,
        type=row.type,
        created_at=ensure_utc(row.created_at),  # type: ignore[arg-type]
        logged_at=ensure_utc(row.logged_at),  # type: ignore[arg-type]
        meta=meta,
    )
