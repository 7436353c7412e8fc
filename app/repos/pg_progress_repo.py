"""PostgreSQL implementation of the relational progress backend."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.tables import CourseProgressRow, LessonProgressRow, QuizProgressRow
from app.db.upsert import upsert_stmt
from app.models.progress import ProgressKind, ProgressRecord, ensure_utc, validate_kind

_ROWS: dict[ProgressKind, Any] = {
    "course": CourseProgressRow,
    "lesson": LessonProgressRow,
    "quiz": QuizProgressRow,
}
_OWNER_COLUMNS: dict[ProgressKind, str] = {
    "course": "course_id",
    "lesson": "lesson_id",
    "quiz": "quiz_id",
}
_UPDATABLE = (
    "status",
    "started_at",
    "completed_at",
    "created_at",
    "updated_at",
    "metadata",
)


class PgProgressTableRepo:
    """Satisfies ProgressRepo and RelationalProgressSink over the per-kind tables.

    Writes are INSERT .. ON CONFLICT (<kind>_id, user_id) DO UPDATE, so
    a repeated write for the same key lands on the same row.  save() runs
    inside a SAVEPOINT, so a failed write leaves the rest of the session
    usable.
    """

    backend = "relational"

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(
        self, kind: ProgressKind, owner_id: int, user_id: int
    ) -> ProgressRecord | None:
        row_cls = _ROWS[validate_kind(kind)]
        stmt = (
            select(row_cls)
            .where(
                getattr(row_cls, _OWNER_COLUMNS[kind]) == owner_id,
                row_cls.user_id == user_id,
            )
            .execution_options(populate_existing=True)
        )
        row = (await self._session.execute(stmt)).scalar_one_or_none()
        if row is None:
            return None
        return _row_to_record(kind, row)

    async def save(self, record: ProgressRecord) -> ProgressRecord:
        kind = validate_kind(record.kind)
        async with self._session.begin_nested():
            insert = upsert_stmt(self._session, _ROWS[kind].__table__).values(
                _record_to_values(record)
            )
            stmt = insert.on_conflict_do_update(
                index_elements=[_OWNER_COLUMNS[kind], "user_id"],
                set_={c: insert.excluded[c] for c in _UPDATABLE},
            ).returning(_ROWS[kind].__table__.c.id)
            record.id = (await self._session.execute(stmt)).scalar_one()
        return record

    async def upsert_many(self, records: Sequence[ProgressRecord]) -> int:
        by_kind: dict[ProgressKind, dict[tuple[int, int], dict[str, Any]]] = {}
        for record in records:
            kind = validate_kind(record.kind)
            # Last write per key wins within one statement
            by_kind.setdefault(kind, {})[(record.owner_id, record.user_id)] = (
                _record_to_values(record)
            )

        for kind, values in by_kind.items():
            insert = upsert_stmt(self._session, _ROWS[kind].__table__).values(
                list(values.values())
            )
            await self._session.execute(
                insert.on_conflict_do_update(
                    index_elements=[_OWNER_COLUMNS[kind], "user_id"],
                    set_={c: insert.excluded[c] for c in _UPDATABLE},
                )
            )
        return sum(len(v) for v in by_kind.values())

    async def count(self, kind: ProgressKind) -> int:
        row_cls = _ROWS[validate_kind(kind)]
        stmt = select(func.count()).select_from(row_cls)
        return (await self._session.execute(stmt)).scalar_one()


def _record_to_values(record: ProgressRecord) -> dict[str, Any]:
    return {
        _OWNER_COLUMNS[record.kind]: record.owner_id,
        "user_id": record.user_id,
        "status": record.raw_status,
        "started_at": record.started_at,
        "completed_at": record.completed_at,
        "created_at": record.created_at,
        "updated_at": record.updated_at,
        "metadata": dict(record.metadata),
    }


def _row_to_record(kind: ProgressKind, row: Any) -> ProgressRecord:
    return ProgressRecord(
        id=row.id,
        kind=kind,
        owner_id=getattr(row, _OWNER_COLUMNS[kind]),
        user_id=row.user_id,
        raw_status=row.status,
        started_at=ensure_utc(row.started_at),
        completed_at=ensure_utc(row.completed_at),
        created_at=ensure_utc(row.created_at),  # type: ignore[arg-type]
        updated_at=ensure_utc(row.updated_at),  # type: ignore[arg-type]
        metadata=dict(row.meta or {}),
    )
