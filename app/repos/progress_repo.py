from __future__ import annotations

import datetime
from collections.abc import Sequence
from dataclasses import replace
from typing import Protocol

from app.models.activity import ActivityEntry, ActivityKey
from app.models.progress import (
    PROGRESS_KINDS,
    ProgressKey,
    ProgressKind,
    ProgressRecord,
    validate_kind,
)
from app.repos.activity_log_store import ActivityLogStore


class ProgressRepo(Protocol):
    """Storage contract shared by the legacy log and the relational tables."""

    backend: str

    async def get(
        self, kind: ProgressKind, owner_id: int, user_id: int
    ) -> ProgressRecord | None: ...

    async def save(self, record: ProgressRecord) -> ProgressRecord:
        """Upsert by (kind, owner_id, user_id) and set record.id."""
        ...

    async def count(self, kind: ProgressKind) -> int: ...


class LegacyProgressSource(ProgressRepo, Protocol):
    async def scan(
        self,
        *,
        after_id: int = 0,
        limit: int = 100,
        updated_since: datetime.datetime | None = None,
    ) -> list[ProgressRecord]:
        """Records in stable id order, optionally only those written since a time."""
        ...


class RelationalProgressSink(ProgressRepo, Protocol):
    async def upsert_many(self, records: Sequence[ProgressRecord]) -> int: ...


# ---------------------------------------------------------------------------
# Legacy backend: progress as one activity-log entry with string metadata
# ---------------------------------------------------------------------------

_ENTRY_TYPES: dict[ProgressKind, str] = {
    "course": "course_status",
    "lesson": "lesson_status",
    "quiz": "quiz_status",
}
_KINDS_BY_TYPE = {v: k for k, v in _ENTRY_TYPES.items()}

META_STATUS = "status"
META_STARTED_AT = "started_at"
META_COMPLETED_AT = "completed_at"
META_UPDATED_AT = "updated_at"


class LegacyLogProgressRepo:
    """Progress stored in the generic activity log.

    The record's raw status and timestamps live in the entry's metadata
    as strings; the entry's own created_at is the record's created_at.
    Metadata on the record is not persisted by this backend, and
    unrelated metadata keys on the entry are left untouched.
    """

    backend = "legacy"

    def __init__(self, store: ActivityLogStore) -> None:
        self._store = store

    async def get(
        self, kind: ProgressKind, owner_id: int, user_id: int
    ) -> ProgressRecord | None:
        key = ActivityKey(
            user_id=user_id, entity_id=owner_id, type=_ENTRY_TYPES[validate_kind(kind)]
        )
        entry = await self._store.find(key)
        if entry is None:
            return None
        return _entry_to_record(entry)

    async def save(self, record: ProgressRecord) -> ProgressRecord:
        key = ActivityKey(
            user_id=record.user_id,
            entity_id=record.owner_id,
            type=_ENTRY_TYPES[validate_kind(record.kind)],
        )
        entry = await self._store.upsert(
            key,
            {
                META_STATUS: record.raw_status,
                META_STARTED_AT: _format(record.started_at),
                META_COMPLETED_AT: _format(record.completed_at),
                META_UPDATED_AT: _format(record.updated_at),
            },
            created_at=record.created_at,
        )
        record.id = entry.id
        return record

    async def count(self, kind: ProgressKind) -> int:
        return await self._store.count(_ENTRY_TYPES[validate_kind(kind)])

    async def scan(
        self,
        *,
        after_id: int = 0,
        limit: int = 100,
        updated_since: datetime.datetime | None = None,
    ) -> list[ProgressRecord]:
        entries = await self._store.scan(
            list(_ENTRY_TYPES.values()),
            after_id=after_id,
            limit=limit,
            logged_since=updated_since,
        )
        return [_entry_to_record(e) for e in entries]


def _format(value: datetime.datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse(value: str | None) -> datetime.datetime | None:
    if not value:
        return None
    parsed = datetime.datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=datetime.UTC)
    return parsed


def _entry_to_record(entry: ActivityEntry) -> ProgressRecord:
    return ProgressRecord(
        id=entry.id,
        kind=_KINDS_BY_TYPE[entry.type],
        owner_id=entry.entity_id,
        user_id=entry.user_id,
        raw_status=entry.meta.get(META_STATUS) or None,
        started_at=_parse(entry.meta.get(META_STARTED_AT)),
        completed_at=_parse(entry.meta.get(META_COMPLETED_AT)),
        created_at=entry.created_at,
        updated_at=_parse(entry.meta.get(META_UPDATED_AT)) or entry.logged_at,
    )


# ---------------------------------------------------------------------------
# Relational backend, in-memory
# ---------------------------------------------------------------------------


class InMemoryProgressTableRepo:
    """One dict per kind standing in for the three progress tables."""

    backend = "relational"

    def __init__(self) -> None:
        self._tables: dict[ProgressKind, dict[ProgressKey, ProgressRecord]] = {
            kind: {} for kind in PROGRESS_KINDS
        }
        self._next_ids: dict[ProgressKind, int] = {kind: 1 for kind in PROGRESS_KINDS}

    async def get(
        self, kind: ProgressKind, owner_id: int, user_id: int
    ) -> ProgressRecord | None:
        stored = self._tables[validate_kind(kind)].get((kind, owner_id, user_id))
        if stored is None:
            return None
        return _copy(stored)

    async def save(self, record: ProgressRecord) -> ProgressRecord:
        table = self._tables[validate_kind(record.kind)]
        existing = table.get(record.key)
        if existing is None:
            row_id = self._next_ids[record.kind]
            self._next_ids[record.kind] += 1
        else:
            row_id = existing.id
        table[record.key] = replace(record, id=row_id, metadata=dict(record.metadata))
        record.id = row_id
        return record

    async def upsert_many(self, records: Sequence[ProgressRecord]) -> int:
        for record in records:
            await self.save(record)
        return len(records)

    async def count(self, kind: ProgressKind) -> int:
        return len(self._tables[validate_kind(kind)])

    def clear(self) -> None:
        for kind in PROGRESS_KINDS:
            self._tables[kind].clear()
            self._next_ids[kind] = 1


def _copy(record: ProgressRecord) -> ProgressRecord:
    return replace(record, metadata=dict(record.metadata))
