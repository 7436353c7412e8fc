from __future__ import annotations

import datetime
from collections.abc import Mapping, Sequence
from dataclasses import replace
from typing import Protocol

from app.models.activity import ActivityEntry, ActivityKey
from app.models.progress import Clock, utcnow


class ActivityLogStore(Protocol):
    """Keyed view over the generic activity log.

    At most one entry exists per ActivityKey.  upsert() creates it on
    first write and afterwards merges metadata in place; a None value
    removes that metadata key.
    """

    async def find(self, key: ActivityKey) -> ActivityEntry | None: ...

    async def upsert(
        self,
        key: ActivityKey,
        meta: Mapping[str, str | None],
        *,
        created_at: datetime.datetime,
    ) -> ActivityEntry: ...

    async def scan(
        self,
        types: Sequence[str],
        *,
        after_id: int = 0,
        limit: int = 100,
        logged_since: datetime.datetime | None = None,
    ) -> list[ActivityEntry]: ...

    async def count(self, type: str) -> int: ...


class InMemoryActivityLogStore:
    def __init__(self, clock: Clock = utcnow) -> None:
        self._clock = clock
        self._by_key: dict[ActivityKey, ActivityEntry] = {}
        self._next_id = 1

    async def find(self, key: ActivityKey) -> ActivityEntry | None:
        return self._by_key.get(key)

    async def upsert(
        self,
        key: ActivityKey,
        meta: Mapping[str, str | None],
        *,
        created_at: datetime.datetime,
    ) -> ActivityEntry:
        now = self._clock()
        existing = self._by_key.get(key)
        if existing is None:
            entry = ActivityEntry(
                id=self._next_id,
                user_id=key.user_id,
                entity_id=key.entity_id,
                type=key.type,
                created_at=created_at,
                logged_at=now,
                meta=_merge({}, meta),
            )
            self._next_id += 1
        else:
            entry = replace(existing, logged_at=now, meta=_merge(existing.meta, meta))
        self._by_key[key] = entry
        return entry

    async def scan(
        self,
        types: Sequence[str],
        *,
        after_id: int = 0,
        limit: int = 100,
        logged_since: datetime.datetime | None = None,
    ) -> list[ActivityEntry]:
        matches = [
            e
            for e in self._by_key.values()
            if e.type in types
            and e.id > after_id
            and (logged_since is None or e.logged_at >= logged_since)
        ]
        matches.sort(key=lambda e: e.id)
        return matches[:limit]

    async def count(self, type: str) -> int:
        return sum(1 for e in self._by_key.values() if e.type == type)

    def clear(self) -> None:
        self._by_key.clear()
        self._next_id = 1


def _merge(current: Mapping[str, str], changes: Mapping[str, str | None]) -> dict[str, str]:
    merged = dict(current)
    for k, v in changes.items():
        if v is None:
            merged.pop(k, None)
        else:
            merged[k] = v
    return merged
