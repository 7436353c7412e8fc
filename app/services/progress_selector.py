"""Repository selector: which backend answers a progress request.

  migration state    reads/writes go to
  ---------------    --------------------------------------------------
  NOT_STARTED        legacy log
  IN_PROGRESS        legacy log, writes mirrored to the relational tables
                     when dual-write is on (mirror failures are logged
                     and counted, never raised)
  DONE               relational tables

The selector is built per request from a migration state read once at
the start of that request, so a request sees either the pre-cutover or
the post-cutover backend in full.  Mirror copies are queued during the
request and sent by flush_mirror() after its transaction commits.

Callers get Progress objects back: a record bound to the backend that
stores it and to the status state machine.
"""

from __future__ import annotations

import asyncio
import datetime
import logging
from collections.abc import AsyncGenerator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from dataclasses import dataclass

from app.core.config import ProgressSettings
from app.core.metrics import MIRROR_WRITE_FAILURES, PROGRESS_WRITES
from app.models.migration import MigrationState
from app.models.progress import (
    ExternalStatus,
    ProgressKind,
    ProgressRecord,
    validate_kind,
)
from app.repos.progress_repo import ProgressRepo
from app.services.progress_status import ProgressStateMachine

logger = logging.getLogger(__name__)

MirrorTables = Callable[[], AbstractAsyncContextManager[ProgressRepo]]


class MirroredProgressRepo:
    """Dual-write wrapper: the primary is authoritative, the mirror best-effort.

    save() writes the primary and queues a detached copy.  flush() sends
    the queued copies once the primary write has committed, each in a
    unit of work of its own bounded by the timeout, so a slow or failing
    mirror never shares a transaction or a connection with the primary.
    """

    def __init__(
        self, primary: ProgressRepo, open_mirror: MirrorTables, *, timeout_seconds: float
    ) -> None:
        self._primary = primary
        self._open_mirror = open_mirror
        self._timeout = timeout_seconds
        self._pending: list[ProgressRecord] = []
        self.backend = primary.backend

    async def get(
        self, kind: ProgressKind, owner_id: int, user_id: int
    ) -> ProgressRecord | None:
        return await self._primary.get(kind, owner_id, user_id)

    async def save(self, record: ProgressRecord) -> ProgressRecord:
        await self._primary.save(record)
        self._pending.append(record.detached())
        return record

    async def flush(self) -> None:
        pending, self._pending = self._pending, []
        for record in pending:
            try:
                await asyncio.wait_for(self._write_mirror(record), timeout=self._timeout)
            except Exception:
                MIRROR_WRITE_FAILURES.labels(kind=record.kind).inc()
                logger.warning(
                    "Mirror write to relational backend failed for %s %s user=%s",
                    record.kind,
                    record.owner_id,
                    record.user_id,
                    exc_info=True,
                    extra={
                        "kind": record.kind,
                        "owner_id": record.owner_id,
                        "user_id": record.user_id,
                        "backend": "relational",
                    },
                )

    async def _write_mirror(self, record: ProgressRecord) -> None:
        async with self._open_mirror() as mirror:
            await mirror.save(record)

    async def count(self, kind: ProgressKind) -> int:
        return await self._primary.count(kind)


class Progress:
    """A learner's progress on one course, lesson or quiz.

    start(), complete() and grade() change the record and persist it
    through the backend it came from; get_status() and is_complete()
    read it through the state machine.  Record fields are read-only
    properties (started_at, completed_at, updated_at) rather than
    get_started_at()-style accessors.
    A Progress obtained from get_or_create() for an unknown key is not
    stored until its first start() or complete().
    """

    __slots__ = ("_record", "_repo", "_machine")

    def __init__(
        self, record: ProgressRecord, repo: ProgressRepo, machine: ProgressStateMachine
    ) -> None:
        self._record = record
        self._repo = repo
        self._machine = machine

    def __repr__(self) -> str:
        return (
            f"Progress(kind={self.kind!r}, owner_id={self.owner_id}, "
            f"user_id={self.user_id}, status={self.get_status()!r})"
        )

    @property
    def id(self) -> int | None:
        return self._record.id

    @property
    def kind(self) -> ProgressKind:
        return self._record.kind

    @property
    def owner_id(self) -> int:
        return self._record.owner_id

    @property
    def user_id(self) -> int:
        return self._record.user_id

    @property
    def started_at(self) -> datetime.datetime | None:
        return self._record.started_at

    @property
    def completed_at(self) -> datetime.datetime | None:
        return self._record.completed_at

    @property
    def created_at(self) -> datetime.datetime:
        return self._record.created_at

    @property
    def updated_at(self) -> datetime.datetime:
        return self._record.updated_at

    @property
    def metadata(self) -> dict[str, str]:
        return self._record.metadata

    @property
    def backend(self) -> str:
        return self._repo.backend

    def set_updated_at(self, updated_at: datetime.datetime) -> None:
        self._record.set_updated_at(updated_at)

    async def start(self, started_at: datetime.datetime | None = None) -> None:
        self._machine.start(self._record, started_at)
        await self._save("start")

    async def complete(self, completed_at: datetime.datetime | None = None) -> None:
        self._machine.complete(self._record, completed_at)
        await self._save("complete")

    async def grade(self, outcome: str) -> None:
        self._machine.grade(self._record, outcome)
        await self._save("grade")

    def get_status(self) -> ExternalStatus:
        return self._machine.status(self._record)

    def is_complete(self) -> bool:
        return self._machine.is_complete(self._record)

    async def _save(self, operation: str) -> None:
        await self._repo.save(self._record)
        PROGRESS_WRITES.labels(
            kind=self.kind, backend=self._repo.backend, operation=operation
        ).inc()
        logger.debug(
            "Progress %s: %s %s user=%s via %s",
            operation,
            self.kind,
            self.owner_id,
            self.user_id,
            self._repo.backend,
            extra={
                "kind": self.kind,
                "owner_id": self.owner_id,
                "user_id": self.user_id,
                "backend": self._repo.backend,
            },
        )


@dataclass(frozen=True, slots=True)
class ProgressBackends:
    """The two backends, plus where dual-write copies are sent.

    open_mirror defaults to reusing the relational backend as is; with
    SQL stores it opens the relational tables in their own session.
    """

    legacy: ProgressRepo
    relational: ProgressRepo
    open_mirror: MirrorTables | None = None


def _reuse(repo: ProgressRepo) -> MirrorTables:
    @asynccontextmanager
    async def open_tables() -> AsyncGenerator[ProgressRepo, None]:
        yield repo

    return open_tables


class ProgressRepositorySelector:
    def __init__(
        self,
        state: MigrationState,
        backends: ProgressBackends,
        machine: ProgressStateMachine,
        settings: ProgressSettings,
    ) -> None:
        self._state = state
        self._backends = backends
        self._machine = machine
        self._settings = settings
        self._mirror: MirroredProgressRepo | None = None
        if state is MigrationState.IN_PROGRESS and settings.dual_write:
            self._mirror = MirroredProgressRepo(
                backends.legacy,
                backends.open_mirror or _reuse(backends.relational),
                timeout_seconds=settings.mirror_timeout_seconds,
            )

    @property
    def state(self) -> MigrationState:
        return self._state

    def repo_for(self, kind: str) -> ProgressRepo:
        validate_kind(kind)
        if self._state is MigrationState.DONE:
            return self._backends.relational
        if self._mirror is not None:
            return self._mirror
        return self._backends.legacy

    async def flush_mirror(self) -> None:
        """Send queued dual-write copies; call once the primary writes committed."""
        if self._mirror is not None:
            await self._mirror.flush()

    async def get(self, kind: str, owner_id: int, user_id: int) -> Progress | None:
        """The stored progress, or None when the learner has not engaged."""
        repo = self.repo_for(kind)
        record = await repo.get(validate_kind(kind), owner_id, user_id)
        if record is None:
            return None
        return Progress(record, repo, self._machine)

    async def get_or_create(self, kind: str, owner_id: int, user_id: int) -> Progress:
        repo = self.repo_for(kind)
        record = await repo.get(validate_kind(kind), owner_id, user_id)
        if record is None:
            record = ProgressRecord.new(
                kind=kind, owner_id=owner_id, user_id=user_id, now=self._machine.now()
            )
        return Progress(record, repo, self._machine)

    async def start(
        self,
        kind: str,
        owner_id: int,
        user_id: int,
        started_at: datetime.datetime | None = None,
    ) -> Progress:
        progress = await self.get_or_create(kind, owner_id, user_id)
        await progress.start(started_at)
        return progress

    async def complete(
        self,
        kind: str,
        owner_id: int,
        user_id: int,
        completed_at: datetime.datetime | None = None,
    ) -> Progress:
        progress = await self.get_or_create(kind, owner_id, user_id)
        await progress.complete(completed_at)
        return progress
