"""Legacy log -> relational tables migration runner.

Each call to advance_migration() takes the migration lock and runs up
to max_batches_per_run steps.  A step is one transaction:

  1. load the persisted MigrationStatus
  2. scan the next batch of legacy records after the cursor
  3. upsert them into the relational tables (detached copies, raw
     status and timestamps verbatim)
  4. move the cursor to the last copied legacy id and save the status

If anything in the step raises, the transaction rolls back: the cursor
stays where it was and the same batch is copied again next time.
Because the relational write is an upsert on (kind, owner_id, user_id),
copying a batch twice leaves the same rows as copying it once.

Phases inside IN_PROGRESS:

  BULK_COPY   every legacy record, in id order
  CATCH_UP    records logged since the previous scan began; live
              writes that landed behind the cursor are picked up here
  RECONCILED  per-kind counts matched; with auto_cutover the state
              flips to DONE in the same transaction

The last step of a catch-up round re-copies every record logged since
the round began before it counts, in the same transaction as the count
check and the cutover.  A live write that landed behind the round's
cursor between two steps is therefore copied before the flag flips.
A round whose reconciliation fails starts another round over the
records logged since that round began.

Reconciliation only fails on a shortfall: relational rows beyond the
legacy count are progress recorded while the relational tables served
traffic (before a revert).  The legacy log is only ever read, so
reverting the flag after cutover loses nothing it holds.
"""

from __future__ import annotations

import datetime
import logging
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, field, replace

from app.core.config import ProgressSettings
from app.core.metrics import (
    MIGRATION_BATCH_FAILURES,
    MIGRATION_RECORDS_COPIED,
    MIGRATION_STATE,
)
from app.db.stores import ProgressStores
from app.models.migration import MigrationPhase, MigrationState, MigrationStatus
from app.models.progress import (
    PROGRESS_KINDS,
    Clock,
    ProgressKind,
    ProgressRecord,
    utcnow,
)
from app.services.migration_lock import MigrationLock

logger = logging.getLogger(__name__)

StoresFactory = Callable[[], AbstractAsyncContextManager[ProgressStores]]


class InvalidMigrationTransition(Exception):
    """The control surface refused a migration-state change."""


@dataclass(frozen=True, slots=True)
class KindCount:
    kind: ProgressKind
    legacy: int
    relational: int

    @property
    def difference(self) -> int:
        return self.legacy - self.relational


@dataclass(frozen=True, slots=True)
class ReconciliationReport:
    counts: tuple[KindCount, ...]
    tolerance: int

    @property
    def ok(self) -> bool:
        return all(c.difference <= self.tolerance for c in self.counts)

    def describe(self) -> str:
        return ", ".join(
            f"{c.kind}: legacy={c.legacy} relational={c.relational}"
            for c in self.counts
        )


@dataclass(frozen=True, slots=True)
class MigrationRunResult:
    status: MigrationStatus
    lock_acquired: bool = True
    batches: int = 0
    copied: int = 0
    failed: bool = False
    reconciliation: ReconciliationReport | None = None


@dataclass(slots=True)
class _StepOutcome:
    status: MigrationStatus
    copied_by_kind: dict[ProgressKind, int] = field(default_factory=dict)
    copied_ids: set[int] = field(default_factory=set)
    reconciliation: ReconciliationReport | None = None


def publish_state(state: MigrationState) -> None:
    for s in MigrationState:
        MIGRATION_STATE.labels(state=s.value).set(1 if s is state else 0)


class ProgressMigrationRunner:
    def __init__(
        self,
        open_stores: StoresFactory,
        lock: MigrationLock,
        settings: ProgressSettings,
        *,
        clock: Clock = utcnow,
    ) -> None:
        self._open_stores = open_stores
        self._lock = lock
        self._settings = settings
        self._clock = clock

    async def get_status(self) -> MigrationStatus:
        async with self._open_stores() as stores:
            return await stores.migration_state.load()

    async def get_migration_state(self) -> MigrationState:
        return (await self.get_status()).state

    async def reconcile(self) -> ReconciliationReport:
        async with self._open_stores() as stores:
            return await self._count(stores)

    async def advance_migration(self) -> MigrationRunResult:
        """Run up to max_batches_per_run steps; NOT_STARTED begins the migration."""
        token = await self._lock.acquire(self._settings.lock_ttl_seconds)
        if token is None:
            logger.info("Migration run skipped: another runner holds the lock")
            return MigrationRunResult(status=await self.get_status(), lock_acquired=False)
        try:
            return await self._run()
        finally:
            await self._lock.release(token)

    async def set_migration_state(self, target: MigrationState | str) -> MigrationStatus:
        """Operator transition of the migration flag.

        DONE is only accepted once reconciliation has passed and the
        per-kind counts still match.  IN_PROGRESS from NOT_STARTED
        starts the bulk copy; from DONE it reverts to the legacy
        backend and reconciles again before the next cutover.
        NOT_STARTED resets the runner; relational rows already copied
        are kept and overwritten by the next copy.
        """
        try:
            target = MigrationState(target)
        except ValueError:
            raise InvalidMigrationTransition(
                f"unknown migration state {target!r}"
            ) from None

        token = await self._lock.acquire(self._settings.lock_ttl_seconds)
        if token is None:
            raise InvalidMigrationTransition(
                "migration runner is busy; retry once the current run finishes"
            )
        try:
            async with self._open_stores() as stores:
                current = await stores.migration_state.load()
                if target is current.state:
                    return current
                updated = await self._transition(stores, current, target)
                await stores.migration_state.save(updated)
        finally:
            await self._lock.release(token)

        publish_state(updated.state)
        logger.warning(
            "Migration state changed: %s -> %s",
            current.state.value,
            updated.state.value,
            extra={"migration_state": updated.state.value},
        )
        return updated

    async def _transition(
        self,
        stores: ProgressStores,
        current: MigrationStatus,
        target: MigrationState,
    ) -> MigrationStatus:
        now = self._clock()
        if target is MigrationState.DONE:
            if current.phase is not MigrationPhase.RECONCILED:
                raise InvalidMigrationTransition(
                    f"cannot cut over from {current.state.value} "
                    f"(phase {current.phase.value}): reconciliation has not passed"
                )
            report = await self._count(stores)
            if not report.ok:
                raise InvalidMigrationTransition(
                    "cannot cut over: record counts diverged since "
                    f"reconciliation ({report.describe()})"
                )
            return replace(current, state=MigrationState.DONE, updated_at=now)

        if target is MigrationState.IN_PROGRESS:
            if current.state is MigrationState.NOT_STARTED:
                return _started(now)
            # Back from DONE: the legacy log took no writes while the
            # relational tables were authoritative, so the new round
            # only has to cover writes from now on.
            return replace(
                current,
                state=MigrationState.IN_PROGRESS,
                phase=MigrationPhase.CATCH_UP,
                cursor=0,
                catch_up_since=now,
                round_started_at=now,
                reconciled_at=None,
                updated_at=now,
            )

        return MigrationStatus(updated_at=now)

    async def _run(self) -> MigrationRunResult:
        batches = 0
        copied = 0
        report: ReconciliationReport | None = None
        status: MigrationStatus | None = None

        for _ in range(self._settings.max_batches_per_run):
            try:
                async with self._open_stores() as stores:
                    before = await stores.migration_state.load()
                    if _finished(before):
                        status = before
                        break
                    outcome = await self._step(stores, before)
            except Exception:
                MIGRATION_BATCH_FAILURES.inc()
                logger.warning(
                    "Migration batch failed; cursor left in place, retrying next run",
                    exc_info=True,
                    extra={"batch_size": self._settings.batch_size},
                )
                return MigrationRunResult(
                    status=await self.get_status(),
                    batches=batches,
                    copied=copied,
                    failed=True,
                    reconciliation=report,
                )

            batches += 1
            status = outcome.status
            for kind, n in outcome.copied_by_kind.items():
                MIGRATION_RECORDS_COPIED.labels(kind=kind).inc(n)
                copied += n
            if outcome.reconciliation is not None:
                report = outcome.reconciliation
                if not report.ok:
                    break
            if _finished(status):
                break

        if status is None:
            status = await self.get_status()
        publish_state(status.state)
        return MigrationRunResult(
            status=status, batches=batches, copied=copied, reconciliation=report
        )

    async def _step(
        self, stores: ProgressStores, status: MigrationStatus
    ) -> _StepOutcome:
        now = self._clock()
        batch_size = self._settings.batch_size

        if status.state is MigrationState.NOT_STARTED:
            status = _started(now)
            logger.info(
                "Progress migration started", extra={"migration_state": "in_progress"}
            )

        since = status.catch_up_since if status.phase is MigrationPhase.CATCH_UP else None
        records = await stores.legacy.scan(
            after_id=status.cursor, limit=batch_size, updated_since=since
        )

        outcome = _StepOutcome(status=status)
        if records:
            await self._copy(stores, records, outcome)
            status = replace(
                status,
                cursor=records[-1].id or status.cursor,
                copied_total=status.copied_total + len(records),
                updated_at=now,
            )
            logger.info(
                "Copied %d progress records (%s), cursor=%s",
                len(records),
                status.phase.value,
                status.cursor,
                extra={"cursor": status.cursor, "batch_size": batch_size},
            )

        if len(records) < batch_size:
            status = await self._end_of_scan(stores, status, outcome)

        await stores.migration_state.save(status)
        outcome.status = status
        return outcome

    async def _end_of_scan(
        self, stores: ProgressStores, status: MigrationStatus, outcome: _StepOutcome
    ) -> MigrationStatus:
        now = self._clock()
        if status.phase is MigrationPhase.BULK_COPY:
            logger.info(
                "Bulk copy finished; catching up on writes since %s",
                status.copy_started_at,
            )
            return replace(
                status,
                phase=MigrationPhase.CATCH_UP,
                cursor=0,
                catch_up_since=status.copy_started_at,
                round_started_at=now,
                updated_at=now,
            )

        swept = await self._sweep(stores, status.round_started_at, outcome)
        if swept:
            status = replace(status, copied_total=status.copied_total + swept)
            logger.info(
                "Re-copied %d progress records logged during the catch-up round",
                swept,
                extra={"batch_size": self._settings.batch_size},
            )

        report = await self._count(stores)
        outcome.reconciliation = report
        if not report.ok:
            logger.warning(
                "Reconciliation failed (%s); starting another catch-up round",
                report.describe(),
            )
            return replace(
                status,
                cursor=0,
                catch_up_since=status.round_started_at,
                round_started_at=now,
                updated_at=now,
            )

        status = replace(
            status, phase=MigrationPhase.RECONCILED, reconciled_at=now, updated_at=now
        )
        if self._settings.auto_cutover:
            status = replace(status, state=MigrationState.DONE)
            logger.warning(
                "Progress migration cut over to the relational backend (%s)",
                report.describe(),
                extra={"migration_state": "done"},
            )
        else:
            logger.info(
                "Reconciliation passed (%s); awaiting manual cutover", report.describe()
            )
        return status

    async def _copy(
        self,
        stores: ProgressStores,
        records: list[ProgressRecord],
        outcome: _StepOutcome,
    ) -> None:
        await stores.relational.upsert_many([r.detached() for r in records])
        for r in records:
            outcome.copied_by_kind[r.kind] = outcome.copied_by_kind.get(r.kind, 0) + 1
            if r.id is not None:
                outcome.copied_ids.add(r.id)

    async def _sweep(
        self,
        stores: ProgressStores,
        since: datetime.datetime | None,
        outcome: _StepOutcome,
    ) -> int:
        """Copy every record logged at or after since, skipping this step's copies."""
        batch_size = self._settings.batch_size
        swept = 0
        after_id = 0
        while True:
            page = await stores.legacy.scan(
                after_id=after_id, limit=batch_size, updated_since=since
            )
            stale = [r for r in page if r.id not in outcome.copied_ids]
            if stale:
                await self._copy(stores, stale, outcome)
                swept += len(stale)
            if len(page) < batch_size:
                return swept
            after_id = page[-1].id or after_id

    async def _count(self, stores: ProgressStores) -> ReconciliationReport:
        counts = []
        for kind in PROGRESS_KINDS:
            counts.append(
                KindCount(
                    kind=kind,
                    legacy=await stores.legacy.count(kind),
                    relational=await stores.relational.count(kind),
                )
            )
        return ReconciliationReport(
            counts=tuple(counts), tolerance=self._settings.reconcile_tolerance
        )


def _started(now: datetime.datetime) -> MigrationStatus:
    return MigrationStatus(
        state=MigrationState.IN_PROGRESS,
        phase=MigrationPhase.BULK_COPY,
        copy_started_at=now,
        updated_at=now,
    )


def _finished(status: MigrationStatus) -> bool:
    return (
        status.state is MigrationState.DONE
        or status.phase is MigrationPhase.RECONCILED
    )
