from __future__ import annotations

import asyncio
import datetime
import logging
from collections.abc import AsyncGenerator, Sequence
from contextlib import asynccontextmanager

import pytest
from prometheus_client import REGISTRY

from app.core.config import ProgressSettings
from app.db.stores import ProgressStores
from app.models.migration import MigrationPhase, MigrationState, MigrationStatus
from app.models.progress import ProgressKey, ProgressRecord
from app.repos.activity_log_store import InMemoryActivityLogStore
from app.repos.migration_state_repo import InMemoryMigrationStateRepo
from app.repos.progress_repo import InMemoryProgressTableRepo, LegacyLogProgressRepo
from app.services.migration_lock import InMemoryMigrationLock
from app.services.progress_migration import (
    InvalidMigrationTransition,
    KindCount,
    ProgressMigrationRunner,
    ReconciliationReport,
)
from app.services.progress_status import ProgressStateMachine
from app.services.quiz_capability import LessonQuiz, StaticQuizCatalog
from tests.conftest import T0, FakeClock

CATALOG = StaticQuizCatalog(
    {12: LessonQuiz(quiz_id=91, has_questions=True, pass_required=True)}
)


class FlakyTables(InMemoryProgressTableRepo):
    """Relational tables that fail one batch or silently lose some rows once."""

    def __init__(
        self, *, fail_on_call: int | None = None, drop: set[ProgressKey] | None = None
    ) -> None:
        super().__init__()
        self.calls = 0
        self.fail_on_call = fail_on_call
        self.drop = set(drop or ())

    async def upsert_many(self, records: Sequence[ProgressRecord]) -> int:
        self.calls += 1
        if self.calls == self.fail_on_call:
            raise RuntimeError("relational tables unavailable")
        kept = [r for r in records if r.key not in self.drop]
        self.drop -= {r.key for r in records}
        return await super().upsert_many(kept)


class MemoryStores:
    def __init__(
        self, clock: FakeClock, relational: InMemoryProgressTableRepo | None = None
    ) -> None:
        self.clock = clock
        self.legacy = LegacyLogProgressRepo(InMemoryActivityLogStore(clock))
        self.relational = relational or InMemoryProgressTableRepo()
        self.state = InMemoryMigrationStateRepo()
        self.machine = ProgressStateMachine(CATALOG, clock=clock)

    @asynccontextmanager
    async def open(self) -> AsyncGenerator[ProgressStores, None]:
        yield ProgressStores(
            legacy=self.legacy, relational=self.relational, migration_state=self.state
        )

    def runner(
        self, lock: InMemoryMigrationLock | None = None, **settings
    ) -> ProgressMigrationRunner:
        settings.setdefault("batch_size", 2)
        settings.setdefault("max_batches_per_run", 20)
        return ProgressMigrationRunner(
            self.open,
            lock or InMemoryMigrationLock(),
            ProgressSettings(**settings),
            clock=self.clock,
        )

    async def seed(self) -> None:
        """Five lesson-12 learners (odd ones failed the quiz) and one course."""
        for user_id in range(1, 6):
            record = ProgressRecord.new(
                kind="lesson", owner_id=12, user_id=user_id, now=self.clock()
            )
            self.machine.start(record)
            self.machine.complete(record)
            if user_id % 2:
                self.machine.grade(record, "failed")
            await self.legacy.save(record)
        course = ProgressRecord.new(kind="course", owner_id=3, user_id=1, now=self.clock())
        self.machine.start(course)
        await self.legacy.save(course)

    async def touch(self, kind: str, owner_id: int, user_id: int) -> None:
        record = await self.legacy.get(kind, owner_id, user_id)
        self.machine.start(record)
        await self.legacy.save(record)


def _seeded(clock: FakeClock, relational: InMemoryProgressTableRepo | None = None):
    stores = MemoryStores(clock, relational)
    asyncio.run(stores.seed())
    # the migration begins a minute after the last legacy write
    clock.tick(60)
    return stores


def _sample(name: str, labels: dict[str, str] | None = None) -> float:
    return REGISTRY.get_sample_value(name, labels or {}) or 0.0


# ---- copy, catch-up, cutover ----


def test_advance_copies_everything_and_cuts_over(clock: FakeClock) -> None:
    stores = _seeded(clock)
    copied_before = _sample("progress_migration_records_copied_total", {"kind": "lesson"})

    result = asyncio.run(stores.runner().advance_migration())

    assert result.lock_acquired
    assert not result.failed
    assert result.copied == 6
    assert result.status.state is MigrationState.DONE
    assert result.status.phase is MigrationPhase.RECONCILED
    assert result.status.copy_started_at == T0 + datetime.timedelta(seconds=60)
    assert result.reconciliation is not None and result.reconciliation.ok
    assert _sample(
        "progress_migration_records_copied_total", {"kind": "lesson"}
    ) == copied_before + 5
    assert _sample("progress_migration_state", {"state": "done"}) == 1
    assert _sample("progress_migration_state", {"state": "in_progress"}) == 0


def test_copied_records_keep_raw_status_and_timestamps(clock: FakeClock) -> None:
    stores = _seeded(clock)
    asyncio.run(stores.runner().advance_migration())

    async def pairs():
        out = []
        for user_id in range(1, 6):
            old = await stores.legacy.get("lesson", 12, user_id)
            new = await stores.relational.get("lesson", 12, user_id)
            out.append((old, new))
        return out

    for old, new in asyncio.run(pairs()):
        assert new.raw_status == old.raw_status
        assert new.started_at == old.started_at
        assert new.completed_at == old.completed_at
        assert new.created_at == old.created_at
        assert stores.machine.status(new) == stores.machine.status(old)


def test_small_runs_resume_from_the_cursor(clock: FakeClock) -> None:
    stores = _seeded(clock)
    runner = stores.runner(max_batches_per_run=1)

    first = asyncio.run(runner.advance_migration())
    assert first.status.state is MigrationState.IN_PROGRESS
    assert first.status.phase is MigrationPhase.BULK_COPY
    assert first.status.cursor == 2
    assert first.batches == 1

    cursors = [first.status.cursor]
    result = first
    while result.status.state is not MigrationState.DONE:
        result = asyncio.run(runner.advance_migration())
        cursors.append(result.status.cursor)

    assert cursors[:3] == [2, 4, 6]
    assert result.status.copied_total == 6
    assert asyncio.run(stores.relational.count("lesson")) == 5


def test_advance_after_done_is_a_no_op(clock: FakeClock) -> None:
    stores = _seeded(clock)
    runner = stores.runner()
    asyncio.run(runner.advance_migration())

    again = asyncio.run(runner.advance_migration())

    assert again.batches == 0
    assert again.copied == 0
    assert again.status.state is MigrationState.DONE


def test_recopying_from_scratch_leaves_the_same_rows(clock: FakeClock) -> None:
    stores = _seeded(clock)
    runner = stores.runner()
    asyncio.run(runner.advance_migration())

    asyncio.run(runner.set_migration_state("not_started"))
    result = asyncio.run(runner.advance_migration())

    assert result.status.state is MigrationState.DONE
    counts = {c.kind: (c.legacy, c.relational) for c in result.reconciliation.counts}
    assert counts == {"course": (1, 1), "lesson": (5, 5), "quiz": (0, 0)}


def test_catch_up_picks_up_writes_behind_the_cursor(clock: FakeClock) -> None:
    stores = _seeded(clock)
    runner = stores.runner(max_batches_per_run=2)

    asyncio.run(runner.advance_migration())  # cursor now at 4
    clock.tick(5)
    asyncio.run(stores.touch("lesson", 12, 1))  # already copied, now stale
    result = asyncio.run(runner.advance_migration())
    while result.status.state is not MigrationState.DONE:
        result = asyncio.run(runner.advance_migration())

    copied = asyncio.run(stores.relational.get("lesson", 12, 1))
    assert copied.raw_status == "in-progress"
    assert copied.started_at == T0 + datetime.timedelta(seconds=65)


def test_write_behind_the_catch_up_cursor_is_copied_before_cutover(
    clock: FakeClock,
) -> None:
    stores = _seeded(clock)
    runner = stores.runner(max_batches_per_run=1)

    asyncio.run(runner.advance_migration())  # bulk copy, cursor at 2
    clock.tick(5)
    for user_id in range(1, 5):
        asyncio.run(stores.touch("lesson", 12, user_id))
    for _ in range(3):
        result = asyncio.run(runner.advance_migration())
    assert result.status.phase is MigrationPhase.CATCH_UP

    step = asyncio.run(runner.advance_migration())
    assert step.status.phase is MigrationPhase.CATCH_UP
    assert step.status.cursor == 2

    # user 2 was copied by this round already; grade it behind the cursor
    async def grade_behind_cursor():
        record = await stores.legacy.get("lesson", 12, 2)
        stores.machine.grade(record, "failed")
        await stores.legacy.save(record)

    clock.tick(5)
    asyncio.run(grade_behind_cursor())
    for _ in range(5):
        result = asyncio.run(runner.advance_migration())
        if result.status.state is MigrationState.DONE:
            break

    assert result.status.state is MigrationState.DONE
    legacy = asyncio.run(stores.legacy.get("lesson", 12, 2))
    relational = asyncio.run(stores.relational.get("lesson", 12, 2))
    assert relational.raw_status == legacy.raw_status == "failed"
    assert relational.updated_at == legacy.updated_at


def test_round_step_does_not_recopy_its_own_records(clock: FakeClock) -> None:
    stores = _seeded(clock)
    runner = stores.runner()
    asyncio.run(runner.advance_migration())
    asyncio.run(runner.set_migration_state("in_progress"))

    clock.tick(10)
    asyncio.run(stores.touch("lesson", 12, 4))
    result = asyncio.run(runner.advance_migration())

    assert result.status.state is MigrationState.DONE
    assert result.copied == 1
    assert result.status.copied_total == 7


# ---- failures ----


def test_failed_batch_leaves_cursor_and_resumes(
    clock: FakeClock, caplog: pytest.LogCaptureFixture
) -> None:
    tables = FlakyTables(fail_on_call=2)
    stores = _seeded(clock, tables)
    runner = stores.runner()
    failures_before = _sample("progress_migration_batch_failures_total")

    with caplog.at_level(logging.WARNING, logger="app.services.progress_migration"):
        failed = asyncio.run(runner.advance_migration())

    assert failed.failed
    assert failed.batches == 1
    assert failed.copied == 2
    assert failed.status.cursor == 2
    assert failed.status.state is MigrationState.IN_PROGRESS
    assert _sample("progress_migration_batch_failures_total") == failures_before + 1
    assert "Migration batch failed" in caplog.text

    resumed = asyncio.run(runner.advance_migration())
    assert not resumed.failed
    assert resumed.status.state is MigrationState.DONE
    assert asyncio.run(tables.count("lesson")) == 5


def test_failed_reconciliation_starts_another_round(clock: FakeClock) -> None:
    tables = FlakyTables(drop={("lesson", 12, 3)})
    stores = _seeded(clock, tables)
    runner = stores.runner()
    started = clock()

    first = asyncio.run(runner.advance_migration())

    assert first.status.state is MigrationState.IN_PROGRESS
    assert first.status.phase is MigrationPhase.CATCH_UP
    assert first.status.catch_up_since == started
    assert first.reconciliation is not None
    assert not first.reconciliation.ok
    lesson = next(c for c in first.reconciliation.counts if c.kind == "lesson")
    assert (lesson.legacy, lesson.relational, lesson.difference) == (5, 4, 1)

    # a live write to the lost record lands in the next catch-up round
    clock.tick(30)
    asyncio.run(stores.touch("lesson", 12, 3))
    second = asyncio.run(runner.advance_migration())

    assert second.status.state is MigrationState.DONE
    assert second.reconciliation.ok
    assert asyncio.run(tables.get("lesson", 12, 3)) is not None


def test_tolerance_allows_a_small_difference(clock: FakeClock) -> None:
    stores = _seeded(clock, FlakyTables(drop={("lesson", 12, 3)}))

    result = asyncio.run(stores.runner(reconcile_tolerance=1).advance_migration())

    assert result.status.state is MigrationState.DONE
    assert result.reconciliation.ok


# ---- operator control ----


def test_manual_cutover_waits_for_the_operator(clock: FakeClock) -> None:
    stores = _seeded(clock)
    runner = stores.runner(auto_cutover=False)

    result = asyncio.run(runner.advance_migration())
    assert result.status.state is MigrationState.IN_PROGRESS
    assert result.status.phase is MigrationPhase.RECONCILED
    assert result.status.reconciled_at is not None

    idle = asyncio.run(runner.advance_migration())
    assert idle.batches == 0

    done = asyncio.run(runner.set_migration_state(MigrationState.DONE))
    assert done.state is MigrationState.DONE
    assert asyncio.run(runner.get_migration_state()) is MigrationState.DONE


def test_cutover_before_reconciliation_is_rejected(clock: FakeClock) -> None:
    stores = _seeded(clock)
    runner = stores.runner(max_batches_per_run=1)

    with pytest.raises(InvalidMigrationTransition, match="reconciliation has not passed"):
        asyncio.run(runner.set_migration_state("done"))

    asyncio.run(runner.advance_migration())
    with pytest.raises(InvalidMigrationTransition, match="reconciliation has not passed"):
        asyncio.run(runner.set_migration_state("done"))
    assert asyncio.run(runner.get_migration_state()) is MigrationState.IN_PROGRESS


def test_cutover_rejected_when_counts_diverged(clock: FakeClock) -> None:
    stores = _seeded(clock)
    runner = stores.runner(auto_cutover=False)
    asyncio.run(runner.advance_migration())

    async def late_write():
        record = ProgressRecord.new(kind="quiz", owner_id=91, user_id=9, now=clock())
        stores.machine.complete(record)
        await stores.legacy.save(record)

    asyncio.run(late_write())

    with pytest.raises(InvalidMigrationTransition, match="counts diverged"):
        asyncio.run(runner.set_migration_state("done"))
    assert asyncio.run(runner.get_migration_state()) is MigrationState.IN_PROGRESS


def test_unknown_state_is_rejected(clock: FakeClock) -> None:
    runner = MemoryStores(clock).runner()
    with pytest.raises(InvalidMigrationTransition, match="unknown migration state"):
        asyncio.run(runner.set_migration_state("finished"))


def test_setting_the_current_state_changes_nothing(clock: FakeClock) -> None:
    runner = MemoryStores(clock).runner()
    status = asyncio.run(runner.set_migration_state("not_started"))
    assert status == MigrationStatus()


def test_operator_can_start_the_migration(clock: FakeClock) -> None:
    runner = MemoryStores(clock).runner()
    status = asyncio.run(runner.set_migration_state("in_progress"))
    assert status.state is MigrationState.IN_PROGRESS
    assert status.phase is MigrationPhase.BULK_COPY
    assert status.copy_started_at == T0


def test_revert_after_cutover_reconciles_again(clock: FakeClock) -> None:
    stores = _seeded(clock)
    runner = stores.runner()
    asyncio.run(runner.advance_migration())

    clock.tick(600)
    reverted = asyncio.run(runner.set_migration_state("in_progress"))
    assert reverted.state is MigrationState.IN_PROGRESS
    assert reverted.phase is MigrationPhase.CATCH_UP
    assert reverted.cursor == 0
    assert reverted.catch_up_since == clock()
    assert reverted.reconciled_at is None

    # legacy serves traffic again; its writes are copied before the next cutover
    clock.tick(10)
    asyncio.run(stores.touch("course", 3, 1))
    result = asyncio.run(runner.advance_migration())

    assert result.status.state is MigrationState.DONE
    assert result.copied == 1


def test_revert_with_rows_created_after_cutover_cuts_over_again(
    clock: FakeClock,
) -> None:
    stores = _seeded(clock)
    runner = stores.runner()
    asyncio.run(runner.advance_migration())

    # a learner who first shows up while the relational tables serve traffic
    async def relational_only_write():
        record = ProgressRecord.new(kind="course", owner_id=3, user_id=99, now=clock())
        stores.machine.start(record)
        await stores.relational.save(record)

    clock.tick(60)
    asyncio.run(relational_only_write())
    clock.tick(600)
    asyncio.run(runner.set_migration_state("in_progress"))

    result = asyncio.run(runner.advance_migration())

    assert result.status.state is MigrationState.DONE
    assert result.reconciliation.ok
    counts = {c.kind: (c.legacy, c.relational) for c in result.reconciliation.counts}
    assert counts["course"] == (1, 2)
    assert asyncio.run(stores.relational.get("course", 3, 99)) is not None
    assert asyncio.run(stores.legacy.get("course", 3, 99)) is None


def test_reconciliation_fails_on_shortfall_not_surplus() -> None:
    surplus = ReconciliationReport(
        counts=(KindCount(kind="course", legacy=1, relational=3),), tolerance=0
    )
    shortfall = ReconciliationReport(
        counts=(KindCount(kind="course", legacy=3, relational=2),), tolerance=0
    )
    assert surplus.ok
    assert not shortfall.ok
    assert ReconciliationReport(counts=shortfall.counts, tolerance=1).ok


def test_reset_to_not_started_keeps_relational_rows(clock: FakeClock) -> None:
    stores = _seeded(clock)
    runner = stores.runner()
    asyncio.run(runner.advance_migration())

    status = asyncio.run(runner.set_migration_state("not_started"))

    assert status == MigrationStatus(updated_at=clock())
    assert asyncio.run(stores.relational.count("lesson")) == 5
    assert _sample("progress_migration_state", {"state": "not_started"}) == 1


# ---- lock ----


def test_busy_lock_skips_the_run_and_refuses_transitions(clock: FakeClock) -> None:
    stores = _seeded(clock)
    lock = InMemoryMigrationLock()
    runner = stores.runner(lock)
    held = asyncio.run(lock.acquire(60))
    assert held is not None

    skipped = asyncio.run(runner.advance_migration())
    assert not skipped.lock_acquired
    assert skipped.batches == 0
    assert skipped.status.state is MigrationState.NOT_STARTED

    with pytest.raises(InvalidMigrationTransition, match="busy"):
        asyncio.run(runner.set_migration_state("in_progress"))

    asyncio.run(lock.release(held))
    assert asyncio.run(runner.advance_migration()).status.state is MigrationState.DONE


def test_lock_is_released_after_a_failed_batch(clock: FakeClock) -> None:
    lock = InMemoryMigrationLock()
    stores = _seeded(clock, FlakyTables(fail_on_call=1))
    runner = stores.runner(lock)

    assert asyncio.run(runner.advance_migration()).failed
    assert asyncio.run(lock.acquire(60)) is not None


# ---- reconciliation report ----


def test_reconcile_reports_counts_per_kind(clock: FakeClock) -> None:
    stores = _seeded(clock)
    runner = stores.runner()

    before = asyncio.run(runner.reconcile())
    assert not before.ok
    assert {c.kind: c.difference for c in before.counts} == {
        "course": 1,
        "lesson": 5,
        "quiz": 0,
    }
    assert "lesson: legacy=5 relational=0" in before.describe()

    asyncio.run(runner.advance_migration())
    assert asyncio.run(runner.reconcile()).ok
