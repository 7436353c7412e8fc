"""Scheduled migration worker.

RUN:  python -m app.worker

Calls advance_migration() every MIGRATION_INTERVAL_SECONDS.  Each call
copies at most MIGRATION_MAX_BATCHES_PER_RUN batches, so one tick stays
short and a restart resumes from the persisted cursor.  Several workers
(or a worker plus operators hitting /admin/progress-migration/advance)
can run side by side: the migration lock makes all but one of them
skip the tick.

Same image as the API, different command:
  api:    uvicorn app.main:app --host 0.0.0.0 --port 8000
  worker: python -m app.worker
"""

from __future__ import annotations

import asyncio
import logging

from app.core.config import SETTINGS
from app.core.logging import setup_logging
from app.db.stores import open_progress_stores
from app.models.migration import MigrationState
from app.services.migration_lock import migration_lock
from app.services.progress_migration import ProgressMigrationRunner

logger = logging.getLogger("worker")


async def run_once(runner: ProgressMigrationRunner) -> MigrationState:
    result = await runner.advance_migration()
    if result.lock_acquired and result.batches:
        logger.info(
            "Migration tick: batches=%d copied=%d phase=%s cursor=%d",
            result.batches,
            result.copied,
            result.status.phase.value,
            result.status.cursor,
            extra={
                "migration_state": result.status.state.value,
                "cursor": result.status.cursor,
            },
        )
    return result.status.state


async def run_worker(runner: ProgressMigrationRunner | None = None) -> None:
    """Advance the migration on a fixed interval until the process stops."""
    runner = runner or ProgressMigrationRunner(
        open_progress_stores, migration_lock, SETTINGS.progress
    )
    interval = SETTINGS.progress.interval_seconds
    logger.info("Migration worker started, interval=%ds", interval)

    while True:
        try:
            state = await run_once(runner)
            if state is MigrationState.DONE:
                logger.debug("Migration is done; nothing to copy")
        except Exception:
            # Never let one bad tick kill the loop; the next tick retries
            logger.exception("Migration tick failed")
        await asyncio.sleep(interval)


if __name__ == "__main__":
    setup_logging(SETTINGS.log_level, json_format=SETTINGS.log_json)
    asyncio.run(run_worker())
