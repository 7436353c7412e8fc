"""Wiring for the HTTP layer.

The quiz catalog, the state machine and the migration runner are built
once per process.  Progress selectors are built per request by
open_selector(), which reads the migration flag once in the same
transaction as the progress reads and writes that follow, so a request
sees one backend even if cutover happens while it runs.  Dual-write
copies go out after that transaction commits.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager

from app.core.config import SETTINGS
from app.db.stores import open_progress_stores, open_relational_tables
from app.services.migration_lock import migration_lock
from app.services.progress_migration import ProgressMigrationRunner
from app.services.progress_selector import ProgressBackends, ProgressRepositorySelector
from app.services.progress_status import ProgressStateMachine
from app.services.quiz_capability import load_quiz_catalog

logger = logging.getLogger(__name__)

SelectorFactory = Callable[[], AbstractAsyncContextManager[ProgressRepositorySelector]]

quiz_capability = load_quiz_catalog(SETTINGS.quiz_catalog_path)
state_machine = ProgressStateMachine(quiz_capability)
migration_runner = ProgressMigrationRunner(
    open_progress_stores, migration_lock, SETTINGS.progress
)


@asynccontextmanager
async def open_selector() -> AsyncGenerator[ProgressRepositorySelector, None]:
    async with open_progress_stores() as stores:
        status = await stores.migration_state.load()
        logger.debug(
            "Progress request served under migration state %s",
            status.state.value,
            extra={"migration_state": status.state.value},
        )
        selector = ProgressRepositorySelector(
            status.state,
            ProgressBackends(
                legacy=stores.legacy,
                relational=stores.relational,
                open_mirror=open_relational_tables,
            ),
            state_machine,
            SETTINGS.progress,
        )
        yield selector
    await selector.flush_mirror()


def get_selector_factory() -> SelectorFactory:
    return open_selector


def get_migration_runner() -> ProgressMigrationRunner:
    return migration_runner
