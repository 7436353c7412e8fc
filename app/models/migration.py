from __future__ import annotations

import datetime
from dataclasses import dataclass
from enum import Enum


class MigrationState(str, Enum):
    """Per-installation flag deciding which backend serves live traffic."""

    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    DONE = "done"


class MigrationPhase(str, Enum):
    """Where the runner is inside IN_PROGRESS.

    BULK_COPY -> CATCH_UP -> RECONCILED
    A failed reconciliation starts another CATCH_UP round.
    """

    BULK_COPY = "bulk_copy"
    CATCH_UP = "catch_up"
    RECONCILED = "reconciled"


@dataclass(frozen=True, slots=True)
class MigrationStatus:
    """Persisted progress of the legacy -> relational migration.

    cursor is the last legacy entry id copied in the current scan (bulk
    copy or catch-up round).  catch_up_since bounds the current catch-up
    round to entries logged at or after it; round_started_at becomes the
    bound of the next round if reconciliation fails.
    """

    state: MigrationState = MigrationState.NOT_STARTED
    phase: MigrationPhase = MigrationPhase.BULK_COPY
    cursor: int = 0
    copied_total: int = 0
    copy_started_at: datetime.datetime | None = None
    catch_up_since: datetime.datetime | None = None
    round_started_at: datetime.datetime | None = None
    reconciled_at: datetime.datetime | None = None
    updated_at: datetime.datetime | None = None
