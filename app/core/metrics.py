"""Prometheus metric inventory for progress tracking.

All metrics live here; the modules that own the behavior import and
increment them.  Scraped from GET /metrics.
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge

# ---------------------------------------------------------------------------
# Live progress traffic
# ---------------------------------------------------------------------------

PROGRESS_WRITES = Counter(
    "progress_writes_total",
    "Progress records persisted, by kind, backend and operation",
    ["kind", "backend", "operation"],  # operation: start|complete|grade
)

MIRROR_WRITE_FAILURES = Counter(
    "progress_mirror_write_failures_total",
    "Dual-write mirror writes to the relational backend that failed or timed out",
    ["kind"],
)

# ---------------------------------------------------------------------------
# Legacy -> relational migration
# ---------------------------------------------------------------------------

MIGRATION_RECORDS_COPIED = Counter(
    "progress_migration_records_copied_total",
    "Legacy progress records upserted into the relational backend",
    ["kind"],
)

MIGRATION_BATCH_FAILURES = Counter(
    "progress_migration_batch_failures_total",
    "Migration batches that failed and left the cursor unmoved",
)

MIGRATION_STATE = Gauge(
    "progress_migration_state",
    "1 for the migration state currently in force, 0 for the others",
    ["state"],  # not_started|in_progress|done
)
