"""Migration control surface for operators.

  GET  /admin/progress-migration                  current status
  POST /admin/progress-migration/advance          run one bounded batch run
  PUT  /admin/progress-migration/state            set the flag (409 if refused)
  GET  /admin/progress-migration/reconciliation   per-kind counts
"""

from __future__ import annotations

import datetime
import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel

from app.api.dependencies import get_migration_runner
from app.models.migration import MigrationPhase, MigrationState, MigrationStatus
from app.models.progress import ProgressKind
from app.services.progress_migration import (
    InvalidMigrationTransition,
    ProgressMigrationRunner,
    ReconciliationReport,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin/progress-migration", tags=["admin"])


class MigrationStatusOut(BaseModel):
    state: MigrationState
    phase: MigrationPhase
    cursor: int
    copied_total: int
    copy_started_at: datetime.datetime | None
    catch_up_since: datetime.datetime | None
    round_started_at: datetime.datetime | None
    reconciled_at: datetime.datetime | None
    updated_at: datetime.datetime | None


class KindCountOut(BaseModel):
    kind: ProgressKind
    legacy: int
    relational: int


class ReconciliationOut(BaseModel):
    ok: bool
    tolerance: int
    counts: list[KindCountOut]


class MigrationRunOut(BaseModel):
    status: MigrationStatusOut
    lock_acquired: bool
    batches: int
    copied: int
    failed: bool
    reconciliation: ReconciliationOut | None


class MigrationStateIn(BaseModel):
    state: MigrationState


def _status_out(s: MigrationStatus) -> MigrationStatusOut:
    return MigrationStatusOut(
        state=s.state,
        phase=s.phase,
        cursor=s.cursor,
        copied_total=s.copied_total,
        copy_started_at=s.copy_started_at,
        catch_up_since=s.catch_up_since,
        round_started_at=s.round_started_at,
        reconciled_at=s.reconciled_at,
        updated_at=s.updated_at,
    )


def _report_out(report: ReconciliationReport) -> ReconciliationOut:
    return ReconciliationOut(
        ok=report.ok,
        tolerance=report.tolerance,
        counts=[
            KindCountOut(kind=c.kind, legacy=c.legacy, relational=c.relational)
            for c in report.counts
        ],
    )


Runner = Annotated[ProgressMigrationRunner, Depends(get_migration_runner)]


@router.get("", response_model=MigrationStatusOut)
async def get_migration(runner: Runner) -> MigrationStatusOut:
    return _status_out(await runner.get_status())


@router.post("/advance", response_model=MigrationRunOut)
async def advance_migration(runner: Runner) -> MigrationRunOut:
    result = await runner.advance_migration()
    logger.info(
        "Migration advanced by operator: batches=%d copied=%d failed=%s",
        result.batches,
        result.copied,
        result.failed,
        extra={
            "migration_state": result.status.state.value,
            "cursor": result.status.cursor,
        },
    )
    return MigrationRunOut(
        status=_status_out(result.status),
        lock_acquired=result.lock_acquired,
        batches=result.batches,
        copied=result.copied,
        failed=result.failed,
        reconciliation=(
            _report_out(result.reconciliation) if result.reconciliation else None
        ),
    )


@router.put("/state", response_model=MigrationStatusOut)
async def set_migration_state(
    body: MigrationStateIn, runner: Runner
) -> MigrationStatusOut:
    try:
        updated = await runner.set_migration_state(body.state)
    except InvalidMigrationTransition as e:
        logger.warning("Migration state change to %s refused: %s", body.state.value, e)
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from None
    return _status_out(updated)


@router.get("/reconciliation", response_model=ReconciliationOut)
async def get_reconciliation(runner: Runner) -> ReconciliationOut:
    return _report_out(await runner.reconcile())
