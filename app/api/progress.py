"""Progress endpoints: read, start, complete and grade one record.

  GET  /v1/progress/{kind}/{owner_id}/users/{user_id}            200 | 204
  POST /v1/progress/{kind}/{owner_id}/users/{user_id}/start      200
  POST /v1/progress/{kind}/{owner_id}/users/{user_id}/complete   200
  POST /v1/progress/{kind}/{owner_id}/users/{user_id}/grade      200 | 404

204 means the learner has not engaged yet; it is not an error.  The
stored raw status never leaves the service, only get_status().
"""

from __future__ import annotations

import datetime
import logging
from typing import Annotated, Literal

from fastapi import APIRouter, Depends, HTTPException, Response, status
from pydantic import BaseModel

from app.api.dependencies import SelectorFactory, get_selector_factory
from app.models.progress import ExternalStatus, ProgressKind, ensure_utc
from app.services.progress_selector import Progress

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/progress", tags=["progress"])


class StartIn(BaseModel):
    started_at: datetime.datetime | None = None


class CompleteIn(BaseModel):
    completed_at: datetime.datetime | None = None


class GradeIn(BaseModel):
    outcome: Literal["passed", "failed", "graded"]


class ProgressOut(BaseModel):
    id: int | None
    kind: ProgressKind
    owner_id: int
    user_id: int
    status: ExternalStatus
    is_complete: bool
    started_at: datetime.datetime | None
    completed_at: datetime.datetime | None
    created_at: datetime.datetime
    updated_at: datetime.datetime
    backend: str


def _to_out(progress: Progress) -> ProgressOut:
    return ProgressOut(
        id=progress.id,
        kind=progress.kind,
        owner_id=progress.owner_id,
        user_id=progress.user_id,
        status=progress.get_status(),
        is_complete=progress.is_complete(),
        started_at=progress.started_at,
        completed_at=progress.completed_at,
        created_at=progress.created_at,
        updated_at=progress.updated_at,
        backend=progress.backend,
    )


@router.get(
    "/{kind}/{owner_id}/users/{user_id}",
    response_model=ProgressOut,
    responses={204: {"description": "The learner has not engaged"}},
)
async def get_progress(
    kind: ProgressKind,
    owner_id: int,
    user_id: int,
    open_selector: Annotated[SelectorFactory, Depends(get_selector_factory)],
):
    async with open_selector() as selector:
        progress = await selector.get(kind, owner_id, user_id)
        if progress is None:
            return Response(status_code=status.HTTP_204_NO_CONTENT)
        return _to_out(progress)


@router.post("/{kind}/{owner_id}/users/{user_id}/start", response_model=ProgressOut)
async def start_progress(
    kind: ProgressKind,
    owner_id: int,
    user_id: int,
    open_selector: Annotated[SelectorFactory, Depends(get_selector_factory)],
    body: StartIn | None = None,
) -> ProgressOut:
    started_at = ensure_utc(body.started_at) if body is not None else None
    async with open_selector() as selector:
        progress = await selector.start(kind, owner_id, user_id, started_at)
        return _to_out(progress)


@router.post("/{kind}/{owner_id}/users/{user_id}/complete", response_model=ProgressOut)
async def complete_progress(
    kind: ProgressKind,
    owner_id: int,
    user_id: int,
    open_selector: Annotated[SelectorFactory, Depends(get_selector_factory)],
    body: CompleteIn | None = None,
) -> ProgressOut:
    completed_at = ensure_utc(body.completed_at) if body is not None else None
    async with open_selector() as selector:
        progress = await selector.complete(kind, owner_id, user_id, completed_at)
        return _to_out(progress)


@router.post("/{kind}/{owner_id}/users/{user_id}/grade", response_model=ProgressOut)
async def grade_progress(
    kind: ProgressKind,
    owner_id: int,
    user_id: int,
    body: GradeIn,
    open_selector: Annotated[SelectorFactory, Depends(get_selector_factory)],
) -> ProgressOut:
    async with open_selector() as selector:
        progress = await selector.get(kind, owner_id, user_id)
        if progress is None:
            logger.info(
                "Grade for %s %s user=%s rejected: no progress recorded",
                kind,
                owner_id,
                user_id,
                extra={"kind": kind, "owner_id": owner_id, "user_id": user_id},
            )
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="No progress recorded for this learner",
            )
        await progress.grade(body.outcome)
        return _to_out(progress)
