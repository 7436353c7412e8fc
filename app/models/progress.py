from __future__ import annotations

import datetime
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from typing import Literal

ProgressKind = Literal["course", "lesson", "quiz"]
PROGRESS_KINDS: tuple[ProgressKind, ...] = ("course", "lesson", "quiz")

# (kind, owner_id, user_id): the natural key of a progress record
ProgressKey = tuple[ProgressKind, int, int]

# Learner-facing statuses returned by get_status()
ExternalStatus = Literal["in-progress", "complete"]
STATUS_IN_PROGRESS: ExternalStatus = "in-progress"
STATUS_COMPLETE: ExternalStatus = "complete"

# Raw statuses stored by the backends; only the state machine reads these
RAW_IN_PROGRESS = "in-progress"
RAW_COMPLETE = "complete"
RAW_GRADED = "graded"
RAW_PASSED = "passed"
RAW_FAILED = "failed"

GRADE_OUTCOMES = frozenset({RAW_PASSED, RAW_FAILED, RAW_GRADED})

Clock = Callable[[], datetime.datetime]


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.UTC)


def ensure_utc(dt: datetime.datetime | None) -> datetime.datetime | None:
    """Attach UTC to naive datetimes (SQLite hands them back naive)."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=datetime.UTC)
    return dt


def validate_kind(kind: str) -> ProgressKind:
    if kind not in PROGRESS_KINDS:
        raise ValueError(f"unknown progress kind {kind!r}")
    return kind  # type: ignore[return-value]


@dataclass(slots=True)
class ProgressRecord:
    """Durable state of one learner's advancement through a course, lesson or quiz.

    owner_id is the course, lesson or quiz id depending on kind.  id is
    None until a backend has persisted the record; each backend assigns
    its own ids.  metadata is only kept by the relational backend.
    """

    kind: ProgressKind
    owner_id: int
    user_id: int
    created_at: datetime.datetime
    updated_at: datetime.datetime
    raw_status: str | None = None
    started_at: datetime.datetime | None = None
    completed_at: datetime.datetime | None = None
    metadata: dict[str, str] = field(default_factory=dict)
    id: int | None = None

    @staticmethod
    def new(
        *, kind: str, owner_id: int, user_id: int, now: datetime.datetime
    ) -> ProgressRecord:
        return ProgressRecord(
            kind=validate_kind(kind),
            owner_id=owner_id,
            user_id=user_id,
            created_at=now,
            updated_at=now,
        )

    @property
    def key(self) -> ProgressKey:
        return (self.kind, self.owner_id, self.user_id)

    def set_updated_at(self, updated_at: datetime.datetime) -> None:
        self.updated_at = updated_at

    def detached(self) -> ProgressRecord:
        """Copy for writing into another backend: same state, no id."""
        return replace(self, id=None, metadata=dict(self.metadata))
