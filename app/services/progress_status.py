"""Progress status state machine.

Callers never read a record's raw status.  They get one of two
learner-facing values:

  raw status                                   get_status()
  -------------------------------------------  ------------
  complete / graded / passed                   complete
  failed, quiz does not require a pass         complete
  failed, quiz requires a pass (must retry)    in-progress
  anything else, including None                in-progress

The "failed" row is the only one that needs an outside fact, the
pass-required setting of the lesson's quiz.  For quiz progress the
lesson is found through the quiz; course progress has no quiz, so a
failed course record stays in progress.

The same machine drives both storage backends, which is what keeps a
record's status identical before and after it is migrated.
"""

from __future__ import annotations

import datetime

from app.models.progress import (
    GRADE_OUTCOMES,
    RAW_COMPLETE,
    RAW_FAILED,
    RAW_GRADED,
    RAW_IN_PROGRESS,
    RAW_PASSED,
    STATUS_COMPLETE,
    STATUS_IN_PROGRESS,
    Clock,
    ExternalStatus,
    ProgressRecord,
    utcnow,
)
from app.services.quiz_capability import QuizCapability

_TERMINAL_RAW = frozenset({RAW_COMPLETE, RAW_GRADED, RAW_PASSED})


class InvalidGradeOutcome(ValueError):
    pass


class ProgressStateMachine:
    def __init__(self, quiz: QuizCapability, *, clock: Clock = utcnow) -> None:
        self._quiz = quiz
        self._clock = clock

    def now(self) -> datetime.datetime:
        return self._clock()

    def start(
        self, record: ProgressRecord, started_at: datetime.datetime | None = None
    ) -> None:
        # Every start overwrites started_at: the latest start wins.
        record.started_at = started_at if started_at is not None else self._clock()
        record.raw_status = RAW_IN_PROGRESS
        self._touch(record)

    def complete(
        self, record: ProgressRecord, completed_at: datetime.datetime | None = None
    ) -> None:
        record.completed_at = (
            completed_at if completed_at is not None else self._clock()
        )
        if record.kind == "lesson" and self._quiz.lesson_has_gradable_quiz(
            record.owner_id
        ):
            record.raw_status = RAW_PASSED
        else:
            record.raw_status = RAW_COMPLETE
        self._touch(record)

    def grade(self, record: ProgressRecord, outcome: str) -> None:
        """Record the grading collaborator's outcome as the raw status."""
        if outcome not in GRADE_OUTCOMES:
            raise InvalidGradeOutcome(
                f"grade outcome must be one of {sorted(GRADE_OUTCOMES)} (got {outcome!r})"
            )
        record.raw_status = outcome
        self._touch(record)

    def status(self, record: ProgressRecord) -> ExternalStatus:
        raw = record.raw_status
        if raw in _TERMINAL_RAW:
            return STATUS_COMPLETE
        if raw == RAW_FAILED:
            lesson_id = self._lesson_id(record)
            if lesson_id is not None and not self._quiz.quiz_requires_pass(lesson_id):
                return STATUS_COMPLETE
        return STATUS_IN_PROGRESS

    def is_complete(self, record: ProgressRecord) -> bool:
        return self.status(record) == STATUS_COMPLETE

    def _lesson_id(self, record: ProgressRecord) -> int | None:
        if record.kind == "lesson":
            return record.owner_id
        if record.kind == "quiz":
            return self._quiz.lesson_for_quiz(record.owner_id)
        return None

    def _touch(self, record: ProgressRecord) -> None:
        # updated_at never falls behind created_at
        record.updated_at = max(self._clock(), record.created_at)
