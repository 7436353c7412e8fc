from __future__ import annotations

import datetime
from dataclasses import dataclass, field


@dataclass(frozen=True, slots=True)
class ActivityKey:
    """Identifies the single activity-log entry for a (user, entity, type)."""

    user_id: int
    entity_id: int
    type: str  # course_status|lesson_status|quiz_status


@dataclass(frozen=True, slots=True)
class ActivityEntry:
    """One entry of the legacy activity log with its key-value metadata.

    logged_at is bumped by the store on every write; created_at never moves.
    """

    id: int
    user_id: int
    entity_id: int
    type: str
    created_at: datetime.datetime
    logged_at: datetime.datetime
    meta: dict[str, str] = field(default_factory=dict)

    @property
    def key(self) -> ActivityKey:
        return ActivityKey(user_id=self.user_id, entity_id=self.entity_id, type=self.type)
