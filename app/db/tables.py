"""SQLAlchemy table definitions.

Two physical representations of the same progress records:

  legacy:     activity_log + activity_log_meta: one generic log entry per
              (user, entity, type) with status and timestamps as string
              key-value metadata.
  relational: course_progress / lesson_progress / quiz_progress: one
              typed row per (owner, user).

Repos convert between rows and the ProgressRecord dataclass.
"""

from __future__ import annotations

import datetime

from sqlalchemy import (
    JSON,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.db.engine import Base

# --- Legacy activity log ---


class ActivityLogRow(Base):
    __tablename__ = "activity_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    entity_id: Mapped[int] = mapped_column(Integer, nullable=False)
    type: Mapped[str] = mapped_column(
        String(64), nullable=False
    )  # course_status|lesson_status|quiz_status
    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    logged_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, index=True
    )

    __table_args__ = (
        UniqueConstraint("user_id", "entity_id", "type", name="uq_activity_log_key"),
    )


class ActivityLogMetaRow(Base):
    __tablename__ = "activity_log_meta"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entry_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("activity_log.id", ondelete="CASCADE"), nullable=False
    )
    meta_key: Mapped[str] = mapped_column(String(255), nullable=False)
    meta_value: Mapped[str] = mapped_column(Text, nullable=False)

    __table_args__ = (
        UniqueConstraint("entry_id", "meta_key", name="uq_activity_log_meta_key"),
    )


# --- Relational progress tables ---


class CourseProgressRow(Base):
    __tablename__ = "course_progress"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    course_id: Mapped[int] = mapped_column(Integer, nullable=False)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    started_at: Mapped[datetime.datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    completed_at: Mapped[datetime.datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    meta: Mapped[dict[str, str]] = mapped_column(
        "metadata", JSON, nullable=False, default=dict
    )

    __table_args__ = (
        UniqueConstraint("course_id", "user_id", name="uq_course_progress_key"),
    )


class LessonProgressRow(Base):
    __tablename__ = "lesson_progress"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    lesson_id: Mapped[int] = mapped_column(Integer, nullable=False)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    status: Mapped[str | None] = mapped_column(
        String(32), nullable=True
    )  # in-progress|complete|passed|failed|graded
    started_at: Mapped[datetime.datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    completed_at: Mapped[datetime.datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    meta: Mapped[dict[str, str]] = mapped_column(
        "metadata", JSON, nullable=False, default=dict
    )

    __table_args__ = (
        UniqueConstraint("lesson_id", "user_id", name="uq_lesson_progress_key"),
    )


class QuizProgressRow(Base):
    __tablename__ = "quiz_progress"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    quiz_id: Mapped[int] = mapped_column(Integer, nullable=False)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    started_at: Mapped[datetime.datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    completed_at: Mapped[datetime.datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    meta: Mapped[dict[str, str]] = mapped_column(
        "metadata", JSON, nullable=False, default=dict
    )

    __table_args__ = (
        UniqueConstraint("quiz_id", "user_id", name="uq_quiz_progress_key"),
    )


# --- Migration bookkeeping ---


class ProgressMigrationStateRow(Base):
    """Single row (id=1) holding the installation's migration flag and cursor."""

    __tablename__ = "progress_migration_state"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    state: Mapped[str] = mapped_column(
        String(32), nullable=False, default="not_started"
    )  # not_started|in_progress|done
    phase: Mapped[str] = mapped_column(
        String(32), nullable=False, default="bulk_copy"
    )  # bulk_copy|catch_up|reconciled
    cursor: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    copied_total: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    copy_started_at: Mapped[datetime.datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    catch_up_since: Mapped[datetime.datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    round_started_at: Mapped[datetime.datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    reconciled_at: Mapped[datetime.datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    updated_at: Mapped[datetime.datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
