from __future__ import annotations

import datetime

import pytest

from app.models.migration import MigrationPhase, MigrationState, MigrationStatus
from app.models.progress import ProgressRecord, ensure_utc, validate_kind

T0 = datetime.datetime(2026, 3, 2, 9, 0, tzinfo=datetime.UTC)


def test_new_record_has_no_id_and_equal_timestamps() -> None:
    record = ProgressRecord.new(kind="lesson", owner_id=12, user_id=7, now=T0)
    assert record.id is None
    assert record.created_at == record.updated_at == T0
    assert record.raw_status is None
    assert record.started_at is None
    assert record.completed_at is None
    assert record.metadata == {}


def test_key_is_kind_owner_user() -> None:
    record = ProgressRecord.new(kind="quiz", owner_id=91, user_id=7, now=T0)
    assert record.key == ("quiz", 91, 7)


def test_new_rejects_unknown_kind() -> None:
    with pytest.raises(ValueError, match="unknown progress kind 'module'"):
        ProgressRecord.new(kind="module", owner_id=1, user_id=1, now=T0)


@pytest.mark.parametrize("kind", ["course", "lesson", "quiz"])
def test_validate_kind_accepts_known_kinds(kind: str) -> None:
    assert validate_kind(kind) == kind


def test_set_updated_at_assigns_verbatim() -> None:
    record = ProgressRecord.new(kind="course", owner_id=3, user_id=7, now=T0)
    later = T0 + datetime.timedelta(days=2)
    record.set_updated_at(later)
    assert record.updated_at is later


def test_detached_drops_id_and_copies_metadata() -> None:
    record = ProgressRecord.new(kind="lesson", owner_id=12, user_id=7, now=T0)
    record.id = 40
    record.metadata["source"] = "import"

    copy = record.detached()
    copy.metadata["source"] = "changed"

    assert copy.id is None
    assert copy.key == record.key
    assert record.metadata == {"source": "import"}


def test_ensure_utc_attaches_utc_to_naive_values() -> None:
    naive = datetime.datetime(2026, 3, 2, 9, 0)
    assert ensure_utc(naive) == T0
    assert ensure_utc(T0) is T0
    assert ensure_utc(None) is None


def test_fresh_migration_status_is_not_started() -> None:
    status = MigrationStatus()
    assert status.state is MigrationState.NOT_STARTED
    assert status.phase is MigrationPhase.BULK_COPY
    assert status.cursor == 0
    assert status.copy_started_at is None
