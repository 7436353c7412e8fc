from __future__ import annotations

import datetime
import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from app.db.stores import reset_memory_stores
from app.main import app
from app.services.migration_lock import migration_lock

# Ensure repo root is on sys.path so `import app` works under pytest.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

T0 = datetime.datetime(2026, 3, 2, 9, 0, tzinfo=datetime.UTC)


class FakeClock:
    """Injectable time source that only moves when told to."""

    def __init__(self, start: datetime.datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime.datetime:
        return self.now

    def tick(self, seconds: float = 1) -> datetime.datetime:
        self.now = self.now + datetime.timedelta(seconds=seconds)
        return self.now


@pytest.fixture(autouse=True)
def reset_progress_stores() -> None:
    """Empty the in-memory activity log, progress tables and migration state."""
    reset_memory_stores()


@pytest.fixture(autouse=True)
def reset_migration_lock() -> None:
    if hasattr(migration_lock, "reset"):
        migration_lock.reset()  # type: ignore[union-attr]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def client() -> TestClient:
    return TestClient(app)
