from __future__ import annotations

from typing import Protocol

from app.models.migration import MigrationStatus


class MigrationStateRepo(Protocol):
    async def load(self) -> MigrationStatus:
        """Current status; a fresh installation reads as NOT_STARTED."""
        ...

    async def save(self, status: MigrationStatus) -> None: ...


class InMemoryMigrationStateRepo:
    def __init__(self) -> None:
        self._status = MigrationStatus()

    async def load(self) -> MigrationStatus:
        return self._status

    async def save(self, status: MigrationStatus) -> None:
        self._status = status

    def clear(self) -> None:
        self._status = MigrationStatus()
