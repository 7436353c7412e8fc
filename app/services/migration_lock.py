"""Single-runner lock for the progress migration.

The runner may be driven by the worker loop, by an operator through the
admin API, or by both at once on several API instances.  Two runners
copying the same batch would still converge (writes are upserts), but
they would fight over the cursor and double the load on the legacy
tables.  Only the holder of this lock advances the migration.

The lock is a lease: it expires after ttl seconds, so a runner that
crashes mid-batch never wedges the migration.  Each acquisition gets a
random token and release only deletes the key if the token still
matches, so a runner whose lease expired cannot release someone else's.
"""

from __future__ import annotations

import secrets
import time
from collections.abc import Callable
from typing import Protocol, runtime_checkable

from app.db.redis import redis_pool


@runtime_checkable
class MigrationLock(Protocol):
    async def acquire(self, ttl_seconds: int) -> str | None:
        """Return a release token, or None when another runner holds the lock."""
        ...

    async def release(self, token: str) -> bool: ...


class InMemoryMigrationLock:
    """Per-process lease; enough for one API instance or tests."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        # (token, expires_at) of the current holder
        self._held: tuple[str, float] | None = None

    async def acquire(self, ttl_seconds: int) -> str | None:
        now = self._clock()
        if self._held is not None and self._held[1] > now:
            return None
        token = secrets.token_hex(16)
        self._held = (token, now + ttl_seconds)
        return token

    async def release(self, token: str) -> bool:
        if self._held is None or self._held[0] != token:
            return False
        self._held = None
        return True

    def reset(self) -> None:
        self._held = None


class RedisMigrationLock:
    """Redis lease shared by every process pointed at the same Redis."""

    _KEY = "progress:migration:lock"

    # Compare-and-delete must be atomic, otherwise the lease could expire
    # and be taken by another runner between the GET and the DEL.
    # KEYS[1] = lock key, ARGV[1] = token
    _RELEASE_SCRIPT = """
    if redis.call('GET', KEYS[1]) == ARGV[1] then
        return redis.call('DEL', KEYS[1])
    end
    return 0
    """

    def __init__(self, redis_client) -> None:
        self._redis = redis_client
        self._script = None

    def _get_script(self):
        if self._script is None:
            self._script = self._redis.register_script(self._RELEASE_SCRIPT)
        return self._script

    async def acquire(self, ttl_seconds: int) -> str | None:
        token = secrets.token_hex(16)
        # SET NX EX: take the key only if free, with its TTL, in one command
        acquired = await self._redis.set(self._KEY, token, nx=True, ex=ttl_seconds)
        return token if acquired else None

    async def release(self, token: str) -> bool:
        script = self._get_script()
        return bool(await script(keys=[self._KEY], args=[token]))


if redis_pool is not None:
    migration_lock: MigrationLock = RedisMigrationLock(redis_pool)
else:
    migration_lock = InMemoryMigrationLock()
