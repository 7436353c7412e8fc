"""Redis connection management.

Mirrors engine.py: with REDIS_URL set we create a shared connection
pool; without it redis_pool is None and the migration lock falls back
to a per-process in-memory lease.

Redis only holds the migration lock.  The lock has to be visible to
every API instance and to the worker, and it has to expire on its own
when a runner dies, which SET NX EX gives us in one command.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

import redis.asyncio as aioredis

from app.core.config import SETTINGS

logger = logging.getLogger(__name__)

if SETTINGS.redis_url:
    redis_pool: aioredis.Redis | None = aioredis.from_url(  # type: ignore[type-arg]
        SETTINGS.redis_url,
        decode_responses=True,  # lock tokens compare as str
        max_connections=10,
    )
else:
    redis_pool = None


@asynccontextmanager
async def lifespan_redis():
    """Startup/shutdown hook for Redis, mirroring lifespan_db()."""
    if redis_pool is None:
        logger.info("No REDIS_URL configured; migration lock is in-memory")
        yield
        return

    try:
        await redis_pool.ping()  # type: ignore[misc]
        logger.info("Redis connected: %s", SETTINGS.redis_url)
    except Exception:
        # Start anyway; advance_migration() will fail and be retried
        logger.exception("Redis connection failed on startup")
        yield
        return

    yield

    await redis_pool.aclose()
    logger.info("Redis connection pool closed")
