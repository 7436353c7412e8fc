"""Health, readiness and metrics endpoints.

  /health   liveness: 200 whenever the process answers, with per-
            dependency status and the migration state in the body
  /ready    readiness: 503 when the database is configured but
            unreachable (Redis only guards the migration lock, so it
            is not critical)
  /metrics  Prometheus text exposition
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy import text

from app.api.dependencies import migration_runner
from app.db.engine import engine
from app.db.redis import redis_pool

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


async def _check_database() -> str:
    if engine is None:
        return "not_configured"
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception:
        logger.warning("Database health check failed", exc_info=True)
        return "degraded"
    return "ok"


async def _check_redis() -> str:
    if redis_pool is None:
        return "not_configured"
    try:
        await redis_pool.ping()  # type: ignore[misc]
    except Exception:
        logger.warning("Redis health check failed", exc_info=True)
        return "degraded"
    return "ok"


@router.get("/health")
async def health() -> dict:
    """Returns 200 even when degraded; the status field carries the verdict."""
    checks = {"database": await _check_database(), "redis": await _check_redis()}
    overall = "degraded" if "degraded" in checks.values() else "ok"

    migration_state = None
    if checks["database"] != "degraded":
        migration_state = (await migration_runner.get_migration_state()).value

    return {"status": overall, "checks": checks, "migration_state": migration_state}


@router.get("/ready")
async def ready() -> Response:
    if await _check_database() == "degraded":
        return Response(status_code=status.HTTP_503_SERVICE_UNAVAILABLE)
    return Response(status_code=status.HTTP_200_OK)


@router.get("/metrics", include_in_schema=False, tags=["observability"])
async def metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
