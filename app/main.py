from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from app.api.admin import router as admin_router
from app.api.dependencies import migration_runner
from app.api.health import router as health_router
from app.api.progress import router as progress_router
from app.core.config import SETTINGS
from app.core.logging import setup_logging
from app.db.engine import lifespan_db
from app.db.redis import lifespan_redis
from app.services.progress_migration import publish_state

# Configure logging before anything else runs.
setup_logging(SETTINGS.log_level, json_format=SETTINGS.log_json)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    # Teardown runs in reverse order (LIFO) even if one fails
    async with lifespan_db():
        async with lifespan_redis():
            try:
                state = await migration_runner.get_migration_state()
            except Exception:
                logger.exception("Could not read the progress migration state")
            else:
                publish_state(state)
                logger.info(
                    "Progress migration state: %s",
                    state.value,
                    extra={"migration_state": state.value},
                )
            yield


app = FastAPI(
    title="progress-service",
    lifespan=lifespan,
    docs_url="/docs" if SETTINGS.is_dev else None,
    redoc_url="/redoc" if SETTINGS.is_dev else None,
)

app.include_router(health_router)
app.include_router(progress_router)
app.include_router(admin_router)

logger.info(
    "progress-service started  env=%s log_level=%s port=%d docs=%s dual_write=%s",
    SETTINGS.app_env,
    SETTINGS.log_level,
    SETTINGS.port,
    "on" if SETTINGS.is_dev else "off",
    SETTINGS.progress.dual_write,
)
