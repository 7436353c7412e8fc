from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Literal

AppEnv = Literal["dev", "test", "prod"]
LogLevel = Literal["debug", "info", "warning", "error"]

_TRUE = ("1", "true", "yes", "on")
_FALSE = ("0", "false", "no", "off")


def _getenv(name: str, default: str) -> str:
    return os.environ.get(name, default).strip()


def _getbool(name: str, default: bool) -> bool:
    raw = _getenv(name, "true" if default else "false").lower()
    if raw in _TRUE:
        return True
    if raw in _FALSE:
        return False
    raise ValueError(f"{name} must be a boolean (got {raw!r})")


def _getint(name: str, default: int, *, minimum: int) -> int:
    raw = _getenv(name, str(default))
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer (got {raw!r})") from None
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum} (got {value})")
    return value


def _getfloat(name: str, default: float) -> float:
    raw = _getenv(name, str(default))
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number (got {raw!r})") from None
    if value <= 0:
        raise ValueError(f"{name} must be > 0 (got {value})")
    return value


@dataclass(frozen=True)
class ProgressSettings:
    """Knobs for the progress repository selector and the migration runner."""

    dual_write: bool = True
    mirror_timeout_seconds: float = 2.0
    batch_size: int = 100
    max_batches_per_run: int = 10
    reconcile_tolerance: int = 0
    auto_cutover: bool = True
    interval_seconds: int = 60
    lock_ttl_seconds: int = 300


@dataclass(frozen=True)
class Settings:
    app_env: AppEnv
    log_level: LogLevel
    port: int
    database_url: str | None
    redis_url: str | None
    log_json: bool = False
    quiz_catalog_path: str | None = None
    progress: ProgressSettings = field(default_factory=ProgressSettings)

    @property
    def is_dev(self) -> bool:
        return self.app_env == "dev"

    @property
    def is_test(self) -> bool:
        return self.app_env == "test"

    @property
    def is_prod(self) -> bool:
        return self.app_env == "prod"


def load_progress_settings() -> ProgressSettings:
    return ProgressSettings(
        dual_write=_getbool("PROGRESS_DUAL_WRITE", True),
        mirror_timeout_seconds=_getfloat("PROGRESS_MIRROR_TIMEOUT_SECONDS", 2.0),
        batch_size=_getint("MIGRATION_BATCH_SIZE", 100, minimum=1),
        max_batches_per_run=_getint("MIGRATION_MAX_BATCHES_PER_RUN", 10, minimum=1),
        reconcile_tolerance=_getint("MIGRATION_RECONCILE_TOLERANCE", 0, minimum=0),
        auto_cutover=_getbool("MIGRATION_AUTO_CUTOVER", True),
        interval_seconds=_getint("MIGRATION_INTERVAL_SECONDS", 60, minimum=1),
        lock_ttl_seconds=_getint("MIGRATION_LOCK_TTL_SECONDS", 300, minimum=1),
    )


def load_settings() -> Settings:
    app_env_raw = _getenv("APP_ENV", "dev").lower()
    log_level_raw = _getenv("LOG_LEVEL", "info").lower()
    port_raw = _getenv("PORT", "8000")

    if app_env_raw not in ("dev", "test", "prod"):
        raise ValueError(f"APP_ENV must be dev|test|prod (got {app_env_raw!r})")

    if log_level_raw not in ("debug", "info", "warning", "error"):
        raise ValueError(
            f"LOG_LEVEL must be debug|info|warning|error (got {log_level_raw!r})"
        )

    try:
        port = int(port_raw)
    except ValueError:
        raise ValueError(f"PORT must be an integer (got {port_raw!r})") from None

    return Settings(  # type: ignore[arg-type]
        app_env=app_env_raw,
        log_level=log_level_raw,
        port=port,
        database_url=_getenv("DATABASE_URL", "") or None,
        redis_url=_getenv("REDIS_URL", "") or None,
        log_json=_getbool("LOG_JSON", False),
        quiz_catalog_path=_getenv("QUIZ_CATALOG_PATH", "") or None,
        progress=load_progress_settings(),
    )


SETTINGS = load_settings()
