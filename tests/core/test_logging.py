from __future__ import annotations

import logging

import pytest

from app.core.logging import _ContainerFormatter, _JsonFormatter, setup_logging


def _record(level: int, msg: str, *, path: str = "progress_migration.py", line: int = 1):
    return logging.LogRecord(
        name="app.services.progress_migration",
        level=level,
        pathname=path,
        lineno=line,
        msg=msg,
        args=(),
        exc_info=None,
    )


@pytest.mark.parametrize(
    ("name", "expected"),
    [
        ("debug", logging.DEBUG),
        ("WARNING", logging.WARNING),
        ("error", logging.ERROR),
        ("verbose", logging.INFO),
    ],
)
def test_setup_logging_root_level(name: str, expected: int) -> None:
    setup_logging(name)
    assert logging.getLogger().level == expected


@pytest.mark.parametrize(
    "noisy", ["uvicorn", "uvicorn.access", "httpx", "sqlalchemy.engine"]
)
def test_debug_runs_keep_third_party_loggers_at_warning(noisy: str) -> None:
    setup_logging("debug")
    assert logging.getLogger(noisy).level == logging.WARNING


def test_error_level_applies_to_third_party_loggers_too() -> None:
    setup_logging("error")
    assert logging.getLogger("uvicorn").level == logging.ERROR
    assert logging.getLogger("sqlalchemy.engine").level == logging.ERROR


def test_log_json_switches_the_single_handler_formatter() -> None:
    setup_logging("info", json_format=True)
    handlers = logging.getLogger().handlers
    assert len(handlers) == 1
    assert isinstance(handlers[0].formatter, _JsonFormatter)

    setup_logging("info")
    handlers = logging.getLogger().handlers
    assert len(handlers) == 1
    assert isinstance(handlers[0].formatter, _ContainerFormatter)


def test_container_format_has_no_location_below_warning() -> None:
    record = _record(logging.INFO, "Copied 100 progress records")
    output = _ContainerFormatter().format(record)
    assert "Copied 100 progress records" in output
    assert "[progress_migration.py:" not in output


@pytest.mark.parametrize("level", [logging.WARNING, logging.ERROR])
def test_container_format_points_at_the_source_for_problems(level: int) -> None:
    record = _record(level, "Migration batch failed", line=213)
    output = _ContainerFormatter().format(record)
    assert "Migration batch failed" in output
    assert output.endswith("[progress_migration.py:213]")


def test_container_timestamp_carries_milliseconds() -> None:
    record = _record(logging.INFO, "tick")
    record.msecs = 7
    stamp = _ContainerFormatter().format(record).split(" ", 1)[0]
    # 2026-03-02T09:00:00.007+0000
    assert stamp[19:23] == ".007"
