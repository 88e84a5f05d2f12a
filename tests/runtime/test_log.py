"""Tests for logging setup, formatting and task scopes."""

from __future__ import annotations

import logging

import click
import pytest
from loguru import logger

from dcfleet.runtime.log import _filter_record, _format_record, format_duration, setup_logging, task_scope


@pytest.mark.parametrize(
    ("seconds", "expected"),
    [
        (0.25, "250ms"),
        (4.21, "4.2s"),
        (192, "3m 12s"),
        (3 * 3600 + 60 * 5, "3h 5m"),
    ],
)
def test_format_duration(seconds: float, expected: str) -> None:
    assert format_duration(seconds) == expected


def _record(level: str, name: str = "dcfleet.runtime.execution.pty", **extra: str) -> dict:
    return {"level": logger.level(level), "name": name, "extra": extra}


def test_trace_only_from_own_package() -> None:
    assert _filter_record(_record("TRACE"))
    assert not _filter_record(_record("TRACE", name="httpcore.connection"))
    assert _filter_record(_record("INFO", name="httpx"))


def test_trace_format_is_bare() -> None:
    assert _format_record(_record("TRACE")) == "{message}\n"
    assert _format_record(_record("TRACE", task="build")) == "[{extra[task]}] {message}\n"


def test_other_levels_are_timestamped() -> None:
    fmt = _format_record(_record("INFO", task="build"))
    assert "{time:HH:mm:ss}" in fmt
    assert "[{extra[task]}]" in fmt
    assert "[{extra[task]}]" not in _format_record(_record("INFO"))


def test_task_scope_binds_label(log_messages: list[str]) -> None:
    seen: list[str] = []
    handler_id = logger.add(lambda m: seen.append(m.record["extra"].get("task", "")), level="TRACE")
    try:
        with task_scope("build", "compile things", color="green"):
            logger.trace("inner")
    finally:
        logger.remove(handler_id)

    assert log_messages[1] == "inner"
    assert click.unstyle(seen[1]) == "build"
    assert "compile things" in click.unstyle(log_messages[0])
    assert click.unstyle(log_messages[-1]).startswith("Took ")


def test_setup_logging_intercepts_stdlib(capsys: pytest.CaptureFixture[str]) -> None:
    setup_logging("INFO")
    logging.getLogger("somelib").warning("from stdlib")
    logger.trace("hidden")
    err = capsys.readouterr().err
    assert "from stdlib" in err
    assert "hidden" not in err
    logger.remove()
