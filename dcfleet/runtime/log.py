"""Logging configuration using loguru.

Intercepts stdlib logging so that httpx, asyncio, etc. all flow through
loguru with a unified format.

Subprocess output is forwarded at ``TRACE`` and rendered almost undecorated.
When several tasks run in parallel their output interleaves, so TRACE lines
emitted inside a task scope are prefixed with the task label.
"""

from __future__ import annotations

import logging
import sys
import time
from collections.abc import Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING

import click
from loguru import logger

if TYPE_CHECKING:
    from loguru import Record

_PACKAGE = "dcfleet"


class _InterceptHandler(logging.Handler):
    """Bridge stdlib logging records into loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        # Map stdlib level name -> loguru level
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Walk the call stack so loguru reports the real call-site
        frame = logging.currentframe()
        depth = 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def _format_record(record: Record) -> str:
    task = record["extra"].get("task")
    if record["level"].name == "TRACE":
        if task:
            return "[{extra[task]}] {message}\n"
        return "{message}\n"

    fmt = "<dim>{time:HH:mm:ss}</dim> <level>{level: >5}</level>"
    if task:
        fmt += " [{extra[task]}]"
    fmt += " <level>{message}</level>\n{exception}"
    return fmt


def _filter_record(record: Record) -> bool:
    # TRACE output from dependencies is noise; ours is subprocess output.
    if record["level"].name == "TRACE":
        return (record["name"] or "").startswith(_PACKAGE)
    return True


def setup_logging(level: str = "TRACE") -> None:
    """Configure loguru as the sole logging sink.

    Call this once at process startup.
    """
    level = level.upper()

    # Remove default loguru handler and add ours
    logger.remove()
    logger.add(sys.stderr, level=level, format=_format_record, filter=_filter_record)

    # Intercept all stdlib logging
    logging.basicConfig(handlers=[_InterceptHandler()], level=0, force=True)

    # Quiet down noisy libraries
    for name in ("httpx", "httpcore", "asyncio"):
        logging.getLogger(name).setLevel(logging.WARNING)

    logger.debug("Logging initialised (level={})", level)


def format_duration(seconds: float) -> str:
    """Human-friendly duration, e.g. ``850ms``, ``4.2s``, ``3m 12s``."""
    if seconds < 1:
        return f"{round(seconds * 1000)}ms"
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes, secs = divmod(round(seconds), 60)
    if minutes < 60:
        return f"{minutes}m {secs}s"
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h {minutes}m"


@contextmanager
def task_scope(name: str, description: str, *, color: str = "magenta") -> Iterator[None]:
    """Bind *name* as the current task label for every log line in the block.

    Logs ``Running: <description>`` on entry and the elapsed time on exit.
    The label lives in a context variable, so it follows the block into
    asyncio tasks and worker threads spawned from it.
    """
    label = click.style(name, fg=color)
    start = time.monotonic()
    with logger.contextualize(task=label):
        logger.info("{}: {}", click.style("Running", fg="blue"), description)
        try:
            yield
        finally:
            logger.info("Took {}", click.style(format_duration(time.monotonic() - start), fg="green"))
