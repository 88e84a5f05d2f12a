"""Task runner -- the only way a task body is ever executed.

A :class:`Task` body takes a :class:`Token`.  Tokens cannot be built
outside this module (the constructor demands a private key), so any code
that runs a task necessarily went through :class:`Runner`, and therefore
through :func:`~dcfleet.runtime.log.task_scope`.

There is no retry, backoff or cancellation here.  ``KeyboardInterrupt`` and
``CancelledError`` pass straight through.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from typing import Protocol, runtime_checkable

from loguru import logger

from dcfleet.runtime.errors import BatchFailureError, TaskFailedError
from dcfleet.runtime.log import task_scope

_TOKEN_KEY = object()

LABEL_COLORS = ("yellow", "green", "blue", "cyan", "magenta", "red")
"""Palette cycled through by parallel task labels."""


def label_color(index: int) -> str:
    return LABEL_COLORS[index % len(LABEL_COLORS)]


class Token:
    """Proof that the holder is running inside a runner scope."""

    __slots__ = ()

    def __init__(self, key: object) -> None:
        if key is not _TOKEN_KEY:
            msg = "Token can only be issued by the Runner"
            raise TypeError(msg)


_TOKEN = Token(_TOKEN_KEY)


@runtime_checkable
class Task(Protocol):
    """A named unit of work executed once by a :class:`Runner`."""

    @property
    def name(self) -> str: ...

    @property
    def description(self) -> str: ...

    async def run(self, token: Token) -> None: ...


class Runner:
    """Executes tasks inside named log scopes."""

    async def run(self, task: Task, *, color: str = "magenta") -> None:
        """Run one task; failures are re-raised as ``TaskFailedError``."""
        with task_scope(task.name, task.description, color=color):
            try:
                await task.run(_TOKEN)
            except Exception as exc:
                logger.error("Failed: {}", exc)
                raise TaskFailedError(task.name, exc) from exc

    async def run_parallel(self, label: str, tasks: Sequence[Task]) -> None:
        """Run *tasks* concurrently and wait for all of them.

        Raises ``BatchFailureError`` once every task has finished if any of
        them failed; its ``first`` is the failure with the lowest index.
        """
        results = await asyncio.gather(
            *(self.run(task, color=label_color(i)) for i, task in enumerate(tasks)),
            return_exceptions=True,
        )

        failures: list[TaskFailedError] = []
        for task, result in zip(tasks, results, strict=True):
            if isinstance(result, TaskFailedError):
                failures.append(result)
            elif isinstance(result, Exception):
                failures.append(TaskFailedError(task.name, result))
            elif isinstance(result, BaseException):
                raise result

        if failures:
            raise BatchFailureError(label, failures, len(tasks))
