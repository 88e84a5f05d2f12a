"""Process execution.

:func:`run_in_pty` is for commands the user should watch.  Tools such as
``docker compose`` only print progress when they see a terminal, so the
child gets a pseudo-terminal and its output is forwarded line by line at
``TRACE``, through the same sink, formatting and filtering as every other
log line.  :func:`run_captured` is for queries whose output is parsed.
"""

from __future__ import annotations

import asyncio
import errno
import os
import pty
from collections.abc import Sequence
from pathlib import Path

from anyio import to_thread
from loguru import logger

from dcfleet.runtime.errors import SubprocessFailedError

_READ_SIZE = 4096


def _read_chunk(fd: int) -> bytes:
    """Blocking read; ``b""`` at end of stream.

    Linux reports EIO on the master once the child side is closed.
    """
    try:
        return os.read(fd, _READ_SIZE)
    except OSError as exc:
        if exc.errno == errno.EIO:
            return b""
        raise


def _emit(line: bytes) -> None:
    logger.trace(line.decode(errors="replace").rstrip("\r"))


async def _pump(master: int) -> None:
    buffer = b""
    while chunk := await to_thread.run_sync(_read_chunk, master):
        buffer += chunk
        *lines, buffer = buffer.split(b"\n")
        for line in lines:
            _emit(line)
    if buffer.strip():
        _emit(buffer)


async def run_in_pty(argv: Sequence[str], cwd: Path | None = None) -> None:
    """Run *argv* to completion.

    Raises ``SubprocessFailedError`` on a non-zero exit status (or 127 when
    the program does not exist).
    """
    logger.debug("$ {}", " ".join(argv))
    master, slave = pty.openpty()
    try:
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=slave,
                stdout=slave,
                stderr=slave,
                cwd=cwd,
                start_new_session=True,
            )
        except FileNotFoundError as exc:
            raise SubprocessFailedError(argv, 127) from exc
        finally:
            # The child holds its own copy; ours would keep the stream open.
            os.close(slave)

        await _pump(master)
        code = await proc.wait()
    finally:
        os.close(master)

    if code != 0:
        raise SubprocessFailedError(argv, code)


async def run_captured(argv: Sequence[str], cwd: Path | None = None) -> str:
    """Run *argv* without a terminal and return its stdout.

    For queries whose output is parsed rather than shown.  Raises
    ``SubprocessFailedError`` on a non-zero exit (127 when the program does
    not exist); stderr is logged at debug.
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            cwd=cwd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as exc:
        raise SubprocessFailedError(argv, 127) from exc

    stdout, stderr = await proc.communicate()
    if proc.returncode != 0:
        logger.debug("{} failed: {}", " ".join(argv), stderr.decode(errors="replace").strip())
        raise SubprocessFailedError(argv, proc.returncode or 1)
    return stdout.decode(errors="replace")
