"""Worktree source backed by the ``git`` binary.

Read-only queries capture output.  Commands whose output the user should
see (``worktree remove``) go through the PTY executor instead.
"""

from __future__ import annotations

from pathlib import Path

from anyio import to_thread
from loguru import logger

from dcfleet.runtime.errors import SubprocessFailedError
from dcfleet.runtime.execution.pty import run_captured

_WORKTREE_PREFIX = "worktree "


def parse_worktree_list(porcelain: str) -> list[Path]:
    """Paths from ``git worktree list --porcelain`` output."""
    return [
        Path(line[len(_WORKTREE_PREFIX) :])
        for line in porcelain.splitlines()
        if line.startswith(_WORKTREE_PREFIX)
    ]


async def run_git(*args: str, cwd: Path | None = None) -> str:
    return await run_captured(["git", *args], cwd=cwd)


class GitCli:
    """``WorktreeSource`` implementation shelling out to git."""

    async def list_worktrees(self, repo_path: Path) -> list[Path]:
        out = await run_git("worktree", "list", "--porcelain", cwd=repo_path)
        return parse_worktree_list(out)

    async def is_dirty(self, worktree_path: Path) -> bool:
        if not await to_thread.run_sync(worktree_path.exists):
            return False
        try:
            out = await run_git("status", "--porcelain", cwd=worktree_path)
        except SubprocessFailedError as exc:
            logger.debug("Treating {} as clean: {}", worktree_path, exc)
            return False
        return bool(out.strip())

    async def add_worktree(self, repo_path: Path, worktree_path: Path) -> Path:
        """Create *worktree_path*; git names the new branch after its basename.

        An existing directory is returned unchanged so ``up`` can be re-run.
        """
        if await to_thread.run_sync(worktree_path.exists):
            return worktree_path
        await run_git("worktree", "add", str(worktree_path), cwd=repo_path)
        return worktree_path

    async def worktree_for(self, cwd: Path) -> Path:
        """Top-level directory of the worktree containing *cwd*."""
        out = await run_git("rev-parse", "--show-toplevel", cwd=cwd)
        return Path(out.strip())
