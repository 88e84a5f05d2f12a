"""Collaborator interfaces for the reconciler.

The reconciler only ever talks to these protocols.  The shipped
implementations are :class:`~dcfleet.runtime.sources.docker.DockerClient`
(Docker Engine API over its unix socket) and
:class:`~dcfleet.runtime.sources.git.GitCli` (the ``git`` binary); tests
substitute in-memory fakes.
"""

from __future__ import annotations

from pathlib import Path
from typing import Protocol, runtime_checkable

from dcfleet.runtime.models.enums import StatsMode
from dcfleet.runtime.models.workspace import ContainerDetails, ContainerInfo, ExecDetails, Stats


@runtime_checkable
class ContainerSource(Protocol):
    """Read side of the container engine."""

    async def list_containers(self, labels: list[str]) -> list[ContainerInfo]:
        """All containers (any state) carrying every ``key=value`` label.

        Containers without a worktree-path label are not returned.  Raises
        ``EngineUnavailableError`` if the engine cannot be reached.
        """
        ...

    async def inspect_container(self, container_id: str) -> ContainerDetails:
        """Networks and exec session ids of a container."""
        ...

    async def inspect_exec(self, exec_id: str) -> ExecDetails:
        """State and command line of one exec session."""
        ...

    async def sample_stats(self, container_id: str, mode: StatsMode) -> Stats:
        """RAM (and CPU percent in ``DELTA`` mode) of a container."""
        ...

    async def forwarded_ports(self, labels: list[str]) -> dict[str, set[int]]:
        """Host ports published by port-forward sidecars, keyed by workspace slug."""
        ...


@runtime_checkable
class WorktreeSource(Protocol):
    """Read side of git."""

    async def list_worktrees(self, repo_path: Path) -> list[Path]:
        """Absolute paths of every worktree of *repo_path*, main checkout included."""
        ...

    async def is_dirty(self, worktree_path: Path) -> bool:
        """``True`` iff the worktree has uncommitted changes.

        A path that no longer exists is reported clean.
        """
        ...
