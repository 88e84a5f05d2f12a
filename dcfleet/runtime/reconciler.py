"""Reconciler -- merges engine state, worktrees and sidecars into workspaces.

Every call rebuilds its maps from scratch; nothing is cached between
calls, so two reconciliations against unchanged state yield equal results.

Discovery (listing containers) is the only phase allowed to fail the whole
call.  Enrichment (dirty check, stats, exec sessions) is best effort per
record: a failure is logged and the field left empty.
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from loguru import logger

from dcfleet.runtime.errors import DcFleetError, NotFoundError
from dcfleet.runtime.models.enums import Status, StatsMode
from dcfleet.runtime.models.workspace import (
    FORWARD_LABEL,
    MANAGED_LABEL,
    PROJECT_LABEL,
    ContainerInfo,
    ExecDetails,
    ExecSession,
    Stats,
    Workspace,
    WorktreeKey,
    compose_project_name,
)

if TYPE_CHECKING:
    from dcfleet.runtime.settings import ProjectConfig
    from dcfleet.runtime.sources.base import ContainerSource, WorktreeSource


def discovery_labels(scope: str | None) -> list[str]:
    if scope is None:
        return [f"{MANAGED_LABEL}=true"]
    return [f"{PROJECT_LABEL}={scope}"]


@dataclass
class _Group:
    """Accumulator for one worktree path."""

    project: str
    containers: list[ContainerInfo] = field(default_factory=list)


class Reconciler:
    """Builds :class:`Workspace` snapshots from the two collaborators."""

    def __init__(self, containers: ContainerSource, worktrees: WorktreeSource) -> None:
        self._containers = containers
        self._worktrees = worktrees

    # -- Public API ------------------------------------------------------------

    async def reconcile(
        self,
        projects: Mapping[str, ProjectConfig],
        scope: str | None = None,
        stats_mode: StatsMode = StatsMode.FAST,
    ) -> list[Workspace]:
        """Workspaces of *projects* (only project *scope* when given), sorted by path."""
        if scope is not None:
            projects = {name: cfg for name, cfg in projects.items() if name == scope}

        labels = discovery_labels(scope)
        containers = await self._containers.list_containers(labels)
        groups = self._group(containers, scope)

        for project, cfg in projects.items():
            for path in await self._list_worktrees(project, cfg.path):
                groups.setdefault(WorktreeKey(path), _Group(project=project))

        forwarded = await self._forwarded_ports(scope)

        workspaces = await asyncio.gather(
            *(self._build(key, group, stats_mode, forwarded) for key, group in groups.items())
        )
        return sorted(workspaces, key=lambda ws: ws.path)

    async def get(
        self,
        projects: Mapping[str, ProjectConfig],
        scope: str | None,
        name: str,
        stats_mode: StatsMode = StatsMode.FAST,
    ) -> Workspace:
        """The workspace whose name (or full path) is *name*.

        Raises ``NotFoundError`` if there is none.
        """
        for ws in await self.reconcile(projects, scope, stats_mode):
            if name in (ws.name, str(ws.path)):
                return ws
        msg = f"workspace not found: {name}"
        raise NotFoundError(msg)

    # -- Discovery -------------------------------------------------------------

    @staticmethod
    def _group(containers: list[ContainerInfo], scope: str | None) -> dict[WorktreeKey, _Group]:
        groups: dict[WorktreeKey, _Group] = {}
        for c in containers:
            # A stale or moved container must not leak into another project.
            if scope is not None and c.project != scope:
                logger.debug("Ignoring container {} of project {}", c.id[:12], c.project)
                continue
            group = groups.setdefault(c.key, _Group(project=c.project or scope or ""))
            group.containers.append(c)
        return groups

    async def _list_worktrees(self, project: str, repo_path: Path) -> list[Path]:
        try:
            return await self._worktrees.list_worktrees(repo_path)
        except DcFleetError as exc:
            logger.warning("Could not list worktrees of {} ({}): {}", project, repo_path, exc)
            return []

    async def _forwarded_ports(self, scope: str | None) -> dict[str, set[int]]:
        labels = [f"{FORWARD_LABEL}=true"]
        if scope is not None:
            labels.append(f"{PROJECT_LABEL}={scope}")
        try:
            return await self._containers.forwarded_ports(labels)
        except DcFleetError as exc:
            logger.warning("Could not list port forwards: {}", exc)
            return {}

    # -- Enrichment ------------------------------------------------------------

    async def _build(
        self,
        key: WorktreeKey,
        group: _Group,
        stats_mode: StatsMode,
        forwarded: dict[str, set[int]],
    ) -> Workspace:
        containers = group.containers
        slug = compose_project_name(key.path)

        dirty, per_container = await asyncio.gather(
            self._is_dirty(key.path),
            asyncio.gather(*(self._enrich(c, stats_mode) for c in containers)),
        )

        execs = [session for _, sessions in per_container for session in sessions]
        stats = [s for s, _ in per_container if s is not None]
        created = [c.created for c in containers if c.created is not None]

        return Workspace(
            path=key.path,
            project=group.project,
            compose_project_name=slug,
            status=Status.aggregate([c.state for c in containers]),
            dirty=dirty,
            execs=execs,
            stats=Stats.total(stats),
            containers=containers,
            forwarded_ports=frozenset(forwarded.get(slug, ())),
            published_ports=frozenset().union(*(c.published_ports for c in containers)),
            created=min(created, default=None),
        )

    async def _is_dirty(self, path: Path) -> bool:
        try:
            return await self._worktrees.is_dirty(path)
        except DcFleetError as exc:
            logger.warning("Could not check {} for changes: {}", path, exc)
            return False

    async def _enrich(self, container: ContainerInfo, mode: StatsMode) -> tuple[Stats | None, list[ExecSession]]:
        stats, execs = await asyncio.gather(self._stats(container, mode), self._execs(container))
        return stats, execs

    async def _stats(self, container: ContainerInfo, mode: StatsMode) -> Stats | None:
        try:
            return await self._containers.sample_stats(container.id, mode)
        except DcFleetError as exc:
            logger.warning("No stats for container {}: {}", container.id[:12], exc)
            return None

    async def _execs(self, container: ContainerInfo) -> list[ExecSession]:
        try:
            details = await self._containers.inspect_container(container.id)
        except DcFleetError as exc:
            logger.warning("No exec sessions for container {}: {}", container.id[:12], exc)
            return []
        # One exec ending between the two inspections must not hide the others.
        inspected = await asyncio.gather(*(self._inspect_exec(e) for e in details.exec_ids))
        return [
            ExecSession(pid=e.pid, command=[e.entrypoint, *e.arguments])
            for e in inspected
            if e is not None and e.running
        ]

    async def _inspect_exec(self, exec_id: str) -> ExecDetails | None:
        try:
            return await self._containers.inspect_exec(exec_id)
        except DcFleetError as exc:
            logger.warning("Skipping exec {}: {}", exec_id[:12], exc)
            return None
