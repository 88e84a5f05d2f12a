"""Workspace data model.

A workspace is one git worktree plus the containers whose
``devcontainer.local_folder`` label points at it.  All of these models are
short-lived snapshots rebuilt on every reconciliation; nothing is persisted.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

from dcfleet.runtime.models.enums import Status

# -- Labels ------------------------------------------------------------------

LOCAL_FOLDER_LABEL = "devcontainer.local_folder"
"""Join key: absolute worktree path of the container."""
CONFIG_FILE_LABEL = "devcontainer.config_file"
MANAGED_LABEL = "dev.dcfleet.managed"
PROJECT_LABEL = "dev.dcfleet.project"
WORKSPACE_LABEL = "dev.dcfleet.workspace"
"""Compose slug of the workspace a port-forward sidecar targets."""
FORWARD_LABEL = "dev.dcfleet.fwd"
COMPOSE_SERVICE_LABEL = "com.docker.compose.service"

_SLUG_DISALLOWED = re.compile(r"[^a-z0-9_-]")


def compose_project_name(worktree_path: Path) -> str:
    """Match the devcontainer CLI convention: ``{basename}_devcontainer``.

    Lowercased, keeping only ``[a-z0-9-_]``.
    """
    raw = f"{worktree_path.name}_devcontainer".lower()
    return _SLUG_DISALLOWED.sub("", raw)


# -- Join key ----------------------------------------------------------------


@dataclass(frozen=True, order=True)
class WorktreeKey:
    """Typed join key between containers and worktrees.

    Converted once at the ingestion boundary so the reconciler never
    re-parses label strings.
    """

    path: Path

    @classmethod
    def from_label(cls, value: str) -> WorktreeKey:
        return cls(Path(value))

    @property
    def name(self) -> str:
        return self.path.name

    def __str__(self) -> str:
        return str(self.path)


# -- Engine records ----------------------------------------------------------


class _Snapshot(BaseModel):
    model_config = ConfigDict(frozen=True)


class ContainerInfo(_Snapshot):
    """One container as listed by the engine."""

    id: str
    state: Status
    key: WorktreeKey
    project: str | None = None
    service: str | None = None
    created: datetime | None = None
    published_ports: frozenset[int] = frozenset()


class ContainerDetails(_Snapshot):
    networks: dict[str, str] = Field(default_factory=dict, description="Network name -> IP address")
    exec_ids: list[str] = Field(default_factory=list)


class ExecDetails(_Snapshot):
    running: bool
    pid: int
    entrypoint: str
    arguments: list[str] = Field(default_factory=list)


class ExecSession(_Snapshot):
    """A currently running ``docker exec`` session."""

    pid: int
    command: list[str]


class StatsSample(_Snapshot):
    """One raw stats reading for a container."""

    memory_usage_bytes: int = 0
    cpu_total: int | None = None
    system_cpu: int | None = None
    online_cpus: int = 1


class Stats(_Snapshot):
    ram: int
    """Memory in use, bytes."""
    cpu: float | None = None
    """CPU percent; ``None`` when only a single sample was taken."""

    @classmethod
    def total(cls, parts: list[Stats]) -> Stats | None:
        """Sum across containers; CPU is only known if every part has it."""
        if not parts:
            return None
        cpus = [p.cpu for p in parts]
        return cls(
            ram=sum(p.ram for p in parts),
            cpu=None if any(c is None for c in cpus) else sum(c for c in cpus if c is not None),
        )


# -- Workspace ---------------------------------------------------------------


class Workspace(_Snapshot):
    path: Path
    project: str
    compose_project_name: str
    status: Status = Status.NONE
    dirty: bool = False
    execs: list[ExecSession] = Field(default_factory=list)
    stats: Stats | None = None
    containers: list[ContainerInfo] = Field(default_factory=list)
    forwarded_ports: frozenset[int] = frozenset()
    published_ports: frozenset[int] = frozenset()
    created: datetime | None = None

    @property
    def name(self) -> str:
        return self.path.name

    @property
    def container_ids(self) -> list[str]:
        return [c.id for c in self.containers]

    def primary_container(self, service: str | None = None) -> str | None:
        """Container id to exec into.

        Prefers the container running *service*; otherwise the first
        discovered one.
        """
        if service is not None:
            for c in self.containers:
                if c.service == service:
                    return c.id
        return self.containers[0].id if self.containers else None


class ForwardSidecar(_Snapshot):
    """A relay container publishing a host port into a workspace's network."""

    id: str
    workspace: str
    """Compose slug of the target workspace."""
    project: str | None = None
    ports: frozenset[int] = frozenset()
