"""Data models for the dcfleet runtime."""

from dcfleet.runtime.models.devcontainer import DevContainer, FleetOptions, PortMap
from dcfleet.runtime.models.enums import Status, StatsMode
from dcfleet.runtime.models.workspace import (
    ContainerDetails,
    ContainerInfo,
    ExecDetails,
    ExecSession,
    ForwardSidecar,
    Stats,
    StatsSample,
    Workspace,
    WorktreeKey,
    compose_project_name,
)

__all__ = [
    "ContainerDetails",
    "ContainerInfo",
    "DevContainer",
    "ExecDetails",
    "ExecSession",
    "FleetOptions",
    "ForwardSidecar",
    "PortMap",
    "Stats",
    "StatsMode",
    "StatsSample",
    "Status",
    "Workspace",
    "WorktreeKey",
    "compose_project_name",
]
