"""devcontainer.json data model.

Only the compose flavour of devcontainer is supported.  The model is pure
data: parsing happens here, everything that acts on it lives in the
managers.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from dcfleet.runtime.errors import ConfigError

Cmd = str | list[str]
"""A string runs through ``/bin/sh -c``; a list is an argv."""

LifecycleCommand = Cmd | dict[str, Cmd]
"""A single command, or named commands to run in parallel."""


def as_argv(cmd: Cmd) -> list[str]:
    if isinstance(cmd, str):
        return ["/bin/sh", "-c", cmd]
    return list(cmd)


def display(cmd: Cmd) -> str:
    return cmd if isinstance(cmd, str) else " ".join(cmd)


def _one_or_many(value: Any) -> Any:
    if isinstance(value, str):
        return [value]
    return value


class PortMap(BaseModel):
    """A host port and the container port it maps to."""

    model_config = ConfigDict(frozen=True)

    host: int = Field(ge=1, le=65535)
    container: int = Field(ge=1, le=65535)

    @classmethod
    def parse(cls, value: int | str) -> PortMap:
        """Accept ``3000``, ``"3000"`` or ``"3000:3001"``."""
        if isinstance(value, int):
            return cls(host=value, container=value)
        host, sep, container = value.partition(":")
        try:
            if sep:
                return cls(host=int(host), container=int(container))
            return cls(host=int(value), container=int(value))
        except ValueError:
            msg = f"invalid port mapping: {value!r}"
            raise ValueError(msg) from None

    def __str__(self) -> str:
        return f"{self.host}:{self.container}"


class _Model(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class FleetOptions(_Model):
    """Options under ``customizations.dcfleet``."""

    default_exec: Cmd | None = None
    worktree_folder: Path | None = None
    forward_port: int | None = None
    """Host port used by ``dcfleet fwd`` when none is given."""
    container_port: int | None = None
    """Port inside the container; defaults to ``forward_port``."""
    default_copy_volumes: list[str] | None = None
    """Named volumes ``copy`` and ``up --copy`` use when none are given."""

    @field_validator("worktree_folder", mode="before")
    @classmethod
    def _expand_user(cls, value: object) -> object:
        if isinstance(value, str):
            return Path(value).expanduser()
        return value

    def workspace_dir(self, project_path: Path) -> Path:
        """Directory new worktrees are created in (next to the repo by default)."""
        return self.worktree_folder or project_path.parent


class Customizations(_Model):
    dcfleet: FleetOptions = Field(default_factory=FleetOptions)


class DevContainer(_Model):
    name: str | None = None

    # -- Compose ---------------------------------------------------------------
    docker_compose_file: Annotated[list[str], BeforeValidator(_one_or_many)]
    service: str
    """The primary container your tools connect to."""
    run_services: list[str] | None = None
    workspace_folder: Path
    override_command: bool = False

    # -- Container -------------------------------------------------------------
    container_env: dict[str, str] = Field(default_factory=dict)
    container_user: str | None = None
    remote_env: dict[str, str | None] = Field(default_factory=dict)
    remote_user: str | None = None
    init: bool | None = None
    privileged: bool | None = None
    cap_add: list[str] = Field(default_factory=list)
    security_opt: list[str] = Field(default_factory=list)
    forward_ports: list[PortMap] = Field(default_factory=list)

    # -- Lifecycle -------------------------------------------------------------
    initialize_command: LifecycleCommand | None = None
    on_create_command: LifecycleCommand | None = None
    update_content_command: LifecycleCommand | None = None
    post_create_command: LifecycleCommand | None = None
    post_start_command: LifecycleCommand | None = None

    customizations: Customizations = Field(default_factory=Customizations)

    @field_validator("forward_ports", mode="before")
    @classmethod
    def _parse_ports(cls, value: object) -> object:
        if isinstance(value, list):
            return [PortMap.parse(v) if isinstance(v, int | str) else v for v in value]
        return value

    @property
    def options(self) -> FleetOptions:
        return self.customizations.dcfleet

    def container_lifecycle(self) -> list[tuple[str, LifecycleCommand]]:
        """In-container lifecycle commands in the order they run."""
        steps = [
            ("onCreateCommand", self.on_create_command),
            ("updateContentCommand", self.update_content_command),
            ("postCreateCommand", self.post_create_command),
            ("postStartCommand", self.post_start_command),
        ]
        return [(label, cmd) for label, cmd in steps if cmd is not None]

    def forward_targets(self, port: int | None = None) -> list[PortMap]:
        """Ports ``fwd`` publishes.

        An explicit *port* wins, then ``customizations.dcfleet.forwardPort``,
        then every entry of ``forwardPorts``.
        """
        opts = self.options
        host = port or opts.forward_port
        if host is not None:
            return [PortMap(host=host, container=opts.container_port or host)]
        if not self.forward_ports:
            msg = "no port specified and no forwardPort or forwardPorts in devcontainer.json"
            raise ConfigError(msg)
        return list(self.forward_ports)

    # -- Loading ---------------------------------------------------------------

    @classmethod
    def find(cls, root: Path) -> Path:
        """Locate devcontainer.json under *root*.

        Precedence: ``.devcontainer/devcontainer.json``, ``.devcontainer.json``,
        then ``.devcontainer/<folder>/devcontainer.json`` one level deep.
        """
        for candidate in (root / ".devcontainer" / "devcontainer.json", root / ".devcontainer.json"):
            if candidate.is_file():
                return candidate
        dc_dir = root / ".devcontainer"
        if dc_dir.is_dir():
            for sub in sorted(dc_dir.iterdir()):
                if sub.is_dir() and (sub / "devcontainer.json").is_file():
                    return sub / "devcontainer.json"
        msg = f"no devcontainer.json found in {root}"
        raise ConfigError(msg)

    @classmethod
    def load(cls, root: Path) -> DevContainer:
        path = cls.find(root)
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            msg = f"failed to read {path}: {exc}"
            raise ConfigError(msg) from exc

        if "dockerComposeFile" not in raw:
            msg = f"{path}: only docker compose based devcontainers are supported"
            raise ConfigError(msg)

        try:
            return cls.model_validate(raw)
        except ValidationError as exc:
            msg = f"failed to parse {path}: {exc}"
            raise ConfigError(msg) from exc
