"""Workspace manager -- the operations behind every CLI command.

The manager owns no state beyond references to its collaborators:

- **DockerClient**: engine queries, sidecar creation and removal
- **GitCli**: worktree creation and lookup
- **Runner**: supervised execution of anything the user should watch

Every listing goes through the :class:`~dcfleet.runtime.reconciler.Reconciler`
so all commands agree on what a workspace is.  Methods raise domain
exceptions (``NotFoundError``, ``ConfigError``...); presentation and
prompting are left to the CLI.
"""

from __future__ import annotations

import json
import os
import random
import tempfile
from dataclasses import dataclass, field
from functools import partial
from pathlib import Path
from typing import TYPE_CHECKING, Any

from anyio import to_thread
from loguru import logger

from dcfleet.runtime.errors import ConfigError, DcFleetError, NotFoundError, SubprocessFailedError
from dcfleet.runtime.execution.pty import run_captured, run_in_pty
from dcfleet.runtime.execution.runner import Runner, Token
from dcfleet.runtime.execution.tasks import DockerExec, HostCommand, run_lifecycle
from dcfleet.runtime.models.devcontainer import Cmd, DevContainer, as_argv
from dcfleet.runtime.models.enums import Status, StatsMode
from dcfleet.runtime.models.workspace import (
    CONFIG_FILE_LABEL,
    FORWARD_LABEL,
    LOCAL_FOLDER_LABEL,
    MANAGED_LABEL,
    PROJECT_LABEL,
    WORKSPACE_LABEL,
    Workspace,
    compose_project_name,
)
from dcfleet.runtime.reconciler import Reconciler

if TYPE_CHECKING:
    from dcfleet.runtime.settings import FleetSettings, ProjectConfig
    from dcfleet.runtime.sources.docker import DockerClient
    from dcfleet.runtime.sources.git import GitCli

ADJECTIVES = ["brave", "swift", "calm", "bold", "keen", "wild", "warm", "cool", "fair", "wise"]
NOUNS = ["panda", "falcon", "river", "mountain", "oak", "wolf", "hawk", "cedar", "fox", "bear"]

# Keeps a container alive when ``overrideCommand`` is set, like the devcontainer CLI.
_KEEPALIVE_SCRIPT = 'echo Container started\ntrap "exit 0" 15\n\nexec "$@"\nwhile sleep 1 & wait $!; do :; done'


def generate_name() -> str:
    """Random ``adjective-noun`` workspace name."""
    return f"{random.choice(ADJECTIVES)}-{random.choice(NOUNS)}"  # noqa: S311


def override_path(slug: str) -> Path:
    return Path(tempfile.gettempdir()) / f"{slug}-override.yml"


# ---------------------------------------------------------------------------
# Compose
# ---------------------------------------------------------------------------


def compose_override(dc: DevContainer, worktree_path: Path, config_file: Path, project: str) -> dict[str, Any]:
    """Override document tagging the primary service with discovery labels."""
    service: dict[str, Any] = {
        "labels": [
            f"{LOCAL_FOLDER_LABEL}={worktree_path}",
            f"{CONFIG_FILE_LABEL}={config_file}",
            f"{MANAGED_LABEL}=true",
            f"{PROJECT_LABEL}={project}",
        ]
    }
    if dc.container_env:
        service["environment"] = dc.container_env
    if dc.init is not None:
        service["init"] = dc.init
    if dc.privileged is not None:
        service["privileged"] = dc.privileged
    if dc.cap_add:
        service["cap_add"] = dc.cap_add
    if dc.security_opt:
        service["security_opt"] = dc.security_opt
    if dc.container_user:
        service["user"] = dc.container_user
    if dc.override_command:
        service["entrypoint"] = ["/bin/sh", "-c", _KEEPALIVE_SCRIPT, "-"]
        service["command"] = []
    return {"services": {dc.service: service}}


def _write_text(path: Path, content: str) -> None:
    path.write_text(content, encoding="utf-8")


async def write_compose_override(dc: DevContainer, worktree_path: Path, config_file: Path, project: str) -> Path:
    """Write the override next to other temp files; JSON is valid YAML."""
    path = override_path(compose_project_name(worktree_path))
    content = json.dumps(compose_override(dc, worktree_path, config_file, project), indent=2)
    await to_thread.run_sync(partial(_write_text, path, content))
    return path


def compose_base_args(
    dc: DevContainer, worktree_path: Path, config_file: Path, override: Path | None = None
) -> list[str]:
    """``docker compose -p <slug> -f ... [-f <override>]``.

    Compose files are relative to the directory holding devcontainer.json.
    """
    args = ["docker", "compose", "-p", compose_project_name(worktree_path)]
    for f in dc.docker_compose_file:
        args += ["-f", str(config_file.parent / f)]
    if override is not None:
        args += ["-f", str(override)]
    return args


def compose_up_args(dc: DevContainer, base: list[str]) -> list[str]:
    args = [*base, "up", "-d", "--build"]
    if dc.run_services is not None:
        services = list(dc.run_services)
        if dc.service not in services:
            services.append(dc.service)
        args += services
    return args


async def compose_ps_q(dc: DevContainer, base: list[str]) -> str:
    """Id of the primary service's container."""
    out = await run_captured([*base, "ps", "-q", dc.service])
    lines = out.split()
    if not lines:
        msg = f"no container found for service '{dc.service}'"
        raise NotFoundError(msg)
    return lines[0]


def exec_argv(container_id: str, dc: DevContainer, cmd: list[str]) -> list[str]:
    """``docker exec -it`` argv; an empty *cmd* falls back to ``defaultExec``."""
    argv = ["docker", "exec", "-it"]
    if dc.remote_user:
        argv += ["-u", dc.remote_user]
    argv += ["-w", str(dc.workspace_folder), container_id]
    if cmd:
        return [*argv, *cmd]
    if dc.options.default_exec is None:
        msg = "no command provided and no defaultExec configured"
        raise ConfigError(msg)
    return [*argv, *as_argv(dc.options.default_exec)]


def exec_interactive(argv: list[str]) -> None:
    """Replace the current process with *argv*; never returns."""
    logger.debug("exec {}", " ".join(argv))
    os.execvp(argv[0], argv)  # noqa: S606


# ---------------------------------------------------------------------------
# Prune
# ---------------------------------------------------------------------------


@dataclass
class PrunePlan:
    """Workspaces sorted into what ``prune`` keeps and what it removes."""

    in_use: list[Workspace] = field(default_factory=list)
    """Project roots and workspaces with live exec sessions."""
    dirty: list[Workspace] = field(default_factory=list)
    to_clean: list[Workspace] = field(default_factory=list)


def plan_prune(workspaces: list[Workspace], roots: set[Path]) -> PrunePlan:
    plan = PrunePlan()
    for ws in workspaces:
        if ws.path in roots or ws.execs:
            plan.in_use.append(ws)
        elif ws.dirty:
            plan.dirty.append(ws)
        else:
            plan.to_clean.append(ws)
    return plan


@dataclass
class WorkspaceCleanup:
    """Tear a workspace down: compose project, override file, sidecars, worktree.

    Without a *repo_path* (the owning project is no longer configured) the
    worktree is left on disk.
    """

    docker: DockerClient
    repo_path: Path | None
    path: Path
    remove_worktree: bool = True
    force: bool = False
    verb: str = "prune"

    @property
    def name(self) -> str:
        return str(self.path)

    @property
    def description(self) -> str:
        return f"{self.verb} {self.path}"

    @property
    def slug(self) -> str:
        return compose_project_name(self.path)

    async def run(self, token: Token) -> None:
        await run_in_pty(["docker", "compose", "-p", self.slug, "down", "-v", "--remove-orphans"])

        override = override_path(self.slug)
        if await to_thread.run_sync(override.exists):
            await to_thread.run_sync(override.unlink)

        await self._remove_sidecars()

        if self.remove_worktree and self.repo_path is not None:
            argv = ["git", "worktree", "remove"]
            if self.force:
                argv.append("--force")
            await run_in_pty([*argv, str(self.path)], cwd=self.repo_path)

        logger.info("Removed {}", self.path)

    async def _remove_sidecars(self) -> None:
        labels = [f"{FORWARD_LABEL}=true", f"{WORKSPACE_LABEL}={self.slug}"]
        try:
            sidecars = await self.docker.list_sidecars(labels)
        except DcFleetError as exc:
            logger.warning("Could not list port forwards of {}: {}", self.slug, exc)
            return
        for sidecar in sidecars:
            try:
                await self.docker.remove_container(sidecar.id, force=True)
            except DcFleetError as exc:
                logger.warning("Could not remove port forward {}: {}", sidecar.id[:12], exc)


# ---------------------------------------------------------------------------
# Volumes
# ---------------------------------------------------------------------------


def copy_volume_names(dc: DevContainer, volumes: list[str]) -> list[str]:
    """*volumes*, or ``defaultCopyVolumes`` when none are given."""
    if volumes:
        return list(volumes)
    if dc.options.default_copy_volumes is None:
        msg = "no volumes specified and no defaultCopyVolumes configured"
        raise ConfigError(msg)
    return list(dc.options.default_copy_volumes)


def volume_pairs(source_slug: str, target_slug: str, volumes: list[str]) -> list[tuple[str, str]]:
    """Compose prefixes named volumes with the project name."""
    return [(f"{source_slug}_{vol}", f"{target_slug}_{vol}") for vol in volumes]


@dataclass
class VolumeCopy:
    """Copy the contents of one named volume into another."""

    docker: DockerClient
    source: str
    target: str
    image: str

    @property
    def name(self) -> str:
        return self.target

    @property
    def description(self) -> str:
        return f"copy {self.source} -> {self.target}"

    async def run(self, token: Token) -> None:
        await self.docker.run_to_completion(
            image=self.image,
            cmd=["sh", "-c", "cp -a /from/. /to/"],
            binds=[f"{self.source}:/from", f"{self.target}:/to"],
        )


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------


@dataclass
class UpResult:
    workspace_path: Path
    container_id: str
    devcontainer: DevContainer


@dataclass
class Forward:
    workspace: str
    host_port: int
    target_ip: str
    container_port: int
    sidecar_id: str

    def __str__(self) -> str:
        return f"{self.workspace}: forwarding 127.0.0.1:{self.host_port} -> {self.target_ip}:{self.container_port}"


class WorkspaceManager:
    """User-facing workspace operations."""

    def __init__(
        self,
        settings: FleetSettings,
        docker: DockerClient,
        git: GitCli,
        runner: Runner | None = None,
    ) -> None:
        self._settings = settings
        self._docker = docker
        self._git = git
        self._runner = runner or Runner()
        self._reconciler = Reconciler(docker, git)

    @property
    def roots(self) -> set[Path]:
        return {cfg.path for cfg in self._settings.projects.values()}

    def project_of(self, ws: Workspace) -> ProjectConfig:
        return self._settings.project(ws.project)[1]

    async def load_devcontainer(self, project: ProjectConfig) -> DevContainer:
        return await to_thread.run_sync(DevContainer.load, project.path)

    async def config_relpath(self, project: ProjectConfig) -> Path:
        """devcontainer.json relative to the project root; the same inside every worktree."""
        return (await to_thread.run_sync(DevContainer.find, project.path)).relative_to(project.path)

    # -- Listing ---------------------------------------------------------------

    async def list_workspaces(
        self,
        project: str | None = None,
        stats_mode: StatsMode = StatsMode.FAST,
    ) -> list[Workspace]:
        if project is not None:
            self._settings.project(project)
        return await self._reconciler.reconcile(self._settings.projects, project, stats_mode)

    async def get_workspace(self, name: str, project: str | None = None) -> Workspace:
        return await self._reconciler.get(self._settings.projects, project, name)

    async def current_workspace(self, cwd: Path) -> Workspace:
        """The workspace whose worktree contains *cwd*."""
        try:
            top = await self._git.worktree_for(cwd)
        except SubprocessFailedError:
            msg = f"not inside a workspace: {cwd}"
            raise NotFoundError(msg) from None
        for ws in await self.list_workspaces():
            if ws.path == top:
                return ws
        msg = f"not inside a workspace: {cwd}"
        raise NotFoundError(msg)

    async def running_workspaces(self, project: str | None = None) -> list[Workspace]:
        return [ws for ws in await self.list_workspaces(project) if ws.status is Status.RUNNING]

    async def forwarded_ports(self, ws: Workspace) -> list[int]:
        labels = [f"{FORWARD_LABEL}=true", f"{WORKSPACE_LABEL}={ws.compose_project_name}"]
        ports = await self._docker.forwarded_ports(labels)
        return sorted(ports.get(ws.compose_project_name, ()))

    # -- Removal ---------------------------------------------------------------

    async def plan_prune(self, project: str | None = None) -> PrunePlan:
        return plan_prune(await self.list_workspaces(project), self.roots)

    def cleanup_task(self, ws: Workspace, *, force: bool = False, verb: str = "prune") -> WorkspaceCleanup:
        try:
            project = self.project_of(ws)
        except NotFoundError:
            logger.warning("{} belongs to unconfigured project '{}'; keeping its worktree", ws.path, ws.project)
            repo_path, remove_worktree = None, False
        else:
            repo_path = project.path
            remove_worktree = ws.path != project.path and ws.path.exists()
        return WorkspaceCleanup(
            docker=self._docker,
            repo_path=repo_path,
            path=ws.path,
            remove_worktree=remove_worktree,
            force=force,
            verb=verb,
        )

    async def prune(self, plan: PrunePlan) -> None:
        """Remove every workspace in ``plan.to_clean``; all run even if some fail."""
        if plan.to_clean:
            await self._runner.run_parallel("prune", [self.cleanup_task(ws) for ws in plan.to_clean])

    def is_root(self, ws: Workspace) -> bool:
        return ws.path in self.roots

    async def destroy(self, ws: Workspace, *, force: bool = False) -> None:
        """Tear down *ws*.  A project root keeps its checkout."""
        if not await to_thread.run_sync(ws.path.exists):
            msg = f"no workspace named '{ws.name}' found"
            raise NotFoundError(msg)
        await self._runner.run(self.cleanup_task(ws, force=force, verb="destroy"))

    # -- Up --------------------------------------------------------------------

    async def up(
        self,
        project: str | None = None,
        name: str | None = None,
        copy: list[str] | None = None,
    ) -> UpResult:
        """Create (or reuse) a worktree and bring its devcontainer up.

        With *copy* (an empty list means ``defaultCopyVolumes``) the named
        volumes of the project root are copied in before the first start.
        """
        project_name, cfg = self._settings.project(project)
        dc = await self.load_devcontainer(cfg)
        config_rel = await self.config_relpath(cfg)
        volumes = copy_volume_names(dc, copy) if copy is not None else []

        target = dc.options.workspace_dir(cfg.path) / (name or generate_name())
        worktree = await self._git.add_worktree(cfg.path, target)
        config_file = worktree / config_rel

        if dc.initialize_command is not None:

            def on_host(label: str, cmd: Cmd) -> HostCommand:
                return HostCommand(label, cmd, cwd=worktree)

            await run_lifecycle(self._runner, "initializeCommand", dc.initialize_command, on_host)

        override = await write_compose_override(dc, worktree, config_file, project_name)
        base = compose_base_args(dc, worktree, config_file, override)

        if volumes:
            await self._copy_between(compose_project_name(cfg.path), compose_project_name(worktree), volumes)

        await self._runner.run(HostCommand("docker compose up", compose_up_args(dc, base), cwd=worktree))

        container_id = await compose_ps_q(dc, base)

        def in_container(label: str, cmd: Cmd) -> DockerExec:
            return DockerExec(
                label,
                container_id,
                cmd,
                user=dc.remote_user,
                workdir=str(dc.workspace_folder),
                env=dc.remote_env,
            )

        for label, cmd in dc.container_lifecycle():
            await run_lifecycle(self._runner, label, cmd, in_container)

        return UpResult(workspace_path=worktree, container_id=container_id, devcontainer=dc)

    # -- Exec / forward --------------------------------------------------------

    async def exec_argv(self, ws: Workspace, cmd: list[str]) -> list[str]:
        if ws.status is not Status.RUNNING:
            msg = f"workspace is not running: {ws.path}"
            raise NotFoundError(msg)
        dc = await self.load_devcontainer(self.project_of(ws))
        container_id = ws.primary_container(dc.service)
        if container_id is None:
            msg = f"no containers for workspace: {ws.name}"
            raise NotFoundError(msg)
        return exec_argv(container_id, dc, cmd)

    async def forward(self, ws: Workspace, port: int | None = None) -> list[Forward]:
        """Publish ``127.0.0.1:port`` to the workspace through socat sidecars.

        Without *port* every configured forward is published.  Any sidecar of
        the same project already holding a port is replaced.
        """
        if ws.status is not Status.RUNNING:
            msg = f"workspace is not running: {ws.path}"
            raise NotFoundError(msg)
        dc = await self.load_devcontainer(self.project_of(ws))
        targets = dc.forward_targets(port)

        container_id = ws.primary_container(dc.service)
        if container_id is None:
            msg = f"no containers for workspace: {ws.name}"
            raise NotFoundError(msg)
        details = await self._docker.inspect_container(container_id)
        network, ip = next(((n, ip) for n, ip in details.networks.items() if ip), (None, None))
        if network is None or ip is None:
            msg = f"container {container_id[:12]} has no IP address"
            raise NotFoundError(msg)

        holders = await self._docker.list_sidecars([f"{FORWARD_LABEL}=true", f"{PROJECT_LABEL}={ws.project}"])
        forwards = []
        removed: set[str] = set()
        for target in targets:
            for sidecar in holders:
                if target.host in sidecar.ports and sidecar.id not in removed:
                    removed.add(sidecar.id)
                    logger.info("Replacing port forward of {}", sidecar.workspace)
                    await self._docker.remove_container(sidecar.id, force=True)

            sidecar_id = await self._docker.create_forward_sidecar(
                image=self._settings.forward_image,
                network=network,
                target_ip=ip,
                container_port=target.container,
                host_port=target.host,
                labels={
                    FORWARD_LABEL: "true",
                    PROJECT_LABEL: ws.project,
                    WORKSPACE_LABEL: ws.compose_project_name,
                },
            )
            forwards.append(Forward(ws.name, target.host, ip, target.container, sidecar_id))
        return forwards

    # -- Volumes / compose -----------------------------------------------------

    async def _copy_between(self, source_slug: str, target_slug: str, volumes: list[str]) -> None:
        tasks = [
            VolumeCopy(self._docker, source, target, self._settings.copy_image)
            for source, target in volume_pairs(source_slug, target_slug, volumes)
        ]
        await self._runner.run_parallel("copy", tasks)

    async def copy(self, source: Workspace, target: Workspace, volumes: list[str]) -> None:
        """Copy named volumes of *source* into *target* [default: ``defaultCopyVolumes``]."""
        if source.compose_project_name == target.compose_project_name:
            msg = f"cannot copy {source.name} onto itself"
            raise ConfigError(msg)
        if not volumes:
            dc = await self.load_devcontainer(self.project_of(source))
            volumes = copy_volume_names(dc, volumes)
        await self._copy_between(source.compose_project_name, target.compose_project_name, volumes)

    async def compose_argv(self, ws: Workspace, args: list[str]) -> list[str]:
        """``docker compose`` argv bound to *ws*'s compose project and files."""
        cfg = self.project_of(ws)
        dc = await self.load_devcontainer(cfg)
        config_file = ws.path / await self.config_relpath(cfg)
        override = override_path(ws.compose_project_name)
        exists = await to_thread.run_sync(override.exists)
        return [*compose_base_args(dc, ws.path, config_file, override if exists else None), *args]
