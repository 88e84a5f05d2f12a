import asyncio
import shlex
from collections.abc import AsyncIterator, Coroutine
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, TypeVar

import click
from pydantic import ValidationError

from dcfleet import __version__
from dcfleet.runtime.errors import DcFleetError, NotFoundError
from dcfleet.runtime.log import setup_logging
from dcfleet.runtime.managers.workspaces import Forward, WorkspaceManager, exec_argv, exec_interactive
from dcfleet.runtime.models.enums import StatsMode
from dcfleet.runtime.models.workspace import Workspace
from dcfleet.runtime.settings import get_settings
from dcfleet.runtime.sources.docker import DockerClient
from dcfleet.runtime.sources.git import GitCli
from dcfleet.runtime.table import workspace_table

T = TypeVar("T")


@asynccontextmanager
async def _open_manager() -> AsyncIterator[WorkspaceManager]:
    """Manager bound to a live Docker connection; fails fast when the daemon is down."""
    settings = get_settings()
    async with DockerClient(
        settings.docker_socket,
        timeout=settings.docker_timeout,
        stats_interval=settings.stats_interval,
    ) as docker:
        await docker.ping()
        yield WorkspaceManager(settings, docker, GitCli())


def _run(coro: Coroutine[Any, Any, T]) -> T:
    try:
        return asyncio.run(coro)
    except DcFleetError as exc:
        raise click.ClickException(str(exc)) from exc


async def _resolve(manager: WorkspaceManager, name: str | None, project: str | None = None) -> Workspace:
    """Named workspace, or the one containing the current directory."""
    if name is not None:
        return await manager.get_workspace(name, project)
    return await manager.current_workspace(Path.cwd())


def _pick(workspaces: list[Workspace], empty: str = "no running workspaces", prompt: str = "Workspace") -> Workspace:
    if not workspaces:
        msg = empty
        raise NotFoundError(msg)
    if len(workspaces) == 1:
        return workspaces[0]
    for i, ws in enumerate(workspaces, start=1):
        click.echo(f"{i:>3}) {ws.name}  ({ws.project})", err=True)
    choice = click.prompt(prompt, type=click.IntRange(1, len(workspaces)), err=True)
    return workspaces[choice - 1]


async def _choose_running(manager: WorkspaceManager, name: str | None, project: str | None) -> Workspace:
    if name is not None:
        return await manager.get_workspace(name)
    return _pick(await manager.running_workspaces(project))


@click.group()
@click.version_option(__version__, prog_name="dcfleet")
def main() -> None:
    """dcfleet - one devcontainer per git worktree."""
    try:
        setup_logging(get_settings().log_level)
    except ValidationError as exc:
        raise click.ClickException(f"invalid configuration: {exc}") from exc


# ---------------------------------------------------------------------------
# Listing
# ---------------------------------------------------------------------------


@main.command("list")
@click.option("-p", "--project", default=None, help="Name of project [default: all].")
@click.option("--cpu", is_flag=True, default=False, help="Sample CPU usage (slower).")
def list_(project: str | None, cpu: bool) -> None:
    """List workspaces and their containers."""
    mode = StatsMode.DELTA if cpu else StatsMode.FAST

    async def _list() -> str:
        async with _open_manager() as manager:
            return workspace_table(await manager.list_workspaces(project, mode), manager.roots)

    click.echo(_run(_list()), nl=False)


@main.command()
@click.argument("name")
def go(name: str) -> None:
    """Print a ``cd`` into the workspace (for a shell wrapper to eval)."""

    async def _go() -> Path:
        async with _open_manager() as manager:
            return (await manager.get_workspace(name)).path

    click.echo(f"cd {shlex.quote(str(_run(_go())))}")


@main.group()
def show() -> None:
    """Show workspace details."""


@show.command()
@click.argument("name", required=False)
def ports(name: str | None) -> None:
    """Show forwarded ports of a workspace [default: current directory]."""

    async def _ports() -> list[int]:
        async with _open_manager() as manager:
            return await manager.forwarded_ports(await _resolve(manager, name))

    click.echo(",".join(str(p) for p in _run(_ports())))


@show.command("workspace")
@click.pass_context
def show_workspace(ctx: click.Context) -> None:
    """Print the current workspace name, or exit 1 if not in one."""

    async def _current() -> str:
        async with _open_manager() as manager:
            return (await manager.current_workspace(Path.cwd())).name

    try:
        click.echo(asyncio.run(_current()))
    except NotFoundError:
        ctx.exit(1)
    except DcFleetError as exc:
        raise click.ClickException(str(exc)) from exc


# ---------------------------------------------------------------------------
# Removal
# ---------------------------------------------------------------------------


def _print_group(title: str, workspaces: list[Workspace], roots: set[Path]) -> None:
    click.echo(title, err=True)
    click.echo(workspace_table(workspaces, roots), err=True)


@main.command()
@click.option("-p", "--project", default=None, help="Name of project [default: all].")
@click.option("-y", "--yes", is_flag=True, default=False, help="Skip the confirmation prompt.")
def prune(project: str | None, yes: bool) -> None:
    """Clean up every workspace not actively in use.

    "In use" means a project root, a live ``docker exec`` session, or
    uncommitted changes.  Everything else is stopped and its data deleted.
    """

    async def _prune() -> None:
        async with _open_manager() as manager:
            plan = await manager.plan_prune(project)
            roots = manager.roots
            skipping = click.style("skipping", fg="cyan")
            if plan.in_use:
                _print_group(f"{click.style('In Use', fg='green')} ({skipping}):", plan.in_use, roots)
            if plan.dirty:
                _print_group(f"{click.style('Dirty', fg='red')} ({skipping}):", plan.dirty, roots)
            if not plan.to_clean:
                return
            _print_group(click.style("Will Remove - DATA WILL BE LOST:", fg="yellow"), plan.to_clean, roots)
            if not yes and not click.confirm("Proceed?", default=False, err=True):
                click.echo("Aborted.", err=True)
                return
            await manager.prune(plan)

    _run(_prune())


@main.command()
@click.argument("name", required=False)
@click.option("-p", "--project", default=None, help="Name of project.")
@click.option("-f", "--force", is_flag=True, default=False, help="Remove the worktree even if dirty.")
def destroy(name: str | None, project: str | None, force: bool) -> None:
    """Destroy a workspace [default: current directory].

    Equivalent to ``docker compose down -v --remove-orphans`` followed by
    ``git worktree remove``.
    """

    async def _destroy() -> None:
        async with _open_manager() as manager:
            ws = await _resolve(manager, name, project)
            if manager.is_root(ws):
                root = click.style("root", fg="red")
                click.secho(f"Will destroy {root} workspace - DATA WILL BE LOST", fg="yellow", err=True)
                if not click.confirm("Proceed?", default=False, err=True):
                    click.echo("Aborted.", err=True)
                    return
            await manager.destroy(ws, force=force)

    _run(_destroy())


main.add_command(destroy, "kill")


# ---------------------------------------------------------------------------
# Up / exec / forward
# ---------------------------------------------------------------------------


@main.command(context_settings={"ignore_unknown_options": True})
@click.option("-p", "--project", default=None, help="Name of project [default: the first one configured].")
@click.option("-x", "--exec", "exec_", is_flag=True, default=False, help="Exec into it once up.")
@click.option("-c", "--copy", is_flag=True, default=False, help="Copy the root's defaultCopyVolumes in first.")
@click.option("--volume", "volumes", multiple=True, help="Copy this named volume from the root (repeatable).")
@click.argument("name", required=False)
@click.argument("cmd", nargs=-1, type=click.UNPROCESSED)
def up(
    project: str | None,
    exec_: bool,
    copy: bool,
    volumes: tuple[str, ...],
    name: str | None,
    cmd: tuple[str, ...],
) -> None:
    """Spin up a devcontainer in a new (or existing) worktree.

    NAME defaults to a generated one.  With -x, CMD runs interactively
    afterwards [default: the configured defaultExec].  With -c or --volume,
    named volumes of the project root are copied in before the first start.
    """
    to_copy = list(volumes) if volumes else ([] if copy else None)

    async def _up() -> list[str] | None:
        async with _open_manager() as manager:
            result = await manager.up(project, name, to_copy)
            click.echo(f"Workspace ready: {result.workspace_path}", err=True)
            if not exec_:
                return None
            return exec_argv(result.container_id, result.devcontainer, list(cmd))

    argv = _run(_up())
    if argv is not None:
        exec_interactive(argv)


@main.command("exec", context_settings={"ignore_unknown_options": True})
@click.option("-p", "--project", default=None, help="Pick among this project's workspaces.")
@click.option("-n", "--name", default=None, help="Name of workspace.")
@click.argument("cmd", nargs=-1, type=click.UNPROCESSED)
def exec_(project: str | None, name: str | None, cmd: tuple[str, ...]) -> None:
    """Exec into a running devcontainer.

    Supply either project or name, or neither to get a picker.
    """
    if project and name:
        raise click.UsageError("--project and --name are mutually exclusive")

    async def _exec() -> list[str]:
        async with _open_manager() as manager:
            ws = await _choose_running(manager, name, project)
            return await manager.exec_argv(ws, list(cmd))

    exec_interactive(_run(_exec()))


@main.command()
@click.option("-p", "--project", default=None, help="Pick among this project's workspaces.")
@click.option("-n", "--name", default=None, help="Name of workspace.")
@click.argument("port", type=click.IntRange(1, 65535), required=False)
def fwd(project: str | None, name: str | None, port: int | None) -> None:
    """Forward a local TCP port to a running devcontainer.

    PORT defaults to ``customizations.dcfleet.forwardPort``, then to every
    entry of ``forwardPorts``.
    """
    if project and name:
        raise click.UsageError("--project and --name are mutually exclusive")

    async def _fwd() -> list[Forward]:
        async with _open_manager() as manager:
            ws = await _choose_running(manager, name, project)
            return await manager.forward(ws, port)

    for forward in _run(_fwd()):
        click.echo(str(forward), err=True)


# ---------------------------------------------------------------------------
# Volumes / compose
# ---------------------------------------------------------------------------


@main.command()
@click.option("-p", "--project", default=None, help="Pick among this project's workspaces.")
@click.option("--from", "source", default=None, help="Workspace to copy from [default: pick].")
@click.option("--to", "target", default=None, help="Workspace to copy into [default: pick].")
@click.argument("volumes", nargs=-1)
def copy(project: str | None, source: str | None, target: str | None, volumes: tuple[str, ...]) -> None:
    """Copy named volumes from one workspace into another.

    VOLUMES default to ``customizations.dcfleet.defaultCopyVolumes``.  The
    target should be stopped so nothing writes to it during the copy.
    """

    async def _copy() -> None:
        async with _open_manager() as manager:
            workspaces = await manager.list_workspaces(project)
            if source is not None:
                src = await manager.get_workspace(source, project)
            else:
                src = _pick(workspaces, empty="no workspaces", prompt="Copy from")
            if target is not None:
                dst = await manager.get_workspace(target, project)
            else:
                others = [ws for ws in workspaces if ws.compose_project_name != src.compose_project_name]
                dst = _pick(others, empty="no other workspace to copy into", prompt="Copy to")
            await manager.copy(src, dst, list(volumes))

    _run(_copy())


@main.command(context_settings={"ignore_unknown_options": True, "allow_interspersed_args": False})
@click.option("-w", "--workspace", "name", default=None, help="Name of workspace [default: current directory].")
@click.argument("args", nargs=-1, type=click.UNPROCESSED)
def compose(name: str | None, args: tuple[str, ...]) -> None:
    """Run ``docker compose ARGS`` against a workspace's compose project."""

    async def _compose() -> list[str]:
        async with _open_manager() as manager:
            return await manager.compose_argv(await _resolve(manager, name), list(args))

    exec_interactive(_run(_compose()))


if __name__ == "__main__":
    main()
