"""Task kinds: host commands, in-container execs and in-process functions."""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path

from dcfleet.runtime.execution.pty import run_in_pty
from dcfleet.runtime.execution.runner import Runner, Task, Token
from dcfleet.runtime.models.devcontainer import Cmd, LifecycleCommand, as_argv, display


@dataclass
class HostCommand:
    """A command on the host, attached to a PTY."""

    name: str
    cmd: Cmd
    cwd: Path | None = None

    @property
    def description(self) -> str:
        return display(self.cmd)

    async def run(self, token: Token) -> None:
        await run_in_pty(as_argv(self.cmd), cwd=self.cwd)


@dataclass
class DockerExec:
    """A command inside a running container via ``docker exec``."""

    name: str
    container: str
    cmd: Cmd
    user: str | None = None
    workdir: str | None = None
    env: Mapping[str, str | None] = field(default_factory=dict)

    @property
    def description(self) -> str:
        return display(self.cmd)

    def argv(self) -> list[str]:
        argv = ["docker", "exec"]
        if self.user:
            argv += ["-u", self.user]
        if self.workdir:
            argv += ["-w", self.workdir]
        for key, value in self.env.items():
            # A bare name passes the variable through from the host.
            argv += ["-e", key if value is None else f"{key}={value}"]
        return [*argv, self.container, *as_argv(self.cmd)]

    async def run(self, token: Token) -> None:
        await run_in_pty(self.argv())


@dataclass
class FunctionTask:
    """In-process async work."""

    name: str
    description: str
    func: Callable[[], Awaitable[None]]

    async def run(self, token: Token) -> None:
        await self.func()


async def run_lifecycle(
    runner: Runner,
    label: str,
    command: LifecycleCommand,
    make_task: Callable[[str, Cmd], Task],
) -> None:
    """Run a devcontainer lifecycle command.

    A mapping of named commands runs in parallel, one task per entry; a
    plain command runs as a single task named *label*.
    """
    if isinstance(command, dict):
        await runner.run_parallel(label, [make_task(name, cmd) for name, cmd in command.items()])
    else:
        await runner.run(make_task(label, command))
