"""Supervised task execution."""

from dcfleet.runtime.execution.pty import run_in_pty
from dcfleet.runtime.execution.runner import LABEL_COLORS, Runner, Task, Token, label_color
from dcfleet.runtime.execution.tasks import DockerExec, FunctionTask, HostCommand, run_lifecycle

__all__ = [
    "LABEL_COLORS",
    "DockerExec",
    "FunctionTask",
    "HostCommand",
    "Runner",
    "Task",
    "Token",
    "label_color",
    "run_in_pty",
    "run_lifecycle",
]
