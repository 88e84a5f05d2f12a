"""Error taxonomy shared by the runtime.

Managers and sources raise these domain exceptions; the CLI is the only
place that turns them into user-facing exit codes.
"""

from __future__ import annotations

from collections.abc import Sequence


class DcFleetError(Exception):
    """Base class for all dcfleet errors."""


class ConfigError(DcFleetError, ValueError):
    """Invalid configuration or devcontainer.json."""


class NotFoundError(DcFleetError, LookupError):
    """A named workspace, project or container does not exist."""


class EngineUnavailableError(DcFleetError):
    """The container engine could not be reached."""

    def __init__(self, detail: str | None = None) -> None:
        msg = "docker is not installed or the daemon is not running"
        if detail:
            msg = f"{msg} ({detail})"
        super().__init__(msg)


class DockerAPIError(DcFleetError):
    """The Docker Engine API answered with an unexpected status."""

    def __init__(self, status_code: int, message: str) -> None:
        self.status_code = status_code
        super().__init__(f"docker API error {status_code}: {message}")


class ParseFailureError(DcFleetError, ValueError):
    """A single engine record could not be parsed."""


class SubprocessFailedError(DcFleetError):
    """A spawned process exited with a non-zero status."""

    def __init__(self, argv: Sequence[str], code: int) -> None:
        self.argv = list(argv)
        self.code = code
        super().__init__(f"command exited with status {code}: {' '.join(self.argv)}")


class TaskFailedError(DcFleetError):
    """A runner task failed; wraps the cause with the task's name."""

    def __init__(self, name: str, cause: BaseException) -> None:
        self.name = name
        self.cause = cause
        super().__init__(f"{name}: {cause}")


class BatchFailureError(DcFleetError):
    """One or more tasks of a parallel batch failed.

    ``failures`` is ordered by task index; ``first`` is the error reported
    to the user.
    """

    def __init__(self, label: str, failures: Sequence[TaskFailedError], total: int) -> None:
        self.label = label
        self.failures = list(failures)
        self.total = total
        super().__init__(f"{label}: {len(self.failures)} of {total} tasks failed; first: {self.first}")

    @property
    def first(self) -> TaskFailedError:
        return self.failures[0]
