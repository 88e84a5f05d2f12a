"""Container engine and git collaborators."""

from dcfleet.runtime.sources.base import ContainerSource, WorktreeSource
from dcfleet.runtime.sources.docker import DockerClient
from dcfleet.runtime.sources.git import GitCli

__all__ = ["ContainerSource", "DockerClient", "GitCli", "WorktreeSource"]
