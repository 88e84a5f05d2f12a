"""Shared enumerations used across the runtime."""

from __future__ import annotations

from enum import IntEnum, StrEnum

# -- Workspace ---------------------------------------------------------------


class Status(IntEnum):
    """Aggregate workspace status, ordered from least to most alive.

    When a workspace's containers disagree, the maximum wins.
    """

    NONE = 0
    """Worktree exists but has no containers."""
    DEAD = 1
    EXITED = 2
    REMOVING = 3
    CREATED = 4
    PAUSED = 5
    RESTARTING = 6
    RUNNING = 7

    @classmethod
    def from_engine_state(cls, state: str) -> Status:
        """Map a Docker container state string; unknown states map to ``NONE``."""
        try:
            return cls[state.strip().upper()]
        except KeyError:
            return cls.NONE

    @classmethod
    def aggregate(cls, states: list[Status]) -> Status:
        return max(states, default=cls.NONE)

    @property
    def label(self) -> str:
        return "-" if self is Status.NONE else self.name.lower()


# -- Stats -------------------------------------------------------------------


class StatsMode(StrEnum):
    """How container resource usage is sampled."""

    FAST = "fast"
    """One instantaneous sample: RAM only."""
    DELTA = "delta"
    """Two time-separated samples: RAM and CPU percent."""
