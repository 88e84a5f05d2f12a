"""dcfleet -- one devcontainer per git worktree."""

__version__ = "0.1.0"
