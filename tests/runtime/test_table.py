"""Tests for the workspace table and its formatters."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path

import click
import pytest

from dcfleet.runtime.models import ExecSession, Stats, Status, Workspace
from dcfleet.runtime.table import format_age, format_bytes, workspace_table


@pytest.mark.parametrize(
    ("n", "expected"),
    [
        (0, "0B"),
        (512, "512B"),
        (1536, "1.5KiB"),
        (200 * 1024**2, "200.0MiB"),
        (3 * 1024**3, "3.0GiB"),
        (2 * 1024**4, "2.0TiB"),
    ],
)
def test_format_bytes(n: int, expected: str) -> None:
    assert format_bytes(n) == expected


NOW = datetime(2026, 1, 1, tzinfo=UTC)


@pytest.mark.parametrize(
    ("age", "expected"),
    [
        (timedelta(seconds=42), "42s"),
        (timedelta(minutes=5, seconds=59), "5m"),
        (timedelta(hours=3), "3h"),
        (timedelta(days=2), "2d"),
        (timedelta(days=14), "2w"),
        (timedelta(days=95), "3mo"),
        (timedelta(days=800), "2y"),
    ],
)
def test_format_age(age: timedelta, expected: str) -> None:
    assert format_age(NOW - age, now=NOW) == expected


def test_format_age_unknown_or_future() -> None:
    assert format_age(None) == "-"
    assert format_age(NOW + timedelta(seconds=5), now=NOW) == "-"


def _ws(name: str, **kwargs) -> Workspace:
    return Workspace(path=Path("/src") / name, project="app", compose_project_name=f"{name}_devcontainer", **kwargs)


def test_workspace_table_layout() -> None:
    rows = [
        _ws(
            "brave-fox",
            status=Status.RUNNING,
            dirty=True,
            stats=Stats(ram=1536, cpu=12.34),
            execs=[ExecSession(pid=1, command=["zsh"])],
            forwarded_ports=frozenset({3000}),
            published_ports=frozenset({8080, 3000}),
        ),
        _ws("app", status=Status.NONE),
    ]

    text = click.unstyle(workspace_table(rows, roots=[Path("/src/app")]))
    lines = text.splitlines()

    assert lines[0].split() == ["NAME", "STATUS", "CREATED", "MEM", "CPU", "EXECS", "PORTS"]
    # Project roots are listed first.
    assert lines[1].split() == ["app", "-", "-", "-", "-", "-", "-"]
    assert lines[2].split() == ["brave-fox*", "running", "-", "1.5KiB", "12.3%", "1", "3000,8080"]


def test_workspace_table_aligns_on_visible_width() -> None:
    rows = [_ws("a", status=Status.RUNNING), _ws("bbbbbbbb", status=Status.EXITED)]
    lines = click.unstyle(workspace_table(rows)).splitlines()
    status_col = lines[0].index("STATUS")
    assert lines[1].index("running") == status_col
    assert lines[2].index("exited") == status_col


def test_workspace_table_empty() -> None:
    assert workspace_table([]).split() == ["NAME", "STATUS", "CREATED", "MEM", "CPU", "EXECS", "PORTS"]
