"""Unit tests for the workspace data model."""

from __future__ import annotations

from pathlib import Path

import pytest

from dcfleet.runtime.models import (
    ContainerInfo,
    Stats,
    Status,
    Workspace,
    WorktreeKey,
    compose_project_name,
)

# -- Status ------------------------------------------------------------------


def test_status_total_order() -> None:
    ordered = [
        Status.NONE,
        Status.DEAD,
        Status.EXITED,
        Status.REMOVING,
        Status.CREATED,
        Status.PAUSED,
        Status.RESTARTING,
        Status.RUNNING,
    ]
    assert sorted(reversed(ordered)) == ordered


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("running", Status.RUNNING),
        ("Exited", Status.EXITED),
        ("dead", Status.DEAD),
        ("restarting", Status.RESTARTING),
        ("bogus", Status.NONE),
        ("", Status.NONE),
    ],
)
def test_status_from_engine_state(raw: str, expected: Status) -> None:
    assert Status.from_engine_state(raw) is expected


def test_status_aggregate_is_maximum() -> None:
    assert Status.aggregate([Status.EXITED, Status.RUNNING, Status.CREATED]) is Status.RUNNING
    assert Status.aggregate([Status.DEAD, Status.EXITED]) is Status.EXITED


def test_status_aggregate_of_nothing_is_none() -> None:
    assert Status.aggregate([]) is Status.NONE


def test_status_label() -> None:
    assert Status.NONE.label == "-"
    assert Status.RUNNING.label == "running"


# -- Compose slug ------------------------------------------------------------


def test_compose_project_name_is_filtered_and_lowercase() -> None:
    slug = compose_project_name(Path("/home/me/src/my_Worktree!"))
    assert slug == "my_worktree_devcontainer"
    assert all(c.isdigit() or c.islower() or c in "-_" for c in slug)


def test_compose_project_name_is_deterministic() -> None:
    path = Path("/ws/Feature.Branch-2")
    assert compose_project_name(path) == compose_project_name(path) == "featurebranch-2_devcontainer"


# -- WorktreeKey -------------------------------------------------------------


def test_worktree_key_from_label() -> None:
    key = WorktreeKey.from_label("/ws/a")
    assert key == WorktreeKey(Path("/ws/a"))
    assert key.name == "a"
    assert str(key) == "/ws/a"
    assert len({key, WorktreeKey.from_label("/ws/a")}) == 1


# -- Stats -------------------------------------------------------------------


def test_stats_total_sums_ram_and_cpu() -> None:
    total = Stats.total([Stats(ram=100, cpu=1.5), Stats(ram=50, cpu=2.0)])
    assert total == Stats(ram=150, cpu=3.5)


def test_stats_total_cpu_unknown_if_any_part_lacks_it() -> None:
    total = Stats.total([Stats(ram=100, cpu=1.5), Stats(ram=50)])
    assert total is not None
    assert total.ram == 150
    assert total.cpu is None


def test_stats_total_of_nothing_is_absent() -> None:
    assert Stats.total([]) is None


# -- Workspace ---------------------------------------------------------------


def _container(cid: str, service: str | None) -> ContainerInfo:
    return ContainerInfo(id=cid, state=Status.RUNNING, key=WorktreeKey.from_label("/ws/a"), service=service)


def test_primary_container_prefers_named_service() -> None:
    ws = Workspace(
        path=Path("/ws/a"),
        project="app",
        compose_project_name="a_devcontainer",
        containers=[_container("db1", "db"), _container("app1", "app")],
    )
    assert ws.primary_container("app") == "app1"
    assert ws.primary_container("missing") == "db1"
    assert ws.primary_container() == "db1"
    assert ws.container_ids == ["db1", "app1"]
    assert ws.name == "a"


def test_primary_container_without_containers() -> None:
    ws = Workspace(path=Path("/ws/b"), project="app", compose_project_name="b_devcontainer")
    assert ws.primary_container("app") is None
    assert ws.status is Status.NONE
