"""Unit tests for the devcontainer.json model."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from dcfleet.runtime.errors import ConfigError
from dcfleet.runtime.models.devcontainer import DevContainer, PortMap, as_argv, display


def _write(root: Path, data: dict, rel: str = ".devcontainer/devcontainer.json") -> Path:
    path = root / rel
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data))
    return path


COMPOSE = {
    "name": "app",
    "dockerComposeFile": "compose.yml",
    "service": "app",
    "workspaceFolder": "/workspace",
}


def test_load_compose_devcontainer(tmp_path: Path) -> None:
    _write(
        tmp_path,
        {
            **COMPOSE,
            "runServices": ["db"],
            "remoteUser": "vscode",
            "remoteEnv": {"TERM": "xterm", "SSH_AUTH_SOCK": None},
            "containerEnv": {"FOO": "bar"},
            "capAdd": ["SYS_PTRACE"],
            "forwardPorts": [3000, "8080:80"],
            "postCreateCommand": "make setup",
            "postStartCommand": {"db": "migrate", "cache": ["redis-cli", "ping"]},
            "customizations": {
                "dcfleet": {
                    "defaultExec": ["zsh"],
                    "forwardPort": 3000,
                    "containerPort": 3001,
                    "defaultCopyVolumes": ["db"],
                }
            },
        },
    )

    dc = DevContainer.load(tmp_path)

    assert dc.docker_compose_file == ["compose.yml"]
    assert dc.service == "app"
    assert dc.run_services == ["db"]
    assert dc.workspace_folder == Path("/workspace")
    assert dc.remote_user == "vscode"
    assert dc.remote_env == {"TERM": "xterm", "SSH_AUTH_SOCK": None}
    assert dc.container_env == {"FOO": "bar"}
    assert dc.cap_add == ["SYS_PTRACE"]
    assert dc.forward_ports == [PortMap(host=3000, container=3000), PortMap(host=8080, container=80)]
    assert dc.options.default_exec == ["zsh"]
    assert dc.options.forward_port == 3000
    assert dc.options.container_port == 3001
    assert dc.options.default_copy_volumes == ["db"]


def test_compose_file_list_is_kept(tmp_path: Path) -> None:
    _write(tmp_path, {**COMPOSE, "dockerComposeFile": ["a.yml", "b.yml"]})
    assert DevContainer.load(tmp_path).docker_compose_file == ["a.yml", "b.yml"]


def test_container_lifecycle_order_skips_missing(tmp_path: Path) -> None:
    _write(
        tmp_path,
        {
            **COMPOSE,
            "postStartCommand": "echo start",
            "onCreateCommand": "echo create",
            "initializeCommand": "echo host",
        },
    )
    dc = DevContainer.load(tmp_path)
    assert dc.container_lifecycle() == [("onCreateCommand", "echo create"), ("postStartCommand", "echo start")]
    assert dc.initialize_command == "echo host"


def test_non_compose_devcontainer_rejected(tmp_path: Path) -> None:
    _write(tmp_path, {"image": "debian", "workspaceFolder": "/w"})
    with pytest.raises(ConfigError, match="docker compose"):
        DevContainer.load(tmp_path)


def test_invalid_json_rejected(tmp_path: Path) -> None:
    path = tmp_path / ".devcontainer" / "devcontainer.json"
    path.parent.mkdir()
    path.write_text("{not json")
    with pytest.raises(ConfigError, match="failed to read"):
        DevContainer.load(tmp_path)


def test_missing_required_field_rejected(tmp_path: Path) -> None:
    _write(tmp_path, {"dockerComposeFile": "compose.yml", "workspaceFolder": "/w"})
    with pytest.raises(ConfigError, match="failed to parse"):
        DevContainer.load(tmp_path)


def test_missing_devcontainer(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="no devcontainer.json"):
        DevContainer.find(tmp_path)


def test_find_precedence(tmp_path: Path) -> None:
    nested = _write(tmp_path, COMPOSE, ".devcontainer/python/devcontainer.json")
    assert DevContainer.find(tmp_path) == nested

    top = _write(tmp_path, COMPOSE, ".devcontainer.json")
    assert DevContainer.find(tmp_path) == top

    preferred = _write(tmp_path, COMPOSE)
    assert DevContainer.find(tmp_path) == preferred


def test_worktree_folder_defaults_next_to_project(tmp_path: Path) -> None:
    _write(tmp_path, COMPOSE)
    dc = DevContainer.load(tmp_path)
    assert dc.options.workspace_dir(Path("/src/app")) == Path("/src")


def test_worktree_folder_expands_user(tmp_path: Path) -> None:
    _write(tmp_path, {**COMPOSE, "customizations": {"dcfleet": {"worktreeFolder": "~/trees"}}})
    dc = DevContainer.load(tmp_path)
    assert dc.options.workspace_dir(Path("/src/app")) == Path("~/trees").expanduser()


# -- Commands and ports ------------------------------------------------------


def test_as_argv() -> None:
    assert as_argv("make test") == ["/bin/sh", "-c", "make test"]
    assert as_argv(["make", "test"]) == ["make", "test"]
    assert display(["make", "test"]) == "make test"


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        (3000, PortMap(host=3000, container=3000)),
        ("3000", PortMap(host=3000, container=3000)),
        ("3000:3001", PortMap(host=3000, container=3001)),
    ],
)
def test_port_map_parse(raw: int | str, expected: PortMap) -> None:
    assert PortMap.parse(raw) == expected


def test_port_map_parse_invalid() -> None:
    with pytest.raises(ValueError, match="invalid port mapping"):
        PortMap.parse("http")
    assert str(PortMap(host=1, container=2)) == "1:2"


def test_forward_targets_precedence() -> None:
    dc = DevContainer.model_validate(
        {
            **COMPOSE,
            "forwardPorts": [5432],
            "customizations": {"dcfleet": {"forwardPort": 3000, "containerPort": 3001}},
        }
    )
    assert dc.forward_targets(8000) == [PortMap(host=8000, container=3001)]
    assert dc.forward_targets() == [PortMap(host=3000, container=3001)]

    plain = DevContainer.model_validate({**COMPOSE, "forwardPorts": [5432, "8080:80"]})
    assert plain.forward_targets(9000) == [PortMap(host=9000, container=9000)]
    assert plain.forward_targets() == [PortMap(host=5432, container=5432), PortMap(host=8080, container=80)]


def test_forward_targets_none_configured() -> None:
    dc = DevContainer.model_validate(COMPOSE)
    assert dc.options.default_copy_volumes is None
    with pytest.raises(ConfigError, match="no port specified"):
        dc.forward_targets()
