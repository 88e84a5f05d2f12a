"""Configuration loaded from DCFLEET_* environment variables and a TOML file."""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path

import click
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

from dcfleet.runtime.errors import NotFoundError

CONFIG_ENV_VAR = "DCFLEET_CONFIG"


def config_path() -> Path:
    """Location of the projects file: ``$DCFLEET_CONFIG`` or the click app dir."""
    override = os.environ.get(CONFIG_ENV_VAR)
    if override:
        return Path(override).expanduser()
    return Path(click.get_app_dir("dcfleet")) / "config.toml"


class ProjectConfig(BaseModel):
    """A repository whose worktrees become workspaces."""

    path: Path

    @field_validator("path", mode="before")
    @classmethod
    def _expand_user(cls, value: object) -> object:
        if isinstance(value, str):
            return Path(value).expanduser()
        return value


class FleetSettings(BaseSettings):
    """dcfleet settings.

    Scalar fields come from environment variables with the ``DCFLEET_``
    prefix (``DCFLEET_LOG_LEVEL=INFO`` maps to ``log_level``).  Projects are
    declared in the TOML file returned by :func:`config_path`::

        [projects.myapp]
        path = "~/src/myapp"
    """

    model_config = SettingsConfigDict(
        env_prefix="DCFLEET_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # -- Logging ---------------------------------------------------------------
    log_level: str = "TRACE"
    """TRACE shows subprocess output; INFO hides it."""

    # -- Container engine ------------------------------------------------------
    docker_socket: str = "/var/run/docker.sock"
    docker_timeout: float = 30.0

    stats_interval: float = 1.0
    """Seconds between the two samples of a CPU (delta) stats reading."""

    forward_image: str = "alpine/socat:latest"
    """Image used for port-forward sidecars."""

    copy_image: str = "docker.io/library/alpine:latest"
    """Image of the throwaway container that copies volumes."""

    # -- Projects --------------------------------------------------------------
    projects: dict[str, ProjectConfig] = Field(default_factory=dict)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            TomlConfigSettingsSource(settings_cls, toml_file=config_path()),
            file_secret_settings,
        )

    # -- Helpers ---------------------------------------------------------------

    def project(self, name: str | None = None) -> tuple[str, ProjectConfig]:
        """Return ``(name, project)``; ``None`` selects the first configured one."""
        if name is None:
            for first in self.projects.items():
                return first
            msg = f"no projects configured (add one to {config_path()})"
            raise NotFoundError(msg)
        try:
            return name, self.projects[name]
        except KeyError:
            msg = f"no project configured with name: {name}"
            raise NotFoundError(msg) from None


def get_settings() -> FleetSettings:
    """Return a cached settings instance.

    Call ``_get_settings_cached.cache_clear()`` in tests to force a re-read
    after overriding env vars.
    """
    return _get_settings_cached()


@lru_cache(maxsize=1)
def _get_settings_cached() -> FleetSettings:
    return FleetSettings()
