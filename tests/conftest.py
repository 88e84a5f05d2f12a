"""Shared test fixtures.

Every test runs with an empty, private configuration: ``DCFLEET_CONFIG``
points into the test's tmp directory and the settings cache is cleared, so
a developer's own projects file never leaks into the suite.

None of the tests need a Docker daemon.  The engine is replaced by
``httpx.MockTransport`` or in-memory fakes; git tests use the real binary
and are skipped without it.
"""

from __future__ import annotations

import os
from collections.abc import Iterator
from pathlib import Path

import pytest
from loguru import logger

from dcfleet.runtime.settings import _get_settings_cached


@pytest.fixture(autouse=True)
def isolated_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[Path]:
    """Private config file location and a clean ``DCFLEET_*`` environment."""
    for key in list(os.environ):
        if key.startswith("DCFLEET_"):
            monkeypatch.delenv(key)
    config = tmp_path / "config.toml"
    monkeypatch.setenv("DCFLEET_CONFIG", str(config))
    _get_settings_cached.cache_clear()
    yield config
    _get_settings_cached.cache_clear()


@pytest.fixture
def log_messages() -> Iterator[list[str]]:
    """Every loguru message (TRACE and up) emitted during the test."""
    messages: list[str] = []
    handler_id = logger.add(lambda m: messages.append(m.record["message"]), level="TRACE", format="{message}")
    yield messages
    logger.remove(handler_id)
