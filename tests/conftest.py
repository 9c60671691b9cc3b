# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Test fixtures for pasnap tests.

Provides temporary directories, a shared fake repository and simulated
Control Panel / Engine servers built from tests/fakes.py.
"""

import tempfile
from pathlib import Path
from typing import Generator

import pytest

from tests.fakes import (
    ENGINE_ENV,
    FakeRepository,
    Host,
    populate_control_panel,
    populate_engine,
)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def repository(temp_dir: Path) -> FakeRepository:
    """Repository shared by every simulated host of a test."""
    return FakeRepository(temp_dir / "repo")


@pytest.fixture
def panel_host(temp_dir: Path, repository: FakeRepository) -> Host:
    """Running Control Panel on host-a with data in every component."""
    host = Host(temp_dir / "host-a", repository, "host-a")
    populate_control_panel(host)
    return host


@pytest.fixture
def fresh_panel_host(temp_dir: Path, repository: FakeRepository) -> Host:
    """A new server (host-b) with only the compose file installed, nothing running."""
    return Host(temp_dir / "host-b", repository, "host-b")


@pytest.fixture
def engine_host(temp_dir: Path, repository: FakeRepository) -> Host:
    """Running Engine with core and users databases, tenants and /home."""
    host = Host(temp_dir / "engine-a", repository, "engine-a", engine=True)
    populate_engine(host)
    return host


@pytest.fixture
def fresh_engine_host(temp_dir: Path, repository: FakeRepository) -> Host:
    host = Host(temp_dir / "engine-b", repository, "engine-b", engine=True)
    host.runtime.container_envs["database-users"] = {
        "MYSQL_ROOT_PASSWORD": ENGINE_ENV["USERS_MYSQL_ROOT_PASSWORD"]
    }
    return host
