# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Command-line interface tests.

Commands run through typer's CliRunner; the run context is injected via
the "context_factory" entry of the typer context object so the
simulated hosts from tests/fakes.py stand in for docker and restic.
"""

from pathlib import Path

import pytest
from typer.testing import CliRunner

from pasnap import __version__, host as host_module
from pasnap.cli import app
from tests.fakes import FakeRepository, Host

runner = CliRunner()


@pytest.fixture(autouse=True)
def as_root(monkeypatch):
    monkeypatch.setattr(host_module, "is_root", lambda: True)


def invoke(target: Host, *args: str, input: str | None = None):
    obj = {
        "config": target.config,
        "base_dir": target.config.base_dir,
        "context_factory": lambda config, profile: target.ctx,
    }
    return runner.invoke(app, ["--quiet", *args], obj=obj, input=input)


# ============================================================================
# Basics
# ============================================================================


def test_version():
    result = runner.invoke(app, ["--quiet", "version"], obj={})

    assert result.exit_code == 0
    assert result.output.strip() == f"pasnap {__version__}"


def test_root_required(panel_host: Host, monkeypatch):
    monkeypatch.setattr(host_module, "is_root", lambda: False)

    result = invoke(panel_host, "snapshot")

    assert result.exit_code == 1
    assert "Root privileges required" in result.output
    assert "sudo" in result.output


def test_invalid_config_file_reports_hint(temp_dir: Path):
    config_file = temp_dir / ".env-backup"
    config_file.write_text("BACKUP_RETENTION_DAYS=forever\n")

    result = runner.invoke(app, ["--quiet", "--config", str(config_file), "cron", "status"], obj={})

    assert result.exit_code == 1
    assert "ERROR:" in result.output
    assert "forever" in result.output


# ============================================================================
# Snapshot / restore
# ============================================================================


def test_snapshot_command(panel_host: Host, repository: FakeRepository):
    result = invoke(panel_host, "snapshot")

    assert result.exit_code == 0, result.output
    assert f"Snapshot {repository.snapshots[0].short_id} completed." in result.output


def test_snapshot_failure_exits_nonzero(panel_host: Host, repository: FakeRepository):
    panel_host.database.dump_overrides["panelalpha"] = b""

    result = invoke(panel_host, "snapshot")

    assert result.exit_code == 1
    assert "ERROR:" in result.output
    assert "Hint:" in result.output
    assert repository.snapshots == []


def test_restore_prompt_declined(panel_host: Host):
    invoke(panel_host, "snapshot")
    panel_host.runtime.calls.clear()

    result = invoke(panel_host, "restore", "latest", input="n\n")

    assert result.exit_code == 0
    assert "Restore cancelled; nothing was changed." in result.output
    assert panel_host.runtime.destructive_calls() == []


def test_restore_with_yes_migrates(panel_host: Host, fresh_panel_host: Host):
    invoke(panel_host, "snapshot")

    result = invoke(fresh_panel_host, "restore", "latest", "--yes")

    assert result.exit_code == 0, result.output
    assert "completed" in result.output
    assert fresh_panel_host.runtime.running


def test_restore_without_repository_config(panel_host: Host):
    panel_host.config = panel_host.config.with_updates(password="")

    result = invoke(panel_host, "restore", "latest", "--yes")

    assert result.exit_code == 1
    assert "pasnap setup" in result.output


def test_restore_invalid_id(panel_host: Host):
    result = invoke(panel_host, "restore", "not-an-id!", "--yes")

    assert result.exit_code == 1
    assert "Invalid snapshot reference" in result.output


# ============================================================================
# Repository commands
# ============================================================================


def test_list_snapshots(panel_host: Host, repository: FakeRepository):
    invoke(panel_host, "snapshot")

    result = invoke(panel_host, "list-snapshots")

    assert result.exit_code == 0
    assert "tagged panelalpha-host-a" in result.output
    assert repository.snapshots[0].short_id in result.output


def test_list_snapshots_falls_back_to_all_hosts(panel_host: Host, fresh_panel_host: Host):
    invoke(panel_host, "snapshot")

    result = invoke(fresh_panel_host, "list-snapshots")

    assert "from all hosts" in result.output


def test_delete_snapshot(panel_host: Host, repository: FakeRepository):
    invoke(panel_host, "snapshot")
    snapshot_id = repository.snapshots[0].short_id

    result = invoke(panel_host, "delete-snapshot", snapshot_id, "--yes")

    assert result.exit_code == 0
    assert repository.snapshots == []
    history = invoke(panel_host, "history")
    assert "delete" in history.output


@pytest.mark.parametrize("snapshot_id", ["latest", "../../x"])
def test_delete_snapshot_rejects_references(panel_host: Host, snapshot_id: str):
    result = invoke(panel_host, "delete-snapshot", snapshot_id, "--yes")

    assert result.exit_code == 1
    assert "Invalid snapshot ID" in result.output


def test_delete_missing_snapshot(panel_host: Host):
    result = invoke(panel_host, "delete-snapshot", "deadbeef", "--yes")

    assert result.exit_code == 1


def test_test_connection_initializes_repository(panel_host: Host, repository: FakeRepository):
    result = invoke(panel_host, "test-connection")

    assert result.exit_code == 0, result.output
    assert "Repository initialized." in result.output
    assert "reachable (0 snapshots)" in result.output
    assert repository.initialized


# ============================================================================
# History
# ============================================================================


def test_history_empty(panel_host: Host):
    result = invoke(panel_host, "history")

    assert result.exit_code == 0
    assert "No operations recorded yet." in result.output


def test_history_lists_runs(panel_host: Host):
    invoke(panel_host, "snapshot")

    result = invoke(panel_host, "history", "--limit", "5")

    assert "snapshot" in result.output
    assert "completed" in result.output
