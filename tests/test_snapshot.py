# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Snapshot pipeline tests against simulated Control Panel and Engine hosts.
"""

import json
from dataclasses import replace
from pathlib import Path

import pytest

from pasnap.core import RunStatus, StepStatus
from pasnap.exceptions import (
    CommandError,
    CommandTimeout,
    PreflightError,
    RepositoryError,
    SnapshotError,
)
from pasnap.snapshot import run_snapshot
from pasnap.snapshot.bundle import read_manifest
from tests.fakes import FakeRepository, Host, write_env


def uploaded_bundle(repository: FakeRepository, snapshot_id: str) -> Path:
    """Directory in the fake repository holding the staged bundle of a snapshot."""
    snap = repository._find(snapshot_id)
    return repository.root / snap.id / snap.paths[0].lstrip("/")


def outcome_of(result, component: str):
    return next(o for o in result.outcomes if o.component == component)


# ============================================================================
# Control Panel
# ============================================================================


@pytest.mark.asyncio
async def test_control_panel_snapshot_uploads_complete_bundle(panel_host: Host, repository: FakeRepository):
    result = await run_snapshot(panel_host.ctx)

    assert result.status == RunStatus.COMPLETED
    assert result.snapshot_id
    assert result.tags == ["panelalpha-host-a", "panelalpha", "databases", "volumes", "config"]

    bundle = uploaded_bundle(repository, result.snapshot_id)
    assert (bundle / "databases" / "panelalpha-api.sql").is_file()
    for volume in ("api-storage", "database-api-data", "redis-data"):
        assert (bundle / "volumes" / f"{volume}.tar.gz").is_file()
    assert (bundle / "config" / "docker-compose.yml").is_file()
    assert (bundle / "config" / ".env").is_file()
    assert (bundle / "config" / ".env-backup").is_file()
    assert (bundle / "config" / "ssl" / "letsencrypt" / "live" / "cert.pem").is_file()
    assert not (bundle / "users").exists()


@pytest.mark.asyncio
async def test_manifest_describes_snapshot(panel_host: Host, repository: FakeRepository):
    result = await run_snapshot(panel_host.ctx)

    manifest = read_manifest(uploaded_bundle(repository, result.snapshot_id))

    assert manifest["hostname"] == "host-a"
    assert manifest["variant"] == "app"
    assert manifest["env_file"] == ".env"
    assert manifest["host_tag"] == "panelalpha-host-a"
    assert manifest["total_size"] > 0
    components = {c["component"]: c["status"] for c in manifest["components"]}
    assert components["panelalpha"] == "success"
    assert components["nginx.conf"] == "skipped"


@pytest.mark.asyncio
async def test_staging_removed_after_success(panel_host: Host):
    await run_snapshot(panel_host.ctx)
    assert panel_host.staging_dirs() == []


@pytest.mark.asyncio
async def test_snapshot_is_journaled(panel_host: Host):
    result = await run_snapshot(panel_host.ctx)

    history = await panel_host.ctx.journal.recent()

    assert history[0]["kind"] == "snapshot"
    assert history[0]["status"] == "completed"
    assert history[0]["snapshot_id"] == result.snapshot_id
    assert history[0]["bundle_size"] == result.bundle_size


@pytest.mark.asyncio
async def test_missing_optional_volume_is_skipped(panel_host: Host):
    await panel_host.runtime.remove_volume(panel_host.runtime.volume_name("redis-data"))

    result = await run_snapshot(panel_host.ctx)

    assert result.status == RunStatus.COMPLETED
    assert outcome_of(result, "redis-data").status == StepStatus.SKIPPED


@pytest.mark.asyncio
async def test_archiver_warning_with_good_archive_is_success(panel_host: Host):
    """
    tar exits 1 when files change during the read; the archive is still good.
    """
    panel_host.runtime.archiver_exit_code = 1

    result = await run_snapshot(panel_host.ctx)

    assert result.status == RunStatus.COMPLETED
    assert outcome_of(result, "api-storage").status == StepStatus.SUCCESS


# ============================================================================
# Mandatory categories
# ============================================================================


@pytest.mark.asyncio
async def test_truncated_dump_blocks_upload(panel_host: Host, repository: FakeRepository):
    """
    CRITICAL: A dump below the minimum size is not a database backup.
    """
    panel_host.database.dump_overrides["panelalpha"] = b"-- MySQL dump\n"

    with pytest.raises(SnapshotError) as exc_info:
        await run_snapshot(panel_host.ctx)

    assert "databases" in exc_info.value.message
    assert exc_info.value.hint
    assert repository.snapshots == []
    assert panel_host.staging_dirs() == []
    assert (await panel_host.ctx.journal.recent())[0]["status"] == "failed"


@pytest.mark.asyncio
async def test_missing_database_password_blocks_upload(panel_host: Host, repository: FakeRepository):
    write_env(panel_host.profile.env_file, {"APP_URL": "https://panel.example.com"})

    with pytest.raises(SnapshotError):
        await run_snapshot(panel_host.ctx)

    assert repository.snapshots == []


@pytest.mark.asyncio
async def test_no_volume_archives_blocks_upload(panel_host: Host, repository: FakeRepository):
    async def broken(*args, **kwargs):
        raise CommandError("docker run failed")

    panel_host.runtime.archive_volume = broken

    with pytest.raises(SnapshotError) as exc_info:
        await run_snapshot(panel_host.ctx)

    assert "volumes" in exc_info.value.message
    assert repository.snapshots == []


# ============================================================================
# Engine
# ============================================================================


@pytest.mark.asyncio
async def test_engine_snapshot_includes_tenants_and_home(engine_host: Host, repository: FakeRepository):
    result = await run_snapshot(engine_host.ctx)

    assert result.status == RunStatus.COMPLETED
    assert result.tags[2:] == ["databases", "volumes", "config", "users", "home"]

    bundle = uploaded_bundle(repository, result.snapshot_id)
    assert (bundle / "databases" / "panelalpha-core.sql").is_file()
    assert (bundle / "databases" / "panelalpha-users.sql.zst").is_file()
    assert (bundle / "config" / ".env-core").is_file()
    assert (bundle / "users" / "alice" / "docker-compose.yml").is_file()
    assert (bundle / "home" / "alice" / "public_html" / "index.php").is_file()

    status = (bundle / "users" / "container-status.txt").read_text()
    assert "[alice]" in status


@pytest.mark.asyncio
async def test_bulk_dump_falls_back_to_plain(engine_host: Host, repository: FakeRepository):
    engine_host.database.failing_compression.add("users")

    result = await run_snapshot(engine_host.ctx)

    bundle = uploaded_bundle(repository, result.snapshot_id)
    assert (bundle / "databases" / "panelalpha-users.sql").is_file()
    assert not (bundle / "databases" / "panelalpha-users.sql.zst").exists()
    assert outcome_of(result, "users").status == StepStatus.SUCCESS


@pytest.mark.asyncio
async def test_one_failed_database_still_uploads(engine_host: Host, repository: FakeRepository):
    write_env(engine_host.profile.env_file, {"USERS_MYSQL_ROOT_PASSWORD": "users-root-1"})

    result = await run_snapshot(engine_host.ctx)

    assert result.status == RunStatus.COMPLETED_WITH_ERRORS
    assert outcome_of(result, "core").status == StepStatus.SOFT_FAILURE
    assert "CORE_MYSQL_PASSWORD" in outcome_of(result, "core").reason
    assert len(repository.snapshots) == 1


# ============================================================================
# Hung container runtime
# ============================================================================


def hangs_for(original, *names: str):
    """Wrap a runtime lookup so it times out for the given names only."""

    async def lookup(name, *args, **kwargs):
        if str(name) in names:
            raise CommandTimeout("docker timed out after 30s")
        return await original(name, *args, **kwargs)

    return lookup


@pytest.mark.asyncio
async def test_tenant_status_timeout_keeps_snapshot(engine_host: Host, repository: FakeRepository):
    async def hung(compose_file=None):
        raise CommandTimeout("docker timed out after 30s")

    engine_host.runtime.compose_ps = hung

    result = await run_snapshot(engine_host.ctx)

    assert result.status == RunStatus.COMPLETED
    tenants = next(o for o in result.outcomes if o.category == "users")
    assert tenants.status == StepStatus.SUCCESS
    status = (uploaded_bundle(repository, result.snapshot_id) / "users" / "container-status.txt").read_text()
    assert "[alice]\nUnable to query container state" in status


@pytest.mark.asyncio
async def test_container_lookup_timeout_skips_one_database(engine_host: Host, repository: FakeRepository):
    runtime = engine_host.runtime
    runtime.service_container_id = hangs_for(runtime.service_container_id, "database-users")

    result = await run_snapshot(engine_host.ctx)

    assert result.status == RunStatus.COMPLETED_WITH_ERRORS
    users_db = next(o for o in result.outcomes if o.category == "databases" and o.component == "users")
    assert users_db.status == StepStatus.SOFT_FAILURE
    assert "timed out" in users_db.reason
    assert outcome_of(result, "core").status == StepStatus.SUCCESS
    assert len(repository.snapshots) == 1


@pytest.mark.asyncio
async def test_volume_inspect_timeout_skips_one_volume(panel_host: Host, repository: FakeRepository):
    runtime = panel_host.runtime
    runtime.volume_exists = hangs_for(runtime.volume_exists, runtime.volume_name("redis-data"))

    result = await run_snapshot(panel_host.ctx)

    assert result.status == RunStatus.COMPLETED_WITH_ERRORS
    assert outcome_of(result, "redis-data").status == StepStatus.SOFT_FAILURE
    assert outcome_of(result, "api-storage").status == StepStatus.SUCCESS
    assert len(repository.snapshots) == 1


# ============================================================================
# Retention
# ============================================================================


@pytest.mark.asyncio
async def test_retention_counts_host_snapshots(panel_host: Host):
    result = await run_snapshot(panel_host.ctx)
    assert result.host_snapshot_count == 1


@pytest.mark.asyncio
async def test_retention_failure_is_a_warning(panel_host: Host, repository: FakeRepository):
    repository.forget_error = RepositoryError("lock held by another process")

    result = await run_snapshot(panel_host.ctx)

    assert result.status == RunStatus.COMPLETED
    assert result.warnings == ["retention failed: lock held by another process"]
    assert len(repository.snapshots) == 1


# ============================================================================
# Preflight
# ============================================================================


@pytest.mark.asyncio
async def test_preflight_requires_credentials(panel_host: Host, repository: FakeRepository):
    ctx = replace(panel_host.ctx, config=panel_host.config.with_updates(password=""))

    with pytest.raises(PreflightError) as exc_info:
        await run_snapshot(ctx)

    assert str(panel_host.config.config_file) in exc_info.value.hint
    assert panel_host.staging_dirs() == []
    assert repository.snapshots == []


@pytest.mark.asyncio
async def test_preflight_requires_install_directory(panel_host: Host):
    panel_host.profile.compose_file.unlink()

    with pytest.raises(PreflightError, match="Installation directory"):
        await run_snapshot(panel_host.ctx)


@pytest.mark.asyncio
async def test_preflight_checks_free_space(panel_host: Host):
    ctx = replace(panel_host.ctx, config=panel_host.config.with_updates(min_free_mb=10**12))

    with pytest.raises(PreflightError) as exc_info:
        await run_snapshot(ctx)

    assert exc_info.value.details["required_mb"] == 10**12
    assert panel_host.staging_dirs() == []
