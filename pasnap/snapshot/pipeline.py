# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Snapshot pipeline - preflight, capture, upload, retention.

Order matters: nothing is uploaded unless both databases and volumes
were captured, and the staging bundle is removed on every exit path
(including cancellation by SIGTERM/SIGINT).
"""

import time
from datetime import datetime, timezone
from typing import List

import structlog

from pasnap import __version__
from pasnap.config import mask_locator
from pasnap.core import MANDATORY_CATEGORIES, Outcomes, RunContext, RunStatus, SnapshotResult
from pasnap.env import read_env_file
from pasnap.errors import (
    explain_insufficient_space,
    explain_mandatory_capture_failed,
    explain_missing_binary,
    explain_missing_install_dir,
    explain_missing_repository_config,
    explain_runtime_unreachable,
)
from pasnap.exceptions import PasnapError, PreflightError, SnapshotError
from pasnap.host import free_space_mb, primary_ip, tree_size
from pasnap.snapshot.bundle import SnapshotBundle, staging_bundle, write_manifest
from pasnap.snapshot.databases import export_databases
from pasnap.snapshot.files import export_config, export_home, export_tenant_data
from pasnap.snapshot.volumes import export_volumes

logger = structlog.get_logger()

MB = 1024 * 1024


async def preflight(ctx: RunContext) -> None:
    """
    Verify everything a snapshot needs before creating anything.

    Raises:
        PreflightError: with a remediation hint on the first failed check
    """
    config = ctx.config

    if not config.has_repository_credentials:
        raise PreflightError(
            "Repository is not configured",
            details={"config_file": str(config.config_file)},
            hint=explain_missing_repository_config(config.config_file),
        )

    if not await ctx.repository.is_available():
        raise PreflightError("Backup engine not available", hint=explain_missing_binary("restic"))

    if not await ctx.runtime.is_available():
        raise PreflightError("Container runtime not reachable", hint=explain_runtime_unreachable())

    if not ctx.profile.compose_file.is_file():
        raise PreflightError(
            "Installation directory not found",
            details={"install_root": str(ctx.profile.install_root)},
            hint=explain_missing_install_dir(ctx.profile.install_root),
        )

    estimate_mb = await ctx.journal.last_bundle_size() // MB
    required_mb = config.min_free_mb + estimate_mb
    available_mb = free_space_mb(config.temp_dir)
    if available_mb < required_mb:
        raise PreflightError(
            "Insufficient disk space",
            details={"available_mb": available_mb, "required_mb": required_mb},
            hint=explain_insufficient_space(config.temp_dir, available_mb, required_mb),
        )

    logger.info(
        "preflight_passed",
        variant=ctx.profile.variant.value,
        install_root=str(ctx.profile.install_root),
        repository=mask_locator(config.repository),
        free_mb=available_mb,
        estimate_mb=estimate_mb,
    )


async def capture(ctx: RunContext, bundle: SnapshotBundle, outcomes: Outcomes) -> None:
    """Steps 3-6: fill the staging bundle. Soft failures accumulate in outcomes."""
    env_values = read_env_file(ctx.profile.env_file)
    if not env_values:
        logger.warning("env_file_empty_or_missing", path=str(ctx.profile.env_file))

    outcomes.extend(await export_databases(ctx, bundle, env_values))
    outcomes.extend(await export_volumes(ctx, bundle))
    outcomes.extend(await export_config(ctx, bundle))

    if ctx.profile.has_tenant_data:
        outcomes.add(await export_tenant_data(ctx, bundle))
        outcomes.add(await export_home(ctx, bundle))


def snapshot_tags(ctx: RunContext, outcomes: Outcomes) -> List[str]:
    """Host tag, product tag, then one tag per captured component category."""
    return [
        ctx.config.host_tag,
        ctx.config.product_tag,
        *outcomes.present_categories(ctx.profile.component_tags),
    ]


def build_manifest(ctx: RunContext, outcomes: Outcomes, size: int, duration: float) -> dict:
    return {
        "created_at": datetime.now(timezone.utc).isoformat(),
        "hostname": ctx.config.hostname,
        "server_ip": primary_ip(),
        "version": __version__,
        "variant": ctx.profile.variant.value,
        "install_root": str(ctx.profile.install_root),
        "env_file": ctx.profile.env_file_name,
        "repository": mask_locator(ctx.config.repository),
        "host_tag": ctx.config.host_tag,
        "total_size": size,
        "duration_seconds": round(duration, 1),
        "components": [
            {
                "category": o.category,
                "component": o.component,
                "status": o.status.value,
                "reason": o.reason,
                "size": o.size,
            }
            for o in outcomes.items
        ],
    }


async def apply_retention(ctx: RunContext, result: SnapshotResult) -> None:
    """Step 10. Never raises; problems end up in result.warnings."""
    tag = ctx.config.host_tag
    try:
        await ctx.repository.forget(tag, ctx.config.retention_days)
    except PasnapError as e:
        logger.warning("retention_failed", tag=tag, error=str(e))
        result.warnings.append(f"retention failed: {e.message}")
        return

    try:
        result.host_snapshot_count = len(await ctx.repository.list_snapshots(tag))
    except PasnapError as e:
        logger.warning("snapshot_count_failed", tag=tag, error=str(e))
        return
    logger.info(
        "retention_applied",
        tag=tag,
        keep_daily=ctx.config.retention_days,
        remaining=result.host_snapshot_count,
    )


async def run_snapshot(ctx: RunContext) -> SnapshotResult:
    """
    Run the full snapshot pipeline.

    Returns:
        SnapshotResult with status completed or completed_with_errors

    Raises:
        PreflightError: before anything is created
        SnapshotError: when a mandatory category was not captured
        RepositoryError: when init or upload fails
    """
    started = time.monotonic()
    operation_id = await ctx.journal.start("snapshot")
    outcomes = Outcomes()
    logger.info("snapshot_started", operation_id=operation_id, variant=ctx.profile.variant.value)

    try:
        await preflight(ctx)

        async with staging_bundle(ctx.config.temp_dir) as bundle:
            await capture(ctx, bundle, outcomes)

            for category in MANDATORY_CATEGORIES:
                if outcomes.category_failed(category):
                    raise SnapshotError(
                        f"No {category} captured; snapshot not uploaded",
                        details={
                            "failures": [
                                f"{o.component}: {o.reason}" for o in outcomes.in_category(category)
                            ]
                        },
                        hint=explain_mandatory_capture_failed(category),
                    )

            capture_seconds = time.monotonic() - started
            size = tree_size(bundle.root)
            await write_manifest(bundle, build_manifest(ctx, outcomes, size, capture_seconds))
            logger.info("bundle_ready", size=size, path=str(bundle.root))

            await ctx.repository.init()
            tags = snapshot_tags(ctx, outcomes)
            upload_started = time.monotonic()
            summary = await ctx.repository.backup([bundle.root], tags)
            upload_seconds = time.monotonic() - upload_started

        result = SnapshotResult(
            operation_id=operation_id,
            status=RunStatus.COMPLETED_WITH_ERRORS if outcomes.has_failures else RunStatus.COMPLETED,
            snapshot_id=summary.snapshot_id,
            outcomes=outcomes.items,
            bundle_size=size,
            duration_seconds=0.0,
            upload_seconds=upload_seconds,
            tags=tags,
            warnings=list(summary.warnings),
        )
        if summary.snapshot_id is None:
            logger.warning("snapshot_id_unknown", note="upload succeeded but no id was reported")
            result.warnings.append("snapshot id could not be determined")

        await apply_retention(ctx, result)
        result.duration_seconds = time.monotonic() - started
    except BaseException as e:
        for outcome in outcomes.items:
            await ctx.journal.component(operation_id, outcome)
        await ctx.journal.finish(
            operation_id,
            RunStatus.FAILED.value if isinstance(e, Exception) else RunStatus.CANCELLED.value,
            error=str(e) or type(e).__name__,
        )
        raise

    for outcome in outcomes.items:
        await ctx.journal.component(operation_id, outcome)
    await ctx.journal.finish(
        operation_id,
        result.status.value,
        snapshot_id=result.snapshot_id,
        bundle_size=result.bundle_size,
    )

    logger.info(
        "snapshot_finished",
        status=result.status.value,
        snapshot_id=result.snapshot_id,
        size=result.bundle_size,
        duration_seconds=round(result.duration_seconds, 1),
        upload_seconds=round(result.upload_seconds, 1),
        tags=result.tags,
    )
    return result
