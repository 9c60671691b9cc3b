# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Restore pipeline.

Everything up to the confirmation gate is read-only on this host. After
the gate every step is fatal on failure except the network identity
rewrite and the final liveness check, which are advisory.
"""

import asyncio
import time
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from secrets import token_hex
from typing import AsyncIterator, Awaitable, Callable, List

import structlog

from pasnap.core import Outcomes, RestoreResult, RunContext, RunStatus
from pasnap.env import read_env_file
from pasnap.errors import explain_missing_repository_config, explain_restore_incomplete
from pasnap.exceptions import PasnapError, PreflightError, RestoreError
from pasnap.restore.databases import (
    clean_database_volumes,
    restore_databases,
    start_databases,
    update_host_settings,
)
from pasnap.restore.files import restore_config, restore_tenant_data, restore_volumes
from pasnap.restore.resolve import locate_data_root, resolve_snapshot
from pasnap.snapshot.bundle import read_manifest, remove_tree

logger = structlog.get_logger()

EXTRACT_PREFIX = "pasnap-restore-"

Confirm = Callable[[str], Awaitable[bool]]


@asynccontextmanager
async def extraction_dir(parent: Path) -> AsyncIterator[Path]:
    """Fresh owner-only extraction directory, removed on every exit path."""
    parent.mkdir(parents=True, exist_ok=True)
    path = parent / f"{EXTRACT_PREFIX}{datetime.now():%Y%m%d-%H%M%S}-{token_hex(8)}"
    path.mkdir(mode=0o700)
    try:
        yield path
    finally:
        remove_tree(path)


class _Steps:
    """Records step names and turns failures into RestoreError with a hint."""

    def __init__(self) -> None:
        self.names: List[str] = []

    @asynccontextmanager
    async def fatal(self, name: str) -> AsyncIterator[None]:
        logger.info("restore_step", step=name)
        self.names.append(name)
        try:
            yield
        except RestoreError as e:
            if e.hint is None:
                e.hint = explain_restore_incomplete(name)
            raise
        except (PasnapError, OSError) as e:
            raise RestoreError(
                f"Restore step '{name}' failed: {e}",
                details={"step": name},
                hint=explain_restore_incomplete(name),
            ) from e


async def run_restore(ctx: RunContext, ref: str, confirm: Confirm) -> RestoreResult:
    """
    Restore a snapshot onto this host.

    Args:
        ctx: Run context
        ref: Snapshot id or "latest"
        confirm: Awaitable prompt; nothing destructive happens unless it
            returns True

    Returns:
        RestoreResult; status CANCELLED when confirmation was refused

    Raises:
        RestoreError: on any fatal step
        PreflightError: repository not configured
    """
    config = ctx.config
    if not config.has_repository_credentials:
        raise PreflightError(
            "Repository is not configured",
            hint=explain_missing_repository_config(config.config_file),
        )

    started = time.monotonic()
    snapshot_id = await resolve_snapshot(ctx.repository, ref, config.host_tag, config.product_tag)
    operation_id = await ctx.journal.start("restore", snapshot_id)
    outcomes = Outcomes()
    steps = _Steps()
    status = RunStatus.FAILED
    error: str | None = None

    try:
        async with extraction_dir(config.restore_temp_dir) as extract_dir:
            logger.info("snapshot_download_started", snapshot_id=snapshot_id)
            await ctx.repository.restore(snapshot_id, extract_dir)
            data_root = locate_data_root(extract_dir, snapshot_id)
            manifest = read_manifest(data_root)
            logger.info(
                "snapshot_downloaded",
                snapshot_id=snapshot_id,
                created=manifest.get("created_at", "unknown"),
                source_host=manifest.get("hostname", "unknown"),
                data_root=str(data_root),
            )

            if not await confirm(snapshot_id):
                logger.info("restore_cancelled_by_user", snapshot_id=snapshot_id)
                status = RunStatus.CANCELLED
                return RestoreResult(operation_id, status, snapshot_id)

            async with steps.fatal("stop_services"):
                await ctx.runtime.compose_down()
                await asyncio.sleep(config.stop_grace_seconds)

            async with steps.fatal("clean_database_volumes"):
                await clean_database_volumes(ctx)

            async with steps.fatal("restore_config"):
                env_file, config_outcomes = await restore_config(ctx, data_root)
                outcomes.extend(config_outcomes)
                env_values = read_env_file(env_file)

            async with steps.fatal("start_databases"):
                # Compose may have recreated volumes while the config was swapped
                await ctx.runtime.compose_stop(ctx.profile.database_services)
                await clean_database_volumes(ctx)
                await start_databases(ctx)

            async with steps.fatal("restore_databases"):
                outcomes.extend(await restore_databases(ctx, data_root, env_values))

            if not ctx.profile.has_tenant_data:
                steps.names.append("update_host_settings")
                outcomes.add(await update_host_settings(ctx, env_values))

            async with steps.fatal("restore_volumes"):
                outcomes.extend(await restore_volumes(ctx, data_root))

            if ctx.profile.has_tenant_data:
                async with steps.fatal("restore_tenant_data"):
                    outcomes.extend(await restore_tenant_data(ctx, data_root))

        steps.names.append("start_services")
        try:
            await ctx.runtime.compose_up()
        except PasnapError as e:
            logger.warning("services_start_failed", error=str(e))
        await asyncio.sleep(config.settle_seconds)
        try:
            services_running = await ctx.runtime.compose_status()
        except PasnapError as e:
            logger.warning("service_status_unavailable", error=str(e))
            services_running = False
        if not services_running:
            logger.warning(
                "services_not_running_after_restore",
                hint="inspect with: docker compose ps",
            )

        status = RunStatus.COMPLETED_WITH_ERRORS if outcomes.has_failures else RunStatus.COMPLETED
        result = RestoreResult(
            operation_id=operation_id,
            status=status,
            snapshot_id=snapshot_id,
            outcomes=outcomes.items,
            steps=steps.names,
            services_running=services_running,
            duration_seconds=time.monotonic() - started,
        )
    except asyncio.CancelledError:
        status = RunStatus.CANCELLED
        error = "interrupted"
        raise
    except Exception as e:
        error = str(e)
        raise
    finally:
        for outcome in outcomes.items:
            await ctx.journal.component(operation_id, outcome)
        await ctx.journal.finish(operation_id, status.value, snapshot_id=snapshot_id, error=error)

    logger.info(
        "restore_finished",
        status=result.status.value,
        snapshot_id=snapshot_id,
        services_running=services_running,
        duration_seconds=round(result.duration_seconds, 1),
    )
    return result
