# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Configuration and tenant-data export steps of the snapshot pipeline.

Missing optional items are skipped, never fatal.
"""

import asyncio
import shutil
from pathlib import Path
from typing import List

import aiofiles
import structlog

from pasnap.core import RunContext, StepOutcome
from pasnap.exceptions import CommandError
from pasnap.host import tree_size
from pasnap.snapshot.bundle import SnapshotBundle
from pasnap.treecopy import copy_tree

logger = structlog.get_logger()

CONFIG_FILES = ("docker-compose.yml", "nginx.conf", "Dockerfile")
PACKAGES_DIR = "packages"
PACKAGES_EXCLUDES = (".git", "node_modules", "vendor", "cache", "tmp", "*.log", ".DS_Store")
TOOL_CONFIG_NAME = ".env-backup"
TLS_SUBDIR = Path("ssl") / "letsencrypt"
CONTAINER_STATUS_FILE = "container-status.txt"
CONTAINER_STATUS_UNAVAILABLE = "Unable to query container state"


def _copy_file(source: Path, dest: Path, component: str) -> StepOutcome:
    if not source.is_file():
        return StepOutcome.skipped("config", component, f"{source} not found")
    try:
        shutil.copy2(source, dest)
    except OSError as e:
        return StepOutcome.soft_failure("config", component, f"copy failed: {e}")
    return StepOutcome.success("config", component, size=dest.stat().st_size)


async def _copy_dir(source: Path, dest: Path, component: str, ignore=None) -> StepOutcome:
    if not source.is_dir():
        return StepOutcome.skipped("config", component, f"{source} not found")
    try:
        await asyncio.to_thread(
            shutil.copytree, source, dest, symlinks=True, ignore=ignore, dirs_exist_ok=True
        )
    except (OSError, shutil.Error) as e:
        return StepOutcome.soft_failure("config", component, f"copy failed: {e}")
    return StepOutcome.success("config", component, size=tree_size(dest))


async def export_config(ctx: RunContext, bundle: SnapshotBundle) -> List[StepOutcome]:
    """Copy compose definition, env file, packages, tool config and TLS material."""
    root = ctx.profile.install_root
    config_dir = bundle.config_dir
    outcomes = []

    for name in CONFIG_FILES + (ctx.profile.env_file_name,):
        outcomes.append(_copy_file(root / name, config_dir / name, name))

    # Copied whole: the bundle is owner-only and the repository is encrypted
    outcomes.append(
        _copy_file(ctx.config.config_file, config_dir / TOOL_CONFIG_NAME, TOOL_CONFIG_NAME)
    )

    outcomes.append(
        await _copy_dir(
            root / PACKAGES_DIR,
            config_dir / PACKAGES_DIR,
            PACKAGES_DIR,
            ignore=shutil.ignore_patterns(*PACKAGES_EXCLUDES),
        )
    )
    outcomes.append(await _copy_dir(ctx.config.tls_dir, config_dir / TLS_SUBDIR, "ssl"))
    return outcomes


async def write_container_status(ctx: RunContext, tenant_dir: Path, dest: Path) -> int:
    """Record `docker compose ps` for every tenant project. Returns the project count."""
    compose_files = sorted(
        list(tenant_dir.glob("docker-compose.yml")) + list(tenant_dir.glob("*/docker-compose.yml"))
    )
    if not compose_files:
        return 0

    async with aiofiles.open(dest, "w") as f:
        for compose_file in compose_files:
            try:
                status = await ctx.runtime.compose_ps(compose_file)
            except CommandError as e:
                logger.warning("tenant_status_failed", project=compose_file.parent.name, error=str(e))
                status = CONTAINER_STATUS_UNAVAILABLE
            await f.write(f"[{compose_file.parent.name}]\n{status.rstrip()}\n\n")
    return len(compose_files)


async def export_tenant_data(ctx: RunContext, bundle: SnapshotBundle) -> StepOutcome:
    """Copy the per-tenant compose projects into users/."""
    source = ctx.profile.tenant_dir
    if not source.is_dir():
        return StepOutcome.skipped("users", "users", f"{source} not found")

    try:
        method = await copy_tree(source, bundle.users_dir, timeout=ctx.config.timeouts.tree_copy)
    except CommandError as e:
        return StepOutcome.soft_failure("users", "users", str(e))

    projects = await write_container_status(ctx, source, bundle.users_dir / CONTAINER_STATUS_FILE)
    logger.debug("tenant_status_recorded", projects=projects)
    return StepOutcome.success("users", "users", method, tree_size(bundle.users_dir))


async def export_home(ctx: RunContext, bundle: SnapshotBundle) -> StepOutcome:
    """Copy the shared home-directory tree into home/, keeping numeric owners."""
    source = ctx.config.home_dir
    if not source.is_dir():
        return StepOutcome.skipped("home", "home", f"{source} not found")

    try:
        method = await copy_tree(
            source, bundle.home_dir, timeout=ctx.config.timeouts.tree_copy, numeric_ids=True
        )
    except CommandError as e:
        return StepOutcome.soft_failure("home", "home", str(e))
    return StepOutcome.success("home", "home", method, tree_size(bundle.home_dir))
