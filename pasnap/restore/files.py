# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""Configuration, volume and tenant-data steps of the restore pipeline."""

import asyncio
import shutil
from pathlib import Path
from typing import List

import structlog

from pasnap.core import RunContext, StepOutcome
from pasnap.detect import COMPOSE_FILE, LEGACY_ENV_FILE, PRIMARY_ENV_FILE
from pasnap.exceptions import CommandError, RestoreError
from pasnap.host import tree_size
from pasnap.snapshot.files import PACKAGES_DIR, TLS_SUBDIR
from pasnap.snapshot.volumes import archive_name
from pasnap.treecopy import copy_tree

logger = structlog.get_logger()


def _restored_env_name(config_dir: Path, preferred: str) -> str | None:
    """The variant's env file name if the bundle has it, else the other known name."""
    for name in dict.fromkeys((preferred, PRIMARY_ENV_FILE, LEGACY_ENV_FILE)):
        if (config_dir / name).is_file():
            return name
    return None


async def restore_config(ctx: RunContext, data_root: Path) -> tuple[Path, List[StepOutcome]]:
    """
    Overwrite the installation's configuration from the bundle.

    The tool's own .env-backup in the bundle is deliberately left alone:
    the current host keeps its repository settings.

    Returns:
        (path of the restored env file, outcomes)

    Raises:
        RestoreError: the bundle has no env file or a copy failed
    """
    config_dir = data_root / "config"
    root = ctx.profile.install_root
    outcomes = []

    env_name = _restored_env_name(config_dir, ctx.profile.env_file_name)
    if env_name is None:
        raise RestoreError(
            "Snapshot contains no application env file",
            details={"config_dir": str(config_dir)},
        )

    try:
        root.mkdir(parents=True, exist_ok=True)

        shutil.copy2(config_dir / COMPOSE_FILE, root / COMPOSE_FILE)
        outcomes.append(StepOutcome.success("config", COMPOSE_FILE))

        shutil.copy2(config_dir / env_name, root / env_name)
        (root / env_name).chmod(0o600)
        outcomes.append(StepOutcome.success("config", env_name))
        if env_name != ctx.profile.env_file_name:
            logger.warning("env_file_name_differs", restored=env_name, expected=ctx.profile.env_file_name)

        for pattern in ("nginx.conf*", "Dockerfile*"):
            for path in sorted(config_dir.glob(pattern)):
                shutil.copy2(path, root / path.name)
                outcomes.append(StepOutcome.success("config", path.name))

        if (config_dir / PACKAGES_DIR).is_dir():
            await asyncio.to_thread(
                shutil.copytree, config_dir / PACKAGES_DIR, root / PACKAGES_DIR,
                symlinks=True, dirs_exist_ok=True,
            )
            outcomes.append(StepOutcome.success("config", PACKAGES_DIR))

        tls_source = config_dir / TLS_SUBDIR
        if tls_source.is_dir():
            await asyncio.to_thread(
                shutil.copytree, tls_source, ctx.config.tls_dir, symlinks=True, dirs_exist_ok=True
            )
            outcomes.append(StepOutcome.success("config", "ssl"))
        else:
            outcomes.append(StepOutcome.skipped("config", "ssl", "no TLS material in snapshot"))
    except FileNotFoundError as e:
        raise RestoreError(f"Snapshot is missing {Path(e.filename).name}", details={"error": str(e)})
    except (OSError, shutil.Error) as e:
        raise RestoreError(f"Cannot restore configuration: {e}")

    return root / env_name, outcomes


async def restore_volume(ctx: RunContext, data_root: Path, volume: str) -> StepOutcome:
    archive = data_root / "volumes" / archive_name(volume)
    if not archive.is_file():
        logger.warning("volume_archive_missing", volume=volume)
        return StepOutcome.skipped("volumes", volume, "not in snapshot")

    name = ctx.runtime.volume_name(volume)
    if await ctx.runtime.volume_exists(name):
        await ctx.runtime.remove_volume(name)
    await ctx.runtime.create_volume(name)

    timeout = ctx.config.timeouts.volume
    try:
        result = await ctx.runtime.extract_volume(name, archive, timeout=timeout)
    except CommandError as e:
        raise RestoreError(f"Extraction into {name} failed: {e.message}", details=e.details)
    if not result.ok:
        raise RestoreError(
            f"Extraction into {name} failed (exit {result.returncode})",
            details={"stderr": result.stderr.strip()[-1000:]},
        )
    return StepOutcome.success("volumes", volume, size=archive.stat().st_size)


async def restore_volumes(ctx: RunContext, data_root: Path) -> List[StepOutcome]:
    """Recreate each data volume; database volumes were rebuilt from dumps."""
    outcomes = []
    for volume in ctx.profile.data_volumes:
        outcomes.append(await restore_volume(ctx, data_root, volume))
    return outcomes


async def _restore_tree(ctx: RunContext, source: Path, target: Path, category: str, **kw) -> StepOutcome:
    if not source.is_dir():
        return StepOutcome.skipped(category, category, "not in snapshot")
    try:
        method = await copy_tree(source, target, timeout=ctx.config.timeouts.tree_copy, **kw)
    except CommandError as e:
        raise RestoreError(f"Cannot restore {category} data: {e.message}", details=e.details)
    return StepOutcome.success(category, category, method, tree_size(source))


async def restore_tenant_data(ctx: RunContext, data_root: Path) -> List[StepOutcome]:
    """Copy per-tenant projects and /home back into place."""
    return [
        await _restore_tree(ctx, data_root / "users", ctx.profile.tenant_dir, "users"),
        await _restore_tree(ctx, data_root / "home", ctx.config.home_dir, "home", numeric_ids=True),
    ]
