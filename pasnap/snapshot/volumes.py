# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Volume export step of the snapshot pipeline.

Success is decided by the archive on disk (exists, above the minimum
size), not by tar's exit status: tar exits 1 when files change while it
reads them, which is normal for a live database volume.
"""

from typing import List

import structlog

from pasnap.core import RunContext, StepOutcome
from pasnap.exceptions import CommandError, CommandTimeout
from pasnap.runner import watch_progress
from pasnap.snapshot.bundle import SnapshotBundle
from pasnap.snapshot.databases import check_artifact

logger = structlog.get_logger()

CATEGORY = "volumes"
ARCHIVE_SUFFIX = ".tar.gz"


def archive_name(volume: str) -> str:
    return f"{volume}{ARCHIVE_SUFFIX}"


async def export_volume(ctx: RunContext, bundle: SnapshotBundle, volume: str) -> StepOutcome:
    full_name = ctx.runtime.volume_name(volume)
    try:
        exists = await ctx.runtime.volume_exists(full_name)
    except CommandError as e:
        return StepOutcome.soft_failure(CATEGORY, volume, f"cannot inspect {full_name}: {e}")
    if not exists:
        return StepOutcome.skipped(CATEGORY, volume, f"volume {full_name} not found")

    name = archive_name(volume)
    archive = bundle.volumes_dir / name
    timeout = ctx.config.timeouts.volume

    try:
        async with watch_progress(archive, f"volume {volume}"):
            result = await ctx.runtime.archive_volume(
                full_name, bundle.volumes_dir, name, timeout=timeout
            )
    except CommandTimeout:
        archive.unlink(missing_ok=True)
        return StepOutcome.soft_failure(CATEGORY, volume, f"archive timed out after {timeout}s")
    except CommandError as e:
        archive.unlink(missing_ok=True)
        return StepOutcome.soft_failure(CATEGORY, volume, f"archive failed: {e}")

    reason = check_artifact(archive, ctx.config.min_artifact_bytes)
    if reason is not None:
        archive.unlink(missing_ok=True)
        return StepOutcome.soft_failure(
            CATEGORY, volume, f"{reason}; archiver said: {result.stderr.strip()[-300:]}"
        )

    if not result.ok:
        logger.warning(
            "volume_archiver_warning",
            volume=volume,
            returncode=result.returncode,
            stderr=result.stderr.strip()[-300:],
        )
    return StepOutcome.success(CATEGORY, volume, size=archive.stat().st_size)


async def export_volumes(ctx: RunContext, bundle: SnapshotBundle) -> List[StepOutcome]:
    outcomes = []
    for volume in ctx.profile.volumes:
        outcomes.append(await export_volume(ctx, bundle, volume))
    return outcomes
