# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Snapshot reference resolution and bundle discovery.

"latest" falls back from the host tag to the product tag to any
snapshot, so a freshly provisioned host can restore another host's
snapshot during migration.
"""

from collections import deque
from pathlib import Path

import structlog

from pasnap.adapters.protocols import Repository
from pasnap.config import is_valid_snapshot_ref
from pasnap.errors import (
    explain_corrupt_snapshot,
    explain_invalid_snapshot_id,
    explain_no_snapshots,
    explain_snapshot_not_found,
)
from pasnap.exceptions import RestoreError
from pasnap.snapshot.bundle import LEGACY_MANIFEST_NAME, MANIFEST_NAME, STAGING_PREFIX

logger = structlog.get_logger()

LATEST = "latest"
MAX_SEARCH_DEPTH = 16


async def resolve_snapshot(
    repository: Repository, ref: str, host_tag: str, product_tag: str
) -> str:
    """
    Resolve a snapshot reference to a concrete snapshot.

    Returns:
        Snapshot id to pass to the repository

    Raises:
        RestoreError: invalid reference, empty repository or unknown id
    """
    if not is_valid_snapshot_ref(ref):
        raise RestoreError(
            f"Invalid snapshot reference: {ref!r}", hint=explain_invalid_snapshot_id(ref)
        )

    if ref != LATEST:
        if not await repository.snapshot_exists(ref):
            raise RestoreError(
                f"Snapshot {ref} not found", hint=explain_snapshot_not_found(ref)
            )
        return ref

    for tag in (host_tag, product_tag, None):
        snapshots = await repository.list_snapshots(tag)
        if snapshots:
            newest = snapshots[0]
            logger.info(
                "latest_snapshot_resolved",
                snapshot_id=newest.short_id,
                matched_tag=tag or "any",
                created=newest.time.isoformat(),
            )
            return newest.short_id or newest.id
        logger.debug("no_snapshots_under_tag", tag=tag or "any")

    raise RestoreError("Repository has no snapshots", hint=explain_no_snapshots())


def _looks_like_bundle(path: Path) -> bool:
    return (
        (path / "databases").is_dir()
        or (path / MANIFEST_NAME).is_file()
        or (path / LEGACY_MANIFEST_NAME).is_file()
    )


def locate_data_root(extract_dir: Path, snapshot_id: str = "") -> Path:
    """
    Find the bundle directory inside an extracted snapshot.

    The repository stores the bundle under its original absolute staging
    path, so the data root sits several levels below extract_dir.

    Raises:
        RestoreError: no bundle directory was found
    """
    if _looks_like_bundle(extract_dir):
        return extract_dir

    queue = deque([(extract_dir, 0)])
    while queue:
        directory, depth = queue.popleft()
        try:
            children = sorted(p for p in directory.iterdir() if p.is_dir() and not p.is_symlink())
        except OSError as e:
            logger.warning("extract_dir_unreadable", path=str(directory), error=str(e))
            continue
        for child in children:
            if child.name.startswith(STAGING_PREFIX) and _looks_like_bundle(child):
                return child
            if depth + 1 < MAX_SEARCH_DEPTH:
                queue.append((child, depth + 1))

    raise RestoreError(
        "Snapshot data not found in extracted tree",
        details={"extract_dir": str(extract_dir)},
        hint=explain_corrupt_snapshot(snapshot_id or str(extract_dir)),
    )
