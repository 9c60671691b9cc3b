# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Snapshot bundle staging directory.

The bundle layout (databases/, volumes/, config/, optional users/ and
home/, plus manifest.json) is what restore looks for, so these names are
fixed. staging_bundle() owns the directory: it is removed on every exit
path, including cancellation by a signal.
"""

import json
import os
import secrets
import shutil
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import AsyncIterator

import aiofiles
import structlog

logger = structlog.get_logger()

STAGING_PREFIX = "pasnap-snapshot-"
MANIFEST_NAME = "manifest.json"
LEGACY_MANIFEST_NAME = "snapshot-info.txt"


@dataclass(frozen=True)
class SnapshotBundle:
    root: Path

    @property
    def databases_dir(self) -> Path:
        return self.root / "databases"

    @property
    def volumes_dir(self) -> Path:
        return self.root / "volumes"

    @property
    def config_dir(self) -> Path:
        return self.root / "config"

    @property
    def users_dir(self) -> Path:
        return self.root / "users"

    @property
    def home_dir(self) -> Path:
        return self.root / "home"

    @property
    def manifest_path(self) -> Path:
        return self.root / MANIFEST_NAME


def new_staging_name(prefix: str = STAGING_PREFIX) -> str:
    """Timestamped name with a random suffix that cannot be predicted."""
    return f"{prefix}{datetime.now():%Y%m%d-%H%M%S}-{secrets.token_hex(8)}"


def remove_tree(path: Path) -> None:
    """Delete path; a failure is logged loudly since the tree may hold dumps."""
    try:
        shutil.rmtree(path)
    except FileNotFoundError:
        return
    except OSError as e:
        logger.error("staging_cleanup_failed", path=str(path), error=str(e))
        return
    logger.debug("staging_removed", path=str(path))


@asynccontextmanager
async def staging_bundle(temp_dir: Path) -> AsyncIterator[SnapshotBundle]:
    """
    Create an owner-only staging directory and always remove it.

    The removal runs synchronously in the finally block so a second
    cancellation cannot interrupt it half-way.
    """
    temp_dir.mkdir(parents=True, exist_ok=True)
    root = temp_dir / new_staging_name()
    root.mkdir(mode=0o700)
    os.chmod(root, 0o700)
    logger.info("staging_created", path=str(root))

    try:
        bundle = SnapshotBundle(root)
        for directory in (bundle.databases_dir, bundle.volumes_dir, bundle.config_dir):
            directory.mkdir()
        yield bundle
    finally:
        remove_tree(root)


async def write_manifest(bundle: SnapshotBundle, manifest: dict) -> Path:
    async with aiofiles.open(bundle.manifest_path, "w") as f:
        await f.write(json.dumps(manifest, indent=2, sort_keys=True, default=str))
    return bundle.manifest_path


def read_manifest(data_root: Path) -> dict:
    """
    Load a bundle's manifest.

    Bundles from older releases carry a plain-text snapshot-info.txt; the
    "Created:" line is the only field used from it.
    """
    manifest = data_root / MANIFEST_NAME
    if manifest.is_file():
        try:
            return json.loads(manifest.read_text())
        except json.JSONDecodeError as e:
            logger.warning("manifest_unreadable", path=str(manifest), error=str(e))
            return {}

    legacy = data_root / LEGACY_MANIFEST_NAME
    if legacy.is_file():
        for line in legacy.read_text(errors="replace").splitlines():
            if line.startswith("Created:"):
                return {"created_at": line.partition(":")[2].strip()}
    return {}
