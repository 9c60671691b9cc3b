# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""Snapshot pipeline and its capture steps."""

from pasnap.snapshot.bundle import SnapshotBundle, read_manifest, staging_bundle
from pasnap.snapshot.pipeline import preflight, run_snapshot

__all__ = [
    "SnapshotBundle",
    "read_manifest",
    "staging_bundle",
    "preflight",
    "run_snapshot",
]
