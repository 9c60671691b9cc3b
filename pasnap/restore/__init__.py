# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""Restore pipeline and its steps."""

from pasnap.restore.pipeline import run_restore
from pasnap.restore.resolve import LATEST, locate_data_root, resolve_snapshot

__all__ = ["LATEST", "locate_data_root", "resolve_snapshot", "run_restore"]
