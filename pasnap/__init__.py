# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
pasnap - snapshot, restore and migration for PanelAlpha installations.

Drives restic and docker compose to capture databases, volumes,
configuration and tenant data as one encrypted, deduplicated snapshot,
and to rebuild an installation from such a snapshot on the same or a
new server.
"""

__version__ = "1.0.0"

# Configuration
from pasnap.config import PasnapConfig
from pasnap.env import load_config

# Deployment detection
from pasnap.detect import DeploymentProfile, Variant, detect

# Pipelines
from pasnap.core import RunContext, build_context
from pasnap.snapshot import run_snapshot
from pasnap.restore import run_restore

__all__ = [
    # Version
    "__version__",
    # Configuration
    "PasnapConfig",
    "load_config",
    # Detection
    "DeploymentProfile",
    "Variant",
    "detect",
    # Pipelines
    "RunContext",
    "build_context",
    "run_snapshot",
    "run_restore",
]
