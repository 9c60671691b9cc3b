# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""Adapters over restic, docker and the MySQL client."""

from pasnap.adapters.docker import DockerRuntime
from pasnap.adapters.mysql import MySQLClient
from pasnap.adapters.protocols import (
    BackupSummary,
    ContainerRuntime,
    DatabaseClient,
    Repository,
    SnapshotInfo,
)
from pasnap.adapters.restic import ResticRepository

__all__ = [
    "BackupSummary",
    "ContainerRuntime",
    "DatabaseClient",
    "DockerRuntime",
    "MySQLClient",
    "Repository",
    "ResticRepository",
    "SnapshotInfo",
]
