# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Abstract interfaces for the external engines the pipelines drive.

The pipelines only talk to these interfaces; the concrete classes in
this package wrap restic, docker and the MySQL command-line client, and
the test suite substitutes in-memory implementations.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import List, Sequence

from pasnap.detect import DatabaseSpec
from pasnap.runner import CommandResult


@dataclass(frozen=True)
class SnapshotInfo:
    """A snapshot as listed by the repository."""

    id: str
    short_id: str
    time: datetime
    tags: tuple = ()
    paths: tuple = ()
    hostname: str = ""
    size: int | None = None


@dataclass
class BackupSummary:
    """What the repository reported after an upload."""

    snapshot_id: str | None
    bytes_processed: int = 0
    warnings: List[str] = field(default_factory=list)


class Repository(ABC):
    """Content-addressed, encrypted snapshot repository."""

    locator: str

    @abstractmethod
    async def is_available(self) -> bool:
        """True if the repository tool can be executed on this host."""

    @abstractmethod
    async def init(self) -> bool:
        """Create the repository if needed. Returns True if it was created."""

    @abstractmethod
    async def check_connectivity(self) -> int:
        """Open the repository and return the number of snapshots in it."""

    @abstractmethod
    async def backup(self, paths: Sequence[Path], tags: Sequence[str]) -> BackupSummary:
        """Upload paths as one new snapshot."""

    @abstractmethod
    async def list_snapshots(self, tag: str | None = None) -> List[SnapshotInfo]:
        """Snapshots (optionally under tag), newest first."""

    @abstractmethod
    async def restore(self, snapshot_id: str, target: Path) -> None:
        """Extract a snapshot into target."""

    @abstractmethod
    async def forget(self, tag: str, keep_daily: int) -> None:
        """Apply daily retention to snapshots under tag and prune."""

    @abstractmethod
    async def delete_snapshot(self, snapshot_id: str) -> None:
        """Forget one snapshot and prune."""

    async def snapshot_exists(self, snapshot_id: str) -> bool:
        for snap in await self.list_snapshots():
            if snapshot_id in (snap.short_id, snap.id):
                return True
        return False


class ContainerRuntime(ABC):
    """Container runtime plus compose orchestration for one installation."""

    project_name: str

    def volume_name(self, logical_name: str) -> str:
        """Runtime volume name for a logical compose volume."""
        return f"{self.project_name}_{logical_name}"

    @abstractmethod
    async def is_available(self) -> bool: ...

    @abstractmethod
    async def service_container_id(self, service: str) -> str:
        """Running container id of a compose service, or "" if none."""

    @abstractmethod
    async def exec_in(
        self,
        container: str,
        argv: Sequence[str],
        *,
        timeout: float,
        secrets: dict | None = None,
        input: bytes | None = None,
    ) -> CommandResult:
        """Run argv inside container; secrets become container env vars."""

    @abstractmethod
    async def exec_to_file(
        self,
        container: str,
        argv: Sequence[str],
        dest: Path,
        *,
        timeout: float,
        secrets: dict | None = None,
        compress_level: int | None = None,
    ) -> CommandResult:
        """Run argv inside container streaming stdout into dest."""

    @abstractmethod
    async def exec_from_file(
        self,
        container: str,
        argv: Sequence[str],
        source: Path,
        *,
        timeout: float,
        secrets: dict | None = None,
    ) -> CommandResult:
        """Run argv inside container with source (decompressed) on stdin."""

    @abstractmethod
    async def container_env(self, container: str, name: str) -> str | None: ...

    @abstractmethod
    async def container_logs(self, container: str, tail: int = 10) -> str: ...

    @abstractmethod
    async def volume_exists(self, name: str) -> bool: ...

    @abstractmethod
    async def create_volume(self, name: str) -> None: ...

    @abstractmethod
    async def remove_volume(self, name: str) -> None: ...

    @abstractmethod
    async def archive_volume(
        self, name: str, target_dir: Path, archive_name: str, *, timeout: float
    ) -> CommandResult:
        """Write a compressed archive of a volume's contents into target_dir."""

    @abstractmethod
    async def extract_volume(self, name: str, archive: Path, *, timeout: float) -> CommandResult:
        """Extract an archive produced by archive_volume into a volume."""

    @abstractmethod
    async def compose_up(self, services: Sequence[str] = ()) -> None: ...

    @abstractmethod
    async def compose_down(self) -> None: ...

    @abstractmethod
    async def compose_stop(self, services: Sequence[str]) -> None: ...

    @abstractmethod
    async def compose_status(self) -> bool:
        """True if any service of the project reports a running state."""

    @abstractmethod
    async def compose_ps(self, compose_file: Path | None = None) -> str:
        """Human-readable status table of a compose project."""


class DatabaseClient(ABC):
    """Database server operations performed inside its container."""

    @abstractmethod
    async def ping(self, container: str) -> bool:
        """Unauthenticated liveness probe."""

    @abstractmethod
    async def probe(self, container: str, user: str, password: str) -> bool:
        """Authenticated connectivity probe."""

    @abstractmethod
    async def dump(
        self,
        container: str,
        spec: DatabaseSpec,
        password: str,
        dest: Path,
        *,
        timeout: float,
        compress_level: int | None = None,
    ) -> CommandResult: ...

    @abstractmethod
    async def import_dump(
        self,
        container: str,
        user: str,
        password: str,
        database: str | None,
        source: Path,
        *,
        timeout: float,
    ) -> CommandResult: ...

    @abstractmethod
    async def ensure_user(
        self,
        container: str,
        user: str,
        password: str,
        database: str,
        root_passwords: Sequence[str] = (),
    ) -> str:
        """Make sure user can log in; returns how it was achieved."""

    @abstractmethod
    async def recreate_database(
        self, container: str, user: str, password: str, database: str
    ) -> None: ...

    @abstractmethod
    async def count_tables(self, container: str, user: str, password: str, database: str) -> int: ...

    @abstractmethod
    async def count_databases(self, container: str, user: str, password: str) -> int: ...

    @abstractmethod
    async def update_setting(
        self, container: str, user: str, password: str, database: str, name: str, value: str
    ) -> None: ...

    @abstractmethod
    async def read_setting(
        self, container: str, user: str, password: str, database: str, name: str
    ) -> str: ...
