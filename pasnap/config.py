# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Pasnap Configuration - Immutable configuration data structures.

All configuration is frozen (immutable) after creation so a pipeline run
cannot observe settings changing underneath it.
"""

import re
import socket
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import List

DEFAULT_BASE_DIR = Path("/opt/panelalpha")
DEFAULT_CONFIG_FILE = DEFAULT_BASE_DIR / "pasnap" / ".env-backup"
LEGACY_CONFIG_FILE = DEFAULT_BASE_DIR / "app" / ".env-backup"

# Concrete short id, full id, or the "latest" sentinel
SNAPSHOT_REF_PATTERN = re.compile(r"^(?:[a-zA-Z0-9]{8,64}|latest)$")


@dataclass(frozen=True)
class Timeouts:
    """Time budgets in seconds, one per class of external operation."""

    probe: int = 30  # Database client probe, small runtime queries
    core_dump: int = 600  # Primary (core/API) database dump
    users_dump: int = 1800  # Bulk all-databases dump
    volume: int = 7200  # Per-volume archive or extraction
    tree_copy: int = 14400  # Tenant projects and /home copies
    db_import: int = 3600  # Logical dump import during restore
    compose: int = 600  # docker compose up/down/stop
    repository: int = 600  # restic init/snapshots/forget
    transfer: int = 86400  # restic backup/restore


@dataclass(frozen=True)
class PasnapConfig:
    """
    Immutable configuration for snapshot and restore runs.

    Repository credentials may be empty here; pipelines refuse to run
    without them during preflight, while setup and cron commands do not
    need them.
    """

    # Backup repository locator and passphrase
    repository: str = ""
    password: str = ""

    # Object-storage credentials, exported only to restic's environment
    aws_access_key_id: str | None = None
    aws_secret_access_key: str | None = None

    # Keep one snapshot per day for this many days
    retention_days: int = 30

    # Hour of day used by the cron entry
    backup_hour: int = 2

    # Tags: "<prefix>" (product) and "<prefix>-<hostname>" (host)
    tag_prefix: str = "panelalpha"
    hostname: str = field(default_factory=socket.gethostname)

    log_file: Path = Path("/var/log/pasnap.log")
    temp_dir: Path = Path("/var/tmp")
    restore_temp_dir: Path = Path("/var/tmp")
    cache_dir: Path = Path("/var/cache/restic")
    config_file: Path = DEFAULT_CONFIG_FILE

    # Host locations that are part of a snapshot
    base_dir: Path = DEFAULT_BASE_DIR
    tls_dir: Path = Path("/etc/letsencrypt")
    home_dir: Path = Path("/home")

    # Image used for the short-lived volume archive/extract container
    helper_image: str = "ubuntu:20.04"

    # zstd level for the bulk dump
    users_dump_compression_level: int = 1

    # Free space required beyond the estimated bundle size
    min_free_mb: int = 3000

    # Dumps and archives below this size are treated as truncated
    min_artifact_bytes: int = 1000

    # Database readiness polling during restore
    db_ready_attempts: int = 120
    db_ready_interval: float = 2.0

    # Pauses between restore phases
    stop_grace_seconds: float = 10.0
    settle_seconds: float = 30.0

    # Repository init/connectivity retry policy
    init_attempts: int = 3
    init_backoff_seconds: float = 5.0

    timeouts: Timeouts = field(default_factory=Timeouts)

    def __post_init__(self) -> None:
        """Validate configuration after creation."""
        errors: List[str] = []

        if not 1 <= self.retention_days <= 365:
            errors.append(f"retention_days must be 1-365, got {self.retention_days}")

        if not 0 <= self.backup_hour <= 23:
            errors.append(f"backup_hour must be 0-23, got {self.backup_hour}")

        if not self.tag_prefix or not re.match(r"^[A-Za-z0-9._-]+$", self.tag_prefix):
            errors.append(f"Invalid tag_prefix: {self.tag_prefix!r}")

        if not self.hostname:
            errors.append("hostname must not be empty")

        if not 1 <= self.users_dump_compression_level <= 22:
            errors.append(
                "users_dump_compression_level must be 1-22, "
                f"got {self.users_dump_compression_level}"
            )

        if self.min_free_mb < 0:
            errors.append(f"min_free_mb must be >= 0, got {self.min_free_mb}")

        if self.db_ready_attempts < 1:
            errors.append(f"db_ready_attempts must be >= 1, got {self.db_ready_attempts}")

        if self.init_attempts < 1:
            errors.append(f"init_attempts must be >= 1, got {self.init_attempts}")

        for name, value in vars(self.timeouts).items():
            if value <= 0:
                errors.append(f"timeout {name} must be > 0, got {value}")

        if errors:
            from pasnap.exceptions import ConfigurationError

            raise ConfigurationError(
                "Configuration validation failed",
                details={"errors": errors},
            )

    @property
    def host_tag(self) -> str:
        """Tag identifying snapshots taken on this host."""
        return f"{self.tag_prefix}-{self.hostname}"

    @property
    def product_tag(self) -> str:
        """Tag shared by snapshots from every host."""
        return self.tag_prefix

    @property
    def journal_path(self) -> Path:
        return self.config_file.parent / "journal.db"

    @property
    def has_repository_credentials(self) -> bool:
        return bool(self.repository and self.password)

    def with_updates(self, **kwargs) -> "PasnapConfig":
        """
        Create a new config with updated values.

        Since the config is frozen, this creates a new instance (and
        validates it again).
        """
        return replace(self, **kwargs)


def is_valid_snapshot_ref(value: str) -> bool:
    return bool(value) and SNAPSHOT_REF_PATTERN.match(value) is not None


def mask_locator(locator: str) -> str:
    """Hide credentials embedded in a repository URL (rest:https://u:p@host/...)."""
    return re.sub(r"(://[^/:@]+):[^@/]+@", r"\1:***@", locator)
