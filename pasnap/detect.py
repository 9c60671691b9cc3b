# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Deployment detection - which PanelAlpha product is installed and where.

Detection is a pure function of the filesystem. Everything that differs
between the Control Panel and the Engine (databases, volumes, whether
tenant data exists) is expressed once here as data on the profile, so the
pipelines never re-check the variant.
"""

from dataclasses import dataclass
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Tuple

from pasnap.config import DEFAULT_BASE_DIR

COMPOSE_FILE = "docker-compose.yml"
PRIMARY_ENV_FILE = ".env"
LEGACY_ENV_FILE = ".env-core"


class Variant(str, Enum):
    """Installed product variant."""

    CONTROL_PANEL = "app"
    ENGINE = "engine"
    UNKNOWN = "unknown"  # Handled exactly like CONTROL_PANEL


@dataclass(frozen=True)
class DatabaseSpec:
    """One logical database export within a deployment."""

    logical_name: str
    service: str  # compose service running the database server
    credential_env_key: str  # key in the application env file
    user: str
    database: str | None  # None exports every database on the server
    dump_name: str  # file name inside databases/, without compression suffix
    volume: str  # storage volume backing this database server
    bulk: bool = False  # long timeout + streaming compression

    @property
    def is_all_databases(self) -> bool:
        return self.database is None


@dataclass(frozen=True)
class DeploymentProfile:
    """Resolved installation layout; immutable for the process lifetime."""

    variant: Variant
    install_root: Path
    env_file: Path
    databases: Tuple[DatabaseSpec, ...]
    volumes: Tuple[str, ...]
    has_tenant_data: bool = False

    @property
    def project_name(self) -> str:
        """Compose project name, used as the volume name prefix."""
        return self.install_root.name

    @property
    def compose_file(self) -> Path:
        return self.install_root / COMPOSE_FILE

    @property
    def env_file_name(self) -> str:
        return self.env_file.name

    @property
    def database_services(self) -> Tuple[str, ...]:
        return tuple(db.service for db in self.databases)

    @property
    def database_volumes(self) -> Tuple[str, ...]:
        return tuple(db.volume for db in self.databases)

    @property
    def data_volumes(self) -> Tuple[str, ...]:
        """Volumes that are not rebuilt from a logical dump."""
        return tuple(v for v in self.volumes if v not in self.database_volumes)

    @property
    def tenant_dir(self) -> Path:
        return self.install_root / "users"

    @property
    def component_tags(self) -> Tuple[str, ...]:
        tags = ("databases", "volumes", "config")
        if self.has_tenant_data:
            tags += ("users", "home")
        return tags


ENGINE_DATABASES = (
    DatabaseSpec(
        logical_name="core",
        service="database-core",
        credential_env_key="CORE_MYSQL_PASSWORD",
        user="core",
        database="core",
        dump_name="panelalpha-core.sql",
        volume="database-core-data",
    ),
    DatabaseSpec(
        logical_name="users",
        service="database-users",
        credential_env_key="USERS_MYSQL_ROOT_PASSWORD",
        user="root",
        database=None,
        dump_name="panelalpha-users.sql",
        volume="database-users-data",
        bulk=True,
    ),
)

CONTROL_PANEL_DATABASES = (
    DatabaseSpec(
        logical_name="panelalpha",
        service="database-api",
        credential_env_key="API_MYSQL_PASSWORD",
        user="panelalpha",
        database="panelalpha",
        dump_name="panelalpha-api.sql",
        volume="database-api-data",
    ),
)

ENGINE_VOLUMES = ("core-storage", "database-core-data", "database-users-data")
CONTROL_PANEL_VOLUMES = ("api-storage", "database-api-data", "redis-data")

# First match wins
ENGINE_DIRS = ("shared-hosting", "engine")
CONTROL_PANEL_DIR = "app"


def _has_compose(directory: Path) -> bool:
    return directory.is_dir() and (directory / COMPOSE_FILE).is_file()


def resolve_env_file(install_root: Path) -> Path:
    """Primary env file if present, else the legacy name, else the primary name."""
    for name in (PRIMARY_ENV_FILE, LEGACY_ENV_FILE):
        candidate = install_root / name
        if candidate.is_file():
            return candidate
    return install_root / PRIMARY_ENV_FILE


def detect(base_dir: Path = DEFAULT_BASE_DIR) -> DeploymentProfile:
    """
    Detect the installed product variant under base_dir.

    Never raises: an unrecognized layout yields Variant.UNKNOWN with the
    Control Panel layout.
    """
    base_dir = Path(base_dir)

    for name in ENGINE_DIRS:
        candidate = base_dir / name
        if _has_compose(candidate):
            return DeploymentProfile(
                variant=Variant.ENGINE,
                install_root=candidate,
                env_file=resolve_env_file(candidate),
                databases=ENGINE_DATABASES,
                volumes=ENGINE_VOLUMES,
                has_tenant_data=True,
            )

    install_root = base_dir / CONTROL_PANEL_DIR
    variant = Variant.CONTROL_PANEL if _has_compose(install_root) else Variant.UNKNOWN
    return DeploymentProfile(
        variant=variant,
        install_root=install_root,
        env_file=resolve_env_file(install_root),
        databases=CONTROL_PANEL_DATABASES,
        volumes=CONTROL_PANEL_VOLUMES,
        has_tenant_data=False,
    )


@lru_cache(maxsize=None)
def detect_cached(base_dir: Path = DEFAULT_BASE_DIR) -> DeploymentProfile:
    """detect() memoized for the process lifetime."""
    return detect(base_dir)
