# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
In-memory fakes of the container runtime, database client and
repository, plus installation layouts and configuration helpers.

The fake database keeps each server's state as JSON inside its storage
volume directory, so removing or archiving a volume affects the data
exactly the way it would on a real host.
"""

import json
import os
import secrets
import shutil
import tarfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Dict, List, Sequence

import zstandard as zstd

from pasnap.adapters.protocols import (
    BackupSummary,
    ContainerRuntime,
    DatabaseClient,
    Repository,
    SnapshotInfo,
)
from pasnap.config import PasnapConfig, Timeouts
from pasnap.core import RunContext
from pasnap.detect import DatabaseSpec, DeploymentProfile, detect
from pasnap.exceptions import DatabaseError, RepositoryError
from pasnap.journal import Journal
from pasnap.runner import CommandResult

DATA_FILE = "mysql.json"


def _result(returncode: int = 0, stdout: str = "", stderr: str = "") -> CommandResult:
    return CommandResult(
        argv=[], returncode=returncode, stdout=stdout, stderr=stderr, duration_seconds=0.0
    )


# ============================================================================
# Fake container runtime
# ============================================================================


class FakeRuntime(ContainerRuntime):
    """
    Containers are names in a set, volumes are directories.

    Starting a service creates the volumes it needs, as compose does.
    """

    def __init__(self, root: Path, profile: DeploymentProfile, services: Sequence[str] = ()):
        self.root = root
        self.profile = profile
        self.project_name = profile.project_name
        self.services = tuple(services) or profile.database_services + ("api", "redis")
        self.running: set = set()
        self.volumes: Dict[str, Path] = {}
        self.container_envs: Dict[str, Dict[str, str]] = {}
        self.calls: List[tuple] = []
        self.archiver_exit_code = 0
        self.not_ready: set = set()  # services whose ping keeps failing

    # helpers

    def volume_path(self, name: str) -> Path:
        return self.volumes[name]

    def add_volume(self, logical_name: str) -> Path:
        name = self.volume_name(logical_name)
        path = self.root / "volumes" / name
        path.mkdir(parents=True, exist_ok=True)
        self.volumes[name] = path
        return path

    def service_of(self, container: str) -> str:
        return container.removesuffix("-1")

    # ContainerRuntime

    async def is_available(self) -> bool:
        return True

    async def service_container_id(self, service: str) -> str:
        return f"{service}-1" if service in self.running else ""

    async def exec_in(self, container, argv, *, timeout, secrets=None, input=None):
        self.calls.append(("exec_in", container, tuple(argv)))
        return _result()

    async def exec_to_file(self, container, argv, dest, *, timeout, secrets=None, compress_level=None):
        self.calls.append(("exec_to_file", container, tuple(argv)))
        dest.write_bytes(b"")
        return _result()

    async def exec_from_file(self, container, argv, source, *, timeout, secrets=None):
        self.calls.append(("exec_from_file", container, tuple(argv)))
        return _result()

    async def container_env(self, container: str, name: str) -> str | None:
        return self.container_envs.get(self.service_of(container), {}).get(name)

    async def container_logs(self, container: str, tail: int = 10) -> str:
        return f"{container}: still starting"

    async def volume_exists(self, name: str) -> bool:
        return name in self.volumes

    async def create_volume(self, name: str) -> None:
        self.calls.append(("create_volume", name))
        path = self.root / "volumes" / name
        path.mkdir(parents=True, exist_ok=True)
        self.volumes[name] = path

    async def remove_volume(self, name: str) -> None:
        self.calls.append(("remove_volume", name))
        shutil.rmtree(self.volumes.pop(name))

    async def archive_volume(self, name, target_dir, archive_name, *, timeout):
        self.calls.append(("archive_volume", name))
        with tarfile.open(target_dir / archive_name, "w:gz") as tar:
            tar.add(self.volumes[name], arcname=".")
        return _result(self.archiver_exit_code, stderr="file changed as we read it")

    async def extract_volume(self, name, archive, *, timeout):
        self.calls.append(("extract_volume", name))
        with tarfile.open(archive, "r:gz") as tar:
            tar.extractall(self.volumes[name], filter="data")
        return _result()

    async def compose_up(self, services: Sequence[str] = ()) -> None:
        services = tuple(services) or self.services
        self.calls.append(("compose_up", services))
        for spec in self.profile.databases:
            if spec.service in services:
                name = self.volume_name(spec.volume)
                if name not in self.volumes:
                    await self.create_volume(name)
        self.running.update(services)

    async def compose_down(self) -> None:
        self.calls.append(("compose_down",))
        self.running.clear()

    async def compose_stop(self, services: Sequence[str]) -> None:
        self.calls.append(("compose_stop", tuple(services)))
        self.running.difference_update(services)

    async def compose_status(self) -> bool:
        return bool(self.running)

    async def compose_ps(self, compose_file: Path | None = None) -> str:
        return f"NAME STATUS\n{compose_file.parent.name if compose_file else 'app'}-web Up"

    def destructive_calls(self) -> List[tuple]:
        kinds = {"compose_down", "compose_stop", "remove_volume", "create_volume", "extract_volume"}
        return [c for c in self.calls if c[0] in kinds]


# ============================================================================
# Fake database client
# ============================================================================


class FakeDatabase(DatabaseClient):
    """
    MySQL stand-in; state lives in <database volume>/mysql.json.

    Tables are stored as {table: row_count}.
    """

    def __init__(self, runtime: FakeRuntime):
        self.runtime = runtime
        self.dump_overrides: Dict[str, bytes] = {}
        self.failing_compression: set = set()

    def _spec(self, container: str) -> DatabaseSpec:
        service = self.runtime.service_of(container)
        for spec in self.runtime.profile.databases:
            if spec.service == service:
                return spec
        raise AssertionError(f"no database behind {container}")

    def _path(self, container: str) -> Path:
        spec = self._spec(container)
        return self.runtime.volume_path(self.runtime.volume_name(spec.volume)) / DATA_FILE

    def load(self, container: str) -> dict:
        path = self._path(container)
        if path.is_file():
            return json.loads(path.read_text())
        root_password = self.runtime.container_envs.get(
            self.runtime.service_of(container), {}
        ).get("MYSQL_ROOT_PASSWORD", "")
        return {"users": {"root": root_password}, "databases": {}, "settings": {}}

    def save(self, container: str, state: dict) -> None:
        # Random padding keeps the volume archive above the minimum size
        state["padding"] = secrets.token_hex(2048)
        self._path(container).write_text(json.dumps(state))

    def seed(self, container: str, users: Dict[str, str], databases: Dict[str, Dict[str, int]]) -> None:
        state = self.load(container)
        state["users"].update(users)
        state["databases"].update(databases)
        self.save(container, state)

    def _authenticated(self, container: str, user: str, password: str | None) -> bool:
        users = self.load(container)["users"]
        return user in users and users[user] == (password or "")

    # DatabaseClient

    async def ping(self, container: str) -> bool:
        return self.runtime.service_of(container) not in self.runtime.not_ready

    async def probe(self, container: str, user: str, password: str) -> bool:
        return self._authenticated(container, user, password)

    async def dump(self, container, spec, password, dest, *, timeout, compress_level=None):
        if spec.logical_name in self.dump_overrides:
            dest.write_bytes(self.dump_overrides[spec.logical_name])
            return _result()
        if compress_level is not None and spec.logical_name in self.failing_compression:
            return _result(2, stderr="compression pipeline broke")

        state = self.load(container)
        if spec.is_all_databases:
            payload = {"databases": state["databases"], "users": state["users"]}
        else:
            payload = {"databases": {spec.database: state["databases"].get(spec.database, {})}}
        payload["settings"] = state["settings"]
        payload["comment"] = secrets.token_hex(2048)
        data = json.dumps(payload).encode()
        if compress_level is not None:
            data = zstd.ZstdCompressor(level=compress_level).compress(data)
        dest.write_bytes(data)
        return _result()

    async def import_dump(self, container, user, password, database, source, *, timeout):
        if not self._authenticated(container, user, password):
            return _result(1, stderr="Access denied")
        raw = source.read_bytes()
        if source.suffix == ".zst":
            raw = zstd.ZstdDecompressor().decompress(raw)
        payload = json.loads(raw)

        state = self.load(container)
        if database is None:
            state["databases"].update(payload["databases"])
            state["users"].update(payload.get("users", {}))
        else:
            state["databases"][database] = next(iter(payload["databases"].values()))
        state["settings"].update(payload.get("settings", {}))
        self.save(container, state)
        return _result()

    async def ensure_user(self, container, user, password, database, root_passwords=()):
        if self._authenticated(container, user, password):
            return "existing"
        state = self.load(container)
        if state["users"].get("root") == "":
            method = "root_without_password"
        elif state["users"].get("root") in root_passwords:
            method = "root_with_password"
        else:
            raise DatabaseError(f"Cannot create database user {user}: no root access available")
        state["users"][user] = password
        self.save(container, state)
        return method

    async def recreate_database(self, container, user, password, database):
        state = self.load(container)
        state["databases"][database] = {}
        self.save(container, state)

    async def count_tables(self, container, user, password, database):
        return len(self.load(container)["databases"].get(database, {}))

    async def count_databases(self, container, user, password):
        return len(self.load(container)["databases"])

    async def update_setting(self, container, user, password, database, name, value):
        state = self.load(container)
        state["settings"][name] = value
        self.save(container, state)

    async def read_setting(self, container, user, password, database, name):
        return self.load(container)["settings"].get(name, "")


# ============================================================================
# Fake repository
# ============================================================================


class FakeRepository(Repository):
    """
    Snapshots are directory copies under root/<id>, stored by absolute
    source path like restic does. Shared between hosts in migration tests.
    """

    def __init__(self, root: Path, clock: Callable[[], datetime] | None = None):
        self.root = root
        self.locator = str(root)
        self.initialized = False
        self.snapshots: List[SnapshotInfo] = []
        self._tick = datetime(2026, 1, 1, 2, 0, tzinfo=timezone.utc)
        self.clock = clock or self._next_time
        self.hostname = "host-a"
        self.forget_error: Exception | None = None
        self.backup_error: BaseException | None = None

    def _next_time(self) -> datetime:
        self._tick += timedelta(minutes=1)
        return self._tick

    async def is_available(self) -> bool:
        return True

    async def init(self) -> bool:
        if self.initialized:
            return False
        self.root.mkdir(parents=True, exist_ok=True)
        self.initialized = True
        return True

    async def check_connectivity(self) -> int:
        if not self.initialized:
            raise RepositoryError("repository does not exist")
        return len(self.snapshots)

    async def backup(self, paths, tags) -> BackupSummary:
        if self.backup_error is not None:
            raise self.backup_error
        snapshot_id = secrets.token_hex(32)
        store = self.root / snapshot_id
        for path in paths:
            shutil.copytree(path, store / str(path).lstrip("/"), symlinks=True)
        self.snapshots.append(
            SnapshotInfo(
                id=snapshot_id,
                short_id=snapshot_id[:8],
                time=self.clock(),
                tags=tuple(tags),
                paths=tuple(str(p) for p in paths),
                hostname=self.hostname,
            )
        )
        return BackupSummary(snapshot_id=snapshot_id[:8])

    async def list_snapshots(self, tag: str | None = None) -> List[SnapshotInfo]:
        matching = [s for s in self.snapshots if tag is None or tag in s.tags]
        return sorted(matching, key=lambda s: s.time, reverse=True)

    def _find(self, snapshot_id: str) -> SnapshotInfo:
        for snap in self.snapshots:
            if snapshot_id in (snap.id, snap.short_id):
                return snap
        raise RepositoryError(f"no snapshot {snapshot_id}")

    async def restore(self, snapshot_id: str, target: Path) -> None:
        snap = self._find(snapshot_id)
        shutil.copytree(self.root / snap.id, target, symlinks=True, dirs_exist_ok=True)

    async def forget(self, tag: str, keep_daily: int) -> None:
        if self.forget_error is not None:
            raise self.forget_error
        kept_days: List = []
        keep = set()
        for snap in await self.list_snapshots(tag):
            day = snap.time.date()
            if day in kept_days:
                continue
            if len(kept_days) < keep_daily:
                kept_days.append(day)
                keep.add(snap.id)
        for snap in [s for s in self.snapshots if tag in s.tags and s.id not in keep]:
            await self.delete_snapshot(snap.id)

    async def delete_snapshot(self, snapshot_id: str) -> None:
        snap = self._find(snapshot_id)
        self.snapshots.remove(snap)
        shutil.rmtree(self.root / snap.id, ignore_errors=True)


# ============================================================================
# Layouts and configuration
# ============================================================================


COMPOSE_TEXT = "services:\n  api:\n    image: panelalpha/api\n"

CONTROL_PANEL_ENV = {
    "API_MYSQL_PASSWORD": "api-secret-1",
    "APP_URL": "https://panel.example.com",
}

ENGINE_ENV = {
    "CORE_MYSQL_PASSWORD": "core-secret-1",
    "USERS_MYSQL_ROOT_PASSWORD": "users-root-1",
}


def write_env(path: Path, values: Dict[str, str]) -> None:
    path.write_text("".join(f"{k}={v}\n" for k, v in values.items()))


def make_control_panel(base_dir: Path, env: Dict[str, str] | None = CONTROL_PANEL_ENV) -> Path:
    root = base_dir / "app"
    root.mkdir(parents=True, exist_ok=True)
    (root / "docker-compose.yml").write_text(COMPOSE_TEXT)
    if env is not None:
        write_env(root / ".env", env)
    return root


def make_engine(base_dir: Path, name: str = "engine") -> Path:
    root = base_dir / name
    root.mkdir(parents=True, exist_ok=True)
    (root / "docker-compose.yml").write_text(COMPOSE_TEXT)
    write_env(root / ".env-core", ENGINE_ENV)
    return root


def make_config(host_dir: Path, hostname: str = "host-a", **overrides) -> PasnapConfig:
    """Configuration with every location inside host_dir and no pauses."""
    params = dict(
        repository=str(host_dir.parent / "repo"),
        password="correct horse battery",
        hostname=hostname,
        log_file=host_dir / "pasnap.log",
        temp_dir=host_dir / "tmp",
        restore_temp_dir=host_dir / "restore-tmp",
        cache_dir=host_dir / "cache",
        config_file=host_dir / "pasnap" / ".env-backup",
        base_dir=host_dir / "opt",
        tls_dir=host_dir / "letsencrypt",
        home_dir=host_dir / "home",
        min_free_mb=0,
        db_ready_attempts=3,
        db_ready_interval=0,
        stop_grace_seconds=0,
        settle_seconds=0,
        init_backoff_seconds=0,
        timeouts=Timeouts(tree_copy=60),
    )
    params.update(overrides)
    return PasnapConfig(**params)


class Host:
    """One simulated server: layout, config, fakes and run context."""

    def __init__(self, host_dir: Path, repository: FakeRepository, hostname: str, engine: bool = False):
        self.dir = host_dir
        base_dir = host_dir / "opt"
        if engine:
            make_engine(base_dir)
        else:
            make_control_panel(base_dir)
        self.config = make_config(host_dir, hostname)
        self.config.config_file.parent.mkdir(parents=True, exist_ok=True)
        self.config.config_file.write_text('RESTIC_REPOSITORY="/srv/repo"\n')
        self.profile = detect(base_dir)
        services = self.profile.database_services + (("core", "worker") if engine else ("api", "redis"))
        self.runtime = FakeRuntime(host_dir, self.profile, services)
        self.database = FakeDatabase(self.runtime)
        self.repository = repository
        self.ctx = RunContext(
            config=self.config,
            profile=self.profile,
            runtime=self.runtime,
            repository=repository,
            database=self.database,
            journal=Journal(host_dir / "journal.db"),
        )

    def staging_dirs(self) -> List[Path]:
        tmp = self.config.temp_dir
        return list(tmp.glob("pasnap-snapshot-*")) if tmp.exists() else []


def populate_control_panel(host: Host) -> None:
    """Running Control Panel with one seeded database and two data volumes."""
    for volume in ("api-storage", "redis-data"):
        path = host.runtime.add_volume(volume)
        (path / "blob.bin").write_bytes(os.urandom(4096))
    (host.runtime.volumes[host.runtime.volume_name("api-storage")] / "uploads").mkdir()
    (host.runtime.volumes[host.runtime.volume_name("api-storage")] / "uploads" / "logo.png").write_bytes(
        os.urandom(2048)
    )
    host.runtime.running.update(host.runtime.services)
    for spec in host.profile.databases:
        host.runtime.add_volume(spec.volume)
    host.database.seed(
        "database-api-1",
        users={"panelalpha": CONTROL_PANEL_ENV["API_MYSQL_PASSWORD"]},
        databases={"panelalpha": {"users": 3, "orders": 12, "system_settings": 2}},
    )
    host.config.tls_dir.mkdir(parents=True, exist_ok=True)
    (host.config.tls_dir / "live").mkdir(exist_ok=True)
    (host.config.tls_dir / "live" / "cert.pem").write_text("-----BEGIN CERTIFICATE-----\n")


def populate_engine(host: Host) -> None:
    """Running Engine with core and users databases plus tenant and home data."""
    for volume in ("core-storage",):
        path = host.runtime.add_volume(volume)
        (path / "blob.bin").write_bytes(os.urandom(4096))
    host.runtime.running.update(host.runtime.services)
    for spec in host.profile.databases:
        host.runtime.add_volume(spec.volume)
    host.runtime.container_envs["database-users"] = {
        "MYSQL_ROOT_PASSWORD": ENGINE_ENV["USERS_MYSQL_ROOT_PASSWORD"]
    }
    host.database.seed(
        "database-core-1",
        users={"core": ENGINE_ENV["CORE_MYSQL_PASSWORD"]},
        databases={"core": {"instances": 4, "plans": 2}},
    )
    host.database.seed(
        "database-users-1",
        users={"root": ENGINE_ENV["USERS_MYSQL_ROOT_PASSWORD"]},
        databases={"wp_alice": {"wp_posts": 10}, "wp_bob": {"wp_posts": 7}},
    )
    tenant = host.profile.tenant_dir / "alice"
    tenant.mkdir(parents=True)
    (tenant / "docker-compose.yml").write_text(COMPOSE_TEXT)
    (host.config.home_dir / "alice" / "public_html").mkdir(parents=True)
    (host.config.home_dir / "alice" / "public_html" / "index.php").write_text("<?php echo 'hi';")


def tree_contents(root: Path) -> Dict[str, bytes]:
    """Relative path -> bytes for every regular file below root."""
    return {
        str(p.relative_to(root)): p.read_bytes()
        for p in sorted(root.rglob("*"))
        if p.is_file() and p.name != DATA_FILE
    }
