# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Restic repository adapter.

Repository locator, passphrase and object-storage keys are handed to
restic through its environment (RESTIC_REPOSITORY, RESTIC_PASSWORD,
AWS_*), so they never appear in a process listing.

Only init and the connectivity check are retried. backup and restore
are data-bearing; their failures propagate on the first attempt.
"""

import asyncio
import json
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Sequence

import structlog

from pasnap.adapters.protocols import BackupSummary, Repository, SnapshotInfo
from pasnap.config import PasnapConfig, mask_locator
from pasnap.errors import explain_repository_unreachable, explain_snapshot_not_found
from pasnap.exceptions import CommandError, RepositoryError
from pasnap.runner import CommandResult, run_command

logger = structlog.get_logger()

# restic backup: snapshot written but some source files were unreadable
EXIT_INCOMPLETE_SNAPSHOT = 3

ALREADY_INITIALIZED_MARKERS = ("already initialized", "already exists", "config file already")


def _parse_time(value: str) -> datetime:
    # restic prints nanosecond precision; fromisoformat accepts at most micro
    if "." in value:
        head, _, tail = value.partition(".")
        digits = ""
        rest = ""
        for i, ch in enumerate(tail):
            if not ch.isdigit():
                rest = tail[i:]
                break
            digits += ch
        value = f"{head}.{digits[:6]}{rest}"
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return datetime.fromisoformat(value)


def parse_snapshots(payload: str) -> List[SnapshotInfo]:
    """Parse `restic snapshots --json` output, newest first."""
    if not payload.strip():
        return []
    try:
        records = json.loads(payload)
    except json.JSONDecodeError as e:
        raise RepositoryError(f"Unreadable snapshot listing: {e}") from e

    snapshots = []
    for record in records or []:
        summary = record.get("summary") or {}
        snapshots.append(
            SnapshotInfo(
                id=record.get("id", ""),
                short_id=record.get("short_id") or record.get("id", "")[:8],
                time=_parse_time(record["time"]),
                tags=tuple(record.get("tags") or ()),
                paths=tuple(record.get("paths") or ()),
                hostname=record.get("hostname", ""),
                size=summary.get("total_bytes_processed"),
            )
        )
    snapshots.sort(key=lambda s: s.time, reverse=True)
    return snapshots


def parse_backup_output(stdout: str) -> BackupSummary:
    """Pull the snapshot id out of `restic backup --json` message lines."""
    summary = BackupSummary(snapshot_id=None)
    for line in stdout.splitlines():
        line = line.strip()
        if not line.startswith("{"):
            continue
        try:
            message = json.loads(line)
        except json.JSONDecodeError:
            continue
        kind = message.get("message_type")
        if kind == "summary":
            summary.snapshot_id = message.get("snapshot_id") or summary.snapshot_id
            summary.bytes_processed = message.get("total_bytes_processed", 0)
        elif kind == "error":
            error = message.get("error") or {}
            summary.warnings.append(
                f"{message.get('item', '?')}: {error.get('message', error)}"
            )
    return summary


class ResticRepository(Repository):
    """Repository backed by the restic command-line tool."""

    def __init__(self, config: PasnapConfig, command: Sequence[str] = ("restic",)):
        self.config = config
        self.locator = config.repository
        self.command = tuple(command)

    def _env(self) -> Dict[str, str]:
        env = {
            "RESTIC_REPOSITORY": self.config.repository,
            "RESTIC_PASSWORD": self.config.password,
            "RESTIC_CACHE_DIR": str(self.config.cache_dir),
        }
        if self.config.aws_access_key_id:
            env["AWS_ACCESS_KEY_ID"] = self.config.aws_access_key_id
        if self.config.aws_secret_access_key:
            env["AWS_SECRET_ACCESS_KEY"] = self.config.aws_secret_access_key
        return env

    async def _run(self, *args: str, timeout: float | None = None) -> CommandResult:
        try:
            self.config.cache_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.warning("restic_cache_dir_unavailable", path=str(self.config.cache_dir), error=str(e))
        return await run_command(
            [*self.command, *args],
            timeout=timeout or self.config.timeouts.repository,
            env=self._env(),
        )

    def _fail(self, action: str, result: CommandResult, **details) -> RepositoryError:
        return RepositoryError(
            f"restic {action} failed (exit {result.returncode})",
            details={
                "repository": mask_locator(self.locator),
                "stderr": result.stderr.strip()[-2000:],
                **details,
            },
        )

    async def is_available(self) -> bool:
        return await restic_available(self.command)

    async def _exists(self) -> bool:
        result = await self._run("cat", "config")
        return result.ok

    async def init(self) -> bool:
        """
        Idempotent repository creation with bounded retries.

        "Already initialized" counts as success. Connectivity errors are
        retried init_attempts times with a fixed backoff.
        """
        attempts = self.config.init_attempts
        for attempt in range(1, attempts + 1):
            result = await self._run("init")
            if result.ok:
                logger.info("repository_initialized", repository=mask_locator(self.locator))
                return True
            stderr = result.stderr.lower()
            if any(marker in stderr for marker in ALREADY_INITIALIZED_MARKERS) or await self._exists():
                logger.debug("repository_exists", repository=mask_locator(self.locator))
                return False

            if attempt < attempts:
                logger.warning(
                    "repository_init_retry",
                    attempt=attempt,
                    max_attempts=attempts,
                    stderr=result.stderr.strip()[-500:],
                )
                await asyncio.sleep(self.config.init_backoff_seconds)

        error = self._fail("init", result, attempts=attempts)
        error.hint = explain_repository_unreachable(mask_locator(self.locator))
        raise error

    async def check_connectivity(self) -> int:
        """Open the repository, retrying transient failures. Returns snapshot count."""
        attempts = self.config.init_attempts
        for attempt in range(1, attempts + 1):
            result = await self._run("snapshots", "--json")
            if result.ok:
                return len(parse_snapshots(result.stdout))
            if attempt < attempts:
                logger.warning("repository_check_retry", attempt=attempt, max_attempts=attempts)
                await asyncio.sleep(self.config.init_backoff_seconds)

        error = self._fail("snapshots", result)
        error.hint = explain_repository_unreachable(mask_locator(self.locator))
        raise error

    async def backup(self, paths: Sequence[Path], tags: Sequence[str]) -> BackupSummary:
        args = ["backup", "--json"]
        for tag in tags:
            args += ["--tag", tag]
        args += [str(p) for p in paths]

        result = await self._run(*args, timeout=self.config.timeouts.transfer)
        if result.returncode not in (0, EXIT_INCOMPLETE_SNAPSHOT):
            raise self._fail("backup", result)

        summary = parse_backup_output(result.stdout)
        if result.returncode == EXIT_INCOMPLETE_SNAPSHOT:
            summary.warnings.append("some source files could not be read")
        return summary

    async def list_snapshots(self, tag: str | None = None) -> List[SnapshotInfo]:
        args = ["snapshots", "--json"]
        if tag:
            args += ["--tag", tag]
        result = await self._run(*args)
        if not result.ok:
            raise self._fail("snapshots", result, tag=tag)
        return parse_snapshots(result.stdout)

    async def restore(self, snapshot_id: str, target: Path) -> None:
        target.mkdir(parents=True, exist_ok=True)
        result = await self._run(
            "restore", snapshot_id, "--target", str(target),
            timeout=self.config.timeouts.transfer,
        )
        if not result.ok:
            raise self._fail("restore", result, snapshot_id=snapshot_id)

    async def forget(self, tag: str, keep_daily: int) -> None:
        # Staging paths differ per run, so grouping by path would keep everything
        result = await self._run(
            "forget", "--tag", tag, "--group-by", "", "--keep-daily", str(keep_daily), "--prune",
        )
        if not result.ok:
            raise self._fail("forget", result, tag=tag)

    async def delete_snapshot(self, snapshot_id: str) -> None:
        if not await self.snapshot_exists(snapshot_id):
            raise RepositoryError(
                f"Snapshot {snapshot_id} does not exist",
                hint=explain_snapshot_not_found(snapshot_id),
            )
        result = await self._run("forget", snapshot_id, "--prune")
        if not result.ok:
            raise self._fail("forget", result, snapshot_id=snapshot_id)


async def restic_available(command: Sequence[str] = ("restic",)) -> bool:
    try:
        result = await run_command([*command, "version"], timeout=30)
    except CommandError:
        return False
    return result.ok
