# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Scheduled snapshot entry in root's crontab.

The entry is recognised by a trailing marker comment, so other crontab
lines are never touched.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, List

import structlog

from pasnap.exceptions import CommandError
from pasnap.runner import run_command

logger = structlog.get_logger()

CRON_MARKER = "# pasnap-auto-snapshot"
DEFAULT_HOUR = 2
CRONTAB_TIMEOUT = 30


@dataclass
class CronStatus:
    enabled: bool
    entry: str | None = None


def build_cron_line(command: str, hour: int, log_file: Path) -> str:
    if not isinstance(hour, int) or not 0 <= hour <= 23:
        logger.warning("invalid_backup_hour", hour=hour, fallback=DEFAULT_HOUR)
        hour = DEFAULT_HOUR
    return f"0 {hour} * * * {command} snapshot >> {log_file} 2>&1 {CRON_MARKER}"


def is_pasnap_entry(line: str) -> bool:
    return CRON_MARKER in line


async def read_crontab() -> List[str]:
    """Current crontab lines; an absent crontab reads as empty."""
    result = await run_command(["crontab", "-l"], timeout=CRONTAB_TIMEOUT)
    if result.ok:
        return result.stdout.splitlines()
    if "no crontab" in result.stderr.lower():
        return []
    raise CommandError(
        "Cannot read crontab",
        details={"stderr": result.stderr.strip()},
    )


async def write_crontab(lines: List[str]) -> None:
    content = "\n".join(lines) + "\n" if lines else ""
    await run_command(
        ["crontab", "-"], timeout=CRONTAB_TIMEOUT, input=content.encode(), check=True
    )


async def status() -> CronStatus:
    for line in await read_crontab():
        if is_pasnap_entry(line):
            return CronStatus(enabled=True, entry=line)
    return CronStatus(enabled=False)


async def install(
    command: str,
    hour: int,
    log_file: Path,
    confirm_replace: Callable[[str], Awaitable[bool]] | None = None,
) -> bool:
    """
    Add (or replace) the scheduled snapshot entry.

    Args:
        command: Absolute command that runs pasnap
        hour: Hour of day, 0-23
        log_file: File receiving the job's output
        confirm_replace: Asked with the existing entry before replacing it

    Returns:
        False if an existing entry was kept, True otherwise
    """
    lines = await read_crontab()
    existing = [line for line in lines if is_pasnap_entry(line)]
    if existing and confirm_replace is not None and not await confirm_replace(existing[0]):
        logger.info("cron_entry_kept", entry=existing[0])
        return False

    entry = build_cron_line(command, hour, log_file)
    await write_crontab([line for line in lines if not is_pasnap_entry(line)] + [entry])
    logger.info("cron_entry_installed", entry=entry)
    return True


async def remove() -> bool:
    """Delete the entry. Returns False if there was none."""
    lines = await read_crontab()
    kept = [line for line in lines if not is_pasnap_entry(line)]
    if len(kept) == len(lines):
        return False
    await write_crontab(kept)
    logger.info("cron_entry_removed")
    return True
