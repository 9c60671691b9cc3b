# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Bulk directory-tree copies (tenant projects, /home).

rsync is tried first; `cp -a` is the fallback when rsync is missing or
fails outright. rsync exit codes that mean "partial transfer" are
accepted with a warning as long as something was copied.
"""

import shutil
from pathlib import Path

import structlog

from pasnap.exceptions import CommandError, CommandTimeout
from pasnap.host import has_files
from pasnap.runner import run_command

logger = structlog.get_logger()

# 23/24: some files vanished or were unreadable, 12/30: protocol/IO
# timeouts, 124/137: killed by our timeout
RSYNC_PARTIAL_CODES = frozenset({12, 23, 24, 30, 124, 137})
TIMEOUT_CODE = 124


async def _rsync(source: Path, target: Path, timeout: float, numeric_ids: bool) -> int:
    argv = ["rsync", "-a"]
    if numeric_ids:
        argv.append("--numeric-ids")
    argv += [f"{source}/", f"{target}/"]
    try:
        result = await run_command(argv, timeout=timeout)
    except CommandTimeout:
        return TIMEOUT_CODE
    return result.returncode


async def copy_tree(
    source: Path, target: Path, *, timeout: float, numeric_ids: bool = False
) -> str:
    """
    Copy the contents of source into target.

    Returns:
        The method that produced the copy: "rsync", "rsync_partial",
        "cp" or "cp_partial"

    Raises:
        CommandError: if neither method produced a usable copy
    """
    target.mkdir(parents=True, exist_ok=True)

    if shutil.which("rsync"):
        code = await _rsync(source, target, timeout, numeric_ids)
        if code == 0:
            return "rsync"
        if code in RSYNC_PARTIAL_CODES and has_files(target):
            logger.warning(
                "tree_copy_partial",
                source=str(source),
                returncode=code,
                note="copy may be incomplete",
            )
            return "rsync_partial"
        logger.warning("tree_copy_rsync_failed", source=str(source), returncode=code)

    try:
        result = await run_command(["cp", "-a", f"{source}/.", f"{target}/"], timeout=timeout)
    except CommandTimeout as e:
        if has_files(target):
            logger.warning("tree_copy_partial", source=str(source), method="cp", error=str(e))
            return "cp_partial"
        raise

    if result.ok:
        return "cp"
    if has_files(target):
        logger.warning(
            "tree_copy_partial",
            source=str(source),
            method="cp",
            stderr=result.stderr.strip()[-300:],
        )
        return "cp_partial"
    raise CommandError(
        f"Cannot copy {source} to {target}",
        details={"stderr": result.stderr.strip()[-500:]},
    )
