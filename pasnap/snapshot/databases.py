# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Database export step of the snapshot pipeline.

Each database in the profile is dumped independently. A missing
credential, missing container, failed probe or truncated dump is a soft
failure for that database only.
"""

from pathlib import Path
from typing import List, Mapping

import structlog
import zstandard as zstd

from pasnap.compressor import ZSTD_SUFFIX
from pasnap.core import RunContext, StepOutcome
from pasnap.detect import DatabaseSpec
from pasnap.exceptions import CommandError, CommandTimeout
from pasnap.runner import watch_progress
from pasnap.snapshot.bundle import SnapshotBundle

logger = structlog.get_logger()

CATEGORY = "databases"


def check_artifact(path: Path, min_bytes: int) -> str | None:
    """Return a rejection reason if path is missing or too small, else None."""
    if not path.is_file():
        return "output file was not created"
    size = path.stat().st_size
    if size < min_bytes:
        return f"output is only {size} bytes (minimum {min_bytes}), treated as truncated"
    return None


async def _dump_once(
    ctx: RunContext,
    container: str,
    spec: DatabaseSpec,
    password: str,
    dest: Path,
    timeout: float,
    compress_level: int | None,
) -> str | None:
    """Run one dump attempt. Returns a failure reason or None."""
    try:
        async with watch_progress(dest, f"dump {spec.logical_name}"):
            result = await ctx.database.dump(
                container,
                spec,
                password,
                dest,
                timeout=timeout,
                compress_level=compress_level,
            )
    except CommandTimeout:
        return f"dump timed out after {timeout}s"
    except (CommandError, zstd.ZstdError, OSError) as e:
        return f"dump failed: {e}"

    if not result.ok:
        return f"mysqldump exited with code {result.returncode}: {result.stderr.strip()[-300:]}"
    return check_artifact(dest, ctx.config.min_artifact_bytes)


async def export_database(
    ctx: RunContext, bundle: SnapshotBundle, spec: DatabaseSpec, env_values: Mapping[str, str]
) -> StepOutcome:
    """Dump one database into bundle/databases."""
    component = spec.logical_name
    password = env_values.get(spec.credential_env_key)
    if not password:
        return StepOutcome.soft_failure(
            CATEGORY, component,
            f"{spec.credential_env_key} not found in {ctx.profile.env_file}",
        )

    try:
        container = await ctx.runtime.service_container_id(spec.service)
        reachable = bool(container) and await ctx.database.probe(container, spec.user, password)
    except CommandError as e:
        return StepOutcome.soft_failure(CATEGORY, component, f"container lookup failed: {e}")
    if not container:
        return StepOutcome.soft_failure(CATEGORY, component, f"container for {spec.service} not found")

    if not reachable:
        return StepOutcome.soft_failure(
            CATEGORY, component,
            f"cannot connect as {spec.user}; check {spec.credential_env_key} in {ctx.profile.env_file}",
        )

    timeouts = ctx.config.timeouts
    plain = bundle.databases_dir / spec.dump_name

    if spec.bulk:
        compressed = plain.with_name(plain.name + ZSTD_SUFFIX)
        reason = await _dump_once(
            ctx, container, spec, password, compressed, timeouts.users_dump,
            ctx.config.users_dump_compression_level,
        )
        if reason is None:
            return StepOutcome.success(CATEGORY, component, "compressed", compressed.stat().st_size)

        compressed.unlink(missing_ok=True)
        if reason.startswith("dump timed out"):
            return StepOutcome.soft_failure(CATEGORY, component, reason)
        logger.warning("compressed_dump_failed_retrying_plain", database=component, reason=reason)

    timeout = timeouts.users_dump if spec.bulk else timeouts.core_dump
    reason = await _dump_once(ctx, container, spec, password, plain, timeout, None)
    if reason is not None:
        plain.unlink(missing_ok=True)
        return StepOutcome.soft_failure(CATEGORY, component, reason)
    return StepOutcome.success(CATEGORY, component, size=plain.stat().st_size)


async def export_databases(
    ctx: RunContext, bundle: SnapshotBundle, env_values: Mapping[str, str]
) -> List[StepOutcome]:
    outcomes = []
    for spec in ctx.profile.databases:
        logger.info("database_export_started", database=spec.logical_name, service=spec.service)
        outcomes.append(await export_database(ctx, bundle, spec, env_values))
    return outcomes
