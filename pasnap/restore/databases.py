# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Database steps of the restore pipeline.

Database volumes are always destroyed before import: a logical dump
loaded on top of stale engine files leaves the server in a state that
crash recovery cannot reconcile.
"""

import asyncio
from pathlib import Path
from typing import List, Mapping

import structlog

from pasnap.compressor import find_dump
from pasnap.core import RunContext, StepOutcome
from pasnap.detect import DatabaseSpec
from pasnap.errors import explain_database_not_ready
from pasnap.exceptions import CommandError, PasnapError, RestoreError
from pasnap.host import primary_ip

logger = structlog.get_logger()

CATEGORY = "databases"
ROOT_PASSWORD_CONTAINER_KEYS = ("MYSQL_ROOT_PASSWORD", "MARIADB_ROOT_PASSWORD")
ROOT_PASSWORD_ENV_KEY = "DATABASE_ROOT_PASSWORD"

# Rows rewritten so the restored panel answers on the new host
HOST_IP_SETTING = "host_ip_address"
TRUSTED_HOSTS_SETTING = "trusted_hosts"


async def clean_database_volumes(ctx: RunContext) -> List[str]:
    """Remove every existing database volume. Returns the names removed."""
    removed = []
    for volume in ctx.profile.database_volumes:
        name = ctx.runtime.volume_name(volume)
        if await ctx.runtime.volume_exists(name):
            await ctx.runtime.remove_volume(name)
            removed.append(name)
            logger.info("database_volume_removed", volume=name)
    return removed


async def wait_for_databases(ctx: RunContext) -> bool:
    """Poll every database service with an unauthenticated ping until all answer."""
    config = ctx.config
    pending = list(ctx.profile.database_services)

    for attempt in range(1, config.db_ready_attempts + 1):
        still_pending = []
        for service in pending:
            container = await ctx.runtime.service_container_id(service)
            if not container or not await ctx.database.ping(container):
                still_pending.append(service)
        pending = still_pending
        if not pending:
            logger.info("databases_ready", attempts=attempt)
            return True
        if attempt % 15 == 0:
            logger.info("waiting_for_databases", services=pending, attempt=attempt)
        await asyncio.sleep(config.db_ready_interval)

    for service in pending:
        container = await ctx.runtime.service_container_id(service)
        if container:
            logger.warning(
                "database_not_ready",
                service=service,
                logs=await ctx.runtime.container_logs(container, tail=10),
            )
        else:
            logger.warning("database_not_ready", service=service, logs="container not running")
    return False


async def start_databases(ctx: RunContext) -> None:
    """
    Start only the database services and wait for them.

    One clean-and-restart cycle is attempted before giving up.

    Raises:
        RestoreError: databases did not come up after the retry
    """
    services = ctx.profile.database_services
    await ctx.runtime.compose_up(services)
    if await wait_for_databases(ctx):
        return

    logger.warning("database_start_retry", services=list(services))
    await ctx.runtime.compose_down()
    await clean_database_volumes(ctx)
    await ctx.runtime.compose_up(services)
    if await wait_for_databases(ctx):
        return

    raise RestoreError(
        "Database containers did not become ready",
        details={"services": list(services)},
        hint=explain_database_not_ready(list(services)),
    )


async def _root_passwords(
    ctx: RunContext, container: str, env_values: Mapping[str, str]
) -> List[str]:
    candidates = []
    for key in ROOT_PASSWORD_CONTAINER_KEYS:
        value = await ctx.runtime.container_env(container, key)
        if value:
            candidates.append(value)
    if env_values.get(ROOT_PASSWORD_ENV_KEY):
        candidates.append(env_values[ROOT_PASSWORD_ENV_KEY])
    # Preserve order, drop duplicates
    return list(dict.fromkeys(candidates))


async def restore_database(
    ctx: RunContext, data_root: Path, spec: DatabaseSpec, env_values: Mapping[str, str]
) -> StepOutcome:
    """
    Import one dump and verify it.

    Raises:
        RestoreError: any failure; a half-imported database is unusable
    """
    dump = find_dump(data_root / "databases", spec.dump_name)
    if dump is None:
        logger.warning("database_dump_missing", database=spec.logical_name)
        return StepOutcome.skipped(CATEGORY, spec.logical_name, f"{spec.dump_name} not in snapshot")

    password = env_values.get(spec.credential_env_key)
    if not password:
        raise RestoreError(
            f"{spec.credential_env_key} missing from restored env file",
            details={"database": spec.logical_name},
        )

    container = await ctx.runtime.service_container_id(spec.service)
    if not container:
        raise RestoreError(f"Container for {spec.service} is not running")

    timeout = ctx.config.timeouts.db_import
    logger.info("database_import_started", database=spec.logical_name, dump=dump.name)

    try:
        if spec.is_all_databases:
            result = await ctx.database.import_dump(
                container, spec.user, password, None, dump, timeout=timeout
            )
        else:
            method = await ctx.database.ensure_user(
                container,
                spec.user,
                password,
                spec.database,
                await _root_passwords(ctx, container, env_values),
            )
            logger.debug("database_user_ready", user=spec.user, method=method)
            await ctx.database.recreate_database(container, spec.user, password, spec.database)
            result = await ctx.database.import_dump(
                container, spec.user, password, spec.database, dump, timeout=timeout
            )
    except CommandError as e:
        raise RestoreError(f"Import of {spec.logical_name} failed: {e.message}", details=e.details)

    if not result.ok:
        raise RestoreError(
            f"Import of {spec.logical_name} failed (exit {result.returncode})",
            details={"stderr": result.stderr.strip()[-1000:]},
        )

    if spec.is_all_databases:
        count = await ctx.database.count_databases(container, spec.user, password)
        if count == 0:
            logger.warning("no_databases_after_import", database=spec.logical_name)
        return StepOutcome.success(CATEGORY, spec.logical_name, f"{count} databases")

    tables = await ctx.database.count_tables(container, spec.user, password, spec.database)
    if tables == 0:
        raise RestoreError(
            f"Database {spec.database} has no tables after import",
            details={"dump": dump.name},
        )
    return StepOutcome.success(CATEGORY, spec.logical_name, f"{tables} tables")


async def restore_databases(
    ctx: RunContext, data_root: Path, env_values: Mapping[str, str]
) -> List[StepOutcome]:
    outcomes = []
    for spec in ctx.profile.databases:
        outcomes.append(await restore_database(ctx, data_root, spec, env_values))
    return outcomes


async def update_host_settings(ctx: RunContext, env_values: Mapping[str, str]) -> StepOutcome:
    """
    Point the restored panel at this host's IP and hostname.

    Failure is a soft failure: the panel can be reconfigured by hand.
    """
    spec = ctx.profile.databases[0]
    password = env_values.get(spec.credential_env_key, "")
    expected = {HOST_IP_SETTING: primary_ip(), TRUSTED_HOSTS_SETTING: ctx.config.hostname}

    try:
        container = await ctx.runtime.service_container_id(spec.service)
        if not container:
            return StepOutcome.soft_failure("settings", "host", f"{spec.service} not running")
        for name, value in expected.items():
            await ctx.database.update_setting(container, spec.user, password, spec.database, name, value)
        for name, value in expected.items():
            stored = await ctx.database.read_setting(container, spec.user, password, spec.database, name)
            if stored != value:
                return StepOutcome.soft_failure(
                    "settings", "host", f"{name} reads back {stored!r}, expected {value!r}"
                )
    except PasnapError as e:
        return StepOutcome.soft_failure("settings", "host", str(e))

    logger.info("host_settings_updated", **expected)
    return StepOutcome.success("settings", "host")
