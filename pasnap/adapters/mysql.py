# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
MySQL/MariaDB client adapter.

All statements run through the client binaries inside the database
container. Passwords go in MYSQL_PWD and SQL text goes on stdin, so
neither shows up in an argument list.
"""

from pathlib import Path
from typing import List, Sequence

import structlog

from pasnap.adapters.protocols import ContainerRuntime, DatabaseClient
from pasnap.config import PasnapConfig
from pasnap.detect import DatabaseSpec
from pasnap.exceptions import CommandTimeout, DatabaseError
from pasnap.runner import CommandResult

logger = structlog.get_logger()

DUMP_OPTIONS = (
    "--single-transaction",
    "--routines",
    "--triggers",
    "--lock-tables=false",
    "--add-drop-database",
    "--create-options",
    "--disable-keys",
    "--extended-insert",
    "--quick",
    "--set-charset",
)

BULK_DUMP_OPTIONS = ("--tz-utc", "--hex-blob", "--max-allowed-packet=512M")

SYSTEM_SCHEMAS = frozenset({"information_schema", "performance_schema", "mysql", "sys"})


def quote_literal(value: str) -> str:
    """Quote a value as a MySQL string literal."""
    return "'" + value.replace("\\", "\\\\").replace("'", "\\'") + "'"


def quote_identifier(name: str) -> str:
    return "`" + name.replace("`", "``") + "`"


def dump_argv(spec: DatabaseSpec) -> List[str]:
    argv = ["mysqldump", "-u", spec.user]
    if spec.is_all_databases:
        argv.append("--all-databases")
    else:
        argv.append(spec.database)
    argv += DUMP_OPTIONS
    if spec.bulk:
        argv += BULK_DUMP_OPTIONS
    return argv


def create_user_sql(user: str, password: str, database: str) -> str:
    pw = quote_literal(password)
    db = quote_identifier(database)
    return (
        f"CREATE USER IF NOT EXISTS {quote_literal(user)}@'%' IDENTIFIED BY {pw};\n"
        f"CREATE USER IF NOT EXISTS {quote_literal(user)}@'localhost' IDENTIFIED BY {pw};\n"
        f"GRANT ALL PRIVILEGES ON {db}.* TO {quote_literal(user)}@'%';\n"
        f"GRANT ALL PRIVILEGES ON {db}.* TO {quote_literal(user)}@'localhost';\n"
        "FLUSH PRIVILEGES;\n"
    )


class MySQLClient(DatabaseClient):
    """DatabaseClient that drives mysql/mysqldump/mysqladmin via the runtime."""

    def __init__(self, runtime: ContainerRuntime, config: PasnapConfig):
        self.runtime = runtime
        self.config = config

    async def _sql(
        self,
        container: str,
        user: str,
        password: str | None,
        sql: str,
        database: str | None = None,
        batch: bool = False,
    ) -> CommandResult:
        argv = ["mysql", "-u", user]
        if batch:
            argv += ["-s", "-N"]
        if database:
            argv.append(database)
        secrets = {"MYSQL_PWD": password} if password else None
        return await self.runtime.exec_in(
            container,
            argv,
            timeout=self.config.timeouts.probe,
            secrets=secrets,
            input=sql.encode(),
        )

    async def ping(self, container: str) -> bool:
        try:
            result = await self.runtime.exec_in(
                container,
                ["mysqladmin", "ping", "--silent"],
                timeout=self.config.timeouts.probe,
            )
        except CommandTimeout:
            return False
        return result.ok

    async def probe(self, container: str, user: str, password: str) -> bool:
        try:
            result = await self._sql(container, user, password, "SELECT 1;")
        except CommandTimeout:
            logger.warning("database_probe_timeout", container=container, user=user)
            return False
        return result.ok

    async def dump(
        self,
        container: str,
        spec: DatabaseSpec,
        password: str,
        dest: Path,
        *,
        timeout: float,
        compress_level: int | None = None,
    ) -> CommandResult:
        return await self.runtime.exec_to_file(
            container,
            dump_argv(spec),
            dest,
            timeout=timeout,
            secrets={"MYSQL_PWD": password},
            compress_level=compress_level,
        )

    async def import_dump(
        self,
        container: str,
        user: str,
        password: str,
        database: str | None,
        source: Path,
        *,
        timeout: float,
    ) -> CommandResult:
        argv = ["mysql", "-u", user]
        if database:
            argv.append(database)
        return await self.runtime.exec_from_file(
            container,
            argv,
            source,
            timeout=timeout,
            secrets={"MYSQL_PWD": password},
        )

    async def ensure_user(
        self,
        container: str,
        user: str,
        password: str,
        database: str,
        root_passwords: Sequence[str] = (),
    ) -> str:
        """
        Make sure user exists and can log in with password.

        Order: existing login, passwordless root (fresh container), then
        root with each candidate password. The passwordless path is the
        bootstrap of an uninitialized container and is logged as a warning
        because it means root has no password.

        Returns:
            "existing", "root_without_password" or "root_with_password"
        """
        if await self.probe(container, user, password):
            logger.info("database_user_exists", user=user)
            return "existing"

        sql = create_user_sql(user, password, database)
        method = None

        result = await self._sql(container, "root", None, sql)
        if result.ok:
            method = "root_without_password"
            logger.warning("database_user_created_passwordless_root", user=user)
        else:
            for root_password in root_passwords:
                result = await self._sql(container, "root", root_password, sql)
                if result.ok:
                    method = "root_with_password"
                    logger.info("database_user_created", user=user)
                    break

        if method is None:
            raise DatabaseError(
                f"Cannot create database user {user}: no root access available",
                details={"container": container, "root_candidates": len(root_passwords)},
            )

        if not await self.probe(container, user, password):
            raise DatabaseError(
                f"Database user {user} cannot log in after creation",
                details={"container": container, "method": method},
            )
        return method

    async def recreate_database(
        self, container: str, user: str, password: str, database: str
    ) -> None:
        db = quote_identifier(database)
        charset = "CHARACTER SET utf8mb4 COLLATE utf8mb4_unicode_ci"
        result = await self._sql(
            container, user, password,
            f"DROP DATABASE IF EXISTS {db};\nCREATE DATABASE {db} {charset};\n",
        )
        if result.ok:
            logger.info("database_recreated", database=database)
            return

        logger.warning(
            "database_drop_rejected",
            database=database,
            stderr=result.stderr.strip()[-500:],
        )
        result = await self._sql(
            container, user, password, f"CREATE DATABASE IF NOT EXISTS {db} {charset};\n"
        )
        if not result.ok:
            raise DatabaseError(
                f"Cannot create or access database {database}",
                details={"stderr": result.stderr.strip()[-500:]},
            )

    async def count_tables(self, container: str, user: str, password: str, database: str) -> int:
        result = await self._sql(
            container, user, password, f"SHOW TABLES FROM {quote_identifier(database)};", batch=True
        )
        if not result.ok:
            raise DatabaseError(
                f"Cannot list tables of {database}",
                details={"stderr": result.stderr.strip()[-500:]},
            )
        return len([line for line in result.stdout.splitlines() if line.strip()])

    async def count_databases(self, container: str, user: str, password: str) -> int:
        """Number of non-system databases on the server."""
        result = await self._sql(container, user, password, "SHOW DATABASES;", batch=True)
        if not result.ok:
            raise DatabaseError(
                "Cannot list databases",
                details={"stderr": result.stderr.strip()[-500:]},
            )
        names = [line.strip() for line in result.stdout.splitlines() if line.strip()]
        return len([n for n in names if n not in SYSTEM_SCHEMAS])

    async def update_setting(
        self, container: str, user: str, password: str, database: str, name: str, value: str
    ) -> None:
        result = await self._sql(
            container, user, password,
            f"UPDATE system_settings SET value = {quote_literal(value)} "
            f"WHERE name = {quote_literal(name)};",
            database=database,
        )
        if not result.ok:
            raise DatabaseError(
                f"Cannot update setting {name}",
                details={"stderr": result.stderr.strip()[-500:]},
            )

    async def read_setting(
        self, container: str, user: str, password: str, database: str, name: str
    ) -> str:
        result = await self._sql(
            container, user, password,
            f"SELECT value FROM system_settings WHERE name = {quote_literal(name)};",
            database=database,
            batch=True,
        )
        if not result.ok:
            raise DatabaseError(
                f"Cannot read setting {name}",
                details={"stderr": result.stderr.strip()[-500:]},
            )
        return result.stdout.strip()
