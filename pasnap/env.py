# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
File- and environment-based configuration loading.

The persistent settings live in a KEY=VALUE file (owner-only, mode 600)
parsed with python-dotenv. Timeout budgets and other tuning knobs come
from the process environment so a single run can be adjusted without
editing the file:

    PASNAP_CORE_DUMP_TIMEOUT             (default 600)
    PASNAP_USERS_DUMP_TIMEOUT            (default 1800)
    PASNAP_USERS_DUMP_COMPRESSION_LEVEL  (default 1)
    PASNAP_VOLUME_SNAPSHOT_TIMEOUT       (default 7200)
    PASNAP_USERS_HOME_SNAPSHOT_TIMEOUT   (default 14400)
    PASNAP_IMPORT_TIMEOUT                (default 3600)
    PASNAP_HELPER_IMAGE                  (default ubuntu:20.04)
"""

from __future__ import annotations

import os
import shutil
from pathlib import Path
from typing import Dict, Mapping

import structlog
from dotenv import dotenv_values

from pasnap.config import DEFAULT_CONFIG_FILE, LEGACY_CONFIG_FILE, PasnapConfig, Timeouts
from pasnap.errors import (
    explain_invalid_backup_hour,
    explain_invalid_number_env,
    explain_invalid_retention_days,
)
from pasnap.exceptions import ConfigurationError

logger = structlog.get_logger()

# Keys written by older releases that must not survive a load
STALE_KEYS = ("PANELALPHA_DIR",)
STALE_COMMENTS = ("# PanelAlpha application settings",)

CONFIG_KEYS = (
    "RESTIC_REPOSITORY",
    "RESTIC_PASSWORD",
    "AWS_ACCESS_KEY_ID",
    "AWS_SECRET_ACCESS_KEY",
    "BACKUP_RETENTION_DAYS",
    "BACKUP_HOUR",
    "BACKUP_TAG_PREFIX",
    "LOG_FILE",
    "BACKUP_TEMP_DIR",
    "RESTORE_TEMP_DIR",
    "RESTIC_CACHE_DIR",
)


def _parse_retention_days(value: str | None) -> int:
    if not value:
        return 30
    try:
        days = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(explain_invalid_retention_days(value)) from exc
    if not 1 <= days <= 365:
        raise ConfigurationError(explain_invalid_retention_days(value))
    return days


def _parse_backup_hour(value: str | None) -> int:
    if not value:
        return 2
    try:
        hour = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(explain_invalid_backup_hour(value)) from exc
    if not 0 <= hour <= 23:
        raise ConfigurationError(explain_invalid_backup_hour(value))
    return hour


def _parse_positive_int(environ: Mapping[str, str], name: str, default: int) -> int:
    value = environ.get(name)
    if not value:
        return default
    try:
        number = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(explain_invalid_number_env(name, value)) from exc
    if number <= 0:
        raise ConfigurationError(explain_invalid_number_env(name, value))
    return number


def _parse_timeouts(environ: Mapping[str, str]) -> Timeouts:
    defaults = Timeouts()
    return Timeouts(
        probe=defaults.probe,
        core_dump=_parse_positive_int(environ, "PASNAP_CORE_DUMP_TIMEOUT", defaults.core_dump),
        users_dump=_parse_positive_int(environ, "PASNAP_USERS_DUMP_TIMEOUT", defaults.users_dump),
        volume=_parse_positive_int(environ, "PASNAP_VOLUME_SNAPSHOT_TIMEOUT", defaults.volume),
        tree_copy=_parse_positive_int(
            environ, "PASNAP_USERS_HOME_SNAPSHOT_TIMEOUT", defaults.tree_copy
        ),
        db_import=_parse_positive_int(environ, "PASNAP_IMPORT_TIMEOUT", defaults.db_import),
        compose=defaults.compose,
        repository=defaults.repository,
        transfer=defaults.transfer,
    )


def migrate_legacy_config(
    config_file: Path = DEFAULT_CONFIG_FILE,
    legacy_file: Path = LEGACY_CONFIG_FILE,
) -> bool:
    """
    Move a configuration file from the legacy location to the central one.

    Only happens when the central file does not exist yet.

    Returns:
        True if a file was moved
    """
    if config_file.exists() or not legacy_file.is_file():
        return False

    config_file.parent.mkdir(parents=True, exist_ok=True)
    shutil.move(str(legacy_file), str(config_file))
    os.chmod(config_file, 0o600)
    logger.info(
        "config_migrated",
        source=str(legacy_file),
        destination=str(config_file),
    )
    return True


def strip_stale_keys(config_file: Path) -> bool:
    """Remove entries left behind by older releases. Returns True if the file changed."""
    if not config_file.is_file():
        return False

    lines = config_file.read_text().splitlines(keepends=True)
    kept = [
        line
        for line in lines
        if not line.startswith(tuple(f"{key}=" for key in STALE_KEYS))
        and line.rstrip("\n") not in STALE_COMMENTS
    ]
    if len(kept) == len(lines):
        return False

    config_file.write_text("".join(kept))
    logger.info("config_stale_keys_removed", config_file=str(config_file))
    return True


def _read_dotenv(path: Path, interpolate: bool) -> Dict[str, str]:
    if not path.is_file():
        return {}
    values = dotenv_values(path, interpolate=interpolate)
    return {k: v for k, v in values.items() if v is not None}


def read_config_file(config_file: Path) -> Dict[str, str]:
    """Parse a KEY=VALUE file, dropping keys without a value.

    Values are taken literally: a secret containing ${...} must load the
    same from a shell, cron or a detached run.
    """
    return _read_dotenv(config_file, interpolate=False)


def load_config(
    config_file: Path | None = None,
    *,
    environ: Mapping[str, str] | None = None,
    legacy_file: Path | None = None,
    **overrides,
) -> PasnapConfig:
    """
    Build a PasnapConfig from the configuration file plus environment.

    Values in the file take precedence over the process environment for
    the keys the file defines; timeout budgets come from the environment
    only.

    Args:
        config_file: Path to the configuration file (default central path)
        environ: Environment mapping (default os.environ)
        legacy_file: Old configuration location to migrate from
        **overrides: Extra PasnapConfig fields (used by tests and the CLI)
    """
    config_file = config_file or DEFAULT_CONFIG_FILE
    environ = os.environ if environ is None else environ

    if legacy_file is None and config_file == DEFAULT_CONFIG_FILE:
        legacy_file = LEGACY_CONFIG_FILE
    if legacy_file is not None:
        migrate_legacy_config(config_file, legacy_file)

    strip_stale_keys(config_file)
    file_values = read_config_file(config_file)

    merged: Dict[str, str] = {k: environ[k] for k in CONFIG_KEYS if environ.get(k)}
    merged.update(file_values)

    params = dict(
        repository=merged.get("RESTIC_REPOSITORY", ""),
        password=merged.get("RESTIC_PASSWORD", ""),
        aws_access_key_id=merged.get("AWS_ACCESS_KEY_ID") or None,
        aws_secret_access_key=merged.get("AWS_SECRET_ACCESS_KEY") or None,
        retention_days=_parse_retention_days(merged.get("BACKUP_RETENTION_DAYS")),
        backup_hour=_parse_backup_hour(merged.get("BACKUP_HOUR")),
        tag_prefix=merged.get("BACKUP_TAG_PREFIX") or "panelalpha",
        log_file=Path(merged.get("LOG_FILE") or "/var/log/pasnap.log"),
        temp_dir=Path(merged.get("BACKUP_TEMP_DIR") or "/var/tmp"),
        restore_temp_dir=Path(merged.get("RESTORE_TEMP_DIR") or "/var/tmp"),
        cache_dir=Path(merged.get("RESTIC_CACHE_DIR") or "/var/cache/restic"),
        config_file=config_file,
        helper_image=environ.get("PASNAP_HELPER_IMAGE") or "ubuntu:20.04",
        users_dump_compression_level=_parse_positive_int(
            environ, "PASNAP_USERS_DUMP_COMPRESSION_LEVEL", 1
        ),
        timeouts=_parse_timeouts(environ),
    )
    params.update(overrides)
    return PasnapConfig(**params)


def write_config(config_file: Path, values: Mapping[str, str]) -> None:
    """
    Write the configuration file with owner-only permissions.

    The file is created with mode 600 before any secret is written to it.
    """
    config_file.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(config_file, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as f:
        f.write("# pasnap configuration\n")
        for key, value in values.items():
            escaped = str(value).replace("\\", "\\\\").replace('"', '\\"')
            f.write(f'{key}="{escaped}"\n')
    os.chmod(config_file, 0o600)
    logger.info("config_written", config_file=str(config_file))


def read_env_file(env_file: Path) -> Dict[str, str]:
    """Read an application env file (credentials for database containers).

    ${VAR} references are expanded the way the application itself reads them.
    """
    return _read_dotenv(env_file, interpolate=True)
