# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Repository locator construction and validation for the setup command.
"""

from enum import Enum
from typing import Dict

from pasnap.exceptions import ConfigurationError

MIN_PASSWORD_LENGTH = 8
AWS_ENDPOINT = "s3.{region}.amazonaws.com"


class RepositoryKind(str, Enum):
    LOCAL = "local"
    SFTP = "sftp"
    S3 = "s3"


def build_locator(
    kind: RepositoryKind,
    *,
    path: str = "",
    user: str = "",
    host: str = "",
    endpoint: str = "",
    region: str = "",
    bucket: str = "",
    prefix: str = "",
) -> str:
    """
    Build a restic repository locator.

    Examples:
        local: /backup/panelalpha
        sftp:  sftp:backup@nas:/srv/restic
        s3:    s3:s3.eu-west-1.amazonaws.com/bucket/panelalpha
    """
    kind = RepositoryKind(kind)
    if kind is RepositoryKind.LOCAL:
        if not path.startswith("/"):
            raise ConfigurationError("Local repository path must be absolute", details={"path": path})
        return path

    if kind is RepositoryKind.SFTP:
        if not (user and host and path):
            raise ConfigurationError("SFTP repository needs user, host and path")
        return f"sftp:{user}@{host}:{path}"

    if not bucket:
        raise ConfigurationError("S3 repository needs a bucket name")
    if not endpoint:
        if not region:
            raise ConfigurationError("S3 repository needs an endpoint or a region")
        endpoint = AWS_ENDPOINT.format(region=region)
    endpoint = endpoint.removeprefix("https://").removeprefix("http://").rstrip("/")
    locator = f"s3:{endpoint}/{bucket}"
    if prefix:
        locator += "/" + prefix.strip("/")
    return locator


def validate_password(password: str, confirmation: str) -> None:
    errors = []
    if len(password) < MIN_PASSWORD_LENGTH:
        errors.append(f"password must be at least {MIN_PASSWORD_LENGTH} characters")
    if password != confirmation:
        errors.append("passwords do not match")
    if errors:
        raise ConfigurationError("Invalid repository password", details={"errors": errors})


def config_values(
    locator: str,
    password: str,
    retention_days: int,
    backup_hour: int,
    aws_access_key_id: str = "",
    aws_secret_access_key: str = "",
) -> Dict[str, str]:
    """Configuration file contents in write order."""
    values = {
        "RESTIC_REPOSITORY": locator,
        "RESTIC_PASSWORD": password,
    }
    if aws_access_key_id:
        values["AWS_ACCESS_KEY_ID"] = aws_access_key_id
        values["AWS_SECRET_ACCESS_KEY"] = aws_secret_access_key
    values["BACKUP_RETENTION_DAYS"] = str(retention_days)
    values["BACKUP_HOUR"] = str(backup_hour)
    return values


def validate_schedule(retention_days: int, backup_hour: int) -> None:
    from pasnap.errors import explain_invalid_backup_hour, explain_invalid_retention_days

    errors = []
    if not 1 <= retention_days <= 365:
        errors.append(explain_invalid_retention_days(str(retention_days)))
    if not 0 <= backup_hour <= 23:
        errors.append(explain_invalid_backup_hour(str(backup_hour)))
    if errors:
        raise ConfigurationError("Invalid schedule", details={"errors": errors})
