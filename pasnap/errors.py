# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Human-friendly error message helpers for pasnap.

These helpers centralize the wording of remediation hints so that every
fatal error tells the operator which command to run next.
"""

from pathlib import Path


def explain_missing_repository_config(config_file: Path) -> str:
    """
    Explain that repository locator or password is not configured.
    """

    return (
        f"RESTIC_REPOSITORY and RESTIC_PASSWORD must be set in {config_file}. "
        "Run: pasnap setup"
    )


def explain_invalid_retention_days(value: str | None) -> str:
    """
    Explain that BACKUP_RETENTION_DAYS is invalid.
    """

    return (
        f"Invalid BACKUP_RETENTION_DAYS value: {value!r}. "
        "It must be a whole number of days between 1 and 365."
    )


def explain_invalid_backup_hour(value: str | None) -> str:
    """
    Explain that BACKUP_HOUR is invalid.
    """

    return f"Invalid BACKUP_HOUR value: {value!r}. It must be an hour between 0 and 23."


def explain_invalid_number_env(name: str, value: str | None) -> str:
    return f"Invalid {name} value: {value!r}. It must be a positive whole number."


def explain_missing_binary(binary: str) -> str:
    return f"Required program '{binary}' was not found in PATH. Install it and retry."


def explain_runtime_unreachable() -> str:
    return (
        "The container runtime is not reachable. "
        "Check that the Docker daemon is running: systemctl status docker"
    )


def explain_missing_install_dir(path: Path) -> str:
    return (
        f"Installation directory {path} does not exist or has no docker-compose.yml. "
        "Install PanelAlpha on this server before running pasnap."
    )


def explain_insufficient_space(path: Path, available_mb: int, required_mb: int) -> str:
    """
    Explain that the staging filesystem is too full.
    """

    return (
        f"Insufficient disk space in {path}: {available_mb}MB available, "
        f"~{required_mb}MB required. Free up space or set BACKUP_TEMP_DIR "
        "to a larger filesystem."
    )


def explain_repository_unreachable(locator: str) -> str:
    return (
        f"Cannot reach or initialize repository {locator}. "
        "Check network access and credentials, then run: pasnap test-connection"
    )


def explain_snapshot_not_found(snapshot_id: str) -> str:
    return (
        f"Snapshot {snapshot_id} does not exist in the repository. "
        "Run: pasnap list-snapshots"
    )


def explain_no_snapshots() -> str:
    return "Cannot find any snapshots in the repository. Create one first with: pasnap snapshot"


def explain_invalid_snapshot_id(value: str) -> str:
    return (
        f"Invalid snapshot ID format: {value!r}. "
        "Use an ID from 'pasnap list-snapshots' or the word 'latest'."
    )


def explain_corrupt_snapshot(snapshot_id: str) -> str:
    """
    Explain that the restored tree holds no recognizable bundle.
    """

    return (
        f"Cannot find snapshot data inside {snapshot_id}. "
        "The snapshot may be corrupted or was not created by pasnap."
    )


def explain_lock_held(lock_path: Path) -> str:
    return (
        f"Another pasnap run holds {lock_path}. "
        "Wait for it to finish; check running jobs with: pgrep -af pasnap"
    )


def explain_not_root() -> str:
    return "This command must be run as root (use sudo)."


def explain_database_not_ready(services: list[str]) -> str:
    return (
        f"Database containers {', '.join(services)} did not become ready. "
        "Inspect them with: docker compose logs " + " ".join(services)
    )


def explain_mandatory_capture_failed(category: str) -> str:
    """
    Explain that a snapshot was withheld because core data was not captured.
    """

    return (
        f"No {category} could be captured, so no snapshot was uploaded. "
        "Check that the PanelAlpha containers are running (docker compose ps) "
        "and retry: pasnap snapshot"
    )


def explain_restore_incomplete(step: str) -> str:
    return (
        f"Restore stopped during '{step}'. Services may be stopped; "
        "inspect with: docker compose ps, then rerun: pasnap restore <id>"
    )
