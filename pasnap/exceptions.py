# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Pasnap Exceptions - Custom exceptions for the pasnap package.

Every error carries a human message, a details dict for the log, and an
optional remediation hint that the CLI prints before exiting.
"""


class PasnapError(Exception):
    """Base exception for all pasnap errors."""

    def __init__(self, message: str, details: dict | None = None, hint: str | None = None):
        self.message = message
        self.details = details or {}
        self.hint = hint
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ConfigurationError(PasnapError):
    """Raised when configuration is invalid or incomplete."""

    pass


class PreflightError(PasnapError):
    """Raised when a precondition for a pipeline is not met."""

    pass


class CommandError(PasnapError):
    """Raised when an external command cannot be run or fails."""

    pass


class CommandTimeout(CommandError):
    """Raised when an external command exceeds its time budget."""

    pass


class RepositoryError(PasnapError):
    """Raised when a backup repository operation fails."""

    pass


class ContainerError(PasnapError):
    """Raised when a container runtime operation fails."""

    pass


class DatabaseError(PasnapError):
    """Raised when a database client operation fails."""

    pass


class SnapshotError(PasnapError):
    """Raised when the snapshot pipeline cannot produce a snapshot."""

    pass


class RestoreError(PasnapError):
    """Raised when the restore pipeline cannot continue."""

    pass


class LockHeldError(PasnapError):
    """Raised when another pasnap run holds the installation lock."""

    pass


class JournalError(PasnapError):
    """Raised when the local operation journal cannot be read or written."""

    pass
