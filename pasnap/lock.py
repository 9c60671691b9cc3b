# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Per-installation advisory lock.

Snapshot, restore and delete runs against the same installation are
mutually exclusive. The lock is an flock(2) on a file in the staging
directory; the kernel drops it if the process dies.
"""

import fcntl
import os
from pathlib import Path

import structlog

from pasnap.errors import explain_lock_held
from pasnap.exceptions import LockHeldError

logger = structlog.get_logger()


def lock_path_for(temp_dir: Path, install_root: Path) -> Path:
    return temp_dir / f"pasnap-{install_root.name}.lock"


class InstallationLock:
    """Non-blocking exclusive lock, usable as a context manager."""

    def __init__(self, path: Path):
        self.path = path
        self.fd: int | None = None

    def acquire(self) -> "InstallationLock":
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.path, os.O_CREAT | os.O_RDWR, 0o600)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as e:
            os.close(fd)
            raise LockHeldError(
                "Another pasnap operation is running on this installation",
                details={"lock": str(self.path)},
                hint=explain_lock_held(self.path),
            ) from e

        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode())
        self.fd = fd
        logger.debug("lock_acquired", lock=str(self.path))
        return self

    def release(self) -> None:
        if self.fd is None:
            return
        fcntl.flock(self.fd, fcntl.LOCK_UN)
        os.close(self.fd)
        self.fd = None
        logger.debug("lock_released", lock=str(self.path))

    def __enter__(self) -> "InstallationLock":
        return self.acquire()

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()
