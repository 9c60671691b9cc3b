# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""Host identity helpers."""

import os
import shutil
import socket
from pathlib import Path


def primary_ip(fallback: str = "127.0.0.1") -> str:
    """
    Address of the interface used for outbound traffic.

    Connecting a UDP socket sends no packets; it only selects a route.
    """
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
            sock.connect(("192.0.2.1", 80))
            return sock.getsockname()[0]
    except OSError:
        return fallback


def free_space_mb(path: Path) -> int:
    """Free space on the filesystem holding path (or its nearest existing parent)."""
    probe = Path(path)
    while not probe.exists() and probe != probe.parent:
        probe = probe.parent
    return shutil.disk_usage(probe).free // (1024 * 1024)


def is_root() -> bool:
    return os.geteuid() == 0


def tree_size(path: Path) -> int:
    """Total size in bytes of regular files under path."""
    total = 0
    for dirpath, _dirnames, filenames in os.walk(path):
        for name in filenames:
            try:
                total += os.lstat(os.path.join(dirpath, name)).st_size
            except OSError:
                continue
    return total


def has_files(path: Path) -> bool:
    """True if any regular file exists below path."""
    for _dirpath, _dirnames, filenames in os.walk(path):
        if filenames:
            return True
    return False
