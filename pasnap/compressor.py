# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Pasnap Compressor - streaming compression for database dumps.

Dumps are compressed chunk by chunk as they arrive from the database
container, so memory use stays flat regardless of dump size. Restore
accepts zstd (current) and gzip (bundles made by older releases).
"""

import zlib
from pathlib import Path
from typing import Protocol

import zstandard as zstd

ZSTD_SUFFIX = ".zst"
GZIP_SUFFIX = ".gz"

# Tried in this order when looking for a dump inside a bundle
DUMP_SUFFIXES = (ZSTD_SUFFIX, GZIP_SUFFIX, "")


class StreamCodec(Protocol):
    def process(self, chunk: bytes) -> bytes: ...

    def finish(self) -> bytes: ...


class _ZstdCompress:
    def __init__(self, level: int):
        self._obj = zstd.ZstdCompressor(level=level).compressobj()

    def process(self, chunk: bytes) -> bytes:
        return self._obj.compress(chunk)

    def finish(self) -> bytes:
        return self._obj.flush()


class _ZstdDecompress:
    def __init__(self):
        self._obj = zstd.ZstdDecompressor().decompressobj()

    def process(self, chunk: bytes) -> bytes:
        return self._obj.decompress(chunk)

    def finish(self) -> bytes:
        return b""


class _GzipDecompress:
    def __init__(self):
        self._obj = zlib.decompressobj(16 + zlib.MAX_WBITS)

    def process(self, chunk: bytes) -> bytes:
        return self._obj.decompress(chunk)

    def finish(self) -> bytes:
        return self._obj.flush()


class _Passthrough:
    def process(self, chunk: bytes) -> bytes:
        return chunk

    def finish(self) -> bytes:
        return b""


def compressor(level: int | None) -> StreamCodec:
    """zstd compressor at level, or a passthrough when level is None."""
    if level is None:
        return _Passthrough()
    return _ZstdCompress(level)


def decompressor_for(path: Path) -> StreamCodec:
    """Pick a decompressor from the file suffix."""
    if path.suffix == ZSTD_SUFFIX:
        return _ZstdDecompress()
    if path.suffix == GZIP_SUFFIX:
        return _GzipDecompress()
    return _Passthrough()


def find_dump(directory: Path, dump_name: str) -> Path | None:
    """Locate dump_name inside directory, preferring compressed variants."""
    for suffix in DUMP_SUFFIXES:
        candidate = directory / f"{dump_name}{suffix}"
        if candidate.is_file():
            return candidate
    return None
