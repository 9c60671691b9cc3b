# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Pasnap Runner - bounded external process execution.

Every external program (restic, docker, the database client inside a
container, rsync) is started through this module. Each call carries an
explicit time budget; a child that outlives it is killed and reaped and
CommandTimeout is raised. Secrets travel in the child's environment,
never in its argument list.
"""

import asyncio
import os
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Dict, List, Mapping, Sequence

import aiofiles
import structlog

from pasnap.compressor import compressor, decompressor_for
from pasnap.errors import explain_missing_binary
from pasnap.exceptions import CommandError, CommandTimeout

logger = structlog.get_logger()

CHUNK_SIZE = 1024 * 1024
PROGRESS_INTERVAL = 10.0


@dataclass
class CommandResult:
    """Outcome of one external command."""

    argv: List[str]
    returncode: int
    stdout: str
    stderr: str
    duration_seconds: float

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def _merge_env(env: Mapping[str, str] | None) -> Dict[str, str] | None:
    if env is None:
        return None
    merged = os.environ.copy()
    merged.update(env)
    return merged


async def _terminate(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is None:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
    await proc.wait()


async def _spawn(argv: List[str], **kwargs) -> asyncio.subprocess.Process:
    try:
        return await asyncio.create_subprocess_exec(*argv, **kwargs)
    except FileNotFoundError as e:
        raise CommandError(
            f"Command not found: {argv[0]}",
            details={"argv": argv},
            hint=explain_missing_binary(argv[0]),
        ) from e
    except OSError as e:
        raise CommandError(
            f"Cannot start {argv[0]}: {e}",
            details={"argv": argv},
        ) from e


def _timeout_error(argv: List[str], timeout: float) -> CommandTimeout:
    return CommandTimeout(
        f"{argv[0]} timed out after {timeout}s",
        details={"argv": argv, "timeout": timeout},
    )


async def run_command(
    argv: Sequence[str | Path],
    *,
    timeout: float,
    env: Mapping[str, str] | None = None,
    cwd: Path | None = None,
    input: bytes | None = None,
    check: bool = False,
) -> CommandResult:
    """
    Run a command to completion and capture its output.

    Args:
        argv: Program and arguments
        timeout: Seconds before the child is killed
        env: Variables added to the inherited environment
        cwd: Working directory for the child
        input: Bytes written to the child's stdin
        check: Raise CommandError on a non-zero exit code

    Returns:
        CommandResult with decoded stdout/stderr
    """
    args = [str(a) for a in argv]
    start = time.monotonic()
    proc = await _spawn(
        args,
        stdin=asyncio.subprocess.PIPE if input is not None else asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        env=_merge_env(env),
        cwd=str(cwd) if cwd else None,
    )

    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(
            proc.communicate(input), timeout=timeout
        )
    except asyncio.TimeoutError:
        await _terminate(proc)
        raise _timeout_error(args, timeout)
    except asyncio.CancelledError:
        await _terminate(proc)
        raise

    result = CommandResult(
        argv=args,
        returncode=proc.returncode if proc.returncode is not None else -1,
        stdout=stdout_bytes.decode("utf-8", errors="replace") if stdout_bytes else "",
        stderr=stderr_bytes.decode("utf-8", errors="replace") if stderr_bytes else "",
        duration_seconds=time.monotonic() - start,
    )

    logger.debug(
        "command_finished",
        program=args[0],
        returncode=result.returncode,
        duration=round(result.duration_seconds, 2),
    )

    if check and not result.ok:
        raise CommandError(
            f"{args[0]} exited with code {result.returncode}",
            details={"argv": args, "stderr": result.stderr.strip()[-2000:]},
        )
    return result


async def stream_command_to_file(
    argv: Sequence[str | Path],
    dest: Path,
    *,
    timeout: float,
    env: Mapping[str, str] | None = None,
    compress_level: int | None = None,
) -> CommandResult:
    """
    Run a command and stream its stdout into dest.

    When compress_level is set, stdout is zstd-compressed on the way to
    disk. stderr is drained concurrently so a chatty child cannot block.
    """
    args = [str(a) for a in argv]
    start = time.monotonic()
    proc = await _spawn(
        args,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        env=_merge_env(env),
    )
    codec = compressor(compress_level)
    stdout, stderr = proc.stdout, proc.stderr

    async def _pump() -> bytes:
        stderr_task = asyncio.create_task(stderr.read())
        try:
            async with aiofiles.open(dest, "wb") as f:
                while True:
                    chunk = await stdout.read(CHUNK_SIZE)
                    if not chunk:
                        break
                    await f.write(codec.process(chunk))
                await f.write(codec.finish())
            await proc.wait()
            return await stderr_task
        finally:
            if not stderr_task.done():
                stderr_task.cancel()

    try:
        stderr_bytes = await asyncio.wait_for(_pump(), timeout=timeout)
    except asyncio.TimeoutError:
        await _terminate(proc)
        raise _timeout_error(args, timeout)
    except BaseException:
        await _terminate(proc)
        raise

    return CommandResult(
        argv=args,
        returncode=proc.returncode if proc.returncode is not None else -1,
        stdout="",
        stderr=stderr_bytes.decode("utf-8", errors="replace"),
        duration_seconds=time.monotonic() - start,
    )


async def stream_file_to_command(
    argv: Sequence[str | Path],
    source: Path,
    *,
    timeout: float,
    env: Mapping[str, str] | None = None,
) -> CommandResult:
    """
    Feed source into a command's stdin, decompressing .zst/.gz on the fly.
    """
    args = [str(a) for a in argv]
    start = time.monotonic()
    proc = await _spawn(
        args,
        stdin=asyncio.subprocess.PIPE,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        env=_merge_env(env),
    )
    codec = decompressor_for(source)
    stdin, stdout, stderr = proc.stdin, proc.stdout, proc.stderr

    async def _feed() -> None:
        try:
            async with aiofiles.open(source, "rb") as f:
                while True:
                    chunk = await f.read(CHUNK_SIZE)
                    if not chunk:
                        break
                    stdin.write(codec.process(chunk))
                    await stdin.drain()
                tail = codec.finish()
                if tail:
                    stdin.write(tail)
                    await stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            # Child exited early; its exit code tells the story
            pass
        finally:
            stdin.close()

    async def _run() -> tuple:
        _, out, err = await asyncio.gather(_feed(), stdout.read(), stderr.read())
        await proc.wait()
        return out, err

    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(_run(), timeout=timeout)
    except asyncio.TimeoutError:
        await _terminate(proc)
        raise _timeout_error(args, timeout)
    except BaseException:
        await _terminate(proc)
        raise

    return CommandResult(
        argv=args,
        returncode=proc.returncode if proc.returncode is not None else -1,
        stdout=stdout_bytes.decode("utf-8", errors="replace"),
        stderr=stderr_bytes.decode("utf-8", errors="replace"),
        duration_seconds=time.monotonic() - start,
    )


async def monitor_progress(path: Path, label: str, interval: float = PROGRESS_INTERVAL) -> None:
    """Log the growing size of path until cancelled."""
    started = time.monotonic()
    while True:
        await asyncio.sleep(interval)
        try:
            size = path.stat().st_size
        except FileNotFoundError:
            size = 0
        logger.info(
            "progress",
            step=label,
            size_mb=round(size / (1024 * 1024), 1),
            elapsed=int(time.monotonic() - started),
        )


@asynccontextmanager
async def watch_progress(
    path: Path, label: str, interval: float = PROGRESS_INTERVAL
) -> AsyncIterator[asyncio.Task]:
    """
    Run monitor_progress alongside the body of the with-block.

    The observer is cancelled and awaited on exit whether the body
    succeeded or raised.
    """
    task = asyncio.create_task(monitor_progress(path, label, interval))
    try:
        yield task
    finally:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
