# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Docker runtime adapter.

Wraps the docker CLI and `docker compose` for one installation
directory. Values passed as secrets are exported to the docker CLI's own
environment and forwarded with `-e NAME` (no value), so they stay out of
every argument list.
"""

from pathlib import Path
from typing import List, Sequence

import structlog

from pasnap.adapters.protocols import ContainerRuntime
from pasnap.config import PasnapConfig
from pasnap.errors import explain_runtime_unreachable
from pasnap.exceptions import CommandError, ContainerError
from pasnap.runner import (
    CommandResult,
    run_command,
    stream_command_to_file,
    stream_file_to_command,
)

logger = structlog.get_logger()


class DockerRuntime(ContainerRuntime):
    """ContainerRuntime implemented with the docker CLI."""

    def __init__(
        self,
        install_root: Path,
        config: PasnapConfig,
        command: Sequence[str] = ("docker",),
    ):
        self.install_root = install_root
        self.project_name = install_root.name
        self.config = config
        self.command = tuple(command)

    def _compose(self, *args: str, compose_file: Path | None = None) -> List[str]:
        compose_file = compose_file or self.install_root / "docker-compose.yml"
        return [*self.command, "compose", "-f", str(compose_file), *args]

    def _exec_argv(
        self, container: str, argv: Sequence[str], secrets: dict | None, interactive: bool
    ) -> List[str]:
        args = [*self.command, "exec"]
        if interactive:
            args.append("-i")
        for name in secrets or {}:
            args += ["-e", name]
        return [*args, container, *argv]

    async def _docker(self, *args: str, timeout: float | None = None) -> CommandResult:
        return await run_command(
            [*self.command, *args],
            timeout=timeout or self.config.timeouts.probe,
        )

    async def is_available(self) -> bool:
        try:
            result = await self._docker("info", "--format", "{{.ServerVersion}}")
        except CommandError:
            return False
        return result.ok

    async def service_container_id(self, service: str) -> str:
        result = await run_command(
            self._compose("ps", "-q", service),
            timeout=self.config.timeouts.probe,
            cwd=self.install_root,
        )
        if not result.ok:
            return ""
        lines = [line.strip() for line in result.stdout.splitlines() if line.strip()]
        return lines[0] if lines else ""

    async def exec_in(
        self,
        container: str,
        argv: Sequence[str],
        *,
        timeout: float,
        secrets: dict | None = None,
        input: bytes | None = None,
    ) -> CommandResult:
        return await run_command(
            self._exec_argv(container, argv, secrets, interactive=input is not None),
            timeout=timeout,
            env=secrets,
            input=input,
        )

    async def exec_to_file(
        self,
        container: str,
        argv: Sequence[str],
        dest: Path,
        *,
        timeout: float,
        secrets: dict | None = None,
        compress_level: int | None = None,
    ) -> CommandResult:
        return await stream_command_to_file(
            self._exec_argv(container, argv, secrets, interactive=False),
            dest,
            timeout=timeout,
            env=secrets,
            compress_level=compress_level,
        )

    async def exec_from_file(
        self,
        container: str,
        argv: Sequence[str],
        source: Path,
        *,
        timeout: float,
        secrets: dict | None = None,
    ) -> CommandResult:
        return await stream_file_to_command(
            self._exec_argv(container, argv, secrets, interactive=True),
            source,
            timeout=timeout,
            env=secrets,
        )

    async def container_env(self, container: str, name: str) -> str | None:
        result = await self._docker("exec", container, "printenv", name)
        value = result.stdout.strip()
        return value if result.ok and value else None

    async def container_logs(self, container: str, tail: int = 10) -> str:
        result = await self._docker("logs", "--tail", str(tail), container)
        return (result.stdout + result.stderr).strip()

    async def volume_exists(self, name: str) -> bool:
        result = await self._docker("volume", "inspect", name)
        return result.ok

    async def create_volume(self, name: str) -> None:
        result = await self._docker("volume", "create", name)
        if not result.ok:
            raise ContainerError(
                f"Cannot create volume {name}",
                details={"stderr": result.stderr.strip()},
            )

    async def remove_volume(self, name: str) -> None:
        result = await self._docker("volume", "rm", name)
        if not result.ok:
            raise ContainerError(
                f"Cannot remove volume {name}",
                details={"stderr": result.stderr.strip()},
            )

    async def archive_volume(
        self, name: str, target_dir: Path, archive_name: str, *, timeout: float
    ) -> CommandResult:
        # tar exits 1 when live files change mid-read; callers judge the output file
        return await run_command(
            [
                *self.command, "run", "--rm",
                "-v", f"{name}:/source:ro",
                "-v", f"{target_dir}:/target",
                self.config.helper_image,
                "tar", "czf", f"/target/{archive_name}",
                "--warning=no-file-changed", "--ignore-failed-read",
                "-C", "/source", ".",
            ],
            timeout=timeout,
        )

    async def extract_volume(self, name: str, archive: Path, *, timeout: float) -> CommandResult:
        return await run_command(
            [
                *self.command, "run", "--rm",
                "-v", f"{name}:/target",
                "-v", f"{archive.parent}:/backup:ro",
                self.config.helper_image,
                "tar", "xzf", f"/backup/{archive.name}", "-C", "/target",
            ],
            timeout=timeout,
        )

    async def _compose_checked(self, *args: str) -> None:
        result = await run_command(
            self._compose(*args),
            timeout=self.config.timeouts.compose,
            cwd=self.install_root,
        )
        if not result.ok:
            raise ContainerError(
                f"docker compose {args[0]} failed (exit {result.returncode})",
                details={"args": list(args), "stderr": result.stderr.strip()[-2000:]},
                hint=explain_runtime_unreachable() if "daemon" in result.stderr else None,
            )

    async def compose_up(self, services: Sequence[str] = ()) -> None:
        await self._compose_checked("up", "-d", *services)

    async def compose_down(self) -> None:
        await self._compose_checked("down")

    async def compose_stop(self, services: Sequence[str]) -> None:
        await self._compose_checked("stop", *services)

    async def compose_status(self) -> bool:
        result = await run_command(
            self._compose("ps", "--status", "running", "-q"),
            timeout=self.config.timeouts.probe,
            cwd=self.install_root,
        )
        return result.ok and bool(result.stdout.strip())

    async def compose_ps(self, compose_file: Path | None = None) -> str:
        result = await run_command(
            self._compose("ps", compose_file=compose_file),
            timeout=self.config.timeouts.probe,
            cwd=(compose_file.parent if compose_file else self.install_root),
        )
        if not result.ok:
            return "Unable to query container state"
        return result.stdout
