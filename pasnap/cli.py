# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
pasnap command-line interface.

Configuration is loaded once per invocation and kept on the typer
context; commands pull the pieces they need from there. Every fatal
PasnapError ends up in _fail(), which prints the message and the
remediation hint and exits with status 1.
"""

import asyncio
import shutil
import signal
import subprocess
import sys
from pathlib import Path
from typing import Any, Coroutine, NoReturn

import structlog
import typer

from pasnap import __version__, cron, host
from pasnap.config import (
    DEFAULT_BASE_DIR,
    DEFAULT_CONFIG_FILE,
    PasnapConfig,
    is_valid_snapshot_ref,
    mask_locator,
)
from pasnap.core import RunContext, RunStatus, build_context
from pasnap.detect import DeploymentProfile, detect_cached
from pasnap.env import load_config, write_config
from pasnap.errors import (
    explain_invalid_snapshot_id,
    explain_missing_binary,
    explain_missing_repository_config,
    explain_not_root,
)
from pasnap.exceptions import ConfigurationError, PasnapError, PreflightError
from pasnap.lock import InstallationLock, lock_path_for
from pasnap.log import configure_logging
from pasnap.restore import LATEST, run_restore
from pasnap.setup import (
    RepositoryKind,
    build_locator,
    config_values,
    validate_password,
    validate_schedule,
)
from pasnap.snapshot import run_snapshot

EXIT_FAILURE = 1
EXIT_INTERRUPTED = 130

app = typer.Typer(
    add_completion=False,
    no_args_is_help=True,
    help="pasnap - snapshot, restore and migrate PanelAlpha installations with restic.",
)
cron_app = typer.Typer(no_args_is_help=True, help="Manage the daily scheduled snapshot.")
app.add_typer(cron_app, name="cron")

logger = structlog.get_logger()


# ============================================================================
# Context
# ============================================================================


@app.callback()
def initialize_context(
    ctx: typer.Context,
    config_path: Path = typer.Option(
        DEFAULT_CONFIG_FILE, "--config", "-c", help="Path to the configuration file."
    ),
    log_level: str = typer.Option("INFO", "--log-level", help="DEBUG, INFO, WARNING or ERROR."),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Log to the log file only."),
    base_dir: Path = typer.Option(
        DEFAULT_BASE_DIR, "--base-dir", hidden=True, help="PanelAlpha base directory."
    ),
):
    """Load configuration once before any command runs."""
    ctx.ensure_object(dict)
    ctx.obj.setdefault("config_path", config_path)
    ctx.obj.setdefault("log_level", log_level.upper())
    ctx.obj.setdefault("console", not quiet)
    ctx.obj.setdefault("base_dir", base_dir)
    configure_logging(ctx.obj["log_level"], console=ctx.obj["console"])


def _fail(error: PasnapError) -> NoReturn:
    typer.echo(f"ERROR: {error}", err=True)
    if error.hint:
        typer.echo(f"Hint: {error.hint}", err=True)
    raise typer.Exit(code=EXIT_FAILURE)


def get_config(ctx: typer.Context) -> PasnapConfig:
    """Configuration from the context, loaded on first use."""
    if "config" not in ctx.obj:
        try:
            ctx.obj["config"] = load_config(ctx.obj["config_path"])
        except ConfigurationError as e:
            _fail(e)
        configure_logging(
            ctx.obj["log_level"], ctx.obj["config"].log_file, console=ctx.obj["console"]
        )
    return ctx.obj["config"]


def get_profile(ctx: typer.Context) -> DeploymentProfile:
    return detect_cached(ctx.obj["base_dir"])


def get_run_context(ctx: typer.Context) -> RunContext:
    """Production adapters, unless a factory was placed on the context."""
    if "run_context" not in ctx.obj:
        factory = ctx.obj.get("context_factory", build_context)
        ctx.obj["run_context"] = factory(get_config(ctx), get_profile(ctx))
    return ctx.obj["run_context"]


def require_root() -> None:
    if not host.is_root():
        _fail(PreflightError("Root privileges required", hint=explain_not_root()))


def require_repository(config: PasnapConfig) -> None:
    if not config.has_repository_credentials:
        _fail(
            PreflightError(
                "Repository is not configured",
                hint=explain_missing_repository_config(config.config_file),
            )
        )


def installation_lock(ctx: typer.Context) -> InstallationLock:
    config = get_config(ctx)
    return InstallationLock(lock_path_for(config.temp_dir, get_profile(ctx).install_root))


def run_async(coro: Coroutine[Any, Any, Any]) -> Any:
    """
    Run coro on a fresh event loop.

    SIGTERM cancels the main task so every cleanup handler still runs;
    SIGINT is handled by asyncio.run itself.
    """

    async def _main():
        loop = asyncio.get_running_loop()
        loop.add_signal_handler(signal.SIGTERM, asyncio.current_task().cancel)
        try:
            return await coro
        finally:
            loop.remove_signal_handler(signal.SIGTERM)

    try:
        return asyncio.run(_main())
    except PasnapError as e:
        _fail(e)
    except (KeyboardInterrupt, asyncio.CancelledError):
        typer.echo("Interrupted.", err=True)
        raise typer.Exit(code=EXIT_INTERRUPTED)


def _human_size(size: int | None) -> str:
    if size is None:
        return "-"
    value = float(size)
    for unit in ("B", "KB", "MB", "GB"):
        if value < 1024:
            return f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} TB"


def _print_outcomes(outcomes) -> None:
    for outcome in outcomes:
        if outcome.failed:
            typer.echo(f"  ! {outcome.category}/{outcome.component}: {outcome.reason}")


# ============================================================================
# Snapshot / restore
# ============================================================================


def _launch_background(ctx: typer.Context, config: PasnapConfig) -> None:
    argv = [
        sys.executable, "-m", "pasnap",
        "--config", str(config.config_file),
        "--base-dir", str(ctx.obj["base_dir"]),
        "--log-level", ctx.obj["log_level"],
        "--quiet",
        "snapshot",
    ]
    config.log_file.parent.mkdir(parents=True, exist_ok=True)
    with open(config.log_file, "ab") as log:
        proc = subprocess.Popen(
            argv,
            stdin=subprocess.DEVNULL,
            stdout=log,
            stderr=subprocess.STDOUT,
            start_new_session=True,
        )
    logger.info("background_snapshot_started", pid=proc.pid)
    typer.echo(f"Snapshot started in background (PID {proc.pid}).")
    typer.echo(f"Follow progress with: tail -f {config.log_file}")


@app.command()
def snapshot(
    ctx: typer.Context,
    background: bool = typer.Option(
        False, "--background", "-b", help="Run detached from the terminal."
    ),
):
    """Create a new snapshot of this installation."""
    require_root()
    config = get_config(ctx)
    if background:
        _launch_background(ctx, config)
        return

    run_ctx = get_run_context(ctx)
    try:
        with installation_lock(ctx):
            result = run_async(run_snapshot(run_ctx))
    except PasnapError as e:
        _fail(e)

    if result.status == RunStatus.COMPLETED:
        typer.echo(f"Snapshot {result.snapshot_id or '(id unknown)'} completed.")
    else:
        typer.echo(f"Snapshot {result.snapshot_id or '(id unknown)'} completed with errors:")
        _print_outcomes(result.outcomes)
    for warning in result.warnings:
        typer.echo(f"  warning: {warning}")
    typer.echo(
        f"Size {_human_size(result.bundle_size)}, "
        f"took {result.duration_seconds:.0f}s (upload {result.upload_seconds:.0f}s)."
    )


@app.command()
def restore(
    ctx: typer.Context,
    snapshot_id: str = typer.Argument(..., help="Snapshot ID or 'latest'."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation."),
):
    """Restore a snapshot onto this server (also used for migration)."""
    require_root()
    config = get_config(ctx)
    require_repository(config)
    run_ctx = get_run_context(ctx)

    async def confirm(resolved_id: str) -> bool:
        if yes:
            return True
        typer.echo(
            f"Restoring snapshot {resolved_id} will STOP all services and REPLACE the "
            f"databases, volumes and configuration under {run_ctx.profile.install_root}."
        )
        return typer.confirm("Continue?", default=False)

    try:
        with installation_lock(ctx):
            result = run_async(run_restore(run_ctx, snapshot_id, confirm))
    except PasnapError as e:
        _fail(e)

    if result.status == RunStatus.CANCELLED:
        typer.echo("Restore cancelled; nothing was changed.")
        return

    label = "completed" if result.status == RunStatus.COMPLETED else "completed with errors"
    typer.echo(f"Restore of {result.snapshot_id} {label} in {result.duration_seconds:.0f}s.")
    _print_outcomes(result.outcomes)
    if result.services_running is False:
        typer.echo("  warning: services do not report running yet; check: docker compose ps")


@app.command("list-snapshots")
def list_snapshots(ctx: typer.Context):
    """List snapshots of this host (or all snapshots if it has none)."""
    config = get_config(ctx)
    require_repository(config)
    repository = get_run_context(ctx).repository

    async def _list():
        snapshots = await repository.list_snapshots(config.host_tag)
        if snapshots:
            return config.host_tag, snapshots
        return None, await repository.list_snapshots()

    tag, snapshots = run_async(_list())
    if not snapshots:
        typer.echo("No snapshots in the repository.")
        return

    typer.echo(f"Snapshots {'tagged ' + tag if tag else 'from all hosts'} (newest first):")
    typer.echo(f"{'ID':<10} {'CREATED':<20} {'HOST':<24} TAGS")
    for snap in snapshots:
        typer.echo(
            f"{snap.short_id:<10} {snap.time:%Y-%m-%d %H:%M:%S}  {snap.hostname:<24} "
            f"{','.join(snap.tags)}"
        )


@app.command("delete-snapshot")
def delete_snapshot(
    ctx: typer.Context,
    snapshot_id: str = typer.Argument(..., help="Snapshot ID."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation."),
):
    """Forget one snapshot and prune its data."""
    require_root()
    config = get_config(ctx)
    require_repository(config)
    if snapshot_id == LATEST or not is_valid_snapshot_ref(snapshot_id):
        _fail(
            ConfigurationError(
                f"Invalid snapshot ID: {snapshot_id!r}",
                hint=explain_invalid_snapshot_id(snapshot_id),
            )
        )

    if not yes and not typer.confirm(f"Permanently delete snapshot {snapshot_id}?", default=False):
        typer.echo("Aborted.")
        return

    run_ctx = get_run_context(ctx)

    async def _delete():
        operation_id = await run_ctx.journal.start("delete", snapshot_id)
        try:
            await run_ctx.repository.delete_snapshot(snapshot_id)
        except PasnapError as e:
            await run_ctx.journal.finish(operation_id, RunStatus.FAILED.value, error=str(e))
            raise
        await run_ctx.journal.finish(operation_id, RunStatus.COMPLETED.value)

    try:
        with installation_lock(ctx):
            run_async(_delete())
    except PasnapError as e:
        _fail(e)
    typer.echo(f"Snapshot {snapshot_id} deleted.")


@app.command("test-connection")
def test_connection(ctx: typer.Context):
    """Check that the repository is reachable (initializing it if needed)."""
    config = get_config(ctx)
    require_repository(config)
    count = run_async(_check_repository(get_run_context(ctx)))
    typer.echo(f"Repository {mask_locator(config.repository)} is reachable ({count} snapshots).")


async def _check_repository(run_ctx: RunContext) -> int:
    if not await run_ctx.repository.is_available():
        raise PreflightError("Backup engine not available", hint=explain_missing_binary("restic"))
    if await run_ctx.repository.init():
        typer.echo("Repository initialized.")
    return await run_ctx.repository.check_connectivity()


# ============================================================================
# Setup
# ============================================================================


def _prompt_locator() -> tuple[str, dict]:
    while True:
        answer = typer.prompt("Repository type (local, sftp, s3)", default="local").strip().lower()
        try:
            kind = RepositoryKind(answer)
            break
        except ValueError:
            typer.echo(f"Unknown repository type: {answer}")

    extra = {}
    if kind is RepositoryKind.LOCAL:
        locator = build_locator(kind, path=typer.prompt("Repository path", default="/backup/panelalpha"))
    elif kind is RepositoryKind.SFTP:
        locator = build_locator(
            kind,
            user=typer.prompt("SFTP user"),
            host=typer.prompt("SFTP host"),
            path=typer.prompt("Remote path"),
        )
    else:
        endpoint = typer.prompt("S3 endpoint (empty for AWS)", default="", show_default=False)
        region = "" if endpoint else typer.prompt("AWS region", default="us-east-1")
        locator = build_locator(
            kind,
            endpoint=endpoint,
            region=region,
            bucket=typer.prompt("Bucket"),
            prefix=typer.prompt("Prefix", default="panelalpha"),
        )
        extra["aws_access_key_id"] = typer.prompt("Access key ID")
        extra["aws_secret_access_key"] = typer.prompt("Secret access key", hide_input=True)
    return locator, extra


@app.command()
def setup(ctx: typer.Context):
    """Interactively configure the repository, retention and schedule."""
    require_root()
    config_path: Path = ctx.obj["config_path"]
    try:
        locator, extra = _prompt_locator()
        password = typer.prompt("Repository password (min. 8 characters)", hide_input=True)
        validate_password(password, typer.prompt("Repeat password", hide_input=True))
        retention = typer.prompt("Keep daily snapshots for how many days", default=30, type=int)
        hour = typer.prompt("Hour of day for the scheduled snapshot (0-23)", default=2, type=int)
        validate_schedule(retention, hour)
        write_config(config_path, config_values(locator, password, retention, hour, **extra))
    except ConfigurationError as e:
        _fail(e)

    typer.echo(f"Configuration saved to {config_path}.")
    ctx.obj.pop("config", None)
    ctx.obj.pop("run_context", None)
    count = run_async(_check_repository(get_run_context(ctx)))
    typer.echo(f"Repository is reachable ({count} snapshots).")
    typer.echo("Enable daily snapshots with: pasnap cron install")


# ============================================================================
# Cron
# ============================================================================


def _cron_command(ctx: typer.Context) -> str:
    executable = shutil.which("pasnap") or f"{sys.executable} -m pasnap"
    if ctx.obj["config_path"] != DEFAULT_CONFIG_FILE:
        executable += f" --config {ctx.obj['config_path']}"
    return executable


@cron_app.command("install")
def cron_install(
    ctx: typer.Context,
    yes: bool = typer.Option(False, "--yes", "-y", help="Replace an existing entry without asking."),
):
    """Add the daily snapshot to root's crontab."""
    require_root()
    config = get_config(ctx)

    async def confirm_replace(entry: str) -> bool:
        if yes:
            return True
        typer.echo(f"Existing entry: {entry}")
        return typer.confirm("Replace it?", default=True)

    installed = run_async(
        cron.install(_cron_command(ctx), config.backup_hour, config.log_file, confirm_replace)
    )
    if installed:
        typer.echo(f"Daily snapshot scheduled at {config.backup_hour:02d}:00.")
    else:
        typer.echo("Existing schedule kept.")


@cron_app.command("remove")
def cron_remove(ctx: typer.Context):
    """Remove the daily snapshot from root's crontab."""
    require_root()
    if run_async(cron.remove()):
        typer.echo("Scheduled snapshot removed.")
    else:
        typer.echo("No scheduled snapshot found.")


@cron_app.command("status")
def cron_status(ctx: typer.Context):
    """Show the schedule and recent activity."""
    config = get_config(ctx)
    state = run_async(cron.status())
    if state.enabled:
        typer.echo(f"Scheduled snapshot: enabled\n  {state.entry}")
    else:
        typer.echo("Scheduled snapshot: disabled (enable with: pasnap cron install)")

    records = run_async(get_run_context(ctx).journal.recent(5))
    if records:
        typer.echo("Recent activity:")
        for record in records:
            typer.echo(
                f"  {record['started_at'][:19]}  {record['kind']:<8} {record['status']:<22} "
                f"{record['snapshot_id'] or ''}"
            )
    typer.echo(f"Log file: {config.log_file}")


# ============================================================================
# Misc
# ============================================================================


@app.command()
def history(
    ctx: typer.Context,
    limit: int = typer.Option(20, "--limit", "-n", min=1, help="Number of operations to show."),
):
    """Show recent snapshot, restore and delete operations."""
    records = run_async(get_run_context(ctx).journal.recent(limit))
    if not records:
        typer.echo("No operations recorded yet.")
        return
    typer.echo(f"{'STARTED':<20} {'KIND':<8} {'STATUS':<22} {'SNAPSHOT':<10} SIZE")
    for record in records:
        typer.echo(
            f"{record['started_at'][:19]:<20} {record['kind']:<8} {record['status']:<22} "
            f"{(record['snapshot_id'] or '-')[:10]:<10} {_human_size(record['bundle_size'])}"
        )


@app.command()
def version():
    """Print the pasnap version."""
    typer.echo(f"pasnap {__version__}")


def main() -> None:
    app(obj={})


if __name__ == "__main__":
    main()
