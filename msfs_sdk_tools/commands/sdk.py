"""SDK install, update, remove and info commands."""

from __future__ import annotations

import json
import sys
from typing import Any

import click
import structlog
from rich.console import Console
from rich.markup import escape
from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeRemainingColumn,
    TransferSpeedColumn,
)
from rich.table import Table

from msfs_sdk_tools.core.config import AppConfig
from msfs_sdk_tools.core.errors import SDKError
from msfs_sdk_tools.core.installer import InstallResult, SDKInstaller
from msfs_sdk_tools.core.types import InstallOutcome, SimulatorVersion
from msfs_sdk_tools.core.utils import display_name, format_size

logger = structlog.get_logger()

VERSION_CHOICE = click.Choice([v.value for v in SimulatorVersion], case_sensitive=False)

OUTCOME_MESSAGES = {
    InstallOutcome.INSTALLED: ("green", "SDK installed"),
    InstallOutcome.ALREADY_INSTALLED: (
        "cyan",
        "SDK is already installed. To update it, run the update command",
    ),
    InstallOutcome.UPDATED: ("green", "SDK updated"),
    InstallOutcome.UP_TO_DATE: ("cyan", "Latest SDK is already installed"),
    InstallOutcome.NOT_INSTALLED: ("cyan", "SDK is not installed"),
    InstallOutcome.REMOVED: ("green", "SDK removed"),
}


def _get_context_objects(ctx: click.Context) -> tuple[AppConfig, Console, bool]:
    """Extract common context objects."""
    config: AppConfig = ctx.obj["config"]
    console: Console = ctx.obj["console"]
    verbose: bool = ctx.obj["verbose"]
    return config, console, verbose


def _output_json(data: dict[str, Any]) -> None:
    """Output data as JSON."""
    print(json.dumps(data, indent=2, default=str))


class RichDownloadProgress:
    """Download progress rendered as a rich progress bar."""

    def __init__(self, console: Console, description: str = "Downloading SDK"):
        self.progress = Progress(
            SpinnerColumn(),
            TextColumn("[bold blue]{task.description}"),
            BarColumn(),
            DownloadColumn(),
            TransferSpeedColumn(),
            TimeRemainingColumn(),
            console=console,
        )
        self.task = self.progress.add_task(description, total=None)

    def on_progress(self, downloaded: int, total: int) -> None:
        self.progress.update(self.task, completed=downloaded, total=total or None)

    def __enter__(self) -> RichDownloadProgress:
        self.progress.start()
        return self

    def __exit__(self, *args: object) -> None:
        self.progress.stop()


def _report(
    result: InstallResult,
    version: SimulatorVersion,
    config: AppConfig,
    console: Console,
    verbose: bool,
) -> None:
    if config.output_format == "json":
        data: dict[str, Any] = {
            "simulator": version.value,
            "outcome": result.outcome.value,
            "version": result.version,
            "previous_version": result.previous_version,
        }
        if result.stats is not None:
            data["files_written"] = result.stats.files_written
            data["bytes_written"] = result.stats.bytes_written
        _output_json(data)
        return

    color, message = OUTCOME_MESSAGES[result.outcome]
    suffix = f" ({result.version})" if result.version else ""
    console.print(f"[{color}]{display_name(version.value)}: {message}{suffix}[/{color}]")
    if result.stats is not None and verbose:
        console.print(
            f"[dim]{result.stats.files_written} files, "
            f"{format_size(result.stats.bytes_written)} written to {config.sdk_path(version)}[/dim]"
        )


def _fail(error: SDKError, console: Console, event: str, version: str) -> None:
    logger.error(event, version=version, kind=error.kind.value, stage=error.stage, error=str(error))
    console.print(f"[red]Error: {escape(error.describe())}[/red]")
    sys.exit(1)


def _run_download_flow(ctx: click.Context, version: str, update: bool) -> None:
    config, console, verbose = _get_context_objects(ctx)
    simulator = SimulatorVersion(version.lower())

    try:
        with SDKInstaller(simulator, config) as installer:
            if config.output_format == "rich":
                console.print(f"[blue]Checking {display_name(simulator.value)} SDK...[/blue]")
                with RichDownloadProgress(console) as progress:
                    result = installer.update(progress) if update else installer.install(progress)
            else:
                result = installer.update() if update else installer.install()
    except SDKError as e:
        _fail(e, console, "sdk_update_failed" if update else "sdk_install_failed", simulator.value)
        return

    if update and result.outcome == InstallOutcome.NOT_INSTALLED and config.output_format != "json":
        console.print("[cyan]SDK is not installed. To install it, run the install command[/cyan]")
        return
    _report(result, simulator, config, console, verbose)


@click.command()
@click.argument("version", type=VERSION_CHOICE)
@click.pass_context
def install(ctx: click.Context, version: str) -> None:
    """Install the latest SDK for a simulator version."""
    _run_download_flow(ctx, version, update=False)


@click.command()
@click.argument("version", type=VERSION_CHOICE)
@click.pass_context
def update(ctx: click.Context, version: str) -> None:
    """Update an installed SDK to the latest release."""
    _run_download_flow(ctx, version, update=True)


@click.command()
@click.argument("version", type=VERSION_CHOICE)
@click.pass_context
def remove(ctx: click.Context, version: str) -> None:
    """Remove the installed SDK for a simulator version."""
    config, console, verbose = _get_context_objects(ctx)
    simulator = SimulatorVersion(version.lower())

    try:
        with SDKInstaller(simulator, config) as installer:
            result = installer.remove()
    except SDKError as e:
        _fail(e, console, "sdk_remove_failed", simulator.value)
        return

    if result.outcome == InstallOutcome.NOT_INSTALLED and config.output_format != "json":
        console.print("[cyan]SDK is not installed, nothing to remove[/cyan]")
        return
    _report(result, simulator, config, console, verbose)


@click.command()
@click.argument("version", type=VERSION_CHOICE, required=False)
@click.pass_context
def info(ctx: click.Context, version: str | None) -> None:
    """Show installed and latest SDK versions.

    Without VERSION, both simulator versions are shown.
    """
    config, console, _ = _get_context_objects(ctx)
    simulators = [SimulatorVersion(version.lower())] if version else list(SimulatorVersion)

    rows = []
    try:
        for simulator in simulators:
            with SDKInstaller(simulator, config) as installer:
                installed = installer.installed_version()
                # Only installed SDKs are compared against the manifest
                latest = installer.latest_version() if installed is not None else None
                rows.append({
                    "simulator": simulator.value,
                    "installed": installed,
                    "latest": latest,
                    "path": str(installer.install_root),
                    "update_available": installed is not None and installed != latest,
                })
    except SDKError as e:
        _fail(e, console, "sdk_info_failed", version or "all")
        return

    if config.output_format == "json":
        _output_json({"sdks": rows})
        return

    if config.output_format == "plain":
        for row in rows:
            name = display_name(row["simulator"])
            if row["installed"] is None:
                console.print(f"{name} SDK is not installed")
            else:
                console.print(
                    f"{name} SDK version {row['installed']} is installed, "
                    f"latest available version is {row['latest']}"
                )
        return

    table = Table(title="MSFS SDK Installations")
    table.add_column("Simulator", style="cyan")
    table.add_column("Installed", style="magenta")
    table.add_column("Latest", style="green")
    table.add_column("Path", style="dim")

    for row in rows:
        installed = row["installed"] or "[dim]not installed[/dim]"
        latest = row["latest"] or "-"
        if row["update_available"]:
            latest = f"[yellow]{latest} (update available)[/yellow]"
        table.add_row(display_name(row["simulator"]), installed, latest, row["path"])

    console.print(table)
