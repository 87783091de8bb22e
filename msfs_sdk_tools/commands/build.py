"""Build command: compile a crate against an installed SDK."""

from __future__ import annotations

import sys
from pathlib import Path

import click
import structlog
from rich.console import Console
from rich.markup import escape

from msfs_sdk_tools.commands.sdk import VERSION_CHOICE
from msfs_sdk_tools.core.build import run_cargo_build
from msfs_sdk_tools.core.config import AppConfig
from msfs_sdk_tools.core.install_state import InstallStateStore
from msfs_sdk_tools.core.types import SimulatorVersion
from msfs_sdk_tools.core.utils import display_name

logger = structlog.get_logger()


@click.command()
@click.argument("version", type=VERSION_CHOICE)
@click.option(
    "--crate",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=None,
    help="Crate directory (default: current directory)",
)
@click.pass_context
def build(ctx: click.Context, version: str, crate: Path | None) -> None:
    """Build the crate for a simulator version with cargo."""
    config: AppConfig = ctx.obj["config"]
    console: Console = ctx.obj["console"]
    simulator = SimulatorVersion(version.lower())

    sdk_path = config.sdk_path(simulator)
    store = InstallStateStore(config.sdk.version_file_name)
    if store.read(sdk_path) is None:
        console.print(
            f"[red]Error: {display_name(simulator.value)} SDK is not installed. "
            f"Run the install command first[/red]"
        )
        sys.exit(1)

    console.print(f"[blue]Building for {display_name(simulator.value)}...[/blue]")
    try:
        result = run_cargo_build(sdk_path, config.wasi_sysroot(simulator), cwd=crate)
    except OSError as e:
        logger.error("cargo_build_failed", error=str(e))
        console.print(f"[red]Error running cargo: {escape(str(e))}[/red]")
        sys.exit(1)

    if result.stdout:
        click.echo(result.stdout, nl=False)
    if result.returncode != 0:
        if result.stderr:
            click.echo(result.stderr, err=True, nl=False)
        console.print(f"[red]cargo build failed with exit code {result.returncode}[/red]")
        sys.exit(result.returncode)

    console.print("[green]Build finished[/green]")
