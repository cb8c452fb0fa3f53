# Copyright (c) Syntropy Systems
"""sweepbench init command."""

from pathlib import Path

import typer
import yaml
from rich.console import Console

from sweepbench.config import DEFAULT_CONFIG_NAME, default_config

console = Console()


def init(
    path: Path = typer.Argument(
        Path(),
        help="Directory to write the config into (default: current directory)",
    ),
    force: bool = typer.Option(
        False,
        "--force", "-f",
        help="Overwrite an existing config file",
    ),
) -> None:
    """Write a starter benchmark configuration.

    Edit server_script, the model path in default_parameters and the
    parameters to sweep before running.
    """
    target = path.resolve()
    config_path = target / DEFAULT_CONFIG_NAME

    if config_path.exists() and not force:
        console.print(f"[yellow]Already exists:[/yellow] {config_path}")
        console.print("  [dim]Use --force to overwrite[/dim]")
        return

    target.mkdir(parents=True, exist_ok=True)
    with config_path.open("w") as f:
        yaml.safe_dump(default_config(), f, default_flow_style=False, sort_keys=False)

    console.print(f"[green]Wrote config:[/green] {config_path}")
    console.print("  [dim]next:[/dim] sweepbench run --dry-run")
