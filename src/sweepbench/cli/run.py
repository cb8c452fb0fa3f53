# Copyright (c) Syntropy Systems
"""sweepbench run command."""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from sweepbench.bench import run_sweep
from sweepbench.config import DEFAULT_CONFIG_NAME, BenchConfig, ConfigError
from sweepbench.sweep import build_command, build_invocation, generate_combinations

console = Console()


def _configure_logging(verbose: bool) -> None:  # noqa: FBT001
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.DEBUG if verbose else logging.WARNING)


def run(
    config_file: Path = typer.Argument(
        Path(DEFAULT_CONFIG_NAME),
        help="Path to benchmark configuration YAML file",
        exists=True,
        dir_okay=False,
    ),
    dry_run: bool = typer.Option(
        False,
        "--dry-run", "-n",
        help="List the runs without starting anything",
    ),
    logs_dir: Path | None = typer.Option(
        None,
        "--logs-dir",
        help="Directory for per-run stdout/stderr logs (overrides config)",
    ),
    results_dir: Path | None = typer.Option(
        None,
        "--results-dir",
        help="Directory for HTML reports (overrides config)",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose", "-v",
        help="Show debug logging",
    ),
) -> None:
    r"""Run the benchmark for every parameter combination.

    Example bench.yaml:

    \b
        server_script: ../koboldcpp/koboldcpp.py
        prompt: "Once upon a time"
        default_parameters:
          - [models/model.gguf]
          - [--contextsize, "2048"]
        parameters:
          - name: gpulayers
            from: 0
            to: 40
            step: 10
          - name: threads
            values: [4, 8]

    Press Ctrl+C to stop; results so far are still saved.
    """
    _configure_logging(verbose)

    try:
        config = BenchConfig.from_yaml(config_file)
    except (OSError, ConfigError) as e:
        console.print(f"[red]Error loading config:[/red] {e}")
        raise typer.Exit(1) from e

    if logs_dir is not None:
        config.logs_dir = logs_dir
    if results_dir is not None:
        config.results_dir = results_dir

    if dry_run:
        _preview(config)
        return

    try:
        context = asyncio.run(run_sweep(config, console))
    except ConfigError as e:
        console.print(f"[red]Error generating combinations:[/red] {e}")
        raise typer.Exit(1) from e

    succeeded = sum(1 for outcome in context.results if outcome.ok)
    console.print(
        f"[bold]{succeeded}/{len(context.results)}[/bold] runs produced a result"
    )


def _preview(config: BenchConfig) -> None:
    """Show every run a sweep would start."""
    try:
        combinations = generate_combinations(config.parameters)
    except ConfigError as e:
        console.print(f"[red]Error generating combinations:[/red] {e}")
        raise typer.Exit(1) from e

    if not combinations:
        console.print("[yellow]No combinations generated from config[/yellow]")
        return

    table = Table(title=f"Sweep: {config.server_script}")
    table.add_column("#", style="dim")
    table.add_column("Parameters")
    table.add_column("Command")

    for i, combination in enumerate(combinations, start=1):
        param_str = ", ".join(f"{k}={v}" for k, v in combination.items())
        invocation = build_invocation(config.default_parameters, combination)
        # Truncate command if too long
        cmd_str = " ".join(build_command(config.python, config.server_script, invocation))
        if len(cmd_str) > 80:
            cmd_str = "..." + cmd_str[-77:]

        table.add_row(str(i), param_str, cmd_str)

    console.print(table)
    console.print(f"\n[bold]{len(combinations)} runs[/bold] would be started")
    console.print("\n[yellow]Dry run - nothing started[/yellow]")
