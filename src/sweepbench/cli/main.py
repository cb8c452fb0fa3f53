# Copyright (c) Syntropy Systems
"""Main CLI entry point for sweepbench."""

import typer

from sweepbench.cli.init_cmd import init
from sweepbench.cli.run import run

app = typer.Typer(
    name="sweepbench",
    help=(
        "Parameter sweep benchmarks for local inference servers. Start the "
        "server once per combination, send one prompt, report the results."
    ),
    no_args_is_help=True,
    add_completion=False,
)

# Register commands
_ = app.command()(init)
_ = app.command()(run)


if __name__ == "__main__":
    app()
