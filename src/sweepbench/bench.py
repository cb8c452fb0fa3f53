# Copyright (c) Syntropy Systems
"""Sequential benchmark sweep over every parameter combination."""
from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from typing import TYPE_CHECKING

from sweepbench.dispatch import WorkloadDispatcher
from sweepbench.report import ReportWriter, SweepContext, shell_args
from sweepbench.run_logs import RunLogger
from sweepbench.runner import RunSupervisor, live_processes
from sweepbench.sweep import build_command, build_invocation, generate_combinations

if TYPE_CHECKING:
    from rich.console import Console

    from sweepbench.config import BenchConfig
    from sweepbench.models.outcome import Outcome

logger = logging.getLogger(__name__)

INTERRUPT_SIGNALS = (signal.SIGINT, signal.SIGTERM)


def format_outcome(outcome: Outcome) -> str:
    """Rich markup line describing one outcome."""
    args = shell_args(outcome.args)
    if outcome.result == "success":
        return f"[green]success[/green] {args} [dim]{outcome.time}[/dim]"
    if outcome.result == "aborted":
        return f"[yellow]aborted[/yellow] {args}"
    return f"[red]error[/red] {args} [dim]{outcome.error}[/dim]"


async def run_sweep(config: BenchConfig, console: Console) -> SweepContext:
    """Run the server once per combination, then write the report.

    Configuration errors are raised before anything starts. SIGINT or
    SIGTERM stop the sweep: running servers are killed and the results so
    far are written before returning normally.
    """
    combinations = generate_combinations(config.parameters)

    context = SweepContext(command_line=config.command_line)
    writer = ReportWriter(context, config.results_dir)
    run_logger = RunLogger(config.logs_dir)

    loop = asyncio.get_running_loop()
    sweep_task = asyncio.current_task()
    interrupted = False

    def _signal_handler() -> None:
        nonlocal interrupted
        if not interrupted:
            console.print("\n[yellow]Interrupted, saving results...[/yellow]")
        interrupted = True
        if sweep_task is not None:
            _ = sweep_task.cancel()

    installed: list[signal.Signals] = []
    for sig in INTERRUPT_SIGNALS:
        # Not available on Windows event loops
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(sig, _signal_handler)
            installed.append(sig)

    try:
        async with WorkloadDispatcher(
            config.prompt,
            config.prompt_parameters,
            timeout=config.request_timeout,
        ) as dispatcher:
            for index, combination in enumerate(combinations, start=1):
                invocation = build_invocation(config.default_parameters, combination)
                command = build_command(config.python, config.server_script, invocation)
                console.print(
                    f"\n[blue]Run {index}/{len(combinations)}:[/blue] {' '.join(command)}"
                )

                supervisor = RunSupervisor(
                    command,
                    combination,
                    dispatcher.dispatch,
                    kill_grace_period=config.kill_grace_period,
                    prompt_failure_grace=config.prompt_failure_grace,
                )
                record = await supervisor.run()

                _ = run_logger.persist(combination, record.stdout, record.stderr)
                writer.record(record.outcome)
                console.print(format_outcome(record.outcome))

    except asyncio.CancelledError:
        if not interrupted:
            raise
        killed = live_processes.kill_all()
        if killed:
            logger.info("Killed %d server process(es)", killed)
        if context.results:
            path = writer.flush()
            console.print(f"[green]Results saved:[/green] {path}")
        return context
    finally:
        for sig in installed:
            _ = loop.remove_signal_handler(sig)

    path = writer.flush()
    console.print(f"\n[green]Results saved:[/green] {path}")
    return context
