# Copyright (c) Syntropy Systems
"""Inference server supervision with orphan prevention."""
from __future__ import annotations

import asyncio
import atexit
import codecs
import contextlib
import ctypes
import enum
import logging
import os
import signal
import sys
from dataclasses import dataclass
from typing import TYPE_CHECKING

from sweepbench import markers
from sweepbench.models.outcome import Outcome

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Sequence

    from sweepbench.models.base import ParameterSet

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 4096

# Seconds to keep reading the pipes after the process has exited
DRAIN_TIMEOUT = 1.0

ENDPOINT_NOT_FOUND = "Endpoint not found"
NONZERO_EXIT = "Process exited with non-zero exit code"
NO_RESULT = "Process exited without error, but no result was found"
PROMPT_FAILED = "Unknown -- prompt failed"


def setup_pdeathsig() -> None:
    """Set PDEATHSIG so the server dies when the runner dies.

    Only works on Linux.
    """
    if sys.platform != "linux":
        return
    try:
        libc = ctypes.CDLL("libc.so.6", use_errno=True)
        pr_set_pdeathsig = 1
        libc.prctl(pr_set_pdeathsig, signal.SIGKILL)
    except (AttributeError, OSError):
        # Can't set PDEATHSIG, continue without it
        return


def _signal_group(process: asyncio.subprocess.Process, sig: int) -> None:
    """Send ``sig`` to the process group of a still running process."""
    if process.returncode is not None:
        return
    try:
        pgid = os.getpgid(process.pid)
    except (OSError, ProcessLookupError):
        return
    with contextlib.suppress(OSError, ProcessLookupError):
        os.killpg(pgid, sig)


class ProcessRegistry:
    """Server processes that are still alive, for cleanup on exit."""

    def __init__(self) -> None:
        self._processes: set[asyncio.subprocess.Process] = set()

    def add(self, process: asyncio.subprocess.Process) -> None:
        self._processes.add(process)

    def discard(self, process: asyncio.subprocess.Process) -> None:
        self._processes.discard(process)

    def __len__(self) -> int:
        return len(self._processes)

    def kill_all(self) -> int:
        """SIGKILL every tracked process group. Returns how many were signalled."""
        killed = 0
        for process in list(self._processes):
            if process.returncode is None:
                _signal_group(process, signal.SIGKILL)
                killed += 1
        return killed


live_processes = ProcessRegistry()
_ = atexit.register(live_processes.kill_all)


class Phase(str, enum.Enum):
    """Lifecycle of one supervised run."""

    STARTING = "starting"
    AWAITING_ENDPOINT = "awaiting_endpoint"
    READY = "ready"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"

    @property
    def terminal(self) -> bool:
        return self in (Phase.COMPLETED, Phase.FAILED, Phase.ABORTED)


@dataclass
class RunState:
    """Mutable state of the run currently being supervised."""

    phase: Phase = Phase.STARTING
    endpoint: str | None = None
    prompt_sent: bool = False
    done: bool = False
    stdout: str = ""
    stderr: str = ""


@dataclass(frozen=True)
class RunRecord:
    """What a finished run leaves behind."""

    outcome: Outcome
    stdout: str
    stderr: str
    exit_code: int | None


class RunSupervisor:
    """Runs one server process and classifies how it ended.

    Stdout, stderr, process exit and two timers all feed the same state
    machine on one event loop. The first handler to reach a terminal state
    settles the outcome; every later event is ignored.

    Features:
    - Uses start_new_session=True so signals reach the whole process group
    - Sets PDEATHSIG on Linux to prevent orphans
    - Graceful terminate with a forced kill after a grace period
    """

    command: list[str]
    combination: ParameterSet
    kill_grace_period: float
    prompt_failure_grace: float
    state: RunState
    _process: asyncio.subprocess.Process | None
    _outcome: asyncio.Future[Outcome] | None
    _watchdog: asyncio.TimerHandle | None
    _dispatch_task: asyncio.Task[None] | None

    def __init__(
        self,
        command: Sequence[str],
        combination: ParameterSet,
        dispatch: Callable[[str], Awaitable[None]],
        *,
        kill_grace_period: float = 5.0,
        prompt_failure_grace: float = 5.0,
        registry: ProcessRegistry | None = None,
    ) -> None:
        """Initialize a run supervisor.

        Args:
            command: Full argv of the server process (no shell)
            combination: Parameter combination this run benchmarks
            dispatch: Coroutine function sending the prompt to an endpoint
            kill_grace_period: Seconds between SIGTERM and SIGKILL
            prompt_failure_grace: Seconds to wait for a late marker after
                the prompt request fails
            registry: Where live processes are tracked for cleanup

        """
        self.command = list(command)
        self.combination = combination
        self._dispatch = dispatch
        self.kill_grace_period = kill_grace_period
        self.prompt_failure_grace = prompt_failure_grace
        self._registry = registry if registry is not None else live_processes

        self.state = RunState()
        self._process = None
        self._outcome = None
        self._watchdog = None
        self._dispatch_task = None

    async def run(self) -> RunRecord:
        """Start the server and wait for its outcome.

        Returns once an outcome is settled and the process has exited.
        """
        self._outcome = asyncio.get_running_loop().create_future()

        try:
            self._process = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,  # Creates new process group
                preexec_fn=setup_pdeathsig if sys.platform == "linux" else None,  # noqa: PLW1509
            )
        except OSError as e:
            logger.warning("Could not start %s: %s", self.command[0], e)
            _ = self._settle(
                Outcome.failure(self.combination, f"Failed to start process: {e}"),
                Phase.FAILED,
            )
            return RunRecord(
                outcome=self._outcome.result(), stdout="", stderr="", exit_code=None
            )

        self._registry.add(self._process)
        self.state.phase = Phase.AWAITING_ENDPOINT
        logger.debug("Server started with pid %d", self._process.pid)

        assert self._process.stdout is not None
        assert self._process.stderr is not None
        readers = [
            asyncio.create_task(self._pump(self._process.stdout, self._on_stdout)),
            asyncio.create_task(self._pump(self._process.stderr, self._on_stderr)),
        ]
        exit_watcher = asyncio.create_task(self._watch_exit(readers))

        try:
            outcome = await self._outcome
        except asyncio.CancelledError:
            self._kill()
            raise
        finally:
            await self._shutdown(readers, exit_watcher)

        return RunRecord(
            outcome=outcome,
            stdout=self.state.stdout,
            stderr=self.state.stderr,
            exit_code=self._process.returncode,
        )

    @property
    def pid(self) -> int | None:
        """Get the server process ID."""
        if self._process is None:
            return None
        return self._process.pid

    @property
    def exit_code(self) -> int | None:
        """Get the exit code if finished (negative signal number if killed)."""
        if self._process is None:
            return None
        return self._process.returncode

    # Event sources

    async def _pump(
        self,
        stream: asyncio.StreamReader,
        handler: Callable[[str, str], None],
    ) -> None:
        """Decode a pipe incrementally and hand every chunk to ``handler``.

        The handler gets the raw text (for the logs) and the lines completed
        by that chunk (for marker scanning).
        """
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        scanner = markers.LineScanner()
        while True:
            chunk = await stream.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            text = decoder.decode(chunk)
            handler(text, scanner.feed(text))

        tail = decoder.decode(b"", final=True)
        remaining = scanner.feed(tail) + scanner.flush()
        if tail or remaining:
            handler(tail, remaining)

    async def _watch_exit(self, readers: list[asyncio.Task[None]]) -> None:
        assert self._process is not None
        returncode = await self._process.wait()
        # Markers still sitting in the pipes take precedence over the exit
        _ = await asyncio.wait(readers, timeout=DRAIN_TIMEOUT)
        logger.debug("Server exited with code %s", returncode)
        self._on_exit(returncode)

    # Transitions

    def _on_stdout(self, raw: str, lines: str) -> None:
        self.state.stdout += raw
        if not lines:
            return

        if self.state.endpoint is None:
            endpoint = markers.find_endpoint(lines)
            if endpoint is not None:
                self._on_ready(endpoint)

        if self.state.endpoint is None:
            return

        metrics = markers.find_metrics_line(lines)
        if metrics is not None:
            self._terminate()
            _ = self._settle(Outcome.success(self.combination, metrics), Phase.COMPLETED)
            return

        if markers.is_aborted(lines):
            self._kill()
            _ = self._settle(Outcome.aborted(self.combination), Phase.ABORTED)

    def _on_stderr(self, raw: str, lines: str) -> None:
        self.state.stderr += raw
        # A server may stall right after the message, before any newline
        if markers.is_out_of_memory(lines) or markers.is_out_of_memory(raw):
            stage = "process/gen" if self.state.prompt_sent else "init"
            _ = self._settle(
                Outcome.failure(self.combination, f"OOM during {stage}"), Phase.FAILED
            )
            self._kill()

    def _on_ready(self, endpoint: str) -> None:
        self.state.endpoint = endpoint
        if not self.state.done:
            self.state.phase = Phase.READY
        logger.info("Endpoint: %s", endpoint)

        # Set before the request completes so OOM can tell init from generation
        self.state.prompt_sent = True
        self._dispatch_task = asyncio.create_task(self._send_prompt(endpoint))

    async def _send_prompt(self, endpoint: str) -> None:
        try:
            await self._dispatch(endpoint)
        except Exception as e:
            # Any rejection of the request ends the run the same way
            if self.state.done:
                return
            logger.warning("%s", e)
            # The request often fails because the server is shutting down
            # after a result; give the stream handlers time to see it.
            await asyncio.sleep(self.prompt_failure_grace)
            _ = self._settle(
                Outcome.failure(self.combination, PROMPT_FAILED), Phase.FAILED
            )

    def _on_exit(self, returncode: int) -> None:
        if self.state.done:
            return

        if self.state.endpoint is None:
            reason = ENDPOINT_NOT_FOUND
        elif returncode != 0:
            reason = NONZERO_EXIT
        else:
            reason = NO_RESULT
        _ = self._settle(Outcome.failure(self.combination, reason), Phase.FAILED)

    def _settle(self, outcome: Outcome, phase: Phase) -> bool:
        """Record the terminal outcome unless one was already recorded."""
        if self.state.done:
            logger.debug("Ignoring late %s outcome", outcome.result)
            return False

        self.state.done = True
        self.state.phase = phase
        if self._outcome is not None and not self._outcome.done():
            self._outcome.set_result(outcome)
        return True

    # Process control

    def _terminate(self) -> None:
        """SIGTERM the server and arm the SIGKILL watchdog."""
        if self._process is None or self._process.returncode is not None:
            return
        _signal_group(self._process, signal.SIGTERM)
        if self._watchdog is None:
            self._watchdog = asyncio.get_running_loop().call_later(
                self.kill_grace_period, self._force_kill
            )

    def _force_kill(self) -> None:
        if self._process is None or self._process.returncode is not None:
            return
        logger.warning(
            "Server did not exit within %.1fs, killing it", self.kill_grace_period
        )
        _signal_group(self._process, signal.SIGKILL)

    def _kill(self) -> None:
        if self._process is not None:
            _signal_group(self._process, signal.SIGKILL)

    async def _shutdown(
        self,
        readers: list[asyncio.Task[None]],
        exit_watcher: asyncio.Task[None],
    ) -> None:
        """Make sure the server is gone and nothing of this run keeps running."""
        assert self._process is not None
        if self._process.returncode is None:
            self._terminate()

        try:
            await exit_watcher
        finally:
            tasks = list(readers)
            if self._dispatch_task is not None:
                tasks.append(self._dispatch_task)
            for task in tasks:
                _ = task.cancel()
            _ = await asyncio.gather(*tasks, return_exceptions=True)

            if self._watchdog is not None:
                self._watchdog.cancel()
            self._registry.discard(self._process)
