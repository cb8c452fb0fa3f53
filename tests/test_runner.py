# Copyright (c) Syntropy Systems
"""Tests for the run supervisor state machine."""

from __future__ import annotations

import asyncio
import signal
import sys

import pytest

from sweepbench.dispatch import DispatchError, WorkloadDispatcher
from sweepbench.models.outcome import Outcome
from sweepbench.runner import (
    ENDPOINT_NOT_FOUND,
    NO_RESULT,
    NONZERO_EXIT,
    PROMPT_FAILED,
    Phase,
    ProcessRegistry,
    RunRecord,
    RunSupervisor,
)
from sweepbench.sweep import build_command, build_invocation

from helpers import FAKE_SERVER, RecordingDispatch

ENDPOINT = "http://127.0.0.1:5001"


def make_supervisor(
    mode: str,
    dispatch: RecordingDispatch | None = None,
    registry: ProcessRegistry | None = None,
    exit_code: int = 0,
    kill_grace_period: float = 5.0,
    prompt_failure_grace: float = 5.0,
) -> RunSupervisor:
    combination = {"mode": mode}
    invocation = build_invocation([["--exit-code", str(exit_code)]], combination)
    command = build_command(sys.executable, str(FAKE_SERVER), invocation)
    return RunSupervisor(
        command,
        combination,
        dispatch if dispatch is not None else RecordingDispatch(),
        kill_grace_period=kill_grace_period,
        prompt_failure_grace=prompt_failure_grace,
        registry=registry if registry is not None else ProcessRegistry(),
    )


def supervise(mode: str, **kwargs: object) -> RunRecord:
    supervisor = make_supervisor(mode, **kwargs)  # type: ignore[arg-type]
    return asyncio.run(supervisor.run())


class TestSuccess:
    """Runs that reach the generation metrics line."""

    def test_success_sends_prompt_and_terminates(self) -> None:
        dispatch = RecordingDispatch()
        registry = ProcessRegistry()
        supervisor = make_supervisor("success", dispatch=dispatch, registry=registry)

        record = asyncio.run(supervisor.run())

        assert record.outcome.result == "success"
        assert record.outcome.time is not None
        assert record.outcome.time.startswith("CtxLimit: 120/2048")
        assert record.outcome.args == {"mode": "success"}
        assert dispatch.endpoints == [ENDPOINT]
        # Graceful terminate, not the watchdog
        assert record.exit_code == -signal.SIGTERM
        assert supervisor.state.phase is Phase.COMPLETED
        assert supervisor.state.endpoint == ENDPOINT
        assert supervisor.state.prompt_sent
        assert len(registry) == 0

    def test_output_is_captured(self) -> None:
        record = supervise("success")
        assert "Loading model..." in record.stdout
        assert "Please connect to custom endpoint at" in record.stdout
        assert "CtxLimit:" in record.stdout
        assert record.stderr == ""

    def test_metrics_split_across_chunks(self) -> None:
        record = supervise("split_metrics")
        assert record.outcome.result == "success"
        assert record.outcome.time is not None
        assert record.outcome.time.startswith("CtxLimit: 120/2048")

    def test_late_abort_does_not_change_outcome(self) -> None:
        record = supervise("abort_on_term")
        assert record.outcome.result == "success"
        assert "Generation Aborted" in record.stdout
        # The abort marker still force-kills the process
        assert record.exit_code == -signal.SIGKILL

    def test_watchdog_kills_stubborn_process(self) -> None:
        record = supervise("ignore_term", kill_grace_period=0.5)
        assert record.outcome.result == "success"
        assert record.exit_code == -signal.SIGKILL


class TestFailures:
    """Runs that end without a result."""

    def test_oom_during_init(self) -> None:
        dispatch = RecordingDispatch()
        record = supervise("oom_init", dispatch=dispatch)
        assert record.outcome == Outcome.failure({"mode": "oom_init"}, "OOM during init")
        assert dispatch.endpoints == []
        assert record.exit_code == -signal.SIGKILL
        assert "out of memory" in record.stderr

    def test_oom_without_trailing_newline(self) -> None:
        record = supervise("oom_init_unterminated")
        assert record.outcome.error == "OOM during init"
        assert record.exit_code == -signal.SIGKILL

    def test_oom_during_generation(self) -> None:
        record = supervise("oom_gen")
        assert record.outcome.error == "OOM during process/gen"
        assert record.exit_code == -signal.SIGKILL

    def test_exit_without_endpoint(self) -> None:
        record = supervise("exit_early", exit_code=1)
        assert record.outcome.error == ENDPOINT_NOT_FOUND
        assert record.exit_code == 1

    def test_exit_without_endpoint_even_when_clean(self) -> None:
        record = supervise("exit_early", exit_code=0)
        assert record.outcome.error == ENDPOINT_NOT_FOUND

    def test_nonzero_exit_after_ready(self) -> None:
        record = supervise("ready_exit", exit_code=3)
        assert record.outcome.error == NONZERO_EXIT

    def test_clean_exit_after_ready(self) -> None:
        record = supervise("ready_exit", exit_code=0)
        assert record.outcome.error == NO_RESULT

    def test_missing_interpreter(self) -> None:
        supervisor = RunSupervisor(
            ["/nonexistent/python", "-u", "server.py"],
            {"gpulayers": 1},
            RecordingDispatch(),
            registry=ProcessRegistry(),
        )
        record = asyncio.run(supervisor.run())
        assert record.outcome.result == "error"
        assert record.outcome.error is not None
        assert record.outcome.error.startswith("Failed to start process")
        assert record.exit_code is None


class TestAborted:
    """Runs the server cancels itself."""

    def test_abort_marker(self) -> None:
        supervisor = make_supervisor("aborted")
        record = asyncio.run(supervisor.run())
        assert record.outcome == Outcome.aborted({"mode": "aborted"})
        assert record.exit_code == -signal.SIGKILL
        assert supervisor.state.phase is Phase.ABORTED


class TestPromptFailure:
    """Runs whose prompt request fails."""

    def test_prompt_failure_after_grace(self) -> None:
        dispatch = RecordingDispatch(error=DispatchError("connection refused"))
        record = supervise("ready_hang", dispatch=dispatch, prompt_failure_grace=0.2)
        assert record.outcome.error == PROMPT_FAILED
        # The hanging server is stopped before the run returns
        assert record.exit_code == -signal.SIGTERM

    def test_result_within_grace_wins(self) -> None:
        dispatch = RecordingDispatch(error=DispatchError("connection reset"))
        record = supervise("success", dispatch=dispatch, prompt_failure_grace=3.0)
        assert record.outcome.result == "success"

    def test_any_dispatch_error_is_a_prompt_failure(self) -> None:
        dispatch = RecordingDispatch(error=RuntimeError("unexpected"))
        record = supervise("ready_hang", dispatch=dispatch, prompt_failure_grace=0.2)
        assert record.outcome.error == PROMPT_FAILED

    def test_unusable_endpoint_is_a_prompt_failure(self) -> None:
        async def scenario() -> RunRecord:
            async with WorkloadDispatcher("Hello") as dispatcher:
                supervisor = make_supervisor(
                    "ready_noisy_hang",
                    dispatch=dispatcher.dispatch,  # type: ignore[arg-type]
                    prompt_failure_grace=0.2,
                )
                return await asyncio.wait_for(supervisor.run(), timeout=10)

        record = asyncio.run(scenario())
        assert record.outcome.error == PROMPT_FAILED
        assert record.exit_code == -signal.SIGTERM


class TestCancellation:
    """Interrupting a run."""

    def test_cancel_kills_server(self) -> None:
        registry = ProcessRegistry()
        supervisor = make_supervisor("hang", registry=registry)

        async def scenario() -> None:
            task = asyncio.create_task(supervisor.run())
            while supervisor.pid is None or "Loading model" not in supervisor.state.stdout:
                await asyncio.sleep(0.05)
            _ = task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        asyncio.run(scenario())
        assert supervisor.exit_code == -signal.SIGKILL
        assert len(registry) == 0

    def test_registry_kill_all(self) -> None:
        registry = ProcessRegistry()
        supervisor = make_supervisor("hang", registry=registry)

        async def scenario() -> RunRecord:
            task = asyncio.create_task(supervisor.run())
            while supervisor.pid is None:
                await asyncio.sleep(0.05)
            assert len(registry) == 1
            assert registry.kill_all() == 1
            return await task

        record = asyncio.run(scenario())
        assert record.outcome.error == ENDPOINT_NOT_FOUND
        assert record.exit_code == -signal.SIGKILL
