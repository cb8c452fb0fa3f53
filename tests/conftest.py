# Copyright (c) Syntropy Systems
"""Pytest fixtures for sweepbench tests."""

from __future__ import annotations

import os
import sys
import tempfile
from collections.abc import Generator
from pathlib import Path

import pytest
import yaml

from helpers import FAKE_SERVER

# Store original cwd at module load time
_original_cwd = Path.cwd()


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def bench_project(temp_dir: Path) -> Generator[Path, None, None]:
    """A working directory holding a bench.yaml that drives the fake server."""
    config = {
        "python": sys.executable,
        "server_script": str(FAKE_SERVER),
        "prompt": "Once upon a time",
        "prompt_parameters": {"max_length": 16},
        "default_parameters": [["--exit-code", "0"]],
        "parameters": [
            {"name": "mode", "values": ["success", "oom_init"]},
        ],
        "kill_grace_period": 1,
        "prompt_failure_grace": 2,
    }
    with (temp_dir / "bench.yaml").open("w") as f:
        yaml.safe_dump(config, f)

    os.chdir(temp_dir)

    yield temp_dir

    # Always return to original cwd
    os.chdir(_original_cwd)
