# Copyright (c) Syntropy Systems
"""Per-run stdout/stderr log files."""
from __future__ import annotations

from typing import TYPE_CHECKING

from sweepbench.sweep import format_value

if TYPE_CHECKING:
    from pathlib import Path

    from sweepbench.models.base import ParameterSet


def log_stem(combination: ParameterSet) -> str:
    """File name stem for a combination, e.g. ``gpulayers-10_threads-4``."""
    return "_".join(f"{name}-{format_value(value)}" for name, value in combination.items())


class RunLogger:
    """Writes the raw output of each run next to the others."""

    logs_dir: Path

    def __init__(self, logs_dir: Path) -> None:
        self.logs_dir = logs_dir

    def path_for(self, combination: ParameterSet, stream: str) -> Path:
        """Log path of one stream of one combination."""
        return self.logs_dir / f"{log_stem(combination)}.{stream}.log"

    def persist(
        self,
        combination: ParameterSet,
        stdout: str,
        stderr: str,
    ) -> tuple[Path, Path]:
        """Write both streams verbatim, replacing logs of an earlier run.

        Returns the stdout and stderr log paths.
        """
        self.logs_dir.mkdir(parents=True, exist_ok=True)

        stdout_path = self.path_for(combination, "stdout")
        stderr_path = self.path_for(combination, "stderr")
        _ = stdout_path.write_text(stdout, encoding="utf-8")
        _ = stderr_path.write_text(stderr, encoding="utf-8")
        return stdout_path, stderr_path
