"""
sweepbench - Parameter sweep benchmarks for local inference servers.

Start the server once per combination, send one prompt, report the results.
"""

from sweepbench.bench import run_sweep
from sweepbench.config import BenchConfig, ConfigError
from sweepbench.models.outcome import Outcome

__version__ = "0.1.0"
__all__ = ["BenchConfig", "ConfigError", "Outcome", "run_sweep", "__version__"]
