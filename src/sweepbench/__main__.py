# Copyright (c) Syntropy Systems
"""Allow ``python -m sweepbench``."""

from sweepbench.cli.main import app

app()
