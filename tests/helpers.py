# Copyright (c) Syntropy Systems
"""Shared test helpers."""

from __future__ import annotations

from pathlib import Path

FAKE_SERVER = Path(__file__).parent / "fake_server.py"


class RecordingDispatch:
    """Dispatch stand-in that remembers endpoints and optionally fails."""

    def __init__(self, error: Exception | None = None) -> None:
        self.endpoints: list[str] = []
        self.error = error

    async def __call__(self, endpoint: str) -> None:
        self.endpoints.append(endpoint)
        if self.error is not None:
            raise self.error
