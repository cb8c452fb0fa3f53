# Copyright (c) Syntropy Systems
"""Terminal result of a single benchmark run."""

from __future__ import annotations

from typing import Literal

from typing_extensions import TypeAlias

from .base import FrozenModel, JSONValue

OutcomeKind: TypeAlias = Literal["success", "error", "aborted"]


class Outcome(FrozenModel):
    """Classification of one run, tied to the combination that produced it."""

    result: OutcomeKind
    args: dict[str, JSONValue]
    time: str | None = None
    error: str | None = None

    @classmethod
    def success(cls, args: dict[str, JSONValue], time: str) -> Outcome:
        """Build a success outcome carrying the generation metrics line."""
        return cls(result="success", args=args, time=time)

    @classmethod
    def failure(cls, args: dict[str, JSONValue], reason: str) -> Outcome:
        """Build an error outcome with a human readable reason."""
        return cls(result="error", args=args, error=reason)

    @classmethod
    def aborted(cls, args: dict[str, JSONValue]) -> Outcome:
        """Build an outcome for a generation the server cancelled."""
        return cls(result="aborted", args=args)

    @property
    def ok(self) -> bool:
        return self.result == "success"

    def describe(self) -> str:
        """One-line summary used for console output."""
        if self.result == "success":
            return self.time or ""
        if self.result == "aborted":
            return "Generation aborted"
        return self.error or "?"
