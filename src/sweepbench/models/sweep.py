# Copyright (c) Syntropy Systems
"""Pydantic models for sweep parameter specifications."""

from __future__ import annotations

from pydantic import Field

from .base import BenchBaseModel, JSONValue


class ParameterSpec(BenchBaseModel):
    """One swept parameter.

    Either an explicit ``values`` list or an inclusive numeric range given by
    ``from``/``to`` and an optional ``step`` (default 1).
    """

    name: str
    values: list[JSONValue] | None = None
    start: int | float | None = Field(default=None, alias="from")
    to: int | float | None = None
    step: int | float = 1

    @property
    def is_range(self) -> bool:
        """Whether the spec describes a numeric range."""
        return self.start is not None or self.to is not None
