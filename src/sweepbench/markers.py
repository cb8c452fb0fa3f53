# Copyright (c) Syntropy Systems
"""Text markers the inference server prints on its standard streams.

These patterns are the whole contract with the server process. They match
koboldcpp's console output and must not be loosened without checking the
real output format.
"""
from __future__ import annotations

import re

READY_PATTERN = re.compile(r"Please connect to custom endpoint at (.*)")
METRICS_PATTERN = re.compile(r"^(CtxLimit:.*)$", re.MULTILINE)
ABORTED_MARKER = "Generation Aborted"
OOM_PATTERN = re.compile(r"out of memory\r?$", re.MULTILINE)


def find_endpoint(text: str) -> str | None:
    """Return the endpoint URL announced in ``text``, if any."""
    match = READY_PATTERN.search(text)
    if match is None:
        return None
    return match.group(1).strip() or None


def find_metrics_line(text: str) -> str | None:
    """Return the first ``CtxLimit:`` line in ``text``, if any."""
    match = METRICS_PATTERN.search(text)
    if match is None:
        return None
    return match.group(1).rstrip("\r")


def is_aborted(text: str) -> bool:
    return ABORTED_MARKER in text


def is_out_of_memory(text: str) -> bool:
    """Whether any line of ``text`` ends with an out of memory message.

    The end of ``text`` counts as a line end, so a chunk cut right after
    the message matches too.
    """
    return OOM_PATTERN.search(text) is not None


class LineScanner:
    """Incremental splitter that only releases complete lines.

    Chunks from a pipe can end mid-line, so the trailing partial line is
    held back until its newline arrives or the stream ends.
    """

    def __init__(self) -> None:
        self._pending = ""

    def feed(self, chunk: str) -> str:
        """Add ``chunk`` and return the newly completed lines (may be empty)."""
        data = self._pending + chunk
        cut = data.rfind("\n")
        if cut == -1:
            self._pending = data
            return ""
        self._pending = data[cut + 1:]
        return data[:cut + 1]

    def flush(self) -> str:
        """Return whatever partial line is left, at end of stream."""
        data, self._pending = self._pending, ""
        return data
