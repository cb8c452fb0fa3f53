# Copyright (c) Syntropy Systems
"""HTML report of a sweep's results."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from jinja2 import Environment

from sweepbench.sweep import format_value

if TYPE_CHECKING:
    from pathlib import Path

    from sweepbench.models.base import ParameterSet
    from sweepbench.models.outcome import Outcome

logger = logging.getLogger(__name__)

REPORT_TEMPLATE = """\
<html><head>
<title>Results at {{ generated_at }}</title>
</head><body>
<style>
  body { background: #000; color: #fff; font-family: monospace; }
  table { border-collapse: collapse; }
  th, td { border: 1px solid #fff; padding: 0.5rem; text-align: left; }
  .err { opacity: 0.5; }
</style>
<h1>Results</h1>
<p>Generated at {{ generated_at }}</p>
<pre><code>{{ command_line }}</code></pre>
<table>
<tr>
<th>Result</th>
<th>Args</th>
<th>Time</th>
</tr>
{% for outcome in results %}
<tr class="{{ outcome.result }}">
<td>{{ "✅" if outcome.ok else "❌" }}</td>
<td>{{ outcome.args | shell_args }}</td>
<td>{% if outcome.time %}{{ outcome.time }}{% elif outcome.error %}<span class='err'>{{ outcome.error }}</span>{% elif outcome.result == "aborted" %}<span class='err'>Generation aborted</span>{% else %}?{% endif %}</td>
</tr>
{% endfor %}
</table>
</body></html>
"""


def shell_args(combination: ParameterSet) -> str:
    """Render a combination as it appears on the server's command line."""
    return " ".join(
        f"--{name} {format_value(value)}" for name, value in combination.items()
    )


_env = Environment(autoescape=True, keep_trailing_newline=True)
_env.filters["shell_args"] = shell_args
_template = _env.from_string(REPORT_TEMPLATE)


def utc_timestamp() -> str:
    """ISO 8601 UTC timestamp with millisecond precision."""
    now = datetime.now(timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def render_report(results: list[Outcome], command_line: str, generated_at: str) -> str:
    """Render results as a standalone HTML page."""
    return _template.render(
        results=results,
        command_line=command_line,
        generated_at=generated_at,
    )


@dataclass
class SweepContext:
    """Process wide sweep state shared by the loop and the interrupt path.

    Only the sweep loop appends to ``results``.
    """

    command_line: str
    results: list[Outcome] = field(default_factory=list)


class ReportWriter:
    """Collects outcomes and writes timestamped HTML reports."""

    context: SweepContext
    results_dir: Path

    def __init__(self, context: SweepContext, results_dir: Path) -> None:
        self.context = context
        self.results_dir = results_dir

    def record(self, outcome: Outcome) -> None:
        """Remember an outcome for the next report."""
        self.context.results.append(outcome)

    def flush(self) -> Path:
        """Write every recorded outcome to a new report file.

        Never overwrites an earlier report; returns the path written.
        """
        self.results_dir.mkdir(parents=True, exist_ok=True)

        generated_at = utc_timestamp()
        path = self.results_dir / f"{generated_at}.html"
        suffix = 1
        while path.exists():
            path = self.results_dir / f"{generated_at}-{suffix}.html"
            suffix += 1

        html = render_report(
            list(self.context.results), self.context.command_line, generated_at
        )
        _ = path.write_text(html, encoding="utf-8")
        logger.debug("Wrote report with %d result(s) to %s", len(self.context.results), path)
        return path
