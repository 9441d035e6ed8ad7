"""Output rendering for the ``qgate`` CLI.

A thin layer over ``rich``: key/value lines, section headers and tables.
Colour is disabled by ``--no-color`` or a non-empty ``NO_COLOR`` environment
variable, and whenever stdout is not a terminal.
"""

from __future__ import annotations

import os
import sys
from typing import TYPE_CHECKING

from rich.console import Console
from rich.table import Table
from rich.text import Text

from quality_gate.pipeline.report import RunVerdict
from quality_gate.pipeline.stage import StageStatus

if TYPE_CHECKING:
    from collections.abc import Sequence

    from quality_gate.pipeline.graph import PipelineGraph
    from quality_gate.pipeline.report import RunReport

_STATUS_STYLES = {
    StageStatus.SUCCEEDED: "green",
    StageStatus.FAILED: "bold red",
    StageStatus.SKIPPED: "yellow",
}
_VERDICT_STYLES = {
    RunVerdict.SUCCESS: "bold green",
    RunVerdict.PARTIAL_FAILURE: "bold yellow",
    RunVerdict.FAILURE: "bold red",
}


def _color_allowed(no_color_flag: bool) -> bool:
    """Check whether color output should be attempted."""

    if no_color_flag:
        return False
    if os.environ.get("NO_COLOR", ""):
        return False
    return hasattr(sys.stdout, "isatty") and sys.stdout.isatty()


class CLIRenderer:
    """CLI output renderer backed by a ``rich`` console."""

    def __init__(self, *, no_color: bool = False, verbose: bool = False) -> None:
        self.verbose = verbose
        self._color = _color_allowed(no_color)
        self._console = Console(
            no_color=not self._color,
            highlight=False,
            soft_wrap=True,
            force_terminal=self._color or None,
        )

    @property
    def color(self) -> bool:
        return self._color

    def heading(self, text: str) -> None:
        self._console.print(Text(text, style="bold"))

    def kv(self, key: str, value: object, *, style: str | None = None) -> None:
        line = Text(f"{key}: ")
        line.append(str(value), style=style or "")
        self._console.print(line)

    def text(self, line: str) -> None:
        self._console.print(Text(line))

    def section(self, title: str) -> None:
        self._console.print()
        self._console.print(Text(title, style="bold"))

    def warning(self, text: str) -> None:
        self._console.print(Text(f"  Warning: {text}", style="yellow"))

    def items(self, entries: Sequence[str], *, prefix: str = "- ") -> None:
        for entry in entries:
            self._console.print(Text(f"  {prefix}{entry}"))

    def table(
        self,
        headers: Sequence[str],
        rows: Sequence[Sequence[object]],
        *,
        title: str | None = None,
    ) -> None:
        """Print a table; rows may hold plain values or ``rich.text.Text`` cells."""

        if not rows:
            return
        if title:
            self.section(title)
        table = Table(show_edge=False, box=None, pad_edge=False, header_style="bold")
        for header in headers:
            table.add_column(header, overflow="fold")
        for row in rows:
            table.add_row(*(cell if isinstance(cell, Text) else Text(str(cell)) for cell in row))
        self._console.print(table)

    def ok(self, label: str) -> None:
        self._console.print(Text.assemble(("  OK  ", "green"), label))

    def fail(self, label: str) -> None:
        self._console.print(Text.assemble(("  FAIL  ", "bold red"), label))

    def plan(self, graph: PipelineGraph) -> None:
        """Ready sets followed by the dependency table."""

        self.section("Ready sets:")
        for index, ready_set in enumerate(graph.ready_sets(), start=1):
            self.text(f"  {index}. {', '.join(ready_set)}")
        rows = [
            [
                stage.name,
                ", ".join(sorted(stage.depends_on)) or "-",
                ", ".join(stage.requires) or "-",
                "yes" if stage.allow_failure else "no",
                " && ".join(" ".join(argv) for argv in stage.argvs),
            ]
            for stage in graph
        ]
        headers = ["STAGE", "DEPENDS ON", "REQUIRES", "ALLOW FAILURE", "COMMAND"]
        self.table(headers, rows, title="Stages:")

    def report(self, report: RunReport, *, strict: bool = False) -> None:
        """Per-stage outcome table plus the run verdict."""

        rows = []
        for result in report.results:
            status = Text(result.status.value, style=_STATUS_STYLES.get(result.status, ""))
            duration = f"{result.duration_ms / 1000:.2f}s"
            detail = result.message or ""
            if result.allow_failure and result.status is StageStatus.FAILED:
                detail = f"{detail} (allowed)".strip()
            rows.append(
                [
                    result.stage_name,
                    status,
                    "-" if result.exit_code is None else str(result.exit_code),
                    duration,
                    detail,
                ]
            )
        self.table(["STAGE", "STATUS", "EXIT", "DURATION", "DETAIL"], rows, title="Stages:")

        self.section("Summary:")
        self.kv("Pipeline", report.pipeline_name)
        self.kv("Run ID", report.run_id)
        self.kv("State", report.state.value)
        if report.halt_reason:
            self.kv("Halt reason", report.halt_reason)
        counts = report.counts()
        self.kv("Counts", ", ".join(f"{key}={value}" for key, value in counts.items()))
        verdict = report.verdict
        self.kv("Verdict", verdict.value, style=_VERDICT_STYLES[verdict])
        self.kv("Exit code", report.exit_code(strict=strict))

        if self.verbose:
            for result in report.results:
                if result.status is StageStatus.FAILED and (result.stderr or result.stdout):
                    self.section(f"Output of {result.stage_name}:")
                    self._console.print(Text((result.stderr or result.stdout).rstrip()))


def create_renderer(*, no_color: bool = False, verbose: bool = False) -> CLIRenderer:
    """Create a CLI renderer with the given settings."""

    return CLIRenderer(no_color=no_color, verbose=verbose)


__all__ = ["CLIRenderer", "create_renderer"]
