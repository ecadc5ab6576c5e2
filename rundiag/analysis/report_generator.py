"""Report generation for rundiag.

Renders a :class:`DiagnosticReport` either as a Rich terminal report
(header, section status table, leak findings, visual hotspots, error
trends) or as a structured JSON export for downstream tooling.
"""

from __future__ import annotations

import datetime
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from rundiag import __version__
from rundiag.analysis.report_synthesizer import (
    DiagnosticReport,
    SectionResult,
    SectionStatus,
    trend_severity,
)
from rundiag.config import SynthesisWeights
from rundiag.events.error_aggregator import ErrorPattern, ErrorTrend
from rundiag.heap.leak_detector import LeakFinding
from rundiag.severity import Severity
from rundiag.visual.image_diff import Hotspot

logger = logging.getLogger(__name__)


# ============================================================================
# Formatting helpers
# ============================================================================

_SEVERITY_COLORS: Dict[Severity, str] = {
    Severity.none: "green",
    Severity.minor: "cyan",
    Severity.moderate: "yellow",
    Severity.major: "red",
}

_STATUS_COLORS: Dict[SectionStatus, str] = {
    SectionStatus.ok: "green",
    SectionStatus.partial: "yellow",
    SectionStatus.failed: "red",
    SectionStatus.skipped: "dim",
}

# Rows shown per table in the terminal report.
_MAX_ROWS: int = 10


def severity_text(severity: Severity) -> Text:
    """Return a color-coded Rich label for *severity*."""
    return Text(severity.value.upper(), style=f"bold {_SEVERITY_COLORS[severity]}")


def format_bytes(size: float) -> str:
    """Format a byte count to a human-readable string."""
    value = float(size)
    for unit in ("B", "KB", "MB", "GB"):
        if abs(value) < 1024.0 or unit == "GB":
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024.0
    return f"{value:.1f} GB"


def _truncate(text: str, max_len: int = 80) -> str:
    if len(text) <= max_len:
        return text
    return text[: max_len - 3] + "..."


# ============================================================================
# Report Generator
# ============================================================================


class ReportGenerator:
    """Generate diagnostic reports in terminal or JSON form.

    Usage::

        generator = ReportGenerator(report, patterns=aggregator.group_patterns())
        generator.generate_report(format="terminal")
        generator.generate_report(format="json", output_path="report.json")
    """

    def __init__(
        self,
        report: DiagnosticReport,
        patterns: Optional[List[ErrorPattern]] = None,
        console: Optional[Console] = None,
        weights: Optional[SynthesisWeights] = None,
    ) -> None:
        self._report = report
        self._patterns = list(patterns or [])
        self._console = console or Console()
        self._weights = weights or SynthesisWeights()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def generate_report(
        self,
        format: str = "terminal",
        output_path: Optional[str] = None,
    ) -> Optional[str]:
        """Dispatch to the appropriate report generation method.

        Parameters
        ----------
        format:
            One of ``"terminal"`` or ``"json"``.
        output_path:
            File path for JSON output.  Ignored for terminal format.

        Returns
        -------
        str | None
            The output file path for JSON, or ``None`` for terminal.

        Raises
        ------
        ValueError
            If *format* is not recognised.
        """
        fmt = format.lower().strip()
        if fmt == "terminal":
            self.generate_terminal_report()
            return None
        if fmt == "json":
            if output_path is None:
                output_path = "rundiag_report.json"
            self.generate_json_report(output_path)
            return output_path
        raise ValueError(
            f"Unknown report format {fmt!r}. Expected one of: 'terminal', 'json'."
        )

    # ==================================================================
    # Terminal report
    # ==================================================================

    def generate_terminal_report(self) -> None:
        """Print the report to the console."""
        console = self._console
        report = self._report

        header = Text()
        header.append("rundiag", style="bold magenta")
        header.append(" - Runtime Diagnostics Report", style="bold white")
        console.print()
        console.print(Panel(header, border_style="magenta", padding=(1, 2)))

        info = Table(show_header=False, box=None, padding=(0, 2), expand=False)
        info.add_column("Key", style="dim")
        info.add_column("Value", style="bold")
        info.add_row("Overall severity", severity_text(report.overall_severity))
        info.add_row(
            "Primary section",
            report.primary_section.title() if report.primary_section else "-",
        )
        if report.match_percentage is not None:
            info.add_row("Visual match", f"{report.match_percentage:.2f}%")
        info.add_row(
            "Generated at",
            datetime.datetime.fromtimestamp(report.generated_at).strftime("%Y-%m-%d %H:%M:%S"),
        )
        console.print(info)
        console.print()

        self._print_sections_table(console, report.sections)
        console.print()

        if report.leak_findings:
            self._print_leaks_table(console, list(report.leak_findings))
            console.print()

        if report.hotspots:
            self._print_hotspots_table(console, list(report.hotspots))
            console.print()

        if report.error_trends:
            self._print_trends_table(console, list(report.error_trends))
            console.print()

        if self._patterns:
            self._print_patterns_table(console, self._patterns)
            console.print()

        console.print(
            Panel(
                Text(self.summary_text()),
                title="[bold]Summary[/bold]",
                border_style=_SEVERITY_COLORS[report.overall_severity],
                padding=(1, 2),
            )
        )
        console.print()

    def summary_text(self) -> str:
        """One-paragraph plain text summary of the report."""
        report = self._report
        if report.overall_severity is Severity.none:
            text = "No actionable issues were found."
        else:
            text = (
                f"Overall severity is {report.overall_severity.value}, "
                f"driven mainly by the {report.primary_section} section."
            )
        failed = report.failed_sections
        if failed:
            text += f" Sections without results: {', '.join(failed)}."
        return text

    def _print_sections_table(self, console: Console, sections: Any) -> None:
        table = Table(title="Sections", box=box.ROUNDED, title_style="bold white")
        table.add_column("Section", style="bold", min_width=10)
        table.add_column("Status", min_width=8)
        table.add_column("Severity", justify="center", min_width=9)
        table.add_column("Impact", justify="right", min_width=7)
        table.add_column("Confidence", min_width=10)
        table.add_column("Note", max_width=50)

        section: SectionResult
        for section in sections:
            table.add_row(
                section.name.title(),
                Text(section.status.value, style=_STATUS_COLORS[section.status]),
                severity_text(section.severity),
                f"{section.impact:.3f}",
                section.confidence or "-",
                _truncate(section.reason, 50) or "",
            )
        console.print(table)

    def _print_leaks_table(self, console: Console, findings: List[LeakFinding]) -> None:
        table = Table(
            title="Leak Findings", box=box.ROUNDED, show_lines=True, title_style="bold white",
        )
        table.add_column("#", style="dim", width=3)
        table.add_column("Kind", style="bold", min_width=12)
        table.add_column("Severity", justify="center", min_width=9)
        table.add_column("Size", justify="right", min_width=9)
        table.add_column("Description", min_width=30, max_width=50)
        table.add_column("Retained via", min_width=20, max_width=40)

        for i, finding in enumerate(findings[:_MAX_ROWS], start=1):
            size = format_bytes(finding.bytes)
            if finding.confidence.value != "exact":
                size = f"~{size}"
            table.add_row(
                str(i),
                finding.kind.replace("_", " "),
                severity_text(finding.severity),
                size,
                finding.description,
                _truncate(finding.provenance, 80),
            )
        console.print(table)

    def _print_hotspots_table(self, console: Console, hotspots: List[Hotspot]) -> None:
        table = Table(title="Visual Hotspots", box=box.ROUNDED, title_style="bold white")
        table.add_column("#", style="dim", width=3)
        table.add_column("Region (x, y, w, h)", min_width=20)
        table.add_column("Pixels", justify="right", min_width=7)
        table.add_column("Mean delta", justify="right", min_width=10)
        table.add_column("Severity", justify="center", min_width=9)

        for i, hotspot in enumerate(hotspots[:_MAX_ROWS], start=1):
            bbox = hotspot.bounding_box
            table.add_row(
                str(i),
                f"{bbox.x}, {bbox.y}, {bbox.width}, {bbox.height}",
                str(hotspot.pixel_count),
                f"{hotspot.mean_delta:.2f}",
                severity_text(hotspot.severity_tier),
            )
        console.print(table)

    def _print_trends_table(self, console: Console, trends: List[ErrorTrend]) -> None:
        table = Table(title="Error Trends", box=box.ROUNDED, title_style="bold white")
        table.add_column("Fingerprint", min_width=30, max_width=60)
        table.add_column("Total", justify="right", min_width=6)
        table.add_column("Direction", min_width=10)
        table.add_column("Change", justify="right", min_width=8)
        table.add_column("Severity", justify="center", min_width=9)

        for trend in trends[:_MAX_ROWS]:
            color = {"increasing": "red", "decreasing": "green"}.get(trend.direction, "white")
            table.add_row(
                _truncate(trend.fingerprint, 60),
                str(trend.total),
                Text(trend.direction, style=color),
                f"{trend.percent_change:+.1f}%",
                severity_text(trend_severity(trend, self._weights.major_trend_change_pct)),
            )
        console.print(table)

    def _print_patterns_table(self, console: Console, patterns: List[ErrorPattern]) -> None:
        table = Table(
            title="Recurring Errors", box=box.ROUNDED, show_lines=True, title_style="bold white",
        )
        table.add_column("Count", justify="right", width=6)
        table.add_column("Message", min_width=30, max_width=50)
        table.add_column("Cause", min_width=12)
        table.add_column("Suggested fix", min_width=30, max_width=50)

        for pattern in patterns[:_MAX_ROWS]:
            table.add_row(
                str(pattern.frequency),
                _truncate(pattern.message, 100),
                pattern.common_cause,
                pattern.suggested_fix,
            )
        console.print(table)

    # ==================================================================
    # JSON report
    # ==================================================================

    def to_dict(self) -> Dict[str, Any]:
        """Report data plus metadata, as written by :meth:`generate_json_report`."""
        data: Dict[str, Any] = {
            "metadata": {
                "tool": "rundiag",
                "version": __version__,
                "report_generated": datetime.datetime.fromtimestamp(
                    self._report.generated_at
                ).isoformat(),
                "format_version": "1.0",
            },
            "report": self._report.to_dict(),
        }
        if self._patterns:
            data["patterns"] = [p.to_dict() for p in self._patterns]
        return data

    def generate_json_report(self, output_path: str) -> None:
        """Export the report as structured JSON.

        Parameters
        ----------
        output_path:
            File path to write the JSON report to.
        """
        output = Path(output_path)
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_text(
            json.dumps(self.to_dict(), indent=2, default=str),
            encoding="utf-8",
        )
        logger.info("JSON report written to %s", output_path)
