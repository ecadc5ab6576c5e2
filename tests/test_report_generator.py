"""Tests for rundiag.analysis.report_generator."""

import io
import json

import pytest
from rich.console import Console

from rundiag.analysis.report_generator import ReportGenerator, format_bytes
from rundiag.analysis.report_synthesizer import ReportSynthesizer, SectionFailure
from rundiag.errors import MalformedSnapshotError
from rundiag.events.error_aggregator import ErrorPattern, ErrorTrend
from rundiag.heap.leak_detector import Confidence, LeakFinding
from rundiag.severity import Severity
from rundiag.visual.image_diff import BoundingBox, DiffResult, Hotspot


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_report(leaks=None, generated_at: float = 1_700_000_000.0):
    finding = LeakFinding(
        kind="detached_subgraph",
        severity=Severity.major,
        bytes=3 * 1024 * 1024,
        description="Detached HTMLDivElement retains 12 node(s), 3.0 MB",
        confidence=Confidence.approximate,
        provenance="(GC roots) -> [handler] onClick -> [el] Detached HTMLDivElement",
        node_ids=(4,),
    )
    diff = DiffResult(
        width=10, height=10, mask=bytes(100), diff_pixel_count=4, match_percentage=96.0,
        hotspots=(Hotspot(BoundingBox(1, 1, 2, 2), 4, Severity.minor, 0.9),),
    )
    trend = ErrorTrend("boom @ app.js:1", 60_000.0, (1, 3), "increasing", 200.0, 4)
    return ReportSynthesizer().merge(
        [finding] if leaks is None else leaks, diff, [trend], generated_at=generated_at,
    )


def _make_pattern() -> ErrorPattern:
    return ErrorPattern(
        fingerprint="boom @ app.js:1",
        message="boom",
        frequency=4,
        first_seen=0.0,
        last_seen=10.0,
        common_cause="unknown",
        suggested_fix="Inspect the stack trace.",
    )


def _make_console() -> Console:
    return Console(file=io.StringIO(), width=160, color_system=None)


# ---------------------------------------------------------------------------
# Helpers under test
# ---------------------------------------------------------------------------


class TestFormatBytes:
    @pytest.mark.parametrize("size,expected", [
        (512, "512 B"),
        (2048, "2.0 KB"),
        (3 * 1024 * 1024, "3.0 MB"),
        (5 * 1024 ** 3, "5.0 GB"),
    ])
    def test_units(self, size, expected):
        assert format_bytes(size) == expected


# ---------------------------------------------------------------------------
# ReportGenerator
# ---------------------------------------------------------------------------


class TestTerminalReport:
    def test_renders_sections(self):
        console = _make_console()
        ReportGenerator(_make_report(), patterns=[_make_pattern()], console=console).generate_report()
        output = console.file.getvalue()
        assert "Runtime Diagnostics Report" in output
        assert "MAJOR" in output
        assert "Leak Findings" in output
        assert "Visual Hotspots" in output
        assert "Error Trends" in output
        assert "Recurring Errors" in output
        assert "~3.0 MB" in output

    def test_failed_section_mentioned_in_summary(self):
        failure = SectionFailure.from_exception(MalformedSnapshotError("truncated"))
        generator = ReportGenerator(_make_report(leaks=failure), console=_make_console())
        assert "leaks" in generator.summary_text()

    def test_clean_summary(self):
        report = ReportSynthesizer().merge([], None, [], generated_at=0.0)
        generator = ReportGenerator(report, console=_make_console())
        assert generator.summary_text().startswith("No actionable issues")


class TestJsonReport:
    def test_writes_file(self, tmp_path):
        out = tmp_path / "nested" / "report.json"
        path = ReportGenerator(_make_report(), patterns=[_make_pattern()]).generate_report(
            format="json", output_path=str(out),
        )
        assert path == str(out)
        data = json.loads(out.read_text(encoding="utf-8"))
        assert data["metadata"]["tool"] == "rundiag"
        assert data["metadata"]["format_version"] == "1.0"
        assert data["report"]["overall_severity"] == "major"
        assert data["report"]["primary_section"] == "leaks"
        assert data["patterns"][0]["frequency"] == 4

    def test_same_report_same_json(self):
        first = ReportGenerator(_make_report()).to_dict()
        second = ReportGenerator(_make_report()).to_dict()
        assert first == second

    def test_unknown_format(self):
        with pytest.raises(ValueError, match="Unknown report format"):
            ReportGenerator(_make_report()).generate_report(format="html")
