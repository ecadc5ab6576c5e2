"""Merge per-domain findings into one severity-ranked diagnostic report.

Consumes the leak detector's findings, the image diff result and the error
trends, decides the overall severity and which section is most
responsible for it, and returns an immutable :class:`DiagnosticReport`.

The synthesizer is designed to work with partial data: any section may be
missing or may have failed, and the report is still produced with that
section marked rather than aborting.  For a fixed ``generated_at`` the
output depends only on the inputs, so reports can be compared in
regression tests.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

from rundiag.config import SynthesisWeights
from rundiag.errors import ResourceExhaustedError
from rundiag.events.error_aggregator import ErrorTrend
from rundiag.heap.leak_detector import Confidence, LeakAnalysisResult, LeakFinding
from rundiag.severity import Severity, max_severity
from rundiag.visual.image_diff import DiffResult, Hotspot

logger = logging.getLogger(__name__)


# Section names, in tie-break order.
LEAKS = "leaks"
VISUAL = "visual"
ERRORS = "errors"
_SECTION_ORDER = (LEAKS, VISUAL, ERRORS)


# ============================================================================
# Data classes
# ============================================================================


class SectionStatus(str, Enum):
    """Outcome of one sub-analysis."""

    ok = "ok"
    partial = "partial"
    failed = "failed"
    skipped = "skipped"


@dataclass(frozen=True)
class SectionFailure:
    """Stand-in for a sub-analysis that did not produce a result."""

    reason: str
    skipped: bool = False

    @classmethod
    def from_exception(cls, exc: BaseException) -> SectionFailure:
        # Budget overruns are reported as skipped, everything else as failed.
        return cls(
            reason=f"{type(exc).__name__}: {exc}",
            skipped=isinstance(exc, ResourceExhaustedError),
        )


@dataclass(frozen=True)
class SectionResult:
    """Status, severity and weighted impact of one report section."""

    name: str
    status: SectionStatus
    severity: Severity
    impact: float  # weighted, 0.0 – weight
    confidence: str  # "exact", "approximate", "partial" or "" when absent
    reason: str = ""

    def to_dict(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "status": self.status.value,
            "severity": self.severity.value,
            "impact": self.impact,
            "confidence": self.confidence,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class DiagnosticReport:
    """Immutable result of one analysis run."""

    leak_findings: Tuple[LeakFinding, ...]
    hotspots: Tuple[Hotspot, ...]
    error_trends: Tuple[ErrorTrend, ...]
    overall_severity: Severity
    generated_at: float
    sections: Tuple[SectionResult, ...]
    primary_section: Optional[str] = None
    match_percentage: Optional[float] = None

    def section(self, name: str) -> SectionResult:
        for section in self.sections:
            if section.name == name:
                return section
        raise KeyError(name)

    @property
    def failed_sections(self) -> List[str]:
        return [
            s.name for s in self.sections
            if s.status in (SectionStatus.failed, SectionStatus.skipped)
        ]

    def to_dict(self) -> Dict[str, object]:
        return {
            "generated_at": self.generated_at,
            "overall_severity": self.overall_severity.value,
            "primary_section": self.primary_section,
            "match_percentage": self.match_percentage,
            "sections": [s.to_dict() for s in self.sections],
            "leak_findings": [f.to_dict() for f in self.leak_findings],
            "hotspots": [h.to_dict() for h in self.hotspots],
            "error_trends": [t.to_dict() for t in self.error_trends],
        }


LeakInput = Union[Sequence[LeakFinding], LeakAnalysisResult, SectionFailure, None]
DiffInput = Union[DiffResult, SectionFailure, None]
TrendInput = Union[Sequence[ErrorTrend], SectionFailure, None]


# ============================================================================
# Report Synthesizer
# ============================================================================


class ReportSynthesizer:
    """Combine sub-analysis outputs into a :class:`DiagnosticReport`.

    Usage::

        synthesizer = ReportSynthesizer()
        report = synthesizer.merge(
            leak_result.findings, diff_result, trends, generated_at=time.time(),
        )
        print(report.overall_severity, report.primary_section)
    """

    def __init__(
        self,
        weights: Optional[SynthesisWeights] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._weights = weights or SynthesisWeights()
        self._clock = clock

    def merge(
        self,
        leak_findings: LeakInput,
        diff_result: DiffInput,
        error_trends: TrendInput,
        generated_at: Optional[float] = None,
    ) -> DiagnosticReport:
        """Build the report.

        Each argument may be the sub-analysis output, ``None`` when the
        artifact was never captured, or a :class:`SectionFailure`.
        """
        leak_section, findings = self._leak_section(leak_findings)
        visual_section, hotspots, match = self._visual_section(diff_result)
        error_section, trends = self._error_section(error_trends)
        sections = (leak_section, visual_section, error_section)

        overall = max_severity(s.severity for s in sections)
        primary = self._primary_section(sections, overall)

        for section in sections:
            if section.status in (SectionStatus.failed, SectionStatus.skipped):
                logger.info("Report section %s %s: %s", section.name, section.status.value, section.reason)

        return DiagnosticReport(
            leak_findings=tuple(findings),
            hotspots=tuple(hotspots),
            error_trends=tuple(trends),
            overall_severity=overall,
            generated_at=generated_at if generated_at is not None else self._clock(),
            sections=sections,
            primary_section=primary,
            match_percentage=match,
        )

    # ------------------------------------------------------------------
    # Sections
    # ------------------------------------------------------------------

    def _leak_section(self, value: LeakInput) -> Tuple[SectionResult, List[LeakFinding]]:
        if value is None or isinstance(value, SectionFailure):
            return self._missing(LEAKS, value), []

        status = SectionStatus.ok
        reason = ""
        if isinstance(value, LeakAnalysisResult):
            findings = list(value.findings)
            if value.failures:
                status = SectionStatus.partial
                reason = "; ".join(value.failures)
        else:
            findings = list(value)

        findings.sort(key=lambda f: (-f.severity.rank, -f.bytes, f.kind, f.node_ids))
        leaked = sum(max(f.bytes, 0) for f in findings)
        normalized = min(leaked / self._weights.leak_bytes_scale, 1.0) if self._weights.leak_bytes_scale > 0 else 0.0

        confidences = {f.confidence for f in findings}
        if Confidence.partial in confidences:
            confidence = Confidence.partial.value
        elif Confidence.approximate in confidences:
            confidence = Confidence.approximate.value
        else:
            confidence = Confidence.exact.value

        return SectionResult(
            name=LEAKS,
            status=status,
            severity=max_severity(f.severity for f in findings),
            impact=round(self._weights.leak * normalized, 6),
            confidence=confidence,
            reason=reason,
        ), findings

    def _visual_section(
        self, value: DiffInput,
    ) -> Tuple[SectionResult, List[Hotspot], Optional[float]]:
        if value is None or isinstance(value, SectionFailure):
            return self._missing(VISUAL, value), [], None

        hotspots = sorted(
            value.hotspots,
            key=lambda h: (-h.severity_tier.rank, -h.pixel_count, h.bounding_box.y, h.bounding_box.x),
        )
        return SectionResult(
            name=VISUAL,
            status=SectionStatus.ok,
            severity=max_severity(h.severity_tier for h in hotspots),
            impact=round(self._weights.visual * value.diff_fraction, 6),
            confidence=Confidence.exact.value,
        ), hotspots, value.match_percentage

    def _error_section(self, value: TrendInput) -> Tuple[SectionResult, List[ErrorTrend]]:
        if value is None or isinstance(value, SectionFailure):
            return self._missing(ERRORS, value), []

        trends = sorted(value, key=lambda t: (-abs(t.percent_change), t.fingerprint))
        occurrences = sum(t.total for t in trends)
        scale = self._weights.error_count_scale
        normalized = min(occurrences / scale, 1.0) if scale > 0 else 0.0
        return SectionResult(
            name=ERRORS,
            status=SectionStatus.ok,
            severity=max_severity(
                trend_severity(t, self._weights.major_trend_change_pct) for t in trends
            ),
            impact=round(self._weights.errors * normalized, 6),
            confidence=Confidence.exact.value,
        ), trends

    @staticmethod
    def _missing(name: str, value: Optional[SectionFailure]) -> SectionResult:
        if value is None:
            return SectionResult(
                name=name, status=SectionStatus.skipped, severity=Severity.none,
                impact=0.0, confidence="", reason="no input captured",
            )
        return SectionResult(
            name=name,
            status=SectionStatus.skipped if value.skipped else SectionStatus.failed,
            severity=Severity.none,
            impact=0.0,
            confidence="",
            reason=value.reason,
        )

    @staticmethod
    def _primary_section(
        sections: Sequence[SectionResult], overall: Severity,
    ) -> Optional[str]:
        if overall is Severity.none:
            return None
        candidates = [s for s in sections if s.severity is overall]
        # Highest weighted impact wins; equal impact falls back to section order.
        candidates.sort(key=lambda s: (-s.impact, _SECTION_ORDER.index(s.name)))
        return candidates[0].name


def trend_severity(trend: ErrorTrend, major_change_pct: Optional[float] = None) -> Severity:
    """Severity of a single error trend.

    An increasing trend is major once its percent change reaches
    *major_change_pct* (the :class:`SynthesisWeights` default when omitted).
    """
    if major_change_pct is None:
        major_change_pct = SynthesisWeights().major_trend_change_pct
    if trend.direction == "increasing":
        if trend.percent_change >= major_change_pct:
            return Severity.major
        return Severity.moderate
    if trend.total > 0:
        return Severity.minor
    return Severity.none
