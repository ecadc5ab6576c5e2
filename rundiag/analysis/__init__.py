"""Report synthesis and rendering."""

from rundiag.analysis.report_synthesizer import (
    DiagnosticReport,
    ReportSynthesizer,
    SectionFailure,
    SectionStatus,
)
from rundiag.analysis.report_generator import ReportGenerator

__all__ = [
    "DiagnosticReport",
    "ReportSynthesizer",
    "SectionFailure",
    "SectionStatus",
    "ReportGenerator",
]
