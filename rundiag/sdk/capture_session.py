"""High-level Python SDK for rundiag.

A :class:`CaptureSession` holds everything captured during one debugging
run (heap snapshots, heap usage samples, a pair of screenshots and the
error stream) and turns it into a :class:`DiagnosticReport`.

Example::

    from rundiag.sdk import CaptureSession

    session = CaptureSession()
    session.add_heap_snapshot(first_snapshot_json, timestamp=0)
    session.add_heap_snapshot(second_snapshot_json, timestamp=30_000)
    session.set_screenshots(baseline_image, candidate_image)
    for event in console_errors:
        session.ingest_error(event)

    report = session.analyze(parallel=True)
    session.report()
"""

from __future__ import annotations

import logging
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, Dict, List, Optional, Tuple, TypeVar, Union

from rundiag.analysis.report_generator import ReportGenerator
from rundiag.analysis.report_synthesizer import (
    DiagnosticReport,
    ReportSynthesizer,
    SectionFailure,
)
from rundiag.config import AnalysisConfig
from rundiag.errors import DiagnosticsError, MalformedInputError
from rundiag.events.error_aggregator import ErrorAggregator, ErrorEvent, ErrorTrend
from rundiag.heap.graph import HeapGraph
from rundiag.heap.leak_detector import (
    LeakAnalysisResult,
    LeakDetector,
    MemorySample,
    MemoryTimeline,
)
from rundiag.heap.snapshot_ingester import RawSnapshot, SnapshotIngester
from rundiag.visual.image_diff import DiffResult, ImageDiffEngine, PixelImage

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CaptureSession:
    """Artifacts of one debugging run and the analysis over them.

    Parameters
    ----------
    config : AnalysisConfig | None
        Thresholds and limits for every analysis.  Defaults apply when
        omitted.
    session_id : str | None
        Identifier used in log messages.  A random one is generated when
        omitted.
    """

    def __init__(
        self,
        config: Optional[AnalysisConfig] = None,
        session_id: Optional[str] = None,
    ) -> None:
        self._config = config or AnalysisConfig()
        self._session_id = session_id or uuid.uuid4().hex[:12]

        # Raw snapshots are kept as captured and parsed at analysis time.
        self._snapshots: List[Tuple[float, RawSnapshot]] = []
        self._samples: List[MemorySample] = []
        self._screenshots: Optional[Tuple[PixelImage, PixelImage]] = None
        self._aggregator = ErrorAggregator(self._config.aggregator)

        self._leak_result: Optional[LeakAnalysisResult] = None
        self._report: Optional[DiagnosticReport] = None

    # ------------------------------------------------------------------
    # Capture
    # ------------------------------------------------------------------

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def config(self) -> AnalysisConfig:
        return self._config

    @property
    def aggregator(self) -> ErrorAggregator:
        return self._aggregator

    def add_heap_snapshot(self, raw: RawSnapshot, timestamp: float) -> None:
        """Store a raw heap snapshot taken at *timestamp* (ms)."""
        self._snapshots.append((timestamp, raw))

    def add_sample(self, timestamp: float, used_size: int, node_count: int = 0) -> None:
        """Store a heap usage measurement without a full snapshot."""
        self._samples.append(
            MemorySample(timestamp=timestamp, used_size=used_size, node_count=node_count)
        )

    def set_screenshots(self, baseline: PixelImage, candidate: PixelImage) -> None:
        self._screenshots = (baseline, candidate)

    def ingest_error(self, event: Union[ErrorEvent, Dict[str, object]]) -> str:
        """Forward an error event to the session's aggregator."""
        if not isinstance(event, ErrorEvent):
            event = ErrorEvent.from_dict(event)
        return self._aggregator.ingest(event)

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    def analyze(
        self,
        parallel: bool = False,
        generated_at: Optional[float] = None,
    ) -> DiagnosticReport:
        """Run every applicable analysis and synthesize the report.

        Each sub-analysis is isolated: a :class:`DiagnosticsError` raised by
        one of them becomes a failed (or, for budget overruns, skipped)
        section instead of aborting the run.

        Parameters
        ----------
        parallel : bool
            Run the heap, visual and error analyses on a thread pool.
        generated_at : float | None
            Report timestamp.  Defaults to the current time.
        """
        tasks: Dict[str, Callable[[], object]] = {
            "leaks": self._analyze_leaks,
            "visual": self._analyze_visual,
            "errors": self._analyze_errors,
        }

        results: Dict[str, object] = {}
        if parallel:
            with ThreadPoolExecutor(
                max_workers=len(tasks), thread_name_prefix="rundiag",
            ) as executor:
                futures = {
                    executor.submit(self._isolated, name, task): name
                    for name, task in tasks.items()
                }
                for future in as_completed(futures):
                    results[futures[future]] = future.result()
        else:
            for name, task in tasks.items():
                results[name] = self._isolated(name, task)

        synthesizer = ReportSynthesizer(weights=self._config.weights)
        self._report = synthesizer.merge(
            results["leaks"],  # type: ignore[arg-type]
            results["visual"],  # type: ignore[arg-type]
            results["errors"],  # type: ignore[arg-type]
            generated_at=generated_at,
        )
        logger.info(
            "Session %s analyzed: overall severity %s",
            self._session_id, self._report.overall_severity.value,
        )
        return self._report

    def _isolated(self, name: str, task: Callable[[], T]) -> Union[T, SectionFailure]:
        try:
            return task()
        except DiagnosticsError as exc:
            logger.warning("Session %s: %s analysis failed: %s", self._session_id, name, exc)
            return SectionFailure.from_exception(exc)

    def _analyze_leaks(self) -> Optional[LeakAnalysisResult]:
        if not self._snapshots and not self._samples:
            return None

        ingester = SnapshotIngester(limits=self._config.heap)
        graphs: List[Tuple[float, HeapGraph]] = [
            (timestamp, ingester.parse(raw))
            for timestamp, raw in sorted(self._snapshots, key=lambda item: item[0])
        ]

        # Explicit samples and snapshot self sizes measure different things,
        # so growth is computed over one source only.
        if self._samples:
            samples = sorted(self._samples, key=lambda s: s.timestamp)
        else:
            samples = [MemorySample.from_graph(ts, graph) for ts, graph in graphs]

        timeline: Optional[MemoryTimeline] = None
        timeline_error: Optional[str] = None
        try:
            timeline = MemoryTimeline(samples)
        except ValueError as exc:
            if not graphs:
                raise MalformedInputError(f"Invalid heap timeline: {exc}") from exc
            timeline_error = f"timeline: {exc}"
            logger.warning("Session %s: skipping growth analysis: %s", self._session_id, exc)

        latest = graphs[-1][1] if graphs else None
        baseline = graphs[0][1] if len(graphs) > 1 else None
        detector = LeakDetector(thresholds=self._config.growth, limits=self._config.heap)
        result = detector.analyze(graph=latest, timeline=timeline, baseline_graph=baseline)
        if timeline_error is not None:
            result.failures.append(timeline_error)
        self._leak_result = result
        return result

    def _analyze_visual(self) -> Optional[DiffResult]:
        if self._screenshots is None:
            return None
        baseline, candidate = self._screenshots
        return ImageDiffEngine(self._config.diff).compare(baseline, candidate)

    def _analyze_errors(self) -> Optional[List[ErrorTrend]]:
        if len(self._aggregator) == 0:
            return None
        return self._aggregator.compute_trends()

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------

    @property
    def last_report(self) -> Optional[DiagnosticReport]:
        return self._report

    @property
    def leak_result(self) -> Optional[LeakAnalysisResult]:
        """Full leak analysis (including constructor deltas) of the last run."""
        return self._leak_result

    def report(
        self,
        format: str = "terminal",
        output_path: Optional[str] = None,
    ) -> Optional[str]:
        """Render the most recent report.

        Parameters
        ----------
        format : str
            ``"terminal"`` or ``"json"``.
        output_path : str | None
            File path for json output.

        Returns
        -------
        str | None
            Output file path for json, or ``None`` for terminal.
        """
        if self._report is None:
            logger.warning("No report yet. Call analyze() first.")
            return None
        generator = ReportGenerator(
            self._report,
            patterns=self._aggregator.group_patterns(),
            weights=self._config.weights,
        )
        return generator.generate_report(format=format, output_path=output_path)
