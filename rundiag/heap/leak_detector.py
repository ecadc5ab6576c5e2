"""Memory leak detector for captured browser heap data.

Works on two kinds of input.  A :class:`MemoryTimeline` of heap samples
(each taken after a garbage-collection settle step) is checked for
sustained growth; a single :class:`HeapGraph` is searched for detached DOM
subtrees still retained from script and for closures that keep large
object graphs alive.

Growth detection requires both a percentage increase and consistency
across consecutive samples, so a single allocation spike is not reported.
Graph analyses never trust names directly; roles come from
:func:`classify_node` and all traversals are cycle safe.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Sequence, Set, Tuple

from rundiag.config import GrowthThresholds, HeapLimits
from rundiag.errors import MalformedGraphError
from rundiag.heap.graph import (
    HeapGraph,
    approximate_retained_size,
    exclusive_reach,
    find_retaining_path,
)
from rundiag.heap.node_classifier import NodeKind, classify_node, is_traversal_boundary
from rundiag.severity import Severity, severity_for_bytes

logger = logging.getLogger(__name__)


class Confidence(str, Enum):
    """How a size or finding was obtained."""

    exact = "exact"
    approximate = "approximate"
    partial = "partial"


# ============================================================================
# Timeline data classes
# ============================================================================


@dataclass(frozen=True)
class MemorySample:
    """One GC-settled heap measurement.  ``timestamp`` is in milliseconds."""

    timestamp: float
    used_size: int
    node_count: int = 0
    graph: Optional[HeapGraph] = field(default=None, compare=False, repr=False)

    @classmethod
    def from_graph(cls, timestamp: float, graph: HeapGraph) -> MemorySample:
        return cls(
            timestamp=timestamp,
            used_size=graph.total_self_size,
            node_count=graph.node_count,
            graph=graph,
        )

    def to_dict(self) -> Dict[str, object]:
        return {
            "timestamp": self.timestamp,
            "used_size": self.used_size,
            "node_count": self.node_count,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> MemorySample:
        used = data.get("used_size", data.get("usedJSHeapSize", 0))
        return cls(
            timestamp=float(data.get("timestamp", 0.0)),
            used_size=int(used),
            node_count=int(data.get("node_count", 0)),
        )


class MemoryTimeline:
    """Samples ordered by strictly increasing timestamp."""

    def __init__(self, samples: Sequence[MemorySample]) -> None:
        ordered = tuple(samples)
        for prev, cur in zip(ordered, ordered[1:]):
            if cur.timestamp <= prev.timestamp:
                raise ValueError(
                    f"Timeline timestamps must strictly increase "
                    f"({prev.timestamp} followed by {cur.timestamp})"
                )
        self._samples = ordered

    @property
    def samples(self) -> Tuple[MemorySample, ...]:
        return self._samples

    @property
    def duration_ms(self) -> float:
        if len(self._samples) < 2:
            return 0.0
        return self._samples[-1].timestamp - self._samples[0].timestamp

    def latest_graph(self) -> Optional[HeapGraph]:
        for sample in reversed(self._samples):
            if sample.graph is not None:
                return sample.graph
        return None

    def __len__(self) -> int:
        return len(self._samples)

    def __iter__(self) -> Iterator[MemorySample]:
        return iter(self._samples)

    def __getitem__(self, index: int) -> MemorySample:
        return self._samples[index]


# ============================================================================
# Result data classes
# ============================================================================


@dataclass
class GrowthResult:
    """Outcome of :meth:`LeakDetector.detect_growth`."""

    absolute_growth: int
    percent_growth: float
    rate_bytes_per_second: float
    is_leak: bool
    consistency_ratio: float = 0.0
    trend_slope: float = 0.0  # bytes per second, least squares
    trend_r_squared: float = 0.0
    samples_analyzed: int = 0
    recommendations: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, object]:
        data = asdict(self)
        data["recommendations"] = list(self.recommendations)
        return data


@dataclass(frozen=True)
class DetachedSubgraph:
    """A detached DOM root and the objects it keeps alive."""

    root_id: int
    root_name: str
    node_ids: Tuple[int, ...]
    total_size: int
    classification_confidence: float
    size_confidence: Confidence
    retaining_path: str = ""

    @property
    def node_count(self) -> int:
        return len(self.node_ids)

    def to_dict(self) -> Dict[str, object]:
        return {
            "root_id": self.root_id,
            "root_name": self.root_name,
            "node_ids": list(self.node_ids),
            "node_count": self.node_count,
            "total_size": self.total_size,
            "classification_confidence": self.classification_confidence,
            "size_confidence": self.size_confidence.value,
            "retaining_path": self.retaining_path,
        }


@dataclass(frozen=True)
class ClosureLeak:
    """A closure whose retained size is above the configured threshold."""

    node_id: int
    name: str
    self_size: int
    retained_size: int
    size_confidence: Confidence

    def to_dict(self) -> Dict[str, object]:
        data = asdict(self)
        data["size_confidence"] = self.size_confidence.value
        return data


@dataclass(frozen=True)
class PartialConfidenceFinding:
    """A size that could only be estimated, attached to its finding."""

    node_id: int
    node_name: str
    reason: str
    estimated_bytes: int

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)


@dataclass(frozen=True)
class ConstructorDelta:
    """Change in live objects of one constructor between two snapshots."""

    constructor: str
    count_before: int
    count_after: int
    size_before: int
    size_after: int

    @property
    def count_delta(self) -> int:
        return self.count_after - self.count_before

    @property
    def size_delta(self) -> int:
        return self.size_after - self.size_before

    def to_dict(self) -> Dict[str, object]:
        data = asdict(self)
        data["count_delta"] = self.count_delta
        data["size_delta"] = self.size_delta
        return data


@dataclass(frozen=True)
class LeakFinding:
    """A leak finding in the uniform shape consumed by report synthesis."""

    kind: str  # "growth", "detached_subgraph", "oversized_closure"
    severity: Severity
    bytes: int
    description: str
    confidence: Confidence
    provenance: str
    node_ids: Tuple[int, ...] = ()

    def to_dict(self) -> Dict[str, object]:
        return {
            "kind": self.kind,
            "severity": self.severity.value,
            "bytes": self.bytes,
            "description": self.description,
            "confidence": self.confidence.value,
            "provenance": self.provenance,
            "node_ids": list(self.node_ids),
        }


@dataclass
class LeakAnalysisResult:
    """Everything :meth:`LeakDetector.analyze` produced for one run.

    ``failures`` lists sub-analyses that could not run (for example a
    graph with dangling edges); the remaining results are still valid.
    """

    growth: Optional[GrowthResult] = None
    detached: List[DetachedSubgraph] = field(default_factory=list)
    closures: List[ClosureLeak] = field(default_factory=list)
    partial: List[PartialConfidenceFinding] = field(default_factory=list)
    constructor_deltas: List[ConstructorDelta] = field(default_factory=list)
    findings: List[LeakFinding] = field(default_factory=list)
    failures: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, object]:
        return {
            "growth": self.growth.to_dict() if self.growth is not None else None,
            "detached": [d.to_dict() for d in self.detached],
            "closures": [c.to_dict() for c in self.closures],
            "partial": [p.to_dict() for p in self.partial],
            "constructor_deltas": [c.to_dict() for c in self.constructor_deltas],
            "findings": [f.to_dict() for f in self.findings],
            "failures": list(self.failures),
        }


# ============================================================================
# Leak Detector
# ============================================================================


class LeakDetector:
    """Detect memory leaks from heap timelines and heap graphs.

    Usage::

        detector = LeakDetector()
        growth = detector.detect_growth(timeline)
        clusters = detector.find_detached_subgraphs(graph)
        closures = detector.find_oversized_closures(graph, 512 * 1024)

    or, to run everything applicable and get report-ready findings::

        result = detector.analyze(graph=graph, timeline=timeline)
        for finding in result.findings:
            print(finding.severity, finding.description)
    """

    # Minimum samples for a regression fit to be meaningful.
    MIN_TREND_SAMPLES: int = 3

    def __init__(
        self,
        thresholds: Optional[GrowthThresholds] = None,
        limits: Optional[HeapLimits] = None,
    ) -> None:
        self._thresholds = thresholds or GrowthThresholds()
        self._limits = limits or HeapLimits()

    # ------------------------------------------------------------------
    # Growth
    # ------------------------------------------------------------------

    def detect_growth(
        self,
        timeline: MemoryTimeline,
        thresholds: Optional[GrowthThresholds] = None,
    ) -> GrowthResult:
        """Measure heap growth across *timeline*.

        ``is_leak`` requires ``percent_growth`` above the threshold *and*
        an increase in more than ``consistency_ratio`` of consecutive
        sample pairs.
        """
        limits = thresholds or self._thresholds
        samples = timeline.samples
        if len(samples) < 2:
            return GrowthResult(
                absolute_growth=0,
                percent_growth=0.0,
                rate_bytes_per_second=0.0,
                is_leak=False,
                samples_analyzed=len(samples),
            )

        first = samples[0].used_size
        last = samples[-1].used_size
        absolute = last - first
        percent = (absolute / first) * 100.0 if first > 0 else 0.0
        duration_s = timeline.duration_ms / 1000.0
        rate = absolute / duration_s if duration_s > 0 else 0.0

        pairs = len(samples) - 1
        increases = sum(
            1 for prev, cur in zip(samples, samples[1:]) if cur.used_size > prev.used_size
        )
        consistency = increases / pairs

        slope, r_squared = 0.0, 0.0
        if len(samples) >= self.MIN_TREND_SAMPLES:
            slope, r_squared = self._linear_regression(
                [s.timestamp / 1000.0 for s in samples],
                [float(s.used_size) for s in samples],
            )

        is_leak = percent > limits.percent_threshold and consistency > limits.consistency_ratio
        if is_leak:
            logger.info(
                "Heap grew %.1f%% over %d samples (%.0f%% of steps increasing).",
                percent, len(samples), consistency * 100.0,
            )

        return GrowthResult(
            absolute_growth=absolute,
            percent_growth=round(percent, 4),
            rate_bytes_per_second=round(rate, 3),
            is_leak=is_leak,
            consistency_ratio=round(consistency, 4),
            trend_slope=round(slope, 3),
            trend_r_squared=round(r_squared, 4),
            samples_analyzed=len(samples),
            recommendations=self._growth_recommendations(
                is_leak, percent, rate, r_squared, duration_s, last,
            ),
        )

    # ------------------------------------------------------------------
    # Detached DOM
    # ------------------------------------------------------------------

    def find_detached_subgraphs(
        self,
        graph: HeapGraph,
        top_n: Optional[int] = None,
    ) -> List[DetachedSubgraph]:
        """Group detached DOM nodes into clusters and rank them by size.

        Every member of a returned cluster is reachable from its root over
        retaining edges.  A detached node held exclusively inside another
        detached cluster is reported as part of that cluster only.

        Raises
        ------
        MalformedGraphError
            If *graph* has dangling edges.
        """
        graph.check_integrity()
        limit = top_n if top_n is not None else self._limits.detached_top_n

        roots = [
            i for i, node in enumerate(graph.nodes)
            if classify_node(node).kind is NodeKind.detached
        ]
        if not roots:
            return []

        root_set = set(roots)
        # Process roots without a detached retainer first so their clusters
        # absorb descendants before those are expanded on their own.
        roots.sort(key=lambda i: (any(r in root_set for r in graph.retainers(i)), i))

        clusters: Dict[int, Tuple[Tuple[int, ...], bool]] = {}
        absorbed: Set[int] = set()
        for root in roots:
            if root in absorbed:
                continue
            reach = exclusive_reach(
                graph, root,
                boundary=is_traversal_boundary,
                budget=self._limits.max_traversal_nodes,
            )
            clusters[root] = (reach.members, reach.truncated)
            absorbed.update(m for m in reach.members if m != root and m in root_set)

        results: List[Tuple[int, DetachedSubgraph]] = []
        for root, (members, truncated) in clusters.items():
            if root in absorbed and self._absorbed_by_other(root, clusters):
                continue
            results.append((root, self._make_subgraph(graph, root, members, truncated)))

        results.sort(key=lambda item: (-item[1].total_size, item[0]))
        subgraphs = [s for _, s in results[:limit]]
        logger.debug(
            "Found %d detached cluster(s) from %d detached node(s).", len(results), len(roots),
        )
        return subgraphs

    @staticmethod
    def _absorbed_by_other(
        root: int,
        clusters: Dict[int, Tuple[Tuple[int, ...], bool]],
    ) -> bool:
        for other, (members, _) in clusters.items():
            if other == root or root not in members:
                continue
            # Mutually retained roots: the lower index wins.
            if other in clusters[root][0] and other > root:
                continue
            return True
        return False

    def _make_subgraph(
        self,
        graph: HeapGraph,
        root: int,
        members: Tuple[int, ...],
        truncated: bool,
    ) -> DetachedSubgraph:
        node = graph.node(root)
        if node.retained_size is not None and not truncated:
            total = node.retained_size
            confidence = Confidence.approximate if node.retained_approximate else Confidence.exact
        else:
            total = sum(max(graph.node(m).self_size, 0) for m in members)
            confidence = Confidence.partial if truncated else Confidence.approximate
        return DetachedSubgraph(
            root_id=node.id,
            root_name=node.name,
            node_ids=tuple(graph.node(m).id for m in members),
            total_size=total,
            classification_confidence=classify_node(node).confidence,
            size_confidence=confidence,
            retaining_path=self._format_path(graph, find_retaining_path(graph, root)),
        )

    # ------------------------------------------------------------------
    # Closures
    # ------------------------------------------------------------------

    def find_oversized_closures(
        self,
        graph: HeapGraph,
        threshold_bytes: Optional[int] = None,
    ) -> List[ClosureLeak]:
        """Closures retaining more than *threshold_bytes*, largest first."""
        leaks, _ = self._scan_closures(graph, threshold_bytes)
        return leaks

    def _scan_closures(
        self,
        graph: HeapGraph,
        threshold_bytes: Optional[int],
    ) -> Tuple[List[ClosureLeak], List[PartialConfidenceFinding]]:
        graph.check_integrity()
        threshold = threshold_bytes if threshold_bytes is not None else self._limits.closure_threshold_bytes

        leaks: List[Tuple[int, ClosureLeak]] = []
        partial: List[PartialConfidenceFinding] = []
        for i, node in enumerate(graph.nodes):
            if classify_node(node).kind is not NodeKind.closure:
                continue
            size, confidence, reason = self._node_size(graph, i)
            if size <= threshold:
                continue
            if reason:
                partial.append(
                    PartialConfidenceFinding(
                        node_id=node.id, node_name=node.name,
                        reason=reason, estimated_bytes=size,
                    )
                )
            leaks.append(
                (i, ClosureLeak(
                    node_id=node.id,
                    name=node.name,
                    self_size=node.self_size,
                    retained_size=size,
                    size_confidence=confidence,
                ))
            )

        leaks.sort(key=lambda item: (-item[1].retained_size, item[0]))
        return [leak for _, leak in leaks], partial

    def _node_size(self, graph: HeapGraph, index: int) -> Tuple[int, Confidence, str]:
        """Return ``(size, confidence, partial_reason)`` for one node."""
        node = graph.node(index)
        if node.self_size < 0:
            return 0, Confidence.partial, f"negative self size for {node.type} node"
        if node.retained_size is not None:
            confidence = Confidence.approximate if node.retained_approximate else Confidence.exact
            return node.retained_size, confidence, ""
        size, truncated = approximate_retained_size(
            graph, index,
            boundary=is_traversal_boundary,
            budget=self._limits.max_traversal_nodes,
        )
        if truncated:
            return size, Confidence.partial, (
                f"traversal stopped after {self._limits.max_traversal_nodes} nodes"
            )
        return size, Confidence.approximate, ""

    # ------------------------------------------------------------------
    # Snapshot comparison
    # ------------------------------------------------------------------

    @staticmethod
    def compare_snapshots(
        before: HeapGraph,
        after: HeapGraph,
        include_shrinking: bool = False,
    ) -> List[ConstructorDelta]:
        """Per-constructor object count and size changes, biggest growth first."""

        def _summarize(graph: HeapGraph) -> Dict[str, Tuple[int, int]]:
            summary: Dict[str, Tuple[int, int]] = {}
            for node in graph.nodes:
                key = _constructor_key(node.type, node.name)
                count, size = summary.get(key, (0, 0))
                summary[key] = (count + 1, size + node.self_size)
            return summary

        old = _summarize(before)
        new = _summarize(after)
        deltas: List[ConstructorDelta] = []
        for key in sorted(set(old) | set(new)):
            count_before, size_before = old.get(key, (0, 0))
            count_after, size_after = new.get(key, (0, 0))
            delta = ConstructorDelta(
                constructor=key,
                count_before=count_before,
                count_after=count_after,
                size_before=size_before,
                size_after=size_after,
            )
            if delta.count_delta == 0 and delta.size_delta == 0:
                continue
            if not include_shrinking and delta.size_delta <= 0 and delta.count_delta <= 0:
                continue
            deltas.append(delta)

        deltas.sort(key=lambda d: (-d.size_delta, -d.count_delta, d.constructor))
        return deltas

    # ------------------------------------------------------------------
    # Combined analysis
    # ------------------------------------------------------------------

    def analyze(
        self,
        graph: Optional[HeapGraph] = None,
        timeline: Optional[MemoryTimeline] = None,
        baseline_graph: Optional[HeapGraph] = None,
    ) -> LeakAnalysisResult:
        """Run every leak analysis the inputs allow.

        When *graph* is omitted the latest graph in *timeline* is used.  A
        malformed graph fails only the graph-based analyses; growth results
        are still returned.
        """
        result = LeakAnalysisResult()

        if timeline is not None:
            result.growth = self.detect_growth(timeline)
            if graph is None:
                graph = timeline.latest_graph()

        if graph is not None:
            try:
                result.detached = self.find_detached_subgraphs(graph)
                result.closures, result.partial = self._scan_closures(graph, None)
            except MalformedGraphError as exc:
                logger.warning("Skipping graph analyses: %s", exc)
                result.failures.append(f"graph: {exc}")
                result.detached, result.closures, result.partial = [], [], []

        if baseline_graph is not None and graph is not None:
            result.constructor_deltas = self.compare_snapshots(baseline_graph, graph)

        result.findings = self._build_findings(result)
        return result

    def _build_findings(self, result: LeakAnalysisResult) -> List[LeakFinding]:
        findings: List[LeakFinding] = []
        growth = result.growth
        percent_threshold = self._thresholds.percent_threshold

        if growth is not None and growth.percent_growth > percent_threshold:
            if growth.is_leak:
                severity = (
                    Severity.major
                    if growth.percent_growth >= 2 * percent_threshold
                    else Severity.moderate
                )
                description = (
                    f"Heap grew {growth.percent_growth:.1f}% "
                    f"({_format_bytes(growth.absolute_growth)}) across "
                    f"{growth.samples_analyzed} samples"
                )
            else:
                severity = Severity.minor
                description = (
                    f"Heap grew {growth.percent_growth:.1f}% but only "
                    f"{growth.consistency_ratio * 100:.0f}% of steps increased"
                )
            findings.append(
                LeakFinding(
                    kind="growth",
                    severity=severity,
                    bytes=growth.absolute_growth,
                    description=description,
                    confidence=Confidence.exact,
                    provenance="heap timeline",
                )
            )

        for cluster in result.detached:
            findings.append(
                LeakFinding(
                    kind="detached_subgraph",
                    severity=self._size_severity(cluster.total_size),
                    bytes=cluster.total_size,
                    description=(
                        f"{cluster.root_name} retains {cluster.node_count} node(s), "
                        f"{_format_bytes(cluster.total_size)}"
                    ),
                    confidence=cluster.size_confidence,
                    provenance=cluster.retaining_path or "heap snapshot",
                    node_ids=cluster.node_ids,
                )
            )

        for closure in result.closures:
            findings.append(
                LeakFinding(
                    kind="oversized_closure",
                    severity=self._size_severity(closure.retained_size),
                    bytes=closure.retained_size,
                    description=(
                        f"Closure {closure.name or '(anonymous)'} retains "
                        f"{_format_bytes(closure.retained_size)}"
                    ),
                    confidence=closure.size_confidence,
                    provenance="heap snapshot",
                    node_ids=(closure.node_id,),
                )
            )

        findings.sort(key=lambda f: (-f.severity.rank, -f.bytes, f.kind, f.node_ids))
        return findings

    def _size_severity(self, size: int) -> Severity:
        return severity_for_bytes(
            size, self._limits.moderate_leak_bytes, self._limits.major_leak_bytes,
        )

    # ------------------------------------------------------------------
    # Linear regression
    # ------------------------------------------------------------------

    @staticmethod
    def _linear_regression(
        x: List[float], y: List[float],
    ) -> Tuple[float, float]:
        """Simple OLS linear regression. Returns (slope, r_squared)."""
        n = len(x)
        if n < 2:
            return 0.0, 0.0

        sum_x = sum(x)
        sum_y = sum(y)
        sum_xy = sum(xi * yi for xi, yi in zip(x, y))
        sum_x2 = sum(xi * xi for xi in x)

        denom = n * sum_x2 - sum_x * sum_x
        if denom == 0:
            return 0.0, 0.0

        slope = (n * sum_xy - sum_x * sum_y) / denom

        mean_y = sum_y / n
        ss_tot = sum((yi - mean_y) ** 2 for yi in y)
        if ss_tot == 0:
            return slope, 1.0 if slope == 0 else 0.0

        intercept = (sum_y - slope * sum_x) / n
        ss_res = sum((yi - (slope * xi + intercept)) ** 2 for xi, yi in zip(x, y))
        r_squared = 1.0 - (ss_res / ss_tot)

        return slope, max(r_squared, 0.0)

    # ------------------------------------------------------------------
    # Recommendations
    # ------------------------------------------------------------------

    @staticmethod
    def _growth_recommendations(
        is_leak: bool,
        percent: float,
        rate: float,
        r_squared: float,
        duration_s: float,
        current_size: int,
    ) -> List[str]:
        """Generate actionable recommendations based on growth analysis."""
        if not is_leak:
            return []

        recs: List[str] = []

        if rate > 0 and current_size > 0:
            hours_to_double = current_size / rate / 3600.0
            if hours_to_double < 24:
                recs.append(
                    f"Heap is growing at {_format_bytes(int(rate))}/s. "
                    f"At this rate it will double in ~{hours_to_double:.1f} hours."
                )

        recs.append(
            "Check for event listeners, observers and timers that are added "
            "on each interaction but never removed."
        )
        recs.append(
            "Look for caches and arrays keyed by DOM nodes or request ids "
            "that are never pruned."
        )

        if r_squared > 0.9:
            recs.append(
                "Heap growth is highly linear (R²={:.2f}), suggesting a "
                "per-action leak. Repeat the suspected action and compare "
                "snapshots taken before and after.".format(r_squared)
            )

        if percent > 50.0 and duration_s > 0:
            recs.append(
                "Take a heap snapshot now and inspect detached DOM trees and "
                "large closures for the retained objects."
            )

        return recs

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _format_path(graph: HeapGraph, path: List[int]) -> str:
        if not path:
            return ""
        parts = [graph.node(path[0]).name or f"@{graph.node(path[0]).id}"]
        for src, dst in zip(path, path[1:]):
            target = graph.node(dst)
            label = ""
            for edge in graph.out_edges(src):
                if edge.to_id == target.id and edge.is_retaining:
                    label = str(edge.name_or_index)
                    break
            parts.append(f"[{label}] {target.name or '@' + str(target.id)}")
        return " -> ".join(parts)


def _constructor_key(node_type: str, name: str) -> str:
    if node_type in ("object", "native"):
        return name
    if node_type == "closure":
        return "(closure)"
    return f"({node_type})"


def _format_bytes(size: int) -> str:
    value = float(abs(size))
    sign = "-" if size < 0 else ""
    for unit in ("B", "KB", "MB"):
        if value < 1024.0:
            return f"{sign}{value:.1f} {unit}" if unit != "B" else f"{sign}{int(value)} B"
        value /= 1024.0
    return f"{sign}{value:.1f} GB"
