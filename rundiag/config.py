"""Tunable thresholds for every analysis component.

All numeric cut-offs used by the detectors are heuristics whose right
values depend on the application under test, so none of them are
hard-coded in the algorithms.  Each component reads a small frozen
dataclass; :class:`AnalysisConfig` groups them and round-trips through
JSON so a project can commit its tuned thresholds next to its tests.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


# ============================================================================
# Defaults
# ============================================================================

_KIB: int = 1024
_MIB: int = 1024 * 1024

# Heap growth.
_GROWTH_PERCENT_THRESHOLD: float = 10.0
_GROWTH_CONSISTENCY_RATIO: float = 0.7

# Heap snapshot budget and traversal.
_MAX_SNAPSHOT_BYTES: int = 512 * _MIB
_MAX_NODES: int = 5_000_000
_DETACHED_TOP_N: int = 10
_CLOSURE_THRESHOLD_BYTES: int = 512 * _KIB
_MAX_TRAVERSAL_NODES: int = 100_000
_MODERATE_LEAK_BYTES: int = 100 * _KIB
_MAJOR_LEAK_BYTES: int = 1 * _MIB

# Image diff.
_DIFF_THRESHOLD: float = 0.1
_MIN_HOTSPOT_PIXELS: int = 100
_MINOR_MAX_AREA: int = 500
_MODERATE_MAX_AREA: int = 1000
_CONTRAST_ESCALATION: float = 0.5

# Error aggregation.
_MAX_EVENTS: int = 1000
_MAX_DURATION_MS: float = 60 * 60 * 1000.0
_TREND_CHANGE_PCT: float = 10.0
_TREND_WINDOW_MS: float = 60 * 1000.0

# Report synthesis.
_LEAK_WEIGHT: float = 0.5
_VISUAL_WEIGHT: float = 0.3
_ERROR_WEIGHT: float = 0.2
_LEAK_BYTES_SCALE: float = 10.0 * _MIB
_ERROR_COUNT_SCALE: float = 100.0
_MAJOR_TREND_CHANGE_PCT: float = 100.0


# ============================================================================
# Component configs
# ============================================================================


@dataclass(frozen=True)
class GrowthThresholds:
    """When a memory timeline counts as leaking."""

    percent_threshold: float = _GROWTH_PERCENT_THRESHOLD
    consistency_ratio: float = _GROWTH_CONSISTENCY_RATIO

    def __post_init__(self) -> None:
        if not 0.0 <= self.consistency_ratio <= 1.0:
            raise ValueError(
                f"consistency_ratio must be within [0, 1], got {self.consistency_ratio}"
            )

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> GrowthThresholds:
        return cls(
            percent_threshold=float(data.get("percent_threshold", _GROWTH_PERCENT_THRESHOLD)),
            consistency_ratio=float(data.get("consistency_ratio", _GROWTH_CONSISTENCY_RATIO)),
        )


@dataclass(frozen=True)
class HeapLimits:
    """Budgets and size tiers for heap snapshot analysis."""

    max_snapshot_bytes: int = _MAX_SNAPSHOT_BYTES
    max_nodes: int = _MAX_NODES
    detached_top_n: int = _DETACHED_TOP_N
    closure_threshold_bytes: int = _CLOSURE_THRESHOLD_BYTES
    max_traversal_nodes: int = _MAX_TRAVERSAL_NODES
    moderate_leak_bytes: int = _MODERATE_LEAK_BYTES
    major_leak_bytes: int = _MAJOR_LEAK_BYTES

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> HeapLimits:
        return cls(
            max_snapshot_bytes=int(data.get("max_snapshot_bytes", _MAX_SNAPSHOT_BYTES)),
            max_nodes=int(data.get("max_nodes", _MAX_NODES)),
            detached_top_n=int(data.get("detached_top_n", _DETACHED_TOP_N)),
            closure_threshold_bytes=int(data.get("closure_threshold_bytes", _CLOSURE_THRESHOLD_BYTES)),
            max_traversal_nodes=int(data.get("max_traversal_nodes", _MAX_TRAVERSAL_NODES)),
            moderate_leak_bytes=int(data.get("moderate_leak_bytes", _MODERATE_LEAK_BYTES)),
            major_leak_bytes=int(data.get("major_leak_bytes", _MAJOR_LEAK_BYTES)),
        )


@dataclass(frozen=True)
class DiffOptions:
    """Options for :meth:`ImageDiffEngine.compare`.

    ``threshold`` is the perceptual color-distance tolerance in ``[0, 1]``;
    smaller values make the comparison more sensitive.  Components are
    tiered by area: ``< minor_max_area`` is minor, up to and including
    ``moderate_max_area`` is moderate, anything larger is major.  When
    ``contrast_escalation`` is set, a component whose mean normalized
    color delta reaches it is bumped one tier.
    """

    threshold: float = _DIFF_THRESHOLD
    include_anti_aliasing: bool = False
    connectivity: int = 8
    min_pixel_count: int = _MIN_HOTSPOT_PIXELS
    minor_max_area: int = _MINOR_MAX_AREA
    moderate_max_area: int = _MODERATE_MAX_AREA
    contrast_escalation: Optional[float] = _CONTRAST_ESCALATION

    def __post_init__(self) -> None:
        if not 0.0 <= self.threshold <= 1.0:
            raise ValueError(f"threshold must be within [0, 1], got {self.threshold}")
        if self.connectivity not in (4, 8):
            raise ValueError(f"connectivity must be 4 or 8, got {self.connectivity}")
        if self.minor_max_area > self.moderate_max_area:
            raise ValueError("minor_max_area must not exceed moderate_max_area")

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> DiffOptions:
        escalation = data.get("contrast_escalation", _CONTRAST_ESCALATION)
        return cls(
            threshold=float(data.get("threshold", _DIFF_THRESHOLD)),
            include_anti_aliasing=bool(data.get("include_anti_aliasing", False)),
            connectivity=int(data.get("connectivity", 8)),
            min_pixel_count=int(data.get("min_pixel_count", _MIN_HOTSPOT_PIXELS)),
            minor_max_area=int(data.get("minor_max_area", _MINOR_MAX_AREA)),
            moderate_max_area=int(data.get("moderate_max_area", _MODERATE_MAX_AREA)),
            contrast_escalation=None if escalation is None else float(escalation),
        )


@dataclass(frozen=True)
class AggregatorLimits:
    """Ring buffer bounds and trend cut-offs for the error aggregator."""

    max_events: int = _MAX_EVENTS
    max_duration_ms: Optional[float] = _MAX_DURATION_MS
    trend_change_pct: float = _TREND_CHANGE_PCT
    trend_window_ms: float = _TREND_WINDOW_MS

    def __post_init__(self) -> None:
        if self.max_events < 1:
            raise ValueError(f"max_events must be positive, got {self.max_events}")

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> AggregatorLimits:
        duration = data.get("max_duration_ms", _MAX_DURATION_MS)
        return cls(
            max_events=int(data.get("max_events", _MAX_EVENTS)),
            max_duration_ms=None if duration is None else float(duration),
            trend_change_pct=float(data.get("trend_change_pct", _TREND_CHANGE_PCT)),
            trend_window_ms=float(data.get("trend_window_ms", _TREND_WINDOW_MS)),
        )


@dataclass(frozen=True)
class SynthesisWeights:
    """Weights and normalization scales used to rank report sections.

    ``major_trend_change_pct`` is the percent rise at which an increasing
    error trend counts as major.
    """

    leak: float = _LEAK_WEIGHT
    visual: float = _VISUAL_WEIGHT
    errors: float = _ERROR_WEIGHT
    leak_bytes_scale: float = _LEAK_BYTES_SCALE
    error_count_scale: float = _ERROR_COUNT_SCALE
    major_trend_change_pct: float = _MAJOR_TREND_CHANGE_PCT

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> SynthesisWeights:
        return cls(
            leak=float(data.get("leak", _LEAK_WEIGHT)),
            visual=float(data.get("visual", _VISUAL_WEIGHT)),
            errors=float(data.get("errors", _ERROR_WEIGHT)),
            leak_bytes_scale=float(data.get("leak_bytes_scale", _LEAK_BYTES_SCALE)),
            error_count_scale=float(data.get("error_count_scale", _ERROR_COUNT_SCALE)),
            major_trend_change_pct=float(
                data.get("major_trend_change_pct", _MAJOR_TREND_CHANGE_PCT)
            ),
        )


# ============================================================================
# Aggregate config
# ============================================================================


@dataclass(frozen=True)
class AnalysisConfig:
    """Every tunable used during one analysis run."""

    growth: GrowthThresholds = field(default_factory=GrowthThresholds)
    heap: HeapLimits = field(default_factory=HeapLimits)
    diff: DiffOptions = field(default_factory=DiffOptions)
    aggregator: AggregatorLimits = field(default_factory=AggregatorLimits)
    weights: SynthesisWeights = field(default_factory=SynthesisWeights)

    def to_dict(self) -> Dict[str, object]:
        return {
            "growth": self.growth.to_dict(),
            "heap": self.heap.to_dict(),
            "diff": self.diff.to_dict(),
            "aggregator": self.aggregator.to_dict(),
            "weights": self.weights.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> AnalysisConfig:
        return cls(
            growth=GrowthThresholds.from_dict(data.get("growth", {}) or {}),
            heap=HeapLimits.from_dict(data.get("heap", {}) or {}),
            diff=DiffOptions.from_dict(data.get("diff", {}) or {}),
            aggregator=AggregatorLimits.from_dict(data.get("aggregator", {}) or {}),
            weights=SynthesisWeights.from_dict(data.get("weights", {}) or {}),
        )

    def save(self, path: Path) -> None:
        path.write_text(json.dumps(self.to_dict(), indent=2))

    @classmethod
    def load(cls, path: Path) -> AnalysisConfig:
        """Read a JSON config file; missing keys keep their defaults."""
        data = json.loads(path.read_text())
        if not isinstance(data, dict):
            raise ValueError(f"Config file {path} must contain a JSON object")
        logger.debug("Loaded analysis config from %s", path)
        return cls.from_dict(data)
