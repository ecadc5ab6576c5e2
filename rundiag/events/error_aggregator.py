"""Fingerprinting, grouping and trend detection for streamed error events.

Console errors and uncaught exceptions arrive one at a time from an
external listener.  Each event is reduced to a fingerprint (message with
variable literals collapsed, plus source location) so that the hundred
"Failed to load resource: 404" lines from one bug land in one bucket.

The aggregator is the only stateful component of the engine.  It keeps a
bounded FIFO ring buffer so long debugging sessions stay within a fixed
memory budget; queries work on a consistent snapshot copied under a lock
and may run while a single writer keeps ingesting.
"""

from __future__ import annotations

import logging
import re
import threading
from collections import deque
from dataclasses import dataclass, field, asdict
from typing import Any, Deque, Dict, List, Optional, Tuple

from rundiag.config import AggregatorLimits

logger = logging.getLogger(__name__)


# ============================================================================
# Normalization rules
# ============================================================================

_STR_PLACEHOLDER = "<str>"
_NUM_PLACEHOLDER = "<num>"

_DOUBLE_QUOTED = re.compile(r'"(?:[^"\\]|\\.)*"')
_BACKTICK_QUOTED = re.compile(r"`(?:[^`\\]|\\.)*`")
# Apostrophes inside words (contractions) never open or close a literal.
_SINGLE_QUOTED = re.compile(r"(?<!\w)'((?:[^'\\]|\\.)*)'(?!\w)")
_IDENTIFIER = re.compile(r"^[A-Za-z_$][\w$]*$")
_HEX_NUMBER = re.compile(r"\b0x[0-9a-fA-F]+\b")
_DIGITS = re.compile(r"\d+")
_WHITESPACE = re.compile(r"\s+")

# (keywords, cause, suggested fix) checked in order.
_CAUSE_RULES: Tuple[Tuple[Tuple[str, ...], str, str], ...] = (
    (
        ("undefined", "null"),
        "reference error",
        "Guard the access with optional chaining or a null check, and make "
        "sure the value is initialized before it is read.",
    ),
    (
        ("network", "fetch"),
        "network failure",
        "Check the request URL and server availability, and handle the "
        "rejected request with a retry or a user-visible fallback.",
    ),
)
_UNKNOWN_CAUSE = "unknown"
_UNKNOWN_FIX = "Inspect the stack trace of a representative event to find the failing code path."


def _replace_single_quoted(match: "re.Match[str]") -> str:
    # Bare identifiers name the failing property, so they stay.
    if _IDENTIFIER.match(match.group(1)):
        return match.group(0)
    return f"'{_STR_PLACEHOLDER}'"


def normalize_message(message: str) -> str:
    """Collapse the variable parts of an error message into placeholders."""
    text = _DOUBLE_QUOTED.sub(f'"{_STR_PLACEHOLDER}"', message)
    text = _BACKTICK_QUOTED.sub(f"`{_STR_PLACEHOLDER}`", text)
    text = _SINGLE_QUOTED.sub(_replace_single_quoted, text)
    text = _HEX_NUMBER.sub(_NUM_PLACEHOLDER, text)
    # Placeholders contain no digits, so this only touches literal numbers.
    text = _DIGITS.sub(_NUM_PLACEHOLDER, text)
    return _WHITESPACE.sub(" ", text).strip()


def classify_cause(message: str) -> Tuple[str, str]:
    """Return ``(common_cause, suggested_fix)`` for a message."""
    lowered = message.lower()
    for keywords, cause, fix in _CAUSE_RULES:
        if any(k in lowered for k in keywords):
            return cause, fix
    return _UNKNOWN_CAUSE, _UNKNOWN_FIX


# ============================================================================
# Data classes
# ============================================================================


@dataclass(frozen=True)
class ErrorEvent:
    """One console error or uncaught exception.  ``timestamp`` is in ms."""

    message: str
    timestamp: float
    stack: str = ""
    source_file: str = ""
    line: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> ErrorEvent:
        return cls(
            message=str(data.get("message", "")),
            timestamp=float(data.get("timestamp", 0.0)),
            stack=str(data.get("stack", "") or ""),
            source_file=str(data.get("source_file", data.get("source", "")) or ""),
            line=int(data.get("line", 0) or 0),
            metadata=dict(data.get("metadata", {}) or {}),
        )


@dataclass(frozen=True)
class ErrorFingerprint:
    """Deduplicating key for a family of error events."""

    normalized_message: str
    source_file: str
    line: int

    @property
    def key(self) -> str:
        location = f"{self.source_file}:{self.line}" if self.source_file else f":{self.line}"
        return f"{self.normalized_message} @ {location}"

    @classmethod
    def of(cls, event: ErrorEvent) -> ErrorFingerprint:
        return cls(
            normalized_message=normalize_message(event.message),
            source_file=event.source_file,
            line=event.line,
        )


@dataclass(frozen=True)
class ErrorPattern:
    """A recurring error with a rule-based cause and fix."""

    fingerprint: str
    message: str  # representative (first buffered) message
    frequency: int
    first_seen: float
    last_seen: float
    common_cause: str
    suggested_fix: str

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)


@dataclass(frozen=True)
class ErrorTrend:
    """Bucketed frequency of one fingerprint and its direction."""

    fingerprint: str
    window_size_ms: float
    bucket_counts: Tuple[int, ...]
    direction: str  # "increasing", "decreasing", "stable"
    percent_change: float
    total: int

    def to_dict(self) -> Dict[str, object]:
        data = asdict(self)
        data["bucket_counts"] = list(self.bucket_counts)
        return data


@dataclass(frozen=True)
class AggregatorStats:
    ingested: int
    evicted: int
    buffered: int
    distinct_fingerprints: int

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)


# ============================================================================
# Error Aggregator
# ============================================================================


class ErrorAggregator:
    """Bounded, session-scoped store of fingerprinted error events.

    Usage::

        aggregator = ErrorAggregator()
        for event in listener:
            aggregator.ingest(event)
        patterns = aggregator.group_patterns(min_occurrences=2)
        trends = aggregator.compute_trends(window_size_ms=60_000)
    """

    def __init__(self, limits: Optional[AggregatorLimits] = None) -> None:
        self._limits = limits or AggregatorLimits()
        self._lock = threading.Lock()
        # Global arrival order, used for FIFO eviction.
        self._buffer: Deque[Tuple[str, ErrorEvent]] = deque()
        self._buckets: Dict[str, Deque[ErrorEvent]] = {}
        self._ingested = 0
        self._evicted = 0

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def ingest(self, event: ErrorEvent) -> str:
        """Add *event* and return its fingerprint key."""
        key = ErrorFingerprint.of(event).key
        with self._lock:
            self._buffer.append((key, event))
            bucket = self._buckets.get(key)
            if bucket is None:
                bucket = deque()
                self._buckets[key] = bucket
            bucket.append(event)
            self._ingested += 1
            self._evict(event.timestamp)
        return key

    def _evict(self, newest: float) -> None:
        max_events = self._limits.max_events
        max_duration = self._limits.max_duration_ms
        while self._buffer:
            key, oldest = self._buffer[0]
            too_many = len(self._buffer) > max_events
            too_old = max_duration is not None and newest - oldest.timestamp > max_duration
            if not (too_many or too_old):
                break
            self._buffer.popleft()
            bucket = self._buckets[key]
            bucket.popleft()
            if not bucket:
                del self._buckets[key]
            self._evicted += 1

    def clear(self) -> None:
        with self._lock:
            self._buffer.clear()
            self._buckets.clear()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def snapshot(self) -> Tuple[Tuple[str, ErrorEvent], ...]:
        """Buffered ``(fingerprint, event)`` pairs, oldest first."""
        with self._lock:
            return tuple(self._buffer)

    def stats(self) -> AggregatorStats:
        with self._lock:
            return AggregatorStats(
                ingested=self._ingested,
                evicted=self._evicted,
                buffered=len(self._buffer),
                distinct_fingerprints=len(self._buckets),
            )

    def group_patterns(self, min_occurrences: int = 2) -> List[ErrorPattern]:
        """Fingerprints seen at least *min_occurrences* times, most frequent first."""
        grouped: Dict[str, List[ErrorEvent]] = {}
        for key, event in self.snapshot():
            grouped.setdefault(key, []).append(event)

        patterns: List[ErrorPattern] = []
        for key, events in grouped.items():
            if len(events) < min_occurrences:
                continue
            cause, fix = classify_cause(events[0].message)
            patterns.append(
                ErrorPattern(
                    fingerprint=key,
                    message=events[0].message,
                    frequency=len(events),
                    first_seen=min(e.timestamp for e in events),
                    last_seen=max(e.timestamp for e in events),
                    common_cause=cause,
                    suggested_fix=fix,
                )
            )

        patterns.sort(key=lambda p: (-p.frequency, p.fingerprint))
        return patterns

    def compute_trends(
        self,
        window_size_ms: Optional[float] = None,
        change_threshold_pct: Optional[float] = None,
    ) -> List[ErrorTrend]:
        """Per-fingerprint frequency trends over fixed time windows.

        Windows start at the earliest buffered event so every fingerprint
        shares the same bucket grid.  The mean count of the first half of
        the buckets is compared with the second half; with an odd number of
        buckets the middle one belongs to the second half.
        """
        window = window_size_ms if window_size_ms is not None else self._limits.trend_window_ms
        if window <= 0:
            raise ValueError(f"window_size_ms must be positive, got {window}")
        cutoff = (
            change_threshold_pct
            if change_threshold_pct is not None
            else self._limits.trend_change_pct
        )

        entries = self.snapshot()
        if not entries:
            return []

        start = min(e.timestamp for _, e in entries)
        end = max(e.timestamp for _, e in entries)
        bucket_total = int((end - start) // window) + 1

        counts: Dict[str, List[int]] = {}
        for key, event in entries:
            row = counts.get(key)
            if row is None:
                row = [0] * bucket_total
                counts[key] = row
            row[int((event.timestamp - start) // window)] += 1

        trends: List[ErrorTrend] = []
        for key, row in counts.items():
            percent = self._percent_change(row)
            if percent > cutoff:
                direction = "increasing"
            elif percent < -cutoff:
                direction = "decreasing"
            else:
                direction = "stable"
            trends.append(
                ErrorTrend(
                    fingerprint=key,
                    window_size_ms=window,
                    bucket_counts=tuple(row),
                    direction=direction,
                    percent_change=round(percent, 2),
                    total=sum(row),
                )
            )

        trends.sort(key=lambda t: (-abs(t.percent_change), t.fingerprint))
        return trends

    @staticmethod
    def _percent_change(row: List[int]) -> float:
        half = len(row) // 2
        if half == 0:
            return 0.0
        first = row[:half]
        second = row[half:]
        before = sum(first) / len(first)
        after = sum(second) / len(second)
        if before == 0:
            return 100.0 if after > 0 else 0.0
        return (after - before) / before * 100.0

    def __len__(self) -> int:
        with self._lock:
            return len(self._buffer)
