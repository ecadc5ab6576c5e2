"""Error event fingerprinting, grouping and trends."""

from rundiag.events.error_aggregator import (
    ErrorAggregator,
    ErrorEvent,
    ErrorPattern,
    ErrorTrend,
    normalize_message,
)

__all__ = ["ErrorAggregator", "ErrorEvent", "ErrorPattern", "ErrorTrend", "normalize_message"]
