"""Severity scale shared by every finding type."""

from __future__ import annotations

from enum import Enum
from typing import Iterable


class Severity(str, Enum):
    """Ordered severity tiers, lowest first."""

    none = "none"
    minor = "minor"
    moderate = "moderate"
    major = "major"

    @property
    def rank(self) -> int:
        return _RANKS[self]

    def escalate(self) -> Severity:
        """Return the next tier up (``major`` stays ``major``)."""
        order = list(Severity)
        return order[min(self.rank + 1, len(order) - 1)]


_RANKS = {s: i for i, s in enumerate(Severity)}


def max_severity(values: Iterable[Severity]) -> Severity:
    result = Severity.none
    for value in values:
        if value.rank > result.rank:
            result = value
    return result


def severity_for_bytes(size: int, moderate_bytes: int, major_bytes: int) -> Severity:
    """Tier a retained byte count against two cut-offs."""
    if size >= major_bytes:
        return Severity.major
    if size >= moderate_bytes:
        return Severity.moderate
    return Severity.minor
