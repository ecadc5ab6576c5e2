"""Exception taxonomy shared by every analysis component.

``MalformedInputError`` subclasses are fatal to the sub-analysis that
raised them but never to sibling analyses.  ``ResourceExhaustedError`` is
fatal to a run and is reported by the orchestrator as a skipped section.
"""

from __future__ import annotations


class DiagnosticsError(Exception):
    """Base class for all analysis engine errors."""


class MalformedInputError(DiagnosticsError, ValueError):
    """A captured artifact is corrupt, incomplete or inconsistent."""


class MalformedSnapshotError(MalformedInputError):
    """A raw heap-snapshot document is missing sections or misaligned."""


class MalformedGraphError(MalformedInputError):
    """A heap graph has an edge whose endpoint does not exist."""

    def __init__(self, message: str, dangling_edges: int = 0) -> None:
        super().__init__(message)
        self.dangling_edges = dangling_edges


class DimensionMismatchError(MalformedInputError):
    """Two images passed to a comparison have different dimensions."""

    def __init__(
        self,
        baseline_size: tuple,
        candidate_size: tuple,
    ) -> None:
        super().__init__(
            f"Image dimensions differ: baseline {baseline_size[0]}x{baseline_size[1]}, "
            f"candidate {candidate_size[0]}x{candidate_size[1]}"
        )
        self.baseline_size = baseline_size
        self.candidate_size = candidate_size


class ResourceExhaustedError(DiagnosticsError):
    """An artifact exceeds the configured memory budget."""

    def __init__(self, message: str, limit: int = 0, observed: int = 0) -> None:
        super().__init__(message)
        self.limit = limit
        self.observed = observed
