"""rundiag - turn captured runtime artifacts into ranked diagnostic findings."""

__version__ = "0.1.0"
