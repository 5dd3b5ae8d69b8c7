"""
Exception hierarchy for dropmix.

Structural errors (bad shapes, bad labels) derive from
:class:`CountMatrixError`; data errors (nothing matched, purity undefined)
are separate classes so callers can tell them apart from an empty result.
"""

from __future__ import annotations

from typing import Iterable, Optional


class DropMixError(Exception):
    """Base class for every error raised by dropmix."""


class CountMatrixError(DropMixError, ValueError):
    """A count matrix invariant was violated."""

    def __init__(self, message: str, labels: Iterable[str] = ()):
        self.labels = tuple(labels)
        super().__init__(message)


class DimensionMismatch(CountMatrixError):
    """Grid shape does not agree with the row / column labels."""

    def __init__(self, message: str, shape: Optional[tuple] = None, expected: Optional[tuple] = None):
        self.shape = shape
        self.expected = expected
        super().__init__(message)


class DuplicateLabel(CountMatrixError):
    """A gene or cell id occurs more than once."""


class UnknownLabel(CountMatrixError):
    """A requested gene or cell id is not present."""


class ConflictingGroup(CountMatrixError):
    """A column is claimed by more than one merge group."""


class NegativeCount(CountMatrixError):
    """Counts must be non-negative."""


class NonFiniteCount(CountMatrixError):
    """Counts must be finite numbers (no NaN or infinity)."""


class NoMatchingGenes(DropMixError, ValueError):
    """A gene pattern or prefix selected no gene at all."""

    def __init__(self, pattern: str, message: Optional[str] = None):
        self.pattern = pattern
        super().__init__(message or f"No gene matches {pattern!r}")


class UndefinedPurity(DropMixError, ZeroDivisionError):
    """Purity of a cell with zero species transcripts is undefined."""

    def __init__(self, cell: Optional[str] = None):
        self.cell = cell
        where = f" for cell {cell!r}" if cell is not None else ""
        super().__init__(f"Purity is undefined{where}: no species transcripts")


def _preview(labels: Iterable[str], limit: int = 5) -> str:
    """Short, readable rendering of a label list for error messages."""
    labels = list(labels)
    shown = ", ".join(repr(x) for x in labels[:limit])
    if len(labels) > limit:
        shown += f", ... ({len(labels) - limit} more)"
    return shown
