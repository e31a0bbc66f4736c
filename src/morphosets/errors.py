"""
Exceptions and warnings raised by morphosets.

All fatal errors derive from ``MorphosetsError``, which is a ``ValueError``
so that callers catching bad-input errors keep working.
"""

from __future__ import annotations

from typing import Iterable


class MorphosetsError(ValueError):
    """Base class for invalid landmark or centroid-size input."""


class InsufficientSubsets(MorphosetsError):
    """Raised when fewer than two subsets are supplied for combination."""

    def __init__(self, n_subsets: int):
        self.n_subsets = n_subsets
        super().__init__(
            f"At least two subsets are required. You have {n_subsets} subset(s)."
        )


class StructuralMismatch(MorphosetsError):
    """Raised when landmark arrays are malformed or disagree in structure.

    Attributes:
        subsets: Names of the subsets involved, in input order (may be empty
            when a single unnamed array is at fault)
    """

    def __init__(self, message: str, subsets: Iterable[str] = ()):
        self.subsets = tuple(subsets)
        if self.subsets:
            message = f"{message} (subsets: {', '.join(self.subsets)})"
        super().__init__(message)


class CentroidSizeError(MorphosetsError):
    """Raised for unsupported or invalid centroid-size input."""


class CentroidSizeCardinalityMismatch(UserWarning):
    """Issued when the number of centroid-size sets differs from the subsets.

    The combiner proceeds with unit centroid sizes.
    """
