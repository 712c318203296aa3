"""
Error taxonomy for the differential-expression pipeline.

Fatal errors subclass ``HousekeeperError`` (and ``ValueError`` so callers
that already catch bad-input errors keep working). Per-gene problems are
warning categories: they are recorded on the gene's own fit and reported
once per batch, never raised out of a worker.
"""

from __future__ import annotations

__all__ = [
    'HousekeeperError',
    'DataAlignmentError',
    'DegenerateReferenceSetError',
    'SingularDesignError',
    'ConvergenceFailure',
    'FilterThresholdAmbiguity',
]


class HousekeeperError(Exception):
    """Base class for fatal pipeline errors."""


class DataAlignmentError(HousekeeperError, ValueError):
    """Sample order of the design does not match the count matrix columns."""


class DegenerateReferenceSetError(HousekeeperError, ValueError):
    """Too few eligible reference genes to estimate size factors."""


class SingularDesignError(HousekeeperError, ValueError):
    """Design matrix is rank-deficient (globally, or for a single gene)."""


class ConvergenceFailure(RuntimeWarning):
    """IRLS hit its iteration cap without meeting the tolerance."""


class FilterThresholdAmbiguity(UserWarning):
    """Independent filtering found no cutoff better than testing every gene."""
