"""
Size-factor estimation restricted to reference genes.

Median-of-ratios normalization computed on a reference gene set instead of
the whole transcriptome:

    g_i   = exp(mean(log y_ij) over samples j with y_ij > 0)
    s_j   = median(y_ij / g_i over eligible genes i with y_ij > 0)
    s_j  <- s_j / exp(mean(log s))

Genes are eligible when they belong to the reference set and their row total
reaches ``min_total``. Zero counts are excluded both from the per-gene
geometric mean and from the per-sample median, so a reference gene that
drops out in one library does not drag that library's factor to zero.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np
import pandas as pd
from numpy.typing import NDArray

from housekeeper.core.countmatrix import CountMatrix
from housekeeper.core.errors import DegenerateReferenceSetError

logger = logging.getLogger(__name__)

__all__ = ['SizeFactors', 'SizeFactorEstimator', 'normalized_counts']


@dataclass(frozen=True)
class SizeFactors:
    """Per-sample normalization factors (geometric mean 1).

    Attributes:
        values: Positive factor per sample, indexed by sample id.
        reference_genes: Gene ids that were eligible and used.
    """

    values: pd.Series
    reference_genes: tuple[str, ...]

    @property
    def n_reference_genes(self) -> int:
        return len(self.reference_genes)

    def as_array(self) -> NDArray[np.float64]:
        return self.values.to_numpy(dtype=np.float64)

    def to_dataframe(self) -> pd.DataFrame:
        return pd.DataFrame({'sample_id': self.values.index, 'size_factor': self.values.values})


def normalized_counts(counts: CountMatrix, size_factors: SizeFactors) -> NDArray[np.float64]:
    """Counts divided by their sample's size factor (genes × samples)."""
    sf = size_factors.values.reindex(counts.sample_ids)
    if sf.isna().any():
        raise ValueError("size factors do not cover every sample of the count matrix")
    return counts.counts / sf.to_numpy(dtype=np.float64)[None, :]


class SizeFactorEstimator:
    """
    Median-of-ratios size factors on an eligible reference gene subset.

    Params:
        min_total: Minimum row total (across samples) for a reference gene
            to stay eligible.
        min_genes: Minimum number of eligible genes; fewer raises
            DegenerateReferenceSetError.
    """

    def __init__(self, min_total: int = 3, min_genes: int = 10):
        if min_genes < 1:
            raise ValueError(f"min_genes must be >= 1, got {min_genes}")
        self.min_total = min_total
        self.min_genes = min_genes

    def eligible_mask(self, counts: CountMatrix, reference_mask: NDArray[np.bool_]) -> NDArray[np.bool_]:
        reference_mask = np.asarray(reference_mask, dtype=bool)
        if len(reference_mask) != counts.n_genes:
            raise ValueError(
                f"reference mask length ({len(reference_mask)}) must match n_genes ({counts.n_genes})"
            )
        return reference_mask & (counts.counts.sum(axis=1) >= self.min_total)

    def estimate(self, counts: CountMatrix, reference_mask: NDArray[np.bool_]) -> SizeFactors:
        """
        Estimate size factors from the eligible reference genes.

        Args:
            counts: Experiment count matrix.
            reference_mask: Boolean membership mask over ``counts.gene_ids``.

        Returns:
            SizeFactors with geometric mean 1.

        Raises:
            DegenerateReferenceSetError: If fewer than ``min_genes`` genes are
                eligible, or a sample has no positive eligible count.
        """
        eligible = self.eligible_mask(counts, reference_mask)
        n_eligible = int(eligible.sum())
        n_reference = int(np.sum(reference_mask))

        if n_eligible < self.min_genes:
            raise DegenerateReferenceSetError(
                f"Only {n_eligible} of {n_reference} reference genes have total count "
                f">= {self.min_total}; at least {self.min_genes} are required"
            )

        y = counts.counts[eligible, :].astype(np.float64)
        positive = y > 0

        log_y = np.where(positive, np.log(np.where(positive, y, 1.0)), 0.0)
        with np.errstate(divide='ignore', invalid='ignore'):
            log_geo_means = log_y.sum(axis=1) / positive.sum(axis=1)

        log_ratios = np.where(positive, log_y - log_geo_means[:, None], np.nan)
        if np.any(np.all(np.isnan(log_ratios), axis=0)):
            empty = counts.sample_ids[np.all(np.isnan(log_ratios), axis=0)].tolist()
            raise DegenerateReferenceSetError(
                f"Samples {empty[:5]} have no positive count among the eligible reference genes"
            )

        raw = np.exp(np.nanmedian(log_ratios, axis=0))
        factors = raw / np.exp(np.mean(np.log(raw)))

        logger.info(
            f"Size factors from {n_eligible}/{n_reference} eligible reference genes: "
            f"range {factors.min():.3f}-{factors.max():.3f}"
        )

        return SizeFactors(
            values=pd.Series(factors, index=counts.sample_ids, name='size_factor'),
            reference_genes=tuple(str(g) for g in counts.gene_ids[eligible]),
        )
