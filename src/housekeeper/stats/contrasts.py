"""
Wald tests for GLM contrasts with adaptive independent filtering.

For a contrast vector c over the design columns:

    estimate = c' beta            (natural-log scale)
    SE       = sqrt(c' Sigma c)
    stat     = estimate / SE
    pvalue   = 2 * Phi(-|stat|)

Reported fold changes are on the log2 scale (estimate / ln 2).

Independent filtering by base mean:
    1. Candidate quantiles theta run from the fraction of genes with zero
       base mean to 0.95 (50 points)
    2. For each theta, genes with baseMean >= quantile(baseMean, theta) are
       BH-adjusted and rejections at ``alpha`` counted
    3. The rejection curve is smoothed with lowess (frac = 1/5)
    4. threshold = max(smoothed) - RMSE(rejections - smoothed)
    5. The first theta whose rejections exceed the threshold wins

When no cutoff beats the rejections of BH over all genes a
FilterThresholdAmbiguity warning is raised and every gene is tested.
Filtered genes get neither a p-value nor an adjusted p-value.

References:
    - Bourgon, Gentleman & Huber (2010) PNAS 107(21):9546-9551
    - Love, Huber & Anders (2014) Genome Biology 15:550
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass, field
from typing import Literal, Mapping, Sequence

import numpy as np
import pandas as pd
from numpy.typing import NDArray
from scipy import stats as scipy_stats

from housekeeper.core.design import DesignMatrix
from housekeeper.core.errors import FilterThresholdAmbiguity
from housekeeper.stats.glm import GLMFitSet

logger = logging.getLogger(__name__)

__all__ = [
    'Contrast',
    'ContrastEngine',
    'DEResult',
    'FilterOutcome',
    'fdr_correction',
    'independent_filter',
]

RESULT_COLUMNS = [
    'baseMean', 'log2FoldChange', 'lfcSE', 'stat', 'pvalue', 'padj',
    'converged', 'low_confidence', 'filtered',
]


def _col_names(design: DesignMatrix | Sequence[str]) -> list[str]:
    if isinstance(design, DesignMatrix):
        return list(design.col_names)
    return [str(c) for c in design]


@dataclass(frozen=True)
class Contrast:
    """A named linear combination of design coefficients.

    Attributes:
        name: Label used in result metadata.
        weights: One weight per design column.
        col_names: Design columns the weights refer to.
    """

    name: str
    weights: tuple[float, ...]
    col_names: tuple[str, ...]

    def __post_init__(self):
        if len(self.weights) != len(self.col_names):
            raise ValueError(
                f"Contrast '{self.name}' has {len(self.weights)} weights for "
                f"{len(self.col_names)} design columns"
            )
        if not any(w != 0 for w in self.weights):
            raise ValueError(f"Contrast '{self.name}' is all zeros")

    @property
    def vector(self) -> NDArray[np.float64]:
        return np.array(self.weights, dtype=np.float64)

    @classmethod
    def coefficient(cls, design: DesignMatrix | Sequence[str], name: str) -> Contrast:
        """Test a single named coefficient."""
        return cls.combination(design, {name: 1.0}, name=name)

    @classmethod
    def combination(
        cls,
        design: DesignMatrix | Sequence[str],
        weights: Mapping[str, float],
        name: str | None = None,
    ) -> Contrast:
        """
        Weighted sum of named coefficients.

        Examples:
            >>> Contrast.combination(dm, {
            ...     'treatment_Inhibitor_vs_Vehicle': 1,
            ...     'conditionHigh.treatmentInhibitor': 1,
            ... }, name='Inhibitor_vs_Vehicle_in_High')
        """
        cols = _col_names(design)
        unknown = [k for k in weights if k not in cols]
        if unknown:
            raise KeyError(f"Unknown coefficients {unknown}. Available: {cols}")
        vector = [float(weights.get(c, 0.0)) for c in cols]
        if name is None:
            name = " + ".join(
                k if w == 1 else f"{w:g}*{k}" for k, w in weights.items() if w != 0
            )
        return cls(name=name, weights=tuple(vector), col_names=tuple(cols))

    @classmethod
    def from_vector(
        cls,
        design: DesignMatrix | Sequence[str],
        vector: Sequence[float],
        name: str = "contrast",
    ) -> Contrast:
        cols = _col_names(design)
        return cls(name=name, weights=tuple(float(v) for v in vector), col_names=tuple(cols))


def fdr_correction(
    pvalues: NDArray[np.float64],
    method: Literal["BH", "BY", "bonferroni"] = "BH",
    alpha: float = 0.05,
) -> NDArray[np.float64]:
    """
    Apply multiple testing correction over the non-NaN p-values.

    Args:
        pvalues: Array of raw p-values (NaN entries stay NaN).
        method: "BH", "BY" or "bonferroni".
        alpha: Significance threshold.

    Returns:
        Array of adjusted p-values.
    """
    from statsmodels.stats.multitest import multipletests

    pvalues = np.asarray(pvalues, dtype=np.float64)
    valid_mask = ~np.isnan(pvalues)
    adj_pvals = np.full_like(pvalues, np.nan)

    if not np.any(valid_mask):
        return adj_pvals

    method_map = {"BH": "fdr_bh", "BY": "fdr_by", "bonferroni": "bonferroni"}
    _, adj_pvals[valid_mask], _, _ = multipletests(
        pvalues[valid_mask],
        alpha=alpha,
        method=method_map.get(method, method),
    )

    return adj_pvals


@dataclass(frozen=True)
class FilterOutcome:
    """Chosen independent-filtering cutoff and the curve it came from.

    Attributes:
        padj: Adjusted p-values at the chosen cutoff (NaN where filtered).
        passed: Genes kept by the cutoff.
        threshold: Base-mean cutoff.
        theta: Quantile the cutoff sits at.
        curve: Columns ``theta``, ``cutoff``, ``n_rejections``, ``fit``.
        fallback: True when no cutoff was convincing and every gene was tested.
    """

    padj: NDArray[np.float64] = field(repr=False)
    passed: NDArray[np.bool_] = field(repr=False)
    threshold: float
    theta: float
    curve: pd.DataFrame = field(repr=False)
    fallback: bool


def independent_filter(
    base_mean: NDArray[np.float64],
    pvalues: NDArray[np.float64],
    alpha: float = 0.05,
    n_quantiles: int = 50,
    upper_quantile: float = 0.95,
) -> FilterOutcome:
    """
    Choose a base-mean cutoff that maximizes discoveries at ``alpha``.

    Returns:
        FilterOutcome. A FilterThresholdAmbiguity warning is emitted when the
        rejection curve gives no usable cutoff; every gene is then tested.
    """
    from statsmodels.nonparametric.smoothers_lowess import lowess

    base_mean = np.asarray(base_mean, dtype=np.float64)
    pvalues = np.asarray(pvalues, dtype=np.float64)

    lower = float(np.mean(base_mean == 0))
    upper = upper_quantile if lower < upper_quantile else 1.0
    theta = np.linspace(lower, upper, n_quantiles)
    cutoffs = np.quantile(base_mean, theta)

    padj_grid = np.full((n_quantiles, len(pvalues)), np.nan)
    for k, cutoff in enumerate(cutoffs):
        use = base_mean >= cutoff
        padj_grid[k, use] = fdr_correction(pvalues[use])
    n_rej = np.sum(padj_grid < alpha, axis=1).astype(np.float64)

    if np.ptp(theta) > 0:
        fit = lowess(n_rej, theta, frac=1 / 5, return_sorted=False)
    else:
        fit = n_rej.copy()

    curve = pd.DataFrame({'theta': theta, 'cutoff': cutoffs, 'n_rejections': n_rej.astype(int), 'fit': fit})

    unfiltered = fdr_correction(pvalues)
    baseline = int(np.sum(unfiltered < alpha))

    if n_rej.max() <= baseline:
        warnings.warn(
            f"Independent filtering found no base-mean cutoff with more than the "
            f"{baseline} unfiltered rejections at alpha={alpha}; testing all genes",
            FilterThresholdAmbiguity,
            stacklevel=3,
        )
        return FilterOutcome(
            padj=unfiltered,
            passed=np.ones(len(pvalues), dtype=bool),
            threshold=0.0,
            theta=0.0,
            curve=curve,
            fallback=True,
        )

    positive = n_rej > 0
    residual = n_rej[positive] - fit[positive]
    rmse = float(np.sqrt(np.mean(residual ** 2)))
    threshold = float(np.max(fit)) - rmse
    above = np.flatnonzero(n_rej > threshold)
    chosen = int(above[0]) if len(above) else int(np.argmax(n_rej))

    passed = base_mean >= cutoffs[chosen]
    logger.info(
        f"Independent filtering: baseMean >= {cutoffs[chosen]:.3g} "
        f"(theta={theta[chosen]:.3f}), {int(passed.sum())}/{len(passed)} genes tested, "
        f"{int(n_rej[chosen])} rejections"
    )
    return FilterOutcome(
        padj=padj_grid[chosen],
        passed=passed,
        threshold=float(cutoffs[chosen]),
        theta=float(theta[chosen]),
        curve=curve,
        fallback=False,
    )


@dataclass(frozen=True)
class DEResult:
    """Differential-expression table for one contrast.

    Attributes:
        table: One row per input gene (gene id index), columns
            baseMean, log2FoldChange, lfcSE, stat, pvalue, padj,
            converged, low_confidence, filtered.
        contrast: Contrast that was tested.
        alpha: Significance level used for filtering.
        filter_threshold: Base-mean cutoff (0 when not filtered).
        filter_theta: Quantile of the cutoff.
        rejection_curve: Rejections per candidate cutoff (empty when
            filtering is off).
        filter_fallback: True when filtering found no cutoff and tested all.
    """

    table: pd.DataFrame
    contrast: Contrast
    alpha: float
    filter_threshold: float = 0.0
    filter_theta: float = 0.0
    rejection_curve: pd.DataFrame = field(default_factory=pd.DataFrame, repr=False)
    filter_fallback: bool = False

    def __len__(self) -> int:
        return len(self.table)

    def to_dataframe(self) -> pd.DataFrame:
        return self.table.copy()

    def significant(self, alpha: float | None = None) -> pd.DataFrame:
        """Rows with padj below ``alpha`` (default: the tested alpha), by padj."""
        alpha = self.alpha if alpha is None else alpha
        hits = self.table[self.table['padj'] < alpha]
        return hits.sort_values('padj', kind='mergesort')

    def metadata(self) -> dict:
        return {
            'contrast': self.contrast.name,
            'weights': dict(zip(self.contrast.col_names, self.contrast.weights)),
            'alpha': self.alpha,
            'filter_threshold': self.filter_threshold,
            'filter_theta': self.filter_theta,
            'filter_fallback': self.filter_fallback,
            'n_tested': int((~self.table['filtered'] & self.table['pvalue'].notna()).sum()),
            'n_significant': int((self.table['padj'] < self.alpha).sum()),
        }


class ContrastEngine:
    """
    Wald tests, independent filtering and BH adjustment for one contrast.

    Params:
        alpha: Target FDR for filtering and significance calls.
        independent_filtering: Choose a base-mean cutoff before BH.
        n_quantiles: Candidate cutoffs on the filtering grid.
        upper_quantile: Largest candidate quantile.
    """

    def __init__(
        self,
        alpha: float = 0.05,
        independent_filtering: bool = True,
        n_quantiles: int = 50,
        upper_quantile: float = 0.95,
    ):
        if not 0 < alpha < 1:
            raise ValueError(f"alpha must be in (0, 1), got {alpha}")
        if n_quantiles < 2:
            raise ValueError(f"n_quantiles must be >= 2, got {n_quantiles}")
        if not 0 < upper_quantile <= 1:
            raise ValueError(f"upper_quantile must be in (0, 1], got {upper_quantile}")
        self.alpha = alpha
        self.independent_filtering = independent_filtering
        self.n_quantiles = n_quantiles
        self.upper_quantile = upper_quantile

    def wald(self, fitset: GLMFitSet, contrast: Contrast) -> pd.DataFrame:
        """Per-gene estimate, SE, Wald statistic and p-value (natural-log scale)."""
        if list(contrast.col_names) != list(fitset.design.col_names):
            raise ValueError(
                f"Contrast '{contrast.name}' refers to columns {list(contrast.col_names)}, "
                f"but the fit has {fitset.design.col_names}"
            )
        c = contrast.vector
        beta = fitset.coefficient_matrix()
        if fitset.n_genes:
            cov = np.stack([f.covariance for f in fitset.fits])
        else:
            cov = np.empty((0, len(c), len(c)))

        estimate = beta @ c
        with np.errstate(invalid='ignore'):
            se = np.sqrt(np.einsum('gij,i,j->g', cov, c, c))
            stat = estimate / se

        converged = fitset.converged
        stat = np.where(converged & np.isfinite(stat), stat, np.nan)
        pvalue = 2.0 * scipy_stats.norm.sf(np.abs(stat))

        return pd.DataFrame({
            'estimate': estimate,
            'se': se,
            'stat': stat,
            'pvalue': pvalue,
        }, index=fitset.gene_ids)

    def test(self, fitset: GLMFitSet, contrast: Contrast) -> DEResult:
        """
        Test ``contrast`` for every gene of ``fitset``.

        Returns:
            DEResult with one row per gene in fit order.
        """
        wald = self.wald(fitset, contrast)
        pvalue = wald['pvalue'].to_numpy()
        base_mean = np.asarray(fitset.base_mean, dtype=np.float64)

        if self.independent_filtering and fitset.n_genes:
            outcome = independent_filter(
                base_mean, pvalue, alpha=self.alpha,
                n_quantiles=self.n_quantiles, upper_quantile=self.upper_quantile,
            )
            padj = outcome.padj
            filtered = ~outcome.passed
            meta = dict(
                filter_threshold=outcome.threshold,
                filter_theta=outcome.theta,
                rejection_curve=outcome.curve,
                filter_fallback=outcome.fallback,
            )
        else:
            padj = fdr_correction(pvalue)
            filtered = np.zeros(fitset.n_genes, dtype=bool)
            meta = {}
        pvalue = np.where(filtered, np.nan, pvalue)

        ln2 = np.log(2.0)
        table = pd.DataFrame({
            'baseMean': base_mean,
            'log2FoldChange': wald['estimate'].to_numpy() / ln2,
            'lfcSE': wald['se'].to_numpy() / ln2,
            'stat': wald['stat'].to_numpy(),
            'pvalue': pvalue,
            'padj': padj,
            'converged': fitset.converged,
            'low_confidence': fitset.low_confidence,
            'filtered': filtered,
        }, index=fitset.gene_ids, columns=RESULT_COLUMNS)
        table.index.name = 'gene_id'

        n_sig = int((table['padj'] < self.alpha).sum())
        logger.info(
            f"Contrast '{contrast.name}': {int(table['pvalue'].notna().sum())} genes with p-values, "
            f"{n_sig} with padj < {self.alpha}"
        )

        return DEResult(table=table, contrast=contrast, alpha=self.alpha, **meta)
