"""
Gene-wise negative-binomial GLM fitting with shrunk dispersions.

The fit runs in two parallel phases separated by one barrier:

    Phase 1 (per gene, independent):
        method-of-moments dispersion -> Poisson IRLS -> NB IRLS
        -> gene-wise Cox-Reid dispersion MLE
    Barrier:
        dispersion-mean trend and prior width from converged genes
    Phase 2 (per gene, independent):
        shrink toward the trend -> NB IRLS refit -> coefficient covariance

Workers only read shared arrays; each returns a value for its own gene and
results are reassembled by gene index, so the output does not depend on
worker count or completion order.

Per-gene problems never escape a worker:
    - all-zero genes are not fitted (NaN coefficients, converged=False)
    - genes with an all-zero design cell get a ridge penalty and
      low_confidence=True
    - a gene whose normal equations stay singular gets NaN coefficients
      and the problem recorded in ``issue``
    - IRLS hitting its cap keeps best-effort coefficients with
      converged=False; one ConvergenceFailure warning summarizes each phase

Examples:
    >>> fitter = NegativeBinomialModelFitter(n_jobs=4)
    >>> fitset = fitter.fit(counts, design, size_factors)
    >>> fitset.to_dataframe().head()
"""

from __future__ import annotations

import logging
import os
import warnings
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Iterable, TypeVar

import numpy as np
import pandas as pd
from numpy.typing import NDArray

from housekeeper.core.countmatrix import CountMatrix
from housekeeper.core.design import DesignMatrix, SampleDesign, build_design_matrix
from housekeeper.core.errors import ConvergenceFailure, SingularDesignError
from housekeeper.stats.dispersion import (
    DispersionTrend,
    fit_dispersion_trend,
    shrink_dispersions,
)
from housekeeper.stats.nbinom import (
    estimate_dispersion_mle,
    fit_nb_irls,
    has_zero_cell,
    moments_dispersion,
    nb_covariance,
)
from housekeeper.stats.size_factors import SizeFactors, normalized_counts

logger = logging.getLogger(__name__)

__all__ = ['GLMFit', 'GLMFitSet', 'NegativeBinomialModelFitter']

T = TypeVar('T')


@dataclass(frozen=True)
class GLMFit:
    """Final NB GLM fit for one gene.

    Attributes:
        coefficients: One value per design column, natural-log scale.
        covariance: Coefficient covariance matrix.
        converged: Whether the final IRLS met its tolerance.
        low_confidence: True when a zero-cell ridge penalty was applied.
        n_iter: IRLS iterations in the final fit.
        dispersion: Dispersion the coefficients were fitted with.
        issue: Description of a per-gene problem, if any.
    """

    coefficients: NDArray[np.float64]
    covariance: NDArray[np.float64] = field(repr=False)
    converged: bool
    low_confidence: bool
    n_iter: int
    dispersion: float
    issue: str | None = None

    @classmethod
    def unfitted(cls, n_params: int, issue: str, low_confidence: bool = False) -> GLMFit:
        return cls(
            coefficients=np.full(n_params, np.nan),
            covariance=np.full((n_params, n_params), np.nan),
            converged=False,
            low_confidence=low_confidence,
            n_iter=0,
            dispersion=float('nan'),
            issue=issue,
        )


@dataclass(frozen=True)
class _FirstPass:
    mom: float
    raw: float
    beta: NDArray[np.float64] | None
    converged: bool
    zero_cell: bool
    all_zero: bool
    issue: str | None = None


@dataclass(frozen=True)
class GLMFitSet:
    """All per-gene fits plus the shared fitting context.

    Attributes:
        fits: GLMFit per gene, in count-matrix row order.
        design: Design matrix the coefficients refer to.
        size_factors: Size factors used as offsets.
        gene_ids: Gene identifiers, aligned with ``fits``.
        base_mean: Mean normalized count per gene.
        dispersions: Per-gene ``mom``, ``raw``, ``trend``, ``final`` and
            ``outlier`` columns, indexed by gene id.
        trend: Fitted dispersion trend and prior width.
    """

    fits: tuple[GLMFit, ...]
    design: DesignMatrix
    size_factors: SizeFactors
    gene_ids: pd.Index
    base_mean: NDArray[np.float64] = field(repr=False)
    dispersions: pd.DataFrame = field(repr=False)
    trend: DispersionTrend

    def __len__(self) -> int:
        return len(self.fits)

    def __getitem__(self, gene_id: str) -> GLMFit:
        return self.fits[self.gene_ids.get_loc(gene_id)]

    @property
    def n_genes(self) -> int:
        return len(self.fits)

    @property
    def converged(self) -> NDArray[np.bool_]:
        return np.array([f.converged for f in self.fits], dtype=bool)

    @property
    def low_confidence(self) -> NDArray[np.bool_]:
        return np.array([f.low_confidence for f in self.fits], dtype=bool)

    def coefficient_matrix(self) -> NDArray[np.float64]:
        """Coefficients stacked into (n_genes, n_params), natural-log scale."""
        if not self.fits:
            return np.empty((0, self.design.n_params))
        return np.vstack([f.coefficients for f in self.fits])

    def to_dataframe(self) -> pd.DataFrame:
        """Per-gene summary with coefficients on the log2 scale."""
        coefs = pd.DataFrame(
            self.coefficient_matrix() / np.log(2),
            index=self.gene_ids,
            columns=self.design.col_names,
        )
        summary = pd.DataFrame({
            'baseMean': self.base_mean,
            'dispersion': [f.dispersion for f in self.fits],
            'converged': self.converged,
            'low_confidence': self.low_confidence,
            'n_iter': [f.n_iter for f in self.fits],
            'issue': [f.issue for f in self.fits],
        }, index=self.gene_ids)
        return pd.concat([summary, coefs], axis=1)


class NegativeBinomialModelFitter:
    """
    Two-phase NB GLM fitter with empirical Bayes dispersion shrinkage.

    Params:
        max_iter: IRLS iteration cap.
        tol: Relative coefficient change for convergence.
        ridge: Ridge penalty used for genes with an all-zero design cell.
        min_mu: Floor on fitted means inside IRLS.
        min_disp: Lower dispersion bound.
        max_disp: Upper dispersion bound (default max(10, n_samples)).
        outlier_sd: Residual SDs above the trend beyond which the gene-wise
            dispersion is kept unshrunk.
        trend_kind: "parametric" or "mean".
        n_jobs: Worker threads (1 runs serially, -1 uses every CPU).
    """

    def __init__(
        self,
        max_iter: int = 50,
        tol: float = 1e-6,
        ridge: float = 1e-3,
        min_mu: float = 0.5,
        min_disp: float = 1e-8,
        max_disp: float | None = None,
        outlier_sd: float = 2.0,
        trend_kind: str = "parametric",
        n_jobs: int = 1,
    ):
        if max_iter < 1:
            raise ValueError(f"max_iter must be >= 1, got {max_iter}")
        if tol <= 0:
            raise ValueError(f"tol must be positive, got {tol}")
        if ridge < 0:
            raise ValueError(f"ridge must be non-negative, got {ridge}")
        if trend_kind not in ("parametric", "mean"):
            raise ValueError(f"trend_kind must be 'parametric' or 'mean', got '{trend_kind}'")
        if n_jobs == 0 or n_jobs < -1:
            raise ValueError(f"n_jobs must be a positive integer or -1, got {n_jobs}")
        self.max_iter = max_iter
        self.tol = tol
        self.ridge = ridge
        self.min_mu = min_mu
        self.min_disp = min_disp
        self.max_disp = max_disp
        self.outlier_sd = outlier_sd
        self.trend_kind = trend_kind
        self.n_jobs = n_jobs

    def _map(self, fn: Callable[[int], T], items: Iterable[int]) -> list[T]:
        if self.n_jobs == 1:
            return [fn(i) for i in items]
        workers = os.cpu_count() if self.n_jobs == -1 else self.n_jobs
        with ThreadPoolExecutor(max_workers=workers) as executor:
            return list(executor.map(fn, items))

    def fit(self, counts: CountMatrix, design: SampleDesign, size_factors: SizeFactors) -> GLMFitSet:
        """
        Fit every gene of ``counts`` against ``design``.

        Args:
            counts: Experiment counts.
            design: Sample design aligned with the count-matrix columns.
            size_factors: Size factors covering every sample.

        Returns:
            GLMFitSet with one GLMFit per gene, in count-matrix order.

        Raises:
            DataAlignmentError: If design rows and count columns differ.
            SingularDesignError: If the shared design is rank-deficient.
        """
        design.validate_alignment(counts)
        dm = build_design_matrix(design)

        X = dm.X
        cells = dm.cells
        sf = size_factors.values.reindex(counts.sample_ids).to_numpy(dtype=np.float64)
        if np.any(~np.isfinite(sf)) or np.any(sf <= 0):
            raise ValueError("size factors must be positive and cover every sample")
        log_offset = np.log(sf)
        Y = counts.counts.astype(np.float64)
        n_genes, n_params = counts.n_genes, dm.n_params
        max_disp = self.max_disp if self.max_disp is not None else max(10.0, float(counts.n_samples))

        base_mean = normalized_counts(counts, size_factors).mean(axis=1)

        logger.info(
            f"Fitting NB GLM: {n_genes} genes x {counts.n_samples} samples, "
            f"{n_params} coefficients ({', '.join(dm.col_names)}), n_jobs={self.n_jobs}"
        )

        def first_pass(i: int) -> _FirstPass:
            y = Y[i]
            if y.sum() == 0:
                return _FirstPass(np.nan, np.nan, None, False, False, True, "all-zero counts")

            zero_cell = has_zero_cell(y, cells)
            ridge = self.ridge if zero_cell else 0.0
            mom = moments_dispersion(y, sf)
            start = float(np.clip(mom if np.isfinite(mom) else 0.1, self.min_disp, max_disp))
            try:
                pois = fit_nb_irls(y, X, log_offset, 0.0, max_iter=self.max_iter,
                                   tol=self.tol, ridge=ridge, min_mu=self.min_mu)
                nb = fit_nb_irls(y, X, log_offset, start, beta_init=pois.beta,
                                 max_iter=self.max_iter, tol=self.tol, ridge=ridge,
                                 min_mu=self.min_mu)
                raw = estimate_dispersion_mle(y, X, nb.mu, self.min_disp, max_disp)
            except SingularDesignError as e:
                return _FirstPass(mom, np.nan, None, False, zero_cell, False, str(e))
            return _FirstPass(mom, raw, nb.beta, nb.converged, zero_cell, False)

        first = self._map(first_pass, range(n_genes))

        mom = np.array([r.mom for r in first], dtype=np.float64)
        raw = np.array([r.raw for r in first], dtype=np.float64)
        all_zero = np.array([r.all_zero for r in first], dtype=bool)
        zero_cell = np.array([r.zero_cell for r in first], dtype=bool)
        converged_1 = np.array([r.converged for r in first], dtype=bool)
        fitted_1 = np.array([r.beta is not None for r in first], dtype=bool)

        n_unconverged = int((fitted_1 & ~converged_1).sum())
        if n_unconverged:
            warnings.warn(
                f"{n_unconverged} genes did not converge in the gene-wise dispersion pass; "
                f"they are left out of the dispersion trend",
                ConvergenceFailure,
                stacklevel=2,
            )

        usable = converged_1 & ~zero_cell & ~all_zero
        trend = fit_dispersion_trend(
            base_mean, raw, usable, dm.df_residual,
            min_disp=self.min_disp, kind=self.trend_kind,
        )
        with np.errstate(divide='ignore', invalid='ignore'):
            trend_disp = np.where(base_mean > 0, trend(base_mean), np.nan)
        final, is_outlier = shrink_dispersions(
            raw, np.where(np.isfinite(trend_disp), trend_disp, max_disp), trend,
            outlier_sd=self.outlier_sd, min_disp=self.min_disp, max_disp=max_disp,
        )
        final = np.where(fitted_1, final, np.nan)
        is_outlier &= fitted_1

        logger.info(
            f"Dispersion shrinkage: weight on gene-wise={trend.shrinkage_weight:.3f}, "
            f"{int(is_outlier.sum())} outliers kept unshrunk"
        )

        def second_pass(i: int) -> GLMFit:
            prior = first[i]
            if prior.beta is None:
                return GLMFit.unfitted(n_params, prior.issue or "not fitted", prior.zero_cell)

            y = Y[i]
            alpha = float(final[i])
            ridge = self.ridge if prior.zero_cell else 0.0
            try:
                res = fit_nb_irls(y, X, log_offset, alpha, beta_init=prior.beta,
                                  max_iter=self.max_iter, tol=self.tol, ridge=ridge,
                                  min_mu=self.min_mu)
                cov = nb_covariance(X, res.mu, alpha, ridge=ridge)
            except SingularDesignError as e:
                return GLMFit.unfitted(n_params, str(e), prior.zero_cell)

            issue = None
            if prior.zero_cell:
                issue = "all-zero design cell; ridge applied"
            if not res.converged:
                issue = "IRLS did not converge" if issue is None else f"{issue}; IRLS did not converge"
            return GLMFit(
                coefficients=res.beta,
                covariance=cov,
                converged=res.converged,
                low_confidence=prior.zero_cell,
                n_iter=res.n_iter,
                dispersion=alpha,
                issue=issue,
            )

        fits = tuple(self._map(second_pass, range(n_genes)))

        n_unconverged = sum(1 for f in fits if not f.converged and np.all(np.isfinite(f.coefficients)))
        if n_unconverged:
            warnings.warn(
                f"{n_unconverged} genes did not converge in the final fit; "
                f"their Wald statistics are reported as NaN",
                ConvergenceFailure,
                stacklevel=2,
            )

        logger.info(
            f"NB GLM fit complete: {sum(f.converged for f in fits)}/{n_genes} converged, "
            f"{int(all_zero.sum())} all-zero, {int(zero_cell.sum())} low-confidence (zero cell)"
        )

        dispersions = pd.DataFrame({
            'mom': mom,
            'raw': raw,
            'trend': trend_disp,
            'final': final,
            'outlier': is_outlier,
        }, index=counts.gene_ids)

        return GLMFitSet(
            fits=fits,
            design=dm,
            size_factors=size_factors,
            gene_ids=counts.gene_ids,
            base_mean=base_mean,
            dispersions=dispersions,
            trend=trend,
        )
