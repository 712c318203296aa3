"""
Dispersion-mean trend and empirical Bayes shrinkage.

Gene-wise dispersion estimates are noisy with few replicates. They are
shrunk toward a smooth trend in the mean, borrowing strength across genes
in the same spirit as limma's variance moderation (fitFDist/squeezeVar),
but on the log-dispersion scale:

Trend (parametric, gamma-family GLM with identity link):
    alpha_tr(mu) = asympt_disp + extra_pois / mu
    refitted after dropping genes whose ratio alpha / alpha_tr falls
    outside (1e-4, 15), until the coefficients stabilize. If that fails,
    the trend is the trimmed mean of the gene-wise estimates.

Prior width:
    resid      = log(alpha_gene) - log(alpha_tr)
    var_resid  = MAD(resid)²
    var_sample = trigamma((m - p) / 2)      expected sampling variance
    var_prior  = max(var_resid - var_sample, 0.25)

Shrinkage (normal-normal posterior mean on the log scale):
    w          = var_prior / (var_prior + var_sample)
    log alpha  = w * log(alpha_gene) + (1 - w) * log(alpha_tr)

The result is a weighted geometric mean, so it always lies between the
gene-wise estimate and the trend. Genes whose gene-wise estimate sits more
than ``outlier_sd`` residual SDs above the trend keep the gene-wise value.

References:
    - Smyth (2004) Stat Appl Genet Mol Biol 3:3
    - Love, Huber & Anders (2014) Genome Biology 15:550
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass

import numpy as np
from numpy.typing import NDArray
from scipy.special import polygamma
from scipy.stats import median_abs_deviation, trim_mean

logger = logging.getLogger(__name__)

__all__ = [
    'DispersionTrend',
    'fit_parametric_trend',
    'fit_dispersion_trend',
    'shrink_dispersions',
]


@dataclass(frozen=True)
class DispersionTrend:
    """Fitted dispersion-mean relationship and prior width.

    Attributes:
        kind: "parametric" or "mean".
        asympt_disp: Asymptotic dispersion for large means.
        extra_pois: Coefficient of 1/mean (0 for the mean trend).
        prior_var: Variance of the log-dispersion prior.
        residual_sd: SD of log residuals around the trend (MAD-based).
        sampling_var: Expected sampling variance of log dispersion.
        n_genes: Genes used to fit the trend.
    """

    kind: str
    asympt_disp: float
    extra_pois: float
    prior_var: float
    residual_sd: float
    sampling_var: float
    n_genes: int

    def __call__(self, mean: NDArray[np.float64] | float) -> NDArray[np.float64]:
        mean = np.asarray(mean, dtype=np.float64)
        with np.errstate(divide='ignore'):
            return self.asympt_disp + self.extra_pois / mean

    @property
    def shrinkage_weight(self) -> float:
        """Weight on the gene-wise log dispersion."""
        return self.prior_var / (self.prior_var + self.sampling_var)

    def to_dict(self) -> dict:
        return {
            'kind': self.kind,
            'asympt_disp': self.asympt_disp,
            'extra_pois': self.extra_pois,
            'prior_var': self.prior_var,
            'residual_sd': self.residual_sd,
            'sampling_var': self.sampling_var,
            'n_genes': self.n_genes,
        }


def fit_parametric_trend(
    means: NDArray[np.float64],
    disps: NDArray[np.float64],
    max_iter: int = 10,
) -> tuple[float, float]:
    """
    Fit alpha = a0 + a1 / mean with a gamma-family identity-link GLM.

    Returns:
        (asympt_disp, extra_pois)

    Raises:
        ValueError: If coefficients turn non-positive or do not stabilize.
    """
    import statsmodels.api as sm
    from statsmodels.tools.sm_exceptions import DomainWarning

    coefs = np.array([0.1, 1.0])
    for _ in range(max_iter):
        ratio = disps / (coefs[0] + coefs[1] / means)
        good = (ratio > 1e-4) & (ratio < 15)
        if good.sum() < 3:
            raise ValueError(f"Only {int(good.sum())} genes left for the parametric trend")

        exog = np.column_stack([np.ones(int(good.sum())), 1.0 / means[good]])
        with warnings.catch_warnings():
            warnings.simplefilter('ignore', DomainWarning)
            model = sm.GLM(
                disps[good],
                exog,
                family=sm.families.Gamma(link=sm.families.links.Identity()),
            )
            with np.errstate(all='ignore'):
                fit = model.fit(start_params=coefs)

        old = coefs
        coefs = np.asarray(fit.params, dtype=np.float64)
        if not np.all(np.isfinite(coefs)) or not np.all(coefs > 0):
            raise ValueError(f"Parametric trend has non-positive coefficients: {coefs}")
        if np.sum(np.log(coefs / old) ** 2) < 1e-6 and fit.converged:
            return float(coefs[0]), float(coefs[1])

    raise ValueError("Parametric dispersion trend did not converge")


def fit_dispersion_trend(
    base_mean: NDArray[np.float64],
    raw_disp: NDArray[np.float64],
    usable: NDArray[np.bool_],
    df_residual: int,
    min_disp: float = 1e-8,
    kind: str = "parametric",
) -> DispersionTrend:
    """
    Fit the dispersion trend on usable genes and estimate the prior width.

    Args:
        base_mean: Mean normalized count per gene.
        raw_disp: Gene-wise dispersion estimates.
        usable: Genes allowed into the fit (converged, not all-zero).
        df_residual: m - p of the design.
        min_disp: Lower dispersion bound; estimates within a factor 100 of
            it carry no information about the trend and are left out.
        kind: "parametric" (falls back to "mean" on failure) or "mean".

    Returns:
        DispersionTrend
    """
    finite = np.isfinite(raw_disp) & np.isfinite(base_mean) & (base_mean > 0)
    use = usable & finite & (raw_disp >= 100 * min_disp)
    if not use.any():
        logger.warning(
            "No gene-wise dispersion is informative for the trend; "
            "using every finite estimate"
        )
        use = usable & finite & (raw_disp > 0)
    if not use.any():
        raise ValueError("No usable gene-wise dispersion estimates to fit a trend")

    means, disps = base_mean[use], raw_disp[use]

    trend_kind = "mean"
    asympt, extra = float(trim_mean(disps, 0.001)), 0.0
    if kind == "parametric":
        try:
            asympt, extra = fit_parametric_trend(means, disps)
            trend_kind = "parametric"
        except (ValueError, np.linalg.LinAlgError) as e:
            logger.warning(f"Parametric dispersion trend failed ({e}); using mean trend")
    elif kind != "mean":
        raise ValueError(f"Unknown trend kind '{kind}'. Choose 'parametric' or 'mean'")

    fitted = asympt + extra / means
    resid = np.log(disps) - np.log(fitted)
    residual_sd = float(median_abs_deviation(resid, scale='normal')) if len(resid) > 1 else 0.0
    sampling_var = float(polygamma(1, max(df_residual, 1) / 2.0))
    prior_var = max(residual_sd ** 2 - sampling_var, 0.25)

    logger.info(
        f"Dispersion trend ({trend_kind}) from {int(use.sum())} genes: "
        f"asympt={asympt:.4g}, extra_pois={extra:.4g}, prior_var={prior_var:.3f}"
    )

    return DispersionTrend(
        kind=trend_kind,
        asympt_disp=asympt,
        extra_pois=extra,
        prior_var=prior_var,
        residual_sd=residual_sd,
        sampling_var=sampling_var,
        n_genes=int(use.sum()),
    )


def shrink_dispersions(
    raw_disp: NDArray[np.float64],
    trend_disp: NDArray[np.float64],
    trend: DispersionTrend,
    outlier_sd: float = 2.0,
    min_disp: float = 1e-8,
    max_disp: float = 10.0,
) -> tuple[NDArray[np.float64], NDArray[np.bool_]]:
    """
    Shrink gene-wise dispersions toward the trend.

    Args:
        raw_disp: Gene-wise estimates (NaN allowed; those take the trend).
        trend_disp: Trend value per gene.
        trend: Fitted trend (supplies the prior width).
        outlier_sd: Residual SDs above the trend beyond which the gene-wise
            estimate is kept as is. ``np.inf`` disables the override.
        min_disp, max_disp: Bounds applied to the trend before shrinking.

    Returns:
        (final_disp, is_outlier)
    """
    trend_disp = np.clip(np.asarray(trend_disp, dtype=np.float64), min_disp, max_disp)
    raw_disp = np.asarray(raw_disp, dtype=np.float64)
    has_raw = np.isfinite(raw_disp) & (raw_disp > 0)
    safe_raw = np.where(has_raw, raw_disp, trend_disp)

    w = trend.shrinkage_weight
    log_raw, log_trend = np.log(safe_raw), np.log(trend_disp)
    final = np.exp(w * log_raw + (1.0 - w) * log_trend)

    is_outlier = has_raw & (log_raw > log_trend + outlier_sd * trend.residual_sd)
    final = np.where(is_outlier, safe_raw, final)

    # keep the geometric mean inside [min(raw, trend), max(raw, trend)]
    lo = np.minimum(safe_raw, trend_disp)
    hi = np.maximum(safe_raw, trend_disp)
    return np.clip(final, lo, hi), is_outlier
