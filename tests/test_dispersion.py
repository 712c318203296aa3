"""Tests for the dispersion trend and shrinkage."""

import warnings

import numpy as np
import pytest
from scipy.special import polygamma
from statsmodels.tools.sm_exceptions import DomainWarning

from housekeeper.stats.dispersion import (
    DispersionTrend,
    fit_dispersion_trend,
    shrink_dispersions,
)


@pytest.fixture
def trended(rng):
    means = np.logspace(1, 4, 500)
    truth = 0.05 + 2.0 / means
    disps = truth * np.exp(rng.normal(0, 0.2, size=500))
    return means, disps


def _trend(prior_var=0.25, residual_sd=0.5, sampling_var=0.25):
    return DispersionTrend(
        kind="parametric",
        asympt_disp=0.1,
        extra_pois=0.0,
        prior_var=prior_var,
        residual_sd=residual_sd,
        sampling_var=sampling_var,
        n_genes=10,
    )


class TestTrendFit:

    def test_parametric_recovers_coefficients(self, trended):
        means, disps = trended
        trend = fit_dispersion_trend(means, disps, np.ones(500, dtype=bool), df_residual=12)
        assert trend.kind == "parametric"
        assert trend.asympt_disp == pytest.approx(0.05, rel=0.2)
        assert trend.extra_pois == pytest.approx(2.0, rel=0.2)
        assert trend.n_genes == 500

    def test_identity_link_warning_stays_inside(self, trended):
        means, disps = trended
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            fit_dispersion_trend(means, disps, np.ones(500, dtype=bool), df_residual=12)
        assert not [w for w in caught if issubclass(w.category, DomainWarning)]

    def test_mean_kind_is_flat(self, trended):
        means, disps = trended
        trend = fit_dispersion_trend(means, disps, np.ones(500, dtype=bool), df_residual=12, kind="mean")
        assert trend.kind == "mean"
        assert trend.extra_pois == 0.0
        assert np.allclose(trend(np.array([10.0, 1000.0])), trend.asympt_disp)

    def test_unusable_genes_ignored(self, trended):
        means, disps = trended
        usable = np.ones(500, dtype=bool)
        usable[:100] = False
        disps = disps.copy()
        disps[:100] = 50.0
        trend = fit_dispersion_trend(means, disps, usable, df_residual=12)
        assert trend.n_genes == 400
        assert trend.asympt_disp == pytest.approx(0.05, rel=0.2)

    def test_prior_variance_floor_and_sampling_variance(self, trended):
        means, disps = trended
        trend = fit_dispersion_trend(means, disps, np.ones(500, dtype=bool), df_residual=12)
        assert trend.sampling_var == pytest.approx(float(polygamma(1, 6.0)))
        assert trend.prior_var >= 0.25

    def test_unknown_kind_raises(self, trended):
        means, disps = trended
        with pytest.raises(ValueError, match="Unknown trend kind"):
            fit_dispersion_trend(means, disps, np.ones(500, dtype=bool), df_residual=12, kind="loess")

    def test_nothing_usable_raises(self, trended):
        means, disps = trended
        with pytest.raises(ValueError, match="No usable"):
            fit_dispersion_trend(means, disps, np.zeros(500, dtype=bool), df_residual=12)


class TestShrinkage:

    def test_weighted_geometric_mean(self):
        raw = np.array([0.05, 0.2])
        final, outlier = shrink_dispersions(raw, np.full(2, 0.1), _trend())
        # equal prior and sampling variance: weight 1/2
        assert final == pytest.approx(np.sqrt(raw * 0.1))
        assert not outlier.any()

    def test_final_between_raw_and_trend(self, rng):
        raw = np.exp(rng.normal(np.log(0.1), 0.3, size=200))
        trend_disp = np.full(200, 0.1)
        final, outlier = shrink_dispersions(raw, trend_disp, _trend(), outlier_sd=np.inf)
        assert not outlier.any()
        assert np.all(final >= np.minimum(raw, trend_disp) - 1e-15)
        assert np.all(final <= np.maximum(raw, trend_disp) + 1e-15)

    def test_high_outlier_keeps_raw(self):
        raw = np.array([10.0, 0.001])
        final, outlier = shrink_dispersions(raw, np.full(2, 0.1), _trend())
        assert outlier.tolist() == [True, False]
        assert final[0] == pytest.approx(10.0)
        # low values are always shrunk
        assert 0.001 < final[1] < 0.1

    def test_missing_raw_takes_trend(self):
        raw = np.array([np.nan, 0.2])
        final, outlier = shrink_dispersions(raw, np.full(2, 0.1), _trend())
        assert final[0] == pytest.approx(0.1)
        assert not outlier[0]

    def test_weight_follows_prior_width(self):
        raw = np.array([0.4])
        trend_disp = np.array([0.1])
        tight, _ = shrink_dispersions(raw, trend_disp, _trend(prior_var=0.01), outlier_sd=np.inf)
        loose, _ = shrink_dispersions(raw, trend_disp, _trend(prior_var=10.0), outlier_sd=np.inf)
        assert tight[0] < loose[0]
