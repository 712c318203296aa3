"""Tests for single-gene negative-binomial kernels."""

import numpy as np
import pytest
from scipy import stats as scipy_stats

from housekeeper.core.errors import SingularDesignError
from housekeeper.stats.nbinom import (
    cox_reid_log_likelihood,
    estimate_dispersion_mle,
    fit_nb_irls,
    has_zero_cell,
    moments_dispersion,
    nb_covariance,
    nb_log_likelihood,
)


def _two_group_design(n_per_group=4):
    group = np.repeat([0.0, 1.0], n_per_group)
    return np.column_stack([np.ones_like(group), group])


class TestIRLS:

    def test_intercept_only_poisson(self):
        y = np.array([10.0, 10.0, 10.0, 10.0])
        X = np.ones((4, 1))
        res = fit_nb_irls(y, X, np.zeros(4), alpha=0.0)
        assert res.converged
        assert res.beta[0] == pytest.approx(np.log(10.0), rel=1e-6)

    def test_offset_absorbed(self):
        sf = np.array([0.5, 1.0, 2.0, 1.0])
        y = 100.0 * sf
        res = fit_nb_irls(y, np.ones((4, 1)), np.log(sf), alpha=0.05)
        assert res.beta[0] == pytest.approx(np.log(100.0), rel=1e-6)

    def test_two_group_fold_change(self):
        y = np.array([100, 100, 100, 100, 400, 400, 400, 400], dtype=float)
        X = _two_group_design()
        res = fit_nb_irls(y, X, np.zeros(8), alpha=0.1)
        assert res.converged
        assert res.beta[1] == pytest.approx(np.log(4.0), rel=1e-5)

    def test_zero_cell_stays_finite_with_ridge(self):
        y = np.array([50, 60, 55, 45, 0, 0, 0, 0], dtype=float)
        X = _two_group_design()
        res = fit_nb_irls(y, X, np.zeros(8), alpha=0.1, ridge=1e-3)
        assert np.all(np.isfinite(res.beta))
        assert res.beta[1] < -3
        assert np.all(res.mu >= 0.5)

    def test_iteration_cap_reports_not_converged(self):
        y = np.array([100, 100, 100, 100, 400, 400, 400, 400], dtype=float)
        res = fit_nb_irls(y, _two_group_design(), np.zeros(8), alpha=0.1,
                          beta_init=np.zeros(2), max_iter=1)
        assert not res.converged
        assert res.n_iter == 1

    def test_singular_design_raises(self):
        X = np.column_stack([np.ones(4), np.ones(4)])
        with pytest.raises(SingularDesignError):
            fit_nb_irls(np.array([1.0, 2.0, 3.0, 4.0]), X, np.zeros(4), alpha=0.1)


class TestLikelihood:

    def test_matches_scipy_nbinom(self):
        y = np.array([0, 3, 10, 25], dtype=float)
        mu = np.array([2.0, 5.0, 12.0, 20.0])
        alpha = 0.3
        n = 1.0 / alpha
        expected = scipy_stats.nbinom.logpmf(y, n, n / (n + mu)).sum()
        assert nb_log_likelihood(y, mu, alpha) == pytest.approx(expected, rel=1e-10)

    def test_small_dispersion_approaches_poisson(self):
        y = np.array([4, 7, 9], dtype=float)
        mu = np.array([5.0, 6.0, 8.0])
        expected = scipy_stats.poisson.logpmf(y, mu).sum()
        assert nb_log_likelihood(y, mu, 1e-8) == pytest.approx(expected, rel=1e-4)

    def test_cox_reid_penalizes_information(self):
        y = np.array([10.0, 12.0, 8.0, 11.0])
        mu = np.full(4, 10.25)
        X = np.ones((4, 1))
        plain = nb_log_likelihood(y, mu, 0.1)
        adjusted = cox_reid_log_likelihood(y, X, mu, 0.1)
        w = mu / (1 + 0.1 * mu)
        assert adjusted == pytest.approx(plain - 0.5 * np.log(w.sum()))


class TestDispersion:

    def test_moments_formula(self):
        y = np.array([10.0, 20.0, 30.0, 40.0])
        sf = np.ones(4)
        m, v = 25.0, np.var(y, ddof=1)
        assert moments_dispersion(y, sf) == pytest.approx((v - m) / m ** 2)

    def test_moments_all_zero_is_nan(self):
        assert np.isnan(moments_dispersion(np.zeros(4), np.ones(4)))

    def test_mle_recovers_dispersion(self):
        rng = np.random.default_rng(42)
        alpha, mu = 0.2, 200.0
        n = 1.0 / alpha
        y = rng.negative_binomial(n, n / (n + mu), size=200).astype(float)
        X = np.ones((200, 1))
        fit = fit_nb_irls(y, X, np.zeros(200), alpha=0.1)
        est = estimate_dispersion_mle(y, X, fit.mu)
        assert est == pytest.approx(alpha, rel=0.3)

    def test_mle_poisson_data_hits_lower_bound(self):
        y = np.array([10.0, 10.0, 10.0, 10.0, 10.0, 10.0])
        X = np.ones((6, 1))
        est = estimate_dispersion_mle(y, X, np.full(6, 10.0), min_disp=1e-8)
        assert est < 1e-4

    def test_mle_within_bounds(self):
        y = np.array([0.0, 500.0, 1.0, 900.0])
        X = np.ones((4, 1))
        est = estimate_dispersion_mle(y, X, np.full(4, 350.25), min_disp=1e-8, max_disp=10.0)
        assert 1e-8 <= est <= 10.0


class TestCovarianceAndCells:

    def test_poisson_intercept_variance(self):
        mu = np.full(4, 10.0)
        cov = nb_covariance(np.ones((4, 1)), mu, alpha=0.0)
        assert cov[0, 0] == pytest.approx(1.0 / 40.0)

    def test_ridge_sandwich_smaller_than_inverse(self):
        X = _two_group_design()
        mu = np.full(8, 20.0)
        plain = nb_covariance(X, mu, 0.1)
        ridged = nb_covariance(X, mu, 0.1, ridge=1.0)
        assert np.all(np.diag(ridged) < np.diag(plain))

    def test_has_zero_cell(self):
        cells = np.array([0, 0, 1, 1])
        assert has_zero_cell(np.array([3.0, 1.0, 0.0, 0.0]), cells)
        assert not has_zero_cell(np.array([3.0, 0.0, 0.0, 2.0]), cells)
