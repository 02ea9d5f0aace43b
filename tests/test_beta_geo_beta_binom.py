"""
Tests for the BG/BB model and its forecast functions
"""

import numpy as np
import pandas as pd
import pytest
from scipy.special import comb, gammaln

from beta_geo_beta_binom import (
    BetaGeoBetaBinomModel,
    bgbb_conditional_expectation,
    bgbb_dert,
    bgbb_expectation,
    bgbb_log_likelihood,
    bgbb_pmf,
    bgbb_pmf_general,
    bgbb_probability_alive,
    bgbb_survival,
)
from clv_base import point_inference_data
from summary_functions import DataValidationError


def _histories(T):
    """Every valid (x, t_x) over T periods with the number of sequences producing it."""
    yield 0, 0, 1
    for t_x in range(1, T + 1):
        for x in range(1, t_x + 1):
            yield x, t_x, comb(t_x - 1, x - 1, exact=True)


class TestLikelihood:
    """Test the closed-form BG/BB likelihood"""

    @pytest.mark.parametrize("T", [1, 3, 5, 9])
    def test_probabilities_of_all_sequences_sum_to_one(self, bgbb_params, T):
        total = sum(
            n_sequences * np.exp(bgbb_log_likelihood(*bgbb_params, x, t_x, T))
            for x, t_x, n_sequences in _histories(T)
        )

        assert total == pytest.approx(1.0)

    def test_zero_frequency_has_positive_density(self, bgbb_params):
        assert np.exp(bgbb_log_likelihood(*bgbb_params, 0, 0, 5)) > 0

    def test_one_period_closed_form(self):
        alpha, beta, gamma, delta = 2.0, 3.0, 1.5, 4.0
        p, theta = alpha / (alpha + beta), gamma / (gamma + delta)

        # Alive through period 1 and transacted
        assert np.exp(bgbb_log_likelihood(alpha, beta, gamma, delta, 1, 1, 1)) == pytest.approx(
            p * (1 - theta)
        )
        # Dropped out before period 1, or alive and did not transact
        assert np.exp(bgbb_log_likelihood(alpha, beta, gamma, delta, 0, 0, 1)) == pytest.approx(
            theta + (1 - p) * (1 - theta)
        )

    def test_vectorized(self, bgbb_params):
        x = np.array([0, 1, 3])
        t_x = np.array([0, 4, 5])

        result = bgbb_log_likelihood(*bgbb_params, x, t_x, 5)

        assert result.shape == (3,)
        for i in range(3):
            assert result[i] == pytest.approx(bgbb_log_likelihood(*bgbb_params, x[i], t_x[i], 5))

    @pytest.mark.parametrize("x, t_x, T", [(1, 0, 5), (0, 2, 5), (3, 2, 5), (2, 6, 5), (-1, 0, 5)])
    def test_invalid_histories(self, bgbb_params, x, t_x, T):
        with pytest.raises(ValueError):
            bgbb_log_likelihood(*bgbb_params, x, t_x, T)


class TestPmf:
    """Test the plain and general probability mass functions"""

    @pytest.mark.parametrize("T", [1, 4, 5, 9])
    def test_sums_to_one(self, bgbb_params, T):
        assert bgbb_pmf(*bgbb_params, np.arange(T + 1), T).sum() == pytest.approx(1.0)

    def test_matches_sum_over_histories(self, bgbb_params):
        T = 5
        by_frequency = np.zeros(T + 1)
        for x, t_x, n_sequences in _histories(T):
            by_frequency[x] += n_sequences * np.exp(bgbb_log_likelihood(*bgbb_params, x, t_x, T))

        assert bgbb_pmf(*bgbb_params, np.arange(T + 1), T) == pytest.approx(by_frequency)

    def test_frequency_above_window_is_impossible(self, bgbb_params):
        assert bgbb_pmf(*bgbb_params, 6, 5) == 0.0

    def test_mean_matches_expectation(self, bgbb_params):
        T = 9
        mean = (np.arange(T + 1) * bgbb_pmf(*bgbb_params, np.arange(T + 1), T)).sum()

        assert mean == pytest.approx(bgbb_expectation(*bgbb_params, T))

    @pytest.mark.parametrize("n_star", [1, 4, 9])
    def test_general_reduces_to_plain_without_calibration(self, bgbb_params, n_star):
        x = np.arange(n_star + 1)

        assert bgbb_pmf_general(*bgbb_params, x, 0, n_star) == pytest.approx(
            bgbb_pmf(*bgbb_params, x, n_star)
        )

    @pytest.mark.parametrize("n_cal, n_star", [(5, 4), (1, 1), (10, 3)])
    def test_general_sums_to_one(self, bgbb_params, n_cal, n_star):
        probabilities = bgbb_pmf_general(*bgbb_params, np.arange(n_star + 1), n_cal, n_star)

        assert probabilities.sum() == pytest.approx(1.0)
        assert (probabilities >= 0).all()

    def test_general_matches_sum_over_full_histories(self, bgbb_params):
        # Transactions in periods 3..4 of a 4-period history, summed over periods 1..2
        n_cal, n_star = 2, 2
        full = n_cal + n_star
        expected = np.zeros(n_star + 1)
        for bits in np.ndindex(*(2,) * full):
            bits = np.array(bits)
            x = bits.sum()
            t_x = (np.nonzero(bits)[0].max() + 1) if x else 0
            probability = np.exp(bgbb_log_likelihood(*bgbb_params, x, t_x, full))
            expected[bits[n_cal:].sum()] += probability

        assert bgbb_pmf_general(*bgbb_params, np.arange(n_star + 1), n_cal, n_star) == pytest.approx(
            expected
        )

    def test_scalar_in_scalar_out(self, bgbb_params):
        assert isinstance(bgbb_pmf(*bgbb_params, 2, 5), float)
        assert isinstance(bgbb_pmf_general(*bgbb_params, 2, 5, 4), float)


class TestProbabilityAlive:
    """Test P(alive)"""

    @pytest.mark.parametrize("x", [1, 2, 5])
    def test_transacted_in_last_period(self, bgbb_params, x):
        assert bgbb_probability_alive(*bgbb_params, x, 5, 5) == 1.0

    def test_bounded(self, bgbb_params):
        histories = list(_histories(9))
        x = np.array([h[0] for h in histories])
        t_x = np.array([h[1] for h in histories])

        p_alive = bgbb_probability_alive(*bgbb_params, x, t_x, 9)

        assert p_alive.shape == x.shape
        assert ((p_alive >= 0) & (p_alive <= 1)).all()

    def test_decreases_with_inactivity(self, bgbb_params):
        p_alive = bgbb_probability_alive(*bgbb_params, 2, np.array([5, 4, 3, 2]), 5)

        assert (np.diff(p_alive) < 0).all()

    def test_scalar_in_scalar_out(self, bgbb_params):
        assert isinstance(bgbb_probability_alive(*bgbb_params, 0, 0, 5), float)


class TestDert:
    """Test discounted expected residual transactions"""

    def test_non_increasing_in_discount_rate(self, bgbb_params):
        rates = np.linspace(0.01, 1.0, 25)

        dert = bgbb_dert(*bgbb_params, 3, 4, 5, rates)

        assert dert.shape == rates.shape
        assert (np.diff(dert) <= 0).all()

    def test_new_customer(self, bgbb_params):
        dert = bgbb_dert(*bgbb_params, 0, 0, 0, 0.13)
        cohort_value = (dert + 1) * 10000 * 350.0

        assert isinstance(dert, float)
        assert np.isfinite(dert) and dert >= 0
        assert np.isfinite(cohort_value) and cohort_value >= 0

    def test_new_customer_matches_discounted_series(self, bgbb_params):
        alpha, beta, gamma, delta = bgbb_params
        d = 0.13
        t = np.arange(1, 2001)

        series = (alpha / (alpha + beta) * bgbb_survival(gamma, delta, t) / (1 + d) ** t).sum()

        assert bgbb_dert(*bgbb_params, 0, 0, 0, d) == pytest.approx(series, rel=1e-6)

    def test_continuous_rate(self, bgbb_params):
        assert bgbb_dert(*bgbb_params, 2, 3, 5, np.log1p(0.13), continuous=True) == pytest.approx(
            bgbb_dert(*bgbb_params, 2, 3, 5, 0.13)
        )

    def test_recent_customers_worth_more(self, bgbb_params):
        dert = bgbb_dert(*bgbb_params, 3, np.array([5, 3]), 5, 0.13)

        assert dert[0] > dert[1]

    def test_invalid_rate(self, bgbb_params):
        with pytest.raises(ValueError):
            bgbb_dert(*bgbb_params, 0, 0, 0, -1.0)


class TestExpectations:
    """Test expectations and survival"""

    def test_conditional_on_nothing_is_unconditional(self, bgbb_params):
        assert bgbb_conditional_expectation(*bgbb_params, 0, 0, 0, 4) == pytest.approx(
            bgbb_expectation(*bgbb_params, 4)
        )

    def test_conditional_over_empty_window(self, bgbb_params):
        assert bgbb_conditional_expectation(*bgbb_params, 3, 5, 5, 0) == pytest.approx(0.0)

    def test_conditional_vectorized(self, bgbb_params):
        result = bgbb_conditional_expectation(*bgbb_params, [0, 2, 5], [0, 3, 5], 5, 4)

        assert result.shape == (3,)
        assert result[0] < result[1] < result[2] <= 4

    def test_expectation_increments_are_survival(self, bgbb_params):
        alpha, beta, gamma, delta = bgbb_params
        t = np.arange(1, 11)

        increments = np.diff(bgbb_expectation(*bgbb_params, t), prepend=0.0)

        assert increments == pytest.approx(alpha / (alpha + beta) * bgbb_survival(gamma, delta, t))

    def test_matches_closed_form_away_from_gamma_one(self, bgbb_params):
        alpha, beta, gamma, delta = bgbb_params
        n = np.arange(1, 8)

        closed_form = (
            alpha
            / (alpha + beta)
            * delta
            / (gamma - 1)
            * -np.expm1(
                gammaln(gamma + delta)
                - gammaln(gamma + delta + n)
                + gammaln(1 + delta + n)
                - gammaln(1 + delta)
            )
        )

        assert bgbb_expectation(*bgbb_params, n) == pytest.approx(closed_form)

    def test_unit_gamma(self):
        params = (1.2, 0.75, 1.0, 2.78)
        t = np.arange(1, 6)

        expected = bgbb_expectation(*params, t)

        assert np.isfinite(expected).all()
        assert expected == pytest.approx(1.2 / 1.95 * np.cumsum(bgbb_survival(1.0, 2.78, t)))
        mean = (np.arange(6) * bgbb_pmf(*params, np.arange(6), 5)).sum()
        assert expected[-1] == pytest.approx(mean)

    def test_conditional_unit_gamma(self):
        params = (1.2, 0.75, 1.0, 2.78)

        conditional = bgbb_conditional_expectation(*params, [0, 2], [0, 4], [0, 5], 4)

        assert np.isfinite(conditional).all()
        assert conditional[0] == pytest.approx(bgbb_expectation(*params, 4))

    def test_conditional_matches_holdout_pmf_mean(self, bgbb_params):
        # Unconditional on history, the holdout mean is the general PMF mean
        n_cal, n_star = 5, 4
        pmf = bgbb_pmf_general(*bgbb_params, np.arange(n_star + 1), n_cal, n_star)
        x, t_x = np.array([h[0] for h in _histories(n_cal)]), np.array([h[1] for h in _histories(n_cal)])
        weights = np.array([h[2] for h in _histories(n_cal)]) * np.exp(
            bgbb_log_likelihood(*bgbb_params, x, t_x, n_cal)
        )

        conditional = bgbb_conditional_expectation(*bgbb_params, x, t_x, n_cal, n_star)

        assert (weights * conditional).sum() == pytest.approx((np.arange(n_star + 1) * pmf).sum())

    def test_fractional_horizon_rejected(self, bgbb_params):
        with pytest.raises(ValueError):
            bgbb_expectation(*bgbb_params, 2.5)

    def test_survival(self, bgbb_params):
        _, _, gamma, delta = bgbb_params

        survival = bgbb_survival(gamma, delta, np.arange(0, 10))

        assert survival[0] == pytest.approx(1.0)
        assert (np.diff(survival) < 0).all()
        assert bgbb_survival(gamma, delta, 1) == pytest.approx(delta / (gamma + delta))


class TestModel:
    """Test BetaGeoBetaBinomModel"""

    def _fitted(self, data, params):
        model = BetaGeoBetaBinomModel(data)
        model.idata = point_inference_data(dict(zip(("alpha", "beta", "gamma", "delta"), params)))
        return model

    def test_requires_recency(self, frequency_only_summary):
        with pytest.raises(DataValidationError):
            BetaGeoBetaBinomModel(frequency_only_summary)

    def test_rejects_inconsistent_histories(self):
        data = pd.DataFrame({"customer_id": [1], "frequency": [2], "recency": [1], "T": [5]})

        with pytest.raises(DataValidationError):
            BetaGeoBetaBinomModel(data)

    def test_graph_matches_closed_form(self, bgbb_summary):
        model = BetaGeoBetaBinomModel(bgbb_summary)
        model.build_model()
        logp = model.model.compile_logp(jacobian=False)

        for values in [(1.0, 1.0, 1.0, 1.0), (1.204, 0.750, 0.657, 2.783)]:
            point = {f"{name}_log__": np.log(value) for name, value in zip(model._params, values)}
            params = dict(zip(model._params, values))
            assert float(logp(point)) == pytest.approx(model.log_likelihood(params))

    def test_methods_return_customer_arrays(self, bgbb_summary, bgbb_params):
        model = self._fitted(bgbb_summary, bgbb_params)

        p_alive = model.expected_probability_alive()
        dert = model.discounted_expected_residual_transactions(discount_rate=0.13)
        expected = model.expected_purchases(future_t=4)

        for result in (p_alive, dert, expected):
            assert result.dims == ("customer_id",)
            assert result.sizes["customer_id"] == len(bgbb_summary)
        assert p_alive.sel(customer_id=len(bgbb_summary) - 1).item() == 1.0

    def test_new_customer_methods(self, bgbb_summary, bgbb_params):
        model = self._fitted(bgbb_summary, bgbb_params)

        assert model.discounted_expected_residual_transactions_new_customer(0.13) == pytest.approx(
            bgbb_dert(*bgbb_params, 0, 0, 0, 0.13)
        )
        assert model.expected_purchases_new_customer(5) == pytest.approx(
            bgbb_expectation(*bgbb_params, 5)
        )
        assert model.expected_survival_new_customer(3) == pytest.approx(
            bgbb_survival(bgbb_params[2], bgbb_params[3], 3)
        )
        assert model.probability_of_n_purchases(2, 5) == pytest.approx(bgbb_pmf(*bgbb_params, 2, 5))
        assert model.expected_frequency_distribution(4, n_cal=5).sum() == pytest.approx(1.0)

    def test_moments(self, bgbb_summary, bgbb_params):
        model = self._fitted(bgbb_summary, bgbb_params)
        alpha, beta, gamma, delta = bgbb_params

        assert model.transaction_probability_moments()[0] == pytest.approx(alpha / (alpha + beta))
        assert model.dropout_probability_moments()[0] == pytest.approx(gamma / (gamma + delta))


class TestFit:
    """Test maximum likelihood fitting"""

    @pytest.fixture(scope="class")
    def fitted(self, bgbb_summary):
        model = BetaGeoBetaBinomModel(bgbb_summary)
        model.fit()
        return model

    def test_positive_parameters(self, fitted):
        assert all(value > 0 for value in fitted.optimizer_result.params.values())
        assert set(fitted.optimizer_result.params) == {"alpha", "beta", "gamma", "delta"}

    def test_beats_starting_point(self, fitted):
        start = -fitted.log_likelihood(dict.fromkeys(("alpha", "beta", "gamma", "delta"), 1.0))

        assert fitted.optimizer_result.neg_log_likelihood < start

    def test_is_local_optimum(self, fitted):
        params = fitted.optimizer_result.params
        nll = fitted.optimizer_result.neg_log_likelihood

        for name in params:
            for scale in (0.95, 1.05):
                neighbour = -fitted.log_likelihood({**params, name: params[name] * scale})
                assert nll <= neighbour + 1e-6

    def test_fitted_calibration_distribution(self, fitted):
        assert fitted.expected_frequency_distribution(5).sum() == pytest.approx(1.0)

    def test_new_customer_acquisition_value(self, fitted):
        dert = fitted.discounted_expected_residual_transactions_new_customer(0.13)

        assert np.isfinite(dert) and dert >= 0
        assert np.isfinite((dert + 1) * 10000 * 350.0)

    def test_estimate_stored_as_point_posterior(self, fitted):
        posterior = fitted.fit_result

        assert posterior.sizes["chain"] == 1 and posterior.sizes["draw"] == 1
        for name, value in fitted.optimizer_result.params.items():
            assert float(posterior[name].mean()) == pytest.approx(value)
