import numpy as np
import pandas as pd
import pymc as pm
import xarray
from pymc_marketing.clv.distributions import BetaGeoBetaBinom
from scipy.special import betaln, gammaln, hyp2f1, logsumexp

from clv_base import MaximumLikelihoodCLVModel, beta_moments, squeeze_scalar
from summary_functions import validate_summary


def _lchoose(n, k):
    return gammaln(n + 1) - gammaln(k + 1) - gammaln(n - k + 1)


def _check_history(x, t_x, T):
    if np.any((x < 0) | (x > t_x) | (t_x > T) | ((x == 0) != (t_x == 0))):
        raise ValueError("Histories must satisfy 0 <= x <= t_x <= T and x == 0 <=> t_x == 0")


def _log_likelihood_terms(alpha, beta, gamma, delta, x, t_x, T):
    """Log of the still-alive term and of the full likelihood, elementwise."""
    log_alive = (
        betaln(alpha + x, beta + T - x)
        - betaln(alpha, beta)
        + betaln(gamma, delta + T)
        - betaln(gamma, delta)
    )

    # Dropped out after period t_x + i, for i = 0 .. T - t_x - 1
    i = np.arange(int(np.max(T - t_x, initial=0)))
    x_, t_x_, T_ = x[..., None], t_x[..., None], T[..., None]
    log_dropped = (
        betaln(alpha + x_, beta + t_x_ - x_ + i)
        - betaln(alpha, beta)
        + betaln(gamma + 1, delta + t_x_ + i)
        - betaln(gamma, delta)
    )
    log_dropped = np.where(i < T_ - t_x_, log_dropped, -np.inf)

    log_l = logsumexp(np.concatenate([log_alive[..., None], log_dropped], axis=-1), axis=-1)
    return log_alive, log_l


def bgbb_log_likelihood(alpha, beta, gamma, delta, x, t_x, T):
    """
    Log likelihood of individual histories under the BG/BB model.

    Parameters
    ----------
    alpha, beta: float
        Beta shape parameters of the per-period transaction probability.
    gamma, delta: float
        Beta shape parameters of the per-period dropout probability.
    x, t_x, T: int or array-like
        Number of transacting periods, index of the last one (0 if none) and
        number of periods observed.

    Returns
    -------
    float or np.ndarray
    """
    x_, t_x_, T_ = np.broadcast_arrays(*(np.asarray(v, dtype=float) for v in (x, t_x, T)))
    _check_history(x_, t_x_, T_)
    _, log_l = _log_likelihood_terms(alpha, beta, gamma, delta, x_, t_x_, T_)
    return squeeze_scalar(log_l, x, t_x, T)


def bgbb_pmf(alpha, beta, gamma, delta, x, T):
    """
    Probability that a randomly chosen customer transacts in exactly `x` of `T` periods.
    """
    x_, T_ = np.broadcast_arrays(np.asarray(x, dtype=float), np.asarray(T, dtype=float))
    if np.any(x_ < 0):
        raise ValueError("x must be non-negative")

    valid = x_ <= T_
    log_alive = np.where(
        valid,
        _lchoose(T_, np.minimum(x_, T_))
        + betaln(alpha + x_, beta + np.maximum(T_ - x_, 0))
        - betaln(alpha, beta)
        + betaln(gamma, delta + T_)
        - betaln(gamma, delta),
        -np.inf,
    )

    # Dropped out after period i, having transacted x times in periods 1..i
    i = np.arange(int(np.max(T_, initial=0)))
    x_e, T_e = x_[..., None], T_[..., None]
    i_e = np.maximum(i, x_e)
    log_dropped = (
        _lchoose(i_e, x_e)
        + betaln(alpha + x_e, beta + i_e - x_e)
        - betaln(alpha, beta)
        + betaln(gamma + 1, delta + i_e)
        - betaln(gamma, delta)
    )
    log_dropped = np.where((i >= x_e) & (i < T_e), log_dropped, -np.inf)

    result = np.exp(
        logsumexp(np.concatenate([log_alive[..., None], log_dropped], axis=-1), axis=-1)
    )
    return squeeze_scalar(result, x, T)


def bgbb_pmf_general(alpha, beta, gamma, delta, x_star, n_cal, n_star):
    """
    Probability of exactly `x_star` transactions in periods n_cal + 1 .. n_cal + n_star.

    No history is conditioned on: this is the distribution a randomly chosen
    customer of the cohort is expected to show in a holdout window that starts
    after `n_cal` periods.
    """
    x_, n_, n_star_ = np.broadcast_arrays(
        *(np.asarray(v, dtype=float) for v in (x_star, n_cal, n_star))
    )
    if np.any(x_ < 0):
        raise ValueError("x_star must be non-negative")

    # Dead before the window opens
    dead_before = np.where(
        x_ == 0, -np.expm1(betaln(gamma, delta + n_) - betaln(gamma, delta)), 0.0
    )

    valid = x_ <= n_star_
    log_alive = np.where(
        valid,
        _lchoose(n_star_, np.minimum(x_, n_star_))
        + betaln(alpha + x_, beta + np.maximum(n_star_ - x_, 0))
        - betaln(alpha, beta)
        + betaln(gamma, delta + n_ + n_star_)
        - betaln(gamma, delta),
        -np.inf,
    )

    i = np.arange(int(np.max(n_star_, initial=0)))
    x_e, n_e, n_star_e = x_[..., None], n_[..., None], n_star_[..., None]
    i_e = np.maximum(i, x_e)
    log_dropped = (
        _lchoose(i_e, x_e)
        + betaln(alpha + x_e, beta + i_e - x_e)
        - betaln(alpha, beta)
        + betaln(gamma + 1, delta + n_e + i_e)
        - betaln(gamma, delta)
    )
    log_dropped = np.where((i >= x_e) & (i < n_star_e), log_dropped, -np.inf)

    result = dead_before + np.exp(
        logsumexp(np.concatenate([log_alive[..., None], log_dropped], axis=-1), axis=-1)
    )
    return squeeze_scalar(result, x_star, n_cal, n_star)


def bgbb_probability_alive(alpha, beta, gamma, delta, x, t_x, n_cal):
    """
    Posterior probability that a customer is still alive at the end of period `n_cal`.

    Equal to 1 for a customer who transacted in period `n_cal`.
    """
    x_, t_x_, n_ = np.broadcast_arrays(*(np.asarray(v, dtype=float) for v in (x, t_x, n_cal)))
    _check_history(x_, t_x_, n_)
    log_alive, log_l = _log_likelihood_terms(alpha, beta, gamma, delta, x_, t_x_, n_)
    return squeeze_scalar(np.exp(log_alive - log_l), x, t_x, n_cal)


def bgbb_dert(alpha, beta, gamma, delta, x, t_x, n_cal, d, continuous=False):
    """
    Discounted expected residual transactions.

    Present value, at the end of period `n_cal`, of the transactions a customer
    with history (x, t_x, n_cal) is expected to make from period n_cal + 1 on.
    A transaction k periods ahead is discounted by (1 + d) ** k.

    Parameters
    ----------
    d: float or array-like
        Per-period discount rate. With ``continuous=True`` it is a continuously
        compounded rate and is converted to exp(d) - 1.

    Returns
    -------
    float or np.ndarray
    """
    x_, t_x_, n_, d_ = np.broadcast_arrays(
        *(np.asarray(v, dtype=float) for v in (x, t_x, n_cal, d))
    )
    _check_history(x_, t_x_, n_)
    if continuous:
        d_ = np.expm1(d_)
    if np.any(d_ <= -1):
        raise ValueError("Discount rate must be greater than -1")

    _, log_l = _log_likelihood_terms(alpha, beta, gamma, delta, x_, t_x_, n_)
    with np.errstate(divide="ignore"):
        log_numerator = (
            betaln(alpha + x_ + 1, beta + n_ - x_)
            - betaln(alpha, beta)
            + betaln(gamma, delta + n_ + 1)
            - betaln(gamma, delta)
            - np.log1p(d_)
            + np.log(hyp2f1(1, delta + n_ + 1, gamma + delta + n_ + 1, 1 / (1 + d_)))
        )
    return squeeze_scalar(np.exp(log_numerator - log_l), x, t_x, n_cal, d)


def _survival_sum(gamma, delta, start, length):
    """Sum of B(gamma, delta + t) / B(gamma, delta) over t = start + 1 .. start + length."""
    if np.any((length < 0) | (length % 1 != 0)):
        raise ValueError("Forecast horizons must be non-negative integers")
    k = np.arange(1, int(np.max(length, initial=0)) + 1)
    survival = np.exp(betaln(gamma, delta + start[..., None] + k) - betaln(gamma, delta))
    return np.where(k <= length[..., None], survival, 0.0).sum(axis=-1)


def bgbb_expectation(alpha, beta, gamma, delta, T):
    """
    Expected number of transactions of a new customer over its first `T` periods.

    A transaction in period t needs the customer alive through t, so this is
    E[p] times the survival summed over periods 1..T.
    """
    T_ = np.asarray(T, dtype=float)
    result = alpha / (alpha + beta) * _survival_sum(gamma, delta, np.zeros_like(T_), T_)
    return squeeze_scalar(result, T)


def bgbb_conditional_expectation(alpha, beta, gamma, delta, x, t_x, n_cal, n_star):
    """Expected transactions in periods n_cal + 1 .. n_cal + n_star given (x, t_x, n_cal)."""
    x_, t_x_, n_, n_star_ = np.broadcast_arrays(
        *(np.asarray(v, dtype=float) for v in (x, t_x, n_cal, n_star))
    )
    _check_history(x_, t_x_, n_)
    _, log_l = _log_likelihood_terms(alpha, beta, gamma, delta, x_, t_x_, n_)

    result = np.exp(
        betaln(alpha + x_ + 1, beta + n_ - x_) - betaln(alpha, beta) - log_l
    ) * _survival_sum(gamma, delta, n_, n_star_)
    return squeeze_scalar(result, x, t_x, n_cal, n_star)


def bgbb_survival(gamma, delta, t):
    """Probability that a new customer is still alive after `t` periods."""
    t_ = np.asarray(t, dtype=float)
    return squeeze_scalar(np.exp(betaln(gamma, delta + t_) - betaln(gamma, delta)), t)


class BetaGeoBetaBinomModel(MaximumLikelihoodCLVModel):
    r"""Beta-Geometric/Beta-Binomial (BG/BB) model for discrete-period transactions.

    While alive, a customer transacts in each period with probability
    :math:`p \sim Beta(\alpha, \beta)`; after each period it drops out for good
    with probability :math:`\theta \sim Beta(\gamma, \delta)`. The two
    probabilities are independent across the population.

    Parameters
    ----------
    data: pandas.DataFrame
        DataFrame containing the following columns:
            * `customer_id`: Unique customer identifier
            * `frequency`: Number of periods with a transaction
            * `recency`: Index of the last period with a transaction, 0 if none
            * `T`: Number of periods observed
    model_config: dict, optional
        Dictionary of model prior parameters:
            * `alpha`: Shape parameter of the transaction probability; defaults to `Prior("HalfFlat")`
            * `beta`: Shape parameter of the transaction probability; defaults to `Prior("HalfFlat")`
            * `gamma`: Shape parameter of the dropout probability; defaults to `Prior("HalfFlat")`
            * `delta`: Shape parameter of the dropout probability; defaults to `Prior("HalfFlat")`
        Flat priors make the fitted values maximum likelihood estimates.
    optimizer_config: dict, optional
        `pymc.find_MAP` options. Defaults to `Config.OPTIMIZER_CONFIG`.

    Examples
    --------
    .. code-block:: python

        from beta_geo_beta_binom import BetaGeoBetaBinomModel
        from summary_functions import calibration_and_holdout_data

        summary = calibration_and_holdout_data(cal, holdout, range(2010, 2015), range(2015, 2019))
        calibration = summary[["customer_id", "frequency_cal", "recency_cal", "T_cal"]]
        calibration.columns = ["customer_id", "frequency", "recency", "T"]

        model = BetaGeoBetaBinomModel(data=calibration)
        model.fit()

        probability_alive = model.expected_probability_alive()
        dert = model.discounted_expected_residual_transactions(discount_rate=0.13)
        expected_purchases_new_customer = model.expected_purchases_new_customer(t=10)
    """

    _model_type = "BG/BB"
    _params = ("alpha", "beta", "gamma", "delta")
    _summary_columns = ("frequency", "recency", "T")

    def __init__(
        self,
        data: pd.DataFrame,
        model_config: dict | None = None,
        optimizer_config: dict | None = None,
    ):
        self._validate_cols(
            data,
            required_cols=["customer_id", "frequency", "recency", "T"],
            must_be_unique=["customer_id"],
        )
        validate_summary(data)
        super().__init__(data=data, model_config=model_config, optimizer_config=optimizer_config)

    def build_model(self) -> None:  # type: ignore[override]
        rf = self.compressed_data

        with pm.Model() as self.model:
            alpha = self.model_config["alpha"].create_variable("alpha")
            beta = self.model_config["beta"].create_variable("beta")
            gamma = self.model_config["gamma"].create_variable("gamma")
            delta = self.model_config["delta"].create_variable("delta")

            logp = pm.logp(
                BetaGeoBetaBinom.dist(
                    alpha=alpha,
                    beta=beta,
                    gamma=gamma,
                    delta=delta,
                    T=rf["T"].to_numpy(),
                ),
                np.stack((rf["recency"].to_numpy(), rf["frequency"].to_numpy()), axis=1),
            )
            pm.Potential("likelihood", (logp * rf["customers"].to_numpy()).sum())

    def log_likelihood(self, params: dict | None = None) -> float:
        if params is None:
            params = dict(zip(self._params, self._unload_params()))
        rf = self.compressed_data
        ll = bgbb_log_likelihood(
            params["alpha"],
            params["beta"],
            params["gamma"],
            params["delta"],
            rf["frequency"].to_numpy(),
            rf["recency"].to_numpy(),
            rf["T"].to_numpy(),
        )
        return float(np.sum(rf["customers"].to_numpy() * ll))

    def _history(self, data: pd.DataFrame | None):
        if data is None:
            data = self.data
        self._validate_cols(data, required_cols=["customer_id", "frequency", "recency", "T"])
        return (
            data,
            data["frequency"].to_numpy(),
            data["recency"].to_numpy(),
            data["T"].to_numpy(),
        )

    def transaction_probability_moments(self) -> tuple[float, float]:
        """Population mean and variance of the per-period transaction probability."""
        alpha, beta, _, _ = self._unload_params()
        return beta_moments(alpha, beta)

    def dropout_probability_moments(self) -> tuple[float, float]:
        """Population mean and variance of the per-period dropout probability."""
        _, _, gamma, delta = self._unload_params()
        return beta_moments(gamma, delta)

    def expected_probability_alive(
        self,
        data: pd.DataFrame | None = None,
    ) -> xarray.DataArray:
        data, x, t_x, T = self._history(data)
        return self._customer_array(
            data, bgbb_probability_alive(*self._unload_params(), x, t_x, T)
        )

    def discounted_expected_residual_transactions(
        self,
        data: pd.DataFrame | None = None,
        *,
        discount_rate: float,
        continuous: bool = False,
    ) -> xarray.DataArray:
        data, x, t_x, T = self._history(data)
        return self._customer_array(
            data,
            bgbb_dert(*self._unload_params(), x, t_x, T, discount_rate, continuous=continuous),
        )

    def expected_purchases(
        self,
        data: pd.DataFrame | None = None,
        *,
        future_t: int | np.ndarray | pd.Series,
    ) -> xarray.DataArray:
        data, x, t_x, T = self._history(data)
        return self._customer_array(
            data,
            bgbb_conditional_expectation(*self._unload_params(), x, t_x, T, future_t),
        )

    def expected_purchases_new_customer(self, t):
        """Expected transactions of a customer with no history over its first `t` periods."""
        return bgbb_expectation(*self._unload_params(), t)

    def expected_survival_new_customer(self, t):
        """Probability that a customer with no history is still alive after `t` periods."""
        _, _, gamma, delta = self._unload_params()
        return bgbb_survival(gamma, delta, t)

    def probability_of_n_purchases(self, n_purchases, T):
        return bgbb_pmf(*self._unload_params(), n_purchases, T)

    def expected_frequency_distribution(self, T: int, n_cal: int = 0) -> np.ndarray:
        """Probability of each frequency 0..T in a window of `T` periods starting after `n_cal`."""
        return bgbb_pmf_general(*self._unload_params(), np.arange(T + 1), n_cal, T)

    def discounted_expected_residual_transactions_new_customer(
        self, discount_rate: float, continuous: bool = False
    ) -> float:
        """DERT of a customer with no history, i.e. (x, t_x, n_cal) = (0, 0, 0)."""
        return bgbb_dert(*self._unload_params(), 0, 0, 0, discount_rate, continuous=continuous)
