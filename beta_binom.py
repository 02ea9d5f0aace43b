import numpy as np
import pandas as pd
import pymc as pm
import xarray
from scipy.stats import betabinom

from clv_base import MaximumLikelihoodCLVModel, beta_moments, squeeze_scalar
from summary_functions import DataValidationError


def beta_binom_pmf(alpha, beta, x, T):
    """P(X = x | T, alpha, beta) = C(T, x) B(alpha + x, beta + T - x) / B(alpha, beta)."""
    result = betabinom.pmf(x, T, alpha, beta)
    return squeeze_scalar(result, x, T)


def beta_binom_log_likelihood(alpha, beta, x, T):
    """Per-customer log likelihood of `x` transacting periods out of `T`."""
    result = betabinom.logpmf(x, T, alpha, beta)
    return squeeze_scalar(result, x, T)


class BetaBinomModel(MaximumLikelihoodCLVModel):
    r"""Beta-Binomial model of discrete-period transactions.

    Each customer transacts in every period with a constant probability
    :math:`p \sim Beta(\alpha, \beta)`, so the number of transacting periods in
    a window of length `T` is Beta-Binomial. Customers never drop out.

    Parameters
    ----------
    data: pandas.DataFrame
        DataFrame containing the following columns:
            * `customer_id`: Unique customer identifier
            * `frequency`: Number of periods with a transaction
            * `T`: Number of periods in the window
    model_config: dict, optional
        Dictionary of model prior parameters:
            * `alpha`: defaults to `Prior("HalfFlat")`
            * `beta`: defaults to `Prior("HalfFlat")`
    optimizer_config: dict, optional
        `pymc.find_MAP` options. Defaults to `Config.OPTIMIZER_CONFIG`.

    Examples
    --------
    .. code-block:: python

        model = BetaBinomModel(data=summary[["customer_id", "frequency", "T"]])
        result = model.fit()
        probabilities = model.expected_frequency_distribution(T=5)
    """

    _model_type = "Beta-Binomial"
    _params = ("alpha", "beta")
    _summary_columns = ("frequency", "T")

    def __init__(
        self,
        data: pd.DataFrame,
        model_config: dict | None = None,
        optimizer_config: dict | None = None,
    ):
        self._validate_cols(
            data,
            required_cols=["customer_id", "frequency", "T"],
            must_be_unique=["customer_id"],
        )
        if ((data["frequency"] < 0) | (data["frequency"] > data["T"])).any():
            raise DataValidationError("frequency must lie between 0 and T")
        super().__init__(data=data, model_config=model_config, optimizer_config=optimizer_config)

    def build_model(self) -> None:
        rf = self.compressed_data

        with pm.Model() as self.model:
            alpha = self.model_config["alpha"].create_variable("alpha")
            beta = self.model_config["beta"].create_variable("beta")

            logp = pm.logp(
                pm.BetaBinomial.dist(alpha=alpha, beta=beta, n=rf["T"].to_numpy()),
                rf["frequency"].to_numpy(),
            )
            pm.Potential("likelihood", (logp * rf["customers"].to_numpy()).sum())

    def log_likelihood(self, params: dict | None = None) -> float:
        if params is None:
            alpha, beta = self._unload_params()
        else:
            alpha, beta = params["alpha"], params["beta"]
        rf = self.compressed_data
        ll = beta_binom_log_likelihood(alpha, beta, rf["frequency"].to_numpy(), rf["T"].to_numpy())
        return float(np.sum(rf["customers"].to_numpy() * ll))

    def transaction_probability_moments(self) -> tuple[float, float]:
        """Population mean and variance of the per-period transaction probability."""
        alpha, beta = self._unload_params()
        return beta_moments(alpha, beta)

    def expected_frequency_distribution(self, T: int) -> np.ndarray:
        """Probability of each frequency 0..T for a randomly chosen customer."""
        alpha, beta = self._unload_params()
        return beta_binom_pmf(alpha, beta, np.arange(T + 1), T)

    def expected_purchases(
        self,
        data: pd.DataFrame | None = None,
        *,
        future_t: int,
    ) -> xarray.DataArray:
        """Expected transacting periods in the next `future_t` periods, given each history.

        The posterior of p given x transactions in T periods is
        Beta(alpha + x, beta + T - x).
        """
        if data is None:
            data = self.data
        self._validate_cols(data, required_cols=["customer_id", "frequency", "T"])

        alpha, beta = self._unload_params()
        x = data["frequency"].to_numpy()
        T = data["T"].to_numpy()
        return self._customer_array(data, future_t * (alpha + x) / (alpha + beta + T))
