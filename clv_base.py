import warnings
from collections.abc import Sequence
from dataclasses import dataclass

import arviz as az
import numpy as np
import pandas as pd
import pymc as pm
import xarray
from loguru import logger
from pymc_extras.prior import Prior
from pymc_marketing.clv.models.basic import CLVModel
from pymc_marketing.clv.utils import to_xarray

from clv_config import Config
from summary_functions import DataValidationError, compress_summary


class ConvergenceWarning(UserWarning):
    """The optimizer stopped without reporting success."""


class ConvergenceError(RuntimeError):
    """Raised by a strict fit when the optimizer does not converge."""


@dataclass(frozen=True)
class FitResult:
    """Maximum likelihood estimate together with the optimizer's own diagnostics."""

    params: dict
    neg_log_likelihood: float
    success: bool
    message: str = ""
    n_iterations: int | None = None
    grad_norm: float | None = None
    n_customers: int = 0

    def __getitem__(self, name):
        return self.params[name]


def beta_moments(a, b):
    """Mean and variance of a Beta(a, b) distribution.

    Non-finite results are returned unmasked.
    """
    a = np.float64(a)
    b = np.float64(b)
    with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
        mean = a / (a + b)
        var = a * b / ((a + b) ** 2 * (a + b + 1))
    return float(mean), float(var)


def squeeze_scalar(result, *inputs):
    """Return a float when every input was a scalar, the array otherwise."""
    if all(np.ndim(value) == 0 for value in inputs):
        return float(np.asarray(result).reshape(()))
    return result


def point_inference_data(params: dict) -> az.InferenceData:
    """Single-draw posterior holding a point estimate, as `CLVModel.fit(method="map")` stores it."""
    return az.from_dict(
        posterior={name: np.array([[float(value)]]) for name, value in params.items()}
    )


class MaximumLikelihoodCLVModel(CLVModel):
    """CLV model fitted by maximum likelihood.

    With the default `HalfFlat` priors the MAP estimate found by `pymc.find_MAP`
    is the maximum likelihood estimate, searched over the log transformed
    (unconstrained) parameters starting from log(1) = 0. The estimate is stored
    as a single-draw posterior, so `fit_result` and `fit_summary` behave as
    after `fit(method="map")`; the optimizer diagnostics are kept in
    `optimizer_result`.
    """

    _params: tuple[str, ...] = ()
    _summary_columns: tuple[str, ...] = ("frequency", "T")

    def __init__(
        self,
        data: pd.DataFrame,
        model_config: dict | None = None,
        optimizer_config: dict | None = None,
    ):
        super().__init__(data=data, model_config=model_config)
        self.optimizer_config = {**Config.OPTIMIZER_CONFIG, **(optimizer_config or {})}
        self.optimizer_result: FitResult | None = None

    @property
    def default_model_config(self) -> dict:
        return {name: Prior("HalfFlat") for name in self._params}

    @staticmethod
    def _validate_cols(
        data: pd.DataFrame,
        required_cols: Sequence[str],
        must_be_unique: Sequence[str] = (),
    ):
        try:
            CLVModel._validate_cols(data, required_cols=required_cols, must_be_unique=must_be_unique)
        except ValueError as err:
            raise DataValidationError(str(err)) from err

    @property
    def compressed_data(self) -> pd.DataFrame:
        return compress_summary(self.data, self._summary_columns)

    def log_likelihood(self, params: dict | None = None) -> float:
        """Summed log likelihood of the model's data at `params` (fitted ones by default)."""
        raise NotImplementedError

    def fit(self, strict: bool | None = None, **kwargs) -> FitResult:  # type: ignore[override]
        """
        Find the maximum likelihood parameters.

        Parameters
        ----------
        strict: bool, optional
            Raise `ConvergenceError` instead of warning when the optimizer does
            not report success. Defaults to `Config.STRICT_CONVERGENCE`.
        **kwargs
            Override `optimizer_config` entries for this call.

        Returns
        -------
        FitResult
        """
        if strict is None:
            strict = Config.STRICT_CONVERGENCE
        if getattr(self, "model", None) is None:
            self.build_model()

        optimizer_config = {**self.optimizer_config, **kwargs}
        logger.info(
            f"Fitting {self._model_type} on {len(self.data)} customers "
            f"({optimizer_config['method']})"
        )

        map_point, raw = pm.find_MAP(
            model=self.model,
            return_raw=True,
            progressbar=False,
            **optimizer_config,
        )
        params = {name: float(np.asarray(map_point[name])) for name in self._params}

        # find_MAP returns no raw result when it hit maxeval
        if raw is None:
            success, message, n_iterations, grad_norm = (
                False,
                f"Stopped after {optimizer_config.get('maxeval')} evaluations",
                None,
                None,
            )
        else:
            success = bool(raw.success)
            message = str(raw.message)
            n_iterations = int(raw.nit) if "nit" in raw else None
            grad_norm = float(np.linalg.norm(raw.jac)) if "jac" in raw else None

        self.idata = point_inference_data(params)
        self.optimizer_result = FitResult(
            params=params,
            neg_log_likelihood=-self.log_likelihood(params),
            success=success,
            message=message,
            n_iterations=n_iterations,
            grad_norm=grad_norm,
            n_customers=len(self.data),
        )

        logger.info(
            f"{self._model_type} fit: "
            + ", ".join(f"{k}={v:.4f}" for k, v in params.items())
            + f", -LL={self.optimizer_result.neg_log_likelihood:.4f}"
        )
        if not success:
            msg = f"{self._model_type} fit did not converge: {message}"
            if strict:
                raise ConvergenceError(msg)
            logger.warning(msg)
            warnings.warn(msg, ConvergenceWarning, stacklevel=2)

        return self.optimizer_result

    def _unload_params(self) -> tuple[float, ...]:
        posterior = self.fit_result
        return tuple(float(posterior[name].mean()) for name in self._params)

    def _customer_array(self, data: pd.DataFrame, values) -> xarray.DataArray:
        return to_xarray(data["customer_id"], np.asarray(values))
