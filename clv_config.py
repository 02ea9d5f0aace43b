"""
Configuration for the cruise line customer lifetime value analysis.

Observation windows, model fitting options and the business constants used by
the forecasts. Values can be overridden through environment variables (a
``.env`` file is honoured) or a YAML file.
"""

import os
from pathlib import Path
from typing import Dict, List

import yaml
from dotenv import load_dotenv

load_dotenv()


def _periods(start: int, end: int) -> List[int]:
    return list(range(start, end + 1))


class Config:
    """Central configuration for the CLV analysis."""

    # ========================================================================
    # PROJECT PATHS
    # ========================================================================
    PROJECT_ROOT = Path(__file__).parent
    DATA_DIR = Path(os.getenv("CLV_DATA_DIR", PROJECT_ROOT / "data"))
    OUTPUT_DIR = Path(os.getenv("CLV_OUTPUT_DIR", PROJECT_ROOT / "output"))

    CALIBRATION_FILE = os.getenv("CLV_CALIBRATION_FILE", "calibration.txt")
    HOLDOUT_FILE = os.getenv("CLV_HOLDOUT_FILE", "holdout.txt")

    # Column names of the raw whitespace-delimited tables
    CUSTOMER_ID_COL = os.getenv("CLV_CUSTOMER_ID_COL", "id")
    PERIOD_COL = os.getenv("CLV_PERIOD_COL", "year")

    # ========================================================================
    # OBSERVATION WINDOWS
    # ========================================================================
    CALIBRATION_PERIODS = _periods(
        int(os.getenv("CLV_CALIBRATION_START", "2010")),
        int(os.getenv("CLV_CALIBRATION_END", "2014")),
    )
    HOLDOUT_PERIODS = _periods(
        int(os.getenv("CLV_HOLDOUT_START", "2015")),
        int(os.getenv("CLV_HOLDOUT_END", "2018")),
    )

    # ========================================================================
    # MODEL FITTING
    # ========================================================================

    # Passed to pymc.find_MAP; extra keys are forwarded to scipy.optimize.minimize
    OPTIMIZER_CONFIG = {
        "method": os.getenv("CLV_OPTIMIZER_METHOD", "BFGS"),
        "maxeval": int(os.getenv("CLV_OPTIMIZER_MAXEVAL", "5000")),
    }
    STRICT_CONVERGENCE = os.getenv("CLV_STRICT_CONVERGENCE", "false").lower() == "true"

    # ========================================================================
    # BUSINESS CONSTANTS
    # ========================================================================
    DISCOUNT_RATE = float(os.getenv("CLV_DISCOUNT_RATE", "0.13"))
    MARGIN_PER_TRANSACTION = float(os.getenv("CLV_MARGIN", "350.0"))
    COHORT_SIZE = int(os.getenv("CLV_COHORT_SIZE", "10000"))
    FORECAST_HORIZON = int(os.getenv("CLV_FORECAST_HORIZON", "10"))

    # ========================================================================
    # LOGGING
    # ========================================================================
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
    LOG_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}"
    LOG_FILE = OUTPUT_DIR / "cruise_clv.log"

    @classmethod
    def load_from_yaml(cls, config_path: str) -> Dict:
        """
        Load configuration overrides from a YAML file and apply them.

        Keys are matched case-insensitively against the class attributes;
        unknown keys raise ``ValueError``.

        Args:
            config_path: Path to YAML configuration file

        Returns:
            Dictionary with the values read from the file
        """
        with open(config_path, "r") as f:
            overrides = yaml.safe_load(f) or {}

        for key, value in overrides.items():
            attr = key.upper()
            if not hasattr(cls, attr):
                raise ValueError(f"Unknown configuration key: {key}")
            if attr.endswith("_DIR"):
                value = Path(value)
            setattr(cls, attr, value)

        return overrides

    @classmethod
    def validate_config(cls) -> bool:
        """
        Validate configuration settings.

        Returns:
            True if configuration is valid

        Raises:
            ValueError: If configuration is invalid
        """
        if not cls.CALIBRATION_PERIODS:
            raise ValueError("Calibration window must contain at least one period")

        if not cls.HOLDOUT_PERIODS:
            raise ValueError("Holdout window must contain at least one period")

        if set(cls.CALIBRATION_PERIODS) & set(cls.HOLDOUT_PERIODS):
            raise ValueError("Calibration and holdout windows must not overlap")

        if cls.DISCOUNT_RATE <= -1:
            raise ValueError("DISCOUNT_RATE must be greater than -1")

        if cls.COHORT_SIZE < 0:
            raise ValueError("COHORT_SIZE must be non-negative")

        if cls.FORECAST_HORIZON < 1:
            raise ValueError("FORECAST_HORIZON must be at least 1")

        return True

    @classmethod
    def summary(cls) -> Dict:
        """Return configuration summary"""
        return {
            "windows": {
                "calibration": [cls.CALIBRATION_PERIODS[0], cls.CALIBRATION_PERIODS[-1]],
                "holdout": [cls.HOLDOUT_PERIODS[0], cls.HOLDOUT_PERIODS[-1]],
            },
            "optimizer": dict(cls.OPTIMIZER_CONFIG),
            "forecast": {
                "discount_rate": cls.DISCOUNT_RATE,
                "margin_per_transaction": cls.MARGIN_PER_TRANSACTION,
                "cohort_size": cls.COHORT_SIZE,
                "horizon": cls.FORECAST_HORIZON,
            },
        }
