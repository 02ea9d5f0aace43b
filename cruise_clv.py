"""
Cruise line customer lifetime value analysis - main entry point.

Loads the calibration (2010-2014) and holdout (2015-2018) transaction files,
fits the Beta-Binomial and BG/BB models on the calibration window, checks both
against the holdout window and forecasts survival, residual value and the
maximum acquisition spend for a new cohort with the BG/BB model.

Usage:
    cruise-clv --calibration data/calibration.txt --holdout data/holdout.txt --output output/
"""

import argparse
import json
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Dict, Optional

import numpy as np
import pandas as pd
from loguru import logger

from beta_binom import BetaBinomModel
from beta_geo_beta_binom import BetaGeoBetaBinomModel
from clv_config import Config
from summary_functions import (
    calibration_and_holdout_data,
    compare_frequency_distributions,
    frequency_summary,
    read_transactions,
)


def window_summary(summary: pd.DataFrame, suffix: str = "") -> pd.DataFrame:
    """Select one window's columns, renamed to `frequency`, `recency`, `T`."""
    columns = {f"{name}{suffix}": name for name in ("frequency", "recency", "T")}
    return summary[["customer_id", *columns]].rename(columns=columns)


class CruiseCLVAnalysis:
    """
    End-to-end CLV analysis.

    Workflow:
    1. Summarize raw transactions into calibration, holdout and full windows
    2. Fit Beta-Binomial and BG/BB models on the calibration window
    3. Compare expected and actual frequency distributions in both windows
    4. Forecast with the BG/BB model
    """

    def __init__(self, config=Config, strict: Optional[bool] = None):
        """
        Initialize the analysis.

        Args:
            config: Configuration class (defaults to Config)
            strict: Fail on optimizer non-convergence instead of warning
        """
        self.config = config
        self.strict = config.STRICT_CONVERGENCE if strict is None else strict

        self.beta_binom: Optional[BetaBinomModel] = None
        self.bgbb: Optional[BetaGeoBetaBinomModel] = None

    def load(self, calibration_path: Path, holdout_path: Path) -> pd.DataFrame:
        """Read both transaction files and build the per-customer summary."""
        transactions_cal = read_transactions(
            calibration_path, self.config.CUSTOMER_ID_COL, self.config.PERIOD_COL
        )
        transactions_holdout = read_transactions(
            holdout_path, self.config.CUSTOMER_ID_COL, self.config.PERIOD_COL
        )
        return calibration_and_holdout_data(
            transactions_cal,
            transactions_holdout,
            self.config.CALIBRATION_PERIODS,
            self.config.HOLDOUT_PERIODS,
        )

    def fit_models(self, summary: pd.DataFrame) -> Dict:
        """Fit both models on the calibration window."""
        calibration = window_summary(summary, "_cal")

        self.beta_binom = BetaBinomModel(calibration[["customer_id", "frequency", "T"]])
        bb_result = self.beta_binom.fit(strict=self.strict)

        self.bgbb = BetaGeoBetaBinomModel(calibration)
        bgbb_result = self.bgbb.fit(strict=self.strict)

        p_mean, p_var = self.beta_binom.transaction_probability_moments()
        bgbb_p_mean, bgbb_p_var = self.bgbb.transaction_probability_moments()
        theta_mean, theta_var = self.bgbb.dropout_probability_moments()

        return {
            "beta_binom": {
                **asdict(bb_result),
                "transaction_probability_mean": p_mean,
                "transaction_probability_var": p_var,
            },
            "bgbb": {
                **asdict(bgbb_result),
                "transaction_probability_mean": bgbb_p_mean,
                "transaction_probability_var": bgbb_p_var,
                "dropout_probability_mean": theta_mean,
                "dropout_probability_var": theta_var,
            },
        }

    def compare_fit(self, summary: pd.DataFrame) -> Dict[str, pd.DataFrame]:
        """Actual vs expected customers per frequency bucket, in and out of sample."""
        n_cal = len(self.config.CALIBRATION_PERIODS)
        n_holdout = len(self.config.HOLDOUT_PERIODS)

        actual_cal = frequency_summary(summary, n_cal, "frequency_cal")
        actual_holdout = frequency_summary(summary, n_holdout, "frequency_holdout")

        tables = {
            "beta_binom_calibration": compare_frequency_distributions(
                actual_cal, self.beta_binom.expected_frequency_distribution(n_cal)
            ),
            # No dropout: the holdout window is just another draw of the same p
            "beta_binom_holdout": compare_frequency_distributions(
                actual_holdout, self.beta_binom.expected_frequency_distribution(n_holdout)
            ),
            "bgbb_calibration": compare_frequency_distributions(
                actual_cal, self.bgbb.expected_frequency_distribution(n_cal)
            ),
            "bgbb_holdout": compare_frequency_distributions(
                actual_holdout, self.bgbb.expected_frequency_distribution(n_holdout, n_cal=n_cal)
            ),
        }

        calibration = window_summary(summary, "_cal")
        expected_holdout = self.bgbb.expected_purchases(calibration, future_t=n_holdout)
        tables["bgbb_holdout_transactions"] = pd.DataFrame(
            {
                "actual": [int(summary["frequency_holdout"].sum())],
                "expected": [float(expected_holdout.sum())],
            }
        )

        for name, table in tables.items():
            logger.debug(f"{name}:\n{table}")
        return tables

    def forecast(self, summary: pd.DataFrame) -> Dict:
        """BG/BB forecasts for the existing customers and for a new cohort."""
        full = window_summary(summary)
        d = self.config.DISCOUNT_RATE
        margin = self.config.MARGIN_PER_TRANSACTION
        cohort_size = self.config.COHORT_SIZE

        p_alive = self.bgbb.expected_probability_alive(full)
        dert = self.bgbb.discounted_expected_residual_transactions(full, discount_rate=d)
        customers = pd.DataFrame(
            {
                "customer_id": full["customer_id"].to_numpy(),
                "probability_alive": p_alive.values,
                "dert": dert.values,
                "residual_value": dert.values * margin,
            }
        )

        t = np.arange(1, self.config.FORECAST_HORIZON + 1)
        cumulative = np.asarray(self.bgbb.expected_purchases_new_customer(t))
        new_cohort = pd.DataFrame(
            {
                "period": t,
                "expected_alive": cohort_size * np.asarray(self.bgbb.expected_survival_new_customer(t)),
                "expected_transactions": cohort_size * np.diff(cumulative, prepend=0.0),
            }
        )

        dert_new = self.bgbb.discounted_expected_residual_transactions_new_customer(d)
        max_spend = (dert_new + 1) * margin

        figures = {
            "expected_surviving_customers": float(p_alive.sum()),
            "total_residual_value": float(customers["residual_value"].sum()),
            "new_customer_dert": dert_new,
            "max_acquisition_spend_per_customer": max_spend,
            "max_acquisition_spend_cohort": max_spend * cohort_size,
        }
        logger.info(
            f"Expected survivors {figures['expected_surviving_customers']:.1f}, "
            f"residual value {figures['total_residual_value']:,.0f}, "
            f"max acquisition spend {max_spend:,.2f} per customer"
        )
        return {"customers": customers, "new_cohort": new_cohort, "figures": figures}

    def run(
        self,
        calibration_path: Optional[Path] = None,
        holdout_path: Optional[Path] = None,
    ) -> Dict:
        """
        Run the whole analysis.

        Args:
            calibration_path: Calibration transactions (defaults to DATA_DIR / CALIBRATION_FILE)
            holdout_path: Holdout transactions (defaults to DATA_DIR / HOLDOUT_FILE)

        Returns:
            Dictionary with the summary, bucket counts, fits, comparison tables and forecasts
        """
        self.config.validate_config()
        calibration_path = calibration_path or self.config.DATA_DIR / self.config.CALIBRATION_FILE
        holdout_path = holdout_path or self.config.DATA_DIR / self.config.HOLDOUT_FILE

        logger.info("=" * 60)
        logger.info("STEP 1: Recency/frequency summaries")
        logger.info("=" * 60)
        summary = self.load(calibration_path, holdout_path)

        logger.info("=" * 60)
        logger.info("STEP 2: Model fitting")
        logger.info("=" * 60)
        fits = self.fit_models(summary)

        logger.info("=" * 60)
        logger.info("STEP 3: Calibration and holdout fit")
        logger.info("=" * 60)
        comparisons = self.compare_fit(summary)

        logger.info("=" * 60)
        logger.info("STEP 4: Forecasts")
        logger.info("=" * 60)
        forecasts = self.forecast(summary)

        return {
            "summary": summary,
            "frequency_summary_cal": frequency_summary(
                summary, len(self.config.CALIBRATION_PERIODS), "frequency_cal"
            ),
            "frequency_summary_holdout": frequency_summary(
                summary, len(self.config.HOLDOUT_PERIODS), "frequency_holdout"
            ),
            "fits": fits,
            "comparisons": comparisons,
            "forecasts": forecasts,
        }


def save_outputs(results: Dict, output_dir: Path) -> None:
    """Write tables as CSV and fits and forecast figures as JSON."""
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    results["summary"].to_csv(output_dir / "customer_summary.csv", index=False)
    results["frequency_summary_cal"].to_csv(output_dir / "frequency_summary_cal.csv")
    results["frequency_summary_holdout"].to_csv(output_dir / "frequency_summary_holdout.csv")
    for name, table in results["comparisons"].items():
        table.to_csv(output_dir / f"{name}.csv")
    results["forecasts"]["customers"].to_csv(output_dir / "customer_forecasts.csv", index=False)
    results["forecasts"]["new_cohort"].to_csv(output_dir / "new_cohort.csv", index=False)

    with open(output_dir / "fits.json", "w") as f:
        json.dump(results["fits"], f, indent=2, default=float)
    with open(output_dir / "forecast.json", "w") as f:
        json.dump(results["forecasts"]["figures"], f, indent=2, default=float)

    logger.info(f"Saved outputs to {output_dir}")


def main(argv=None):
    """Main entry point for CLI."""
    parser = argparse.ArgumentParser(
        description="Cruise line customer lifetime value analysis (Beta-Binomial and BG/BB)",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  cruise-clv --calibration data/calibration.txt --holdout data/holdout.txt
  cruise-clv --config settings.yaml --output results/
        """,
    )
    parser.add_argument("--calibration", type=str, help="Calibration window transactions")
    parser.add_argument("--holdout", type=str, help="Holdout window transactions")
    parser.add_argument("--config", type=str, help="YAML file with configuration overrides")
    parser.add_argument("--output", type=str, help=f"Output directory (default: {Config.OUTPUT_DIR})")
    parser.add_argument("--no-save", action="store_true", help="Do not write output files")
    parser.add_argument(
        "--strict", action="store_true", help="Fail if an optimizer does not converge"
    )
    args = parser.parse_args(argv)

    if args.config:
        Config.load_from_yaml(args.config)
    output_dir = Path(args.output) if args.output else Config.OUTPUT_DIR

    logger.remove()
    logger.add(sys.stdout, format=Config.LOG_FORMAT, level=Config.LOG_LEVEL)
    if not args.no_save:
        output_dir.mkdir(parents=True, exist_ok=True)
        logger.add(output_dir / Config.LOG_FILE.name, format=Config.LOG_FORMAT, level="DEBUG")

    logger.info(f"Configuration: {json.dumps(Config.summary())}")

    analysis = CruiseCLVAnalysis(strict=args.strict or None)
    results = analysis.run(
        Path(args.calibration) if args.calibration else None,
        Path(args.holdout) if args.holdout else None,
    )

    if not args.no_save:
        save_outputs(results, output_dir)


if __name__ == "__main__":
    main()
