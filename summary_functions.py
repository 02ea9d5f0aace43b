from collections.abc import Sequence

import numpy as np
import pandas as pd
from loguru import logger


class DataValidationError(ValueError):
    """Raised when raw transactions or customer summaries are malformed."""


def read_transactions(path, customer_id_col="id", period_col="year"):
    """
    Read a whitespace-delimited table of (customer, period) transaction rows.

    Parameters
    ----------
    path: str or Path
        File with a header row naming at least `customer_id_col` and `period_col`.
    customer_id_col: string
        the column that denotes the customer identifier.
    period_col: string
        the column that denotes the period (year) in which the customer transacted.

    Returns
    -------
    pd.DataFrame
        Two integer columns, `customer_id` and `period`.

    Raises
    ------
    DataValidationError
        If a column is missing or a row cannot be parsed as integers.
    """
    raw = pd.read_csv(path, sep=r"\s+", dtype=str)

    missing = [col for col in (customer_id_col, period_col) if col not in raw.columns]
    if missing:
        raise DataValidationError(f"{path}: missing required column(s) {missing}")

    transactions = pd.DataFrame(
        {
            "customer_id": pd.to_numeric(raw[customer_id_col], errors="coerce"),
            "period": pd.to_numeric(raw[period_col], errors="coerce"),
        }
    )

    # Reject non-numeric and fractional values alike
    bad_rows = transactions.isna().any(axis=1) | (transactions % 1 != 0).any(axis=1)
    if bad_rows.any():
        first_bad = raw.loc[bad_rows].head(5).to_dict("records")
        raise DataValidationError(
            f"{path}: {int(bad_rows.sum())} malformed row(s), e.g. {first_bad}"
        )

    transactions = transactions.astype({"customer_id": "int64", "period": "int64"})
    logger.info(
        f"Read {len(transactions)} transactions for "
        f"{transactions['customer_id'].nunique()} customers from {path}"
    )
    return transactions


def transaction_matrix(transactions, periods, customers=None):
    """
    Build the binary customers x periods matrix of a window.

    Parameters
    ----------
    transactions: pd.DataFrame
        rows of `customer_id`, `period`; repeated rows count once.
    periods: Sequence[int]
        the ordered periods of the window. Rows outside it are ignored.
    customers: Sequence, optional
        customers to report. Customers without a row in the window get all
        zeros. Defaults to the customers present in `transactions`.

    Returns
    -------
    pd.DataFrame
        0/1 integers indexed by `customer_id`, one column per period.
    """
    periods = list(periods)
    in_window = transactions.loc[transactions["period"].isin(periods)]

    if customers is None:
        customers = transactions["customer_id"].unique()

    if in_window.empty:
        matrix = pd.DataFrame(0, index=pd.Index([], name="customer_id"), columns=periods)
    else:
        matrix = (
            pd.crosstab(in_window["customer_id"], in_window["period"])
            .clip(upper=1)
            .reindex(columns=periods, fill_value=0)
        )
    matrix = matrix.reindex(index=pd.Index(customers, name="customer_id"), fill_value=0)
    matrix.columns.name = "period"

    return matrix.astype("int64")


def summary_data_from_transaction_matrix(matrix):
    """
    Summarize a binary transaction matrix into frequency, recency and T.

    `frequency` is the number of transacting periods, `recency` the 1-based
    index within the window of the last transacting period (0 if none) and
    `T` the window length.
    """
    values = matrix.to_numpy()
    n_periods = values.shape[1]

    frequency = values.sum(axis=1)
    # Index of the last 1, found on the reversed rows
    last = n_periods - np.argmax(values[:, ::-1], axis=1)
    recency = np.where(frequency > 0, last, 0)

    return pd.DataFrame(
        {
            "customer_id": matrix.index.to_numpy(),
            "frequency": frequency.astype("int64"),
            "recency": recency.astype("int64"),
            "T": np.full(len(matrix), n_periods, dtype="int64"),
        }
    )


def combine_windows(calibration_matrix, holdout_matrix):
    """
    Concatenate two transaction matrices with disjoint periods.

    Customers present in only one matrix get zeros for the other one's periods.
    """
    overlap = set(calibration_matrix.columns) & set(holdout_matrix.columns)
    if overlap:
        raise DataValidationError(f"Windows share periods {sorted(overlap)}")

    combined = pd.concat([calibration_matrix, holdout_matrix], axis=1).fillna(0)
    combined.index.name = "customer_id"
    return combined.astype("int64")


def calibration_and_holdout_data(
    transactions_cal,
    transactions_holdout,
    calibration_periods: Sequence[int],
    holdout_periods: Sequence[int],
):
    """
    Build calibration, holdout and full-window summaries for every customer.

    Parameters
    ----------
    transactions_cal: pd.DataFrame
        `customer_id`, `period` rows of the calibration file.
    transactions_holdout: pd.DataFrame
        `customer_id`, `period` rows of the holdout file.
    calibration_periods, holdout_periods: Sequence[int]
        the ordered periods of each window.

    Returns
    -------
    pd.DataFrame
        One row per customer seen in either file with `frequency_cal`,
        `recency_cal`, `T_cal`, `frequency_holdout`, `recency_holdout`,
        `T_holdout` and the full-window `frequency`, `recency`, `T`.
    """
    customers = pd.Index(
        pd.concat([transactions_cal["customer_id"], transactions_holdout["customer_id"]]).unique()
    ).sort_values()

    cal_matrix = transaction_matrix(transactions_cal, calibration_periods, customers)
    holdout_matrix = transaction_matrix(transactions_holdout, holdout_periods, customers)
    full_matrix = combine_windows(cal_matrix, holdout_matrix)

    cal = summary_data_from_transaction_matrix(cal_matrix).set_index("customer_id")
    holdout = summary_data_from_transaction_matrix(holdout_matrix).set_index("customer_id")
    full = summary_data_from_transaction_matrix(full_matrix).set_index("customer_id")

    customers_df = pd.concat(
        [cal.add_suffix("_cal"), holdout.add_suffix("_holdout"), full], axis=1
    ).reset_index()

    logger.info(
        f"Summarized {len(customers_df)} customers over "
        f"{len(calibration_periods)} calibration and {len(holdout_periods)} holdout periods"
    )
    return customers_df


def validate_summary(summary, frequency_col="frequency", recency_col="recency", T_col="T"):
    """Check the recency/frequency invariants of a customer summary."""
    x = summary[frequency_col]
    t_x = summary[recency_col]
    T = summary[T_col]

    violations = (
        (x < 0)
        | (x > T)
        | (t_x > T)
        | ((x == 0) != (t_x == 0))
        | (x > t_x)
    )
    if violations.any():
        raise DataValidationError(
            f"{int(violations.sum())} customer summaries violate 0 <= x <= tx <= T "
            f"with x == 0 <=> tx == 0"
        )


def frequency_summary(summary, T=None, frequency_col="frequency"):
    """
    Count customers per frequency bucket.

    Buckets run from 0 to `T` (defaults to the largest observed frequency);
    empty buckets are reported as 0. Frequencies outside 0..T raise
    `DataValidationError`.
    """
    if T is None:
        T = int(summary[frequency_col].max())
    out_of_range = (summary[frequency_col] < 0) | (summary[frequency_col] > T)
    if out_of_range.any():
        raise DataValidationError(
            f"{int(out_of_range.sum())} customers have {frequency_col} outside 0..{T}"
        )
    counts = (
        summary[frequency_col]
        .value_counts()
        .reindex(range(T + 1), fill_value=0)
        .rename("customers")
    )
    counts.index.name = frequency_col
    return counts


def compress_summary(summary, columns=("frequency", "recency", "T")):
    """
    Collapse identical customer histories into one row with a `customers` count.
    """
    return (
        summary.groupby(list(columns), sort=True)
        .size()
        .rename("customers")
        .reset_index()
    )


def compare_frequency_distributions(actual_counts, expected_probabilities):
    """
    Put observed and model-expected customers per frequency bucket side by side.

    Parameters
    ----------
    actual_counts: pd.Series
        customers per bucket, as returned by `frequency_summary`.
    expected_probabilities: array-like
        model probability of each bucket, aligned with `actual_counts`.

    Returns
    -------
    pd.DataFrame
        `actual`, `expected` and `difference` per bucket.
    """
    expected_probabilities = np.asarray(expected_probabilities, dtype=float)
    if expected_probabilities.shape != (len(actual_counts),):
        raise ValueError(
            f"Expected {len(actual_counts)} probabilities, got shape {expected_probabilities.shape}"
        )

    n_customers = actual_counts.sum()
    comparison = pd.DataFrame(
        {
            "actual": actual_counts.to_numpy(),
            "expected": expected_probabilities * n_customers,
        },
        index=actual_counts.index,
    )
    comparison["difference"] = comparison["actual"] - comparison["expected"]
    return comparison
