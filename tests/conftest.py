"""
Pytest configuration and fixtures for the CLV analysis tests
"""

import numpy as np
import pandas as pd
import pytest

# Published BG/BB estimates for a yearly donation cohort, used as fixed parameters
BGBB_PARAMS = (1.204, 0.750, 0.657, 2.783)


@pytest.fixture
def bgbb_params():
    """Fixed (alpha, beta, gamma, delta)."""
    return BGBB_PARAMS


@pytest.fixture
def transactions_cal():
    """Calibration rows: customer 1 active 2010-2012, 2 every year, 3 only in 2014."""
    return pd.DataFrame(
        {
            "customer_id": [1, 1, 1, 2, 2, 2, 2, 2, 3],
            "period": [2010, 2011, 2012, 2010, 2011, 2012, 2013, 2014, 2014],
        }
    )


@pytest.fixture
def transactions_holdout():
    """Holdout rows: customer 2 in 2015 and 2017, customer 4 (new to the files) in 2016."""
    return pd.DataFrame(
        {
            "customer_id": [2, 2, 4],
            "period": [2015, 2017, 2016],
        }
    )


def _histories_from_counts(counts):
    """Expand {(x, t_x): customers} into a summary DataFrame over T = 5."""
    rows = []
    for (x, t_x), n in counts.items():
        rows.extend([(x, t_x)] * n)
    frame = pd.DataFrame(rows, columns=["frequency", "recency"])
    frame.insert(0, "customer_id", np.arange(len(frame)))
    frame["T"] = 5
    return frame


@pytest.fixture
def frequency_only_summary():
    """Calibration frequencies {0: 5000, 1: 800, 2: 300, 3: 100, 4: 50, 5: 20} over T = 5."""
    counts = {0: 5000, 1: 800, 2: 300, 3: 100, 4: 50, 5: 20}
    frequency = np.repeat(list(counts), list(counts.values()))
    return pd.DataFrame(
        {
            "customer_id": np.arange(len(frequency)),
            "frequency": frequency,
            "T": 5,
        }
    )


@pytest.fixture(scope="session")
def bgbb_summary():
    """Calibration histories with the same frequencies, spread over recencies."""
    counts = {
        (0, 0): 5000,
        (1, 1): 350,
        (1, 2): 200,
        (1, 3): 120,
        (1, 4): 80,
        (1, 5): 50,
        (2, 2): 40,
        (2, 3): 50,
        (2, 4): 70,
        (2, 5): 140,
        (3, 3): 10,
        (3, 4): 20,
        (3, 5): 70,
        (4, 4): 5,
        (4, 5): 45,
        (5, 5): 20,
    }
    return _histories_from_counts(counts)


@pytest.fixture
def write_transactions():
    """Return a writer of whitespace-delimited transaction files with a header."""

    def _write(path, rows, header=("id", "year")):
        lines = ["  ".join(header)] + [f"{customer}   {period}" for customer, period in rows]
        path.write_text("\n".join(lines) + "\n")
        return path

    return _write
