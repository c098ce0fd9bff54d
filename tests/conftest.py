import matplotlib

matplotlib.use("Agg")

import numpy as np
import pandas as pd
import pytest

from ultrasound_its.aggregate import aggregate_monthly
from ultrasound_its.config import StudyWindow, default_config
from ultrasound_its.features import prepare_records
from ultrasound_its.pipeline import run_analysis


def make_records(
    window: StudyWindow,
    n_per_month: int = 80,
    seed: int = 42,
    *,
    booking_step: float = -10.0,
    interval_step: float = -10.0,
    p_scan=(0.75, 0.9),
    p_early=(0.35, 0.7),
) -> pd.DataFrame:
    """
    Synthetic delivery records with planted post-intervention changes.

    Booking gets 10 days earlier after the intervention, the booking-to-scan
    interval 10 days shorter, so the mean GA at scan drops by about 20 days.
    Scan uptake and the share of early scans both rise.
    """
    rng = np.random.default_rng(seed)
    frames = []
    for i, month in enumerate(window.months, start=1):
        n = n_per_month
        offsets = rng.integers(0, month.days_in_month, n)
        delivery = month.start_time + pd.to_timedelta(offsets, unit="D")
        post = np.asarray(delivery > window.intervention_date).astype(int)

        ga_booking = np.round(rng.normal(130 + 0.2 * i + booking_step * post, 25)).clip(42, 250)
        has_scan = rng.random(n) < np.where(post == 1, p_scan[1], p_scan[0])
        interval = np.round(rng.normal(30 + interval_step * post, 8)).clip(0, None)
        ga_scan = np.where(has_scan, ga_booking + interval, np.nan)
        early = rng.random(n) < np.where(post == 1, p_early[1], p_early[0])

        frames.append(
            pd.DataFrame(
                {
                    "delivery_date": delivery,
                    "ultrasound_date": delivery - pd.to_timedelta(280 - ga_scan, unit="D"),
                    "booking_date": delivery - pd.to_timedelta(280 - ga_booking, unit="D"),
                    "ga_scan_days": ga_scan,
                    "ga_booking_days": ga_booking,
                    "parity": rng.poisson(1.5, n).astype(float),
                    "anc_visits": rng.poisson(4 + post).astype(float),
                    "hiv_status": (rng.random(n) < 0.25).astype(float),
                    "high_risk": (rng.random(n) < 0.3).astype(float),
                    "maternal_age": np.round(rng.normal(27, 6, n)),
                    "scan_timing": np.where(has_scan, np.where(early, "Early", "Late"), None),
                }
            )
        )
    return pd.concat(frames, ignore_index=True)


@pytest.fixture(scope="session")
def config():
    return default_config()


@pytest.fixture(scope="session")
def raw_records(config):
    return make_records(config.window)


@pytest.fixture(scope="session")
def records(config, raw_records):
    return prepare_records(raw_records, config.window, config.thresholds)


@pytest.fixture(scope="session")
def summary(config, records):
    return aggregate_monthly(records, config.window)


@pytest.fixture
def small_window():
    return StudyWindow(
        start_date=pd.Timestamp("2018-01-01"),
        end_date=pd.Timestamp("2018-06-30"),
        intervention_date=pd.Timestamp("2018-03-31"),
        lag_date=pd.Timestamp("2018-04-30"),
    )


@pytest.fixture(scope="session")
def results(config, raw_records):
    return run_analysis(config, raw_records)
