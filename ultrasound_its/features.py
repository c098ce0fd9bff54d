"""Per-record calendar features for the interrupted time series."""
from __future__ import annotations

import logging
from typing import Optional

import numpy as np
import pandas as pd

from .config import StudyWindow, Thresholds
from .errors import MissingColumnsError

logger = logging.getLogger(__name__)

DERIVED_COLUMNS = (
    "post",
    "post_lag",
    "delivery_month",
    "scan_month",
    "month_index",
    "months_since",
    "months_since_lag",
    "primigravida",
    "hiv_positive",
    "any_scan",
    "early_scan",
    "early_booking",
    "anc4",
    "booking_scan_interval",
)


def _month_ordinal(values) -> np.ndarray:
    """Months since year 0 for a datetime Series or a Period."""
    if isinstance(values, pd.Period):
        return np.asarray(values.year * 12 + values.month - 1)
    return (values.dt.year * 12 + values.dt.month - 1).to_numpy()


def filter_study_window(
    df: pd.DataFrame,
    window: StudyWindow,
    *,
    date_col: str = "delivery_date",
) -> pd.DataFrame:
    """Keep records delivered within [start_date, end_date], bounds inclusive."""
    if date_col not in df.columns:
        raise MissingColumnsError([date_col], available=list(df.columns))

    dates = df[date_col]
    keep = dates.between(window.start_date, window.end_date, inclusive="both")
    n_dropped = int((~keep).sum())
    if n_dropped:
        logger.info(
            "Excluded %d record(s) delivered outside %s to %s",
            n_dropped,
            window.start_date.date(),
            window.end_date.date(),
        )
    return df.loc[keep].reset_index(drop=True)


def derive_features(
    df: pd.DataFrame,
    window: StudyWindow,
    thresholds: Optional[Thresholds] = None,
    *,
    copy: bool = True,
) -> pd.DataFrame:
    """
    Add the interrupted-time-series design columns and binary outcome flags.

    Adds:
      - post / post_lag: 1 if delivered strictly after the intervention (lag) date
      - delivery_month / scan_month: calendar month periods
      - month_index: 1-based month count from the start of the study window
      - months_since / months_since_lag: months elapsed since the intervention
        (lag) month, 0 before it
      - primigravida, hiv_positive: 0/1 covariates, NaN when unknown
      - any_scan, early_scan, early_booking, anc4: 0/1 outcome flags
      - booking_scan_interval: days from booking to ultrasound
    """
    thresholds = thresholds or Thresholds()
    needed = [
        "delivery_date", "ultrasound_date", "booking_date",
        "ga_scan_days", "ga_booking_days", "parity", "anc_visits",
    ]
    missing = [c for c in needed if c not in df.columns]
    if missing:
        raise MissingColumnsError(missing, available=list(df.columns))

    d = df.copy() if copy else df
    delivery = d["delivery_date"]

    # --- Step and lag flags ---
    d["post"] = (delivery > window.intervention_date).astype(int)
    d["post_lag"] = (delivery > window.lag_date).astype(int)

    # --- Calendar months ---
    d["delivery_month"] = delivery.dt.to_period("M")
    d["scan_month"] = d["ultrasound_date"].dt.to_period("M")

    delivery_ord = _month_ordinal(delivery)
    d["month_index"] = delivery_ord - _month_ordinal(window.start_date.to_period("M")) + 1
    d["months_since"] = np.where(
        d["post"] == 1,
        np.maximum(0, delivery_ord - _month_ordinal(window.intervention_month)),
        0,
    )
    d["months_since_lag"] = np.where(
        d["post_lag"] == 1,
        np.maximum(0, delivery_ord - _month_ordinal(window.lag_month)),
        0,
    )

    # --- Covariates (NaN stays NaN) ---
    d["primigravida"] = np.where(d["parity"].isna(), np.nan, (d["parity"] == 0).astype(float))
    d["hiv_positive"] = d["hiv_status"] if "hiv_status" in d.columns else np.nan
    if "high_risk" not in d.columns:
        d["high_risk"] = np.nan

    # --- Outcome flags ---
    d["any_scan"] = (d["ultrasound_date"].notna() | d["ga_scan_days"].notna()).astype(int)
    if "scan_timing" in d.columns:
        d["early_scan"] = (d["scan_timing"] == "Early").fillna(False).astype(int)
    else:
        early = d["ga_scan_days"] < thresholds.early_scan_days
        d["early_scan"] = (early & (d["any_scan"] == 1)).astype(int)
    d["early_booking"] = (d["ga_booking_days"] < thresholds.early_booking_days).astype(int)
    d["anc4"] = (d["anc_visits"] >= thresholds.min_anc_visits).astype(int)

    d["booking_scan_interval"] = (d["ultrasound_date"] - d["booking_date"]).dt.days.astype(float)

    # --- Sanity checks ---
    if (d["month_index"] < 1).any():
        raise ValueError("Records delivered before start_date; filter the study window first.")
    if not d[["post", "post_lag", "early_scan", "any_scan", "early_booking", "anc4"]].isin([0, 1]).all().all():
        raise ValueError("Non-binary values in derived flags (unexpected).")

    return d


def prepare_records(
    df: pd.DataFrame,
    window: StudyWindow,
    thresholds: Optional[Thresholds] = None,
) -> pd.DataFrame:
    """Filter to the study window, then derive features."""
    filtered = filter_study_window(df, window)
    return derive_features(filtered, window, thresholds)
