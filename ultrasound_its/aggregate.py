"""Monthly aggregation of feature-augmented records.

The monthly summary is the unit every model is fitted on: one row per calendar
month of the study window, in calendar order.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field

import numpy as np
import pandas as pd

from .config import StudyWindow
from .errors import EmptyMonthError, MissingColumnsError

logger = logging.getLogger(__name__)

DESIGN_COLUMNS = ("post", "months_since", "post_lag", "months_since_lag")
RATE_COUNTS = {
    "any_scan_rate": "n_any_scan",
    "early_scan_rate": "n_early_scan",
    "early_booking_rate": "n_early_booking",
    "anc4_rate": "n_anc4",
}
INTERVENTION_TERMS = {
    "primary": ("post", "months_since"),
    "lag": ("post_lag", "months_since_lag"),
}


def intervention_terms(intervention: str) -> tuple[str, str]:
    try:
        return INTERVENTION_TERMS[intervention]
    except KeyError:
        raise ValueError(
            f"intervention must be one of {sorted(INTERVENTION_TERMS)} (got {intervention!r})"
        ) from None


@dataclass(frozen=True, eq=False)
class MonthlySummary:
    """Immutable monthly aggregate. Use :meth:`to_frame` for a working copy."""

    _table: pd.DataFrame = field(repr=False)
    window: StudyWindow
    n_total: int

    def __post_init__(self):
        object.__setattr__(self, "_table", self._table.copy())

    def to_frame(self) -> pd.DataFrame:
        return self._table.copy()

    def __len__(self) -> int:
        return len(self._table)

    @property
    def has_gaps(self) -> bool:
        return not bool(self._table["has_data"].all())

    @property
    def gap_months(self) -> list[str]:
        gaps = self._table.loc[~self._table["has_data"], "month"]
        return [m.strftime("%Y-%m") for m in gaps]

    def n_pre(self, intervention: str = "primary") -> int:
        """Number of months before the (primary or lag) intervention."""
        post_col, _ = intervention_terms(intervention)
        return int((self._table[post_col] == 0).sum())

    def outcome(self, name: str) -> pd.Series:
        if name not in self._table.columns:
            raise MissingColumnsError([name], available=list(self._table.columns))
        return self._table.set_index("month")[name].copy()

    def pre(self, intervention: str = "primary") -> pd.DataFrame:
        post_col, _ = intervention_terms(intervention)
        return self._table.loc[self._table[post_col] == 0].copy()

    def post(self, intervention: str = "primary") -> pd.DataFrame:
        post_col, _ = intervention_terms(intervention)
        return self._table.loc[self._table[post_col] == 1].copy()

    def require_complete(self) -> None:
        if self.has_gaps:
            raise EmptyMonthError(self.gap_months)


def calendar_frame(window: StudyWindow) -> pd.DataFrame:
    """One row per month in the window with design columns computed from the calendar."""
    months = window.months
    cal = pd.DataFrame({"month": months.to_timestamp(), "month_index": np.arange(1, len(months) + 1)})
    month_end = months.to_timestamp(how="end").normalize()
    ordinal = months.year * 12 + months.month
    im, lm = window.intervention_month, window.lag_month

    cal["post"] = (month_end > window.intervention_date).astype(int)
    cal["months_since"] = np.where(cal["post"] == 1, np.maximum(0, ordinal - (im.year * 12 + im.month)), 0)
    cal["post_lag"] = (month_end > window.lag_date).astype(int)
    cal["months_since_lag"] = np.where(
        cal["post_lag"] == 1, np.maximum(0, ordinal - (lm.year * 12 + lm.month)), 0
    )
    return cal


def aggregate_monthly(
    records: pd.DataFrame,
    window: StudyWindow,
    *,
    gap_policy: str = "error",
) -> MonthlySummary:
    """
    Collapse feature-augmented records to one row per month of the study window.

    Means ignore missing values; rates are successes / records in the month.
    Design columns (post, months_since, ...) are the monthly maxima.

    gap_policy:
      - "error": raise EmptyMonthError if any month has no records
      - "mark": keep empty months as rows with n_records=0, NaN measures and
        has_data=False
    """
    if gap_policy not in ("error", "mark"):
        raise ValueError(f"gap_policy must be 'error' or 'mark' (got {gap_policy!r})")

    needed = ["month_index", "ga_scan_days", "ga_booking_days", "booking_scan_interval",
              "any_scan", "early_scan", "early_booking", "anc4",
              "primigravida", "hiv_positive", "high_risk", *DESIGN_COLUMNS]
    missing = [c for c in needed if c not in records.columns]
    if missing:
        raise MissingColumnsError(missing, available=list(records.columns))

    cal = calendar_frame(window)
    out_of_window = ~records["month_index"].between(1, len(cal))
    if out_of_window.any():
        raise ValueError(
            f"{int(out_of_window.sum())} record(s) fall outside the study window; "
            "filter the study window before aggregating."
        )

    agg = records.groupby("month_index").agg(
        n_records=("post", "size"),
        mean_ga_scan=("ga_scan_days", "mean"),
        mean_ga_booking=("ga_booking_days", "mean"),
        mean_booking_scan_interval=("booking_scan_interval", "mean"),
        n_any_scan=("any_scan", "sum"),
        n_early_scan=("early_scan", "sum"),
        n_early_booking=("early_booking", "sum"),
        n_anc4=("anc4", "sum"),
        primigravida_rate=("primigravida", "mean"),
        hiv_rate=("hiv_positive", "mean"),
        high_risk_rate=("high_risk", "mean"),
        **{c: (c, "max") for c in DESIGN_COLUMNS},
    )
    if "maternal_age" in records.columns:
        agg["mean_age"] = records.groupby("month_index")["maternal_age"].mean()
    else:
        agg["mean_age"] = np.nan

    table = cal.drop(columns=list(DESIGN_COLUMNS)).merge(
        agg.drop(columns=list(DESIGN_COLUMNS)).reset_index(), on="month_index", how="left"
    ).reset_index(drop=True)
    table["has_data"] = table["n_records"].notna()

    # Design columns: observed maxima where there is data, calendar values for gaps
    observed = agg[list(DESIGN_COLUMNS)].reindex(table["month_index"]).reset_index(drop=True)
    for c in DESIGN_COLUMNS:
        table[c] = observed[c].fillna(cal[c]).astype(int).to_numpy()

    count_cols = ["n_records", *RATE_COUNTS.values()]
    table[count_cols] = table[count_cols].fillna(0).astype(int)
    for rate, count in RATE_COUNTS.items():
        table[rate] = np.where(table["n_records"] > 0, table[count] / table["n_records"].clip(lower=1), np.nan)

    if table["n_records"].sum() != len(records):
        raise ValueError("Monthly record counts do not sum to the record total (unexpected).")

    summary = MonthlySummary(table.reset_index(drop=True), window=window, n_total=len(records))
    if summary.has_gaps:
        if gap_policy == "error":
            raise EmptyMonthError(summary.gap_months)
        logger.warning("Monthly summary has %d empty month(s): %s", len(summary.gap_months), summary.gap_months)

    logger.info(
        "Aggregated %d record(s) into %d month(s) (%d before the intervention)",
        len(records),
        len(summary),
        summary.n_pre(),
    )
    return summary
