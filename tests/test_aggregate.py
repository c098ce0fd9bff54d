import numpy as np
import pandas as pd
import pytest

from ultrasound_its.aggregate import aggregate_monthly, calendar_frame, intervention_terms
from ultrasound_its.config import BINARY_OUTCOMES
from ultrasound_its.errors import EmptyMonthError, MissingColumnsError
from ultrasound_its.features import prepare_records
from ultrasound_its.gee import fit_gee


def _month_of_records(month: str, n: int, **cols) -> pd.DataFrame:
    delivery = pd.date_range(month, periods=n, freq="D")
    df = pd.DataFrame(
        {
            "delivery_date": delivery,
            "ultrasound_date": delivery - pd.Timedelta(days=130),
            "booking_date": delivery - pd.Timedelta(days=150),
            "ga_scan_days": 150.0,
            "ga_booking_days": 130.0,
            "parity": 1.0,
            "anc_visits": 4.0,
            "hiv_status": 0.0,
            "high_risk": 0.0,
        }
    )
    for col, values in cols.items():
        df[col] = values
    return df


@pytest.fixture
def small_records(small_window):
    jan = _month_of_records(
        "2018-01-01",
        10,
        scan_timing=["Early"] * 6 + ["Late"] * 4,
        maternal_age=[20.0, 30.0] * 5,
    )
    rest = [
        _month_of_records(m, 5, scan_timing="Late", maternal_age=25.0)
        for m in ("2018-02-01", "2018-03-01", "2018-04-01", "2018-05-01", "2018-06-01")
    ]
    raw = pd.concat([jan, *rest], ignore_index=True)
    return prepare_records(raw, small_window)


def test_one_row_per_month_in_calendar_order(summary, config):
    df = summary.to_frame()
    assert len(summary) == 43
    assert df["month_index"].tolist() == list(range(1, 44))
    assert df["month"].is_monotonic_increasing
    assert df["month"].iloc[0] == pd.Timestamp("2017-01-01")
    assert not summary.has_gaps


def test_counts_sum_to_total(summary, records):
    df = summary.to_frame()
    assert df["n_records"].sum() == len(records) == summary.n_total


def test_rates_are_proportions(summary):
    df = summary.to_frame()
    for rate in BINARY_OUTCOMES:
        assert df[rate].between(0, 1).all(), rate
    assert (df["n_early_scan"] <= df["n_any_scan"]).all()


def test_covariate_means_within_record_range(summary, records):
    df = summary.to_frame()
    assert df["mean_age"].between(records["maternal_age"].min(), records["maternal_age"].max()).all()
    for col in ("primigravida_rate", "hiv_rate", "high_risk_rate"):
        assert df[col].between(0, 1).all(), col


def test_design_columns_follow_calendar(summary):
    df = summary.to_frame().set_index("month")
    assert df.loc[pd.Timestamp("2018-11-01"), "post"] == 0
    assert df.loc[pd.Timestamp("2018-12-01"), "post"] == 1
    assert df.loc[pd.Timestamp("2018-12-01"), "months_since"] == 0
    assert df.loc[pd.Timestamp("2019-01-01"), "months_since"] == 1
    assert df.loc[pd.Timestamp("2019-05-01"), "post_lag"] == 1
    assert df.loc[pd.Timestamp("2019-05-01"), "months_since_lag"] == 0
    assert summary.n_pre() == 23
    assert summary.n_pre("lag") == 28


def test_calendar_frame_matches_observed_design(summary, config):
    cal = calendar_frame(config.window)
    df = summary.to_frame()
    for col in ("post", "months_since", "post_lag", "months_since_lag"):
        assert cal[col].tolist() == df[col].tolist(), col


def test_early_scan_rate_is_share_of_month(small_records, small_window):
    s = aggregate_monthly(small_records, small_window)
    jan = s.to_frame().iloc[0]
    assert jan["n_records"] == 10
    assert jan["n_early_scan"] == 6
    assert jan["early_scan_rate"] == pytest.approx(0.6)
    assert jan["mean_age"] == pytest.approx(25.0)
    assert jan["mean_booking_scan_interval"] == pytest.approx(20.0)


def test_empty_month_raises_by_default(small_records, small_window):
    no_april = small_records[small_records["delivery_month"] != pd.Period("2018-04", freq="M")]
    with pytest.raises(EmptyMonthError) as info:
        aggregate_monthly(no_april, small_window)
    assert info.value.months == ["2018-04"]


def test_empty_month_can_be_marked(small_records, small_window):
    no_april = small_records[small_records["delivery_month"] != pd.Period("2018-04", freq="M")]
    s = aggregate_monthly(no_april, small_window, gap_policy="mark")
    df = s.to_frame().set_index("month")
    april = df.loc[pd.Timestamp("2018-04-01")]

    assert s.has_gaps
    assert s.gap_months == ["2018-04"]
    assert not april["has_data"]
    assert april["n_records"] == 0
    assert np.isnan(april["early_scan_rate"])
    assert np.isnan(april["mean_ga_scan"])
    # design columns for a gap come from the calendar
    assert april["post"] == 1
    assert april["months_since"] == 0
    assert len(s) == 6

    with pytest.raises(EmptyMonthError):
        s.require_complete()
    with pytest.raises(EmptyMonthError):
        fit_gee(s, "early_scan_rate")


def test_summary_is_immutable(summary):
    df = summary.to_frame()
    df.loc[:, "mean_ga_scan"] = -1.0
    assert (summary.to_frame()["mean_ga_scan"] > 0).all()
    series = summary.outcome("mean_ga_scan")
    series.iloc[0] = -1.0
    assert summary.outcome("mean_ga_scan").iloc[0] > 0
    with pytest.raises(AttributeError):
        summary.n_total = 0


def test_pre_and_post_split(summary):
    pre, post = summary.pre(), summary.post()
    assert len(pre) + len(post) == len(summary)
    assert pre["month"].max() < post["month"].min()


def test_outcome_lookup(summary):
    s = summary.outcome("early_scan_rate")
    assert s.index[0] == pd.Timestamp("2017-01-01")
    with pytest.raises(MissingColumnsError):
        summary.outcome("median_ga_scan")


def test_unknown_gap_policy(records, config):
    with pytest.raises(ValueError, match="gap_policy"):
        aggregate_monthly(records, config.window, gap_policy="drop")


def test_unfiltered_records_rejected(records, config):
    late = records.copy()
    late.loc[0, "month_index"] = 99
    with pytest.raises(ValueError, match="outside the study window"):
        aggregate_monthly(late, config.window)


def test_intervention_terms():
    assert intervention_terms("primary") == ("post", "months_since")
    assert intervention_terms("lag") == ("post_lag", "months_since_lag")
    with pytest.raises(ValueError):
        intervention_terms("other")


def test_missing_maternal_age_gives_nan_covariate(records, config):
    s = aggregate_monthly(records.drop(columns=["maternal_age"]), config.window)
    assert s.to_frame()["mean_age"].isna().all()
