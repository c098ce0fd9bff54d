import matplotlib.pyplot as plt
import pandas as pd
import pytest

from ultrasound_its.arima import arima_counterfactual
from ultrasound_its.reporting import (
    col_profile,
    describe_periods,
    intervention_effects_table,
    label_for,
    missingness_table,
    plot_arima_counterfactual,
    plot_gee_counterfactual,
    plot_residual_diagnostics,
    plot_series,
    print_model_summary,
    print_naive_comparison,
    save_fig,
)


@pytest.fixture(autouse=True)
def close_figures():
    yield
    plt.close("all")


def test_effects_table(results):
    fits = {
        "ARIMA": results.arima["mean_ga_scan"],
        "GEE": results.gee["early_scan_rate"],
        "OLS": results.segmented,
    }
    table = intervention_effects_table(fits)
    assert len(table) == 6
    assert table["term"].tolist() == ["post", "months_since"] * 3
    assert table["p_value"].between(0, 1).all()
    gee_rows = table[table["model"] == "GEE"]
    assert gee_rows["odds_ratio"].notna().all()
    assert table.loc[table["model"] == "ARIMA", "odds_ratio"].isna().all()


def test_describe_periods(records):
    table = describe_periods(records)
    assert list(table.columns) == [0, 1]
    assert table.loc["n"].sum() == len(records)
    assert 0 <= table.loc["early_scan_pct", 0] <= 100
    assert table.loc["early_scan_pct", 1] > table.loc["early_scan_pct", 0]
    assert "maternal_age_mean" in table.index


def test_col_profile(raw_records):
    profile = col_profile(raw_records)
    assert set(profile["col"]) == set(raw_records.columns)
    top = profile.iloc[0]
    assert top["missing_pct"] == profile["missing_pct"].max()


def test_col_profile_counts_missing_codes_and_date_range():
    raw = pd.DataFrame(
        {
            "ga_scan_days": ["150", "Unknown", " NA ", None],
            "scan_timing": ["Early", "No Ultrasound", "Late", "Early"],
            "delivery_date": pd.to_datetime(["2018-03-05", "2017-11-20", None, "2019-01-31"]),
        }
    )
    profile = col_profile(raw).set_index("col")
    assert profile.loc["ga_scan_days", "n_sentinel"] == 2
    assert profile.loc["ga_scan_days", "n_missing"] == 1
    assert profile.loc["scan_timing", "n_sentinel"] == 1
    assert profile.loc["delivery_date", "n_sentinel"] == 0
    assert profile.loc["delivery_date", "min"] == pd.Timestamp("2017-11-20")
    assert profile.loc["delivery_date", "max"] == pd.Timestamp("2019-01-31")
    assert pd.isna(profile.loc["ga_scan_days", "min"])

    custom = col_profile(raw, na_values=("Early",)).set_index("col")
    assert custom.loc["scan_timing", "n_sentinel"] == 2
    assert custom.loc["ga_scan_days", "n_sentinel"] == 0


def test_missingness_table(records):
    overall = missingness_table(records)
    assert "ga_scan_days" in overall["column"].tolist()
    by_period = missingness_table(records, group="post")
    assert set(by_period["post"]) == {0, 1}

    complete = pd.DataFrame({"a": [1, 2], "b": [3, 4]})
    assert missingness_table(complete).empty


def test_labels():
    assert label_for("early_scan_rate") == "Early scan rate"
    assert label_for("something_else") == "something_else"


def test_plots_return_figures(results, tmp_path):
    summary = results.summary
    figs = {
        "series": plot_series(summary, "mean_ga_scan", show_lag=True),
        "arima_cf": plot_arima_counterfactual(results.arima_cf["mean_ga_scan"], summary, "mean_ga_scan"),
        "gee_cf": plot_gee_counterfactual(results.gee_cf["early_scan_rate"], summary, "early_scan_rate"),
        "resid": plot_residual_diagnostics(results.arima["mean_ga_scan"].residuals, title="ARIMA residuals"),
    }
    for name, fig in figs.items():
        assert isinstance(fig, plt.Figure)
        path = save_fig(fig, name, tmp_path / "figures")
        assert path.exists()
        assert path.suffix == ".png"


def _legend_texts(fig):
    return [t.get_text() for t in fig.axes[0].get_legend().get_texts()]


def test_counterfactual_band_label_follows_alpha(results):
    fit = results.arima["mean_ga_scan"]
    cf = arima_counterfactual(fit, alpha=0.2)
    assert cf.attrs["alpha"] == 0.2
    assert "80% interval" in _legend_texts(plot_arima_counterfactual(cf, results.summary, "mean_ga_scan"))

    fig = plot_arima_counterfactual(cf, results.summary, "mean_ga_scan", alpha=0.1)
    labels = _legend_texts(fig)
    assert "90% interval" in labels
    assert "80% interval" not in labels

    stripped = cf.copy()
    stripped.attrs = {}
    assert "95% interval" in _legend_texts(plot_arima_counterfactual(stripped, results.summary, "mean_ga_scan"))


def test_printed_summaries(results, capsys):
    print_model_summary(results.arima["mean_ga_scan"])
    print_model_summary(results.gee["early_scan_rate"])
    print_model_summary(results.segmented)
    print_naive_comparison(results.naive["mean_booking_scan_interval"])
    out = capsys.readouterr().out
    assert "ARIMA(0, 1, 1)" in out
    assert "Ljung-Box" in out
    assert "Working correlation: ar1" in out
    assert "Durbin-Watson" in out
    assert "CAVEAT" in out
