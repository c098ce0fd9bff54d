"""Tables and plots for human review of the fitted models."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Mapping, Optional, Sequence

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns
from statsmodels.graphics.tsaplots import plot_acf, plot_pacf

from .aggregate import MonthlySummary
from .arima import ArimaFit
from .config import DEFAULT_NA_VALUES
from .gee import GeeFit
from .segmented import SegmentedFit

logger = logging.getLogger(__name__)

OUTCOME_LABELS = {
    "mean_ga_scan": "Mean gestational age at scan (days)",
    "mean_ga_booking": "Mean gestational age at booking (days)",
    "mean_booking_scan_interval": "Mean booking-to-scan interval (days)",
    "early_scan_rate": "Early scan rate",
    "any_scan_rate": "Any scan rate",
    "early_booking_rate": "Early booking rate",
    "anc4_rate": "4+ antenatal visits rate",
}


def label_for(outcome: str) -> str:
    return OUTCOME_LABELS.get(outcome, outcome)


# --- Data overview ---

def col_profile(
    df: pd.DataFrame,
    max_unique: int = 50,
    na_values: Sequence[str] = DEFAULT_NA_VALUES,
) -> pd.DataFrame:
    """
    One row per column: dtype, missingness, cardinality and a few examples.

    ``n_sentinel`` counts text values that are missing-value codes
    (``na_values``, compared after stripping whitespace). It is only non-zero
    on a frame read as raw strings, before ``load_records`` has blanked them.
    Date columns also report their range so records outside the study window
    stand out.
    """
    codes = set(na_values)
    out = []
    for c in df.columns:
        s = df[c]
        n_unique = int(s.nunique(dropna=True))
        if pd.api.types.is_object_dtype(s) or pd.api.types.is_string_dtype(s):
            n_sentinel = int(s.dropna().astype(str).str.strip().isin(codes).sum())
        else:
            n_sentinel = 0
        is_date = pd.api.types.is_datetime64_any_dtype(s)
        out.append(
            {
                "col": c,
                "dtype": str(s.dtype),
                "n": int(s.shape[0]),
                "n_missing": int(s.isna().sum()),
                "missing_pct": round(float(s.isna().mean() * 100), 2),
                "n_sentinel": n_sentinel,
                "n_unique": n_unique,
                "min": s.min() if is_date else None,
                "max": s.max() if is_date else None,
                "example_values": s.dropna().unique()[:5].tolist() if n_unique <= max_unique else [],
            }
        )
    return pd.DataFrame(out).sort_values(["missing_pct", "n_unique"], ascending=[False, False])


def missingness_table(df: pd.DataFrame, group: Optional[str] = None) -> pd.DataFrame:
    """Percent missing per column, optionally split by a grouping column (e.g. post)."""
    cols = [c for c in df.columns if c != group and df[c].isna().any()]
    if not cols:
        return pd.DataFrame(columns=["column", "missing_pct"])
    if group is None:
        miss = (df[cols].isna().mean() * 100).sort_values(ascending=False)
        return miss.rename_axis("column").reset_index(name="missing_pct")

    records = []
    for g, gdf in df.groupby(group):
        for col, pct in (gdf[cols].isna().mean() * 100).items():
            records.append({group: g, "column": col, "missing_pct": float(pct)})
    return pd.DataFrame(records)


def describe_periods(records: pd.DataFrame, period_col: str = "post") -> pd.DataFrame:
    """Record-level descriptive statistics before (0) and after (1) the intervention."""
    aggs = {
        "n": ("delivery_date", "size"),
        "ga_scan_days_mean": ("ga_scan_days", "mean"),
        "ga_scan_days_median": ("ga_scan_days", "median"),
        "ga_booking_days_mean": ("ga_booking_days", "mean"),
        "ga_booking_days_median": ("ga_booking_days", "median"),
        "booking_scan_interval_mean": ("booking_scan_interval", "mean"),
        "any_scan_pct": ("any_scan", "mean"),
        "early_scan_pct": ("early_scan", "mean"),
        "early_booking_pct": ("early_booking", "mean"),
        "anc4_pct": ("anc4", "mean"),
        "primigravida_pct": ("primigravida", "mean"),
        "hiv_pct": ("hiv_positive", "mean"),
        "high_risk_pct": ("high_risk", "mean"),
    }
    if "maternal_age" in records.columns:
        aggs["maternal_age_mean"] = ("maternal_age", "mean")
    aggs = {k: v for k, v in aggs.items() if v[0] in records.columns}

    table = records.groupby(period_col).agg(**aggs)
    pct_cols = [c for c in table.columns if c.endswith("_pct")]
    table[pct_cols] = (table[pct_cols] * 100).round(1)
    return table.T


# --- Model tables ---

def intervention_effects_table(fits: Mapping[str, object], alpha: float = 0.05) -> pd.DataFrame:
    """
    One row per (model, intervention term) with estimate, SE, statistic and p-value.

    For GEE fits the odds ratio is added alongside the logit coefficient.
    """
    rows = []
    for name, fit in fits.items():
        table = fit.coef_table(alpha=alpha)
        stat_col = "t" if "t" in table.columns else "z"
        for term in fit.intervention_cols:
            row = {
                "model": name,
                "outcome": fit.outcome,
                "term": term,
                "coef": table.loc[term, "coef"],
                "std_err": table.loc[term, "std_err"],
                "statistic": table.loc[term, stat_col],
                "p_value": table.loc[term, "p_value"],
            }
            if "odds_ratio" in table.columns:
                row["odds_ratio"] = table.loc[term, "odds_ratio"]
            rows.append(row)
    return pd.DataFrame(rows)


def print_model_summary(fit, alpha: float = 0.05) -> None:
    print(f"\n{type(fit).__name__}: {fit.outcome} ({fit.intervention} intervention)")
    print("-" * 60)
    if isinstance(fit, ArimaFit):
        print(f"Order: ARIMA{fit.order}   AIC={fit.aic:.1f}   BIC={fit.bic:.1f}")
    elif isinstance(fit, GeeFit):
        print(f"Working correlation: {fit.correlation} (dep param {fit.dep_params:.3f}); SEs: {fit.cov_type}")
    elif isinstance(fit, SegmentedFit):
        se = f"HAC (maxlags={fit.hac_maxlags})" if fit.hac_maxlags else "standard"
        print(f"Formula: {fit.formula}   SEs: {se}   Durbin-Watson={fit.durbin_watson:.2f}")

    converged = getattr(fit, "converged", True)
    if not converged:
        print("WARNING: fit did not converge; treat estimates with caution.")
    for msg in getattr(fit, "fit_warnings", ()):
        print("  warning:", msg)

    print(fit.coef_table(alpha=alpha).round(4).to_string())

    if isinstance(fit, ArimaFit):
        print("\nLjung-Box residual autocorrelation:")
        print(fit.ljung_box().round(4).to_string())


def print_naive_comparison(res: dict) -> None:
    lo, hi = res["ci"]
    print(
        f"\nNaive pre/post comparison: {res['outcome']}\n"
        f"Mean pre = {res['mean_pre']:.3f} ({res['n_pre_months']} months), "
        f"mean post = {res['mean_post']:.3f} ({res['n_post_months']} months)\n"
        f"Difference = {res['diff']:+.3f} "
        f"({int(res['ci_level'] * 100)}% bootstrap CI {lo:+.3f} to {hi:+.3f}), "
        f"Welch t = {res['t_stat']:.2f}, p = {res['p_value']:.3g}\n"
        f"CAVEAT: {res['caveat']}"
    )


# --- Plots ---

def save_fig(fig: plt.Figure, name: str, output_dir: str | Path) -> Path:
    path = Path(output_dir) / f"{name}.png"
    path.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(path, dpi=150, bbox_inches="tight")
    logger.info("Saved figure %s", path)
    return path


def _intervention_line(ax, summary: MonthlySummary) -> None:
    ax.axvline(
        summary.window.intervention_date,
        color="red",
        linestyle="--",
        label=f"Intervention: {summary.window.intervention_date.date()}",
    )


def plot_series(summary: MonthlySummary, outcome: str, *, show_lag: bool = False) -> plt.Figure:
    df = summary.to_frame()
    fig, ax = plt.subplots(figsize=(12, 5))
    sns.lineplot(data=df, x="month", y=outcome, marker="o", ax=ax)
    _intervention_line(ax, summary)
    if show_lag:
        ax.axvline(summary.window.lag_date, color="grey", linestyle=":", label="Lag cutoff")
    ax.set_title(f"Monthly {label_for(outcome).lower()}")
    ax.set_xlabel("Month of delivery")
    ax.set_ylabel(label_for(outcome))
    ax.legend()
    fig.tight_layout()
    return fig


def plot_arima_counterfactual(
    cf: pd.DataFrame,
    summary: MonthlySummary,
    outcome: str,
    *,
    skip_first: int = 1,
    alpha: Optional[float] = None,
) -> plt.Figure:
    """
    Observed series, full-model fit, and the no-intervention forecast with its
    interval from the last pre-intervention month onwards.

    alpha defaults to the level the counterfactual was computed at
    (``cf.attrs["alpha"]``) and only sets the band label.
    """
    if alpha is None:
        alpha = cf.attrs.get("alpha", 0.05)
    ci_label = f"{1 - alpha:.0%} interval"
    fig, ax = plt.subplots(figsize=(12, 6))
    ax.plot(cf["month"], cf["observed"], marker="o", alpha=0.6, color="black", label="Observed")
    fitted = cf.iloc[skip_first:]
    ax.plot(fitted["month"], fitted["fitted"], linewidth=2, label="Fitted (with intervention)")

    n_pre = int((cf["post"] == 0).sum())
    cf_part = cf.iloc[max(n_pre - 1, 0):]
    ax.plot(cf_part["month"], cf_part["counterfactual"], linestyle="--", linewidth=2, label="Counterfactual")
    ax.fill_between(cf_part["month"], cf_part["cf_lower"], cf_part["cf_upper"], alpha=0.2, label=ci_label)

    _intervention_line(ax, summary)
    ax.set_title(f"{label_for(outcome)}: observed vs. counterfactual (ARIMA)")
    ax.set_xlabel("Month of delivery")
    ax.set_ylabel(label_for(outcome))
    ax.legend()
    fig.tight_layout()
    return fig


def plot_gee_counterfactual(cf: pd.DataFrame, summary: MonthlySummary, outcome: str) -> plt.Figure:
    fig, ax = plt.subplots(figsize=(12, 6))
    sns.scatterplot(data=cf, x="month", y="observed", size="n_records", color="black", alpha=0.6, ax=ax, legend=False)
    ax.plot(cf["month"], cf["fitted"], linewidth=2, label="Predicted (with intervention)")

    post = cf[cf["post"] == 1]
    ax.plot(post["month"], post["counterfactual"], linestyle="--", linewidth=2, label="Predicted trend (no intervention)")

    _intervention_line(ax, summary)
    ax.set_ylim(0, 1)
    ax.set_title(f"{label_for(outcome)}: GEE prediction vs. counterfactual")
    ax.set_xlabel("Month of delivery")
    ax.set_ylabel(label_for(outcome))
    ax.legend()
    fig.tight_layout()
    return fig


def plot_residual_diagnostics(residuals: Sequence[float], *, title: str = "Residuals", skip_first: int = 1) -> plt.Figure:
    resid = np.asarray(residuals, dtype=float)[skip_first:]
    lags = max(1, min(12, len(resid) // 2 - 1))

    fig, axes = plt.subplots(3, 1, figsize=(10, 10))
    axes[0].plot(resid, marker="o")
    axes[0].axhline(0, color="red", linestyle="--")
    axes[0].set_title(title)
    plot_acf(resid, lags=lags, ax=axes[1])
    plot_pacf(resid, lags=lags, ax=axes[2], method="ywm")
    fig.tight_layout()
    return fig
