"""Segmented linear regression and the naive pre/post comparison.

The booking-to-ultrasound interval showed a stable pre-intervention mean, so it
is modelled with ordinary least squares on month_index + post + months_since
rather than with ARIMA.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable

import numpy as np
import pandas as pd
import statsmodels.formula.api as smf
from scipy import stats
from sklearn.utils import resample
from statsmodels.stats.stattools import durbin_watson

from .aggregate import MonthlySummary, intervention_terms
from .errors import DataValidationError, MissingColumnsError

logger = logging.getLogger(__name__)

NAIVE_CAVEAT = (
    "The naive pre/post difference in monthly means ignores the secular time trend "
    "and serial correlation between months. It is not a valid estimate of the "
    "intervention effect and is reported for completeness only."
)


@dataclass(frozen=True, eq=False)
class SegmentedFit:
    outcome: str
    intervention: str
    formula: str
    results: Any = field(repr=False)
    summary: MonthlySummary = field(repr=False)
    hac_maxlags: int = 0

    @property
    def intervention_cols(self) -> tuple[str, str]:
        return intervention_terms(self.intervention)

    @property
    def durbin_watson(self) -> float:
        return float(durbin_watson(self.results.resid))

    def coef_table(self, alpha: float = 0.05) -> pd.DataFrame:
        ci = self.results.conf_int(alpha=alpha)
        return pd.DataFrame(
            {
                "coef": self.results.params,
                "std_err": self.results.bse,
                "t": self.results.tvalues,
                "p_value": self.results.pvalues,
                "ci_lower": ci.iloc[:, 0],
                "ci_upper": ci.iloc[:, 1],
            }
        )


def fit_segmented_ols(
    summary: MonthlySummary,
    outcome: str = "mean_booking_scan_interval",
    covariates: Iterable[str] = (),
    *,
    intervention: str = "primary",
    hac_maxlags: int = 0,
) -> SegmentedFit:
    """
    OLS of a monthly outcome on month_index, post and months_since.

    hac_maxlags > 0 switches to Newey-West standard errors with that many lags.
    """
    summary.require_complete()
    df = summary.to_frame()
    post_col, slope_col = intervention_terms(intervention)
    covariates = tuple(covariates)

    missing = [c for c in [outcome, "month_index", post_col, slope_col, *covariates] if c not in df.columns]
    if missing:
        raise MissingColumnsError(missing, available=list(df.columns))
    if df[outcome].isna().any():
        raise DataValidationError(f"{outcome} is missing for {int(df[outcome].isna().sum())} month(s)")

    rhs = " + ".join(["month_index", post_col, slope_col, *covariates])
    formula = f"{outcome} ~ {rhs}"
    if hac_maxlags > 0:
        results = smf.ols(formula, data=df).fit(cov_type="HAC", cov_kwds={"maxlags": hac_maxlags})
    else:
        results = smf.ols(formula, data=df).fit()

    fit = SegmentedFit(
        outcome=outcome,
        intervention=intervention,
        formula=formula,
        results=results,
        summary=summary,
        hac_maxlags=hac_maxlags,
    )
    logger.info(
        "Segmented OLS %s: level change=%.3f (p=%.3g), slope change=%.3f (p=%.3g), DW=%.2f",
        outcome,
        results.params[post_col],
        results.pvalues[post_col],
        results.params[slope_col],
        results.pvalues[slope_col],
        fit.durbin_watson,
    )
    return fit


def segmented_counterfactual(fit: SegmentedFit, alpha: float = 0.05) -> pd.DataFrame:
    """Fitted values and the no-intervention prediction (post, months_since = 0) with its CI."""
    df = fit.summary.to_frame()
    post_col, slope_col = fit.intervention_cols

    df_cf = df.copy()
    df_cf[[post_col, slope_col]] = 0
    pred = fit.results.get_prediction(df_cf).summary_frame(alpha=alpha)

    out = pd.DataFrame(
        {
            "month": df["month"].to_numpy(),
            "month_index": df["month_index"].to_numpy(),
            "post": df[post_col].to_numpy(),
            "observed": df[fit.outcome].to_numpy(),
            "fitted": np.asarray(fit.results.predict(df)),
            "counterfactual": pred["mean"].to_numpy(),
            "cf_lower": pred["mean_ci_lower"].to_numpy(),
            "cf_upper": pred["mean_ci_upper"].to_numpy(),
        }
    )
    out["effect"] = out["fitted"] - out["counterfactual"]
    return out


def naive_prepost_comparison(
    summary: MonthlySummary,
    outcome: str,
    *,
    intervention: str = "primary",
    n_boot: int = 2_000,
    ci: float = 0.95,
    seed: int = 42,
) -> dict:
    """
    Difference of monthly means after vs. before the intervention.

    Welch t-test plus a bootstrap CI for the difference. Kept only as a
    documented caveat: the result always carries NAIVE_CAVEAT.
    """
    x = summary.pre(intervention)[outcome].dropna().to_numpy(dtype=float)
    y = summary.post(intervention)[outcome].dropna().to_numpy(dtype=float)
    if len(x) < 2 or len(y) < 2:
        raise ValueError("Need at least 2 months on each side of the intervention.")

    welch = stats.ttest_ind(y, x, equal_var=False)

    rs = np.random.RandomState(seed)
    deltas = np.empty(n_boot)
    for b in range(n_boot):
        xb = resample(x, replace=True, n_samples=len(x), random_state=rs)
        yb = resample(y, replace=True, n_samples=len(y), random_state=rs)
        deltas[b] = yb.mean() - xb.mean()

    alpha = 1 - ci
    lo = np.quantile(deltas, alpha / 2)
    hi = np.quantile(deltas, 1 - alpha / 2)

    logger.warning("%s: %s", outcome, NAIVE_CAVEAT)
    return {
        "outcome": outcome,
        "mean_pre": float(x.mean()),
        "mean_post": float(y.mean()),
        "diff": float(y.mean() - x.mean()),
        "t_stat": float(welch.statistic),
        "p_value": float(welch.pvalue),
        "ci_level": ci,
        "ci": (float(lo), float(hi)),
        "n_pre_months": int(len(x)),
        "n_post_months": int(len(y)),
        "caveat": NAIVE_CAVEAT,
    }
