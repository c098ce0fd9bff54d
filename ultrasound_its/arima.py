"""ARIMA with exogenous regressors for the continuous monthly timing series.

The regression is y_t = b0*month_index + b1*post + b2*months_since (+ covariates)
with ARIMA(p, d, q) errors. The counterfactual re-runs the fitted model with the
intervention regressors set to zero over the post-intervention months.
"""
from __future__ import annotations

import itertools
import logging
import warnings
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional, Sequence

import numpy as np
import pandas as pd
from statsmodels.stats.diagnostic import acorr_ljungbox
from statsmodels.tsa.arima.model import ARIMA

from .aggregate import MonthlySummary, intervention_terms
from .errors import DataValidationError, MissingColumnsError, ModelConvergenceError

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class ArimaFit:
    outcome: str
    order: tuple[int, int, int]
    intervention: str
    exog_names: tuple[str, ...]
    results: Any = field(repr=False)
    summary: MonthlySummary = field(repr=False)
    converged: bool = True
    fit_warnings: tuple[str, ...] = ()

    @property
    def intervention_cols(self) -> tuple[str, str]:
        return intervention_terms(self.intervention)

    @property
    def params(self) -> pd.Series:
        return self.results.params

    @property
    def bse(self) -> pd.Series:
        return self.results.bse

    @property
    def residuals(self) -> pd.Series:
        return self.results.resid

    @property
    def aic(self) -> float:
        return float(self.results.aic)

    @property
    def bic(self) -> float:
        return float(self.results.bic)

    def coef_table(self, alpha: float = 0.05) -> pd.DataFrame:
        ci = self.results.conf_int(alpha=alpha)
        return pd.DataFrame(
            {
                "coef": self.results.params,
                "std_err": self.results.bse,
                "z": self.results.tvalues,
                "p_value": self.results.pvalues,
                "ci_lower": ci.iloc[:, 0],
                "ci_upper": ci.iloc[:, 1],
            }
        )

    def ljung_box(self, lags: Optional[Sequence[int]] = None) -> pd.DataFrame:
        """Ljung-Box test on the residuals (large p-values: no leftover autocorrelation)."""
        p, d, q = self.order
        resid = np.asarray(self.results.resid)[d:]
        if lags is None:
            lags = [max(p + q + 1, min(12, len(resid) // 5))]
        return acorr_ljungbox(resid, lags=list(lags), model_df=p + q)


def arima_design(
    summary: MonthlySummary,
    outcome: str,
    covariates: Iterable[str] = (),
    intervention: str = "primary",
) -> tuple[pd.Series, pd.DataFrame]:
    """Endogenous series and regressor matrix indexed by month."""
    summary.require_complete()
    df = summary.to_frame()
    post_col, slope_col = intervention_terms(intervention)
    exog_cols = ["month_index", post_col, slope_col, *covariates]

    missing = [c for c in [outcome, *exog_cols] if c not in df.columns]
    if missing:
        raise MissingColumnsError(missing, available=list(df.columns))

    index = pd.DatetimeIndex(df["month"], freq="MS", name="month")
    y = pd.Series(df[outcome].to_numpy(dtype=float), index=index, name=outcome)
    X = pd.DataFrame(df[exog_cols].to_numpy(dtype=float), index=index, columns=exog_cols)

    if y.isna().any():
        raise DataValidationError(f"{outcome} is missing for {int(y.isna().sum())} month(s)")
    bad = [c for c in exog_cols if X[c].isna().any()]
    if bad:
        raise DataValidationError(f"Regressor(s) with missing months: {bad}")
    return y, X


def _fit_with_warnings(model: ARIMA, label: str, **fit_kwargs):
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        res = model.fit(**fit_kwargs)
    messages = tuple(dict.fromkeys(str(w.message) for w in caught))
    for msg in messages:
        logger.warning("%s: %s", label, msg)
    retvals = getattr(res, "mle_retvals", None) or {}
    converged = bool(retvals.get("converged", True))
    return res, converged, messages


def fit_arima(
    summary: MonthlySummary,
    outcome: str,
    order: Sequence[int],
    covariates: Iterable[str] = (),
    *,
    intervention: str = "primary",
    strict: bool = False,
) -> ArimaFit:
    """
    Fit a non-seasonal ARIMA with exogenous regressors by maximum likelihood.

    An intercept is fitted when d == 0. With d >= 1 the level is differenced
    away and the month_index coefficient plays the role of the drift.
    Convergence status and any warnings raised during fitting are kept on the
    returned ArimaFit; with strict=True a non-converged fit raises.
    """
    order = tuple(int(o) for o in order)
    if len(order) != 3 or min(order) < 0:
        raise ValueError(f"order must be three non-negative integers (got {order!r})")
    covariates = tuple(covariates)
    y, X = arima_design(summary, outcome, covariates, intervention)

    trend = "c" if order[1] == 0 else "n"
    model = ARIMA(y, exog=X, order=order, trend=trend)
    label = f"ARIMA{order} {outcome}"
    res, converged, messages = _fit_with_warnings(model, label)

    if not converged:
        if strict:
            raise ModelConvergenceError(f"{label} did not converge")
        logger.warning("%s: optimiser did not report convergence", label)

    post_col, slope_col = intervention_terms(intervention)
    logger.info(
        "%s: %s=%.3f (p=%.3g), %s=%.3f (p=%.3g), AIC=%.1f",
        label,
        post_col,
        res.params[post_col],
        res.pvalues[post_col],
        slope_col,
        res.params[slope_col],
        res.pvalues[slope_col],
        res.aic,
    )
    return ArimaFit(
        outcome=outcome,
        order=order,  # type: ignore[arg-type]
        intervention=intervention,
        exog_names=tuple(X.columns),
        results=res,
        summary=summary,
        converged=converged,
        fit_warnings=messages,
    )


def arima_counterfactual(fit: ArimaFit, alpha: float = 0.05) -> pd.DataFrame:
    """
    Observed vs. "as if no intervention" trajectory.

    The fitted parameters are applied to the pre-intervention months only, then
    forecast across the post-intervention months with the intervention
    regressors forced to zero (month_index and covariates unchanged).

    Returns one row per month with observed, fitted (full model),
    counterfactual and its (1 - alpha) interval, and effect = fitted - counterfactual.
    """
    y, X = arima_design(fit.summary, fit.outcome, fit.exog_names[3:], fit.intervention)
    post_col, slope_col = fit.intervention_cols
    is_post = X[post_col].to_numpy() == 1
    n_pre = int((~is_post).sum())
    if n_pre == 0 or is_post[:n_pre].any():
        raise DataValidationError("Counterfactual needs a contiguous pre-intervention period")

    X_cf = X.copy()
    X_cf[[post_col, slope_col]] = 0.0

    pre_res = fit.results.apply(y.iloc[:n_pre], exog=X_cf.iloc[:n_pre])
    in_sample = pre_res.get_prediction()
    parts_mean = [in_sample.predicted_mean]
    parts_ci = [in_sample.conf_int(alpha=alpha)]
    n_post = len(y) - n_pre
    if n_post:
        fc = pre_res.get_forecast(steps=n_post, exog=X_cf.iloc[n_pre:])
        parts_mean.append(fc.predicted_mean)
        parts_ci.append(fc.conf_int(alpha=alpha))

    cf_mean = np.concatenate([np.asarray(p) for p in parts_mean])
    cf_ci = np.vstack([np.asarray(c) for c in parts_ci])
    fitted = np.asarray(fit.results.fittedvalues)

    df = fit.summary.to_frame()
    out = pd.DataFrame(
        {
            "month": df["month"].to_numpy(),
            "month_index": df["month_index"].to_numpy(),
            "post": X[post_col].astype(int).to_numpy(),
            "observed": y.to_numpy(),
            "fitted": fitted,
            "counterfactual": cf_mean,
            "cf_lower": cf_ci[:, 0],
            "cf_upper": cf_ci[:, 1],
        }
    )
    out["effect"] = out["fitted"] - out["counterfactual"]
    out.attrs["alpha"] = alpha
    return out


def select_arima_order(
    summary: MonthlySummary,
    outcome: str,
    *,
    max_p: int = 2,
    max_d: int = 1,
    max_q: int = 2,
    criterion: str = "aic",
    intervention: str = "primary",
) -> tuple[pd.DataFrame, tuple[int, int, int]]:
    """
    Grid-search ARIMA orders on the pre-intervention months.

    The regression on month_index is kept so the errors are judged after the
    underlying trend. Returns (results_df sorted by criterion, best order).
    """
    if criterion not in ("aic", "bic"):
        raise ValueError("criterion must be one of: 'aic', 'bic'")

    y, X = arima_design(summary, outcome, (), intervention)
    post_col, _ = intervention_terms(intervention)
    n_pre = int((X[post_col] == 0).sum())
    # positional slice keeps the monthly freq on the index
    y_pre, X_pre = y.iloc[:n_pre], X[["month_index"]].iloc[:n_pre]

    rows = []
    for p, d, q in itertools.product(range(max_p + 1), range(max_d + 1), range(max_q + 1)):
        model = ARIMA(y_pre, exog=X_pre, order=(p, d, q), trend="c" if d == 0 else "n")
        label = f"ARIMA({p},{d},{q}) {outcome} [order search]"
        try:
            res, converged, messages = _fit_with_warnings(model, label)
        except (np.linalg.LinAlgError, ValueError) as exc:
            logger.warning("%s failed: %s", label, exc)
            continue
        rows.append(
            {
                "order": (p, d, q),
                "aic": float(res.aic),
                "bic": float(res.bic),
                "converged": converged,
                "n_warnings": len(messages),
            }
        )

    if not rows:
        raise ModelConvergenceError(f"No ARIMA order could be fitted for {outcome}")

    results_df = pd.DataFrame(rows).sort_values(criterion).reset_index(drop=True)
    ok = results_df[results_df["converged"]]
    best = (ok if not ok.empty else results_df).iloc[0]["order"]
    logger.info("Selected ARIMA%s for %s by %s", best, outcome, criterion.upper())
    return results_df, tuple(best)
