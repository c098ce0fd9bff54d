"""GEE models for the monthly proportions (early scan, any scan, early booking, 4+ visits).

Each month's proportion is modelled on the logit scale as

    logit(p_t) = b0 + b1*post + b2*months_since (+ covariates)

with weights equal to the month's record count, and the months treated as a
single panel of repeated observations with an AR(1) working correlation.
exp(b1) is the one-time step change in the odds at the intervention,
exp(b2) the per-month change in slope afterwards.
"""
from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass, field
from typing import Any, Iterable

import numpy as np
import pandas as pd
import statsmodels.api as sm
from scipy import stats
from statsmodels.genmod.cov_struct import Autoregressive, Exchangeable, Independence
from statsmodels.genmod.generalized_estimating_equations import GEE
from statsmodels.tools.sm_exceptions import ConvergenceWarning, IterationLimitWarning

from .aggregate import MonthlySummary, intervention_terms
from .errors import DataValidationError, MissingColumnsError, ModelConvergenceError

logger = logging.getLogger(__name__)


def make_cov_struct(name: str):
    if name == "ar1":
        return Autoregressive(grid=True)
    if name == "exchangeable":
        return Exchangeable()
    if name == "independence":
        return Independence()
    raise ValueError(f"correlation must be one of 'ar1', 'exchangeable', 'independence' (got {name!r})")


@dataclass(frozen=True, eq=False)
class GeeFit:
    outcome: str
    correlation: str
    cov_type: str
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
        return pd.Series(np.asarray(self.results.params), index=list(self.exog_names))

    @property
    def bse(self) -> pd.Series:
        se = self.results.standard_errors(cov_type=self.cov_type)
        return pd.Series(se, index=list(self.exog_names))

    @property
    def dep_params(self) -> float:
        """Estimated working-correlation parameter (AR(1) rho for 'ar1')."""
        dep = self.results.model.cov_struct.dep_params
        # Independence has no dependence parameter
        if dep is None or np.size(dep) == 0:
            return 0.0
        return float(np.atleast_1d(dep)[0])

    def coef_table(self, alpha: float = 0.05) -> pd.DataFrame:
        """
        Coefficients on the logit scale plus their exponentiated form.

        Standard errors come from the configured covariance type ("naive" is
        the model-based variance, "robust" the sandwich estimator).
        """
        params, se = self.params, self.bse
        z = params / se
        p = 2 * stats.norm.sf(np.abs(z))
        crit = stats.norm.ppf(1 - alpha / 2)
        lo, hi = params - crit * se, params + crit * se
        return pd.DataFrame(
            {
                "coef": params,
                "std_err": se,
                "z": z,
                "p_value": p,
                "odds_ratio": np.exp(params),
                "or_ci_lower": np.exp(lo),
                "or_ci_upper": np.exp(hi),
            }
        )

    def odds_ratio(self, term: str) -> float:
        return float(np.exp(self.params[term]))


def gee_design(
    summary: MonthlySummary,
    outcome: str,
    covariates: Iterable[str] = (),
    intervention: str = "primary",
) -> tuple[pd.Series, pd.DataFrame, pd.Series, pd.Series]:
    """Outcome rate, design matrix (with const), weights and time for the GEE."""
    summary.require_complete()
    df = summary.to_frame()
    post_col, slope_col = intervention_terms(intervention)
    cols = [post_col, slope_col, *covariates]

    missing = [c for c in [outcome, "n_records", *cols] if c not in df.columns]
    if missing:
        raise MissingColumnsError(missing, available=list(df.columns))

    y = df[outcome].astype(float)
    if y.isna().any():
        raise DataValidationError(f"{outcome} is undefined for {int(y.isna().sum())} month(s)")
    if not y.between(0, 1).all():
        raise DataValidationError(f"{outcome} must be a proportion in [0, 1]")

    X = sm.add_constant(df[cols].astype(float), has_constant="add")
    bad = [c for c in cols if X[c].isna().any()]
    if bad:
        raise DataValidationError(f"Regressor(s) with missing months: {bad}")

    return y, X, df["n_records"].astype(float), df["month_index"].astype(float)


def fit_gee(
    summary: MonthlySummary,
    outcome: str,
    covariates: Iterable[str] = (),
    *,
    correlation: str = "ar1",
    cov_type: str = "naive",
    intervention: str = "primary",
    maxiter: int = 100,
    strict: bool = False,
) -> GeeFit:
    """
    Fit a weighted binomial GEE for a monthly proportion.

    statsmodels refuses cov_type="naive" together with weights at fit time, so
    the model is always fitted with the robust sandwich and the requested
    covariance is selected when building the coefficient table.
    """
    if cov_type not in ("naive", "robust", "bias_reduced"):
        raise ValueError(f"cov_type must be 'naive', 'robust' or 'bias_reduced' (got {cov_type!r})")
    covariates = tuple(covariates)
    y, X, weights, time = gee_design(summary, outcome, covariates, intervention)

    model = GEE(
        y,
        X,
        groups=np.ones(len(y)),
        time=time.to_numpy(),
        family=sm.families.Binomial(),
        cov_struct=make_cov_struct(correlation),
        weights=weights.to_numpy(),
    )

    label = f"GEE[{correlation}] {outcome}"
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        res = model.fit(maxiter=maxiter, cov_type="bias_reduced" if cov_type == "bias_reduced" else "robust")
    messages = tuple(dict.fromkeys(str(w.message) for w in caught))
    converged = res is not None and not any(
        issubclass(w.category, (ConvergenceWarning, IterationLimitWarning)) for w in caught
    )
    for msg in messages:
        logger.warning("%s: %s", label, msg)

    if res is None:
        raise ModelConvergenceError(f"{label}: statsmodels could not estimate the GEE parameters")
    if not converged:
        if strict:
            raise ModelConvergenceError(f"{label} did not converge")
        logger.warning("%s: fit did not converge; estimates may be unreliable", label)

    fit = GeeFit(
        outcome=outcome,
        correlation=correlation,
        cov_type=cov_type,
        intervention=intervention,
        exog_names=tuple(X.columns),
        results=res,
        summary=summary,
        converged=converged,
        fit_warnings=messages,
    )
    post_col, slope_col = intervention_terms(intervention)
    logger.info(
        "%s: OR(%s)=%.3f, OR(%s)=%.3f, rho=%.3f",
        label,
        post_col,
        fit.odds_ratio(post_col),
        slope_col,
        fit.odds_ratio(slope_col),
        fit.dep_params,
    )
    return fit


def gee_counterfactual(fit: GeeFit) -> pd.DataFrame:
    """
    Observed rate, fitted rate (with the intervention effect) and the
    counterfactual rate re-scored with post and months_since set to zero.
    """
    y, X, weights, _ = gee_design(fit.summary, fit.outcome, fit.exog_names[3:], fit.intervention)
    post_col, slope_col = fit.intervention_cols

    X_cf = X.copy()
    X_cf[[post_col, slope_col]] = 0.0
    params = np.asarray(fit.results.params)

    family = fit.results.model.family
    fitted = family.link.inverse(X.to_numpy() @ params)
    counterfactual = family.link.inverse(X_cf.to_numpy() @ params)

    df = fit.summary.to_frame()
    out = pd.DataFrame(
        {
            "month": df["month"].to_numpy(),
            "month_index": df["month_index"].to_numpy(),
            "post": X[post_col].astype(int).to_numpy(),
            "n_records": weights.astype(int).to_numpy(),
            "observed": y.to_numpy(),
            "fitted": fitted,
            "counterfactual": counterfactual,
        }
    )
    out["effect"] = out["fitted"] - out["counterfactual"]
    return out
