"""End-to-end run: load -> filter -> derive -> aggregate -> fit -> counterfactuals."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import pandas as pd

from .aggregate import MonthlySummary, aggregate_monthly
from .arima import ArimaFit, arima_counterfactual, fit_arima
from .config import StudyConfig
from .features import prepare_records
from .gee import GeeFit, fit_gee, gee_counterfactual
from .schema import load_records
from .segmented import SegmentedFit, fit_segmented_ols, naive_prepost_comparison, segmented_counterfactual

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class AnalysisResults:
    config: StudyConfig
    records: pd.DataFrame
    summary: MonthlySummary
    arima: dict[str, ArimaFit] = field(default_factory=dict)
    arima_cf: dict[str, pd.DataFrame] = field(default_factory=dict)
    gee: dict[str, GeeFit] = field(default_factory=dict)
    gee_cf: dict[str, pd.DataFrame] = field(default_factory=dict)
    segmented: Optional[SegmentedFit] = None
    segmented_cf: Optional[pd.DataFrame] = None
    naive: dict[str, dict] = field(default_factory=dict)

    @property
    def unconverged(self) -> list[str]:
        fits = {**{f"arima:{k}": v for k, v in self.arima.items()}, **{f"gee:{k}": v for k, v in self.gee.items()}}
        return [name for name, fit in fits.items() if not fit.converged]


def run_models(
    summary: MonthlySummary,
    config: StudyConfig,
    *,
    intervention: str = "primary",
    strict: bool = False,
) -> dict:
    """Fit every configured model on one monthly summary."""
    out: dict = {"arima": {}, "arima_cf": {}, "gee": {}, "gee_cf": {}, "naive": {}}

    for spec in config.arima:
        fit = fit_arima(summary, spec.outcome, spec.order, spec.covariates, intervention=intervention, strict=strict)
        out["arima"][spec.outcome] = fit
        out["arima_cf"][spec.outcome] = arima_counterfactual(fit, alpha=config.alpha)

    for outcome in config.gee.outcomes:
        fit = fit_gee(
            summary,
            outcome,
            config.gee.covariates,
            correlation=config.gee.correlation,
            cov_type=config.gee.cov_type,
            intervention=intervention,
            strict=strict,
        )
        out["gee"][outcome] = fit
        out["gee_cf"][outcome] = gee_counterfactual(fit)

    seg = fit_segmented_ols(
        summary, config.segmented_outcome, intervention=intervention, hac_maxlags=config.hac_maxlags
    )
    out["segmented"] = seg
    out["segmented_cf"] = segmented_counterfactual(seg, alpha=config.alpha)
    out["naive"][config.segmented_outcome] = naive_prepost_comparison(
        summary, config.segmented_outcome, intervention=intervention
    )
    return out


def run_analysis(
    config: StudyConfig,
    records: Optional[pd.DataFrame] = None,
    *,
    path: Optional[str | Path] = None,
    intervention: str = "primary",
    strict: bool = False,
) -> AnalysisResults:
    """
    Run the whole pipeline.

    records: already-loaded raw records (schema field names). If omitted they
    are read from ``path`` or, failing that, ``config.input.path``.
    intervention: "primary" uses the intervention date, "lag" the lag cutoff.
    """
    if records is None:
        path = path or config.input.path
        if path is None:
            raise ValueError("No records given and no input path configured")
        records = load_records(path, config.input)

    prepared = prepare_records(records, config.window, config.thresholds)
    summary = aggregate_monthly(prepared, config.window, gap_policy=config.gap_policy)
    models = run_models(summary, config, intervention=intervention, strict=strict)

    results = AnalysisResults(config=config, records=prepared, summary=summary, **models)
    if results.unconverged:
        logger.warning("Models that did not converge: %s", ", ".join(results.unconverged))
    return results
