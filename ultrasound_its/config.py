"""Study configuration.

All dates, thresholds and model choices used by the pipeline live here. A
config is read from TOML with :func:`load_config`; :func:`default_config`
returns the same values as the shipped ``config/study.toml``.
"""
from __future__ import annotations

import logging
import tomllib
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Mapping, Optional

import pandas as pd

from .errors import ConfigError

logger = logging.getLogger(__name__)

COVARIATES = ("mean_age", "primigravida_rate", "hiv_rate", "high_risk_rate")
CONTINUOUS_OUTCOMES = ("mean_ga_scan", "mean_ga_booking", "mean_booking_scan_interval")
BINARY_OUTCOMES = ("early_scan_rate", "any_scan_rate", "early_booking_rate", "anc4_rate")
CORRELATIONS = ("ar1", "exchangeable", "independence")
COV_TYPES = ("naive", "robust", "bias_reduced")
GAP_POLICIES = ("error", "mark")

DEFAULT_NA_VALUES = ("", "NA", "na", "Unknown", "No Ultrasound", "01/01/1900")


@dataclass(frozen=True)
class StudyWindow:
    start_date: pd.Timestamp
    end_date: pd.Timestamp
    intervention_date: pd.Timestamp
    lag_date: pd.Timestamp

    @property
    def intervention_month(self) -> pd.Period:
        # month holding the first post-intervention day
        return (self.intervention_date + pd.Timedelta(days=1)).to_period("M")

    @property
    def lag_month(self) -> pd.Period:
        return (self.lag_date + pd.Timedelta(days=1)).to_period("M")

    @property
    def months(self) -> pd.PeriodIndex:
        return pd.period_range(self.start_date, self.end_date, freq="M")


@dataclass(frozen=True)
class Thresholds:
    early_scan_days: float = 168.0  # 24 weeks
    early_booking_days: float = 140.0  # 20 weeks
    min_anc_visits: int = 4


@dataclass(frozen=True)
class ArimaSpec:
    outcome: str
    order: tuple[int, int, int]
    covariates: tuple[str, ...] = ()


@dataclass(frozen=True)
class GeeSpec:
    outcomes: tuple[str, ...] = BINARY_OUTCOMES
    correlation: str = "ar1"
    cov_type: str = "naive"
    covariates: tuple[str, ...] = ()


@dataclass(frozen=True)
class InputSpec:
    path: Optional[Path] = None
    dayfirst: bool = True
    na_values: tuple[str, ...] = DEFAULT_NA_VALUES
    columns: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class StudyConfig:
    window: StudyWindow
    thresholds: Thresholds = Thresholds()
    arima: tuple[ArimaSpec, ...] = ()
    gee: GeeSpec = GeeSpec()
    segmented_outcome: str = "mean_booking_scan_interval"
    hac_maxlags: int = 0
    input: InputSpec = InputSpec()
    gap_policy: str = "error"
    alpha: float = 0.05

    def arima_spec(self, outcome: str) -> ArimaSpec:
        for spec in self.arima:
            if spec.outcome == outcome:
                return spec
        raise ConfigError(f"No ARIMA order configured for {outcome!r}")

    def with_window(self, **kwargs) -> "StudyConfig":
        """Copy of this config with some window dates replaced (validated)."""
        window = replace(self.window, **{k: pd.Timestamp(v) for k, v in kwargs.items()})
        cfg = replace(self, window=window)
        validate_config(cfg)
        return cfg


def _timestamp(value: Any, name: str) -> pd.Timestamp:
    try:
        ts = pd.Timestamp(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{name} is not a valid date: {value!r}") from exc
    if pd.isna(ts):
        raise ConfigError(f"{name} is required")
    return ts.normalize()


def _order(value: Any, outcome: str) -> tuple[int, int, int]:
    if (
        not isinstance(value, (list, tuple))
        or len(value) != 3
        or not all(isinstance(v, int) and not isinstance(v, bool) and v >= 0 for v in value)
    ):
        raise ConfigError(
            f"ARIMA order for {outcome!r} must be three non-negative integers (got {value!r})"
        )
    return tuple(value)  # type: ignore[return-value]


def validate_config(cfg: StudyConfig) -> None:
    w = cfg.window
    if w.start_date > w.end_date:
        raise ConfigError("start_date must be on or before end_date")
    if not (w.start_date <= w.intervention_date < w.end_date):
        raise ConfigError("intervention_date must fall inside the study window")
    if w.lag_date < w.intervention_date:
        raise ConfigError("lag_date must be on or after intervention_date")
    if w.lag_date >= w.end_date:
        raise ConfigError("lag_date must fall before end_date")

    if cfg.gee.correlation not in CORRELATIONS:
        raise ConfigError(f"correlation must be one of {CORRELATIONS} (got {cfg.gee.correlation!r})")
    if cfg.gee.cov_type not in COV_TYPES:
        raise ConfigError(f"cov_type must be one of {COV_TYPES} (got {cfg.gee.cov_type!r})")
    if cfg.gap_policy not in GAP_POLICIES:
        raise ConfigError(f"gap_policy must be one of {GAP_POLICIES} (got {cfg.gap_policy!r})")
    if not 0 < cfg.alpha < 1:
        raise ConfigError("alpha must lie strictly between 0 and 1")
    if cfg.hac_maxlags < 0:
        raise ConfigError("hac_maxlags must be non-negative")

    bad_outcomes = [o for o in cfg.gee.outcomes if o not in BINARY_OUTCOMES]
    if bad_outcomes:
        raise ConfigError(f"Unknown GEE outcome(s): {bad_outcomes}")
    for spec in cfg.arima:
        if spec.outcome not in CONTINUOUS_OUTCOMES:
            raise ConfigError(f"Unknown ARIMA outcome: {spec.outcome!r}")
    if cfg.segmented_outcome not in CONTINUOUS_OUTCOMES:
        raise ConfigError(f"Unknown segmented outcome: {cfg.segmented_outcome!r}")

    covs = list(cfg.gee.covariates) + [c for s in cfg.arima for c in s.covariates]
    bad_covs = sorted({c for c in covs if c not in COVARIATES})
    if bad_covs:
        raise ConfigError(f"Unknown covariate(s): {bad_covs}; choose from {COVARIATES}")


def config_from_dict(raw: Mapping[str, Any], base_dir: Optional[Path] = None) -> StudyConfig:
    """Build and validate a :class:`StudyConfig` from a parsed TOML mapping."""
    study = raw.get("study")
    if not study:
        raise ConfigError("Missing [study] table")

    window = StudyWindow(
        start_date=_timestamp(study.get("start_date"), "start_date"),
        end_date=_timestamp(study.get("end_date"), "end_date"),
        intervention_date=_timestamp(study.get("intervention_date"), "intervention_date"),
        lag_date=_timestamp(study.get("lag_date", study.get("intervention_date")), "lag_date"),
    )

    th = raw.get("thresholds", {})
    thresholds = Thresholds(
        early_scan_days=float(th.get("early_scan_days", Thresholds.early_scan_days)),
        early_booking_days=float(th.get("early_booking_days", Thresholds.early_booking_days)),
        min_anc_visits=int(th.get("min_anc_visits", Thresholds.min_anc_visits)),
    )

    arima = tuple(
        ArimaSpec(
            outcome=a["outcome"],
            order=_order(a.get("order"), a["outcome"]),
            covariates=tuple(a.get("covariates", ())),
        )
        for a in raw.get("arima", [])
    )

    g = raw.get("gee", {})
    gee = GeeSpec(
        outcomes=tuple(g.get("outcomes", BINARY_OUTCOMES)),
        correlation=g.get("correlation", "ar1"),
        cov_type=g.get("cov_type", "naive"),
        covariates=tuple(g.get("covariates", ())),
    )

    inp = raw.get("input", {})
    path = inp.get("path")
    if path is not None:
        path = Path(path)
        if base_dir is not None and not path.is_absolute():
            path = (base_dir / path).resolve()
    input_spec = InputSpec(
        path=path,
        dayfirst=bool(inp.get("dayfirst", True)),
        na_values=tuple(inp.get("na_values", DEFAULT_NA_VALUES)),
        columns=dict(inp.get("columns", {})),
    )

    seg = raw.get("segmented", {})
    cfg = StudyConfig(
        window=window,
        thresholds=thresholds,
        arima=arima,
        gee=gee,
        segmented_outcome=seg.get("outcome", "mean_booking_scan_interval"),
        hac_maxlags=int(seg.get("hac_maxlags", 0)),
        input=input_spec,
        gap_policy=raw.get("aggregate", {}).get("gap_policy", "error"),
        alpha=float(raw.get("report", {}).get("alpha", 0.05)),
    )
    validate_config(cfg)
    return cfg


def load_config(path: str | Path) -> StudyConfig:
    path = Path(path)
    with path.open("rb") as fh:
        raw = tomllib.load(fh)
    cfg = config_from_dict(raw, base_dir=path.parent)
    logger.info(
        "Loaded study config from %s (window %s to %s, intervention %s)",
        path,
        cfg.window.start_date.date(),
        cfg.window.end_date.date(),
        cfg.window.intervention_date.date(),
    )
    return cfg


def default_config() -> StudyConfig:
    return config_from_dict(
        {
            "study": {
                "start_date": "2017-01-01",
                "end_date": "2020-07-31",
                "intervention_date": "2018-11-30",
                "lag_date": "2019-04-30",
            },
            "arima": [
                {"outcome": "mean_ga_scan", "order": [0, 1, 1]},
                {"outcome": "mean_ga_booking", "order": [2, 1, 0]},
            ],
        }
    )
