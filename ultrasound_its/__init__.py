"""Interrupted-time-series analysis of decentralised antenatal ultrasound."""
from .aggregate import MonthlySummary, aggregate_monthly
from .arima import ArimaFit, arima_counterfactual, fit_arima, select_arima_order
from .config import StudyConfig, default_config, load_config
from .errors import (
    ConfigError,
    DataValidationError,
    EmptyMonthError,
    MissingColumnsError,
    ModelConvergenceError,
    UltrasoundITSError,
)
from .features import derive_features, filter_study_window, prepare_records
from .gee import GeeFit, fit_gee, gee_counterfactual
from .pipeline import AnalysisResults, run_analysis
from .schema import RecordSchema, coerce_records, load_records
from .segmented import SegmentedFit, fit_segmented_ols, naive_prepost_comparison, segmented_counterfactual

__version__ = "0.1.0"
