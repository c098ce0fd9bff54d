"""Exception types raised by the ultrasound ITS pipeline."""
from __future__ import annotations


class UltrasoundITSError(Exception):
    """Base class for errors raised by this package."""


class ConfigError(UltrasoundITSError, ValueError):
    """A study configuration value is missing or inconsistent."""


class DataValidationError(UltrasoundITSError, ValueError):
    """Input records or aggregates violate an assumption of the analysis."""


class MissingColumnsError(DataValidationError):
    def __init__(self, missing: list[str], available: list[str] | None = None):
        self.missing = list(missing)
        self.available = list(available or [])
        msg = f"Missing required column(s): {', '.join(self.missing)}"
        if self.available:
            msg += f" (available: {', '.join(self.available)})"
        super().__init__(msg)


class EmptyMonthError(DataValidationError):
    """One or more months in the study window have no records."""

    def __init__(self, months: list[str]):
        self.months = list(months)
        super().__init__(
            f"{len(self.months)} month(s) in the study window have zero records: "
            f"{', '.join(self.months)}. A rate is undefined for an empty month; "
            "use gap_policy='mark' to inspect the gaps."
        )


class ModelConvergenceError(UltrasoundITSError, RuntimeError):
    """A model fit did not converge and strict mode was requested."""
