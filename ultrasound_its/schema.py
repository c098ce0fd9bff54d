"""Typed record schema and CSV loading.

One row of the source file is one pregnancy episode. Columns are renamed to
the logical names below on load so the rest of the package never touches raw
CSV headers.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

import numpy as np
import pandas as pd

from .config import InputSpec
from .errors import MissingColumnsError

logger = logging.getLogger(__name__)

DATE_FIELDS = ("delivery_date", "ultrasound_date", "booking_date")
NUMERIC_FIELDS = ("ga_scan_days", "ga_booking_days", "parity", "anc_visits")
FLAG_FIELDS = ("hiv_status", "high_risk")
REQUIRED_FIELDS = DATE_FIELDS + NUMERIC_FIELDS + FLAG_FIELDS
OPTIONAL_FIELDS = ("maternal_age", "scan_timing")

_TRUE_TOKENS = {"1", "y", "yes", "true", "positive", "pos", "reactive", "high", "high risk"}
_FALSE_TOKENS = {"0", "n", "no", "false", "negative", "neg", "non-reactive", "nonreactive", "low", "low risk"}


@dataclass(frozen=True)
class RecordSchema:
    """Maps each logical field to the header used in the CSV file."""

    columns: Mapping[str, str] = field(default_factory=dict)

    def header(self, name: str) -> str:
        return self.columns.get(name, name)

    @property
    def rename_map(self) -> dict[str, str]:
        return {self.header(f): f for f in REQUIRED_FIELDS + OPTIONAL_FIELDS}

    def validate(self, df: pd.DataFrame) -> None:
        missing = [self.header(f) for f in REQUIRED_FIELDS if self.header(f) not in df.columns]
        if missing:
            raise MissingColumnsError(missing, available=list(df.columns))


def _to_flag(s: pd.Series) -> pd.Series:
    """Coerce yes/no style tokens (or 0/1 numbers) to a float 0/1 column."""
    if pd.api.types.is_numeric_dtype(s):
        out = s.astype(float)
        out[~out.isin([0.0, 1.0])] = np.nan
        return out
    tokens = s.astype("string").str.strip().str.lower()
    # "1.0" / "0.0" as written by a float column
    out = pd.to_numeric(tokens, errors="coerce").astype(float)
    out[~out.isin([0.0, 1.0])] = np.nan
    out[tokens.isin(_TRUE_TOKENS).fillna(False).astype(bool)] = 1.0
    out[tokens.isin(_FALSE_TOKENS).fillna(False).astype(bool)] = 0.0
    return out


def coerce_records(
    raw: pd.DataFrame,
    schema: Optional[RecordSchema] = None,
    *,
    dayfirst: bool = True,
) -> pd.DataFrame:
    """
    Validate, rename and type-coerce a raw frame into the record schema.

    - dates are parsed with ``dayfirst``; unparseable strings become NaT
    - numeric fields are coerced to float
    - HIV status / high-risk are coerced to 0/1 (NaN when not recognised)
    - rows with no delivery date are dropped
    """
    schema = schema or RecordSchema()
    schema.validate(raw)

    d = raw.rename(columns=schema.rename_map)
    keep = [c for c in REQUIRED_FIELDS + OPTIONAL_FIELDS if c in d.columns]
    d = d[keep].copy()

    for col in DATE_FIELDS:
        if pd.api.types.is_datetime64_any_dtype(d[col]):
            d[col] = d[col].dt.normalize()
            continue
        # per-value parsing: one column may mix "05/03/2018" and "05/03/2018 00:00"
        parsed = pd.to_datetime(d[col], format="mixed", dayfirst=dayfirst, errors="coerce")
        n_bad = int((parsed.isna() & d[col].notna()).sum())
        if n_bad:
            logger.warning("%s: %d value(s) could not be parsed as dates and were set missing", col, n_bad)
        d[col] = parsed.dt.normalize()

    for col in NUMERIC_FIELDS + (("maternal_age",) if "maternal_age" in d.columns else ()):
        d[col] = pd.to_numeric(d[col], errors="coerce").astype(float)

    for col in FLAG_FIELDS:
        d[col] = _to_flag(d[col])

    if "scan_timing" in d.columns:
        d["scan_timing"] = d["scan_timing"].astype("string").str.strip().str.capitalize()

    no_delivery = d["delivery_date"].isna()
    if no_delivery.any():
        logger.warning("Dropping %d record(s) with no delivery date", int(no_delivery.sum()))
        d = d.loc[~no_delivery]

    return d.reset_index(drop=True)


def load_records(path: str | Path, input_spec: Optional[InputSpec] = None) -> pd.DataFrame:
    """Read the delivery CSV, treating the configured sentinels as missing."""
    input_spec = input_spec or InputSpec()
    raw = pd.read_csv(
        path,
        dtype=str,
        na_values=list(input_spec.na_values),
        keep_default_na=False,
    )
    raw = raw.map(lambda v: v.strip() if isinstance(v, str) else v)
    # values that only become a sentinel after stripping whitespace
    raw = raw.replace(list(input_spec.na_values), np.nan)
    records = coerce_records(raw, RecordSchema(input_spec.columns), dayfirst=input_spec.dayfirst)
    logger.info("Loaded %d record(s) from %s", len(records), path)
    return records
