# Copyright (c) Syntropy Systems
"""Column metadata for diagnostic plots, read from a YAML data spec.

Example::

    SETUP__:
      flags:
        cont_cov: [WT, AGE]
        cat_cov: [SEX]
        eta: [ETA1, ETA2]
    WT:
      short: Weight
      unit: kg
    SEX:
      short: Sex
      values: {Male: 0, Female: 1}
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional, Union

import pandas as pd
import yaml
from pydantic import Field, ValidationError, field_validator

from nmtrack.errors import ConfigError, NotFoundError
from nmtrack.models.base import NmtrackBaseModel

SETUP_KEY = "SETUP__"
KNOWN_FLAGS = ("cont_cov", "cat_cov", "eta")


class ColumnSpec(NmtrackBaseModel):
    """Display metadata for one dataset column."""

    short: Optional[str] = None
    unit: Optional[str] = None
    type: Optional[str] = None
    values: dict[str, Union[int, float, str]] = Field(default_factory=dict)

    @field_validator("values", mode="before")
    @classmethod
    def _list_to_mapping(cls, value: object) -> object:
        # A bare list means the codes are their own labels
        if value is None:
            return {}
        if isinstance(value, list):
            return {str(v): v for v in value}
        return value


class DataSpec(NmtrackBaseModel):
    """Per-column labels plus the flags that pick covariates and ETAs."""

    columns: dict[str, ColumnSpec] = Field(default_factory=dict)
    flags: dict[str, list[str]] = Field(default_factory=dict)
    source: Optional[str] = None

    def label(self, column: str) -> str:
        """Axis label: 'short (unit)', falling back to the column name."""
        col = self.columns.get(column)
        if col is None:
            return column
        text = col.short or column
        return f"{text} ({col.unit})" if col.unit else text

    def flag(self, name: str) -> list[str]:
        """Columns listed under a flag; ConfigError if the flag is absent or empty."""
        columns = self.flags.get(name)
        if not columns:
            where = f" in {self.source}" if self.source else ""
            msg = f"Data spec{where} has no '{name}' flag"
            raise ConfigError(msg)
        return columns

    def decode(self, column: str, series: pd.Series) -> pd.Series:
        """Replace coded values with their labels where the spec defines them."""
        col = self.columns.get(column)
        if col is None or not col.values:
            return series
        mapping = {code: label for label, code in col.values.items()}
        return series.map(lambda v: mapping.get(v, v))


def load_data_spec(path: Path | str) -> DataSpec:
    """Read a YAML data spec.

    Raises NotFoundError if the file is missing and ConfigError if it does
    not have the expected shape.
    """
    path = Path(path)
    if not path.exists():
        msg = f"Data spec not found: {path}"
        raise NotFoundError(msg)

    with path.open() as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        msg = f"Data spec {path} must be a mapping of column names"
        raise ConfigError(msg)

    setup = data.pop(SETUP_KEY, None) or {}
    flags = setup.get("flags", {}) if isinstance(setup, dict) else {}
    if not isinstance(flags, dict):
        msg = f"Data spec {path}: {SETUP_KEY}.flags must be a mapping"
        raise ConfigError(msg)

    try:
        return DataSpec(
            columns={str(name): (col or {}) for name, col in data.items()},
            flags={
                str(name): [cols] if isinstance(cols, str) else list(cols or [])
                for name, cols in flags.items()
            },
            source=str(path),
        )
    except (ValidationError, TypeError) as e:
        msg = f"Data spec {path} is invalid: {e}"
        raise ConfigError(msg) from e
