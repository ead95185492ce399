# Copyright (c) Syntropy Systems
"""Join estimation output tables back to the input dataset by row index."""
from __future__ import annotations

import io
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

import pandas as pd

from nmtrack.config import load_config
from nmtrack.errors import IntegrityError, NotFoundError
from nmtrack.summary import split_tables

if TYPE_CHECKING:
    from nmtrack.models.model import ModelRecord

logger = logging.getLogger(__name__)

_DATA_RECORD = re.compile(r"^\s*\$DATA\s+(\"[^\"]+\"|'[^']+'|\S+)", re.MULTILINE)
_TABLE_FILE = re.compile(r"^\s*\$TAB\w*\b[^$]*?\bFILE\s*=\s*(\S+)", re.MULTILINE)


@dataclass
class JoinedDataset:
    """Input rows matched one to one with output table rows."""

    model_id: str
    data: pd.DataFrame
    join_key: str = "NUM"

    def observations(self) -> pd.DataFrame:
        """Rows that are observations (EVID == 0, else MDV == 0)."""
        if "EVID" in self.data.columns:
            return self.data[self.data["EVID"] == 0]
        if "MDV" in self.data.columns:
            return self.data[self.data["MDV"] == 0]
        return self.data

    def baseline(self, id_col: str = "ID") -> pd.DataFrame:
        """First row for each subject, in order of appearance."""
        if id_col not in self.data.columns:
            msg = f"Model {self.model_id}: no {id_col} column to take baseline rows by"
            raise IntegrityError(msg)
        return self.data.drop_duplicates(subset=id_col, keep="first")

    def __len__(self) -> int:
        return len(self.data)


def read_table(path: Path) -> pd.DataFrame:
    """Read a NONMEM $TABLE output file.

    Handles repeated ``TABLE NO.`` header blocks and files written with
    NOTITLE.
    """
    if not path.exists():
        msg = f"Output table not found: {path}"
        raise NotFoundError(msg)

    text = path.read_text()
    blocks = [body for _, body in split_tables(text)] or [text]
    frames = [
        pd.read_csv(io.StringIO(body), sep=r"\s+")
        for body in blocks
        if body.strip()
    ]
    if not frames:
        msg = f"Output table is empty: {path}"
        raise IntegrityError(msg)
    return pd.concat(frames, ignore_index=True)


def data_path_from_definition(record: ModelRecord) -> Path:
    """Resolve the input dataset named in the $DATA record."""
    match = _DATA_RECORD.search(record.definition_path.read_text())
    if match is None:
        msg = f"Model {record.id}: no $DATA record in {record.definition_path}"
        raise NotFoundError(msg)

    raw = match.group(1).strip("\"'")
    candidate = Path(raw)
    if candidate.is_absolute():
        return candidate
    for base in (record.directory, record.output_dir):
        resolved = (base / candidate).resolve()
        if resolved.exists():
            return resolved
    msg = f"Model {record.id}: input dataset {raw} not found relative to {record.directory}"
    raise NotFoundError(msg)


def table_paths(record: ModelRecord) -> list[Path]:
    """Output tables for a model, from its $TABLE records or by file name."""
    names = [m.group(1) for m in _TABLE_FILE.finditer(record.definition_path.read_text())]
    paths = [record.output_dir / name for name in names if (record.output_dir / name).exists()]
    if not paths:
        paths = sorted(record.output_dir.glob(f"{record.id}*.tab"))
    return paths


def _check_unique(frame: pd.DataFrame, key: str, label: str) -> None:
    duplicated = frame[key][frame[key].duplicated()]
    if not duplicated.empty:
        shown = ", ".join(str(v) for v in duplicated.unique()[:10])
        msg = f"{label}: {len(duplicated)} duplicated {key} value(s): {shown}"
        raise IntegrityError(msg)


def _as_int_key(frame: pd.DataFrame, key: str, label: str) -> pd.DataFrame:
    values = frame[key]
    if values.isna().any():
        msg = f"{label}: {key} has missing values"
        raise IntegrityError(msg)
    as_int = values.round().astype("int64")
    if not (as_int == values).all():
        msg = f"{label}: {key} is not integer valued"
        raise IntegrityError(msg)
    frame = frame.copy()
    frame[key] = as_int
    return frame


def nm_join(
    record: ModelRecord,
    data_path: Path | str | None = None,
    join_key: str | None = None,
    tables: list[Path] | None = None,
) -> JoinedDataset:
    """Join a model's output tables onto its input dataset.

    The largest table sets the row order. Tables with fewer rows
    (FIRSTONLY) are attached by subject ID. Columns already present are
    not repeated.

    Raises:
        NotFoundError: the dataset or output tables are missing
        IntegrityError: any output row has no matching input row, or the
            key is missing or not unique

    """
    if join_key is None:
        join_key = load_config(start_path=record.directory).join_key
    data_file = Path(data_path) if data_path is not None else data_path_from_definition(record)
    if not data_file.exists():
        msg = f"Model {record.id}: input dataset not found at {data_file}"
        raise NotFoundError(msg)

    paths = tables if tables is not None else table_paths(record)
    if not paths:
        msg = f"Model {record.id}: no output tables in {record.output_dir}"
        raise NotFoundError(msg)

    data = pd.read_csv(data_file, na_values=".")
    data_label = f"Model {record.id} input {data_file.name}"
    if join_key not in data.columns:
        msg = f"{data_label}: no {join_key} column"
        raise IntegrityError(msg)
    data = _as_int_key(data, join_key, data_label)
    _check_unique(data, join_key, data_label)

    frames: list[tuple[Path, pd.DataFrame]] = []
    for path in paths:
        label = f"Model {record.id} table {path.name}"
        frame = read_table(path)
        if join_key not in frame.columns:
            msg = f"{label}: no {join_key} column"
            raise IntegrityError(msg)
        frame = _as_int_key(frame, join_key, label)
        _check_unique(frame, join_key, label)

        unmatched = frame.loc[~frame[join_key].isin(data[join_key]), join_key]
        if not unmatched.empty:
            shown = ", ".join(str(v) for v in unmatched.head(10))
            msg = (
                f"{label}: {len(unmatched)} of {len(frame)} row(s) have no matching "
                f"{join_key} in {data_file.name} ({len(data)} rows): {shown}"
            )
            raise IntegrityError(msg)
        frames.append((path, frame))

    # Stable: first table wins ties
    main_path, main = max(frames, key=lambda item: len(item[1]))
    logger.debug("Model %s: joining %d table(s), main table %s", record.id, len(frames), main_path.name)

    joined = main[[join_key]].merge(data, on=join_key, how="left", validate="one_to_one")
    seen = set(joined.columns)

    for path, frame in [(main_path, main)] + [f for f in frames if f[0] != main_path]:
        new_cols = [c for c in frame.columns if c not in seen]
        if not new_cols:
            continue
        outside = frame.loc[~frame[join_key].isin(main[join_key]), join_key]
        if len(frame) == len(main) and not outside.empty:
            shown = ", ".join(str(v) for v in outside.head(10))
            msg = (
                f"Model {record.id} table {path.name}: {len(outside)} of {len(frame)} row(s) have no "
                f"matching {join_key} in main table {main_path.name}: {shown}"
            )
            raise IntegrityError(msg)
        if len(frame) == len(main):
            joined = joined.merge(frame[[join_key, *new_cols]], on=join_key, how="left", validate="one_to_one")
        elif "ID" in frame.columns and "ID" in joined.columns:
            per_subject = frame[["ID", *new_cols]].drop_duplicates(subset="ID", keep="first")
            joined = joined.merge(per_subject, on="ID", how="left", validate="many_to_one")
        else:
            msg = f"Model {record.id} table {path.name}: cannot align {len(frame)} rows with {len(main)} without an ID column"
            raise IntegrityError(msg)
        seen.update(new_cols)

    return JoinedDataset(model_id=record.id, data=joined.reset_index(drop=True), join_key=join_key)
