# Copyright (c) Syntropy Systems
"""Parse estimation output (.ext and .lst) into a ModelSummary."""
from __future__ import annotations

import io
import logging
import re
from typing import TYPE_CHECKING

import pandas as pd

from nmtrack.errors import IntegrityError, NotFoundError
from nmtrack.models.output import ModelSummary, ParameterEstimate

if TYPE_CHECKING:
    from pathlib import Path

    from nmtrack.models.model import ModelRecord

logger = logging.getLogger(__name__)

# Special ITERATION values in .ext files
FINAL_ESTIMATE_ROW = -1000000000
STANDARD_ERROR_ROW = -1000000001
FIXED_FLAG_ROW = -1000000006

# NONMEM writes this in place of a standard error for fixed elements
_NOT_APPLICABLE = 1.0e10

_TABLE_HEADER = re.compile(r"^TABLE NO\.\s+\d+")
_PARAM_COLUMN = re.compile(r"^(THETA\d+|OMEGA\(\d+,\d+\)|SIGMA\(\d+,\d+\))$")
_DIAGONAL = re.compile(r"^(?:OMEGA|SIGMA)\((\d+),(\d+)\)$")


def split_tables(text: str) -> list[tuple[str, str]]:
    """Split a NONMEM output file into (title line, body) pairs."""
    tables: list[tuple[str, list[str]]] = []
    for line in text.splitlines():
        if _TABLE_HEADER.match(line.strip()):
            tables.append((line.strip(), []))
        elif tables:
            tables[-1][1].append(line)
    return [(title, "\n".join(body)) for title, body in tables]


def read_ext(ext_path: Path) -> tuple[str, pd.DataFrame]:
    """Read the last estimation table of an .ext file.

    Returns the table title and its rows indexed by ITERATION.
    """
    if not ext_path.exists():
        msg = f"Estimates file not found: {ext_path}"
        raise NotFoundError(msg)

    tables = split_tables(ext_path.read_text())
    if not tables:
        msg = f"No estimation table in {ext_path}"
        raise IntegrityError(msg)

    title, body = tables[-1]
    frame = pd.read_csv(io.StringIO(body), sep=r"\s+")
    if "ITERATION" not in frame.columns:
        msg = f"Malformed estimates table in {ext_path}: no ITERATION column"
        raise IntegrityError(msg)
    frame["ITERATION"] = frame["ITERATION"].astype("int64")
    return title, frame.set_index("ITERATION")


def _estimation_method(title: str) -> str | None:
    parts = [p.strip() for p in title.split(":")]
    return parts[1] if len(parts) > 1 and parts[1] else None


def _row(frame: pd.DataFrame, iteration: int) -> pd.Series | None:
    if iteration not in frame.index:
        return None
    return frame.loc[iteration]


def parse_parameters(frame: pd.DataFrame) -> tuple[list[ParameterEstimate], float | None]:
    """Build parameter estimates and the OFV from an .ext table."""
    final = _row(frame, FINAL_ESTIMATE_ROW)
    if final is None:
        # Estimation did not finish; fall back to the last iteration written
        positive = frame[frame.index >= 0]
        if positive.empty:
            return [], None
        final = positive.iloc[-1]
    stderr = _row(frame, STANDARD_ERROR_ROW)
    fixed = _row(frame, FIXED_FLAG_ROW)

    params: list[ParameterEstimate] = []
    for column in frame.columns:
        if not _PARAM_COLUMN.match(column):
            continue
        is_fixed = bool(fixed is not None and float(fixed[column]) == 1.0)
        estimate = float(final[column])
        diagonal = _DIAGONAL.match(column)
        if diagonal and diagonal.group(1) != diagonal.group(2) and is_fixed and estimate == 0.0:
            # Structural zero in a diagonal block
            continue
        se = None
        if stderr is not None:
            value = float(stderr[column])
            if value != 0.0 and abs(value) < _NOT_APPLICABLE:
                se = value
        params.append(ParameterEstimate(name=column, estimate=estimate, stderr=se, fixed=is_fixed))

    ofv = float(final["OBJ"]) if "OBJ" in frame.columns else None
    return params, ofv


def _int_after(label: str, text: str) -> int | None:
    match = re.search(rf"{re.escape(label)}\s*(\d+)", text)
    return int(match.group(1)) if match else None


def parse_listing(lst_path: Path) -> dict[str, object]:
    """Pull run facts out of a listing file. Missing facts are left out."""
    text = lst_path.read_text(errors="replace")
    facts: dict[str, object] = {}

    if "MINIMIZATION SUCCESSFUL" in text:
        facts["minimization_successful"] = True
    elif "MINIMIZATION TERMINATED" in text:
        facts["minimization_successful"] = False

    term = re.search(r"#TERM:\s*\n(.*?)(?:\n\s*\n|#TERE:)", text, flags=re.DOTALL)
    if term:
        message = " ".join(line.strip() for line in term.group(1).splitlines() if line.strip())
        facts["termination_message"] = message or None

    for key, label in (
        ("n_records", "NO. OF DATA RECS IN DATA SET:"),
        ("n_observations", "TOT. NO. OF OBS RECS:"),
        ("n_subjects", "TOT. NO. OF INDIVIDUALS:"),
    ):
        value = _int_after(label, text)
        if value is not None:
            facts[key] = value

    return facts


def model_summary(record: ModelRecord) -> ModelSummary:
    """Summarize a model's estimation output.

    Raises NotFoundError if the .ext file has not been written.
    """
    ext_path = record.output_dir / f"{record.id}.ext"
    lst_path = record.output_dir / f"{record.id}.lst"

    if not ext_path.exists():
        msg = f"Model {record.id}: no estimation output at {ext_path}"
        raise NotFoundError(msg)

    title, frame = read_ext(ext_path)
    params, ofv = parse_parameters(frame)

    facts: dict[str, object] = {}
    if lst_path.exists():
        facts = parse_listing(lst_path)
    else:
        logger.debug("Model %s: no listing at %s", record.id, lst_path)

    return ModelSummary(
        model_id=record.id,
        ofv=ofv,
        estimation_method=_estimation_method(title),
        parameters=params,
        covariance_step=STANDARD_ERROR_ROW in frame.index,
        **facts,
    )
