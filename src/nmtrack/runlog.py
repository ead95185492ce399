# Copyright (c) Syntropy Systems
"""Run log and model comparison.

Both are pure reads over the registry and output directories.
"""
from __future__ import annotations

import difflib
import logging
from pathlib import Path
from typing import TYPE_CHECKING

from nmtrack.config import NmtrackConfig, load_config
from nmtrack.dispatch import poll_status
from nmtrack.errors import IntegrityError, NotFoundError
from nmtrack.models.model import ModelStatus
from nmtrack.models.runlog import ModelDiff, ParameterComparison, RunLogEntry
from nmtrack.outputs import read_submission
from nmtrack.registry import definition_md5, list_models, read_model
from nmtrack.summary import model_summary

if TYPE_CHECKING:
    from nmtrack.models.model import ModelRecord
    from nmtrack.models.output import ModelSummary

logger = logging.getLogger(__name__)


def _try_summary(record: ModelRecord) -> ModelSummary | None:
    try:
        return model_summary(record)
    except NotFoundError:
        return None
    except IntegrityError as e:
        logger.warning("Model %s: unreadable estimation output: %s", record.id, e)
        return None


def _missing(strict: bool, model_id: str, field: str, reason: str) -> None:  # noqa: FBT001
    """Report a derived value that could not be computed."""
    if strict:
        msg = f"Model {model_id}: cannot compute {field}: {reason}"
        raise IntegrityError(msg)
    logger.debug("Model %s: %s unavailable (%s)", model_id, field, reason)


def _stale(record: ModelRecord) -> bool | None:
    submission = read_submission(record)
    if submission is None:
        return None
    return definition_md5(record.definition_path) != submission.definition_md5


def run_log(
    directory: Path | str,
    config: NmtrackConfig | None = None,
) -> list[RunLogEntry]:
    """Build the run log for every model in a directory, ordered by id.

    Derived values (OFV, AIC, delta OFV vs parent) are None when they
    cannot be computed, or raise IntegrityError when the config sets
    strict_run_log.
    """
    directory = Path(directory)
    config = config or load_config(start_path=directory)
    strict = config.strict_run_log

    records = list_models(directory)
    by_id = {r.id: r for r in records}
    summaries: dict[str, ModelSummary | None] = {r.id: _try_summary(r) for r in records}

    entries: list[RunLogEntry] = []
    for record in records:
        summary = summaries[record.id]
        status = poll_status(record)

        entry = RunLogEntry(
            id=record.id,
            parent_id=record.parent_id,
            based_on=list(record.meta.based_on),
            description=record.description,
            notes=list(record.notes),
            tags=list(record.tags),
            star=record.starred,
            status=status,
            stale=_stale(record),
        )

        if summary is not None and summary.ofv is not None:
            entry.ofv = summary.ofv
            entry.n_parameters = summary.n_estimated
            entry.aic = summary.aic
        elif status is ModelStatus.FINISHED:
            _missing(strict, record.id, "OFV", "no estimation output")

        parent = by_id.get(record.parent_id) if record.parent_id else None
        if record.parent_id is not None and parent is None:
            _missing(strict, record.id, "parent comparison", f"parent {record.parent_id} not found")
        if parent is not None:
            entry.definition_changed = (
                record.definition_path.read_text() != parent.definition_path.read_text()
            )
            entry.tags_added = [t for t in record.tags if t not in parent.tags]
            entry.tags_removed = [t for t in parent.tags if t not in record.tags]

            parent_summary = summaries[parent.id]
            if entry.ofv is not None and parent_summary is not None and parent_summary.ofv is not None:
                entry.delta_ofv = entry.ofv - parent_summary.ofv
            elif entry.ofv is not None:
                _missing(strict, record.id, "delta OFV", f"parent {parent.id} has no OFV")

        entries.append(entry)

    return entries


def compare_parameters(summary_a: ModelSummary, summary_b: ModelSummary) -> list[ParameterComparison]:
    """Pair up parameter estimates of two models.

    Raises IntegrityError if the two models do not estimate the same
    parameters.
    """
    names_a = [p.name for p in summary_a.parameters]
    names_b = [p.name for p in summary_b.parameters]
    if names_a != names_b:
        only_a = sorted(set(names_a) - set(names_b))
        only_b = sorted(set(names_b) - set(names_a))
        detail = f"{len(names_a)} vs {len(names_b)} parameters"
        if only_a:
            detail += f"; only in {summary_a.model_id}: {', '.join(only_a)}"
        if only_b:
            detail += f"; only in {summary_b.model_id}: {', '.join(only_b)}"
        msg = f"Models {summary_a.model_id} and {summary_b.model_id} are not comparable: {detail}"
        raise IntegrityError(msg)

    comparisons: list[ParameterComparison] = []
    for param_a, param_b in zip(summary_a.parameters, summary_b.parameters):
        comparisons.append(
            ParameterComparison(
                name=param_a.name,
                estimate_a=param_a.estimate,
                estimate_b=param_b.estimate,
                stderr_a=param_a.stderr,
                stderr_b=param_b.stderr,
            )
        )
    return comparisons


def model_diff(a: ModelRecord, b: ModelRecord, context: int = 3) -> ModelDiff:
    """Compare two models' definitions and, when both ran, their estimates.

    Structurally different models are reported with comparable=False
    rather than raising.
    """
    text_a = a.definition_path.read_text().splitlines()
    text_b = b.definition_path.read_text().splitlines()
    diff = ModelDiff(
        id_a=a.id,
        id_b=b.id,
        definition_diff=list(
            difflib.unified_diff(
                text_a,
                text_b,
                fromfile=a.definition_path.name,
                tofile=b.definition_path.name,
                n=context,
                lineterm="",
            )
        ),
    )

    summary_a = _try_summary(a)
    summary_b = _try_summary(b)
    if summary_a is None or summary_b is None:
        missing = [r.id for r, s in ((a, summary_a), (b, summary_b)) if s is None]
        diff.reason = f"no estimation output for {', '.join(missing)}"
        return diff

    diff.ofv_a = summary_a.ofv
    diff.ofv_b = summary_b.ofv
    try:
        diff.parameters = compare_parameters(summary_a, summary_b)
        diff.comparable = True
    except IntegrityError as e:
        diff.comparable = False
        diff.reason = str(e)
    return diff


def diff_by_id(directory: Path | str, id_a: str, id_b: str) -> ModelDiff:
    """Compare two models in the same directory by id."""
    return model_diff(read_model(directory, id_a), read_model(directory, id_b))
