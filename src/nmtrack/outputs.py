# Copyright (c) Syntropy Systems
"""Sentinel files in a model's output directory."""
from __future__ import annotations

import os
from pathlib import Path
from typing import TYPE_CHECKING, TypeVar

from pydantic import BaseModel, ValidationError

from nmtrack.db import utcnow
from nmtrack.models.output import ExecutionInfo, ExitStatus, SubmissionMeta

if TYPE_CHECKING:
    from collections.abc import Iterable

    from nmtrack.models.db import JobRecord
    from nmtrack.models.model import ModelRecord

SUBMISSION_FILE = "submission.json"
EXECUTION_FILE = "execution.json"
EXIT_STATUS_FILE = "exit_status.json"
OUTPUT_LOG = "output.log"
ERROR_LOG = "error.log"
DISPATCH_LOG = "dispatch.log"
JOB_SCRIPT = "job.sh"

# Exit code recorded for a job whose body stopped heartbeating
EXIT_HEARTBEAT_LOST = 255

_M = TypeVar("_M", bound=BaseModel)


def write_json(path: Path, model: BaseModel) -> None:
    """Write a model as JSON, replacing the file atomically."""
    tmp_path = path.with_name(f".{path.name}.tmp")
    _ = tmp_path.write_text(model.model_dump_json(indent=2))
    os.replace(tmp_path, path)


def _read_json(path: Path, model_type: type[_M]) -> _M | None:
    if not path.exists():
        return None
    try:
        return model_type.model_validate_json(path.read_text())
    except ValidationError:
        return None


def read_submission(record: ModelRecord) -> SubmissionMeta | None:
    """Read submission.json, None if absent or unreadable."""
    return _read_json(record.output_dir / SUBMISSION_FILE, SubmissionMeta)


def read_execution(record: ModelRecord) -> ExecutionInfo | None:
    """Read execution.json, None if absent or unreadable."""
    return _read_json(record.output_dir / EXECUTION_FILE, ExecutionInfo)


def read_exit_status(record: ModelRecord) -> ExitStatus | None:
    """Read exit_status.json, None if absent or unreadable."""
    return _read_json(record.output_dir / EXIT_STATUS_FILE, ExitStatus)


def record_lost_jobs(jobs: Iterable[JobRecord]) -> list[Path]:
    """Write exit_status.json for ledger jobs failed for a lost heartbeat.

    Only output directories that still hold that job's submission and have
    no exit status yet are touched. Returns the files written.
    """
    written: list[Path] = []
    for job in jobs:
        output_dir = Path(job.model_path).parent / job.model_id
        submission = _read_json(output_dir / SUBMISSION_FILE, SubmissionMeta)
        if submission is None or submission.job_id != job.id:
            continue
        path = output_dir / EXIT_STATUS_FILE
        if path.exists():
            continue
        write_json(
            path,
            ExitStatus(
                exit_code=EXIT_HEARTBEAT_LOST,
                finished_at=utcnow(),
                error_message=f"Job #{job.id} stopped heartbeating",
            ),
        )
        written.append(path)
    return written
