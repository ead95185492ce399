# Copyright (c) Syntropy Systems
"""Job body for one estimation run.

Run as ``python -m nmtrack.execute MODEL.ctl --job-id N --project-dir P``
by the dispatcher, either detached on this host or from a cluster job
script. Waits for a ledger slot, runs the engine in the output directory
and records the outcome in exit_status.json.
"""
from __future__ import annotations

import logging
import os
import socket
import time
from pathlib import Path
from threading import Event, Thread
from typing import TYPE_CHECKING, Optional

import typer

from nmtrack.config import NmtrackConfig, get_db_path, load_config
from nmtrack.db import (
    claim_slot,
    complete_job,
    fail_orphaned_jobs,
    get_connection,
    require_job,
    update_job_heartbeat,
)
from nmtrack.errors import BackendError, NmtrackError, NotFoundError
from nmtrack.models.output import ExecutionInfo, ExitStatus
from nmtrack.outputs import (
    ERROR_LOG,
    EXECUTION_FILE,
    EXIT_STATUS_FILE,
    OUTPUT_LOG,
    read_submission,
    record_lost_jobs,
    write_json,
)
from nmtrack.registry import read_model_path, utcnow
from nmtrack.runner import JobRunner

if TYPE_CHECKING:
    import sqlite3

    from nmtrack.models.db import JobRecord
    from nmtrack.models.model import ModelRecord

logger = logging.getLogger(__name__)

# Exit code recorded when the engine could not be started at all
EXIT_NOT_STARTED = 127


def reap_lost_jobs(conn: sqlite3.Connection, timeout_seconds: int) -> list[JobRecord]:
    """Fail ledger jobs that stopped heartbeating and mark their output directories."""
    lost = fail_orphaned_jobs(conn, timeout_seconds)
    for job in lost:
        logger.warning("Job #%s for model %s stopped heartbeating; marked failed", job.id, job.model_id)
    _ = record_lost_jobs(lost)
    return lost


def _wait_for_slot(db_path: Path, job_id: int, config: NmtrackConfig) -> None:
    """Block until the ledger hands this job a slot."""
    pid = os.getpid()
    hostname = socket.gethostname()
    announced = False
    while True:
        conn = get_connection(db_path)
        try:
            job = require_job(conn, job_id)
            if job.status != "queued":
                msg = f"Job #{job_id} for model {job.model_id} is {job.status}, expected queued"
                raise BackendError(msg)
            update_job_heartbeat(conn, job_id)
            # Free slots held by bodies that died without completing
            _ = reap_lost_jobs(conn, config.heartbeat_timeout)
            claimed = claim_slot(conn, job_id, pid=pid, hostname=hostname)
        finally:
            conn.close()

        if claimed:
            return
        if not announced:
            logger.info("Job #%s waiting for a free slot", job_id)
            announced = True
        time.sleep(config.poll_interval)


def run_job(
    record: ModelRecord,
    job_id: int,
    project_dir: Path,
    config: NmtrackConfig | None = None,
) -> int:
    """Run a submitted model to completion and return the engine's exit code."""
    config = config or load_config(project_dir)
    db_path = get_db_path(project_dir)
    output_dir = record.output_dir

    submission = read_submission(record)
    if submission is None:
        msg = f"Model {record.id}: no submission record in {output_dir}"
        raise NotFoundError(msg)

    try:
        _wait_for_slot(db_path, job_id, config)
    except NmtrackError as e:
        write_json(
            output_dir / EXIT_STATUS_FILE,
            ExitStatus(exit_code=EXIT_NOT_STARTED, finished_at=utcnow(), error_message=str(e)),
        )
        raise

    write_json(
        output_dir / EXECUTION_FILE,
        ExecutionInfo(pid=os.getpid(), hostname=socket.gethostname(), started_at=utcnow()),
    )
    logger.info("Model %s: starting %s", record.id, " ".join(submission.command_argv))

    runner = JobRunner(
        command_argv=submission.command_argv,
        workdir=output_dir,
        output_path=output_dir / OUTPUT_LOG,
        error_path=output_dir / ERROR_LOG,
        env={"NMTRACK_MODEL_ID": record.id, "NMTRACK_JOB_ID": str(job_id)},
    )

    # Heartbeat thread
    heartbeat_stop = Event()

    def heartbeat_loop() -> None:
        while not heartbeat_stop.is_set():
            try:
                conn = get_connection(db_path)
                try:
                    update_job_heartbeat(conn, job_id)
                finally:
                    conn.close()
            except Exception:  # noqa: BLE001
                logger.debug("Heartbeat for job #%s failed", job_id, exc_info=True)
            heartbeat_stop.wait(timeout=config.heartbeat_interval)

    error_message: Optional[str] = None
    try:
        runner.start()
    except OSError as e:
        exit_code = EXIT_NOT_STARTED
        error_message = f"Could not start {submission.command_argv[0]}: {e}"
        with (output_dir / ERROR_LOG).open("a") as f:
            _ = f.write(error_message + "\n")
    else:
        heartbeat_thread = Thread(target=heartbeat_loop, daemon=True)
        heartbeat_thread.start()
        try:
            exit_code = runner.wait()
        finally:
            heartbeat_stop.set()
            heartbeat_thread.join(timeout=2.0)
        if exit_code != 0:
            error_message = f"Estimation exited with code {exit_code}"

    write_json(
        output_dir / EXIT_STATUS_FILE,
        ExitStatus(exit_code=exit_code, finished_at=utcnow(), error_message=error_message),
    )

    conn = get_connection(db_path)
    try:
        complete_job(conn, job_id, exit_code=exit_code, error_message=error_message)
    finally:
        conn.close()

    if exit_code == 0:
        logger.info("Model %s: estimation finished", record.id)
    else:
        logger.warning("Model %s: %s", record.id, error_message)
    return exit_code


def main(
    model_path: Path = typer.Argument(..., help="Path to the model's .ctl file"),
    job_id: int = typer.Option(..., "--job-id", help="Ledger job id"),
    project_dir: Path = typer.Option(..., "--project-dir", help="The .nmtrack directory"),
) -> None:
    """Run one submitted estimation."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    record = read_model_path(model_path)
    exit_code = run_job(record, job_id, project_dir)
    raise typer.Exit(0 if exit_code == 0 else 1)


if __name__ == "__main__":
    typer.run(main)
