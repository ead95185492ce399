# Copyright (c) Syntropy Systems
"""Tests for the job body's slot handling and lost-job cleanup."""

from __future__ import annotations

import sqlite3
import threading
from pathlib import Path

from nmtrack.config import NmtrackConfig
from nmtrack.db import claim_slot, create_job, get_connection, require_job
from nmtrack.dispatch import poll_status, wait_for_model
from nmtrack.execute import _wait_for_slot, reap_lost_jobs
from nmtrack.models.model import ModelRecord, ModelStatus
from nmtrack.models.output import SubmissionMeta
from nmtrack.outputs import EXIT_HEARTBEAT_LOST, EXIT_STATUS_FILE, SUBMISSION_FILE, read_exit_status, write_json
from nmtrack.registry import create_model, definition_md5, utcnow


def _dead_job(conn: sqlite3.Connection, record: ModelRecord) -> int:
    """Ledger job holding a slot whose body stopped heartbeating long ago."""
    job_id = create_job(
        conn,
        model_id=record.id,
        model_path=str(record.definition_path),
        command_argv=["nmfe75"],
        max_concurrent=1,
    )
    assert claim_slot(conn, job_id)
    _ = conn.execute(
        "UPDATE jobs SET heartbeat_at = '2000-01-01T00:00:00Z' WHERE id = ?",
        (job_id,),
    )
    return job_id


def _submit(record: ModelRecord, job_id: int) -> None:
    record.output_dir.mkdir(parents=True, exist_ok=True)
    write_json(
        record.output_dir / SUBMISSION_FILE,
        SubmissionMeta(
            model_id=record.id,
            job_id=job_id,
            mode="local",
            submitted_at=utcnow(),
            definition_md5=definition_md5(record.definition_path),
        ),
    )


class TestWaitForSlot:
    """Tests for a job body waiting on the concurrency bound."""

    def test_dead_job_releases_slot(self, nmtrack_project: Path, model_dir: Path) -> None:
        """A waiting job takes the slot of a body that died without completing."""
        db_path = nmtrack_project / ".nmtrack" / "nmtrack.db"
        conn = get_connection(db_path)
        dead = _dead_job(conn, create_model(model_dir, "100"))
        waiting = create_job(
            conn,
            model_id="101",
            model_path=str(model_dir / "101.ctl"),
            command_argv=["nmfe75"],
            max_concurrent=1,
        )
        conn.close()

        config = NmtrackConfig(heartbeat_timeout=5, poll_interval=0.05)
        thread = threading.Thread(target=_wait_for_slot, args=(db_path, waiting, config), daemon=True)
        thread.start()
        thread.join(timeout=10)

        assert not thread.is_alive()
        conn = get_connection(db_path)
        try:
            assert require_job(conn, waiting).status == "running"
            lost = require_job(conn, dead)
            assert lost.status == "failed"
            assert lost.error_message == "Heartbeat lost"
        finally:
            conn.close()


class TestReapLostJobs:
    """Tests for failing jobs whose body stopped heartbeating."""

    def test_marks_output_directory(self, nmtrack_project: Path, model_dir: Path) -> None:
        """The lost run's status turns failed instead of staying running."""
        record = create_model(model_dir, "100")
        conn = get_connection(nmtrack_project / ".nmtrack" / "nmtrack.db")
        try:
            job_id = _dead_job(conn, record)
            _submit(record, job_id)
            assert poll_status(record) == ModelStatus.QUEUED

            lost = reap_lost_jobs(conn, timeout_seconds=60)
        finally:
            conn.close()

        assert [job.id for job in lost] == [job_id]
        exit_status = read_exit_status(record)
        assert exit_status is not None
        assert exit_status.exit_code == EXIT_HEARTBEAT_LOST
        assert poll_status(record) == ModelStatus.FAILED

    def test_leaves_other_submissions_alone(self, nmtrack_project: Path, model_dir: Path) -> None:
        """Outputs belonging to a newer submission are not touched."""
        record = create_model(model_dir, "100")
        conn = get_connection(nmtrack_project / ".nmtrack" / "nmtrack.db")
        try:
            job_id = _dead_job(conn, record)
            _submit(record, job_id + 1)

            _ = reap_lost_jobs(conn, timeout_seconds=60)
        finally:
            conn.close()

        assert not (record.output_dir / EXIT_STATUS_FILE).exists()

    def test_wait_for_model_ends(self, nmtrack_project: Path, model_dir: Path) -> None:
        """Waiting on a run whose body died returns instead of polling forever."""
        record = create_model(model_dir, "100")
        conn = get_connection(nmtrack_project / ".nmtrack" / "nmtrack.db")
        try:
            _submit(record, _dead_job(conn, record))
        finally:
            conn.close()

        assert wait_for_model(record, poll_interval=0.05, timeout=10) == ModelStatus.FAILED
