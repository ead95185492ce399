"""SQLite submission ledger with WAL mode and atomic operations.

The ledger bounds how many estimations run at once and refuses a second
active submission of the same model. It never decides model status; that
is always read from the output directory.
"""

import json
import socket
import sqlite3
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

from nmtrack.errors import NotFoundError, SubmissionConflictError
from nmtrack.models.db import JobRecord

# SQL schema for the nmtrack ledger
SCHEMA = """
CREATE TABLE IF NOT EXISTS jobs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    model_id TEXT NOT NULL,
    model_path TEXT NOT NULL,     -- Absolute path to the control stream
    mode TEXT DEFAULT 'local',    -- local, cluster
    command_argv TEXT NOT NULL,   -- JSON array of argv tokens
    status TEXT DEFAULT 'queued', -- queued, running, completed, failed
    max_concurrent INTEGER DEFAULT 1,

    -- Timestamps
    created_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    started_at TEXT,
    finished_at TEXT,

    -- Process tracking
    hostname TEXT,
    pid INTEGER,
    heartbeat_at TEXT,

    -- Result
    exit_code INTEGER,
    error_message TEXT,

    cluster_job_id TEXT
);

CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status);
CREATE INDEX IF NOT EXISTS idx_jobs_model_path ON jobs(model_path);
"""


def get_connection(db_path: Path) -> sqlite3.Connection:
    """
    Get a database connection with proper settings for concurrent access.

    - isolation_level=None for explicit transaction control
    - WAL mode for concurrent readers/writers
    - busy_timeout to wait for locks instead of failing immediately
    - Row factory for dict-like access
    """
    conn = sqlite3.connect(str(db_path), timeout=5.0, isolation_level=None)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA busy_timeout=5000")
    conn.row_factory = sqlite3.Row
    return conn


def init_db(db_path: Path) -> None:
    """Initialize the database with the schema."""
    conn = get_connection(db_path)
    try:
        conn.executescript(SCHEMA)
    finally:
        conn.close()


def utcnow() -> str:
    """Get current UTC time as ISO format string."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


# Active with no heartbeat since the cutoff. A local job that never
# heartbeated counts from created_at; a cluster job still waiting in the
# scheduler has no heartbeat yet and is left alone.
_STALE_CLAUSE = """
    status IN ('queued', 'running')
    AND COALESCE(heartbeat_at, CASE WHEN mode = 'local' THEN created_at END) <= ?
"""


def _stale_cutoff(timeout_seconds: int) -> str:
    cutoff_dt = datetime.now(timezone.utc) - timedelta(seconds=timeout_seconds)
    return cutoff_dt.strftime("%Y-%m-%dT%H:%M:%SZ")


def _to_record(row: sqlite3.Row) -> JobRecord:
    return JobRecord.model_validate(dict(row))


# --- Job Operations ---

def create_job(
    conn: sqlite3.Connection,
    model_id: str,
    model_path: str,
    command_argv: list[str],
    mode: str = "local",
    max_concurrent: int = 1,
    stale_after: Optional[int] = None,
) -> int:
    """
    Create a queued job for a model and return its ID.

    Raises SubmissionConflictError if the model already has a queued or
    running job. With stale_after, active jobs for the model whose
    heartbeat is stale by that many seconds are failed first.
    """
    try:
        conn.execute("BEGIN IMMEDIATE")

        if stale_after is not None:
            conn.execute(
                """
                UPDATE jobs
                SET status = 'failed', finished_at = ?,
                    error_message = 'Heartbeat lost'
                WHERE model_path = ? AND """ + _STALE_CLAUSE,
                (utcnow(), model_path, _stale_cutoff(stale_after)),
            )

        active = conn.execute(
            """
            SELECT id FROM jobs
            WHERE model_path = ? AND status IN ('queued', 'running')
            ORDER BY id LIMIT 1
            """,
            (model_path,),
        ).fetchone()
        if active is not None:
            conn.execute("ROLLBACK")
            msg = f"Model {model_id} already has an active submission (job #{active['id']})"
            raise SubmissionConflictError(msg)

        cursor = conn.execute(
            """
            INSERT INTO jobs (model_id, model_path, mode, command_argv, max_concurrent)
            VALUES (?, ?, ?, ?, ?)
            """,
            (model_id, model_path, mode, json.dumps(command_argv), max(1, max_concurrent)),
        )
        conn.execute("COMMIT")
    except SubmissionConflictError:
        raise
    except Exception:
        conn.execute("ROLLBACK")
        raise

    return cursor.lastrowid


def claim_slot(
    conn: sqlite3.Connection,
    job_id: int,
    pid: Optional[int] = None,
    hostname: Optional[str] = None,
) -> bool:
    """
    Atomically move a queued job to running if a slot is free.

    A slot is free when fewer jobs are running than the job's own
    max_concurrent bound. Returns True if the job was claimed.
    """
    try:
        conn.execute("BEGIN IMMEDIATE")

        now = utcnow()
        cursor = conn.execute(
            """
            UPDATE jobs
            SET status = 'running',
                started_at = ?,
                heartbeat_at = ?,
                pid = ?,
                hostname = ?
            WHERE id = ?
              AND status = 'queued'
              AND (SELECT COUNT(*) FROM jobs WHERE status = 'running') < max_concurrent
            RETURNING id
            """,
            (now, now, pid, hostname or socket.gethostname(), job_id),
        )

        row = cursor.fetchone()
        conn.execute("COMMIT")
    except Exception:
        conn.execute("ROLLBACK")
        raise

    return row is not None


def update_job_heartbeat(conn: sqlite3.Connection, job_id: int) -> None:
    """Update the heartbeat timestamp for a job."""
    conn.execute(
        "UPDATE jobs SET heartbeat_at = ? WHERE id = ?",
        (utcnow(), job_id),
    )


def set_cluster_job_id(conn: sqlite3.Connection, job_id: int, cluster_job_id: str) -> None:
    """Store the scheduler's id for a cluster submission."""
    conn.execute(
        "UPDATE jobs SET cluster_job_id = ? WHERE id = ?",
        (cluster_job_id, job_id),
    )


def complete_job(
    conn: sqlite3.Connection,
    job_id: int,
    exit_code: int,
    error_message: Optional[str] = None,
) -> None:
    """Mark a job as completed or failed based on exit code."""
    status = "completed" if exit_code == 0 else "failed"
    conn.execute(
        """
        UPDATE jobs
        SET status = ?, finished_at = ?, exit_code = ?, error_message = ?
        WHERE id = ?
        """,
        (status, utcnow(), exit_code, error_message, job_id),
    )


def get_job(conn: sqlite3.Connection, job_id: int) -> Optional[JobRecord]:
    """Get a job by ID."""
    row = conn.execute(
        "SELECT * FROM jobs WHERE id = ?",
        (job_id,),
    ).fetchone()

    if row is None:
        return None

    return _to_record(row)


def require_job(conn: sqlite3.Connection, job_id: int) -> JobRecord:
    """Get a job by ID or raise NotFoundError."""
    job = get_job(conn, job_id)
    if job is None:
        msg = f"Job #{job_id} not found in ledger"
        raise NotFoundError(msg)
    return job


def get_active_jobs(conn: sqlite3.Connection) -> list[JobRecord]:
    """Get all queued and running jobs."""
    rows = conn.execute(
        """
        SELECT * FROM jobs
        WHERE status IN ('queued', 'running')
        ORDER BY created_at, id
        """
    ).fetchall()

    return [_to_record(row) for row in rows]


def get_jobs_for_model(conn: sqlite3.Connection, model_path: str) -> list[JobRecord]:
    """Get every job for a control stream, newest first."""
    rows = conn.execute(
        "SELECT * FROM jobs WHERE model_path = ? ORDER BY id DESC",
        (model_path,),
    ).fetchall()

    return [_to_record(row) for row in rows]


def count_running(conn: sqlite3.Connection) -> int:
    """Count jobs currently holding a slot."""
    row = conn.execute("SELECT COUNT(*) AS n FROM jobs WHERE status = 'running'").fetchone()
    return int(row["n"])


def get_orphaned_jobs(conn: sqlite3.Connection, timeout_seconds: int = 120) -> list[JobRecord]:
    """
    Find active jobs with stale heartbeats.

    A job is considered orphaned if:
    - Status is 'queued' or 'running'
    - its last heartbeat is at least timeout_seconds old; a local job
      that never heartbeated counts from its creation
    """
    rows = conn.execute(
        "SELECT * FROM jobs WHERE " + _STALE_CLAUSE,
        (_stale_cutoff(timeout_seconds),),
    ).fetchall()

    return [_to_record(row) for row in rows]


def fail_orphaned_jobs(conn: sqlite3.Connection, timeout_seconds: int = 120) -> list[JobRecord]:
    """
    Mark orphaned jobs as failed so their slots are released.

    Returns the jobs that were failed.
    """
    orphaned = get_orphaned_jobs(conn, timeout_seconds)

    now = utcnow()
    for job in orphaned:
        conn.execute(
            """
            UPDATE jobs
            SET status = 'failed', finished_at = ?, error_message = 'Heartbeat lost'
            WHERE id = ?
            """,
            (now, job.id),
        )

    return orphaned
