# Copyright (c) Syntropy Systems
"""Execution dispatcher: submit models, infer their status, read their logs."""
from __future__ import annotations

import logging
import shlex
import shutil
import socket
import subprocess
import sys
import time
from collections import deque
from typing import TYPE_CHECKING, Optional

from pydantic import ValidationError

from nmtrack.config import NmtrackConfig, find_project_dir, get_db_path, load_config
from nmtrack.db import complete_job, create_job, get_connection, set_cluster_job_id
from nmtrack.errors import (
    BackendError,
    ConfigError,
    ModelExistsError,
    NmtrackError,
    NotFoundError,
)
from nmtrack.execute import EXIT_NOT_STARTED, reap_lost_jobs, run_job
from nmtrack.models.model import ModelStatus
from nmtrack.models.output import ExitStatus, ResourceOptions, SubmissionMeta
from nmtrack.outputs import (
    DISPATCH_LOG,
    ERROR_LOG,
    EXIT_STATUS_FILE,
    JOB_SCRIPT,
    OUTPUT_LOG,
    SUBMISSION_FILE,
    read_execution,
    read_exit_status,
    read_submission,
    write_json,
)
from nmtrack.registry import definition_md5, utcnow
from nmtrack.runner import JobRunner, pid_alive

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping
    from pathlib import Path

    from nmtrack.models.base import JSONValue
    from nmtrack.models.model import ModelRecord

logger = logging.getLogger(__name__)

SUBMIT_MODES = ("local", "cluster")
LOG_STREAMS = {"log": OUTPUT_LOG, "error": ERROR_LOG}


def _project_dir_for(record: ModelRecord, project_dir: Path | None) -> Path:
    if project_dir is not None:
        return project_dir
    found = find_project_dir(record.directory)
    if found is None:
        msg = f"Model {record.id}: no .nmtrack directory above {record.directory}. Run 'nmtrack init' first."
        raise ConfigError(msg)
    return found


def _parse_resources(resources: Mapping[str, JSONValue] | ResourceOptions | None) -> ResourceOptions:
    if isinstance(resources, ResourceOptions):
        return resources
    try:
        return ResourceOptions.model_validate(dict(resources or {}))
    except ValidationError as e:
        msg = f"Invalid submission resources: {e}"
        raise ConfigError(msg) from e


def build_command(
    record: ModelRecord,
    config: NmtrackConfig,
    options: ResourceOptions,
) -> list[str]:
    """Build the engine argv, run from inside the output directory."""
    argv = [*config.nmfe_command, f"{record.id}.ctl", f"{record.id}.lst"]

    if options.use_parallel:
        if not config.parafile:
            msg = f"Model {record.id}: parallel execution requested but no 'parafile' is configured"
            raise ConfigError(msg)
        argv.append(f"-parafile={config.parafile}")
        argv.append(f"[nodes]={options.threads}")

    for key, value in options.passthrough.items():
        if value is True:
            argv.append(f"-{key}")
        elif value is False or value is None:
            continue
        else:
            argv.append(f"-{key}={value}")

    return argv


def _prepare_output_dir(record: ModelRecord, overwrite: bool) -> None:  # noqa: FBT001
    output_dir = record.output_dir
    if output_dir.exists():
        if not overwrite:
            msg = f"Model {record.id}: output directory {output_dir} exists; pass overwrite=True to replace it"
            raise ModelExistsError(msg)
        shutil.rmtree(output_dir)
    output_dir.mkdir(parents=True)
    _ = shutil.copy2(record.definition_path, output_dir / f"{record.id}.ctl")


def _record_failure(record: ModelRecord, db_path: Path, job_id: int, exit_code: int, message: str) -> None:
    write_json(
        record.output_dir / EXIT_STATUS_FILE,
        ExitStatus(exit_code=exit_code, finished_at=utcnow(), error_message=message),
    )
    conn = get_connection(db_path)
    try:
        complete_job(conn, job_id, exit_code=exit_code, error_message=message)
    finally:
        conn.close()


def _execute_argv(record: ModelRecord, job_id: int, project_dir: Path) -> list[str]:
    return [
        sys.executable,
        "-m",
        "nmtrack.execute",
        str(record.definition_path),
        "--job-id",
        str(job_id),
        "--project-dir",
        str(project_dir),
    ]


def _launch_local(record: ModelRecord, job_id: int, project_dir: Path, db_path: Path) -> None:
    """Start the job body as a detached process that outlives the caller."""
    runner = JobRunner(
        command_argv=_execute_argv(record, job_id, project_dir),
        workdir=record.output_dir,
        output_path=record.output_dir / DISPATCH_LOG,
        die_with_parent=False,
    )
    try:
        runner.start()
    except OSError as e:
        message = f"Could not launch job body: {e}"
        _record_failure(record, db_path, job_id, EXIT_NOT_STARTED, message)
        msg = f"Model {record.id}: {message}"
        raise BackendError(msg) from e
    logger.info("Model %s: launched job #%s (pid %s)", record.id, job_id, runner.pid)
    runner.detach()


def _launch_cluster(
    record: ModelRecord,
    job_id: int,
    project_dir: Path,
    db_path: Path,
    config: NmtrackConfig,
) -> str | None:
    """Hand a job script to the cluster scheduler and return its job id."""
    script_path = record.output_dir / JOB_SCRIPT
    script = "\n".join(
        [
            "#!/bin/bash",
            f"# nmtrack job #{job_id} for model {record.id}",
            f"cd {shlex.quote(str(record.output_dir))}",
            "exec " + shlex.join(_execute_argv(record, job_id, project_dir)),
            "",
        ]
    )
    _ = script_path.write_text(script)
    script_path.chmod(0o755)

    argv = [*config.cluster_submit_command, str(script_path)]
    try:
        result = subprocess.run(  # noqa: S603
            argv,
            capture_output=True,
            text=True,
            check=False,
            cwd=str(record.output_dir),
        )
    except OSError as e:
        message = f"Cluster submission command failed to start: {e}"
        _record_failure(record, db_path, job_id, EXIT_NOT_STARTED, message)
        msg = f"Model {record.id}: {message}"
        raise BackendError(msg) from e

    if result.returncode != 0:
        detail = result.stderr.strip() or result.stdout.strip() or "no output"
        message = f"Cluster rejected submission (exit {result.returncode}): {detail}"
        _record_failure(record, db_path, job_id, result.returncode, message)
        msg = f"Model {record.id}: {message}"
        raise BackendError(msg)

    cluster_job_id = result.stdout.strip().split(";")[0] or None
    logger.info("Model %s: cluster accepted job #%s as %s", record.id, job_id, cluster_job_id)
    return cluster_job_id


def submit_model(  # noqa: PLR0913
    record: ModelRecord,
    mode: str = "local",
    wait: bool = False,  # noqa: FBT001, FBT002
    resources: Mapping[str, JSONValue] | ResourceOptions | None = None,
    config: NmtrackConfig | None = None,
    project_dir: Path | None = None,
    max_concurrent: Optional[int] = None,
) -> SubmissionMeta:
    """Submit a model for estimation.

    Args:
        record: The model to run
        mode: "local" to run on this host, "cluster" to hand a job script
            to the configured scheduler command
        wait: Block until the run reaches a terminal status
        resources: overwrite, parallel, threads; other keys are passed to
            the engine as -key=value
        config: Overrides the project config
        project_dir: The .nmtrack directory, found from the model directory
            if None
        max_concurrent: Bound on simultaneously running estimations for
            this job, defaults to the config value

    Returns:
        The submission record written to submission.json

    Raises:
        NotFoundError: the definition file is missing
        ModelExistsError: outputs exist and overwrite was not requested
        SubmissionConflictError: the model already has an active submission
        BackendError: the backend did not accept the job
        ConfigError: bad mode, resources or project setup

    """
    if mode not in SUBMIT_MODES:
        msg = f"Unknown submission mode {mode!r}; expected one of {', '.join(SUBMIT_MODES)}"
        raise ConfigError(msg)
    if not record.definition_path.exists():
        msg = f"Model {record.id}: definition file not found at {record.definition_path}"
        raise NotFoundError(msg)

    project_dir = _project_dir_for(record, project_dir)
    config = config or load_config(project_dir)
    options = _parse_resources(resources)
    argv = build_command(record, config, options)

    if record.output_dir.exists() and not options.overwrite:
        msg = f"Model {record.id}: output directory {record.output_dir} exists; pass overwrite=True to replace it"
        raise ModelExistsError(msg)

    db_path = get_db_path(project_dir)
    conn = get_connection(db_path)
    try:
        job_id = create_job(
            conn,
            model_id=record.id,
            model_path=str(record.definition_path),
            command_argv=argv,
            mode=mode,
            max_concurrent=max_concurrent or config.max_concurrent,
            stale_after=config.heartbeat_timeout,
        )
    finally:
        conn.close()

    try:
        _prepare_output_dir(record, options.overwrite)
    except (OSError, NmtrackError) as e:
        conn = get_connection(db_path)
        try:
            complete_job(conn, job_id, exit_code=EXIT_NOT_STARTED, error_message=str(e))
        finally:
            conn.close()
        raise

    submission = SubmissionMeta(
        model_id=record.id,
        job_id=job_id,
        mode=mode,
        command_argv=argv,
        submitted_at=utcnow(),
        definition_md5=definition_md5(record.definition_path),
        resources=options.model_dump(mode="json"),
    )
    write_json(record.output_dir / SUBMISSION_FILE, submission)
    logger.info("Model %s: submitted as job #%s (%s)", record.id, job_id, mode)

    if mode == "local":
        if wait:
            _ = run_job(record, job_id, project_dir, config)
        else:
            _launch_local(record, job_id, project_dir, db_path)
        return submission

    cluster_job_id = _launch_cluster(record, job_id, project_dir, db_path, config)
    if cluster_job_id:
        submission.cluster_job_id = cluster_job_id
        write_json(record.output_dir / SUBMISSION_FILE, submission)
        conn = get_connection(db_path)
        try:
            set_cluster_job_id(conn, job_id, cluster_job_id)
        finally:
            conn.close()

    if wait:
        _ = wait_for_model(record, poll_interval=config.poll_interval)
    return submission


def submit_models(  # noqa: PLR0913
    records: Iterable[ModelRecord],
    mode: str = "local",
    wait: bool = False,  # noqa: FBT001, FBT002
    resources: Mapping[str, JSONValue] | ResourceOptions | None = None,
    config: NmtrackConfig | None = None,
    project_dir: Path | None = None,
    max_concurrent: Optional[int] = None,
) -> dict[str, SubmissionMeta]:
    """Submit several models; at most max_concurrent estimations run at once.

    Every model is submitted without blocking; the job bodies queue on the
    ledger for a slot. With wait=True this returns once every accepted
    model has reached a terminal status. Models that could not be
    submitted are reported together in one BackendError after the rest
    were handled.
    """
    record_list = list(records)
    options = _parse_resources(resources)
    accepted: dict[str, SubmissionMeta] = {}
    failures: list[str] = []

    for record in record_list:
        try:
            accepted[record.id] = submit_model(
                record,
                mode=mode,
                wait=False,
                resources=options,
                config=config,
                project_dir=project_dir,
                max_concurrent=max_concurrent,
            )
        except NmtrackError as e:
            logger.error("Submission of model %s failed: %s", record.id, e)  # noqa: TRY400
            failures.append(str(e))

    if wait and accepted:
        if config is None:
            start = record_list[0].directory
            config = load_config(project_dir) if project_dir else load_config(start_path=start)
        for record in record_list:
            if record.id in accepted:
                _ = wait_for_model(record, poll_interval=config.poll_interval)

    if failures:
        msg = f"{len(failures)} of {len(record_list)} submission(s) failed: " + "; ".join(failures)
        raise BackendError(msg)
    return accepted


def poll_status(record: ModelRecord) -> ModelStatus:
    """Infer a model's status from its output directory. Never blocks.

    - no submission.json: not submitted
    - exit_status.json: finished only if the engine exited 0, wrote nothing
      to the error stream and left both the listing and the estimates file;
      failed otherwise
    - execution.json: running, unless it names a dead process on this host
    - otherwise queued
    """
    output_dir = record.output_dir
    if not (output_dir / SUBMISSION_FILE).exists():
        return ModelStatus.NOT_SUBMITTED

    exit_status = read_exit_status(record)
    if exit_status is not None:
        if exit_status.exit_code != 0:
            return ModelStatus.FAILED
        error_log = output_dir / ERROR_LOG
        if error_log.exists() and error_log.read_text().strip():
            return ModelStatus.FAILED
        for suffix in (".lst", ".ext"):
            if not (output_dir / f"{record.id}{suffix}").exists():
                return ModelStatus.FAILED
        return ModelStatus.FINISHED

    if (output_dir / EXIT_STATUS_FILE).exists():
        # Present but unreadable
        return ModelStatus.FAILED

    execution = read_execution(record)
    if execution is not None:
        if execution.hostname == socket.gethostname() and not pid_alive(execution.pid):
            return ModelStatus.FAILED
        return ModelStatus.RUNNING

    return ModelStatus.QUEUED


def submission_info(record: ModelRecord) -> SubmissionMeta:
    """Return the submission record, NotFoundError if never submitted."""
    submission = read_submission(record)
    if submission is None:
        msg = f"Model {record.id}: not submitted (no {SUBMISSION_FILE} in {record.output_dir})"
        raise NotFoundError(msg)
    return submission


def wait_for_model(
    record: ModelRecord,
    poll_interval: float = 5.0,
    timeout: float | None = None,
) -> ModelStatus:
    """Poll until the model reaches a terminal status or timeout elapses.

    Jobs in the project ledger that stopped heartbeating are failed on
    every pass, so a run whose job body died still ends. Returns the last
    observed status.
    """
    project_dir = find_project_dir(record.directory)
    heartbeat_timeout = load_config(project_dir).heartbeat_timeout if project_dir else None
    deadline = None if timeout is None else time.time() + timeout
    while True:
        if project_dir is not None and heartbeat_timeout is not None:
            conn = get_connection(get_db_path(project_dir))
            try:
                _ = reap_lost_jobs(conn, heartbeat_timeout)
            finally:
                conn.close()
        status = poll_status(record)
        if status.is_terminal or status is ModelStatus.NOT_SUBMITTED:
            return status
        if deadline is not None and time.time() >= deadline:
            return status
        time.sleep(poll_interval)


def tail_output(record: ModelRecord, which: str = "log", n: int | None = None) -> list[str]:
    """Return the last n lines of the engine's output or error stream.

    Raises NotFoundError if the run has not produced that stream yet.
    """
    if which not in LOG_STREAMS:
        msg = f"Unknown stream {which!r}; expected one of {', '.join(LOG_STREAMS)}"
        raise ValueError(msg)
    if n is None:
        n = load_config(start_path=record.directory).tail_lines

    path = record.output_dir / LOG_STREAMS[which]
    if not path.exists():
        msg = f"Model {record.id}: no {which} stream yet at {path}"
        raise NotFoundError(msg)

    with path.open(errors="replace") as f:
        lines = deque((line.rstrip("\n") for line in f), maxlen=max(n, 0))
    return list(lines)
