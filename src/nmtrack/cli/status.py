# Copyright (c) Syntropy Systems
"""nmtrack status and logs commands."""
from __future__ import annotations

import time
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from nmtrack.cli.models import DIR_OPTION, STATUS_STYLES
from nmtrack.config import get_db_path, load_config, require_project_dir
from nmtrack.db import get_active_jobs, get_connection
from nmtrack.dispatch import LOG_STREAMS, poll_status, tail_output
from nmtrack.errors import NmtrackError, NotFoundError
from nmtrack.execute import reap_lost_jobs
from nmtrack.outputs import read_submission
from nmtrack.registry import list_models, read_model

if TYPE_CHECKING:
    from nmtrack.models.model import ModelRecord

console = Console()


def format_time_ago(timestamp: Optional[str]) -> str:
    """Format a timestamp as time ago."""
    if not timestamp:
        return "-"

    try:
        ts = datetime.fromisoformat(timestamp.replace("Z", "+00:00"))
    except ValueError:
        return "-"

    total_seconds = int((datetime.now(timezone.utc) - ts).total_seconds())
    if total_seconds < 60:
        return "just now"
    if total_seconds < 3600:
        return f"{total_seconds // 60}m ago"
    if total_seconds < 86400:
        return f"{total_seconds // 3600}h ago"
    return f"{total_seconds // 86400}d ago"


def status(
    model_ids: Optional[list[str]] = typer.Argument(
        None,
        help="Models to show (default: every model in the directory)",
    ),
    jobs: bool = typer.Option(
        False,
        "--jobs",
        help="Show active jobs from the project ledger instead",
    ),
    directory: Path = DIR_OPTION,
) -> None:
    """Show the status of models, as read from their output directories."""
    if jobs:
        _show_jobs(directory)
        return

    try:
        if model_ids:
            records = [read_model(directory, model_id) for model_id in model_ids]
        else:
            records = list_models(directory)
    except NmtrackError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    if not records:
        console.print("[dim]No models found[/dim]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("ID")
    table.add_column("Status")
    table.add_column("Job", style="dim")
    table.add_column("Mode", style="dim")
    table.add_column("Submitted")

    for record in records:
        model_status = poll_status(record)
        style = STATUS_STYLES.get(model_status.value, "white")
        submission = read_submission(record)
        table.add_row(
            record.id,
            f"[{style}]{model_status.value}[/{style}]",
            f"#{submission.job_id}" if submission and submission.job_id else "-",
            submission.mode if submission else "-",
            format_time_ago(submission.submitted_at if submission else None),
        )

    console.print(table)


def _show_jobs(directory: Path) -> None:
    """List queued and running ledger jobs, failing any that stopped heartbeating."""
    try:
        project_dir = require_project_dir(directory)
    except RuntimeError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    config = load_config(project_dir)
    conn = get_connection(get_db_path(project_dir))
    try:
        orphaned = reap_lost_jobs(conn, config.heartbeat_timeout)
        active = get_active_jobs(conn)
    finally:
        conn.close()

    for job in orphaned:
        console.print(f"[yellow]Job #{job.id} (model {job.model_id}) stopped responding; marked failed[/yellow]")

    if not active:
        console.print("[dim]No active jobs[/dim]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("Job", style="dim")
    table.add_column("Model")
    table.add_column("Status")
    table.add_column("Mode", style="dim")
    table.add_column("Host", style="dim")
    table.add_column("Submitted")

    for job in active:
        style = STATUS_STYLES.get(job.status, "white")
        table.add_row(
            f"#{job.id}",
            job.model_id,
            f"[{style}]{job.status}[/{style}]",
            job.mode,
            job.hostname or "-",
            format_time_ago(job.created_at),
        )

    console.print(table)


def logs(
    model_id: str = typer.Argument(..., help="Model id"),
    error: bool = typer.Option(
        False,
        "--error", "-e",
        help="Show the error stream instead of the output log",
    ),
    lines: Optional[int] = typer.Option(
        None,
        "--lines", "-n",
        min=1,
        help="Number of lines (default: from config)",
    ),
    follow: bool = typer.Option(
        False,
        "--follow", "-f",
        help="Keep printing new output until the run ends",
    ),
    directory: Path = DIR_OPTION,
) -> None:
    """Show the tail of a model's estimation output."""
    which = "error" if error else "log"
    try:
        record = read_model(directory, model_id)
    except NmtrackError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    try:
        tail = tail_output(record, which=which, n=lines)
    except NotFoundError:
        model_status = poll_status(record)
        if not follow or model_status.is_terminal or model_status.value == "not-submitted":
            console.print(f"[dim]No {which} output yet (model is {model_status.value})[/dim]")
            return
        tail = []

    for line in tail:
        console.print(escape(line), highlight=False)

    if follow:
        _follow(record, which)


def _follow(record: ModelRecord, which: str) -> None:
    """Print lines appended to the stream until the model reaches a terminal status."""
    poll_interval = min(load_config(start_path=record.directory).poll_interval, 1.0)
    path = record.output_dir / LOG_STREAMS[which]
    position = path.stat().st_size if path.exists() else 0

    try:
        while True:
            if path.exists():
                with path.open(errors="replace") as f:
                    _ = f.seek(position)
                    chunk = f.read()
                    position = f.tell()
                for line in chunk.splitlines():
                    console.print(escape(line), highlight=False)
            if poll_status(record).is_terminal:
                return
            time.sleep(poll_interval)
    except KeyboardInterrupt:
        console.print("\n[dim]Stopped following logs[/dim]")
