# Copyright (c) Syntropy Systems
"""nmtrack submit command."""
from __future__ import annotations

import shlex
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console

from nmtrack.cli.models import DIR_OPTION, STATUS_STYLES
from nmtrack.dispatch import SUBMIT_MODES, poll_status, submit_models
from nmtrack.errors import NmtrackError
from nmtrack.registry import read_model

console = Console()


def _parse_options(options: list[str]) -> dict[str, object]:
    """Turn KEY=VALUE strings into engine options; a bare KEY is a flag."""
    parsed: dict[str, object] = {}
    for item in options:
        key, sep, value = item.partition("=")
        key = key.strip().lstrip("-")
        if not key:
            console.print(f"[red]Error:[/red] Invalid option: {item!r}")
            raise typer.Exit(1)
        parsed[key] = value if sep else True
    return parsed


def submit(
    model_ids: list[str] = typer.Argument(..., help="Models to submit"),
    mode: str = typer.Option(
        "local",
        "--mode",
        help=f"Where to run: {', '.join(SUBMIT_MODES)}",
    ),
    wait: bool = typer.Option(
        False,
        "--wait", "-w",
        help="Block until every model has finished or failed",
    ),
    overwrite: bool = typer.Option(
        False,
        "--overwrite",
        help="Replace existing output directories",
    ),
    threads: int = typer.Option(
        1,
        "--threads", "-n",
        min=1,
        help="Nodes for parallel estimation (needs a configured parafile)",
    ),
    max_concurrent: Optional[int] = typer.Option(
        None,
        "--max-concurrent", "-j",
        min=1,
        help="Estimations allowed to run at once (default: from config)",
    ),
    option: Optional[list[str]] = typer.Option(
        None,
        "--option", "-o",
        help="Extra engine option as KEY=VALUE (repeatable)",
    ),
    directory: Path = DIR_OPTION,
) -> None:
    """Submit models for estimation.

    Example:
        nmtrack submit 100 101 102 --overwrite -j 2

    """
    resources: dict[str, object] = {"overwrite": overwrite, "threads": threads}
    resources.update(_parse_options(option or []))

    try:
        records = [read_model(directory, model_id) for model_id in model_ids]
    except NmtrackError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    try:
        submissions = submit_models(
            records,
            mode=mode,
            wait=wait,
            resources=resources,
            max_concurrent=max_concurrent,
        )
    except NmtrackError as e:
        console.print(f"[red]Error:[/red] {e}")
        console.print("[dim]Models that were accepted keep running; see 'nmtrack status'[/dim]")
        raise typer.Exit(1) from e

    failed = False
    for record in records:
        submission = submissions[record.id]
        console.print(f"[green]Submitted model {record.id}[/green] as job #{submission.job_id}")
        console.print(f"  [dim]command:[/dim] {shlex.join(submission.command_argv)}")
        if submission.cluster_job_id:
            console.print(f"  [dim]cluster job:[/dim] {submission.cluster_job_id}")
        if wait:
            status = poll_status(record)
            style = STATUS_STYLES.get(status.value, "white")
            console.print(f"  [dim]status:[/dim] [{style}]{status.value}[/{style}]")
            failed = failed or status.value != "finished"

    if failed:
        raise typer.Exit(1)
