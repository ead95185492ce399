# Copyright (c) Syntropy Systems
"""nmtrack summary and report commands."""
from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from nmtrack.cli.models import DIR_OPTION
from nmtrack.errors import NmtrackError
from nmtrack.registry import read_model
from nmtrack.report.render import model_report
from nmtrack.summary import model_summary

console = Console()


def _fmt(value: float | None, spec: str = ".4g") -> str:
    return "-" if value is None else format(value, spec)


def summary(
    model_id: str = typer.Argument(..., help="Model id"),
    directory: Path = DIR_OPTION,
) -> None:
    """Show OFV, termination and parameter estimates of a finished run."""
    try:
        result = model_summary(read_model(directory, model_id))
    except NmtrackError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    console.print(f"\n[bold]Model {result.model_id}[/bold]")
    console.print(f"  [dim]OFV:[/dim] {_fmt(result.ofv, '.3f')}")
    console.print(f"  [dim]AIC:[/dim] {_fmt(result.aic, '.3f')}")
    if result.estimation_method:
        console.print(f"  [dim]method:[/dim] {result.estimation_method}")
    if result.minimization_successful is not None:
        text = "[green]successful[/green]" if result.minimization_successful else "[red]terminated[/red]"
        console.print(f"  [dim]minimization:[/dim] {text}")
    if result.covariance_step is not None:
        console.print(f"  [dim]covariance step:[/dim] {'yes' if result.covariance_step else 'no'}")
    if result.n_subjects is not None:
        console.print(f"  [dim]subjects:[/dim] {result.n_subjects}")
    if result.n_observations is not None:
        console.print(f"  [dim]observations:[/dim] {result.n_observations}")

    if result.parameters:
        table = Table(show_header=True, header_style="bold")
        table.add_column("Parameter", style="dim")
        table.add_column("Estimate", justify="right")
        table.add_column("SE", justify="right")
        table.add_column("RSE %", justify="right")
        table.add_column("Fixed")
        for param in result.parameters:
            table.add_row(
                param.name,
                _fmt(param.estimate),
                _fmt(param.stderr),
                _fmt(param.rse, ".1f"),
                "yes" if param.fixed else "",
            )
        console.print(table)
    console.print()


def report(
    model_id: str = typer.Argument(..., help="Model id"),
    spec: Path = typer.Option(
        ...,
        "--spec", "-s",
        help="YAML data spec with column labels and covariate flags",
    ),
    out: Optional[Path] = typer.Option(
        None,
        "--out", "-o",
        help="Destination directory (default: report/ in the output directory)",
    ),
    formats: Optional[list[str]] = typer.Option(
        None,
        "--format", "-f",
        help="png, pdf, svg or html (repeatable, default png)",
    ),
    figures: Optional[list[str]] = typer.Option(
        None,
        "--figure",
        help="Figure to draw (repeatable, default: the standard set)",
    ),
    data: Optional[Path] = typer.Option(
        None,
        "--data",
        help="Input dataset (default: from the $DATA record)",
    ),
    directory: Path = DIR_OPTION,
) -> None:
    """Draw diagnostic figures for a finished run.

    Example:
        nmtrack report 101 --spec data/spec.yaml -f png -f html

    """
    try:
        written = model_report(
            read_model(directory, model_id),
            spec,
            destination=out,
            formats=formats or ["png"],
            figures=figures or None,
            data_path=data,
        )
    except NmtrackError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    console.print(f"[green]Wrote {len(written)} file(s)[/green]")
    for path in written:
        console.print(f"  [dim]-[/dim] {path}")
