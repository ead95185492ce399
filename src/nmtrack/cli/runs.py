# Copyright (c) Syntropy Systems
"""nmtrack runs and diff commands."""
from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from nmtrack.cli.models import DIR_OPTION, STATUS_STYLES
from nmtrack.errors import NmtrackError
from nmtrack.runlog import diff_by_id, run_log

console = Console()


def format_float(value: float | None, digits: int = 3) -> str:
    """Format an optional number for a table cell."""
    if value is None:
        return "-"
    return f"{value:.{digits}f}"


def runs(
    tag: Optional[str] = typer.Option(
        None,
        "--tag", "-t",
        help="Only models with this tag",
    ),
    starred: bool = typer.Option(
        False,
        "--starred", "-s",
        help="Only starred models",
    ),
    directory: Path = DIR_OPTION,
) -> None:
    """Show the run log for every model in a directory.

    OFV, AIC and the OFV change against the parent are read from each
    model's estimation output.
    """
    try:
        entries = run_log(directory)
    except NmtrackError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    if tag:
        entries = [e for e in entries if tag in e.tags]
    if starred:
        entries = [e for e in entries if e.star]

    if not entries:
        console.print("[dim]No models found[/dim]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("ID")
    table.add_column("Parent", style="dim")
    table.add_column("Status")
    table.add_column("OFV", justify="right")
    table.add_column("dOFV", justify="right")
    table.add_column("AIC", justify="right")
    table.add_column("Description")
    table.add_column("Tags", style="dim")

    for entry in entries:
        style = STATUS_STYLES.get(entry.status.value, "white")
        model_id = f"{entry.id} [yellow]*[/yellow]" if entry.star else entry.id
        status = f"[{style}]{entry.status.value}[/{style}]"
        if entry.stale:
            status += " [yellow](stale)[/yellow]"

        delta = format_float(entry.delta_ofv)
        if entry.delta_ofv is not None and entry.delta_ofv < 0:
            delta = f"[green]{delta}[/green]"

        table.add_row(
            model_id,
            entry.parent_id or "-",
            status,
            format_float(entry.ofv),
            delta,
            format_float(entry.aic),
            entry.description or "-",
            ", ".join(entry.tags) or "-",
        )

    console.print(table)


def diff(
    model_a: str = typer.Argument(..., help="First model id"),
    model_b: str = typer.Argument(..., help="Second model id"),
    definition: bool = typer.Option(
        True,
        "--definition/--no-definition",
        help="Show the control stream diff",
    ),
    directory: Path = DIR_OPTION,
) -> None:
    """Compare two models: control streams and parameter estimates.

    Example:
        nmtrack diff 100 101

    """
    try:
        result = diff_by_id(directory, model_a, model_b)
    except NmtrackError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    console.print(f"\n[bold]Comparing {result.id_a} and {result.id_b}[/bold]\n")

    if definition:
        if result.definitions_identical:
            console.print("[dim]Control streams are identical[/dim]")
        else:
            for line in result.definition_diff:
                style = {"+": "green", "-": "red", "@": "cyan"}.get(line[:1])
                if style and not line.startswith(("+++", "---")):
                    console.print(f"[{style}]{escape(line)}[/{style}]", highlight=False)
                else:
                    console.print(line, highlight=False, markup=False)

    if not result.comparable:
        console.print(f"\n[yellow]Estimates not compared:[/yellow] {result.reason or 'unknown reason'}")
        return

    console.print(
        f"\n[dim]OFV:[/dim] {format_float(result.ofv_a)} -> {format_float(result.ofv_b)}"
        f" (change {format_float(result.delta_ofv)})"
    )

    table = Table(show_header=True, header_style="bold")
    table.add_column("Parameter", style="dim")
    table.add_column(result.id_a, justify="right")
    table.add_column(result.id_b, justify="right")
    table.add_column("Change %", justify="right")

    for param in result.parameters:
        pct = param.percent_change
        table.add_row(
            param.name,
            f"{param.estimate_a:.4g}",
            f"{param.estimate_b:.4g}",
            f"{pct:+.1f}" if pct is not None else "-",
        )

    console.print(table)
