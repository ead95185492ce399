# Copyright (c) Syntropy Systems
"""Commands that create and annotate models."""
from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer
from rich.console import Console

from nmtrack.dispatch import poll_status
from nmtrack.errors import NmtrackError
from nmtrack.registry import (
    add_notes,
    add_tags,
    create_model,
    model_lineage,
    read_model,
    remove_tags,
    replace_description,
    set_star,
)

console = Console()

STATUS_STYLES = {
    "not-submitted": "dim",
    "queued": "yellow",
    "running": "blue",
    "finished": "green",
    "failed": "red",
}

DIR_OPTION = typer.Option(
    Path(),
    "--dir", "-d",
    help="Model directory (default: current directory)",
)


def _split(value: Optional[str]) -> list[str]:
    if not value:
        return []
    return [t.strip() for t in value.split(",") if t.strip()]


def new(
    model_id: str = typer.Argument(..., help="Id of the new model"),
    based_on: Optional[str] = typer.Option(
        None,
        "--based-on", "-b",
        help="Parent model to copy the control stream from",
    ),
    description: Optional[str] = typer.Option(
        None,
        "--description", "-m",
        help="One-line description",
    ),
    tags: Optional[str] = typer.Option(
        None,
        "--tags", "-t",
        help="Comma-separated tags",
    ),
    overwrite: bool = typer.Option(
        False,
        "--overwrite",
        help="Replace an existing model with the same id",
    ),
    inherit_tags: bool = typer.Option(
        True,
        "--inherit-tags/--no-inherit-tags",
        help="Carry the parent's tags over",
    ),
    directory: Path = DIR_OPTION,
) -> None:
    """Create a model, from a starter control stream or a parent.

    Example:
        nmtrack new 101 --based-on 100 -m "add WT on CL"

    """
    try:
        record = create_model(
            directory,
            model_id,
            parent=based_on,
            overwrite=overwrite,
            description=description,
            tags=_split(tags),
            inherit_tags=inherit_tags,
        )
    except NmtrackError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    console.print(f"[green]Created model {record.id}[/green]")
    console.print(f"  [dim]definition:[/dim] {record.definition_path}")
    if record.parent_id:
        console.print(f"  [dim]based on:[/dim] {record.parent_id}")
    if record.tags:
        console.print(f"  [dim]tags:[/dim] {', '.join(record.tags)}")


def describe(
    model_id: str = typer.Argument(..., help="Model id"),
    description: str = typer.Argument(..., help="New description"),
    directory: Path = DIR_OPTION,
) -> None:
    """Replace a model's description."""
    try:
        _ = replace_description(read_model(directory, model_id), description)
    except NmtrackError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e
    console.print(f"[green]Updated description of model {model_id}[/green]")


def note(
    model_id: str = typer.Argument(..., help="Model id"),
    text: str = typer.Argument(..., help="Note to append"),
    directory: Path = DIR_OPTION,
) -> None:
    """Append a note to a model."""
    try:
        record = add_notes(read_model(directory, model_id), text)
    except NmtrackError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e
    console.print(f"[green]Model {model_id} now has {len(record.notes)} note(s)[/green]")


def tag(
    model_id: str = typer.Argument(..., help="Model id"),
    tags: list[str] = typer.Argument(..., help="Tags to add"),
    remove: bool = typer.Option(
        False,
        "--remove", "-r",
        help="Remove the tags instead of adding them",
    ),
    directory: Path = DIR_OPTION,
) -> None:
    """Add or remove tags on a model."""
    try:
        record = read_model(directory, model_id)
        record = remove_tags(record, tags) if remove else add_tags(record, tags)
    except NmtrackError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e
    console.print(f"[green]Model {model_id} tags:[/green] {', '.join(record.tags) or '-'}")


def star(
    model_id: str = typer.Argument(..., help="Model id"),
    unstar: bool = typer.Option(
        False,
        "--unstar",
        help="Clear the star instead of setting it",
    ),
    directory: Path = DIR_OPTION,
) -> None:
    """Star (or unstar) a model."""
    try:
        record = set_star(read_model(directory, model_id), not unstar)
    except NmtrackError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e
    state = "starred" if record.starred else "unstarred"
    console.print(f"[green]Model {model_id} {state}[/green]")


def show(
    model_id: str = typer.Argument(..., help="Model id"),
    directory: Path = DIR_OPTION,
) -> None:
    """Show a model's annotations, lineage and status."""
    try:
        record = read_model(directory, model_id)
        lineage = model_lineage(record)
    except NmtrackError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    status = poll_status(record)
    style = STATUS_STYLES.get(status.value, "white")

    star_mark = " [yellow]*[/yellow]" if record.starred else ""
    console.print(f"\n[bold]Model {record.id}[/bold]{star_mark}")
    console.print(f"  [dim]description:[/dim] {record.description or '-'}")
    console.print(f"  [dim]status:[/dim] [{style}]{status.value}[/{style}]")
    console.print(f"  [dim]definition:[/dim] {record.definition_path}")
    if lineage:
        console.print(f"  [dim]lineage:[/dim] {' <- '.join([record.id, *lineage])}")
    if len(record.meta.based_on) > 1:
        console.print(f"  [dim]based on:[/dim] {', '.join(record.meta.based_on)}")
    if record.tags:
        console.print(f"  [dim]tags:[/dim] {', '.join(record.tags)}")
    if record.meta.created_at:
        console.print(f"  [dim]created:[/dim] {record.meta.created_at}")

    if record.notes:
        console.print("\n[bold]Notes[/bold]")
        for text in record.notes:
            console.print(f"  - {text}")

    console.print()
