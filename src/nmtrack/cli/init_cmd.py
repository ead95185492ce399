# Copyright (c) Syntropy Systems
"""nmtrack init command."""

from pathlib import Path

import typer
import yaml
from rich.console import Console

from nmtrack.config import PROJECT_DIR_NAME, NmtrackConfig, get_db_path
from nmtrack.db import init_db

console = Console()


def init(
    path: Path = typer.Argument(
        Path(),
        help="Directory to initialize (default: current directory)",
    ),
) -> None:
    """Initialize a new nmtrack project.

    Creates a .nmtrack directory with configuration and the submission ledger.
    Model directories anywhere below it share that project.
    """
    target = path.resolve()
    project_dir = target / PROJECT_DIR_NAME

    if project_dir.exists():
        console.print(f"[yellow]Already initialized:[/yellow] {project_dir}")
        return

    project_dir.mkdir(parents=True)

    config_path = project_dir / "config.yaml"
    with config_path.open("w") as f:
        yaml.dump(NmtrackConfig().to_dict(), f, default_flow_style=False, sort_keys=False)

    db_path = get_db_path(project_dir)
    init_db(db_path)

    console.print(f"[green]Initialized nmtrack project:[/green] {project_dir}")
    console.print(f"  [dim]config:[/dim] {config_path}")
    console.print(f"  [dim]database:[/dim] {db_path}")
