# Copyright (c) Syntropy Systems
"""Main CLI entry point for nmtrack."""

import logging

import typer

from nmtrack.cli.init_cmd import init
from nmtrack.cli.models import describe, new, note, show, star, tag
from nmtrack.cli.report import report, summary
from nmtrack.cli.runs import diff, runs
from nmtrack.cli.status import logs, status
from nmtrack.cli.submit import submit

app = typer.Typer(
    name="nmtrack",
    help=(
        "NONMEM model-run bookkeeping. Track lineage, submit runs, "
        "compare estimates, draw diagnostics."
    ),
    no_args_is_help=True,
    add_completion=False,
)


@app.callback()
def main(
    verbose: bool = typer.Option(
        False,
        "--verbose", "-v",
        help="Log progress to stderr",
    ),
) -> None:
    """NONMEM model-run bookkeeping."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )


# Register commands
_ = app.command()(init)
_ = app.command()(new)
_ = app.command()(describe)
_ = app.command()(note)
_ = app.command()(tag)
_ = app.command()(star)
_ = app.command()(show)
_ = app.command()(runs)
_ = app.command()(diff)
_ = app.command()(submit)
_ = app.command()(status)
_ = app.command()(logs)
_ = app.command()(summary)
_ = app.command()(report)


if __name__ == "__main__":
    app()
