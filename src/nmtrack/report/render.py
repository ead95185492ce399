# Copyright (c) Syntropy Systems
"""Write diagnostic figures to disk as images or a single HTML page."""
from __future__ import annotations

import base64
import io
import logging
import os
from pathlib import Path
from typing import TYPE_CHECKING, Iterable

from jinja2 import Environment, FileSystemLoader, select_autoescape

from nmtrack.errors import ConfigError, IntegrityError, NotFoundError
from nmtrack.registry import utcnow
from nmtrack.report.dataspec import load_data_spec
from nmtrack.report.figures import summarize
from nmtrack.report.join import nm_join
from nmtrack.summary import model_summary

if TYPE_CHECKING:
    from matplotlib.figure import Figure

    from nmtrack.models.model import ModelRecord
    from nmtrack.models.output import ModelSummary

logger = logging.getLogger(__name__)

REPORT_DIR = Path(__file__).parent
TEMPLATES_DIR = REPORT_DIR / "templates"
IMAGE_FORMATS = ("png", "pdf", "svg")
REPORT_FORMATS = (*IMAGE_FORMATS, "html")
HTML_REPORT = "report.html"

_env = Environment(
    loader=FileSystemLoader(str(TEMPLATES_DIR)),
    autoescape=select_autoescape(["html", "j2"]),
    trim_blocks=True,
    lstrip_blocks=True,
)


def format_number(value: float | None, digits: int = 4) -> str:
    """Format a number for the HTML report."""
    if value is None:
        return "-"
    return f"{value:.{digits}g}"


_env.filters["format_number"] = format_number


def _normalize_formats(formats: str | Iterable[str]) -> list[str]:
    if isinstance(formats, str):
        formats = [formats]
    normalized = [f.lower().lstrip(".") for f in formats]
    unknown = [f for f in normalized if f not in REPORT_FORMATS]
    if unknown:
        msg = f"Unknown report format(s): {', '.join(unknown)} (choose from {', '.join(REPORT_FORMATS)})"
        raise ConfigError(msg)
    if not normalized:
        msg = "No report format requested"
        raise ConfigError(msg)
    # Keep order, drop repeats
    return list(dict.fromkeys(normalized))


def _prepare_destination(destination: Path) -> None:
    if destination.exists() and not destination.is_dir():
        msg = f"Report destination is not a directory: {destination}"
        raise ConfigError(msg)
    try:
        destination.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        msg = f"Cannot create report destination {destination}: {e}"
        raise ConfigError(msg) from e
    if not os.access(destination, os.W_OK):
        msg = f"Report destination is not writable: {destination}"
        raise ConfigError(msg)


def _png_base64(fig: Figure, dpi: int) -> str:
    buf = io.BytesIO()
    fig.savefig(buf, format="png", dpi=dpi, bbox_inches="tight")
    return base64.b64encode(buf.getvalue()).decode("ascii")


def render(
    figures: dict[str, Figure],
    destination: Path | str,
    formats: str | Iterable[str] = ("png",),
    title: str | None = None,
    summary: ModelSummary | None = None,
    dpi: int = 150,
) -> list[Path]:
    """Write figures under destination and return the paths written.

    Image formats produce one ``name.fmt`` per figure. ``html`` produces
    a single report.html with the figures embedded as PNG.

    Raises:
        ConfigError: unknown format, or a destination that is not a
            writable directory

    """
    formats = _normalize_formats(formats)
    destination = Path(destination)
    _prepare_destination(destination)

    written: list[Path] = []
    try:
        for fmt in formats:
            if fmt == "html":
                continue
            for name, fig in figures.items():
                path = destination / f"{name}.{fmt}"
                fig.savefig(path, format=fmt, dpi=dpi, bbox_inches="tight")
                written.append(path)

        if "html" in formats:
            template = _env.get_template("report.html.j2")
            html = template.render(
                title=title or "Model diagnostics",
                generated_at=utcnow(),
                summary=summary,
                figures=[(name, _png_base64(fig, dpi)) for name, fig in figures.items()],
            )
            path = destination / HTML_REPORT
            _ = path.write_text(html)
            written.append(path)
    except OSError as e:
        msg = f"Cannot write report to {destination}: {e}"
        raise ConfigError(msg) from e

    logger.info("Wrote %d report file(s) to %s", len(written), destination)
    return written


def model_report(  # noqa: PLR0913
    record: ModelRecord,
    spec_path: Path | str,
    destination: Path | str | None = None,
    formats: str | Iterable[str] = ("png",),
    figures: list[str] | None = None,
    data_path: Path | str | None = None,
) -> list[Path]:
    """Join, summarize and render in one step for a registered model.

    The destination defaults to ``report/`` inside the model's output
    directory.
    """
    # Fail on bad formats before the join does any work
    formats = _normalize_formats(formats)
    spec = load_data_spec(spec_path)
    joined = nm_join(record, data_path=data_path)
    drawn = summarize(joined, spec, figures=figures)

    summary = None
    if "html" in formats:
        try:
            summary = model_summary(record)
        except (NotFoundError, IntegrityError):
            logger.debug("Model %s: no summary for report", record.id, exc_info=True)

    title = f"Model {record.id}"
    if record.description:
        title += f": {record.description}"
    return render(
        drawn,
        destination if destination is not None else record.output_dir / "report",
        formats=formats,
        title=title,
        summary=summary,
    )
