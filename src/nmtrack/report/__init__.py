"""Diagnostic reports: join output tables to data, draw and render figures."""

from nmtrack.report.dataspec import DataSpec, load_data_spec
from nmtrack.report.figures import DEFAULT_FIGURES, summarize
from nmtrack.report.join import JoinedDataset, nm_join
from nmtrack.report.render import model_report, render

__all__ = [
    "DEFAULT_FIGURES",
    "DataSpec",
    "JoinedDataset",
    "load_data_spec",
    "model_report",
    "nm_join",
    "render",
    "summarize",
]
