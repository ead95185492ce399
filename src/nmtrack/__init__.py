"""
nmtrack - NONMEM model-run bookkeeping.

Track model lineage, submit estimations, compare runs, draw diagnostics.
"""

from nmtrack.dispatch import poll_status, submit_model, submit_models
from nmtrack.registry import copy_model, create_model, list_models, read_model
from nmtrack.runlog import model_diff, run_log
from nmtrack.summary import model_summary

__version__ = "0.1.0"
__all__ = [
    "__version__",
    "copy_model",
    "create_model",
    "list_models",
    "model_diff",
    "model_summary",
    "poll_status",
    "read_model",
    "run_log",
    "submit_model",
    "submit_models",
]
