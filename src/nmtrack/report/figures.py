# Copyright (c) Syntropy Systems
"""Goodness-of-fit and ETA diagnostic figures.

Figures are built with the object-oriented matplotlib API so nothing
here depends on pyplot state or an interactive backend.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Optional

import numpy as np
import pandas as pd
from matplotlib.figure import Figure

from nmtrack.errors import ConfigError

if TYPE_CHECKING:
    from matplotlib.axes import Axes

    from nmtrack.report.dataspec import DataSpec
    from nmtrack.report.join import JoinedDataset

logger = logging.getLogger(__name__)


@dataclass
class PlotConfig:
    """Styling shared by every figure."""

    panel_size: tuple[float, float] = (4.0, 3.5)
    point_size: float = 12.0
    alpha: float = 0.6
    color: str = "#1f77b4"
    reference_color: str = "#d62728"


@dataclass(frozen=True)
class FigureRequirement:
    columns: tuple[str, ...] = ()
    flags: tuple[str, ...] = ()


REQUIREMENTS: dict[str, FigureRequirement] = {
    "dv_pred": FigureRequirement(columns=("DV", "PRED")),
    "dv_ipred": FigureRequirement(columns=("DV", "IPRED")),
    "cwres_pred": FigureRequirement(columns=("CWRES", "PRED")),
    "cwres_time": FigureRequirement(columns=("CWRES", "TIME")),
    "npde_pred": FigureRequirement(columns=("NPDE", "PRED")),
    "npde_time": FigureRequirement(columns=("NPDE", "TIME")),
    "eta_pairs": FigureRequirement(columns=("ID",), flags=("eta",)),
    "eta_cont_cov": FigureRequirement(columns=("ID",), flags=("eta", "cont_cov")),
    "eta_cat_cov": FigureRequirement(columns=("ID",), flags=("eta", "cat_cov")),
}

# NPDE panels are only drawn on request
DEFAULT_FIGURES = (
    "dv_pred",
    "dv_ipred",
    "cwres_pred",
    "cwres_time",
    "eta_pairs",
    "eta_cont_cov",
    "eta_cat_cov",
)


def _check(joined: JoinedDataset, spec: DataSpec, names: list[str]) -> None:
    """Raise one ConfigError listing everything the requested figures lack."""
    problems: list[str] = []
    unknown = [n for n in names if n not in REQUIREMENTS]
    if unknown:
        problems.append(f"unknown figure(s): {', '.join(unknown)} (choose from {', '.join(REQUIREMENTS)})")

    available = set(joined.data.columns)
    for name in names:
        req = REQUIREMENTS.get(name)
        if req is None:
            continue
        missing_cols = [c for c in req.columns if c not in available]
        missing_flags = [f for f in req.flags if not spec.flags.get(f)]
        flagged_cols = [
            c
            for f in req.flags
            for c in spec.flags.get(f, [])
            if c not in available
        ]
        if missing_cols:
            problems.append(f"{name}: missing column(s) {', '.join(missing_cols)}")
        if missing_flags:
            problems.append(f"{name}: data spec has no {', '.join(missing_flags)} flag")
        if flagged_cols:
            problems.append(f"{name}: flagged column(s) not in data: {', '.join(sorted(set(flagged_cols)))}")

    if problems:
        msg = f"Cannot draw figures for model {joined.model_id}: " + "; ".join(problems)
        raise ConfigError(msg)


def _grid(n: int, config: PlotConfig, ncols: Optional[int] = None) -> tuple[Figure, list[Axes]]:
    ncols = ncols or min(n, 3)
    nrows = int(np.ceil(n / ncols))
    width, height = config.panel_size
    fig = Figure(figsize=(width * ncols, height * nrows), layout="constrained")
    axes = fig.subplots(nrows, ncols, squeeze=False).ravel().tolist()
    for ax in axes[n:]:
        ax.set_visible(False)
    return fig, axes[:n]


def _scatter(ax: Axes, x: pd.Series, y: pd.Series, config: PlotConfig) -> None:
    ax.scatter(x, y, s=config.point_size, alpha=config.alpha, color=config.color, edgecolors="none")


def _identity(ax: Axes, x: pd.Series, y: pd.Series, config: PlotConfig) -> None:
    values = pd.concat([x, y]).dropna()
    if values.empty:
        return
    lo, hi = float(values.min()), float(values.max())
    ax.plot([lo, hi], [lo, hi], color=config.reference_color, linewidth=1)


def _observed_vs_predicted(pred: str) -> Callable[[JoinedDataset, DataSpec, PlotConfig], Figure]:
    def draw(joined: JoinedDataset, spec: DataSpec, config: PlotConfig) -> Figure:
        obs = joined.observations()
        fig, (ax,) = _grid(1, config)
        _scatter(ax, obs[pred], obs["DV"], config)
        _identity(ax, obs[pred], obs["DV"], config)
        ax.set_xlabel(spec.label(pred))
        ax.set_ylabel(spec.label("DV"))
        ax.set_title(f"{joined.model_id}: DV vs {pred}")
        return fig

    return draw


def _residual(residual: str, against: str) -> Callable[[JoinedDataset, DataSpec, PlotConfig], Figure]:
    def draw(joined: JoinedDataset, spec: DataSpec, config: PlotConfig) -> Figure:
        obs = joined.observations()
        fig, (ax,) = _grid(1, config)
        _scatter(ax, obs[against], obs[residual], config)
        ax.axhline(0, color=config.reference_color, linewidth=1)
        for bound in (-2, 2):
            ax.axhline(bound, color=config.reference_color, linewidth=0.8, linestyle="--")
        ax.set_xlabel(spec.label(against))
        ax.set_ylabel(residual)
        ax.set_title(f"{joined.model_id}: {residual} vs {against}")
        return fig

    return draw


def eta_pairs(joined: JoinedDataset, spec: DataSpec, config: PlotConfig) -> Figure:
    """Scatter matrix of the individual random effects, histograms on the diagonal."""
    etas = spec.flag("eta")
    base = joined.baseline()
    n = len(etas)
    width, _ = config.panel_size
    fig = Figure(figsize=(width * 0.75 * n, width * 0.75 * n), layout="constrained")
    axes = fig.subplots(n, n, squeeze=False)
    for i, row in enumerate(etas):
        for j, col in enumerate(etas):
            ax = axes[i][j]
            if i == j:
                ax.hist(base[row].dropna(), bins="auto", color=config.color, alpha=config.alpha)
            else:
                _scatter(ax, base[col], base[row], config)
            if i == n - 1:
                ax.set_xlabel(spec.label(col))
            if j == 0:
                ax.set_ylabel(spec.label(row))
    fig.suptitle(f"{joined.model_id}: ETA pairs")
    return fig


def eta_cont_cov(joined: JoinedDataset, spec: DataSpec, config: PlotConfig) -> Figure:
    """Each ETA against each continuous covariate, one row per ETA."""
    etas = spec.flag("eta")
    covariates = spec.flag("cont_cov")
    base = joined.baseline()
    fig, axes = _grid(len(etas) * len(covariates), config, ncols=len(covariates))
    for k, (eta, cov) in enumerate((e, c) for e in etas for c in covariates):
        ax = axes[k]
        _scatter(ax, base[cov], base[eta], config)
        ax.axhline(0, color=config.reference_color, linewidth=1)
        ax.set_xlabel(spec.label(cov))
        ax.set_ylabel(spec.label(eta))
    fig.suptitle(f"{joined.model_id}: ETA vs continuous covariates")
    return fig


def eta_cat_cov(joined: JoinedDataset, spec: DataSpec, config: PlotConfig) -> Figure:
    """Box plots of each ETA by level of each categorical covariate."""
    etas = spec.flag("eta")
    covariates = spec.flag("cat_cov")
    base = joined.baseline()
    fig, axes = _grid(len(etas) * len(covariates), config, ncols=len(covariates))
    for k, (eta, cov) in enumerate((e, c) for e in etas for c in covariates):
        ax = axes[k]
        levels = spec.decode(cov, base[cov])
        groups = [(str(level), base.loc[levels == level, eta].dropna()) for level in sorted(levels.dropna().unique(), key=str)]
        ax.boxplot([values.to_numpy() for _, values in groups])
        ax.set_xticks(range(1, len(groups) + 1), [label for label, _ in groups])
        ax.axhline(0, color=config.reference_color, linewidth=1)
        ax.set_xlabel(spec.label(cov))
        ax.set_ylabel(spec.label(eta))
    fig.suptitle(f"{joined.model_id}: ETA vs categorical covariates")
    return fig


FIGURES: dict[str, Callable[[JoinedDataset, DataSpec, PlotConfig], Figure]] = {
    "dv_pred": _observed_vs_predicted("PRED"),
    "dv_ipred": _observed_vs_predicted("IPRED"),
    "cwres_pred": _residual("CWRES", "PRED"),
    "cwres_time": _residual("CWRES", "TIME"),
    "npde_pred": _residual("NPDE", "PRED"),
    "npde_time": _residual("NPDE", "TIME"),
    "eta_pairs": eta_pairs,
    "eta_cont_cov": eta_cont_cov,
    "eta_cat_cov": eta_cat_cov,
}


def summarize(
    joined: JoinedDataset,
    spec: DataSpec,
    figures: list[str] | None = None,
    config: PlotConfig | None = None,
) -> dict[str, Figure]:
    """Draw the diagnostic figures for a joined dataset.

    Every requested figure is checked before anything is drawn, so a
    missing column or flag fails fast with a single ConfigError.
    """
    names = list(figures) if figures is not None else list(DEFAULT_FIGURES)
    _check(joined, spec, names)
    config = config or PlotConfig()

    drawn: dict[str, Figure] = {}
    for name in names:
        logger.debug("Model %s: drawing %s", joined.model_id, name)
        drawn[name] = FIGURES[name](joined, spec, config)
    return drawn
