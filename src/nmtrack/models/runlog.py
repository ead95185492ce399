# Copyright (c) Syntropy Systems
"""Pydantic models for run log rows and model comparisons."""

from __future__ import annotations

from typing import Optional

from pydantic import Field

from .base import NmtrackBaseModel
from .model import ModelStatus


class RunLogEntry(NmtrackBaseModel):
    """One row of the run log: sidecar fields plus values derived from outputs."""

    id: str
    parent_id: Optional[str] = None
    based_on: list[str] = Field(default_factory=list)
    description: Optional[str] = None
    notes: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    star: bool = False
    status: ModelStatus = ModelStatus.NOT_SUBMITTED
    ofv: Optional[float] = None
    n_parameters: Optional[int] = None
    aic: Optional[float] = None
    delta_ofv: Optional[float] = None
    definition_changed: Optional[bool] = None
    tags_added: list[str] = Field(default_factory=list)
    tags_removed: list[str] = Field(default_factory=list)
    stale: Optional[bool] = None


class ParameterComparison(NmtrackBaseModel):
    """Side by side estimate of one parameter in two models."""

    name: str
    estimate_a: float
    estimate_b: float
    stderr_a: Optional[float] = None
    stderr_b: Optional[float] = None

    @property
    def change(self) -> float:
        return self.estimate_b - self.estimate_a

    @property
    def percent_change(self) -> float | None:
        if self.estimate_a == 0:
            return None
        return (self.estimate_b - self.estimate_a) / abs(self.estimate_a) * 100.0


class ModelDiff(NmtrackBaseModel):
    """Result of comparing two models."""

    id_a: str
    id_b: str
    definition_diff: list[str] = Field(default_factory=list)
    comparable: Optional[bool] = None
    reason: Optional[str] = None
    parameters: list[ParameterComparison] = Field(default_factory=list)
    ofv_a: Optional[float] = None
    ofv_b: Optional[float] = None

    @property
    def definitions_identical(self) -> bool:
        return not self.definition_diff

    @property
    def delta_ofv(self) -> float | None:
        if self.ofv_a is None or self.ofv_b is None:
            return None
        return self.ofv_b - self.ofv_a
