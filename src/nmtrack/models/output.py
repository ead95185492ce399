# Copyright (c) Syntropy Systems
"""Pydantic models for submission sentinels and parsed estimation output."""

from __future__ import annotations

from typing import Optional

from pydantic import Field

from .base import ExtraAllowModel, JSONValue, NmtrackBaseModel


class ResourceOptions(ExtraAllowModel):
    """Submission resources; unrecognized keys are passed to the engine."""

    overwrite: bool = False
    parallel: bool = False
    threads: int = Field(default=1, ge=1)

    @property
    def passthrough(self) -> dict[str, JSONValue]:
        """Options the dispatcher does not interpret itself."""
        return dict(self.model_extra or {})

    @property
    def use_parallel(self) -> bool:
        return self.parallel or self.threads > 1


class SubmissionMeta(NmtrackBaseModel):
    """Written to submission.json when the backend accepts a run."""

    model_id: str
    job_id: Optional[int] = None
    mode: str
    command_argv: list[str] = Field(default_factory=list)
    submitted_at: str
    definition_md5: str
    resources: dict[str, JSONValue] = Field(default_factory=dict)
    cluster_job_id: Optional[str] = None


class ExecutionInfo(NmtrackBaseModel):
    """Written to execution.json when the estimation command starts."""

    pid: int
    hostname: str
    started_at: str


class ExitStatus(NmtrackBaseModel):
    """Written to exit_status.json when the estimation command ends."""

    exit_code: int
    finished_at: str
    error_message: Optional[str] = None


class ParameterEstimate(NmtrackBaseModel):
    """Final estimate of one THETA, OMEGA or SIGMA element."""

    name: str
    estimate: float
    stderr: Optional[float] = None
    fixed: bool = False

    @property
    def rse(self) -> float | None:
        """Relative standard error in percent."""
        if self.stderr is None or self.estimate == 0:
            return None
        return abs(self.stderr / self.estimate) * 100.0


class ModelSummary(NmtrackBaseModel):
    """Key results of a finished estimation."""

    model_id: str
    ofv: Optional[float] = None
    estimation_method: Optional[str] = None
    parameters: list[ParameterEstimate] = Field(default_factory=list)
    minimization_successful: Optional[bool] = None
    termination_message: Optional[str] = None
    covariance_step: Optional[bool] = None
    n_subjects: Optional[int] = None
    n_observations: Optional[int] = None
    n_records: Optional[int] = None

    @property
    def estimated_parameters(self) -> list[ParameterEstimate]:
        """Parameters that were not fixed."""
        return [p for p in self.parameters if not p.fixed]

    @property
    def n_estimated(self) -> int:
        return len(self.estimated_parameters)

    @property
    def aic(self) -> float | None:
        """Akaike information criterion, OFV + 2k."""
        if self.ofv is None:
            return None
        return self.ofv + 2 * self.n_estimated

    def parameter(self, name: str) -> ParameterEstimate | None:
        """Look up a parameter by name."""
        for param in self.parameters:
            if param.name == name:
                return param
        return None
