# Copyright (c) Syntropy Systems
"""Pydantic models for database records."""

from __future__ import annotations

from typing import Optional, cast

from pydantic import Field, TypeAdapter, field_validator

from .base import NmtrackBaseModel

_LIST_STR_ADAPTER = TypeAdapter(list[str])


class JobRecord(NmtrackBaseModel):
    """Submission ledger job record."""

    id: int
    model_id: str
    model_path: str
    mode: str = "local"
    command_argv: list[str] = Field(default_factory=list)
    status: str
    max_concurrent: int = 1
    created_at: Optional[str] = None
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    hostname: Optional[str] = None
    pid: Optional[int] = None
    heartbeat_at: Optional[str] = None
    exit_code: Optional[int] = None
    error_message: Optional[str] = None
    cluster_job_id: Optional[str] = None

    @field_validator("command_argv", mode="before")
    @classmethod
    def _parse_command_argv(cls, value: object) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return _LIST_STR_ADAPTER.validate_json(value)
        return cast("list[str]", value)

    @property
    def is_active(self) -> bool:
        return self.status in ("queued", "running")
