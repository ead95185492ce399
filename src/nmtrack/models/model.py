# Copyright (c) Syntropy Systems
"""Pydantic models for model definitions and their sidecar metadata."""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator

from .base import NmtrackBaseModel


class ModelStatus(str, Enum):
    """Status of a model, derived from its output directory."""

    NOT_SUBMITTED = "not-submitted"
    QUEUED = "queued"
    RUNNING = "running"
    FINISHED = "finished"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        """Return whether the status can no longer change without resubmission."""
        return self in (ModelStatus.FINISHED, ModelStatus.FAILED)


class ModelMeta(NmtrackBaseModel):
    """Annotation fields stored in the {id}.yaml sidecar."""

    id: str
    based_on: list[str] = Field(default_factory=list)
    description: Optional[str] = None
    notes: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    star: bool = False
    created_at: Optional[str] = None

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: object) -> object:
        # YAML reads bare numeric ids as ints
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value

    @field_validator("based_on", mode="before")
    @classmethod
    def _coerce_based_on(cls, value: object) -> object:
        if value is None:
            return []
        if isinstance(value, (str, int)):
            value = [value]
        if isinstance(value, list):
            return [str(v) for v in value]
        return value

    @field_validator("notes", "tags", mode="before")
    @classmethod
    def _none_to_list(cls, value: object) -> object:
        return [] if value is None else value


class ModelRecord(NmtrackBaseModel):
    """One modeling attempt: its files on disk plus sidecar annotations."""

    id: str
    directory: Path
    meta: ModelMeta

    @property
    def parent_id(self) -> str | None:
        """Id of the model this one was derived from."""
        return self.meta.based_on[0] if self.meta.based_on else None

    @property
    def definition_path(self) -> Path:
        """Path to the control stream."""
        return self.directory / f"{self.id}.ctl"

    @property
    def meta_path(self) -> Path:
        """Path to the sidecar YAML."""
        return self.directory / f"{self.id}.yaml"

    @property
    def output_dir(self) -> Path:
        """Directory the backend writes outputs into."""
        return self.directory / self.id

    @property
    def description(self) -> str | None:
        return self.meta.description

    @property
    def notes(self) -> list[str]:
        return self.meta.notes

    @property
    def tags(self) -> list[str]:
        return self.meta.tags

    @property
    def starred(self) -> bool:
        return self.meta.star
