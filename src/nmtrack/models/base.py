# Copyright (c) Syntropy Systems
"""Shared Pydantic model helpers for nmtrack."""

from __future__ import annotations

from typing import ClassVar

from pydantic import BaseModel, ConfigDict, JsonValue
from typing_extensions import TypeAlias

JSONValue: TypeAlias = JsonValue


class NmtrackBaseModel(BaseModel):
    """Base model with shared config for nmtrack schemas."""

    model_config: ClassVar[ConfigDict] = ConfigDict(
        extra="ignore",
        populate_by_name=True,
        # model_id is a field name here, not a pydantic method
        protected_namespaces=(),
    )


class ExtraAllowModel(BaseModel):
    """Base model that preserves extra fields for flexible schemas."""

    model_config: ClassVar[ConfigDict] = ConfigDict(
        extra="allow",
        populate_by_name=True,
    )
