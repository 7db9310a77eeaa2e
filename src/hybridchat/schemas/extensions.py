"""Schemas for dynamically configured tool extensions."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class ExtensionFunction(BaseModel):
    """A single callable exposed to the model by an extension."""

    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1, pattern=r"^[A-Za-z0-9_-]{1,64}$")
    description: str = ""
    parameters: dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )
    endpoint: str = Field(..., min_length=1)
    method: Literal["GET", "POST", "PUT", "PATCH", "DELETE"] = "POST"
    headers: dict[str, str] = Field(default_factory=dict)


class ExtensionDefinition(BaseModel):
    """A named bundle of functions that threads can enable by id."""

    model_config = ConfigDict(extra="forbid")

    id: str = Field(..., min_length=1)
    name: str = ""
    description: str = ""
    functions: list[ExtensionFunction] = Field(default_factory=list)


class ExtensionCollection(BaseModel):
    extensions: list[ExtensionDefinition] = Field(default_factory=list)


__all__ = ["ExtensionCollection", "ExtensionDefinition", "ExtensionFunction"]
