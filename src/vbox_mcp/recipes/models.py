"""Provisioning recipe models."""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator


class RecipeKind(str, Enum):
    RUNTIME = "runtime"
    TOOL = "tool"


class Recipe(BaseModel):
    """Shell commands that install one runtime or tool inside a guest."""

    id: str = Field(..., description="Name callers use to request the recipe, e.g. 'node'.")
    kind: RecipeKind = Field(default=RecipeKind.TOOL, description="Whether this installs a runtime or a tool.")
    description: str = Field(default="", description="Human-friendly summary.")
    commands: list[str] = Field(..., description="Commands run in order; the first failure stops the recipe.")

    @field_validator("id")
    @classmethod
    def _normalize_id(cls, value: str) -> str:
        normalized = value.strip().lower()
        if not normalized:
            raise ValueError("Recipe id must not be empty")
        return normalized

    @field_validator("commands", mode="before")
    @classmethod
    def _ensure_commands(cls, value: Any):
        if isinstance(value, str):
            value = [value]
        if not isinstance(value, (list, tuple)) or not value:
            raise ValueError("Recipe commands must be a non-empty list of strings")
        return [str(item) for item in value]


__all__ = ["Recipe", "RecipeKind"]
