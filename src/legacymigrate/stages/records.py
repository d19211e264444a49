"""
Record schemas exchanged between stages.

Every stage validates the records it reads against these models, so a
malformed upstream record becomes a per-record diagnostic instead of an
exception that aborts the stage.

Legacy* models mirror the rows extracted from the legacy database;
Transformed* models are what the transform stage produces and what the
validate and import stages consume.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

# Fixed namespace so the same legacy id always maps to the same new id
LEGACY_ID_NAMESPACE = uuid.UUID("6f1c2d0e-8a54-4b7c-9f0e-3d2a1b4c5e6f")


def new_id_for(kind: str, legacy_id: int) -> str:
    """Deterministic UUID for a legacy record, stable across re-runs."""
    return str(uuid.uuid5(LEGACY_ID_NAMESPACE, f"{kind}:{legacy_id}"))


class LegacyRecord(BaseModel):
    """Base for rows read from the raw snapshot. Unknown columns are ignored."""

    model_config = ConfigDict(extra="ignore")

    id: int
    created_at: datetime | None = None
    updated_at: datetime | None = None


class LegacyUser(LegacyRecord):
    email: str
    username: str | None = None
    super_user: bool = False


class LegacyRecipe(LegacyRecord):
    name: str
    user_id: int | None = None
    description: str | None = None
    servings: str | int | None = None
    prep_time: int | None = None
    prep_time_descriptor: str | None = None
    cook_time: int | None = None
    cook_time_descriptor: str | None = None
    original_url: str | None = None


class LegacyIngredient(LegacyRecord):
    recipe_id: int
    order_number: int | None = None
    ingredient: str


class LegacyInstruction(LegacyRecord):
    recipe_id: int
    step_number: int | None = None
    step: str


class LegacyTag(LegacyRecord):
    name: str


class LegacyRecipeTag(LegacyRecord):
    recipe_id: int
    tag_id: int


class LegacyRecipeBundle(BaseModel):
    """A legacy recipe together with its child rows."""

    recipe: LegacyRecipe
    ingredients: list[LegacyIngredient] = Field(default_factory=list)
    instructions: list[LegacyInstruction] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)


class TransformedUser(BaseModel):
    """User in the shape accepted by the new system's migration API."""

    model_config = ConfigDict(extra="ignore")

    legacy_id: int
    id: str
    name: str
    email: str
    role: Literal["user", "admin"] = "user"
    created_at: datetime | None = None
    updated_at: datetime | None = None


class TransformedRecipe(BaseModel):
    """Recipe in the shape accepted by the new system's migration API."""

    model_config = ConfigDict(extra="ignore")

    legacy_id: int
    id: str
    title: str
    author_id: str | None = None
    author_legacy_id: int | None = None
    description: str | None = None
    ingredients: list[str] = Field(default_factory=list)
    instructions: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    servings: str | None = None
    prep_time_minutes: int | None = None
    cook_time_minutes: int | None = None
    source_url: str | None = None
    visibility: Literal["private", "public"] = "private"
    created_at: datetime | None = None
    updated_at: datetime | None = None


class RecordDiagnostic(BaseModel):
    """A per-record problem recorded by a stage."""

    record_type: str
    legacy_id: Any = None
    field: str | None = None
    message: str
    error_type: str | None = None


__all__ = [
    "LEGACY_ID_NAMESPACE",
    "LegacyIngredient",
    "LegacyInstruction",
    "LegacyRecipe",
    "LegacyRecipeBundle",
    "LegacyRecipeTag",
    "LegacyRecord",
    "LegacyTag",
    "LegacyUser",
    "RecordDiagnostic",
    "TransformedRecipe",
    "TransformedUser",
    "new_id_for",
]
