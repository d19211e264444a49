"""
Transform stage: map raw legacy rows to the new system's record shapes.

Record-level mapping is delegated to a RecordTransformer. A record that
cannot be transformed is recorded as a diagnostic and skipped; the stage
never aborts because of a single bad record.
"""

from __future__ import annotations

import logging
import time
from collections import defaultdict
from typing import Protocol

from pydantic import ValidationError

from legacymigrate.config import TransformConfig
from legacymigrate.exceptions import TransformationError
from legacymigrate.stages.base import (
    StageContext,
    StageReport,
    dump_records,
    read_records,
    write_json,
)
from legacymigrate.stages.records import (
    LegacyIngredient,
    LegacyInstruction,
    LegacyRecipe,
    LegacyRecipeBundle,
    LegacyRecipeTag,
    LegacyTag,
    LegacyUser,
    RecordDiagnostic,
    TransformedRecipe,
    TransformedUser,
    new_id_for,
)

logger = logging.getLogger(__name__)

_RECORD_ERRORS = (TransformationError, ValidationError, ValueError, TypeError, KeyError)


class RecordTransformer(Protocol):
    """Maps single legacy records to their new shape."""

    def transform_user(self, user: LegacyUser) -> TransformedUser: ...

    def transform_recipe(
        self,
        bundle: LegacyRecipeBundle,
        author_id: str | None,
    ) -> TransformedRecipe: ...


def _minutes(value: int | None, descriptor: str | None) -> int | None:
    if value is None:
        return None
    if descriptor and descriptor.strip().lower().startswith("hour"):
        return value * 60
    return value


class DefaultRecordTransformer:
    """
    Straightforward field mapping.

    Recipe text (ingredient lines, instruction steps) is carried over as
    trimmed strings; parsing it is left to the target system.
    """

    def __init__(self, config: TransformConfig | None = None) -> None:
        self.config = config or TransformConfig()

    def transform_user(self, user: LegacyUser) -> TransformedUser:
        email = user.email.strip().lower()
        if "@" not in email:
            raise TransformationError(f"Invalid email address {user.email!r}", legacy_id=user.id)

        name = (user.username or "").strip() or email.split("@", 1)[0]
        return TransformedUser(
            legacy_id=user.id,
            id=new_id_for("user", user.id),
            name=name,
            email=email,
            role="admin" if user.super_user else "user",
            created_at=user.created_at if self.config.preserve_timestamps else None,
            updated_at=user.updated_at if self.config.preserve_timestamps else None,
        )

    def transform_recipe(
        self,
        bundle: LegacyRecipeBundle,
        author_id: str | None,
    ) -> TransformedRecipe:
        recipe = bundle.recipe
        title = recipe.name.strip()
        if not title:
            raise TransformationError("Recipe has an empty name", legacy_id=recipe.id)
        if recipe.user_id is not None and author_id is None:
            raise TransformationError(
                f"Author {recipe.user_id} of recipe {recipe.id} was not migrated",
                legacy_id=recipe.id,
            )

        ingredients = sorted(bundle.ingredients, key=lambda i: (i.order_number or 0, i.id))
        instructions = sorted(bundle.instructions, key=lambda i: (i.step_number or 0, i.id))

        return TransformedRecipe(
            legacy_id=recipe.id,
            id=new_id_for("recipe", recipe.id),
            title=title,
            author_id=author_id,
            author_legacy_id=recipe.user_id,
            description=(recipe.description or "").strip() or None,
            ingredients=[i.ingredient.strip() for i in ingredients if i.ingredient.strip()],
            instructions=[i.step.strip() for i in instructions if i.step.strip()],
            tags=sorted(set(bundle.tags)),
            servings=str(recipe.servings) if recipe.servings is not None else None,
            prep_time_minutes=_minutes(recipe.prep_time, recipe.prep_time_descriptor),
            cook_time_minutes=_minutes(recipe.cook_time, recipe.cook_time_descriptor),
            source_url=recipe.original_url,
            visibility=self.config.default_visibility,
            created_at=recipe.created_at if self.config.preserve_timestamps else None,
            updated_at=recipe.updated_at if self.config.preserve_timestamps else None,
        )


def _diagnostic(record_type: str, legacy_id: int | None, error: Exception) -> RecordDiagnostic:
    if isinstance(error, TransformationError):
        message = error.message
    elif isinstance(error, ValidationError):
        message = error.errors()[0]["msg"]
    else:
        message = str(error) or type(error).__name__
    return RecordDiagnostic(
        record_type=record_type,
        legacy_id=legacy_id,
        message=message,
        error_type=type(error).__name__,
    )


class TransformStage:
    """
    Transforms a raw snapshot into ``users.json`` and ``recipes.json``.

    Args:
        transformer: Record mapper (defaults to DefaultRecordTransformer
            configured from the run's transform settings)
    """

    phase = "transform"

    def __init__(self, transformer: RecordTransformer | None = None) -> None:
        self._transformer = transformer

    async def run(self, context: StageContext) -> StageReport:
        started = time.monotonic()
        input_dir = context.require_input_dir()
        transformer = self._transformer or DefaultRecordTransformer(context.config.transform)

        users, user_errors = read_records(
            input_dir / "users.json", LegacyUser, "users", self.phase
        )
        recipes, recipe_errors = read_records(
            input_dir / "recipes.json", LegacyRecipe, "recipes", self.phase
        )
        ingredients, _ = read_records(
            input_dir / "ingredients.json", LegacyIngredient, "ingredients", self.phase, False
        )
        instructions, _ = read_records(
            input_dir / "instructions.json", LegacyInstruction, "instructions", self.phase, False
        )
        tags, _ = read_records(input_dir / "tags.json", LegacyTag, "tags", self.phase, False)
        recipe_tags, _ = read_records(
            input_dir / "recipe_tags.json", LegacyRecipeTag, "recipe_tags", self.phase, False
        )

        transformed_users: list[TransformedUser] = []
        for user in users:
            context.check_shutdown()
            try:
                transformed_users.append(transformer.transform_user(user))
            except _RECORD_ERRORS as e:
                user_errors.append(_diagnostic("users", user.id, e))

        author_ids = {u.legacy_id: u.id for u in transformed_users}

        ingredients_by_recipe: dict[int, list[LegacyIngredient]] = defaultdict(list)
        for ingredient in ingredients:
            ingredients_by_recipe[ingredient.recipe_id].append(ingredient)
        instructions_by_recipe: dict[int, list[LegacyInstruction]] = defaultdict(list)
        for instruction in instructions:
            instructions_by_recipe[instruction.recipe_id].append(instruction)
        tag_names = {tag.id: tag.name for tag in tags}
        tags_by_recipe: dict[int, list[str]] = defaultdict(list)
        for link in recipe_tags:
            if link.tag_id in tag_names:
                tags_by_recipe[link.recipe_id].append(tag_names[link.tag_id])

        transformed_recipes: list[TransformedRecipe] = []
        for recipe in recipes:
            context.check_shutdown()
            bundle = LegacyRecipeBundle(
                recipe=recipe,
                ingredients=ingredients_by_recipe.get(recipe.id, []),
                instructions=instructions_by_recipe.get(recipe.id, []),
                tags=tags_by_recipe.get(recipe.id, []),
            )
            author_id = author_ids.get(recipe.user_id) if recipe.user_id is not None else None
            try:
                transformed_recipes.append(transformer.transform_recipe(bundle, author_id))
            except _RECORD_ERRORS as e:
                recipe_errors.append(_diagnostic("recipes", recipe.id, e))

        output_dir = context.output_dir
        write_json(output_dir / "users.json", dump_records(transformed_users))
        write_json(output_dir / "recipes.json", dump_records(transformed_recipes))
        write_json(
            output_dir / "user-mapping.json",
            [
                {"legacy_id": u.legacy_id, "new_id": u.id, "email": u.email}
                for u in transformed_users
            ],
        )
        errors = user_errors + recipe_errors
        write_json(output_dir / "transformation-errors.json", dump_records(errors))

        report = StageReport(
            phase=self.phase,
            input_dir=input_dir,
            output_dir=output_dir,
            stats={
                "users": {
                    "total": len(transformed_users) + len(user_errors),
                    "successful": len(transformed_users),
                    "failed": len(user_errors),
                    "admins": sum(1 for u in transformed_users if u.role == "admin"),
                },
                "recipes": {
                    "total": len(transformed_recipes) + len(recipe_errors),
                    "successful": len(transformed_recipes),
                    "failed": len(recipe_errors),
                },
                "duration": round(time.monotonic() - started, 3),
            },
            files=["users.json", "recipes.json", "user-mapping.json", "transformation-errors.json"],
        )
        report.write()

        if errors:
            logger.warning(
                f"{len(errors)} records could not be transformed",
                extra={"failed_users": len(user_errors), "failed_recipes": len(recipe_errors)},
            )
        logger.info(
            f"Transformation complete: {len(transformed_users)} users, "
            f"{len(transformed_recipes)} recipes",
            extra={"users": len(transformed_users), "recipes": len(transformed_recipes)},
        )
        return report


__all__ = [
    "DefaultRecordTransformer",
    "RecordTransformer",
    "TransformStage",
]
