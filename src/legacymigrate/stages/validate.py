"""
Validate stage: apply quality rules and duplicate detection.

Failing records are recorded, never raised. Recipes end up in one of three
buckets: passed, warned (kept, with warnings) or failed (held back). In
strict mode any warning fails the record.

Duplicates are recipes with the same normalized title and author. What
happens to them depends on ``duplicate_strategy``:

- ``keep-first``: the first recipe of each group is kept, the rest are dropped
- ``keep-all``: every recipe is kept; the group is only reported
- ``manual-review``: every recipe of the group is held back for review
"""

from __future__ import annotations

import logging
import re
import time
from collections import defaultdict
from typing import Literal, Protocol

from pydantic import BaseModel

from legacymigrate.config import DuplicateStrategy, ValidationConfig
from legacymigrate.stages.base import (
    StageContext,
    StageReport,
    dump_records,
    read_records,
    write_json,
)
from legacymigrate.stages.records import RecordDiagnostic, TransformedRecipe, TransformedUser

logger = logging.getLogger(__name__)

_NON_WORD = re.compile(r"[^a-z0-9]+")


class ValidationFailure(BaseModel):
    """A record that broke a quality rule. Recorded, not raised."""

    record_type: str
    legacy_id: int | None = None
    field: str | None = None
    message: str
    severity: Literal["error", "warning"] = "error"


class RecordValidator(Protocol):
    """Per-record quality rules."""

    def validate_user(self, user: TransformedUser) -> list[ValidationFailure]: ...

    def validate_recipe(self, recipe: TransformedRecipe) -> list[ValidationFailure]: ...


class DefaultRecordValidator:
    """Minimal structural rules; business rules belong to the target system."""

    def validate_user(self, user: TransformedUser) -> list[ValidationFailure]:
        failures = []
        local, _, domain = user.email.partition("@")
        if not local or "." not in domain:
            failures.append(
                ValidationFailure(
                    record_type="users",
                    legacy_id=user.legacy_id,
                    field="email",
                    message=f"Invalid email address {user.email!r}",
                )
            )
        if not user.name.strip():
            failures.append(
                ValidationFailure(
                    record_type="users",
                    legacy_id=user.legacy_id,
                    field="name",
                    message="Name is empty",
                )
            )
        return failures

    def validate_recipe(self, recipe: TransformedRecipe) -> list[ValidationFailure]:
        def failure(field: str, message: str, severity: str = "error") -> ValidationFailure:
            return ValidationFailure(
                record_type="recipes",
                legacy_id=recipe.legacy_id,
                field=field,
                message=message,
                severity=severity,  # type: ignore[arg-type]
            )

        failures = []
        if not recipe.title.strip():
            failures.append(failure("title", "Title is empty"))
        if recipe.author_id is None:
            failures.append(failure("author_id", "Recipe has no author"))
        if not recipe.ingredients:
            failures.append(failure("ingredients", "Recipe has no ingredients", "warning"))
        if not recipe.instructions:
            failures.append(failure("instructions", "Recipe has no instructions", "warning"))
        return failures


def normalize_title(title: str) -> str:
    """Lowercase, strip punctuation and collapse whitespace."""
    return _NON_WORD.sub(" ", title.lower()).strip()


def find_duplicate_groups(recipes: list[TransformedRecipe]) -> list[list[TransformedRecipe]]:
    """
    Groups of recipes sharing normalized title and author, in input order.

    Only groups with more than one member are returned.
    """
    groups: dict[tuple[str, str | None], list[TransformedRecipe]] = defaultdict(list)
    for recipe in recipes:
        groups[(normalize_title(recipe.title), recipe.author_id)].append(recipe)
    return [group for group in groups.values() if len(group) > 1]


def _excluded_by_strategy(
    groups: list[list[TransformedRecipe]],
    strategy: DuplicateStrategy,
) -> set[int]:
    excluded: set[int] = set()
    for group in groups:
        if strategy == "keep-first":
            excluded.update(r.legacy_id for r in group[1:])
        elif strategy == "manual-review":
            excluded.update(r.legacy_id for r in group)
    return excluded


def _schema_failure(diagnostic: RecordDiagnostic) -> ValidationFailure:
    legacy_id = diagnostic.legacy_id if isinstance(diagnostic.legacy_id, int) else None
    return ValidationFailure(
        record_type=diagnostic.record_type,
        legacy_id=legacy_id,
        field=diagnostic.field,
        message=diagnostic.message,
    )


class ValidateStage:
    """
    Validates a transformed snapshot.

    Args:
        validator: Record rules (defaults to DefaultRecordValidator)
    """

    phase = "validate"

    def __init__(self, validator: RecordValidator | None = None) -> None:
        self._validator = validator or DefaultRecordValidator()

    def _is_failed(self, failures: list[ValidationFailure], config: ValidationConfig) -> bool:
        if any(f.severity == "error" for f in failures):
            return True
        return config.strict_mode and bool(failures)

    async def run(self, context: StageContext) -> StageReport:
        started = time.monotonic()
        input_dir = context.require_input_dir()
        config = context.config.validation

        users, user_diags = read_records(
            input_dir / "users.json", TransformedUser, "users", self.phase
        )
        recipes, recipe_diags = read_records(
            input_dir / "recipes.json", TransformedRecipe, "recipes", self.phase
        )

        valid_users: list[TransformedUser] = []
        failed_users: list[dict] = [
            {"record": None, "failures": [_schema_failure(d)]} for d in user_diags
        ]
        for user in users:
            context.check_shutdown()
            failures = self._validator.validate_user(user)
            if self._is_failed(failures, config):
                failed_users.append({"record": user, "failures": failures})
            else:
                valid_users.append(user)

        passed: list[TransformedRecipe] = []
        warned: list[TransformedRecipe] = []
        failed_recipes: list[dict] = [
            {"record": None, "failures": [_schema_failure(d)]} for d in recipe_diags
        ]
        accepted: list[TransformedRecipe] = []
        warnings: list[ValidationFailure] = []
        rejected_authors = {
            entry["record"].id for entry in failed_users if entry["record"] is not None
        }
        for recipe in recipes:
            context.check_shutdown()
            failures = list(self._validator.validate_recipe(recipe))
            if recipe.author_id in rejected_authors:
                failures.append(
                    ValidationFailure(
                        record_type="recipes",
                        legacy_id=recipe.legacy_id,
                        field="author_id",
                        message="Author failed validation",
                    )
                )
            if self._is_failed(failures, config):
                failed_recipes.append({"record": recipe, "failures": failures})
            elif failures:
                warned.append(recipe)
                accepted.append(recipe)
                warnings.extend(failures)
            else:
                passed.append(recipe)
                accepted.append(recipe)

        groups = find_duplicate_groups(accepted)
        excluded = _excluded_by_strategy(groups, config.duplicate_strategy)
        output_recipes = [r for r in accepted if r.legacy_id not in excluded]
        duplicate_count = sum(len(group) - 1 for group in groups)

        output_dir = context.output_dir
        write_json(output_dir / "users.json", dump_records(valid_users))
        write_json(output_dir / "recipes.json", dump_records(output_recipes))
        write_json(output_dir / "failed-users.json", failed_users)
        write_json(output_dir / "failed-recipes.json", failed_recipes)
        write_json(output_dir / "warnings.json", dump_records(warnings))
        write_json(
            output_dir / "duplicates.json",
            [
                {
                    "normalized_title": normalize_title(group[0].title),
                    "author_id": group[0].author_id,
                    "legacy_ids": [r.legacy_id for r in group],
                    "kept_legacy_ids": [r.legacy_id for r in group if r.legacy_id not in excluded],
                    "strategy": config.duplicate_strategy,
                }
                for group in groups
            ],
        )

        report = StageReport(
            phase=self.phase,
            input_dir=input_dir,
            output_dir=output_dir,
            stats={
                "total": len(recipes) + len(recipe_diags),
                "passed": len(passed),
                "warned": len(warned),
                "failed": len(failed_recipes),
                "duplicates": duplicate_count,
                "duplicate_groups": len(groups),
                "excluded_duplicates": len(excluded),
                "recipes_output": len(output_recipes),
                "users": {
                    "total": len(users) + len(user_diags),
                    "passed": len(valid_users),
                    "failed": len(failed_users),
                },
                "strict_mode": config.strict_mode,
                "duplicate_strategy": config.duplicate_strategy,
                "duration": round(time.monotonic() - started, 3),
            },
            files=[
                "users.json",
                "recipes.json",
                "failed-users.json",
                "failed-recipes.json",
                "warnings.json",
                "duplicates.json",
            ],
        )
        report.write()
        logger.info(
            f"Validation complete: {len(passed)} passed, {len(warned)} warned, "
            f"{len(failed_recipes)} failed, {duplicate_count} duplicates",
            extra={
                "passed": len(passed),
                "warned": len(warned),
                "failed": len(failed_recipes),
                "duplicates": duplicate_count,
            },
        )
        return report


__all__ = [
    "DefaultRecordValidator",
    "RecordValidator",
    "ValidateStage",
    "ValidationFailure",
    "find_duplicate_groups",
    "normalize_title",
]
