"""
Shared pytest fixtures for the legacymigrate tests.

This module provides:
- Configuration fixtures (migration_config) writing into tmp_path
- Recovery fixtures (recovery_manager) with an inert exit function
- Snapshot fixtures (raw_snapshot, make_context) with small legacy data sets
"""

from __future__ import annotations

import json
from collections.abc import Callable, Generator
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock

import pytest

from legacymigrate.config import (
    DatabaseConfig,
    ImportConfig,
    LoggingConfig,
    MigrationConfig,
    SSHConfig,
)
from legacymigrate.observability import MockTracer
from legacymigrate.recovery import ErrorRecoveryManager, reset_error_recovery
from legacymigrate.stages.base import StageContext

# ============================================================================
# Sample legacy rows
# ============================================================================

LEGACY_USERS: list[dict[str, Any]] = [
    {
        "id": 1,
        "email": "Ada@Example.com",
        "username": "ada",
        "super_user": True,
        "created_at": "2019-03-01T10:00:00",
        "updated_at": "2020-01-01T10:00:00",
    },
    {"id": 2, "email": "grace@example.com", "username": "grace", "super_user": False},
    {"id": 3, "email": "not-an-email", "username": "broken"},
]

LEGACY_RECIPES: list[dict[str, Any]] = [
    {
        "id": 10,
        "name": "Pancakes",
        "user_id": 1,
        "description": "Fluffy",
        "servings": 4,
        "prep_time": 10,
        "prep_time_descriptor": "minutes",
        "cook_time": 1,
        "cook_time_descriptor": "hours",
    },
    {"id": 11, "name": "Soup", "user_id": 2},
    {"id": 12, "name": "pancakes!", "user_id": 1},
    {"id": 13, "name": "Orphan stew", "user_id": 3},
    {"id": 14, "name": "   ", "user_id": 2},
]

LEGACY_INGREDIENTS: list[dict[str, Any]] = [
    {"id": 100, "recipe_id": 10, "order_number": 2, "ingredient": "2 eggs"},
    {"id": 101, "recipe_id": 10, "order_number": 1, "ingredient": "1 cup flour"},
    {"id": 102, "recipe_id": 12, "order_number": 1, "ingredient": "flour"},
]

LEGACY_INSTRUCTIONS: list[dict[str, Any]] = [
    {"id": 200, "recipe_id": 10, "step_number": 1, "step": "Mix"},
    {"id": 201, "recipe_id": 10, "step_number": 2, "step": "Fry"},
    {"id": 202, "recipe_id": 12, "step_number": 1, "step": "Cook"},
]

LEGACY_TAGS: list[dict[str, Any]] = [{"id": 1, "name": "breakfast"}]
LEGACY_RECIPE_TAGS: list[dict[str, Any]] = [{"id": 1, "recipe_id": 10, "tag_id": 1}]


def write_snapshot(directory: Path, files: dict[str, Any]) -> Path:
    """Write JSON files into ``directory`` and return it."""
    directory.mkdir(parents=True, exist_ok=True)
    for name, data in files.items():
        (directory / name).write_text(json.dumps(data), encoding="utf-8")
    return directory


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture(autouse=True)
def _reset_recovery_registry() -> Generator[None, None, None]:
    """Ensure no process-wide recovery manager leaks between tests."""
    reset_error_recovery()
    yield
    reset_error_recovery()


@pytest.fixture
def data_root(tmp_path: Path) -> Path:
    return tmp_path / "migration-data"


@pytest.fixture
def migration_config(data_root: Path) -> MigrationConfig:
    """Configuration with instant retries and no file logging."""
    return MigrationConfig(
        ssh=SSHConfig(host="bastion.example.com", username="deploy"),
        legacy_db=DatabaseConfig(database="legacy", username="reader", pool_size=2),
        import_=ImportConfig(
            api_base_url="https://api.example.com",
            auth_token="test-token",
            batch_size=2,
            delay_between_batches=0,
            max_retries=2,
            retry_base_delay=0,
            retry_max_delay=0,
            retry_jitter=0,
        ),
        logging=LoggingConfig(output_dir=data_root, log_to_file=False),
    )


@pytest.fixture
def exit_func() -> MagicMock:
    return MagicMock()


@pytest.fixture
def recovery_manager(
    migration_config: MigrationConfig,
    exit_func: MagicMock,
) -> ErrorRecoveryManager:
    return ErrorRecoveryManager.from_config(migration_config, exit_func=exit_func)


@pytest.fixture
def raw_snapshot(tmp_path: Path) -> Path:
    """A raw snapshot directory with a small legacy data set."""
    return write_snapshot(
        tmp_path / "raw-input",
        {
            "users.json": LEGACY_USERS,
            "recipes.json": LEGACY_RECIPES,
            "ingredients.json": LEGACY_INGREDIENTS,
            "instructions.json": LEGACY_INSTRUCTIONS,
            "tags.json": LEGACY_TAGS,
            "recipe_tags.json": LEGACY_RECIPE_TAGS,
        },
    )


@pytest.fixture
def snapshot_writer() -> Callable[[Path, dict[str, Any]], Path]:
    return write_snapshot


@pytest.fixture
def tracer() -> MockTracer:
    return MockTracer()


@pytest.fixture
def make_context(
    tmp_path: Path,
    migration_config: MigrationConfig,
    recovery_manager: ErrorRecoveryManager,
    tracer: MockTracer,
) -> Callable[..., StageContext]:
    """Factory for StageContext instances writing into a fresh output directory."""

    def factory(
        phase: str,
        input_dir: Path | None = None,
        config: MigrationConfig | None = None,
        recovery: ErrorRecoveryManager | None = None,
    ) -> StageContext:
        output_dir = tmp_path / f"{phase}-output"
        output_dir.mkdir(parents=True, exist_ok=True)
        return StageContext(
            config=config or migration_config,
            phase=phase,
            input_dir=input_dir,
            output_dir=output_dir,
            recovery=recovery or recovery_manager,
            tracer=tracer,
        )

    return factory
