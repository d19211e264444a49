"""
ID mapping ledger for idempotent imports.

Maps the legacy id of every imported record to the id the write API
assigned to it. The ledger is saved as ``user-id-mapping.json`` and
``recipe-id-mapping.json`` in the import snapshot after every batch and is
seeded from the most recent import snapshot on the next run, so records
that were already imported are skipped instead of being sent again.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from legacymigrate.exceptions import StageInputError
from legacymigrate.snapshots import PARTIAL_SUFFIX, is_snapshot_name
from legacymigrate.stages.base import read_json, write_json

logger = logging.getLogger(__name__)

MAPPING_FILES: dict[str, str] = {
    "users": "user-id-mapping.json",
    "recipes": "recipe-id-mapping.json",
}
"""Ledger file per record type."""


class IdMapping(BaseModel):
    """One imported record."""

    model_config = ConfigDict(frozen=True)

    legacy_id: int
    new_id: str
    imported_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class IdMappingStore:
    """
    Legacy id to new id mappings per record type.

    Example:
        >>> store = IdMappingStore.load(previous_snapshot)
        >>> pending, done = store.partition("recipes", records)
    """

    def __init__(self) -> None:
        self._mappings: dict[str, dict[int, IdMapping]] = {t: {} for t in MAPPING_FILES}

    @classmethod
    def load(cls, directory: Path) -> IdMappingStore:
        """
        Read the ledger files of a snapshot. Missing files yield no mappings.

        Raises:
            StageInputError: If a ledger file is unreadable or malformed
        """
        store = cls()
        for record_type, file_name in MAPPING_FILES.items():
            path = directory / file_name
            if not path.is_file():
                continue
            data = read_json(path, phase="import")
            if not isinstance(data, list):
                raise StageInputError(f"Expected a JSON array in {path}", phase="import")
            try:
                entries = [IdMapping.model_validate(item) for item in data]
            except ValidationError as e:
                raise StageInputError(f"Malformed ID mapping in {path}: {e}", phase="import") from e
            for entry in entries:
                store._mappings[record_type][entry.legacy_id] = entry

        logger.info(
            f"Loaded ID mappings from {directory}",
            extra={
                "path": str(directory),
                **{f"{t}_mapped": len(m) for t, m in store._mappings.items()},
            },
        )
        return store

    def get_new_id(self, record_type: str, legacy_id: Any) -> str | None:
        entry = self._mappings[record_type].get(legacy_id)
        return entry.new_id if entry is not None else None

    def is_imported(self, record_type: str, legacy_id: Any) -> bool:
        return legacy_id in self._mappings[record_type]

    def record(self, record_type: str, legacy_id: int, new_id: str) -> None:
        """Mark a record as imported under ``new_id``."""
        self._mappings[record_type][legacy_id] = IdMapping(legacy_id=legacy_id, new_id=new_id)

    def count(self, record_type: str) -> int:
        return len(self._mappings[record_type])

    def partition(
        self,
        record_type: str,
        records: Iterable[dict[str, Any]],
    ) -> tuple[list[dict[str, Any]], list[dict[str, Any]]]:
        """Split records into (not yet imported, already imported)."""
        pending: list[dict[str, Any]] = []
        done: list[dict[str, Any]] = []
        for record in records:
            if self.is_imported(record_type, record.get("legacy_id")):
                done.append(record)
            else:
                pending.append(record)
        return pending, done

    def save(self, directory: Path) -> list[Path]:
        """
        Write the ledger files into ``directory``.

        Each file is written to a temporary name and renamed into place so a
        crash never leaves a truncated ledger behind.
        """
        paths = []
        for record_type, file_name in MAPPING_FILES.items():
            entries = sorted(self._mappings[record_type].values(), key=lambda m: m.legacy_id)
            path = directory / file_name
            tmp = path.with_name(f"{file_name}.tmp")
            write_json(tmp, [entry.model_dump(mode="json") for entry in entries])
            tmp.replace(path)
            paths.append(path)
        return paths


def find_latest_mapping_dir(base_dir: Path, exclude: Path | None = None) -> Path | None:
    """
    Most recent import snapshot holding a ledger.

    Staging (``.partial``) directories count: an aborted import still
    recorded what it sent.

    Args:
        base_dir: Import phase base directory
        exclude: Directory of the running import
    """
    if not base_dir.is_dir():
        return None

    candidates = []
    for path in base_dir.iterdir():
        name = path.name.removesuffix(PARTIAL_SUFFIX)
        if not path.is_dir() or not is_snapshot_name(name):
            continue
        if exclude is not None and path.resolve() == exclude.resolve():
            continue
        if any((path / file_name).is_file() for file_name in MAPPING_FILES.values()):
            candidates.append((name, path))
    if not candidates:
        return None
    return max(candidates)[1]


__all__ = [
    "MAPPING_FILES",
    "IdMapping",
    "IdMappingStore",
    "find_latest_mapping_dir",
]
