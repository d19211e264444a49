"""
Timestamp-named snapshot directories.

Each phase execution writes its output into a fresh directory under the
phase's base path. The directory is created with a ``.partial`` suffix and
renamed to its final name only when the phase succeeds, so a half-written
snapshot is never picked up as input by a later phase.

Layout::

    <output_dir>/
        raw/2026-01-05T10-15-00-123456/
        transformed/2026-01-05T10-20-00-000001/
        validated/...
        imported/...
"""

from __future__ import annotations

import logging
import re
from datetime import UTC, datetime
from pathlib import Path

from legacymigrate.exceptions import StageInputError

logger = logging.getLogger(__name__)

PHASES: tuple[str, ...] = ("extract", "transform", "validate", "import")
"""Phases in execution order."""

PHASE_DIRS: dict[str, str] = {
    "extract": "raw",
    "transform": "transformed",
    "validate": "validated",
    "import": "imported",
}
"""Output subdirectory of each phase under the data root."""

PHASE_INPUTS: dict[str, str | None] = {
    "extract": None,
    "transform": "extract",
    "validate": "transform",
    "import": "validate",
}
"""Phase whose output each phase consumes."""

PARTIAL_SUFFIX = ".partial"

# Lexicographic order of matching names equals creation order
SNAPSHOT_NAME_PATTERN = re.compile(r"\d{4}-\d{2}-\d{2}T\d{2}-\d{2}-\d{2}-\d{6}(?:-\d{3})?")

_TIMESTAMP_FORMAT = "%Y-%m-%dT%H-%M-%S-%f"


def snapshot_name(moment: datetime | None = None) -> str:
    """Directory name for a snapshot created at ``moment`` (defaults to now, UTC)."""
    return (moment or datetime.now(UTC)).strftime(_TIMESTAMP_FORMAT)


def phase_base_dir(output_dir: Path, phase: str) -> Path:
    """
    Base directory holding the snapshots of a phase.

    Raises:
        ValueError: If the phase is unknown
    """
    try:
        return output_dir / PHASE_DIRS[phase]
    except KeyError:
        raise ValueError(f"Unknown phase: {phase!r}. Expected one of {PHASES}") from None


def is_snapshot_name(name: str) -> bool:
    """True for finalized snapshot directory names."""
    return SNAPSHOT_NAME_PATTERN.fullmatch(name) is not None


def create_snapshot(base_dir: Path, moment: datetime | None = None) -> Path:
    """
    Create a staging directory for a new snapshot.

    A ``-NNN`` suffix is added when a snapshot with the same timestamp
    already exists, keeping names unique and ordered.

    Args:
        base_dir: Phase base directory (created if missing)
        moment: Creation time (defaults to now, UTC)

    Returns:
        Path of the ``<name>.partial`` staging directory
    """
    base_dir.mkdir(parents=True, exist_ok=True)
    name = snapshot_name(moment)

    for counter in range(1000):
        candidate = name if counter == 0 else f"{name}-{counter:03d}"
        if (base_dir / candidate).exists():
            continue
        staging = base_dir / f"{candidate}{PARTIAL_SUFFIX}"
        try:
            staging.mkdir()
        except FileExistsError:
            continue
        logger.debug("Created snapshot staging directory", extra={"path": str(staging)})
        return staging

    raise FileExistsError(f"Could not allocate a snapshot directory under {base_dir}")


def finalize_snapshot(staging_dir: Path) -> Path:
    """
    Atomically rename a staging directory to its final snapshot name.

    Returns:
        Path of the finalized snapshot
    """
    if staging_dir.name.endswith(PARTIAL_SUFFIX):
        final_dir = staging_dir.with_name(staging_dir.name[: -len(PARTIAL_SUFFIX)])
    else:
        return staging_dir
    staging_dir.rename(final_dir)
    logger.debug("Finalized snapshot", extra={"path": str(final_dir)})
    return final_dir


def find_latest_snapshot(base_dir: Path) -> Path | None:
    """
    Most recent finalized snapshot under a base directory.

    Staging (``.partial``) directories and unrelated entries are ignored.

    Returns:
        The lexicographically greatest snapshot directory, or None
    """
    if not base_dir.is_dir():
        return None
    candidates = [p for p in base_dir.iterdir() if p.is_dir() and is_snapshot_name(p.name)]
    if not candidates:
        return None
    return max(candidates, key=lambda p: p.name)


def resolve_input_dir(output_dir: Path, phase: str) -> Path:
    """
    Latest finalized output of the phase that feeds ``phase``.

    Raises:
        StageInputError: If the predecessor has never completed
    """
    predecessor = PHASE_INPUTS[phase]
    if predecessor is None:
        raise ValueError(f"Phase {phase!r} does not consume a snapshot")

    base_dir = phase_base_dir(output_dir, predecessor)
    latest = find_latest_snapshot(base_dir)
    if latest is None:
        raise StageInputError(
            f"No {PHASE_DIRS[predecessor]} snapshot found under {base_dir}; "
            f"run the {predecessor} phase first",
            phase=phase,
        )
    return latest


__all__ = [
    "PARTIAL_SUFFIX",
    "PHASES",
    "PHASE_DIRS",
    "PHASE_INPUTS",
    "SNAPSHOT_NAME_PATTERN",
    "create_snapshot",
    "finalize_snapshot",
    "find_latest_snapshot",
    "is_snapshot_name",
    "phase_base_dir",
    "resolve_input_dir",
    "snapshot_name",
]
