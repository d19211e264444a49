"""
Shared plumbing for pipeline stages.

This module provides:
- Stage: Protocol every stage implements
- StageContext: What the orchestrator hands to a stage
- StageReport: Stage outcome, also written as the stage's report file
- write_json / read_json / read_records: Snapshot file helpers
"""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol, TypeVar, runtime_checkable

from pydantic import BaseModel, ValidationError
from pydantic_core import to_jsonable_python

from legacymigrate.config import MigrationConfig
from legacymigrate.exceptions import ShutdownRequestedError, StageInputError
from legacymigrate.observability import NullTracer, Tracer
from legacymigrate.recovery import ErrorRecoveryManager
from legacymigrate.stages.records import RecordDiagnostic

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

REPORT_FILES: dict[str, str] = {
    "extract": "extraction-report.json",
    "transform": "transformation-report.json",
    "validate": "validation-report.json",
    "import": "import-report.json",
}
"""Report file each phase writes into its snapshot directory."""


@dataclass
class StageContext:
    """
    Inputs for one stage execution.

    Attributes:
        config: Frozen run configuration
        phase: Phase being executed
        input_dir: Snapshot to read from (None for extract)
        output_dir: Staging directory to write into
        recovery: Recovery manager of the run
        tracer: Tracer for spans inside the stage
    """

    config: MigrationConfig
    phase: str
    input_dir: Path | None
    output_dir: Path
    recovery: ErrorRecoveryManager
    tracer: Tracer = field(default_factory=NullTracer)

    def require_input_dir(self) -> Path:
        if self.input_dir is None:
            raise StageInputError(f"Phase {self.phase} needs an input directory", phase=self.phase)
        return self.input_dir

    def check_shutdown(self) -> None:
        """Raise ShutdownRequestedError if graceful shutdown has started."""
        if self.recovery.is_shutting_down:
            raise ShutdownRequestedError(phase=self.phase)


@dataclass
class StageReport:
    """
    Outcome of a stage.

    Attributes:
        phase: Phase that produced the report
        input_dir: Snapshot the stage read
        output_dir: Snapshot the stage wrote
        stats: Stage-specific statistics
        files: Names of the files written into ``output_dir``
        timestamp: When the report was produced
    """

    phase: str
    input_dir: Path | None
    output_dir: Path
    stats: dict[str, Any] = field(default_factory=dict)
    files: list[str] = field(default_factory=list)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def report_file(self) -> str:
        return REPORT_FILES[self.phase]

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase,
            "timestamp": self.timestamp.isoformat(),
            "input_dir": str(self.input_dir) if self.input_dir else None,
            "output_dir": str(self.output_dir),
            "stats": self.stats,
            "files": self.files,
        }

    def write(self) -> Path:
        """Write the report file into the output directory."""
        if self.report_file not in self.files:
            self.files.append(self.report_file)
        return write_json(self.output_dir / self.report_file, self.to_dict())


@runtime_checkable
class Stage(Protocol):
    """
    A pipeline stage.

    ``run`` writes its output files into ``context.output_dir`` and returns
    a report. Per-record problems go into the report; stage-fatal problems
    are raised.
    """

    phase: str

    async def run(self, context: StageContext) -> StageReport: ...


def write_json(path: Path, data: Any) -> Path:
    """Write ``data`` as indented JSON. Pydantic models, datetimes and paths are supported."""
    path.write_text(
        json.dumps(data, indent=2, default=to_jsonable_python, ensure_ascii=False),
        encoding="utf-8",
    )
    return path


def read_json(path: Path, phase: str | None = None) -> Any:
    """
    Read a JSON snapshot file.

    Raises:
        StageInputError: If the file is missing or not valid JSON
    """
    if not path.is_file():
        raise StageInputError(f"Input file not found: {path}", phase=phase)
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise StageInputError(f"Cannot read input file {path}: {e}", phase=phase) from e


def read_records(
    path: Path,
    model: type[ModelT],
    record_type: str,
    phase: str | None = None,
    required: bool = True,
) -> tuple[list[ModelT], list[RecordDiagnostic]]:
    """
    Read a JSON array of records, validating each against ``model``.

    Records that fail validation are returned as diagnostics instead of
    raising.

    Args:
        path: JSON file holding an array of objects
        model: Schema of a single record
        record_type: Label used in diagnostics (``users``, ``recipes``, ...)
        phase: Phase reading the file, for error attribution
        required: When False a missing file yields no records

    Raises:
        StageInputError: If a required file is missing, unreadable or not an array
    """
    if not required and not path.exists():
        logger.warning(f"Optional input file missing: {path.name}", extra={"path": str(path)})
        return [], []

    data = read_json(path, phase)
    if not isinstance(data, list):
        raise StageInputError(f"Expected a JSON array in {path}", phase=phase)

    records: list[ModelT] = []
    diagnostics: list[RecordDiagnostic] = []
    for raw in data:
        try:
            records.append(model.model_validate(raw))
        except ValidationError as e:
            first = e.errors()[0]
            diagnostics.append(
                RecordDiagnostic(
                    record_type=record_type,
                    legacy_id=_record_id(raw),
                    field=".".join(str(p) for p in first["loc"]) or None,
                    message=first["msg"],
                    error_type="schema",
                )
            )
    return records, diagnostics


def _record_id(raw: Any) -> Any:
    if isinstance(raw, dict):
        return raw.get("legacy_id", raw.get("id"))
    return None


def dump_records(records: Sequence[BaseModel]) -> list[dict[str, Any]]:
    """JSON-ready dictionaries for a list of models."""
    return [record.model_dump(mode="json") for record in records]


__all__ = [
    "REPORT_FILES",
    "Stage",
    "StageContext",
    "StageReport",
    "dump_records",
    "read_json",
    "read_records",
    "write_json",
]
