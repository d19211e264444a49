"""
Pipeline stages.

Each stage reads the snapshot produced by its predecessor and writes a new
one: extract -> transform -> validate -> import.
"""

from legacymigrate.stages.base import REPORT_FILES, Stage, StageContext, StageReport
from legacymigrate.stages.extract import ExtractStage, TableSpec
from legacymigrate.stages.id_mapping import IdMappingStore
from legacymigrate.stages.importer import BatchImporter, ImportStage
from legacymigrate.stages.transform import (
    DefaultRecordTransformer,
    RecordTransformer,
    TransformStage,
)
from legacymigrate.stages.validate import (
    DefaultRecordValidator,
    RecordValidator,
    ValidateStage,
    ValidationFailure,
)


def default_stages() -> dict[str, Stage]:
    """One default stage instance per phase."""
    return {
        "extract": ExtractStage(),
        "transform": TransformStage(),
        "validate": ValidateStage(),
        "import": ImportStage(),
    }


__all__ = [
    "BatchImporter",
    "DefaultRecordTransformer",
    "DefaultRecordValidator",
    "ExtractStage",
    "IdMappingStore",
    "ImportStage",
    "REPORT_FILES",
    "RecordTransformer",
    "RecordValidator",
    "Stage",
    "StageContext",
    "StageReport",
    "TableSpec",
    "TransformStage",
    "ValidateStage",
    "ValidationFailure",
    "default_stages",
]
