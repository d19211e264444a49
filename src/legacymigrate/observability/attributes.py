"""
Standard span attributes for migration runs.

Example:
    >>> from legacymigrate.observability.attributes import ATTR_PHASE
    >>>
    >>> with tracer.span("legacymigrate.phase.extract", {ATTR_PHASE: "extract"}):
    ...     pass
"""

# =============================================================================
# Phase Attributes
# =============================================================================

ATTR_PHASE = "legacymigrate.phase"
"""Pipeline phase name (extract, transform, validate, import)."""

ATTR_INPUT_DIR = "legacymigrate.input_dir"
"""Snapshot directory a phase reads from (string)."""

ATTR_OUTPUT_DIR = "legacymigrate.output_dir"
"""Snapshot directory a phase writes to (string)."""

ATTR_DRY_RUN = "legacymigrate.dry_run"
"""Whether the import runs without issuing write calls (bool)."""

# =============================================================================
# Batch Attributes
# =============================================================================

ATTR_RECORD_TYPE = "legacymigrate.record.type"
"""Kind of record being processed (users, recipes)."""

ATTR_BATCH_NUMBER = "legacymigrate.batch.number"
"""1-based batch index (integer)."""

ATTR_BATCH_SIZE = "legacymigrate.batch.size"
"""Number of records in the batch (integer)."""

ATTR_TABLE_NAME = "legacymigrate.table"
"""Legacy table being extracted (string)."""

# =============================================================================
# OpenTelemetry Semantic Conventions
# =============================================================================

ATTR_DB_SYSTEM = "db.system"
"""Database system (e.g., 'postgresql')."""

ATTR_DB_NAME = "db.name"
"""Database name."""

ATTR_HTTP_URL = "http.url"
"""Full request URL."""

__all__ = [
    "ATTR_BATCH_NUMBER",
    "ATTR_BATCH_SIZE",
    "ATTR_DB_NAME",
    "ATTR_DB_SYSTEM",
    "ATTR_DRY_RUN",
    "ATTR_HTTP_URL",
    "ATTR_INPUT_DIR",
    "ATTR_OUTPUT_DIR",
    "ATTR_PHASE",
    "ATTR_RECORD_TYPE",
    "ATTR_TABLE_NAME",
]
