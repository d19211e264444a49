"""
Observability utilities for migration runs.

Tracing goes through the Tracer protocol so it can be disabled with
``logging.enable_tracing = false`` or recorded with MockTracer in tests.
"""

from legacymigrate.observability.attributes import (
    ATTR_BATCH_NUMBER,
    ATTR_BATCH_SIZE,
    ATTR_DB_NAME,
    ATTR_DB_SYSTEM,
    ATTR_DRY_RUN,
    ATTR_HTTP_URL,
    ATTR_INPUT_DIR,
    ATTR_OUTPUT_DIR,
    ATTR_PHASE,
    ATTR_RECORD_TYPE,
    ATTR_TABLE_NAME,
)
from legacymigrate.observability.tracer import (
    MockTracer,
    NullTracer,
    OpenTelemetryTracer,
    Tracer,
    create_tracer,
)

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
    "MockTracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "Tracer",
    "create_tracer",
]
