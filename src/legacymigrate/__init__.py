"""
legacymigrate - Resumable migration pipeline for legacy recipe data.

This library provides:
- SSH tunnel and read-only database access to the legacy system
- Retry with exponential backoff and jitter
- Error recovery with graceful shutdown and persisted recovery states
- Extract, Transform, Validate and Import stages over snapshot directories
- A phase orchestrator and the ``legacymigrate`` command line
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("legacy-migrate")
except PackageNotFoundError:
    # Package not installed (running from source without install)
    __version__ = "0.0.0.dev0"

from legacymigrate.config import MigrationConfig, load_config
from legacymigrate.database import DatabaseClient, connect_database
from legacymigrate.exceptions import (
    BatchImportError,
    ConfigurationError,
    DatabaseConnectionError,
    ErrorCategory,
    MigrationError,
    QueryError,
    ShutdownRequestedError,
    StageInputError,
    TransformationError,
    TunnelConnectionError,
    UnknownMigrationError,
    categorize_error,
    is_retryable,
)
from legacymigrate.orchestrator import MigrationSummary, PhaseResult, run_migration
from legacymigrate.recovery import (
    ErrorRecoveryManager,
    RecoveryState,
    get_error_recovery,
    initialize_error_recovery,
    reset_error_recovery,
)
from legacymigrate.retry import RetryConfig, calculate_backoff, with_retry
from legacymigrate.ssh_tunnel import SSHTunnel, open_tunnel

__all__ = [
    "__version__",
    # Configuration
    "MigrationConfig",
    "load_config",
    # Errors
    "BatchImportError",
    "ConfigurationError",
    "DatabaseConnectionError",
    "ErrorCategory",
    "MigrationError",
    "QueryError",
    "ShutdownRequestedError",
    "StageInputError",
    "TransformationError",
    "TunnelConnectionError",
    "UnknownMigrationError",
    "categorize_error",
    "is_retryable",
    # Retry
    "RetryConfig",
    "calculate_backoff",
    "with_retry",
    # Connectivity
    "DatabaseClient",
    "SSHTunnel",
    "connect_database",
    "open_tunnel",
    # Recovery
    "ErrorRecoveryManager",
    "RecoveryState",
    "get_error_recovery",
    "initialize_error_recovery",
    "reset_error_recovery",
    # Orchestration
    "MigrationSummary",
    "PhaseResult",
    "run_migration",
]
