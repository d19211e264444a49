"""
Exceptions and error classification for the migration pipeline.

Exception Hierarchy:
    MigrationError (base)
    +-- MigrationConnectionError
    |   +-- TunnelConnectionError
    |   +-- DatabaseConnectionError
    +-- QueryError
    +-- TransformationError
    +-- BatchImportError
    +-- ConfigurationError
    +-- StageInputError
    +-- ShutdownRequestedError
    +-- UnknownMigrationError

Connection and import errors are retryable, query and data errors are not.
Anything that cannot be classified is treated as retryable so that a
transient failure of an unexpected kind does not abort a long run.
"""

from __future__ import annotations

import asyncio
import logging
import socket
import traceback
from enum import Enum
from typing import Any

import asyncssh
import httpx
from sqlalchemy import exc as sa_exc

logger = logging.getLogger(__name__)


class ErrorCategory(Enum):
    """
    Categories used to classify migration errors.

    The category decides whether an error is retried and how it is
    reported in recovery state files.
    """

    SSH_CONNECTION = "ssh_connection"
    """Tunnel could not be established or was lost."""

    DATABASE_CONNECTION = "database_connection"
    """Database handshake or connection failure."""

    QUERY_ERROR = "query_error"
    """A SQL statement failed (malformed query, permission, read-only violation)."""

    NETWORK_ERROR = "network_error"
    """Transport level failure talking to the write API."""

    IMPORT_ERROR = "import_error"
    """The write API rejected or failed a batch."""

    TRANSFORMATION_ERROR = "transformation_error"
    """A source record could not be transformed."""

    VALIDATION_ERROR = "validation_error"
    """A record failed a quality rule or the API rejected it as invalid."""

    FILE_SYSTEM_ERROR = "file_system_error"
    """A snapshot or report file could not be read or written."""

    CONFIGURATION_ERROR = "configuration_error"
    """Missing or invalid configuration."""

    SHUTDOWN = "shutdown"
    """Work stopped because a shutdown was requested."""

    UNKNOWN_ERROR = "unknown_error"
    """Fallback for anything unclassified."""


# Categories retried by default when no explicit flag is given
RETRYABLE_CATEGORIES: frozenset[ErrorCategory] = frozenset(
    {
        ErrorCategory.SSH_CONNECTION,
        ErrorCategory.DATABASE_CONNECTION,
        ErrorCategory.NETWORK_ERROR,
        ErrorCategory.IMPORT_ERROR,
        ErrorCategory.UNKNOWN_ERROR,
    }
)


class MigrationError(Exception):
    """
    Base exception for all migration pipeline errors.

    Attributes:
        message: Human-readable error description
        phase: Pipeline phase the error occurred in, if known
        category: Error category used for retry decisions and reporting
        retryable: Whether the Retry Utility should retry the operation
        metadata: Extra context (record id, batch number, attempt, ...)
    """

    default_category: ErrorCategory = ErrorCategory.UNKNOWN_ERROR

    def __init__(
        self,
        message: str,
        *,
        phase: str | None = None,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        self.message = message
        self.phase = phase
        self.category = category or self.default_category
        self.retryable = (
            retryable if retryable is not None else self.category in RETRYABLE_CATEGORIES
        )
        self.metadata = dict(metadata or {})
        super().__init__(message)

    def __str__(self) -> str:
        """Return formatted error string with context."""
        parts = [self.message]
        if self.phase:
            parts.append(f"phase={self.phase}")
        if self.retryable:
            parts.append("(retryable)")
        return " ".join(parts)

    def to_dict(self) -> dict[str, Any]:
        """
        Convert the exception to a dictionary for logging and recovery files.

        Returns:
            Dictionary representation of the error.
        """
        cause = self.__cause__
        return {
            "name": type(self).__name__,
            "message": self.message,
            "phase": self.phase,
            "category": self.category.value,
            "retryable": self.retryable,
            "metadata": self.metadata,
            "cause": f"{type(cause).__name__}: {cause}" if cause else None,
            "stack": format_stack(self),
        }


class MigrationConnectionError(MigrationError):
    """Raised when a connection to a remote system cannot be established."""

    default_category = ErrorCategory.DATABASE_CONNECTION


class TunnelConnectionError(MigrationConnectionError):
    """Raised when the SSH tunnel cannot be opened after all attempts."""

    default_category = ErrorCategory.SSH_CONNECTION

    def __init__(self, message: str, *, attempts: int = 0, **kwargs: Any) -> None:
        self.attempts = attempts
        kwargs.setdefault("phase", "extract")
        super().__init__(message, **kwargs)


class DatabaseConnectionError(MigrationConnectionError):
    """Raised when the database handshake fails after all attempts."""

    default_category = ErrorCategory.DATABASE_CONNECTION

    def __init__(self, message: str, *, attempts: int = 0, **kwargs: Any) -> None:
        self.attempts = attempts
        kwargs.setdefault("phase", "extract")
        super().__init__(message, **kwargs)


class QueryError(MigrationError):
    """Raised when a SQL statement fails. Never retried at the client layer."""

    default_category = ErrorCategory.QUERY_ERROR

    def __init__(self, message: str, *, sql: str | None = None, **kwargs: Any) -> None:
        self.sql = sql
        kwargs.setdefault("retryable", False)
        super().__init__(message, **kwargs)


class TransformationError(MigrationError):
    """Raised for a single malformed source record; recorded, never fatal."""

    default_category = ErrorCategory.TRANSFORMATION_ERROR

    def __init__(self, message: str, *, legacy_id: Any = None, **kwargs: Any) -> None:
        self.legacy_id = legacy_id
        kwargs.setdefault("phase", "transform")
        super().__init__(message, **kwargs)


class BatchImportError(MigrationError):
    """
    Raised when the write API fails a batch.

    Retryable per batch; fatal for the run when ``stop_on_error`` is set.

    Attributes:
        status_code: HTTP status returned by the API, if any
        batch_number: 1-based batch index
        response_body: Truncated response body for diagnosis
    """

    default_category = ErrorCategory.IMPORT_ERROR

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        batch_number: int | None = None,
        response_body: str | None = None,
        **kwargs: Any,
    ) -> None:
        self.status_code = status_code
        self.batch_number = batch_number
        self.response_body = response_body
        if status_code is not None and "retryable" not in kwargs:
            kwargs["retryable"] = status_code >= 500 or status_code == 429
        if status_code is not None and 400 <= status_code < 500 and "category" not in kwargs:
            kwargs["category"] = ErrorCategory.VALIDATION_ERROR
        kwargs.setdefault("phase", "import")
        super().__init__(message, **kwargs)


class ConfigurationError(MigrationError):
    """Raised when configuration is missing or invalid."""

    default_category = ErrorCategory.CONFIGURATION_ERROR


class StageInputError(MigrationError):
    """Raised when a stage cannot find or read its input snapshot."""

    default_category = ErrorCategory.FILE_SYSTEM_ERROR


class ShutdownRequestedError(MigrationError):
    """Raised when work stops because graceful shutdown is in progress."""

    default_category = ErrorCategory.SHUTDOWN

    def __init__(self, message: str = "shutdown requested", **kwargs: Any) -> None:
        kwargs.setdefault("retryable", False)
        super().__init__(message, **kwargs)


class UnknownMigrationError(MigrationError):
    """Catch-all wrapper for unclassified failures. Retryable."""

    default_category = ErrorCategory.UNKNOWN_ERROR


def format_stack(error: BaseException) -> str | None:
    """Return the formatted traceback of an exception, or None if it was never raised."""
    if error.__traceback__ is None:
        return None
    return "".join(traceback.format_exception(type(error), error, error.__traceback__))


def categorize_error(
    error: BaseException,
    phase: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> MigrationError:
    """
    Map an arbitrary exception onto the migration error taxonomy.

    MigrationError instances are returned unchanged. Everything else is
    wrapped in a MigrationError of the matching category with the original
    exception chained as ``__cause__``.

    Args:
        error: The exception to classify
        phase: Phase to attribute the error to
        metadata: Extra context stored on the wrapper

    Returns:
        A MigrationError describing the failure
    """
    if isinstance(error, MigrationError):
        return error

    message = str(error) or type(error).__name__
    category = ErrorCategory.UNKNOWN_ERROR
    retryable: bool | None = None

    if isinstance(error, (asyncssh.DisconnectError, asyncssh.ChannelOpenError)):
        category = ErrorCategory.SSH_CONNECTION
    elif isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        category = (
            ErrorCategory.VALIDATION_ERROR if 400 <= status < 500 else ErrorCategory.IMPORT_ERROR
        )
        retryable = status >= 500 or status == 429
    elif isinstance(error, httpx.TransportError):
        category = ErrorCategory.NETWORK_ERROR
    elif isinstance(error, (sa_exc.InterfaceError, sa_exc.DisconnectionError)):
        category = ErrorCategory.DATABASE_CONNECTION
    elif isinstance(error, sa_exc.OperationalError) and error.connection_invalidated:
        category = ErrorCategory.DATABASE_CONNECTION
    elif isinstance(error, sa_exc.SQLAlchemyError):
        category = ErrorCategory.QUERY_ERROR
    elif isinstance(error, (ConnectionError, TimeoutError, asyncio.TimeoutError, socket.gaierror)):
        category = ErrorCategory.NETWORK_ERROR
    elif isinstance(error, (FileNotFoundError, PermissionError, IsADirectoryError)):
        category = ErrorCategory.FILE_SYSTEM_ERROR
    elif isinstance(error, OSError):
        category = ErrorCategory.NETWORK_ERROR

    if category is ErrorCategory.UNKNOWN_ERROR:
        error_class: type[MigrationError] = UnknownMigrationError
    else:
        error_class = MigrationError
    wrapped = error_class(
        message,
        phase=phase,
        category=category,
        retryable=retryable,
        metadata=metadata,
    )
    wrapped.__cause__ = error
    return wrapped


def is_retryable(error: BaseException) -> bool:
    """
    Default retry classifier.

    Args:
        error: The exception raised by the operation

    Returns:
        True if the error should be retried
    """
    return categorize_error(error).retryable


__all__ = [
    "ErrorCategory",
    "RETRYABLE_CATEGORIES",
    "MigrationError",
    "MigrationConnectionError",
    "TunnelConnectionError",
    "DatabaseConnectionError",
    "QueryError",
    "TransformationError",
    "BatchImportError",
    "ConfigurationError",
    "StageInputError",
    "ShutdownRequestedError",
    "UnknownMigrationError",
    "categorize_error",
    "format_stack",
    "is_retryable",
]
