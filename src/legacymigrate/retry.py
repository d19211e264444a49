"""
Retry utilities for handling transient failures.

One executor is shared by every network path in the pipeline: tunnel and
database bootstrap, extraction transactions and import batch calls.

This module provides:
- RetryConfig: Configuration for retry behavior
- RetryStats: Statistics for retry operations
- calculate_backoff: Calculate delay with exponential backoff and jitter
- with_retry: Retry an async operation while the classifier says so
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from legacymigrate.exceptions import is_retryable

logger = logging.getLogger(__name__)

T = TypeVar("T")

RetryClassifier = Callable[[BaseException], bool]
"""Returns True when the failure should be retried."""

RetryCallback = Callable[[BaseException, int, float], None]
"""Called before each wait with (error, attempt number, delay seconds)."""


@dataclass(frozen=True)
class RetryConfig:
    """
    Configuration for retry behavior.

    Attempts run from 0 to ``max_retries`` inclusive, so an operation is
    tried at most ``max_retries + 1`` times.

    Attributes:
        max_retries: Maximum number of retry attempts (0 = no retries)
        base_delay: Delay in seconds before the first retry
        max_delay: Cap in seconds for the exponential part of the delay
        backoff_multiplier: Growth factor per attempt (1.0 = fixed delay)
        jitter: Upper bound in seconds of the random delay added on top

    Example:
        >>> config = RetryConfig(max_retries=3, base_delay=0.5, max_delay=10.0)
    """

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0
    jitter: float = 1.0

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if self.max_retries < 0:
            raise ValueError(
                f"max_retries must be >= 0, got {self.max_retries}. Use 0 for no retries."
            )

        if self.base_delay < 0:
            raise ValueError(f"base_delay must be >= 0, got {self.base_delay}.")

        if self.max_delay < self.base_delay:
            raise ValueError(
                f"max_delay ({self.max_delay}) must be >= base_delay ({self.base_delay})."
            )

        if self.backoff_multiplier < 1.0:
            raise ValueError(
                f"backoff_multiplier must be >= 1.0, got {self.backoff_multiplier}."
            )

        if self.jitter < 0:
            raise ValueError(f"jitter must be >= 0, got {self.jitter}.")

    @classmethod
    def fixed(cls, max_attempts: int, delay: float) -> RetryConfig:
        """
        Build a fixed-delay policy without jitter.

        Used for tunnel and database bootstrap, where ``max_attempts`` counts
        the total number of attempts rather than retries.

        Args:
            max_attempts: Total attempts (must be >= 1)
            delay: Seconds to wait between attempts

        Returns:
            RetryConfig with ``max_attempts - 1`` retries and a constant delay
        """
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {max_attempts}.")
        return cls(
            max_retries=max_attempts - 1,
            base_delay=delay,
            max_delay=delay,
            backoff_multiplier=1.0,
            jitter=0.0,
        )


@dataclass
class RetryStats:
    """
    Statistics for retry operations.

    Attributes:
        attempts: Total number of attempts (including initial)
        failures: Number of failed attempts
        total_delay_seconds: Total time spent in delays
        last_error: String representation of the last error
    """

    attempts: int = 0
    failures: int = 0
    total_delay_seconds: float = 0.0
    last_error: str | None = None

    @property
    def retries(self) -> int:
        """Number of attempts after the first."""
        return max(0, self.attempts - 1)

    def to_dict(self) -> dict[str, Any]:
        """
        Convert stats to dictionary for serialization.

        Returns:
            Dictionary representation of stats
        """
        return {
            "attempts": self.attempts,
            "failures": self.failures,
            "total_delay_seconds": self.total_delay_seconds,
            "last_error": self.last_error,
        }


def calculate_backoff(attempt: int, config: RetryConfig) -> float:
    """
    Calculate backoff delay with exponential growth and jitter.

    ``min(base_delay * backoff_multiplier ** attempt, max_delay)`` plus a
    uniform random value in ``[0, jitter]``, so concurrent callers do not
    retry in lockstep.

    Args:
        attempt: Current attempt number (0-based)
        config: Retry configuration

    Returns:
        Delay in seconds

    Example:
        >>> config = RetryConfig(base_delay=1.0, max_delay=60.0, jitter=0.0)
        >>> calculate_backoff(3, config)
        8.0
    """
    delay = min(config.base_delay * (config.backoff_multiplier**attempt), config.max_delay)

    if config.jitter > 0:
        delay += random.uniform(0, config.jitter)  # nosec B311 - not crypto

    return delay


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    config: RetryConfig | None = None,
    classifier: RetryClassifier = is_retryable,
    operation_name: str = "operation",
    stats: RetryStats | None = None,
    on_retry: RetryCallback | None = None,
) -> T:
    """
    Retry an async operation with exponential backoff.

    Non-retryable failures and the failure of the last attempt are re-raised
    unchanged, so callers see the original exception type.

    Args:
        operation: Async function to run
        config: Retry configuration (uses defaults if None)
        classifier: Decides whether a failure is retryable
        operation_name: Name for logging purposes
        stats: Optional stats object updated in place
        on_retry: Optional callback invoked before each wait

    Returns:
        Result of the first successful attempt

    Raises:
        Exception: The last failure once retries are exhausted, or the first
            non-retryable failure

    Example:
        >>> async def post_batch():
        ...     return await client.post("/api/migration/recipes", json=batch)
        >>> response = await with_retry(post_batch, RetryConfig(max_retries=3))
    """
    config = config or RetryConfig()
    stats = stats if stats is not None else RetryStats()

    for attempt in range(config.max_retries + 1):
        stats.attempts += 1

        try:
            result = await operation()
        except Exception as e:
            stats.failures += 1
            stats.last_error = str(e)

            if not classifier(e):
                logger.error(
                    f"Non-retryable error in {operation_name}",
                    extra={
                        "operation": operation_name,
                        "attempt": attempt + 1,
                        "error": str(e),
                        "error_type": type(e).__name__,
                    },
                )
                raise

            if attempt >= config.max_retries:
                logger.error(
                    f"All retries exhausted for {operation_name}",
                    extra={
                        "operation": operation_name,
                        "attempts": stats.attempts,
                        "total_delay_seconds": stats.total_delay_seconds,
                        "error": str(e),
                        "error_type": type(e).__name__,
                    },
                )
                raise

            delay = calculate_backoff(attempt, config)
            stats.total_delay_seconds += delay

            logger.warning(
                f"Retrying {operation_name} after failure",
                extra={
                    "operation": operation_name,
                    "attempt": attempt + 1,
                    "max_retries": config.max_retries,
                    "delay_seconds": delay,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )

            if on_retry is not None:
                on_retry(e, attempt + 1, delay)

            await asyncio.sleep(delay)
            continue

        if attempt > 0:
            logger.info(
                f"Operation {operation_name} succeeded after retry",
                extra={"operation": operation_name, "attempt": attempt + 1},
            )
        return result

    # The loop either returns or raises; max_retries >= 0 guarantees one pass
    raise AssertionError("unreachable")


__all__ = [
    "RetryCallback",
    "RetryClassifier",
    "RetryConfig",
    "RetryStats",
    "calculate_backoff",
    "with_retry",
]
