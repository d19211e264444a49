"""
Error recovery and graceful shutdown coordination.

Handles signal registration, ordered shutdown handlers, recovery state
persistence and the stop/continue policy applied when a phase fails.

This module provides:
- RecoveryPhase: Enum of manager states (Running -> ShuttingDown -> Terminated)
- RecoveryState: Persisted record of an incident
- RecoveryDecision: Outcome of handle_error
- ErrorRecoveryManager: Coordinates shutdown and incident persistence
- initialize_error_recovery / get_error_recovery / reset_error_recovery:
  Explicit process-wide registry used by signal handlers

Example:
    >>> manager = initialize_error_recovery(config)
    >>> manager.register_signals()
    >>> manager.register_shutdown_handler(client.close)
    >>> decision = await manager.handle_error(error, {"phase": "import"})
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any, TypeVar

from pydantic import BaseModel, Field, ValidationError

from legacymigrate.config import MigrationConfig
from legacymigrate.exceptions import MigrationError, categorize_error, format_stack
from legacymigrate.logs import flush_logging

logger = logging.getLogger(__name__)

T = TypeVar("T")

ShutdownHandler = Callable[[], Awaitable[None]]
"""Async cleanup callable run once during graceful shutdown."""

ExitFunc = Callable[[int], Any]
"""Called with the exit status when a second signal forces termination."""

FORCED_EXIT_CODE = 130
RECOVERY_DIR_NAME = "recovery"

# Signals that trigger graceful shutdown; SIGQUIT does not exist on Windows
SHUTDOWN_SIGNALS: tuple[signal.Signals, ...] = tuple(
    sig
    for sig in (
        signal.SIGINT,
        signal.SIGTERM,
        getattr(signal, "SIGQUIT", None),
    )
    if sig is not None
)


class RecoveryPhase(Enum):
    """
    States of the recovery manager.

    The manager only moves forward: RUNNING -> SHUTTING_DOWN -> TERMINATED.
    """

    RUNNING = "running"
    """Normal operation, no shutdown requested."""

    SHUTTING_DOWN = "shutting_down"
    """Shutdown handlers are running."""

    TERMINATED = "terminated"
    """All handlers ran and logs were flushed."""


class RecoveryErrorInfo(BaseModel):
    """Error section of a recovery state file."""

    message: str
    category: str
    stack: str | None = None


class RecoveryProgress(BaseModel):
    """Record counts at the time of the incident."""

    total: int = 0
    processed: int = 0
    succeeded: int = 0
    failed: int = 0


class RecoveryState(BaseModel):
    """
    Persisted record of an incident.

    One file is written per handled error; files are never overwritten.
    """

    phase: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    error: RecoveryErrorInfo
    progress: RecoveryProgress = Field(default_factory=RecoveryProgress)
    checkpoint: Any = None
    metadata: dict[str, Any] | None = None


@dataclass(frozen=True)
class RecoveryDecision:
    """
    Outcome of ErrorRecoveryManager.handle_error.

    Attributes:
        stop: True when the run must stop (``stop_on_error`` was set)
        state_path: Recovery file written for the incident, if any
        error: The categorized error
    """

    stop: bool
    state_path: Path | None
    error: MigrationError


class ErrorRecoveryManager:
    """
    Coordinates graceful shutdown and incident persistence for one run.

    Shutdown handlers run sequentially in registration order, exactly once.
    A failing handler is logged and does not prevent the remaining handlers
    from running. A second termination signal received while shutting down
    calls ``exit_func`` immediately and skips further cleanup.

    Args:
        output_dir: Data root; recovery files go to ``<output_dir>/recovery``
        stop_on_error: Whether handle_error stops the run
        save_state_on_error: Whether handle_error persists a recovery file
        exit_func: Called on forced termination (defaults to ``os._exit``)
    """

    def __init__(
        self,
        output_dir: Path | str,
        stop_on_error: bool = False,
        save_state_on_error: bool = True,
        exit_func: ExitFunc | None = None,
    ) -> None:
        self.output_dir = Path(output_dir)
        self.stop_on_error = stop_on_error
        self.save_state_on_error = save_state_on_error
        self._exit_func: ExitFunc = exit_func or os._exit
        self._phase = RecoveryPhase.RUNNING
        self._shutdown_handlers: list[ShutdownHandler] = []
        self._shutdown_reason: str | None = None
        self._registered_signals: list[signal.Signals] = []
        self._loop: asyncio.AbstractEventLoop | None = None
        self._signal_tasks: set[asyncio.Task[None]] = set()

    @classmethod
    def from_config(cls, config: MigrationConfig, **kwargs: Any) -> ErrorRecoveryManager:
        """Build a manager from the migration configuration."""
        return cls(
            output_dir=config.logging.output_dir,
            stop_on_error=config.import_.stop_on_error,
            save_state_on_error=config.recovery.save_state_on_error,
            **kwargs,
        )

    @property
    def phase(self) -> RecoveryPhase:
        """Current manager state."""
        return self._phase

    @property
    def is_shutting_down(self) -> bool:
        """True once graceful shutdown has started."""
        return self._phase is not RecoveryPhase.RUNNING

    @property
    def shutdown_reason(self) -> str | None:
        """Reason passed to graceful_shutdown, if it ran."""
        return self._shutdown_reason

    @property
    def recovery_dir(self) -> Path:
        """Directory holding recovery state files."""
        return self.output_dir / RECOVERY_DIR_NAME

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    def register_shutdown_handler(self, handler: ShutdownHandler) -> None:
        """
        Register an async cleanup handler.

        Handlers run in registration order during graceful shutdown.

        Example:
            >>> manager.register_shutdown_handler(client.close)
        """
        self._shutdown_handlers.append(handler)

    def remove_shutdown_handler(self, handler: ShutdownHandler) -> bool:
        """
        Remove a registered handler.

        Returns:
            True if the handler was found and removed, False otherwise
        """
        try:
            self._shutdown_handlers.remove(handler)
            return True
        except ValueError:
            return False

    async def graceful_shutdown(self, reason: str) -> None:
        """
        Run every shutdown handler once, then flush logs.

        Subsequent calls are no-ops.

        Args:
            reason: Why shutdown was requested (signal name, "error", ...)
        """
        if self._phase is not RecoveryPhase.RUNNING:
            logger.debug(
                "Graceful shutdown already in progress",
                extra={"reason": reason, "current_phase": self._phase.value},
            )
            return

        self._phase = RecoveryPhase.SHUTTING_DOWN
        self._shutdown_reason = reason
        logger.info(
            f"Starting graceful shutdown ({reason})",
            extra={"reason": reason, "handlers": len(self._shutdown_handlers)},
        )

        for handler in list(self._shutdown_handlers):
            try:
                await handler()
            except Exception as e:
                logger.error(
                    f"Shutdown handler failed: {e}",
                    exc_info=True,
                    extra={"handler": getattr(handler, "__qualname__", repr(handler))},
                )

        self._phase = RecoveryPhase.TERMINATED
        logger.info("Graceful shutdown complete", extra={"reason": reason})
        flush_logging()

    def register_signals(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        """
        Register SIGINT, SIGTERM and SIGQUIT handlers on the event loop.

        The first signal starts graceful shutdown as a task. A signal received
        after that forces termination with exit status 130.

        Args:
            loop: Event loop to register handlers on. Defaults to the
                  running event loop.
        """
        if self._registered_signals:
            logger.warning("Signal handlers already registered")
            return

        loop = loop or asyncio.get_running_loop()
        self._loop = loop

        for sig in SHUTDOWN_SIGNALS:
            try:
                loop.add_signal_handler(sig, lambda s=sig: self._schedule_signal(s))
            except NotImplementedError:
                # Windows event loops have no add_signal_handler
                logger.warning(
                    "Signal handling not supported on this platform",
                    extra={"signal": sig.name},
                )
                continue
            self._registered_signals.append(sig)
            logger.debug("Registered signal handler", extra={"signal": sig.name})

    def unregister_signals(self) -> None:
        """Remove the signal handlers installed by register_signals."""
        if self._loop is None:
            return
        for sig in self._registered_signals:
            self._loop.remove_signal_handler(sig)
        self._registered_signals.clear()
        self._loop = None

    def _schedule_signal(self, sig: signal.Signals) -> None:
        task = asyncio.ensure_future(self._handle_signal(sig))
        self._signal_tasks.add(task)
        task.add_done_callback(self._signal_tasks.discard)

    async def _handle_signal(self, sig: signal.Signals) -> None:
        """
        Handle a termination signal.

        On first signal, runs graceful shutdown. On a later signal, calls the
        exit function immediately.

        Args:
            sig: The signal received
        """
        if self._phase is not RecoveryPhase.RUNNING:
            logger.warning(
                "Received second shutdown signal, forcing exit",
                extra={"signal": sig.name, "current_phase": self._phase.value},
            )
            flush_logging()
            self._exit_func(FORCED_EXIT_CODE)
            return

        logger.info(
            f"Received {sig.name}, initiating graceful shutdown",
            extra={"signal": sig.name},
        )
        await self.graceful_shutdown(sig.name)

    # ------------------------------------------------------------------
    # Recovery state
    # ------------------------------------------------------------------

    def save_recovery_state(self, state: RecoveryState) -> Path | None:
        """
        Persist a recovery state file.

        The file is named ``recovery-<phase>-<timestamp>.json``; an existing
        file is never overwritten, a numeric suffix is added instead.

        Args:
            state: The incident to persist

        Returns:
            Path of the written file, or None when persistence is disabled
        """
        if not self.save_state_on_error:
            return None

        self.recovery_dir.mkdir(parents=True, exist_ok=True)
        stamp = state.timestamp.strftime("%Y-%m-%dT%H-%M-%S-%fZ")
        base_name = f"recovery-{state.phase}-{stamp}"
        payload = state.model_dump_json(indent=2)

        suffix = 0
        while True:
            name = f"{base_name}.json" if suffix == 0 else f"{base_name}-{suffix}.json"
            path = self.recovery_dir / name
            try:
                with path.open("x", encoding="utf-8") as fh:
                    fh.write(payload)
            except FileExistsError:
                suffix += 1
                continue
            break

        logger.info(
            f"Recovery state saved to {path}",
            extra={"path": str(path), "phase": state.phase},
        )
        return path

    def load_recovery_state(self, path: Path | str) -> RecoveryState | None:
        """
        Load a recovery state file.

        Returns:
            The state, or None if the file is missing or unreadable
        """
        path = Path(path)
        if not path.is_file():
            logger.warning("Recovery state file not found", extra={"path": str(path)})
            return None
        try:
            return RecoveryState.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as e:
            logger.error(
                f"Failed to load recovery state: {e}",
                extra={"path": str(path), "error_type": type(e).__name__},
            )
            return None

    def list_recovery_states(self) -> list[Path]:
        """Recovery state files under the recovery directory, oldest first."""
        if not self.recovery_dir.is_dir():
            return []
        return sorted(
            p
            for p in self.recovery_dir.iterdir()
            if p.is_file() and p.name.startswith("recovery-") and p.suffix == ".json"
        )

    # ------------------------------------------------------------------
    # Error policy
    # ------------------------------------------------------------------

    async def handle_error(
        self,
        error: BaseException,
        partial_state: dict[str, Any] | None = None,
    ) -> RecoveryDecision:
        """
        Apply the error policy to a failure.

        Persists a recovery state when enabled. With ``stop_on_error`` the
        manager runs graceful shutdown and tells the caller to stop;
        otherwise the error is logged and the caller may continue. The caller
        is responsible for raising.

        Args:
            error: The failure
            partial_state: Optional ``phase``, ``progress``, ``checkpoint``
                and ``metadata`` describing where the failure happened

        Returns:
            RecoveryDecision describing what was done
        """
        previous = getattr(error, "recovery_decision", None)
        if isinstance(previous, RecoveryDecision):
            return previous

        partial_state = partial_state or {}
        migration_error = categorize_error(error, phase=partial_state.get("phase"))
        phase = migration_error.phase or partial_state.get("phase") or "unknown"

        logger.error(
            f"Migration error in {phase}: {migration_error.message}",
            extra={
                "phase": phase,
                "category": migration_error.category.value,
                "retryable": migration_error.retryable,
                "stop_on_error": self.stop_on_error,
            },
        )

        state_path: Path | None = None
        if self.save_state_on_error:
            state = RecoveryState(
                phase=phase,
                error=RecoveryErrorInfo(
                    message=migration_error.message,
                    category=migration_error.category.value,
                    stack=format_stack(error),
                ),
                progress=RecoveryProgress(**(partial_state.get("progress") or {})),
                checkpoint=partial_state.get("checkpoint"),
                metadata=partial_state.get("metadata") or migration_error.metadata or None,
            )
            try:
                state_path = self.save_recovery_state(state)
            except OSError as e:
                logger.error(
                    f"Failed to save recovery state: {e}",
                    exc_info=True,
                    extra={"phase": phase, "recovery_dir": str(self.recovery_dir)},
                )

        decision = RecoveryDecision(
            stop=self.stop_on_error, state_path=state_path, error=migration_error
        )
        # An exception is handled once even if several layers report it
        error.recovery_decision = decision  # type: ignore[attr-defined]

        if self.stop_on_error:
            logger.error("Stopping execution due to error (stop_on_error=true)")
            await self.graceful_shutdown("error")
        else:
            logger.warning("Continuing execution despite error (stop_on_error=false)")
        return decision

    async def with_error_recovery(
        self,
        operation: Callable[[], Awaitable[T]],
        phase: str,
        state: dict[str, Any] | None = None,
    ) -> T:
        """
        Run an operation, applying handle_error to any failure and re-raising it.

        Example:
            >>> rows = await manager.with_error_recovery(load_rows, "extract")
        """
        try:
            return await operation()
        except Exception as e:
            await self.handle_error(e, {**(state or {}), "phase": phase})
            raise


_manager: ErrorRecoveryManager | None = None


def initialize_error_recovery(config: MigrationConfig, **kwargs: Any) -> ErrorRecoveryManager:
    """
    Create the process-wide recovery manager.

    Replaces any previously initialized manager.
    """
    global _manager
    _manager = ErrorRecoveryManager.from_config(config, **kwargs)
    return _manager


def get_error_recovery() -> ErrorRecoveryManager:
    """
    Return the process-wide recovery manager.

    Raises:
        RuntimeError: If initialize_error_recovery has not been called
    """
    if _manager is None:
        raise RuntimeError(
            "Error recovery is not initialized. Call initialize_error_recovery() first."
        )
    return _manager


def reset_error_recovery() -> None:
    """Forget the process-wide recovery manager, removing its signal handlers."""
    global _manager
    if _manager is not None:
        _manager.unregister_signals()
    _manager = None


__all__ = [
    "ErrorRecoveryManager",
    "ExitFunc",
    "FORCED_EXIT_CODE",
    "RecoveryDecision",
    "RecoveryErrorInfo",
    "RecoveryPhase",
    "RecoveryProgress",
    "RecoveryState",
    "SHUTDOWN_SIGNALS",
    "ShutdownHandler",
    "get_error_recovery",
    "initialize_error_recovery",
    "reset_error_recovery",
]
