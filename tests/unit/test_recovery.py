"""
Unit tests for the error recovery manager.

Tests cover:
- Graceful shutdown ordering, idempotence and failure tolerance
- Signal handling, including the forced exit on a second signal
- Recovery state persistence (never overwritten, tolerant loading)
- handle_error policy with and without stop_on_error
- The explicit process-wide registry
"""

import asyncio
import signal
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest

from legacymigrate.exceptions import BatchImportError, ErrorCategory, QueryError
from legacymigrate.recovery import (
    FORCED_EXIT_CODE,
    ErrorRecoveryManager,
    RecoveryErrorInfo,
    RecoveryPhase,
    RecoveryProgress,
    RecoveryState,
    get_error_recovery,
    initialize_error_recovery,
    reset_error_recovery,
)


def make_state(phase: str = "import", timestamp: datetime | None = None) -> RecoveryState:
    return RecoveryState(
        phase=phase,
        timestamp=timestamp or datetime(2026, 1, 5, 10, 15, 0, 123456, tzinfo=UTC),
        error=RecoveryErrorInfo(message="boom", category="import_error"),
        progress=RecoveryProgress(total=10, processed=4, succeeded=3, failed=1),
        checkpoint={"batch_number": 2},
    )


class TestGracefulShutdown:
    """Tests for graceful_shutdown."""

    @pytest.mark.asyncio
    async def test_handlers_run_in_registration_order(self, recovery_manager):
        calls: list[str] = []

        async def first():
            calls.append("first")

        async def second():
            calls.append("second")

        recovery_manager.register_shutdown_handler(first)
        recovery_manager.register_shutdown_handler(second)

        await recovery_manager.graceful_shutdown("test")

        assert calls == ["first", "second"]
        assert recovery_manager.phase is RecoveryPhase.TERMINATED
        assert recovery_manager.shutdown_reason == "test"

    @pytest.mark.asyncio
    async def test_handlers_run_once(self, recovery_manager):
        handler = AsyncMock()
        recovery_manager.register_shutdown_handler(handler)

        await recovery_manager.graceful_shutdown("first")
        await recovery_manager.graceful_shutdown("second")

        handler.assert_awaited_once()
        assert recovery_manager.shutdown_reason == "first"

    @pytest.mark.asyncio
    async def test_failing_handler_does_not_stop_the_rest(self, recovery_manager, caplog):
        calls: list[str] = []

        async def broken():
            calls.append("broken")
            raise RuntimeError("cleanup failed")

        async def healthy():
            calls.append("healthy")

        recovery_manager.register_shutdown_handler(broken)
        recovery_manager.register_shutdown_handler(healthy)

        await recovery_manager.graceful_shutdown("test")

        assert calls == ["broken", "healthy"]
        assert "cleanup failed" in caplog.text
        assert recovery_manager.phase is RecoveryPhase.TERMINATED

    @pytest.mark.asyncio
    async def test_removed_handler_is_not_run(self, recovery_manager):
        handler = AsyncMock()
        recovery_manager.register_shutdown_handler(handler)

        assert recovery_manager.remove_shutdown_handler(handler) is True
        assert recovery_manager.remove_shutdown_handler(handler) is False
        await recovery_manager.graceful_shutdown("test")

        handler.assert_not_awaited()

    def test_starts_running(self, recovery_manager):
        assert recovery_manager.phase is RecoveryPhase.RUNNING
        assert recovery_manager.is_shutting_down is False


class TestSignals:
    """Tests for signal handling."""

    @pytest.mark.asyncio
    async def test_first_signal_starts_graceful_shutdown(self, recovery_manager, exit_func):
        handler = AsyncMock()
        recovery_manager.register_shutdown_handler(handler)

        await recovery_manager._handle_signal(signal.SIGTERM)

        handler.assert_awaited_once()
        assert recovery_manager.shutdown_reason == "SIGTERM"
        exit_func.assert_not_called()

    @pytest.mark.asyncio
    async def test_second_signal_forces_exit(self, recovery_manager, exit_func):
        await recovery_manager._handle_signal(signal.SIGINT)
        await recovery_manager._handle_signal(signal.SIGINT)

        exit_func.assert_called_once_with(FORCED_EXIT_CODE)

    @pytest.mark.asyncio
    async def test_signal_during_shutdown_skips_cleanup(self, recovery_manager, exit_func):
        """A signal arriving while handlers run exits immediately with 130."""
        release = asyncio.Event()
        later = AsyncMock()

        async def slow():
            await release.wait()

        recovery_manager.register_shutdown_handler(slow)
        recovery_manager.register_shutdown_handler(later)

        shutdown = asyncio.create_task(recovery_manager._handle_signal(signal.SIGTERM))
        await asyncio.sleep(0)
        assert recovery_manager.phase is RecoveryPhase.SHUTTING_DOWN

        await recovery_manager._handle_signal(signal.SIGTERM)
        exit_func.assert_called_once_with(130)

        release.set()
        await shutdown

    def test_register_and_unregister_signals(self, recovery_manager):
        loop = MagicMock()

        recovery_manager.register_signals(loop)
        registered = [c.args[0] for c in loop.add_signal_handler.call_args_list]
        recovery_manager.unregister_signals()

        assert signal.SIGINT in registered
        assert signal.SIGTERM in registered
        assert [c.args[0] for c in loop.remove_signal_handler.call_args_list] == registered

    def test_unsupported_platform_is_tolerated(self, recovery_manager):
        loop = MagicMock()
        loop.add_signal_handler.side_effect = NotImplementedError

        recovery_manager.register_signals(loop)
        recovery_manager.unregister_signals()

        loop.remove_signal_handler.assert_not_called()

    @pytest.mark.asyncio
    async def test_registered_callback_schedules_shutdown(self, recovery_manager):
        loop = MagicMock()
        recovery_manager.register_signals(loop)

        callback = loop.add_signal_handler.call_args_list[0].args[1]
        callback()
        await asyncio.sleep(0)
        await asyncio.sleep(0)

        assert recovery_manager.phase is RecoveryPhase.TERMINATED


class TestRecoveryState:
    """Tests for recovery state persistence."""

    def test_save_and_load(self, recovery_manager):
        path = recovery_manager.save_recovery_state(make_state())

        assert path is not None
        assert path.parent == recovery_manager.recovery_dir
        assert path.name == "recovery-import-2026-01-05T10-15-00-123456Z.json"

        loaded = recovery_manager.load_recovery_state(path)
        assert loaded == make_state()

    def test_same_instant_never_overwrites(self, recovery_manager):
        first = recovery_manager.save_recovery_state(make_state())
        second = recovery_manager.save_recovery_state(make_state())
        third = recovery_manager.save_recovery_state(make_state())

        assert len({first, second, third}) == 3
        assert second.name.endswith("-1.json")
        assert third.name.endswith("-2.json")
        assert len(recovery_manager.list_recovery_states()) == 3

    def test_disabled_persistence_returns_none(self, tmp_path):
        manager = ErrorRecoveryManager(tmp_path, save_state_on_error=False)

        assert manager.save_recovery_state(make_state()) is None
        assert manager.list_recovery_states() == []

    def test_load_missing_file(self, recovery_manager, tmp_path):
        assert recovery_manager.load_recovery_state(tmp_path / "nope.json") is None

    def test_load_corrupt_file(self, recovery_manager, tmp_path):
        path = tmp_path / "recovery-import-bad.json"
        path.write_text("{not json")

        assert recovery_manager.load_recovery_state(path) is None

    def test_list_sorted_oldest_first(self, recovery_manager):
        later = recovery_manager.save_recovery_state(
            make_state(timestamp=datetime(2026, 1, 6, tzinfo=UTC))
        )
        earlier = recovery_manager.save_recovery_state(
            make_state(timestamp=datetime(2026, 1, 5, tzinfo=UTC))
        )

        assert recovery_manager.list_recovery_states() == [earlier, later]


class TestHandleError:
    """Tests for handle_error."""

    @pytest.mark.asyncio
    async def test_continue_policy(self, recovery_manager):
        error = QueryError("bad query", phase="extract")

        decision = await recovery_manager.handle_error(
            error, {"phase": "extract", "progress": {"total": 5, "processed": 2}}
        )

        assert decision.stop is False
        assert decision.error is error
        assert decision.state_path is not None
        state = recovery_manager.load_recovery_state(decision.state_path)
        assert state.phase == "extract"
        assert state.error.category == ErrorCategory.QUERY_ERROR.value
        assert state.progress.processed == 2
        assert recovery_manager.is_shutting_down is False

    @pytest.mark.asyncio
    async def test_stop_policy_runs_shutdown(self, tmp_path):
        manager = ErrorRecoveryManager(tmp_path, stop_on_error=True, exit_func=MagicMock())
        handler = AsyncMock()
        manager.register_shutdown_handler(handler)

        decision = await manager.handle_error(BatchImportError("500", status_code=500))

        assert decision.stop is True
        handler.assert_awaited_once()
        assert manager.shutdown_reason == "error"
        assert manager.phase is RecoveryPhase.TERMINATED

    @pytest.mark.asyncio
    async def test_plain_exception_is_categorized(self, recovery_manager):
        decision = await recovery_manager.handle_error(
            ConnectionResetError("reset"), {"phase": "import"}
        )

        assert decision.error.category is ErrorCategory.NETWORK_ERROR
        assert decision.error.phase == "import"

    @pytest.mark.asyncio
    async def test_same_error_handled_once(self, recovery_manager):
        error = QueryError("once")

        first = await recovery_manager.handle_error(error, {"phase": "extract"})
        second = await recovery_manager.handle_error(error, {"phase": "extract"})

        assert second is first
        assert len(recovery_manager.list_recovery_states()) == 1

    @pytest.mark.asyncio
    async def test_no_file_when_persistence_disabled(self, tmp_path):
        manager = ErrorRecoveryManager(tmp_path, save_state_on_error=False)

        decision = await manager.handle_error(QueryError("x"), {"phase": "extract"})

        assert decision.state_path is None
        assert not manager.recovery_dir.exists()

    @pytest.mark.asyncio
    async def test_unwritable_recovery_dir_is_logged(self, tmp_path, caplog):
        manager = ErrorRecoveryManager(tmp_path, stop_on_error=True, exit_func=MagicMock())
        manager.recovery_dir.write_text("not a directory")

        decision = await manager.handle_error(QueryError("boom"), {"phase": "extract"})

        assert decision.state_path is None
        assert decision.stop is True
        assert manager.is_shutting_down
        assert "Failed to save recovery state" in caplog.text

    @pytest.mark.asyncio
    async def test_with_error_recovery_reraises(self, recovery_manager):
        operation = AsyncMock(side_effect=QueryError("fail"))

        with pytest.raises(QueryError):
            await recovery_manager.with_error_recovery(operation, "extract", {"metadata": {"k": 1}})

        [path] = recovery_manager.list_recovery_states()
        assert recovery_manager.load_recovery_state(path).metadata == {"k": 1}

    @pytest.mark.asyncio
    async def test_with_error_recovery_passes_result(self, recovery_manager):
        assert await recovery_manager.with_error_recovery(AsyncMock(return_value=3), "extract") == 3


class TestRegistry:
    """Tests for the process-wide registry."""

    def test_get_before_initialize_fails(self):
        with pytest.raises(RuntimeError, match="not initialized"):
            get_error_recovery()

    def test_initialize_and_reset(self, migration_config):
        manager = initialize_error_recovery(migration_config)

        assert get_error_recovery() is manager
        assert manager.output_dir == migration_config.logging.output_dir
        assert manager.stop_on_error is migration_config.import_.stop_on_error

        reset_error_recovery()
        with pytest.raises(RuntimeError):
            get_error_recovery()
