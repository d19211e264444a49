"""
Unit tests for the command line entry point.

Configuration loading and the pipeline itself are patched; these tests
cover argument handling and exit codes.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from legacymigrate.cli import (
    EXIT_OK,
    EXIT_PHASE_FAILED,
    EXIT_USAGE,
    apply_overrides,
    build_parser,
    main,
)
from legacymigrate.exceptions import ConfigurationError
from legacymigrate.recovery import ErrorRecoveryManager, RecoveryErrorInfo, RecoveryState
from legacymigrate.snapshots import PHASES


@pytest.fixture
def patched_config(migration_config):
    with patch("legacymigrate.cli.load_config", return_value=migration_config) as load:
        yield load


@pytest.fixture
def patched_run():
    summary = MagicMock(overall_success=True)
    with patch("legacymigrate.cli.run_migration", new=AsyncMock(return_value=summary)) as run:
        yield run


class TestArguments:
    """Tests for argument validation."""

    def test_no_phase_is_usage_error(self, capsys):
        assert main([]) == EXIT_USAGE
        assert "no phase given" in capsys.readouterr().err

    def test_unknown_phase_is_usage_error(self, patched_config, capsys):
        assert main(["extract", "publish"]) == EXIT_USAGE
        assert "Unknown phase" in capsys.readouterr().err
        patched_config.assert_not_called()

    def test_configuration_error(self, capsys):
        with patch(
            "legacymigrate.cli.load_config", side_effect=ConfigurationError("ssh.host missing")
        ):
            assert main(["extract"]) == EXIT_USAGE

        err = capsys.readouterr().err
        assert "Configuration error: ssh.host missing" in err
        assert ".env.migration" in err

    def test_batch_size_must_be_positive(self):
        with pytest.raises(SystemExit) as exc_info:
            build_parser().parse_args(["import", "--batch-size", "0"])

        assert exc_info.value.code == 2

    def test_apply_overrides(self, migration_config, tmp_path):
        args = build_parser().parse_args(
            [
                "import",
                "--dry-run",
                "--stop-on-error",
                "--batch-size",
                "5",
                "--output-dir",
                str(tmp_path / "elsewhere"),
                "--log-level",
                "DEBUG",
            ]
        )

        config = apply_overrides(migration_config, args)

        assert config.import_.dry_run is True
        assert config.import_.stop_on_error is True
        assert config.import_.batch_size == 5
        assert config.logging.output_dir == tmp_path / "elsewhere"
        assert config.logging.level == "DEBUG"

    def test_no_overrides_returns_same_config(self, migration_config):
        args = build_parser().parse_args(["extract"])

        assert apply_overrides(migration_config, args) is migration_config


class TestMain:
    """Tests for running phases through main."""

    def test_success_exit_code(self, patched_config, patched_run):
        assert main(["import", "transform"]) == EXIT_OK

        args, kwargs = patched_run.await_args
        assert args[1] == ["transform", "import"]
        assert isinstance(kwargs["recovery"], ErrorRecoveryManager)
        assert kwargs["input_dir"] is None

    def test_all_runs_every_phase(self, patched_config, patched_run):
        main(["all"])

        assert patched_run.await_args.args[1] == list(PHASES)

    def test_failed_phase_exit_code(self, patched_config, patched_run):
        patched_run.return_value = MagicMock(overall_success=False)

        assert main(["extract"]) == EXIT_PHASE_FAILED

    def test_input_dir_and_flags_forwarded(self, patched_config, patched_run, tmp_path):
        main(["transform", "--input-dir", str(tmp_path), "--dry-run"])

        args, kwargs = patched_run.await_args
        assert kwargs["input_dir"] == tmp_path
        assert args[0].import_.dry_run is True

    def test_list_recovery(self, patched_config, patched_run, migration_config, capsys):
        manager = ErrorRecoveryManager.from_config(migration_config)
        path = manager.save_recovery_state(
            RecoveryState(
                phase="import",
                error=RecoveryErrorInfo(message="API request failed", category="import_error"),
            )
        )

        assert main(["--list-recovery"]) == EXIT_OK

        out = capsys.readouterr().out
        assert str(path) in out
        assert "phase=import" in out
        assert "API request failed" in out
        patched_run.assert_not_awaited()

    def test_list_recovery_when_empty(self, patched_config, capsys):
        assert main(["--list-recovery"]) == EXIT_OK
        assert "No recovery states" in capsys.readouterr().out
