"""
Command line entry point.

Usage::

    legacymigrate all
    legacymigrate extract
    legacymigrate transform --input-dir migration-data/raw/2026-01-23T14-30-00-000000
    legacymigrate import --dry-run
    legacymigrate --list-recovery

Exit status: 0 on success, 1 when a phase failed, 2 on usage or
configuration errors. A second interrupt during shutdown exits with 130.
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from legacymigrate.config import MigrationConfig, load_config
from legacymigrate.exceptions import ConfigurationError
from legacymigrate.logs import close_logging, configure_logging
from legacymigrate.orchestrator import MigrationSummary, normalize_phases, run_migration
from legacymigrate.recovery import (
    ErrorRecoveryManager,
    initialize_error_recovery,
    reset_error_recovery,
)
from legacymigrate.snapshots import PHASES

EXIT_OK = 0
EXIT_PHASE_FAILED = 1
EXIT_USAGE = 2

COMMANDS = (*PHASES, "all")


def _positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"{value!r} is not an integer") from None
    if number < 1:
        raise argparse.ArgumentTypeError(f"{value} must be at least 1")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="legacymigrate",
        description="Migrate legacy recipe data: extract, transform, validate, import.",
    )
    parser.add_argument(
        "commands",
        nargs="*",
        metavar="PHASE",
        help=f"Phases to run ({', '.join(COMMANDS)}); order and duplicates do not matter",
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        help="JSON config file overlaid on the environment settings",
    )
    parser.add_argument(
        "--env-file",
        type=Path,
        help="Dotenv file with MIGRATION_* settings (default: .env.migration)",
    )
    parser.add_argument(
        "-i",
        "--input-dir",
        type=Path,
        help="Snapshot the first phase reads (default: latest finalized snapshot)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Prepare import batches without sending them",
    )
    parser.add_argument(
        "--stop-on-error",
        action="store_true",
        help="Stop the run at the first failed import batch",
    )
    parser.add_argument("--batch-size", type=_positive_int, help="Records per import request")
    parser.add_argument("--output-dir", type=Path, help="Data root for snapshots and logs")
    parser.add_argument(
        "--log-level",
        choices=("DEBUG", "INFO", "WARNING", "ERROR"),
        help="Log level (overrides configuration)",
    )
    parser.add_argument(
        "--list-recovery",
        action="store_true",
        help="List saved recovery states and exit",
    )
    return parser


def apply_overrides(config: MigrationConfig, args: argparse.Namespace) -> MigrationConfig:
    """Apply command line flags on top of the loaded configuration."""
    import_updates: dict[str, Any] = {}
    if args.dry_run:
        import_updates["dry_run"] = True
    if args.stop_on_error:
        import_updates["stop_on_error"] = True
    if args.batch_size is not None:
        import_updates["batch_size"] = args.batch_size

    logging_updates: dict[str, Any] = {}
    if args.output_dir is not None:
        logging_updates["output_dir"] = args.output_dir
    if args.log_level is not None:
        logging_updates["level"] = args.log_level

    sections: dict[str, dict[str, Any]] = {}
    if import_updates:
        sections["import_"] = import_updates
    if logging_updates:
        sections["logging"] = logging_updates
    return config.with_overrides(**sections) if sections else config


def list_recovery_states(config: MigrationConfig) -> int:
    manager = ErrorRecoveryManager.from_config(config)
    paths = manager.list_recovery_states()
    if not paths:
        print(f"No recovery states under {manager.recovery_dir}")
        return EXIT_OK
    for path in paths:
        state = manager.load_recovery_state(path)
        if state is None:
            print(f"{path}  (unreadable)")
            continue
        print(
            f"{path}  phase={state.phase}  at={state.timestamp.isoformat()}  "
            f"processed={state.progress.processed}/{state.progress.total}  "
            f"error={state.error.message}"
        )
    return EXIT_OK


async def _run(
    config: MigrationConfig,
    phases: list[str],
    input_dir: Path | None,
) -> MigrationSummary:
    recovery = initialize_error_recovery(config)
    recovery.register_signals()
    try:
        return await run_migration(config, phases, input_dir=input_dir, recovery=recovery)
    finally:
        reset_error_recovery()


def main(argv: Sequence[str] | None = None) -> int:
    """Run the CLI and return the process exit status."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.commands and not args.list_recovery:
        parser.print_usage(sys.stderr)
        print("error: no phase given; use 'all' to run the full pipeline", file=sys.stderr)
        return EXIT_USAGE

    phases: list[str] = []
    if args.commands:
        requested = list(PHASES) if "all" in args.commands else args.commands
        try:
            phases = normalize_phases(requested)
        except ConfigurationError as e:
            print(f"error: {e}", file=sys.stderr)
            return EXIT_USAGE

    try:
        config = apply_overrides(load_config(args.env_file, args.config), args)
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        print("Make sure .env.migration exists and is properly configured.", file=sys.stderr)
        return EXIT_USAGE

    if args.list_recovery:
        return list_recovery_states(config)

    configure_logging(config.logging)
    try:
        summary = asyncio.run(_run(config, phases, args.input_dir))
    finally:
        close_logging()
    return EXIT_OK if summary.overall_success else EXIT_PHASE_FAILED


__all__ = [
    "EXIT_OK",
    "EXIT_PHASE_FAILED",
    "EXIT_USAGE",
    "apply_overrides",
    "build_parser",
    "main",
]
