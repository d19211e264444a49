"""
Phase orchestrator for the ETVI pipeline.

Runs the requested phases in the fixed order extract -> transform ->
validate -> import. Each phase reads the snapshot written by its
predecessor (carried over within the run, or the latest finalized one on
disk) and writes a new snapshot that is finalized only on success.

This module provides:
- PhaseResult: Outcome of one phase
- MigrationSummary: Outcome of the whole run, persisted as migration-summary.json
- run_migration: Execute phases and produce the summary
- display_configuration_summary / format_summary: Human-readable logging
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from legacymigrate.config import MigrationConfig, describe_config
from legacymigrate.exceptions import ConfigurationError, MigrationError, ShutdownRequestedError
from legacymigrate.observability import Tracer, create_tracer
from legacymigrate.observability.attributes import (
    ATTR_DRY_RUN,
    ATTR_INPUT_DIR,
    ATTR_OUTPUT_DIR,
    ATTR_PHASE,
)
from legacymigrate.recovery import ErrorRecoveryManager
from legacymigrate.snapshots import (
    PHASE_INPUTS,
    PHASES,
    create_snapshot,
    finalize_snapshot,
    phase_base_dir,
    resolve_input_dir,
)
from legacymigrate.stages import REPORT_FILES, Stage, StageContext, default_stages
from legacymigrate.stages.base import write_json

logger = logging.getLogger(__name__)

SUMMARY_FILE = "migration-summary.json"

FINAL_STAT_KEYS: tuple[str, ...] = (
    "users_extracted",
    "recipes_extracted",
    "recipes_transformed",
    "recipes_passed",
    "recipes_warned",
    "recipes_failed",
    "recipes_imported",
    "duplicates_detected",
)

# phase -> (final stat, path inside the report's "stats")
_FINAL_STAT_SOURCES: dict[str, tuple[tuple[str, tuple[str, ...]], ...]] = {
    "extract": (
        ("users_extracted", ("tables", "users")),
        ("recipes_extracted", ("tables", "recipes")),
    ),
    "transform": (("recipes_transformed", ("recipes", "successful")),),
    "validate": (
        ("recipes_passed", ("passed",)),
        ("recipes_warned", ("warned",)),
        ("recipes_failed", ("failed",)),
        ("duplicates_detected", ("duplicates",)),
    ),
    "import": (("recipes_imported", ("recipes", "succeeded")),),
}


@dataclass(frozen=True)
class PhaseResult:
    """
    Outcome of one phase.

    Attributes:
        phase: Phase name
        success: Whether the stage completed
        duration: Wall time in seconds
        output_dir: Snapshot written (the staging directory when the phase failed)
        input_dir: Snapshot read
        error: Error message when the phase failed
        stats: Statistics from the stage report
    """

    phase: str
    success: bool
    duration: float
    output_dir: Path | None = None
    input_dir: Path | None = None
    error: str | None = None
    stats: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase,
            "success": self.success,
            "duration": round(self.duration, 3),
            "output_dir": str(self.output_dir) if self.output_dir else None,
            "input_dir": str(self.input_dir) if self.input_dir else None,
            "error": self.error,
            "stats": self.stats,
        }


@dataclass(frozen=True)
class MigrationSummary:
    """
    Outcome of a migration run.

    Attributes:
        start_time: When the run started (UTC)
        end_time: When the run ended (UTC)
        total_duration: Wall time in seconds
        phases: One result per executed phase, in order
        overall_success: True if every executed phase succeeded
        final_stats: Headline counts collected from the phase reports
        summary_path: Where migration-summary.json was written
    """

    start_time: datetime
    end_time: datetime
    total_duration: float
    phases: tuple[PhaseResult, ...]
    overall_success: bool
    final_stats: dict[str, int]
    summary_path: Path | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat(),
            "total_duration": round(self.total_duration, 3),
            "overall_success": self.overall_success,
            "phases": [p.to_dict() for p in self.phases],
            "final_stats": self.final_stats,
        }


def normalize_phases(phases: Iterable[str]) -> list[str]:
    """
    De-duplicate phases and sort them into pipeline order.

    Raises:
        ConfigurationError: If a phase name is unknown or none is given
    """
    requested = {p.strip().lower() for p in phases if p.strip()}
    unknown = requested - set(PHASES)
    if unknown:
        raise ConfigurationError(
            f"Unknown phase(s): {', '.join(sorted(unknown))}. Expected: {', '.join(PHASES)}"
        )
    if not requested:
        raise ConfigurationError("At least one phase must be requested")
    return [p for p in PHASES if p in requested]


async def run_migration(
    config: MigrationConfig,
    phases: Iterable[str] = PHASES,
    *,
    input_dir: Path | str | None = None,
    stages: Mapping[str, Stage] | None = None,
    recovery: ErrorRecoveryManager | None = None,
    phase_pause: float = 1.0,
    tracer: Tracer | None = None,
) -> MigrationSummary:
    """
    Run the requested phases of the pipeline.

    A failing phase stops the run; later phases are not attempted. The
    summary is produced and persisted in every case.

    Args:
        config: Run configuration
        phases: Phases to run (any order, duplicates ignored)
        input_dir: Snapshot the first phase reads instead of the latest one
        stages: Stage per phase (defaults to default_stages())
        recovery: Recovery manager of the run (a new one is built from config if omitted)
        phase_pause: Seconds to wait between successful phases
        tracer: Tracer for phase spans (defaults to one built from config)

    Returns:
        MigrationSummary of the run

    Raises:
        ConfigurationError: If a phase name is unknown
    """
    ordered = normalize_phases(phases)
    stages = stages if stages is not None else default_stages()
    recovery = recovery or ErrorRecoveryManager.from_config(config)
    tracer = tracer or create_tracer(__name__, config.logging.enable_tracing)
    data_root = Path(config.logging.output_dir)

    display_configuration_summary(config, ordered)

    start_time = datetime.now(UTC)
    started = time.monotonic()
    results: list[PhaseResult] = []
    carried_input: Path | None = Path(input_dir) if input_dir is not None else None

    for index, phase in enumerate(ordered):
        if recovery.is_shutting_down:
            logger.warning(
                f"Shutdown requested; not starting phase {phase}",
                extra={"phase": phase, "reason": recovery.shutdown_reason},
            )
            results.append(
                PhaseResult(phase=phase, success=False, duration=0.0, error="shutdown requested")
            )
            break

        result = await _execute_phase(
            phase,
            config,
            stages,
            recovery,
            tracer,
            data_root,
            carried_input,
        )
        results.append(result)

        if not result.success:
            logger.error(f"Phase {phase} failed. Stopping pipeline.", extra={"phase": phase})
            break

        carried_input = result.output_dir
        if index < len(ordered) - 1 and phase_pause > 0:
            await asyncio.sleep(phase_pause)

    end_time = datetime.now(UTC)
    summary = MigrationSummary(
        start_time=start_time,
        end_time=end_time,
        total_duration=time.monotonic() - started,
        phases=tuple(results),
        overall_success=bool(results) and all(r.success for r in results),
        final_stats=collect_final_stats(results),
    )
    summary = _persist_summary(summary, data_root)
    for line in format_summary(summary):
        logger.info(line)
    return summary


async def _execute_phase(
    phase: str,
    config: MigrationConfig,
    stages: Mapping[str, Stage],
    recovery: ErrorRecoveryManager,
    tracer: Tracer,
    data_root: Path,
    carried_input: Path | None,
) -> PhaseResult:
    logger.info(f"Starting phase {phase}", extra={"phase": phase})
    started = time.monotonic()
    input_dir: Path | None = None
    staging: Path | None = None

    try:
        stage = stages.get(phase)
        if stage is None:
            raise ConfigurationError(f"No stage configured for phase {phase}", phase=phase)

        if PHASE_INPUTS[phase] is not None:
            input_dir = carried_input or resolve_input_dir(data_root, phase)
        elif carried_input is not None:
            logger.warning(
                f"Ignoring input directory for phase {phase}",
                extra={"phase": phase, "input_dir": str(carried_input)},
            )

        staging = create_snapshot(phase_base_dir(data_root, phase))
        context = StageContext(
            config=config,
            phase=phase,
            input_dir=input_dir,
            output_dir=staging,
            recovery=recovery,
            tracer=tracer,
        )
        attributes: dict[str, Any] = {
            ATTR_PHASE: phase,
            ATTR_OUTPUT_DIR: str(staging),
        }
        if input_dir is not None:
            attributes[ATTR_INPUT_DIR] = str(input_dir)
        if phase == "import":
            attributes[ATTR_DRY_RUN] = config.import_.dry_run

        with tracer.span(f"legacymigrate.phase.{phase}", attributes):
            report = await stage.run(context)
        output_dir = finalize_snapshot(staging)

    except ShutdownRequestedError as e:
        duration = time.monotonic() - started
        logger.warning(
            f"Phase {phase} interrupted by shutdown after {format_duration(duration)}",
            extra={"phase": phase},
        )
        return PhaseResult(
            phase=phase,
            success=False,
            duration=duration,
            output_dir=staging,
            input_dir=input_dir,
            error=e.message,
        )
    except Exception as e:
        duration = time.monotonic() - started
        logger.error(
            f"Phase {phase} failed after {format_duration(duration)}: {e}",
            extra={"phase": phase, "error_type": type(e).__name__},
        )
        await recovery.handle_error(
            e,
            {
                "phase": phase,
                "metadata": {
                    "input_dir": str(input_dir) if input_dir else None,
                    "output_dir": str(staging) if staging else None,
                },
            },
        )
        return PhaseResult(
            phase=phase,
            success=False,
            duration=duration,
            output_dir=staging,
            input_dir=input_dir,
            error=e.message if isinstance(e, MigrationError) else str(e),
        )

    duration = time.monotonic() - started
    logger.info(
        f"Phase {phase} completed in {format_duration(duration)}",
        extra={"phase": phase, "output_dir": str(output_dir), "duration": duration},
    )
    return PhaseResult(
        phase=phase,
        success=True,
        duration=duration,
        output_dir=output_dir,
        input_dir=input_dir,
        stats=dict(report.stats),
    )


def _dig(data: Any, path: tuple[str, ...]) -> int | None:
    for key in path:
        if not isinstance(data, dict):
            return None
        data = data.get(key)
    if isinstance(data, bool) or not isinstance(data, int):
        return None
    return data


def collect_final_stats(results: Iterable[PhaseResult]) -> dict[str, int]:
    """
    Headline counts read from each phase's report file.

    Missing or malformed report files are logged and skipped; their counts
    stay at zero.
    """
    stats = dict.fromkeys(FINAL_STAT_KEYS, 0)
    for result in results:
        if result.output_dir is None:
            continue
        report_path = result.output_dir / REPORT_FILES[result.phase]
        if not report_path.is_file():
            logger.debug(
                f"No report file for phase {result.phase}", extra={"path": str(report_path)}
            )
            continue
        try:
            report = json.loads(report_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(
                f"Skipping unreadable report {report_path}: {e}",
                extra={"phase": result.phase, "path": str(report_path)},
            )
            continue

        report_stats = report.get("stats") if isinstance(report, dict) else None
        for key, path in _FINAL_STAT_SOURCES[result.phase]:
            value = _dig(report_stats, path)
            if value is not None:
                stats[key] = value
    return stats


def _persist_summary(summary: MigrationSummary, data_root: Path) -> MigrationSummary:
    successful = [r for r in summary.phases if r.success and r.output_dir is not None]
    target_dir = successful[-1].output_dir if successful else data_root
    assert target_dir is not None
    try:
        target_dir.mkdir(parents=True, exist_ok=True)
        path = write_json(target_dir / SUMMARY_FILE, summary.to_dict())
    except OSError as e:
        logger.error(
            f"Failed to save summary: {e}",
            exc_info=True,
            extra={"path": str(target_dir / SUMMARY_FILE)},
        )
        return summary
    logger.info(f"Summary saved to {path}", extra={"path": str(path)})
    return MigrationSummary(
        start_time=summary.start_time,
        end_time=summary.end_time,
        total_duration=summary.total_duration,
        phases=summary.phases,
        overall_success=summary.overall_success,
        final_stats=summary.final_stats,
        summary_path=path,
    )


def format_duration(seconds: float) -> str:
    """Compact duration such as ``850ms``, ``12.3s`` or ``4m 05s``."""
    if seconds < 1:
        return f"{seconds * 1000:.0f}ms"
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes, secs = divmod(int(seconds), 60)
    return f"{minutes}m {secs:02d}s"


def display_configuration_summary(config: MigrationConfig, phases: list[str]) -> None:
    """Log the run configuration (secrets omitted)."""
    logger.info("Configuration:")
    for line in describe_config(config, phases):
        logger.info(f"  {line}")


def format_summary(summary: MigrationSummary) -> list[str]:
    """Human-readable lines describing a finished run."""
    lines = [
        "MIGRATION PIPELINE SUMMARY",
        f"Status: {'SUCCESS' if summary.overall_success else 'FAILED'}",
        f"Total duration: {format_duration(summary.total_duration)}",
        f"Start time: {summary.start_time.isoformat()}",
        f"End time: {summary.end_time.isoformat()}",
        "Phases:",
    ]
    for result in summary.phases:
        status = "ok" if result.success else "FAILED"
        line = f"  {result.phase:<10} {status:<7} {format_duration(result.duration)}"
        if result.error:
            line += f"  ({result.error})"
        lines.append(line)
    lines.append("Statistics:")
    for key, value in summary.final_stats.items():
        lines.append(f"  {key.replace('_', ' ')}: {value}")
    if summary.summary_path is not None:
        lines.append(f"Summary file: {summary.summary_path}")
    return lines


__all__ = [
    "FINAL_STAT_KEYS",
    "MigrationSummary",
    "PhaseResult",
    "SUMMARY_FILE",
    "collect_final_stats",
    "display_configuration_summary",
    "format_duration",
    "format_summary",
    "normalize_phases",
    "run_migration",
]
