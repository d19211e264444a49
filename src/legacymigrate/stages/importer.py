"""
Import stage: push validated records to the new system's write API.

Records are sent in ``batch_size`` chunks, users first then recipes, in the
order they appear in the validated snapshot. Each chunk is one POST of a
JSON array, retried through the shared retry executor: 5xx responses,
timeouts and transport errors are retried, 4xx responses are not.

With ``stop_on_error`` the first batch that still fails after its retries
goes through the recovery manager and aborts the stage. Otherwise the
batch's records are marked failed and the next batch is sent. Failed
records are listed in ``failed-records.json``; they are not replayed
automatically and must be re-validated and re-imported by an operator.

Succeeded records are written to the ID mapping ledger after every batch.
A later run skips the records the ledger already lists, so re-running the
phase against the same snapshot only sends what is still missing.

This module provides:
- ImportResult / BatchResult: Per-record and per-batch outcomes
- BatchImporter: Batching, rate limiting and HTTP calls
- ImportStage: Stage wrapper writing the import report
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import Counter
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, NoReturn, TypeVar

import httpx

from legacymigrate.config import ImportConfig
from legacymigrate.exceptions import BatchImportError, ShutdownRequestedError
from legacymigrate.observability import NullTracer, Tracer
from legacymigrate.observability.attributes import (
    ATTR_BATCH_NUMBER,
    ATTR_BATCH_SIZE,
    ATTR_DRY_RUN,
    ATTR_HTTP_URL,
    ATTR_RECORD_TYPE,
)
from legacymigrate.recovery import ErrorRecoveryManager
from legacymigrate.retry import RetryStats, with_retry
from legacymigrate.snapshots import phase_base_dir
from legacymigrate.stages.base import (
    StageContext,
    StageReport,
    dump_records,
    read_records,
    write_json,
)
from legacymigrate.stages.id_mapping import MAPPING_FILES, IdMappingStore, find_latest_mapping_dir
from legacymigrate.stages.records import TransformedRecipe, TransformedUser

logger = logging.getLogger(__name__)

T = TypeVar("T")

ENDPOINTS: dict[str, str] = {
    "users": "/api/migration/users",
    "recipes": "/api/migration/recipes",
}
"""Write API endpoint per record type."""

RESPONSE_BODY_LIMIT = 500


@dataclass
class ImportResult:
    """Outcome for a single record."""

    legacy_id: Any
    success: bool
    new_id: str | None = None
    error: str | None = None
    error_type: str | None = None
    retry_count: int = 0
    skipped: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "legacy_id": self.legacy_id,
            "success": self.success,
            "new_id": self.new_id,
            "error": self.error,
            "error_type": self.error_type,
            "retry_count": self.retry_count,
            "skipped": self.skipped,
        }


@dataclass
class BatchResult:
    """Outcome for one batch call."""

    record_type: str
    batch_number: int
    total_batches: int
    results: list[ImportResult] = field(default_factory=list)
    duration: float = 0.0

    @property
    def success_count(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failure_count(self) -> int:
        return sum(1 for r in self.results if not r.success)

    def summary(self) -> dict[str, Any]:
        """Batch statistics without the per-record results."""
        return {
            "record_type": self.record_type,
            "batch_number": self.batch_number,
            "total_batches": self.total_batches,
            "size": len(self.results),
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "duration": round(self.duration, 3),
        }


def create_batches(records: Sequence[T], batch_size: int) -> list[list[T]]:
    """Split records into consecutive chunks of at most ``batch_size``."""
    if batch_size < 1:
        raise ValueError(f"batch_size must be >= 1, got {batch_size}.")
    return [list(records[i : i + batch_size]) for i in range(0, len(records), batch_size)]


def classify_import_error(error: BaseException) -> str:
    """Short error type used in reports: validation, server, network or unknown."""
    if isinstance(error, BatchImportError) and error.status_code is not None:
        return "validation" if 400 <= error.status_code < 500 else "server"
    if isinstance(error, httpx.TransportError):
        return "network"
    return "unknown"


class BatchImporter:
    """
    Sends records to the write API in batches.

    Use as an async context manager so the HTTP client is closed. In dry-run
    mode no HTTP client is created and no request is sent.

    Args:
        config: Import settings
        recovery: Recovery manager consulted when ``stop_on_error`` trips
        transport: Optional httpx transport (used in tests)
        tracer: Tracer for per-batch spans
        sleep: Coroutine used for the delay between batches

    Example:
        >>> async with BatchImporter(config.import_, recovery=manager) as importer:
        ...     batches = await importer.import_records("recipes", recipes)
    """

    def __init__(
        self,
        config: ImportConfig,
        *,
        recovery: ErrorRecoveryManager | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        tracer: Tracer | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.config = config
        self._recovery = recovery
        self._transport = transport
        self._tracer = tracer or NullTracer()
        self._sleep = sleep
        self._client: httpx.AsyncClient | None = None
        self.request_count = 0
        self.total_records = 0
        self.processed = 0
        self.succeeded = 0
        self.failed = 0
        self.batch_results: list[BatchResult] = []

    async def __aenter__(self) -> BatchImporter:
        if not self.config.dry_run and self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.config.api_base_url.rstrip("/"),
                headers={
                    "Authorization": f"Bearer {self.config.auth_token.get_secret_value()}",
                    "Content-Type": "application/json",
                },
                timeout=httpx.Timeout(self.config.request_timeout),
                transport=self._transport,
            )
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def import_records(
        self,
        record_type: str,
        records: Sequence[dict[str, Any]],
        on_batch: Callable[[BatchResult], None] | None = None,
    ) -> list[BatchResult]:
        """
        Import one record type, batch by batch, in order.

        ``on_batch`` is called with each completed batch before the next one
        is sent.

        Raises:
            BatchImportError: When a batch fails after retries and
                ``stop_on_error`` is set
            ShutdownRequestedError: When graceful shutdown started between batches
        """
        if record_type not in ENDPOINTS:
            raise ValueError(f"Unknown record type: {record_type!r}")

        batches = create_batches(records, self.config.batch_size)
        self.total_records += len(records)
        logger.info(
            f"Importing {len(records)} {record_type} in {len(batches)} batches "
            f"of {self.config.batch_size}{' (dry run)' if self.config.dry_run else ''}",
            extra={
                "record_type": record_type,
                "records": len(records),
                "batches": len(batches),
                "dry_run": self.config.dry_run,
            },
        )

        results: list[BatchResult] = []
        for index, batch in enumerate(batches):
            if self._recovery is not None and self._recovery.is_shutting_down:
                raise ShutdownRequestedError(phase="import")

            batch_result = await self._import_batch(record_type, batch, index + 1, len(batches))
            results.append(batch_result)
            self.batch_results.append(batch_result)
            if on_batch is not None:
                on_batch(batch_result)

            if index < len(batches) - 1 and self.config.delay_between_batches > 0:
                await self._sleep(self.config.delay_between_batches)
        return results

    async def _import_batch(
        self,
        record_type: str,
        batch: list[dict[str, Any]],
        batch_number: int,
        total_batches: int,
    ) -> BatchResult:
        started = time.monotonic()
        attributes: dict[str, Any] = {
            ATTR_RECORD_TYPE: record_type,
            ATTR_BATCH_NUMBER: batch_number,
            ATTR_BATCH_SIZE: len(batch),
            ATTR_DRY_RUN: self.config.dry_run,
        }
        if not self.config.dry_run:
            base_url = self.config.api_base_url.rstrip("/")
            attributes[ATTR_HTTP_URL] = f"{base_url}{ENDPOINTS[record_type]}"

        with self._tracer.span("legacymigrate.import.batch", attributes):
            if self.config.dry_run:
                results = [
                    ImportResult(legacy_id=r.get("legacy_id"), success=True, new_id=r.get("id"))
                    for r in batch
                ]
            else:
                results = await self._send_batch(record_type, batch, batch_number, total_batches)

        batch_result = BatchResult(
            record_type=record_type,
            batch_number=batch_number,
            total_batches=total_batches,
            results=results,
            duration=time.monotonic() - started,
        )
        self.processed += len(results)
        self.succeeded += batch_result.success_count
        self.failed += batch_result.failure_count

        logger.info(
            f"Batch {batch_number}/{total_batches} of {record_type}: "
            f"{batch_result.success_count} succeeded, {batch_result.failure_count} failed",
            extra=batch_result.summary(),
        )
        return batch_result

    async def _send_batch(
        self,
        record_type: str,
        batch: list[dict[str, Any]],
        batch_number: int,
        total_batches: int,
    ) -> list[ImportResult]:
        stats = RetryStats()
        try:
            body = await with_retry(
                lambda: self._post(ENDPOINTS[record_type], batch, batch_number),
                config=self.config.retry_config(),
                operation_name=f"import {record_type} batch {batch_number}/{total_batches}",
                stats=stats,
            )
        except Exception as e:
            failures = [
                ImportResult(
                    legacy_id=r.get("legacy_id"),
                    success=False,
                    error=str(e),
                    error_type=classify_import_error(e),
                    retry_count=stats.retries,
                )
                for r in batch
            ]
            if self.config.stop_on_error:
                self.batch_results.append(
                    BatchResult(record_type, batch_number, total_batches, failures)
                )
                await self._abort(e, record_type, batch, batch_number)
            return failures
        return self._parse_results(batch, body, stats.retries)

    async def _post(
        self,
        endpoint: str,
        batch: list[dict[str, Any]],
        batch_number: int,
    ) -> Any:
        if self._client is None:
            raise RuntimeError("BatchImporter must be used as an async context manager")

        self.request_count += 1
        response = await self._client.post(endpoint, json=batch)
        if response.status_code >= 400:
            raise BatchImportError(
                f"API request failed: {response.status_code} {response.reason_phrase}",
                status_code=response.status_code,
                batch_number=batch_number,
                response_body=response.text[:RESPONSE_BODY_LIMIT],
            )
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            logger.warning(
                "Write API returned a non-JSON body",
                extra={"endpoint": endpoint, "batch_number": batch_number},
            )
            return None

    def _parse_results(
        self,
        batch: list[dict[str, Any]],
        body: Any,
        retries: int,
    ) -> list[ImportResult]:
        """
        Per-record outcomes from the API response.

        The API may answer with ``{"results": [{"legacy_id", "id", "success", "error"}]}``.
        Records it does not mention count as imported under the id that was sent.
        """
        reported: dict[Any, dict[str, Any]] = {}
        entries = body.get("results") if isinstance(body, dict) else body
        if isinstance(entries, list):
            for entry in entries:
                if isinstance(entry, dict):
                    key = entry.get("legacy_id", entry.get("legacyId"))
                    if key is not None:
                        reported[key] = entry

        results = []
        for record in batch:
            legacy_id = record.get("legacy_id")
            entry = reported.get(legacy_id, {})
            success = bool(entry.get("success", True))
            results.append(
                ImportResult(
                    legacy_id=legacy_id,
                    success=success,
                    new_id=entry.get("id", entry.get("new_id", record.get("id"))),
                    error=None if success else str(entry.get("error", "rejected by API")),
                    error_type=None if success else "validation",
                    retry_count=retries,
                )
            )
        return results

    async def _abort(
        self,
        error: Exception,
        record_type: str,
        batch: list[dict[str, Any]],
        batch_number: int,
    ) -> NoReturn:
        if isinstance(error, BatchImportError):
            batch_error = error
        else:
            batch_error = BatchImportError(
                f"Batch {batch_number} of {record_type} failed: {error}",
                batch_number=batch_number,
            )
            batch_error.__cause__ = error

        if self._recovery is not None:
            await self._recovery.handle_error(
                batch_error,
                {
                    "phase": "import",
                    "progress": {
                        "total": self.total_records,
                        "processed": self.processed,
                        "succeeded": self.succeeded,
                        "failed": self.failed + len(batch),
                    },
                    "checkpoint": {
                        "record_type": record_type,
                        "batch_number": batch_number,
                        "first_legacy_id": batch[0].get("legacy_id") if batch else None,
                        "last_legacy_id": batch[-1].get("legacy_id") if batch else None,
                    },
                },
            )
        raise batch_error


class ImportStage:
    """
    Imports a validated snapshot.

    Records already listed in the ID mapping ledger of the latest import
    snapshot are skipped and reported as succeeded. Recipe authors are
    rewritten to the ids the write API returned for their users.

    Args:
        transport: Optional httpx transport passed to the BatchImporter
    """

    phase = "import"

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._transport = transport

    async def run(self, context: StageContext) -> StageReport:
        started = time.monotonic()
        input_dir = context.require_input_dir()
        config = context.config.import_

        users, user_diags = read_records(
            input_dir / "users.json", TransformedUser, "users", self.phase
        )
        recipes, recipe_diags = read_records(
            input_dir / "recipes.json", TransformedRecipe, "recipes", self.phase
        )
        store = self._load_id_mappings(context)

        importer = BatchImporter(
            config,
            recovery=context.recovery,
            transport=self._transport,
            tracer=context.tracer,
        )
        records = {"users": dump_records(users), "recipes": dump_records(recipes)}
        skipped: dict[str, list[ImportResult]] = {}
        unmapped_authors = 0

        def checkpoint(batch: BatchResult) -> None:
            for result in batch.results:
                if result.success and result.new_id is not None:
                    store.record(batch.record_type, result.legacy_id, result.new_id)
            if not config.dry_run:
                store.save(context.output_dir)

        aborted: BatchImportError | ShutdownRequestedError | None = None
        try:
            async with importer:
                for record_type in ENDPOINTS:
                    pending, done = store.partition(record_type, records[record_type])
                    skipped[record_type] = [
                        ImportResult(
                            legacy_id=r.get("legacy_id"),
                            success=True,
                            new_id=store.get_new_id(record_type, r.get("legacy_id")),
                            skipped=True,
                        )
                        for r in done
                    ]
                    if done:
                        logger.info(
                            f"Skipping {len(done)} {record_type} already imported",
                            extra={"record_type": record_type, "skipped": len(done)},
                        )
                    if record_type == "recipes":
                        unmapped_authors = self._rewrite_authors(pending, store)
                    await importer.import_records(record_type, pending, on_batch=checkpoint)
        except (BatchImportError, ShutdownRequestedError) as e:
            aborted = e
        finally:
            if not config.dry_run:
                store.save(context.output_dir)

        batches = {
            record_type: [b for b in importer.batch_results if b.record_type == record_type]
            for record_type in ENDPOINTS
        }

        report = self._write_outputs(
            context,
            batches,
            skipped,
            records,
            [d.model_dump(mode="json") for d in user_diags + recipe_diags],
            importer.request_count,
            unmapped_authors,
            time.monotonic() - started,
            aborted,
        )
        if aborted is not None:
            raise aborted
        return report

    def _load_id_mappings(self, context: StageContext) -> IdMappingStore:
        base_dir = phase_base_dir(Path(context.config.logging.output_dir), self.phase)
        previous = find_latest_mapping_dir(base_dir, exclude=context.output_dir)
        if previous is None:
            logger.info("No ID mappings from earlier imports found")
            return IdMappingStore()
        return IdMappingStore.load(previous)

    def _rewrite_authors(self, recipes: list[dict[str, Any]], store: IdMappingStore) -> int:
        """Point recipe authors at the imported user ids; returns how many had no mapping."""
        unmapped = 0
        for recipe in recipes:
            author = recipe.get("author_legacy_id")
            if author is None:
                continue
            new_id = store.get_new_id("users", author)
            if new_id is None:
                unmapped += 1
                logger.warning(
                    f"No imported user for author {author} of recipe {recipe.get('legacy_id')}",
                    extra={"legacy_id": recipe.get("legacy_id"), "author_legacy_id": author},
                )
                continue
            recipe["author_id"] = new_id
        return unmapped

    def _write_outputs(
        self,
        context: StageContext,
        batches: dict[str, list[BatchResult]],
        skipped: dict[str, list[ImportResult]],
        records: dict[str, list[dict[str, Any]]],
        schema_failures: list[dict[str, Any]],
        request_count: int,
        unmapped_authors: int,
        duration: float,
        aborted: BaseException | None,
    ) -> StageReport:
        config = context.config.import_
        by_id = {
            record_type: {r.get("legacy_id"): r for r in items}
            for record_type, items in records.items()
        }

        failed_records: list[dict[str, Any]] = []
        errors_by_type: Counter[str] = Counter()
        per_type: dict[str, dict[str, int]] = {}
        for record_type, results in batches.items():
            outcomes = [r for batch in results for r in batch.results]
            already = skipped.get(record_type, [])
            per_type[record_type] = {
                "total": len(records[record_type]),
                "succeeded": sum(1 for r in outcomes if r.success) + len(already),
                "failed": sum(1 for r in outcomes if not r.success),
                "skipped": len(already),
                "batches": len(results),
            }
            for outcome in outcomes:
                if outcome.success:
                    continue
                errors_by_type[outcome.error_type or "unknown"] += 1
                failed_records.append(
                    {
                        "record_type": record_type,
                        **outcome.to_dict(),
                        "record": by_id[record_type].get(outcome.legacy_id),
                    }
                )
        for failure in schema_failures:
            errors_by_type["schema"] += 1
            failed_records.append({**failure, "success": False})

        all_batches = batches["users"] + batches["recipes"]
        stats: dict[str, Any] = {
            **per_type,
            "total_records": sum(len(items) for items in records.values()),
            "success_count": sum(c["succeeded"] for c in per_type.values()),
            "failure_count": sum(c["failed"] for c in per_type.values()) + len(schema_failures),
            "errors_by_type": dict(errors_by_type),
            "dry_run": config.dry_run,
            "stop_on_error": config.stop_on_error,
            "batch_size": config.batch_size,
            "requests_sent": request_count,
            "unmapped_authors": unmapped_authors,
            "average_batch_duration": (
                round(sum(b.duration for b in all_batches) / len(all_batches), 3)
                if all_batches
                else 0.0
            ),
            "aborted": aborted is not None,
            "abort_reason": str(aborted) if aborted is not None else None,
            "duration": round(duration, 3),
            "batches": [b.summary() for b in all_batches],
        }
        write_json(context.output_dir / "failed-records.json", failed_records)
        files = ["failed-records.json"]
        if not config.dry_run:
            files.extend(MAPPING_FILES.values())
        report = StageReport(
            phase=self.phase,
            input_dir=context.input_dir,
            output_dir=context.output_dir,
            stats=stats,
            files=files,
        )
        report.write()

        logger.info(
            f"Import {'aborted' if aborted else 'complete'}: "
            f"{stats['success_count']} succeeded, {stats['failure_count']} failed",
            extra={
                "success_count": stats["success_count"],
                "failure_count": stats["failure_count"],
                "dry_run": config.dry_run,
            },
        )
        return report


__all__ = [
    "BatchImporter",
    "BatchResult",
    "ENDPOINTS",
    "ImportResult",
    "ImportStage",
    "classify_import_error",
    "create_batches",
]
