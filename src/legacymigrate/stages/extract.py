"""
Extract stage: copy legacy tables into a raw snapshot.

Opens the SSH tunnel and the read-only database client, reads every
configured table inside one read-only transaction and writes one JSON file
per table plus metadata, a manifest and the extraction report.

Output files::

    users.json, recipes.json, ...      one array of rows per table
    export-metadata.json               timestamp, DB version, counts, SHA-256
    manifest.json                      file list
    extraction-report.json             stage report
"""

from __future__ import annotations

import hashlib
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection

from legacymigrate.config import MigrationConfig
from legacymigrate.database import DatabaseClient, connect_database
from legacymigrate.observability.attributes import ATTR_DB_NAME, ATTR_DB_SYSTEM, ATTR_TABLE_NAME
from legacymigrate.retry import RetryConfig, with_retry
from legacymigrate.ssh_tunnel import open_tunnel
from legacymigrate.stages.base import StageContext, StageReport, write_json

logger = logging.getLogger(__name__)

ClientFactory = Callable[[MigrationConfig], Awaitable[DatabaseClient]]
"""Opens a DatabaseClient for the run's configuration."""


@dataclass(frozen=True)
class TableSpec:
    """A legacy table to extract and the columns that define its order."""

    name: str
    order_by: tuple[str, ...] = ("id",)


DEFAULT_TABLES: tuple[TableSpec, ...] = (
    TableSpec("users"),
    TableSpec("recipes"),
    TableSpec("ingredients", ("recipe_id", "order_number")),
    TableSpec("instructions", ("recipe_id", "step_number")),
    TableSpec("tags"),
    TableSpec("recipe_tags"),
    TableSpec("active_storage_attachments"),
    TableSpec("active_storage_blobs"),
)

# The whole read-only transaction is retried as a unit
EXTRACT_RETRY = RetryConfig(max_retries=2, base_delay=1.0, max_delay=10.0)


async def connect_legacy_database(config: MigrationConfig) -> DatabaseClient:
    """Open the SSH tunnel and a read-only DatabaseClient through it."""
    tunnel = await open_tunnel(
        config.ssh,
        local_port=config.legacy_db.local_port,
        remote_host=config.legacy_db.host,
        remote_port=config.legacy_db.port,
        max_retries=config.tunnel.max_retries,
        retry_delay=config.tunnel.retry_delay,
    )
    return await connect_database(config.legacy_db, tunnel, read_only=True)


def _sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


class ExtractStage:
    """
    Reads the legacy tables into a raw snapshot.

    Args:
        tables: Tables to extract, in order
        connect: Factory opening the DatabaseClient (tunnel included)
        retry_config: Retry policy for the extraction transaction
    """

    phase = "extract"

    def __init__(
        self,
        tables: Sequence[TableSpec] = DEFAULT_TABLES,
        connect: ClientFactory = connect_legacy_database,
        retry_config: RetryConfig = EXTRACT_RETRY,
    ) -> None:
        self.tables = tuple(tables)
        self._connect = connect
        self._retry_config = retry_config

    async def run(self, context: StageContext) -> StageReport:
        started = time.monotonic()
        context.check_shutdown()

        client = await self._connect(context.config)
        context.recovery.register_shutdown_handler(client.close)
        try:
            version = client.server_version or await client.get_version()

            async def extract_all() -> dict[str, list[dict[str, Any]]]:
                return await client.with_read_only_transaction(
                    lambda conn: self._read_tables(conn, context)
                )

            data = await with_retry(
                extract_all,
                config=self._retry_config,
                operation_name="extract_tables",
            )
        finally:
            context.recovery.remove_shutdown_handler(client.close)
            await client.close()

        return self._write_snapshot(context, data, version, time.monotonic() - started)

    async def _read_tables(
        self,
        conn: AsyncConnection,
        context: StageContext,
    ) -> dict[str, list[dict[str, Any]]]:
        preparer = conn.dialect.identifier_preparer
        data: dict[str, list[dict[str, Any]]] = {}

        for spec in self.tables:
            context.check_shutdown()
            order = ", ".join(preparer.quote(column) for column in spec.order_by)
            sql = f"SELECT * FROM {preparer.quote(spec.name)} ORDER BY {order}"

            attributes = {
                ATTR_TABLE_NAME: spec.name,
                ATTR_DB_SYSTEM: conn.dialect.name,
                ATTR_DB_NAME: context.config.legacy_db.database,
            }
            with context.tracer.span("legacymigrate.extract.table", attributes):
                result = await conn.execute(text(sql))
                rows = [dict(row) for row in result.mappings().all()]

            data[spec.name] = rows
            logger.info(
                f"Extracted {len(rows)} rows from {spec.name}",
                extra={"table": spec.name, "rows": len(rows)},
            )
        return data

    def _write_snapshot(
        self,
        context: StageContext,
        data: dict[str, list[dict[str, Any]]],
        version: str,
        duration: float,
    ) -> StageReport:
        output_dir = context.output_dir
        exported_at = datetime.now(UTC)
        table_meta: dict[str, dict[str, Any]] = {}
        files: list[str] = []

        for name, rows in data.items():
            path = write_json(output_dir / f"{name}.json", rows)
            files.append(path.name)
            table_meta[name] = {
                "file": path.name,
                "record_count": len(rows),
                "sha256": _sha256(path.read_bytes()),
            }

        total = sum(meta["record_count"] for meta in table_meta.values())
        write_json(
            output_dir / "export-metadata.json",
            {
                "export_timestamp": exported_at.isoformat(),
                "database_version": version,
                "tables": table_meta,
                "total_records": total,
            },
        )
        files.append("export-metadata.json")

        write_json(
            output_dir / "manifest.json",
            {
                "created_at": exported_at.isoformat(),
                "phase": self.phase,
                "files": [
                    {
                        "name": meta["file"],
                        "records": meta["record_count"],
                        "sha256": meta["sha256"],
                    }
                    for meta in table_meta.values()
                ],
            },
        )
        files.append("manifest.json")

        report = StageReport(
            phase=self.phase,
            input_dir=None,
            output_dir=output_dir,
            stats={
                "tables": {name: meta["record_count"] for name, meta in table_meta.items()},
                "total_records": total,
                "database_version": version,
                "duration": round(duration, 3),
            },
            files=files,
        )
        report.write()
        logger.info(
            f"Extraction complete: {total} records from {len(table_meta)} tables",
            extra={"total_records": total, "tables": len(table_meta)},
        )
        return report


__all__ = [
    "ClientFactory",
    "DEFAULT_TABLES",
    "EXTRACT_RETRY",
    "ExtractStage",
    "TableSpec",
    "connect_legacy_database",
]
