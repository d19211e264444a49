"""
Unit tests for the extract stage.

The legacy database is a seeded SQLite file opened through aiosqlite; the
SSH tunnel is not involved.
"""

import hashlib
import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import pytest_asyncio
from sqlalchemy import text
from sqlalchemy.ext.asyncio import create_async_engine

from legacymigrate.database import connect_database
from legacymigrate.exceptions import DatabaseConnectionError, QueryError, ShutdownRequestedError
from legacymigrate.observability.attributes import ATTR_DB_NAME, ATTR_DB_SYSTEM, ATTR_TABLE_NAME
from legacymigrate.retry import RetryConfig
from legacymigrate.stages.extract import ExtractStage, TableSpec, connect_legacy_database

FAST_RETRY = RetryConfig(max_retries=2, base_delay=0, max_delay=0, jitter=0)

TABLES = (
    TableSpec("users"),
    TableSpec("recipes"),
    TableSpec("ingredients", ("recipe_id", "order_number")),
)


@pytest_asyncio.fixture
async def legacy_db_url(tmp_path) -> str:
    url = f"sqlite+aiosqlite:///{tmp_path / 'legacy.db'}"
    engine = create_async_engine(url)
    async with engine.begin() as conn:
        await conn.execute(text("CREATE TABLE users (id INTEGER PRIMARY KEY, email TEXT)"))
        await conn.execute(
            text("CREATE TABLE recipes (id INTEGER PRIMARY KEY, name TEXT, user_id INTEGER)")
        )
        await conn.execute(
            text(
                "CREATE TABLE ingredients (id INTEGER PRIMARY KEY, recipe_id INTEGER, "
                "order_number INTEGER, ingredient TEXT)"
            )
        )
        await conn.execute(
            text("INSERT INTO users (id, email) VALUES (2, 'b@example.com'), (1, 'a@example.com')")
        )
        await conn.execute(
            text("INSERT INTO recipes (id, name, user_id) VALUES (10, 'Pancakes', 1)")
        )
        await conn.execute(
            text(
                "INSERT INTO ingredients (id, recipe_id, order_number, ingredient) VALUES "
                "(100, 10, 2, 'eggs'), (101, 10, 1, 'flour')"
            )
        )
    await engine.dispose()
    return url


@pytest.fixture
def sqlite_connect(legacy_db_url):
    """Client factory that records the clients it opened."""
    opened = []

    async def factory(config):
        client = await connect_database(
            config.legacy_db, url=legacy_db_url, max_retries=1, retry_delay=0
        )
        opened.append(client)
        return client

    factory.opened = opened
    return factory


def mock_client(transaction_results):
    client = MagicMock()
    client.server_version = "PostgreSQL 9.6"
    client.with_read_only_transaction = AsyncMock(side_effect=transaction_results)
    client.close = AsyncMock()
    return client


class TestExtractStage:
    """Tests for ExtractStage.run."""

    @pytest.mark.asyncio
    async def test_writes_one_file_per_table(self, make_context, sqlite_connect):
        context = make_context("extract")
        stage = ExtractStage(TABLES, connect=sqlite_connect, retry_config=FAST_RETRY)

        report = await stage.run(context)

        users = json.loads((context.output_dir / "users.json").read_text())
        ingredients = json.loads((context.output_dir / "ingredients.json").read_text())
        assert [u["id"] for u in users] == [1, 2]
        assert [i["ingredient"] for i in ingredients] == ["flour", "eggs"]
        assert report.stats["tables"] == {"users": 2, "recipes": 1, "ingredients": 2}
        assert report.stats["total_records"] == 5
        assert report.input_dir is None

    @pytest.mark.asyncio
    async def test_metadata_manifest_and_report(self, make_context, sqlite_connect):
        context = make_context("extract")
        stage = ExtractStage(TABLES, connect=sqlite_connect, retry_config=FAST_RETRY)

        report = await stage.run(context)

        metadata = json.loads((context.output_dir / "export-metadata.json").read_text())
        users_bytes = (context.output_dir / "users.json").read_bytes()
        assert metadata["tables"]["users"]["record_count"] == 2
        assert metadata["tables"]["users"]["sha256"] == hashlib.sha256(users_bytes).hexdigest()
        assert metadata["total_records"] == 5
        assert metadata["database_version"] == report.stats["database_version"]

        manifest = json.loads((context.output_dir / "manifest.json").read_text())
        assert [f["name"] for f in manifest["files"]] == [
            "users.json",
            "recipes.json",
            "ingredients.json",
        ]
        persisted = json.loads((context.output_dir / "extraction-report.json").read_text())
        assert persisted["phase"] == "extract"
        assert "extraction-report.json" in report.files

    @pytest.mark.asyncio
    async def test_client_closed_and_handler_removed(
        self, make_context, sqlite_connect, recovery_manager
    ):
        context = make_context("extract")
        stage = ExtractStage(TABLES, connect=sqlite_connect, retry_config=FAST_RETRY)

        await stage.run(context)

        [client] = sqlite_connect.opened
        assert client.is_closed
        assert recovery_manager.remove_shutdown_handler(client.close) is False

    @pytest.mark.asyncio
    async def test_spans_per_table(self, make_context, sqlite_connect, tracer):
        stage = ExtractStage(TABLES, connect=sqlite_connect, retry_config=FAST_RETRY)

        await stage.run(make_context("extract"))

        assert tracer.span_names == ["legacymigrate.extract.table"] * 3
        name, attributes = tracer.spans[0]
        assert attributes[ATTR_TABLE_NAME] == "users"
        assert attributes[ATTR_DB_SYSTEM] == "sqlite"
        assert attributes[ATTR_DB_NAME] == "legacy"

    @pytest.mark.asyncio
    async def test_transaction_retried_as_a_whole(self, make_context):
        client = mock_client(
            [DatabaseConnectionError("connection lost"), {"users": [{"id": 1}], "recipes": []}]
        )
        stage = ExtractStage(
            TABLES, connect=AsyncMock(return_value=client), retry_config=FAST_RETRY
        )
        context = make_context("extract")

        report = await stage.run(context)

        assert client.with_read_only_transaction.await_count == 2
        assert report.stats["tables"] == {"users": 1, "recipes": 0}
        assert report.stats["database_version"] == "PostgreSQL 9.6"
        client.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_query_error_not_retried(self, make_context):
        client = mock_client([QueryError("relation does not exist")])
        stage = ExtractStage(
            TABLES, connect=AsyncMock(return_value=client), retry_config=FAST_RETRY
        )
        context = make_context("extract")

        with pytest.raises(QueryError):
            await stage.run(context)

        assert client.with_read_only_transaction.await_count == 1
        client.close.assert_awaited_once()
        assert not (context.output_dir / "users.json").exists()

    @pytest.mark.asyncio
    async def test_shutdown_before_start(self, make_context, recovery_manager):
        connect = AsyncMock()
        await recovery_manager.graceful_shutdown("SIGTERM")

        with pytest.raises(ShutdownRequestedError):
            await ExtractStage(TABLES, connect=connect).run(make_context("extract"))

        connect.assert_not_awaited()


class TestConnectLegacyDatabase:
    @pytest.mark.asyncio
    async def test_opens_tunnel_then_read_only_client(self, migration_config):
        tunnel = MagicMock()
        client = MagicMock()

        with (
            patch(
                "legacymigrate.stages.extract.open_tunnel", new=AsyncMock(return_value=tunnel)
            ) as open_tunnel,
            patch(
                "legacymigrate.stages.extract.connect_database",
                new=AsyncMock(return_value=client),
            ) as connect,
        ):
            result = await connect_legacy_database(migration_config)

        assert result is client
        kwargs = open_tunnel.await_args.kwargs
        assert open_tunnel.await_args.args == (migration_config.ssh,)
        assert kwargs["local_port"] == migration_config.legacy_db.local_port
        assert kwargs["remote_host"] == migration_config.legacy_db.host
        assert kwargs["remote_port"] == migration_config.legacy_db.port
        connect.assert_awaited_once_with(migration_config.legacy_db, tunnel, read_only=True)
