"""Unit tests for connection parameters, SSL fallback and provisioning."""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest

from memoria.config import DatabaseConfig
from memoria.db import (
    ConnectionParams,
    Database,
    _normalize_schema_name,
    should_retry_with_ssl_disable,
)

pytestmark = pytest.mark.unit

_SSL_LOST = ConnectionError("unexpected connection_lost() call")


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "DATABASE_URL",
        "POSTGRES_HOST",
        "POSTGRES_PORT",
        "POSTGRES_USER",
        "POSTGRES_PASSWORD",
        "POSTGRES_DB",
        "POSTGRES_SSLMODE",
    ):
        monkeypatch.delenv(name, raising=False)


class TestConnectionParams:
    def test_defaults(self):
        assert ConnectionParams.from_env() == ConnectionParams(
            host="localhost", port=5432, user="memoria", password="memoria"
        )

    def test_database_url(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("DATABASE_URL", "postgres://u:p@db.local:6543/mem?sslmode=REQUIRE")
        params = ConnectionParams.from_env()
        assert (params.host, params.port, params.user) == ("db.local", 6543, "u")
        assert params.database == "mem"
        assert params.ssl == "require"

    def test_url_beats_individual_variables(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("DATABASE_URL", "postgres://u:p@from-url/mem")
        monkeypatch.setenv("POSTGRES_HOST", "from-var")
        assert ConnectionParams.from_env().host == "from-url"

    def test_postgres_variables(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("POSTGRES_HOST", "pg")
        monkeypatch.setenv("POSTGRES_PORT", "15432")
        monkeypatch.setenv("POSTGRES_DB", "agent_mem")
        params = ConnectionParams.from_env()
        assert (params.host, params.port, params.database) == ("pg", 15432, "agent_mem")

    def test_invalid_sslmode_ignored(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("POSTGRES_SSLMODE", "sometimes")
        assert ConnectionParams.from_env().ssl is None

    def test_connect_kwargs_omit_unset_ssl(self):
        kwargs = ConnectionParams(host="h").connect_kwargs("mem")
        assert kwargs == {
            "host": "h",
            "port": 5432,
            "user": "memoria",
            "password": "memoria",
            "database": "mem",
        }
        assert ConnectionParams(ssl="verify-full").connect_kwargs("mem")["ssl"] == "verify-full"


class TestDatabaseFactories:
    def test_explicit_name_wins_over_url(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("DATABASE_URL", "postgres://u:p@host/from_url")
        assert Database.from_env("explicit").db_name == "explicit"
        assert Database.from_env().db_name == "from_url"

    def test_default_name(self):
        assert Database.from_env().db_name == "memoria"

    def test_from_config(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("POSTGRES_HOST", "pg")
        db = Database.from_config(
            DatabaseConfig(name="agent_a", schema="mem", min_pool_size=1, max_pool_size=4)
        )
        assert (db.db_name, db.params.host, db.schema) == ("agent_a", "pg", "mem")
        assert (db.min_pool_size, db.max_pool_size) == (1, 4)


class TestSchemaName:
    @pytest.mark.parametrize("value", [None, "", "   "])
    def test_blank_is_none(self, value):
        assert _normalize_schema_name(value) is None

    def test_strips_whitespace(self):
        assert _normalize_schema_name("  agent_a ") == "agent_a"

    @pytest.mark.parametrize("value", ["1abc", "a-b", "x; DROP TABLE y"])
    def test_rejects_non_identifiers(self, value):
        with pytest.raises(ValueError, match="Invalid schema name"):
            _normalize_schema_name(value)


class TestSslFallback:
    def test_only_unset_sslmode_downgrades(self):
        assert should_retry_with_ssl_disable(_SSL_LOST, None)
        assert not should_retry_with_ssl_disable(_SSL_LOST, "prefer")

    def test_other_errors_do_not_downgrade(self):
        assert not should_retry_with_ssl_disable(ConnectionError("refused"), None)
        assert not should_retry_with_ssl_disable(OSError("unexpected connection_lost() call"), None)


class TestPoolLifecycle:
    @patch("memoria.db.asyncpg.create_pool", new_callable=AsyncMock)
    async def test_connect_settings(self, mock_create_pool: AsyncMock):
        pool = AsyncMock()
        mock_create_pool.return_value = pool

        db = Database("x", schema="agent_a", min_pool_size=1, max_pool_size=2)
        assert await db.connect() is pool

        kwargs = mock_create_pool.await_args.kwargs
        assert kwargs["server_settings"] == {
            "application_name": "memoria:x",
            "search_path": "agent_a,public",
        }
        assert (kwargs["min_size"], kwargs["max_size"]) == (1, 2)
        assert kwargs["database"] == "x"
        assert "ssl" not in kwargs

    @patch("memoria.db.asyncpg.create_pool", new_callable=AsyncMock)
    async def test_connect_is_idempotent_and_close_resets(self, mock_create_pool: AsyncMock):
        pool = AsyncMock()
        mock_create_pool.return_value = pool
        db = Database("x")

        await db.connect()
        await db.connect()
        assert mock_create_pool.await_count == 1
        assert "search_path" not in mock_create_pool.await_args.kwargs["server_settings"]

        await db.close()
        pool.close.assert_awaited_once()
        assert db.pool is None
        await db.close()
        pool.close.assert_awaited_once()

    @patch("memoria.db.asyncpg.create_pool", new_callable=AsyncMock)
    async def test_connect_retries_with_ssl_disable(self, mock_create_pool: AsyncMock):
        mock_create_pool.side_effect = [_SSL_LOST, AsyncMock()]
        await Database("x").connect()
        assert mock_create_pool.await_count == 2
        assert mock_create_pool.await_args_list[1].kwargs["ssl"] == "disable"

    @patch("memoria.db.asyncpg.create_pool", new_callable=AsyncMock)
    async def test_explicit_ssl_never_downgraded(self, mock_create_pool: AsyncMock):
        mock_create_pool.side_effect = _SSL_LOST
        with pytest.raises(ConnectionError):
            await Database("x", ConnectionParams(ssl="require")).connect()
        assert mock_create_pool.await_count == 1


class TestProvision:
    @patch("memoria.db.asyncpg.connect", new_callable=AsyncMock)
    async def test_creates_missing_database(self, mock_connect: AsyncMock):
        conn = AsyncMock()
        conn.fetchval = AsyncMock(return_value=None)
        mock_connect.return_value = conn

        assert await Database('we"ird').provision() is True

        assert mock_connect.await_args.kwargs["database"] == "postgres"
        conn.execute.assert_awaited_once_with('CREATE DATABASE "we""ird" TEMPLATE template0')
        conn.close.assert_awaited_once()

    @patch("memoria.db.asyncpg.connect", new_callable=AsyncMock)
    async def test_existing_database_left_alone(self, mock_connect: AsyncMock):
        conn = AsyncMock()
        conn.fetchval = AsyncMock(return_value=1)
        mock_connect.return_value = conn

        assert await Database("memoria").provision() is False

        conn.execute.assert_not_awaited()
        conn.close.assert_awaited_once()

    @patch("memoria.db.asyncpg.connect", new_callable=AsyncMock)
    async def test_provision_retries_with_ssl_disable(self, mock_connect: AsyncMock):
        conn = AsyncMock()
        conn.fetchval = AsyncMock(return_value=1)
        mock_connect.side_effect = [_SSL_LOST, conn]

        await Database("memoria").provision()

        assert mock_connect.await_args_list[1].kwargs["ssl"] == "disable"
        conn.close.assert_awaited_once()
