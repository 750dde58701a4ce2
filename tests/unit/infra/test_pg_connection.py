"""Tests for psycopg2 error translation and the async connection facade."""

import asyncio
import time
from unittest.mock import MagicMock

import psycopg2
import psycopg2.errors
import psycopg2.extensions
import pytest

from src.dbfast.config import DatabaseConfig
from src.dbfast.errors import DatabaseConnectionError, QueryError
from src.infra.postgres.connection import (
    AsyncConnection,
    PostgresPool,
    quote_ident,
    translate_error,
)


def _pg_error(base: type, pgcode: str | None, message: str = "boom") -> psycopg2.Error:
    error_type = type(f"Fake{base.__name__}", (base,), {"pgcode": pgcode})
    return error_type(message)


def test_connection_failure_without_sqlstate():
    error = translate_error(psycopg2.OperationalError("could not connect to server"))

    assert isinstance(error, DatabaseConnectionError)
    assert error.transient


def test_availability_sqlstates_are_connection_errors():
    error = translate_error(_pg_error(psycopg2.OperationalError, "57P01", "terminating connection"))

    assert isinstance(error, DatabaseConnectionError)
    assert error.context["sqlstate"] == "57P01"


@pytest.mark.parametrize("pgcode", ["40001", "40P01", "55006", "55P03"])
def test_retryable_sqlstates_are_transient_query_errors(pgcode):
    error = translate_error(_pg_error(psycopg2.DatabaseError, pgcode))

    assert isinstance(error, QueryError)
    assert error.transient


def test_statement_errors_are_not_transient():
    error = translate_error(_pg_error(psycopg2.ProgrammingError, "42601", "syntax error"), "SELEC 1")

    assert isinstance(error, QueryError)
    assert not error.transient
    assert error.sqlstate == "42601"
    assert error.statement == "SELEC 1"


def test_quote_ident_escapes_quotes():
    assert quote_ident("app") == '"app"'
    assert quote_ident('we"ird') == '"we""ird"'


@pytest.fixture
def raw_connection():
    raw = MagicMock()
    cursor = raw.cursor.return_value.__enter__.return_value
    cursor.description = [("exists",)]
    cursor.fetchall.return_value = [{"exists": 1}]
    return raw


@pytest.mark.asyncio
async def test_scalar_returns_first_column(raw_connection):
    conn = AsyncConnection(raw_connection, "postgres")

    assert await conn.scalar("SELECT 1 AS exists") == 1


@pytest.mark.asyncio
async def test_driver_errors_are_translated(raw_connection):
    cursor = raw_connection.cursor.return_value.__enter__.return_value
    cursor.execute.side_effect = _pg_error(psycopg2.ProgrammingError, "42P07", "already exists")
    conn = AsyncConnection(raw_connection, "postgres")

    with pytest.raises(QueryError) as excinfo:
        await conn.execute("CREATE TABLE t ()")

    assert excinfo.value.statement == "CREATE TABLE t ()"


@pytest.mark.asyncio
async def test_transaction_commits_or_rolls_back(raw_connection):
    cursor = raw_connection.cursor.return_value.__enter__.return_value
    conn = AsyncConnection(raw_connection, "postgres")

    async with conn.transaction():
        await conn.execute("CREATE TABLE a ()")
    with pytest.raises(RuntimeError):
        async with conn.transaction():
            raise RuntimeError("stop")

    executed = [c.args[0] for c in cursor.execute.call_args_list]
    assert executed == ["BEGIN", "CREATE TABLE a ()", "COMMIT", "BEGIN", "ROLLBACK"]


def test_pool_dsn_and_url():
    pool = PostgresPool(DatabaseConfig(host="db", port=6543, user="me", password="p@ss"))

    assert pool.get_dsn("app")["dbname"] == "app"
    assert pool.maintenance_db == "postgres"
    assert pool.url_for("app").startswith("postgresql://me:p%40ss@db:6543/app?")


class _SlowPool:
    """ThreadedConnectionPool stand-in whose checkout blocks for a while."""

    def __init__(self, delay: float) -> None:
        self.delay = delay
        self.checked_out = 0

    def getconn(self):
        time.sleep(self.delay)
        self.checked_out += 1
        raw = MagicMock()
        raw.closed = 0
        raw.status = psycopg2.extensions.STATUS_READY
        return raw

    def putconn(self, raw, close=False):
        self.checked_out -= 1


@pytest.mark.asyncio
async def test_acquire_returns_connection_to_pool(monkeypatch):
    pool = PostgresPool(DatabaseConfig())
    slow = _SlowPool(0.0)
    monkeypatch.setattr(pool, "_pool_for", lambda database: slow)

    async with pool.acquire("app") as conn:
        assert conn.database == "app"
        assert slow.checked_out == 1

    assert slow.checked_out == 0


@pytest.mark.asyncio
async def test_cancelled_acquire_does_not_leak_connection(monkeypatch):
    pool = PostgresPool(DatabaseConfig())
    slow = _SlowPool(0.3)
    monkeypatch.setattr(pool, "_pool_for", lambda database: slow)

    async def _use() -> None:
        async with pool.acquire("app"):
            pass

    task = asyncio.create_task(_use())
    await asyncio.sleep(0.05)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    await asyncio.sleep(0.5)
    assert slow.checked_out == 0
