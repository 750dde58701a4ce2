"""PostgreSQL connection management.

Provides an injectable, per-database connection pool and an async facade over
psycopg2 connections. Every blocking driver call runs in a worker thread via
``asyncio.to_thread`` so the event loop is never blocked.
"""

from __future__ import annotations

import asyncio
import threading
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from typing import Any, TypeVar

import psycopg2
import psycopg2.extensions
import psycopg2.extras
import psycopg2.pool
from loguru import logger

from src.dbfast.config.config_data import DatabaseConfig
from src.dbfast.errors import DatabaseConnectionError, DbFastError, QueryError

T = TypeVar("T")

# SQLSTATE classes that describe availability rather than the statement
_TRANSIENT_CLASSES = ("08", "53", "57")
# Individual SQLSTATEs that may succeed on retry
_TRANSIENT_STATES = frozenset(
    {
        "40001",  # serialization_failure
        "40P01",  # deadlock_detected
        "55006",  # object_in_use (template still has connections)
        "55P03",  # lock_not_available
    }
)


def quote_ident(name: str) -> str:
    """Quote an identifier for interpolation into SQL text.

    Callers validate names before they get here; quoting keeps mixed case
    and reserved words from being reinterpreted.
    """
    return '"' + name.replace('"', '""') + '"'


def translate_error(exc: psycopg2.Error, statement: str | None = None) -> DbFastError:
    """Map a psycopg2 error to the dbfast error hierarchy."""
    pgcode = getattr(exc, "pgcode", None)
    message = str(exc).strip() or exc.__class__.__name__

    if pgcode is None and isinstance(
        exc, psycopg2.OperationalError | psycopg2.InterfaceError
    ):
        return DatabaseConnectionError(message)
    if pgcode and pgcode[:2] in _TRANSIENT_CLASSES:
        return DatabaseConnectionError(message, sqlstate=pgcode)

    error = QueryError(message, sqlstate=pgcode, statement=statement)
    error.transient = pgcode in _TRANSIENT_STATES
    return error


class AsyncConnection:
    """Async wrapper around one pooled psycopg2 connection.

    The connection runs in autocommit mode, which ``CREATE DATABASE`` and
    ``ALTER DATABASE ... RENAME`` require. Use :meth:`transaction` to group
    statements atomically.
    """

    def __init__(self, raw: Any, database: str) -> None:
        self._raw = raw
        self.database = database
        self._in_transaction = False

    @property
    def raw(self) -> Any:
        return self._raw

    async def _run(self, fn: Callable[[], T], statement: str | None = None) -> T:
        try:
            return await asyncio.to_thread(fn)
        except psycopg2.Error as exc:
            raise translate_error(exc, statement) from exc

    async def execute(self, sql: str, params: tuple[Any, ...] | None = None) -> None:
        """Execute a statement, discarding any result rows."""

        def _execute() -> None:
            with self._raw.cursor() as cur:
                cur.execute(sql, params)

        await self._run(_execute, sql)

    async def fetch(
        self, sql: str, params: tuple[Any, ...] | None = None
    ) -> list[dict[str, Any]]:
        """Execute a query and return rows as dicts."""

        def _fetch() -> list[dict[str, Any]]:
            with self._raw.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
                cur.execute(sql, params)
                if cur.description is None:
                    return []
                return [dict(row) for row in cur.fetchall()]

        return await self._run(_fetch, sql)

    async def scalar(self, sql: str, params: tuple[Any, ...] | None = None) -> Any:
        """Execute a query and return the first column of the first row."""
        rows = await self.fetch(sql, params)
        if rows and rows[0]:
            return next(iter(rows[0].values()))
        return None

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncConnection]:
        """Run the enclosed statements in one transaction.

        Commits on normal exit and rolls back on any exception, including
        cancellation.
        """
        if self._in_transaction:
            raise QueryError("Nested transactions are not supported")
        await self.execute("BEGIN")
        self._in_transaction = True
        try:
            yield self
        except BaseException:
            self._in_transaction = False
            try:
                await asyncio.shield(self.execute("ROLLBACK"))
            except DbFastError as rollback_exc:
                logger.warning(f"Rollback on {self.database} failed: {rollback_exc}")
            raise
        self._in_transaction = False
        await self.execute("COMMIT")


class PostgresPool:
    """One ``ThreadedConnectionPool`` per database name on a single server.

    Construct it explicitly and pass it to the components that need it.
    Pools are created on first use of a database. :meth:`dispose` closes the
    pool of one database, which is required before that database can be
    renamed, dropped or used as a clone template.
    """

    def __init__(self, settings: DatabaseConfig) -> None:
        self._settings = settings
        self._pools: dict[str, psycopg2.pool.ThreadedConnectionPool] = {}
        self._lock = threading.Lock()

    @property
    def settings(self) -> DatabaseConfig:
        return self._settings

    @property
    def maintenance_db(self) -> str:
        return self._settings.maintenance_db

    def get_dsn(self, database: str) -> dict[str, Any]:
        """Get connection parameters for psycopg2.connect()."""
        s = self._settings
        return {
            "host": s.host,
            "port": s.port,
            "dbname": database,
            "user": s.user,
            "password": s.password or "",
            "sslmode": s.sslmode,
            "connect_timeout": s.connect_timeout,
        }

    def url_for(self, database: str) -> str:
        return self._settings.url_for(database)

    def _pool_for(self, database: str) -> psycopg2.pool.ThreadedConnectionPool:
        with self._lock:
            pool = self._pools.get(database)
            if pool is None:
                pool = psycopg2.pool.ThreadedConnectionPool(
                    self._settings.pool_min,
                    self._settings.pool_max,
                    **self.get_dsn(database),
                )
                self._pools[database] = pool
                logger.debug(f"Opened connection pool for {database}")
            return pool

    def _checkout(self, database: str) -> tuple[Any, psycopg2.pool.ThreadedConnectionPool]:
        pool = self._pool_for(database)
        raw = pool.getconn()
        if raw.closed:
            pool.putconn(raw, close=True)
            raw = pool.getconn()
        if raw.status != psycopg2.extensions.STATUS_READY:
            raw.rollback()
        raw.autocommit = True
        return raw, pool

    @staticmethod
    def _release_abandoned(checkout: asyncio.Future) -> None:
        """Return a connection whose checkout finished after the caller was cancelled."""
        if checkout.cancelled() or checkout.exception() is not None:
            return
        raw, pool = checkout.result()
        try:
            pool.putconn(raw)
        except psycopg2.pool.PoolError:
            raw.close()
        logger.debug("Returned connection checked out by a cancelled task")

    @asynccontextmanager
    async def acquire(self, database: str | None = None) -> AsyncIterator[AsyncConnection]:
        """Borrow a connection, returning it to its pool on every exit path.

        The checkout runs in a worker thread that cannot be interrupted. If
        the caller is cancelled meanwhile, the connection goes back to the
        pool as soon as the thread finishes.
        """
        database = database or self.maintenance_db
        checkout = asyncio.ensure_future(asyncio.to_thread(self._checkout, database))
        try:
            raw, pool = await asyncio.shield(checkout)
        except asyncio.CancelledError:
            checkout.add_done_callback(self._release_abandoned)
            raise
        except psycopg2.pool.PoolError as exc:
            raise DatabaseConnectionError(
                f"Connection pool for {database} exhausted: {exc}", database=database
            ) from exc
        except psycopg2.Error as exc:
            raise translate_error(exc) from exc

        broken = False
        try:
            yield AsyncConnection(raw, database)
        except DatabaseConnectionError:
            broken = True
            raise
        finally:
            try:
                pool.putconn(raw, close=broken or bool(raw.closed))
            except psycopg2.pool.PoolError:
                # Pool was disposed while the connection was out
                raw.close()

    async def dispose(self, database: str) -> None:
        """Close every pooled connection to *database*."""
        with self._lock:
            pool = self._pools.pop(database, None)
        if pool is not None:
            await asyncio.to_thread(pool.closeall)
            logger.debug(f"Closed connection pool for {database}")

    async def close(self) -> None:
        """Close every pool."""
        with self._lock:
            pools = list(self._pools.items())
            self._pools.clear()
        for database, pool in pools:
            await asyncio.to_thread(pool.closeall)
            logger.debug(f"Closed connection pool for {database}")

    async def __aenter__(self) -> PostgresPool:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()


def connect_url(url: str) -> Any:
    """Open a standalone autocommit connection from a libpq URL."""
    try:
        conn = psycopg2.connect(url)
    except psycopg2.Error as exc:
        raise translate_error(exc) from exc
    conn.autocommit = True
    return conn


DATABASE_EXISTS_SQL = "SELECT 1 FROM pg_database WHERE datname = %s"
LIST_DATABASES_SQL = "SELECT datname FROM pg_database ORDER BY datname"
