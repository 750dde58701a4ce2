"""Database cloning from templates.

A clone is created with ``CREATE DATABASE target TEMPLATE source``, a
file-level copy that takes milliseconds regardless of how long the template
took to build. The clone is independent of its template afterwards.
"""

from __future__ import annotations

import time

from loguru import logger

from src.dbfast.errors import NameConflictError, QueryError
from src.dbfast.identifiers import validate_identifier
from src.dbfast.metrics import MetricsSink, NullMetrics
from src.dbfast.models import CloneRequest, CloneResult, utcnow
from src.dbfast.resilience import Resilience, RetryPolicy
from src.infra.postgres.connection import DATABASE_EXISTS_SQL, PostgresPool, quote_ident

DUPLICATE_DATABASE = "42P04"


class CloneManager:
    """Creates and drops databases cloned from templates.

    Requests for the same target are serialised in-process: while one clone
    of ``target`` is in flight, a second request fails fast with
    :class:`NameConflictError` instead of racing it to the server.
    """

    def __init__(
        self,
        pool: PostgresPool,
        resilience: Resilience | None = None,
        metrics: MetricsSink | None = None,
    ) -> None:
        self._pool = pool
        self._resilience = resilience or Resilience(RetryPolicy.database_operations())
        self._metrics = metrics or NullMetrics()
        self._in_flight: set[str] = set()

    async def exists(self, name: str) -> bool:
        validate_identifier(name)
        async with self._pool.acquire() as conn:
            return await conn.scalar(DATABASE_EXISTS_SQL, (name,)) is not None

    async def clone(self, template_name: str, target_name: str) -> CloneResult:
        """Create *target_name* as a copy of *template_name*.

        Raises:
            InvalidIdentifierError: If either name is unsafe (no SQL is issued)
            NameConflictError: If the target exists or is being created
            QueryError: If the server rejects the clone
        """
        validate_identifier(template_name)
        validate_identifier(target_name)
        if target_name == template_name:
            raise NameConflictError(target_name, "is the template itself")
        if target_name in self._in_flight:
            raise NameConflictError(target_name, "is already being created")

        request = CloneRequest(template_name=template_name, target_name=target_name)
        self._in_flight.add(target_name)
        started = time.perf_counter()
        try:
            await self._resilience.call(
                self._pool.maintenance_db,
                lambda: self._create(template_name, target_name),
                operation=f"clone {template_name} -> {target_name}",
            )
        except BaseException:
            self._metrics.increment("clone.failure")
            raise
        finally:
            self._in_flight.discard(target_name)
            self._metrics.timing("clone.duration", time.perf_counter() - started)

        self._metrics.increment("clone.success")
        result = CloneResult(
            template_name=template_name,
            target_name=target_name,
            requested_at=request.requested_at,
            completed_at=utcnow(),
            success=True,
        )
        logger.info(f"Cloned {template_name} -> {target_name} in {result.duration_ms:.0f}ms")
        return result

    async def _create(self, template_name: str, target_name: str) -> None:
        # Pooled connections to the template would make the copy fail
        await self._pool.dispose(template_name)
        async with self._pool.acquire() as conn:
            try:
                await conn.execute(
                    f"CREATE DATABASE {quote_ident(target_name)} "
                    f"TEMPLATE {quote_ident(template_name)}"
                )
            except QueryError as exc:
                if exc.sqlstate == DUPLICATE_DATABASE:
                    raise NameConflictError(target_name) from exc
                raise

    async def drop_clone(self, name: str) -> bool:
        """Drop a clone. Returns False if it did not exist."""
        validate_identifier(name)
        if not await self.exists(name):
            return False
        await self._pool.dispose(name)
        async with self._pool.acquire() as conn:
            await conn.execute(f"DROP DATABASE IF EXISTS {quote_ident(name)} WITH (FORCE)")
        logger.info(f"Dropped clone {name}")
        return True
