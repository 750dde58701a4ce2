"""Remote PostgreSQL inspection.

Provides connectivity and schema checks against databases that are not on
the local template server (deployment targets). Each call opens a short-lived
connection from the target's URL.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum
from typing import Any

import psycopg2

from src.dbfast.errors import DbFastError

from .connection import connect_url, quote_ident, translate_error

LIST_TABLES_SQL = """
    SELECT table_schema || '.' || table_name AS name
    FROM information_schema.tables
    WHERE table_type = 'BASE TABLE'
      AND table_schema NOT IN ('pg_catalog', 'information_schema')
    ORDER BY 1
"""


class CheckStatus(Enum):
    """Status of a verification check."""

    PASS = "pass"
    FAIL = "fail"
    WARN = "warn"
    SKIP = "skip"


@dataclass
class CheckResult:
    """Result of a single verification check."""

    name: str
    status: CheckStatus
    message: str
    details: str | None = None


class RemoteInspector:
    """Connectivity and schema checks against a database URL."""

    async def _with_connection(self, url: str, fn) -> Any:
        def _run() -> Any:
            conn = connect_url(url)
            try:
                with conn.cursor() as cur:
                    return fn(cur)
            except psycopg2.Error as exc:
                raise translate_error(exc) from exc
            finally:
                conn.close()

        return await asyncio.to_thread(_run)

    async def check_connectivity(self, url: str) -> str:
        """Connect to *url* and return the server version string.

        Raises:
            DatabaseConnectionError: If the server cannot be reached
        """

        def _version(cur) -> str:
            cur.execute("SELECT version()")
            row = cur.fetchone()
            return row[0] if row else ""

        return await self._with_connection(url, _version)

    async def list_tables(self, url: str) -> list[str]:
        """Return ``schema.table`` names of all user tables, sorted."""

        def _tables(cur) -> list[str]:
            cur.execute(LIST_TABLES_SQL)
            return [row[0] for row in cur.fetchall()]

        return await self._with_connection(url, _tables)

    async def row_counts(self, url: str, tables: Iterable[str] | None = None) -> dict[str, int]:
        """Return exact row counts for *tables* (all user tables by default)."""

        def _counts(cur) -> dict[str, int]:
            names = list(tables) if tables is not None else None
            if names is None:
                cur.execute(LIST_TABLES_SQL)
                names = [row[0] for row in cur.fetchall()]
            counts: dict[str, int] = {}
            for name in names:
                schema, _, table = name.partition(".")
                cur.execute(f"SELECT COUNT(*) FROM {quote_ident(schema)}.{quote_ident(table)}")
                counts[name] = cur.fetchone()[0]
            return counts

        return await self._with_connection(url, _counts)

    async def verify(self, url: str, expected_tables: Iterable[str] = ()) -> list[CheckResult]:
        """Run the connectivity and schema checks, collecting results.

        Never raises for database failures; they become ``FAIL`` results.
        """
        results: list[CheckResult] = []
        try:
            version = await self.check_connectivity(url)
        except DbFastError as exc:
            results.append(CheckResult("connection", CheckStatus.FAIL, "Cannot connect", str(exc)))
            results.append(CheckResult("tables", CheckStatus.SKIP, "Skipped (no connection)"))
            return results
        results.append(CheckResult("connection", CheckStatus.PASS, "Connected", version))

        expected = sorted(set(expected_tables))
        if not expected:
            results.append(CheckResult("tables", CheckStatus.SKIP, "No expected tables"))
            return results

        try:
            found = set(await self.list_tables(url))
        except DbFastError as exc:
            results.append(CheckResult("tables", CheckStatus.FAIL, "Cannot list tables", str(exc)))
            return results

        missing = [t for t in expected if t not in found]
        if missing:
            results.append(
                CheckResult(
                    "tables",
                    CheckStatus.FAIL,
                    f"{len(missing)} expected table(s) missing",
                    ", ".join(missing),
                )
            )
        else:
            results.append(
                CheckResult("tables", CheckStatus.PASS, f"All {len(expected)} table(s) present")
            )
        return results
