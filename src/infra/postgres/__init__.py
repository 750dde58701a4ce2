"""PostgreSQL infrastructure.

This module provides the connection pool, the pg_dump/pg_restore wrapper and
remote inspection used by the template, clone, backup and deployment layers.
"""

from .connection import AsyncConnection, PostgresPool, quote_ident
from .dump import PgDumpTool, PgToolError
from .inspector import CheckResult, CheckStatus, RemoteInspector

__all__ = [
    "AsyncConnection",
    "CheckResult",
    "CheckStatus",
    "PgDumpTool",
    "PgToolError",
    "PostgresPool",
    "RemoteInspector",
    "quote_ident",
]
