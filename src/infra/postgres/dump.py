"""pg_dump / pg_restore wrapper.

Dumps use the custom archive format so they can be restored with
``pg_restore``. Connection URLs are passed through ``--dbname`` so credentials
never appear as separate arguments. Every invocation runs under a wall-clock
timeout; a tool that outlives it is killed and reported as a transient
:class:`OperationTimeoutError`.
"""

from __future__ import annotations

import asyncio
import subprocess
from dataclasses import dataclass

from loguru import logger

from src.dbfast.errors import DbFastError, OperationTimeoutError

DEFAULT_TIMEOUT = 3600.0

_CONNECTION_MARKERS = (
    "could not connect",
    "connection to server",
    "could not translate host name",
    "timeout expired",
    "server closed the connection",
)


class PgToolError(DbFastError):
    """Raised when pg_dump or pg_restore exits with an error."""

    def __init__(self, tool: str, returncode: int, stderr: str) -> None:
        summary = stderr.strip().splitlines()[-1] if stderr.strip() else "no output"
        super().__init__(
            f"{tool} failed with exit code {returncode}: {summary}",
            stderr.strip() or None,
            tool=tool,
            returncode=returncode,
        )
        self.tool = tool
        self.returncode = returncode
        self.stderr = stderr
        lowered = stderr.lower()
        self.transient = any(marker in lowered for marker in _CONNECTION_MARKERS)


@dataclass
class CommandResult:
    """Result of a pg tool invocation."""

    success: bool
    stdout: bytes
    stderr: str
    returncode: int


class PgDumpTool:
    """Runs the PostgreSQL client tools in worker threads.

    Args:
        pg_dump: pg_dump executable
        pg_restore: pg_restore executable
        timeout: Seconds a single invocation may run; None waits forever
    """

    def __init__(
        self,
        pg_dump: str = "pg_dump",
        pg_restore: str = "pg_restore",
        timeout: float | None = DEFAULT_TIMEOUT,
    ) -> None:
        self.pg_dump = pg_dump
        self.pg_restore = pg_restore
        self.timeout = timeout

    async def _run(self, cmd: list[str], input_data: bytes | None = None) -> CommandResult:
        tool = cmd[0]

        def _run() -> CommandResult:
            try:
                result = subprocess.run(
                    cmd, input=input_data, capture_output=True, timeout=self.timeout
                )
            except FileNotFoundError as exc:
                raise PgToolError(tool, 127, f"{tool} not found on PATH") from exc
            except subprocess.TimeoutExpired as exc:
                raise OperationTimeoutError(
                    f"{tool} did not finish within {self.timeout:g}s",
                    tool=tool,
                    timeout=self.timeout,
                ) from exc
            return CommandResult(
                success=result.returncode == 0,
                stdout=result.stdout or b"",
                stderr=(result.stderr or b"").decode("utf-8", errors="replace"),
                returncode=result.returncode,
            )

        return await asyncio.to_thread(_run)

    async def dump(self, url: str) -> bytes:
        """Dump the database at *url* as a custom-format archive."""
        result = await self._run(
            [self.pg_dump, "--format=custom", "--no-owner", "--no-privileges", f"--dbname={url}"]
        )
        if not result.success:
            raise PgToolError("pg_dump", result.returncode, result.stderr)
        logger.debug(f"pg_dump produced {len(result.stdout)} bytes")
        return result.stdout

    async def restore(self, data: bytes, url: str, clean: bool = False) -> None:
        """Restore an archive into *url* as a single all-or-nothing transaction.

        With *clean*, existing objects are dropped before being recreated.
        """
        cmd = [
            self.pg_restore,
            "--single-transaction",
            "--exit-on-error",
            "--no-owner",
            "--no-privileges",
        ]
        if clean:
            cmd += ["--clean", "--if-exists"]
        cmd.append(f"--dbname={url}")

        result = await self._run(cmd, input_data=data)
        if not result.success:
            raise PgToolError("pg_restore", result.returncode, result.stderr)
