"""Tests for the pg_dump / pg_restore wrapper."""

import subprocess
from unittest.mock import patch

import pytest

from src.dbfast.errors import OperationTimeoutError
from src.infra.postgres.dump import PgDumpTool, PgToolError

URL = "postgresql://deploy@remote:5432/app"


def _completed(returncode=0, stdout=b"", stderr=b""):
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


@pytest.mark.asyncio
async def test_dump_uses_custom_format():
    with patch("src.infra.postgres.dump.subprocess.run", return_value=_completed(stdout=b"PGDMP")) as run:
        data = await PgDumpTool().dump(URL)

    assert data == b"PGDMP"
    cmd = run.call_args.args[0]
    assert cmd[0] == "pg_dump"
    assert "--format=custom" in cmd
    assert f"--dbname={URL}" in cmd


@pytest.mark.asyncio
async def test_restore_passes_archive_on_stdin_in_one_transaction():
    with patch("src.infra.postgres.dump.subprocess.run", return_value=_completed()) as run:
        await PgDumpTool().restore(b"PGDMP", URL)

    cmd = run.call_args.args[0]
    assert "--single-transaction" in cmd
    assert "--clean" not in cmd
    assert run.call_args.kwargs["input"] == b"PGDMP"


@pytest.mark.asyncio
async def test_clean_restore_drops_existing_objects():
    with patch("src.infra.postgres.dump.subprocess.run", return_value=_completed()) as run:
        await PgDumpTool().restore(b"PGDMP", URL, clean=True)

    cmd = run.call_args.args[0]
    assert "--clean" in cmd
    assert "--if-exists" in cmd


@pytest.mark.asyncio
async def test_configured_binaries_and_timeout_are_used():
    tool = PgDumpTool(pg_restore="/usr/lib/postgresql/16/bin/pg_restore", timeout=90)
    with patch("src.infra.postgres.dump.subprocess.run", return_value=_completed()) as run:
        await tool.restore(b"PGDMP", URL)

    assert run.call_args.args[0][0] == "/usr/lib/postgresql/16/bin/pg_restore"
    assert run.call_args.kwargs["timeout"] == 90


@pytest.mark.asyncio
async def test_hung_tool_raises_transient_timeout():
    expired = subprocess.TimeoutExpired(cmd=["pg_dump"], timeout=5)
    with patch("src.infra.postgres.dump.subprocess.run", side_effect=expired):
        with pytest.raises(OperationTimeoutError) as excinfo:
            await PgDumpTool(timeout=5).dump(URL)

    assert excinfo.value.transient
    assert excinfo.value.context == {"tool": "pg_dump", "timeout": 5}
    assert "within 5s" in excinfo.value.message


@pytest.mark.asyncio
async def test_failure_raises_with_last_stderr_line():
    stderr = b"pg_restore: connecting\npg_restore: error: relation \"users\" already exists\n"
    with patch("src.infra.postgres.dump.subprocess.run", return_value=_completed(1, stderr=stderr)):
        with pytest.raises(PgToolError) as excinfo:
            await PgDumpTool().restore(b"PGDMP", URL)

    error = excinfo.value
    assert error.returncode == 1
    assert 'relation "users" already exists' in error.message
    assert not error.transient


@pytest.mark.asyncio
async def test_connection_failures_are_transient():
    stderr = b'pg_dump: error: connection to server at "remote" failed: timeout expired\n'
    with patch("src.infra.postgres.dump.subprocess.run", return_value=_completed(1, stderr=stderr)):
        with pytest.raises(PgToolError) as excinfo:
            await PgDumpTool().dump(URL)

    assert excinfo.value.transient


@pytest.mark.asyncio
async def test_missing_binary():
    with patch("src.infra.postgres.dump.subprocess.run", side_effect=FileNotFoundError("pg_dump")):
        with pytest.raises(PgToolError) as excinfo:
            await PgDumpTool().dump(URL)

    assert excinfo.value.returncode == 127
