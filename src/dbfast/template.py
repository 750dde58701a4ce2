"""Template database lifecycle.

A template is a database built by running an environment's SQL files in
order. It is rebuilt only when the fingerprint of those files changes.

Rebuilds never expose a half-built template: statements run in a scratch
database which replaces the live one by rename once everything succeeded.

    <template>_build_<token>   scratch database while building
    <template>_old_<token>     previous template during the swap

Leftovers of either kind (from a crash or a killed process) are removed
before the next rebuild.
"""

from __future__ import annotations

import asyncio
import secrets
from collections.abc import AsyncIterator, Iterable, Sequence
from contextlib import asynccontextmanager

from loguru import logger

from src.dbfast import scanner, sql_splitter
from src.dbfast.errors import DbFastError, QueryError, TemplateBuildError
from src.dbfast.identifiers import validate_identifier
from src.dbfast.metadata import TemplateMetadataStore
from src.dbfast.models import (
    FileEntry,
    TemplateRecord,
    TemplateState,
    ValidationResult,
)
from src.infra.postgres.connection import (
    DATABASE_EXISTS_SQL,
    LIST_DATABASES_SQL,
    PostgresPool,
    quote_ident,
)
from src.infra.postgres.inspector import LIST_TABLES_SQL

BUILD_MARKER = "_build_"
OLD_MARKER = "_old_"


def _prepare_scripts(files: Sequence[FileEntry]) -> list[tuple[str, list[str]]]:
    """Read and split every file. Runs before any database work."""
    return [
        (entry.relative_path, sql_splitter.split(scanner.read_sql(entry), entry.relative_path))
        for entry in files
    ]


class TemplateManager:
    """Owns freshness and atomic (re)builds of template databases.

    Records are loaded once at construction; :meth:`needs_rebuild` only
    consults that in-memory cache.
    """

    def __init__(self, pool: PostgresPool, store: TemplateMetadataStore) -> None:
        self._pool = pool
        self._store = store
        self._records: dict[str, TemplateRecord] = store.load_all()
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def records(self) -> dict[str, TemplateRecord]:
        return dict(self._records)

    def get_record(self, template_name: str) -> TemplateRecord | None:
        return self._records.get(template_name)

    def needs_rebuild(self, template_name: str, fingerprint: str) -> bool:
        record = self._records.get(template_name)
        return record is None or record.source_fingerprint != fingerprint

    def state(self, template_name: str, fingerprint: str | None = None) -> TemplateState:
        lock = self._locks.get(template_name)
        if lock is not None and lock.locked():
            return TemplateState.BUILDING
        record = self._records.get(template_name)
        if record is None:
            return TemplateState.ABSENT
        if fingerprint is not None and record.source_fingerprint != fingerprint:
            return TemplateState.STALE
        return TemplateState.READY

    def connection_url(self, template_name: str) -> str:
        return self._pool.url_for(template_name)

    def _lock_for(self, template_name: str) -> asyncio.Lock:
        if template_name not in self._locks:
            self._locks[template_name] = asyncio.Lock()
        return self._locks[template_name]

    # =========================================================================
    # Catalog helpers
    # =========================================================================

    async def database_exists(self, name: str) -> bool:
        async with self._pool.acquire() as conn:
            return await conn.scalar(DATABASE_EXISTS_SQL, (name,)) is not None

    async def _list_databases(self) -> list[str]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(LIST_DATABASES_SQL)
        return [row["datname"] for row in rows]

    async def _drop_database(self, name: str) -> None:
        await self._pool.dispose(name)
        async with self._pool.acquire() as conn:
            await conn.execute(f"DROP DATABASE IF EXISTS {quote_ident(name)} WITH (FORCE)")

    async def _drop_quietly(self, name: str) -> None:
        try:
            await self._drop_database(name)
        except DbFastError as exc:
            logger.warning(f"Could not drop scratch database {name}: {exc}")

    async def _rename_database(self, old: str, new: str) -> None:
        async with self._pool.acquire() as conn:
            await conn.execute(f"ALTER DATABASE {quote_ident(old)} RENAME TO {quote_ident(new)}")

    @asynccontextmanager
    async def _connect_template(self, database: str) -> AsyncIterator:
        """Connect to a template-like database and release it afterwards.

        A database with open connections can be neither cloned nor renamed.
        """
        try:
            async with self._pool.acquire(database) as conn:
                yield conn
        finally:
            await self._pool.dispose(database)

    async def _list_tables(self, database: str) -> list[str]:
        async with self._connect_template(database) as conn:
            rows = await conn.fetch(LIST_TABLES_SQL)
        return [row["name"] for row in rows]

    # =========================================================================
    # Build
    # =========================================================================

    async def cleanup_orphans(self, template_name: str) -> list[str]:
        """Drop scratch and swapped-out databases left behind for *template_name*.

        If the live template is missing but a swapped-out copy exists (the
        process died between the two renames), that copy is renamed back
        instead of dropped.

        Returns:
            Names of the databases that were dropped
        """
        validate_identifier(template_name)
        build_prefix = f"{template_name}{BUILD_MARKER}"
        old_prefix = f"{template_name}{OLD_MARKER}"
        databases = await self._list_databases()
        scratch = [d for d in databases if d.startswith(build_prefix)]
        old = [d for d in databases if d.startswith(old_prefix)]

        if old and template_name not in databases:
            restored = old.pop(0)
            logger.warning(f"Restoring interrupted swap: {restored} -> {template_name}")
            await self._rename_database(restored, template_name)

        dropped: list[str] = []
        for name in (*scratch, *old):
            logger.info(f"Dropping orphaned database {name}")
            await self._drop_database(name)
            dropped.append(name)
        return dropped

    async def _run_scripts(
        self, template_name: str, database: str, scripts: list[tuple[str, list[str]]]
    ) -> None:
        async with self._connect_template(database) as conn:
            for path, statements in scripts:
                index = 0
                try:
                    async with conn.transaction():
                        for index, statement in enumerate(statements):
                            await conn.execute(statement)
                except QueryError as exc:
                    raise TemplateBuildError(
                        f"Statement {index} in {path} failed: {exc.message}",
                        template_name=template_name,
                        file=path,
                        statement_index=index,
                        details=exc.statement,
                    ) from exc
                logger.debug(f"Applied {path} ({len(statements)} statement(s))")

    async def _unswap(self, template_name: str, scratch: str, old: str, live_exists: bool) -> None:
        """Put the previous template back after the record could not be saved."""
        try:
            await self._pool.dispose(template_name)
            await self._rename_database(template_name, scratch)
            if live_exists:
                await self._rename_database(old, template_name)
        except DbFastError as exc:
            logger.error(f"Could not restore previous template {template_name}: {exc}")

    async def _swap(
        self, template_name: str, scratch: str, token: str, record: TemplateRecord
    ) -> None:
        """Replace the live template with *scratch* and persist *record*.

        The previous template is kept under its ``_old_`` name until the
        record is saved, and renamed back if saving fails.
        """
        old = f"{template_name}{OLD_MARKER}{token}"
        live_exists = await self.database_exists(template_name)
        try:
            if live_exists:
                await self._pool.dispose(template_name)
                await self._rename_database(template_name, old)
            try:
                await self._rename_database(scratch, template_name)
            except BaseException:
                if live_exists:
                    await asyncio.shield(self._rename_database(old, template_name))
                raise
        except QueryError as exc:
            raise TemplateBuildError(
                f"Could not swap in the new template: {exc.message}",
                template_name=template_name,
                details="Close open connections to the template and retry.",
            ) from exc

        try:
            await self._store.save(record)
        except BaseException:
            await asyncio.shield(self._unswap(template_name, scratch, old, live_exists))
            raise

        if live_exists:
            try:
                await self._drop_database(old)
            except DbFastError as exc:
                logger.warning(f"Previous template {old} left for later cleanup: {exc}")

    async def rebuild(
        self,
        template_name: str,
        files: Iterable[FileEntry],
        fingerprint: str | None = None,
        environment_name: str | None = None,
    ) -> TemplateRecord:
        """Build *template_name* from *files* and atomically replace the live template.

        On any failure (or cancellation) the scratch database is dropped and
        the previous template and its record are left untouched.

        Raises:
            InvalidIdentifierError: If the template name is unsafe
            MalformedSqlError: If a file cannot be split (no database work done)
            RepositoryIOError: If a file cannot be read
            TemplateBuildError: If a statement fails or the swap is impossible
        """
        validate_identifier(template_name)
        environment_name = environment_name or getattr(files, "environment_name", "")
        files = tuple(files)
        fingerprint = fingerprint or scanner.fingerprint(files)
        scripts = await asyncio.to_thread(_prepare_scripts, files)

        token = secrets.token_hex(4)
        scratch = validate_identifier(f"{template_name}{BUILD_MARKER}{token}")
        validate_identifier(f"{template_name}{OLD_MARKER}{token}")

        async with self._lock_for(template_name):
            await self.cleanup_orphans(template_name)
            logger.info(
                f"Building template {template_name} from {len(files)} file(s) "
                f"[{environment_name or 'default'}]"
            )

            created = False
            try:
                async with self._pool.acquire() as conn:
                    await conn.execute(f"CREATE DATABASE {quote_ident(scratch)}")
                created = True
                await self._run_scripts(template_name, scratch, scripts)
                tables = await self._list_tables(scratch)
                record = TemplateRecord(
                    template_name=template_name,
                    database_name=template_name,
                    source_fingerprint=fingerprint,
                    environment_name=environment_name,
                    file_count=len(files),
                    tables=tables,
                )
                await self._swap(template_name, scratch, token, record)
                created = False
            except BaseException:
                if created:
                    await asyncio.shield(self._drop_quietly(scratch))
                raise
            self._records[template_name] = record

        logger.info(f"Template {template_name} ready ({len(tables)} table(s))")
        return record

    async def ensure(
        self,
        template_name: str,
        files: Iterable[FileEntry],
        environment_name: str | None = None,
    ) -> TemplateRecord:
        """Rebuild only when the fingerprint changed or the database is gone."""
        environment_name = environment_name or getattr(files, "environment_name", "")
        files = tuple(files)
        fingerprint = scanner.fingerprint(files)
        record = self._records.get(template_name)
        if (
            record is not None
            and not self.needs_rebuild(template_name, fingerprint)
            and await self.database_exists(template_name)
        ):
            logger.debug(f"Template {template_name} is up to date")
            return record
        return await self.rebuild(template_name, files, fingerprint, environment_name)

    async def validate(
        self, template_name: str, expected_tables: Iterable[str] | None = None
    ) -> ValidationResult:
        """Introspect the template and compare against the expected tables.

        Expected tables default to the set recorded after the last build.
        """
        validate_identifier(template_name)
        if expected_tables is None:
            record = self._records.get(template_name)
            expected = set(record.tables) if record else set()
        else:
            expected = set(expected_tables)

        if not await self.database_exists(template_name):
            return ValidationResult(tables_exist=False, expected_tables_missing=sorted(expected))

        found = await self._list_tables(template_name)
        return ValidationResult(
            tables_exist=bool(found),
            expected_tables_missing=sorted(expected - set(found)),
            tables_found=found,
        )

    async def drop(self, template_name: str) -> None:
        """Drop the template database and forget its record."""
        validate_identifier(template_name)
        async with self._lock_for(template_name):
            await self._drop_database(template_name)
            await self._store.delete(template_name)
            self._records.pop(template_name, None)
        logger.info(f"Dropped template {template_name}")


def template_name_for(base_name: str, environment_name: str) -> str:
    """Name of the template database holding *environment_name*'s files."""
    return f"{base_name}_{environment_name}"
