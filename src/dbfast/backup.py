"""Backup and restore of deployment targets.

Backups are pg_dump custom-format archives stored as ``<backup_id>.dump``
with a ``<backup_id>.json`` metadata sidecar holding the SHA256 checksum.
An archive is only visible under its final name once it has been fully
written; failed backups leave nothing behind.
"""

from __future__ import annotations

import asyncio
import hashlib
import re
import secrets
from collections import defaultdict
from datetime import timedelta
from pathlib import Path

from loguru import logger
from pydantic import ValidationError

from src.dbfast.config.config_data import BackupConfig, RemoteTarget
from src.dbfast.errors import BackupError, DbFastError, RestoreError
from src.dbfast.metadata import write_atomic
from src.dbfast.models import BackupInfo, utcnow
from src.dbfast.resilience import Resilience, RetryPolicy
from src.infra.postgres.dump import PgDumpTool

_UNSAFE_ID_CHARS = re.compile(r"[^A-Za-z0-9_-]+")


def _sha256(path: Path) -> str:
    """Calculate SHA256 checksum of file."""
    sha256 = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(8192), b""):
            sha256.update(chunk)
    return sha256.hexdigest()


class BackupManager:
    """Creates, lists, verifies, restores and prunes backups."""

    def __init__(
        self,
        config: BackupConfig,
        dump_tool: PgDumpTool,
        resilience: Resilience | None = None,
    ) -> None:
        self.config = config
        self.backup_dir = config.directory
        self._dump = dump_tool
        self._resilience = resilience or Resilience(RetryPolicy.network_operations())

    def _new_backup_id(self, source: str) -> str:
        source = _UNSAFE_ID_CHARS.sub("_", source).strip("_") or "backup"
        timestamp = utcnow().strftime("%Y%m%d_%H%M%S")
        return f"{source}_{timestamp}_{secrets.token_hex(3)}"

    def _meta_path(self, backup_id: str) -> Path:
        return self.backup_dir / f"{backup_id}.json"

    # =========================================================================
    # Create
    # =========================================================================

    def _persist(self, backup_id: str, source: str, data: bytes) -> BackupInfo:
        self.backup_dir.mkdir(parents=True, exist_ok=True)
        dump_path = self.backup_dir / f"{backup_id}.dump"
        temp_path = self.backup_dir / f".{backup_id}.dump.tmp"
        try:
            temp_path.write_bytes(data)
            checksum = _sha256(temp_path)
            temp_path.replace(dump_path)
            info = BackupInfo(
                backup_id=backup_id,
                source_identifier=source,
                file_path=dump_path,
                size_bytes=len(data),
                checksum=checksum,
            )
            write_atomic(self._meta_path(backup_id), info.model_dump_json(indent=2))
        except BaseException:
            temp_path.unlink(missing_ok=True)
            dump_path.unlink(missing_ok=True)
            raise
        return info

    async def create_backup(self, target: RemoteTarget) -> BackupInfo:
        """Dump *target* into the backup directory.

        Raises:
            BackupError: If the dump or the write fails; no partial file remains
        """
        source = target.name or target.database_name
        backup_id = self._new_backup_id(source)
        logger.info(f"Creating backup {backup_id} of {target.safe_url}")

        try:
            data = await self._resilience.call(
                source,
                lambda: self._dump.dump(target.connection_url),
                operation="backup",
            )
        except DbFastError as exc:
            raise BackupError(
                f"Backup of '{source}' failed: {exc.message}", exc.details, source=source
            ) from exc
        if not data:
            raise BackupError(f"Backup of '{source}' produced an empty archive", source=source)

        try:
            info = await asyncio.to_thread(self._persist, backup_id, source, data)
        except OSError as exc:
            raise BackupError(
                f"Could not write backup {backup_id}: {exc}", source=source, backup_id=backup_id
            ) from exc

        logger.info(f"Backup {backup_id} written ({info.size_bytes} bytes)")
        removed = await self.cleanup(protect={backup_id})
        if removed:
            logger.info(f"Cleaned up {removed} old backup(s)")
        return info

    # =========================================================================
    # Inspect
    # =========================================================================

    def validate_backup(self, info: BackupInfo) -> bool:
        """Return True when the archive exists and matches its checksum."""
        path = Path(info.file_path)
        if not path.is_file():
            return False
        if path.stat().st_size != info.size_bytes:
            return False
        return _sha256(path) == info.checksum

    def list_backups(self, source: str | None = None) -> list[BackupInfo]:
        """Return known backups, newest first."""
        backups: list[BackupInfo] = []
        if not self.backup_dir.is_dir():
            return backups
        for meta in self.backup_dir.glob("*.json"):
            try:
                info = BackupInfo.model_validate_json(meta.read_text(encoding="utf-8"))
            except (OSError, ValidationError) as exc:
                logger.warning(f"Ignoring unreadable backup metadata {meta.name}: {exc}")
                continue
            if source is None or info.source_identifier == source:
                backups.append(info)
        backups.sort(key=lambda b: (b.created_at, b.backup_id), reverse=True)
        return backups

    def get_backup(self, backup_id: str) -> BackupInfo | None:
        meta = self._meta_path(backup_id)
        if not meta.is_file():
            return None
        try:
            return BackupInfo.model_validate_json(meta.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as exc:
            raise BackupError(f"Backup metadata for {backup_id} is unreadable: {exc}") from exc

    # =========================================================================
    # Restore
    # =========================================================================

    async def restore_backup(
        self, info: BackupInfo, target: RemoteTarget, *, during_rollback: bool = False
    ) -> None:
        """Restore *info* into *target*, replacing the objects it contains.

        The restore runs as a single transaction: it either fully applies or
        leaves the target as it was.

        Raises:
            RestoreError: If the archive is missing, corrupt or the restore fails
        """
        path = Path(info.file_path)
        ctx = {"backup_id": info.backup_id, "remote": target.name or None}
        if not path.is_file():
            raise RestoreError(
                f"Backup file {path} does not exist", during_rollback=during_rollback, **ctx
            )

        data = await asyncio.to_thread(path.read_bytes)
        if hashlib.sha256(data).hexdigest() != info.checksum:
            raise RestoreError(
                f"Checksum mismatch for backup {info.backup_id}",
                during_rollback=during_rollback,
                **ctx,
            )

        logger.info(f"Restoring backup {info.backup_id} into {target.safe_url}")
        try:
            await self._resilience.call(
                target.name or target.database_name,
                lambda: self._dump.restore(data, target.connection_url, clean=True),
                operation="restore",
            )
        except DbFastError as exc:
            raise RestoreError(
                f"Restore of backup {info.backup_id} failed: {exc.message}",
                exc.details,
                during_rollback=during_rollback,
                **ctx,
            ) from exc
        logger.info(f"Backup {info.backup_id} restored")

    # =========================================================================
    # Retention
    # =========================================================================

    def _remove(self, info: BackupInfo) -> None:
        # Archive first: metadata without an archive is still listed and
        # removed by the next run
        Path(info.file_path).unlink(missing_ok=True)
        self._meta_path(info.backup_id).unlink(missing_ok=True)

    async def cleanup(
        self,
        keep_count: int | None = None,
        max_age: timedelta | None = None,
        *,
        protect: set[str] | frozenset[str] = frozenset(),
    ) -> int:
        """Delete backups beyond *keep_count* per source or older than *max_age*.

        With neither argument the configured retention applies. Safe to re-run
        after an interrupted cleanup.

        Returns:
            Number of backups removed
        """
        if keep_count is None and max_age is None:
            keep_count = self.config.keep_count
            if self.config.max_age_days is not None:
                max_age = timedelta(days=self.config.max_age_days)
        if keep_count is None and max_age is None:
            return 0

        by_source: dict[str, list[BackupInfo]] = defaultdict(list)
        for info in self.list_backups():
            by_source[info.source_identifier].append(info)

        now = utcnow()
        doomed: list[BackupInfo] = []
        for backups in by_source.values():
            for position, info in enumerate(backups):
                if info.backup_id in protect:
                    continue
                too_many = keep_count is not None and position >= keep_count
                too_old = max_age is not None and now - info.created_at > max_age
                if too_many or too_old:
                    doomed.append(info)

        for info in doomed:
            logger.debug(f"Removing backup {info.backup_id}")
            await asyncio.to_thread(self._remove, info)
        return len(doomed)
