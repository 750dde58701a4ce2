"""Template record persistence.

One JSON file per template under ``<repository>/.dbfast/templates``. Files are
written to a temporary sibling and renamed into place, so a reader sees either
the previous record or the new one.
"""

from __future__ import annotations

import asyncio
import os
from pathlib import Path

from loguru import logger
from pydantic import ValidationError

from src.dbfast.errors import RepositoryIOError
from src.dbfast.models import TemplateRecord


def write_atomic(path: Path, content: str) -> None:
    """Write *content* to *path* through a temporary file and rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = path.with_name(f".{path.name}.{os.getpid()}.tmp")
    try:
        with open(temp_path, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        temp_path.replace(path)
    except BaseException:
        temp_path.unlink(missing_ok=True)
        raise


class TemplateMetadataStore:
    """Reads and writes :class:`TemplateRecord` sidecar files."""

    def __init__(self, directory: Path) -> None:
        self.directory = directory

    def _path(self, template_name: str) -> Path:
        return self.directory / f"{template_name}.json"

    def load_all(self) -> dict[str, TemplateRecord]:
        """Load every readable record. Corrupt files are skipped with a warning."""
        records: dict[str, TemplateRecord] = {}
        if not self.directory.is_dir():
            return records
        for path in sorted(self.directory.glob("*.json")):
            try:
                record = TemplateRecord.model_validate_json(path.read_text(encoding="utf-8"))
            except (OSError, ValidationError) as exc:
                logger.warning(f"Ignoring unreadable template record {path.name}: {exc}")
                continue
            records[record.template_name] = record
        logger.debug(f"Loaded {len(records)} template record(s) from {self.directory}")
        return records

    async def save(self, record: TemplateRecord) -> None:
        path = self._path(record.template_name)
        try:
            await asyncio.to_thread(write_atomic, path, record.model_dump_json(indent=2))
        except OSError as exc:
            raise RepositoryIOError(f"Cannot write template record: {exc}", path) from exc

    async def delete(self, template_name: str) -> None:
        path = self._path(template_name)
        try:
            await asyncio.to_thread(path.unlink, missing_ok=True)
        except OSError as exc:
            raise RepositoryIOError(f"Cannot delete template record: {exc}", path) from exc
