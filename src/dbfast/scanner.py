"""SQL repository scanning and fingerprinting.

File content is hashed with 64-bit BLAKE2b. The repository fingerprint
combines every file's relative path and content hash in lexicographic path
order, so it only depends on what is on disk and never on directory
iteration order.
"""

from __future__ import annotations

import hashlib
import os
from collections.abc import Iterable
from pathlib import Path

from loguru import logger

from src.dbfast.errors import RepositoryIOError
from src.dbfast.models import FileEntry

SQL_SUFFIX = ".sql"
_CHUNK_SIZE = 65536


def _hash_file(path: Path) -> tuple[str, int]:
    digest = hashlib.blake2b(digest_size=8)
    size = 0
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(_CHUNK_SIZE), b""):
            digest.update(chunk)
            size += len(chunk)
    return digest.hexdigest(), size


def scan(root: Path | str) -> list[FileEntry]:
    """Discover every ``.sql`` file below *root*.

    Hidden directories (including the ``.dbfast`` metadata directory) are
    skipped and symlinked directories are not followed.

    Returns:
        FileEntry list sorted by relative path

    Raises:
        RepositoryIOError: If *root* or any SQL file cannot be read
    """
    root = Path(root)
    if not root.is_dir():
        raise RepositoryIOError(f"Repository path is not a readable directory: {root}", root)

    walk_errors: list[OSError] = []
    entries: list[FileEntry] = []

    for dirpath, dirnames, filenames in os.walk(root, onerror=walk_errors.append):
        dirnames[:] = [d for d in dirnames if not d.startswith(".")]
        for filename in filenames:
            if not filename.lower().endswith(SQL_SUFFIX):
                continue
            absolute = Path(dirpath) / filename
            try:
                content_hash, size = _hash_file(absolute)
            except OSError as exc:
                raise RepositoryIOError(f"Cannot read SQL file: {exc}", absolute) from exc
            entries.append(
                FileEntry(
                    relative_path=absolute.relative_to(root).as_posix(),
                    absolute_path=absolute.resolve(),
                    content_fingerprint=content_hash,
                    size=size,
                )
            )

    if walk_errors:
        first = walk_errors[0]
        raise RepositoryIOError(f"Cannot read repository: {first}", first.filename or root)

    entries.sort(key=lambda e: e.relative_path)
    logger.debug(f"Scanned {len(entries)} SQL file(s) under {root}")
    return entries


def fingerprint(files: Iterable[FileEntry]) -> str:
    """Combine file paths and content hashes into one 64-bit fingerprint.

    Entries are hashed in relative-path order. Each field is length-prefixed
    so that no two different (path, content) sets share a byte stream.
    """
    digest = hashlib.blake2b(digest_size=8)
    for entry in sorted(files, key=lambda e: e.relative_path):
        path_bytes = entry.relative_path.encode("utf-8")
        digest.update(len(path_bytes).to_bytes(4, "big"))
        digest.update(path_bytes)
        digest.update(bytes.fromhex(entry.content_fingerprint))
    return digest.hexdigest()


def read_sql(entry: FileEntry) -> str:
    """Read a scanned file's text."""
    try:
        return entry.absolute_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise RepositoryIOError(f"Cannot read SQL file: {exc}", entry.absolute_path) from exc
    except UnicodeDecodeError as exc:
        raise RepositoryIOError(
            f"SQL file is not valid UTF-8: {exc}", entry.absolute_path
        ) from exc
