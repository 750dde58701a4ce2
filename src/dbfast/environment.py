"""Environment-scoped file filtering.

An environment selects a subset of the repository's SQL files. The four
optional lists of an :class:`EnvironmentConfig` apply in a fixed order:

1. ``include_directories``: keep only files under one of these directories
2. ``exclude_directories``: drop files under one of these directories
3. ``include_files``: bring back files dropped in step 2, provided they
   passed step 1
4. ``exclude_files``: drop matching files, whatever happened before

Directory entries match whole path components anywhere in the relative path
(``seed`` matches ``a/seed/x.sql`` but not ``a/seeds/x.sql``). File patterns
are globs: ``*`` and ``?`` never cross ``/``, ``**`` spans any number of
directories, ``[...]`` is a character class. Patterns without a ``/`` are
matched against the file name only.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from loguru import logger

from src.dbfast.config.config_data import EnvironmentConfig
from src.dbfast.errors import ConfigurationError
from src.dbfast.models import FileEntry, FilteredFileSet


@dataclass
class EnvironmentValidation:
    """Problems found in an environment configuration."""

    environment_name: str
    missing_directories: list[str] = field(default_factory=list)
    invalid_patterns: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.missing_directories and not self.invalid_patterns


def _translate_glob(pattern: str) -> str:
    """Translate one glob pattern into a regex body (no anchors)."""
    if not pattern:
        raise ValueError("empty pattern")

    out: list[str] = []
    i = 0
    n = len(pattern)
    while i < n:
        ch = pattern[i]
        if ch == "*":
            if pattern.startswith("**", i):
                at_start = i == 0 or pattern[i - 1] == "/"
                i += 2
                if at_start and i < n and pattern[i] == "/":
                    out.append("(?:.*/)?")
                    i += 1
                else:
                    out.append(".*")
                continue
            out.append("[^/]*")
        elif ch == "?":
            out.append("[^/]")
        elif ch == "[":
            close = pattern.find("]", i + 2 if pattern[i + 1 : i + 2] in ("!", "]") else i + 1)
            if close == -1:
                raise ValueError(f"unterminated character class in {pattern!r}")
            body = pattern[i + 1 : close]
            if body.startswith("!"):
                body = "^" + body[1:]
            body = body.replace("\\", "\\\\")
            out.append(f"[{body}]")
            i = close
        else:
            out.append(re.escape(ch))
        i += 1
    return "".join(out)


@dataclass(frozen=True)
class _CompiledPatterns:
    """Name and path patterns of one list, each folded into a single regex."""

    by_name: re.Pattern[str] | None
    by_path: re.Pattern[str] | None

    def matches(self, entry: FileEntry) -> bool:
        if self.by_name is not None and self.by_name.fullmatch(entry.name):
            return True
        return self.by_path is not None and bool(self.by_path.fullmatch(entry.relative_path))


def compile_patterns(patterns: Iterable[str]) -> _CompiledPatterns:
    """Compile a list of globs.

    Raises:
        ConfigurationError: If any pattern is invalid
    """
    name_parts: list[str] = []
    path_parts: list[str] = []
    for pattern in patterns:
        try:
            body = _translate_glob(pattern.strip().lstrip("/") if "/" in pattern else pattern)
            re.compile(body)
        except (ValueError, re.error) as exc:
            raise ConfigurationError(f"Invalid file pattern '{pattern}': {exc}") from exc
        (path_parts if "/" in pattern else name_parts).append(body)

    def _join(parts: list[str]) -> re.Pattern[str] | None:
        return re.compile("|".join(f"(?:{p})" for p in parts)) if parts else None

    return _CompiledPatterns(by_name=_join(name_parts), by_path=_join(path_parts))


def _split_dirs(directories: Iterable[str]) -> list[tuple[str, ...]]:
    return [tuple(p for p in d.strip("/").split("/") if p) for d in directories if d.strip("/")]


def _under_any(entry: FileEntry, directories: Sequence[tuple[str, ...]]) -> bool:
    components = entry.directories
    for wanted in directories:
        width = len(wanted)
        for start in range(len(components) - width + 1):
            if components[start : start + width] == wanted:
                return True
    return False


def filter_files(files: Iterable[FileEntry], config: EnvironmentConfig) -> FilteredFileSet:
    """Select the files *config* should receive, preserving input order.

    Raises:
        ConfigurationError: If a file pattern cannot be compiled
    """
    include_dirs = _split_dirs(config.include_directories) if config.include_directories else None
    exclude_dirs = _split_dirs(config.exclude_directories or ())
    include_files = compile_patterns(config.include_files) if config.include_files else None
    exclude_files = compile_patterns(config.exclude_files) if config.exclude_files else None

    selected: list[FileEntry] = []
    for entry in files:
        if include_dirs is not None and not _under_any(entry, include_dirs):
            continue
        keep = not _under_any(entry, exclude_dirs)
        if not keep and include_files is not None and include_files.matches(entry):
            keep = True
        if keep and exclude_files is not None and exclude_files.matches(entry):
            keep = False
        if keep:
            selected.append(entry)

    logger.debug(f"Environment '{config.name}' selected {len(selected)} file(s)")
    return FilteredFileSet(environment_name=config.name, files=tuple(selected))


def validate_environment(config: EnvironmentConfig, base_path: Path) -> EnvironmentValidation:
    """Check that configured directories exist and patterns compile."""
    result = EnvironmentValidation(environment_name=config.name)

    for directory in (*(config.include_directories or ()), *(config.exclude_directories or ())):
        name = directory.strip("/")
        if not name:
            result.missing_directories.append(directory)
            continue
        if (base_path / name).is_dir():
            continue
        if not any(p.is_dir() for p in base_path.rglob(name)):
            result.missing_directories.append(directory)

    for pattern in (*(config.include_files or ()), *(config.exclude_files or ())):
        try:
            compile_patterns([pattern])
        except ConfigurationError:
            result.invalid_patterns.append(pattern)

    return result
