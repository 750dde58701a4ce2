"""Split SQL file content into executable statements.

This is not a SQL parser. It only tracks the lexical regions in which a
semicolon does not end a statement:

- dollar-quoted blocks (``$$ ... $$``, ``$body$ ... $body$``), closed only by
  the same tag; differently tagged sequences inside are literal text
- single-quoted literals (with ``''`` and, for ``E'...'``, backslash escapes)
- double-quoted identifiers
- ``--`` line comments and (nestable) ``/* */`` block comments

``DO $$ ... $$;`` and ``CREATE FUNCTION ... AS $body$ ... $body$;`` therefore
come back as single statements whatever they contain. A region left open at
the end of the text raises instead of swallowing the rest of the file.
"""

from __future__ import annotations

import re
from pathlib import Path

from src.dbfast.errors import MalformedSqlError

_DOLLAR_TAG = re.compile(r"\$([^\W\d]\w*)?\$")


def _is_ident_char(ch: str) -> bool:
    return ch.isalnum() or ch in "_$"


def _skip_quoted(text: str, start: int, quote: str, backslash_escapes: bool) -> int:
    """Return the index just past the literal opened at *start*, or -1 if unclosed."""
    i = start + 1
    n = len(text)
    while i < n:
        ch = text[i]
        if backslash_escapes and ch == "\\":
            i += 2
            continue
        if ch == quote:
            if i + 1 < n and text[i + 1] == quote:
                i += 2
                continue
            return i + 1
        i += 1
    return -1


def _skip_block_comment(text: str, start: int) -> int:
    """Return the index just past the comment opened at *start*, or -1 if unclosed."""
    depth = 0
    i = start
    n = len(text)
    while i < n:
        if text.startswith("/*", i):
            depth += 1
            i += 2
        elif text.startswith("*/", i):
            depth -= 1
            i += 2
            if depth == 0:
                return i
        else:
            i += 1
    return -1


def split(text: str, source: Path | str | None = None) -> list[str]:
    """Split *text* into trimmed statements.

    Statements consisting only of whitespace or comments are dropped.

    Args:
        text: SQL script content
        source: File the text came from, attached to errors

    Returns:
        Statements without their terminating semicolon

    Raises:
        MalformedSqlError: If a dollar quote, quoted literal, quoted identifier
            or block comment is never closed
    """
    statements: list[str] = []
    start = 0
    has_code = False
    i = 0
    n = len(text)

    def unterminated(what: str, offset: int) -> MalformedSqlError:
        return MalformedSqlError(
            f"Unterminated {what}",
            offset=offset,
            statement_index=len(statements),
            source=source,
        )

    def flush(end: int) -> None:
        stmt = text[start:end].strip()
        if stmt and has_code:
            statements.append(stmt)

    while i < n:
        ch = text[i]

        if ch == ";":
            flush(i)
            i += 1
            start = i
            has_code = False
            continue

        if ch == "-" and text.startswith("--", i):
            newline = text.find("\n", i)
            i = n if newline == -1 else newline + 1
            continue

        if ch == "/" and text.startswith("/*", i):
            end = _skip_block_comment(text, i)
            if end == -1:
                raise unterminated("block comment", i)
            i = end
            continue

        if ch.isspace():
            i += 1
            continue

        has_code = True

        if ch == "'":
            prev = text[i - 1] if i > 0 else ""
            before = text[i - 2] if i > 1 else ""
            escapes = prev in ("E", "e") and not _is_ident_char(before)
            end = _skip_quoted(text, i, "'", escapes)
            if end == -1:
                raise unterminated("string literal", i)
            i = end
            continue

        if ch == '"':
            end = _skip_quoted(text, i, '"', False)
            if end == -1:
                raise unterminated("quoted identifier", i)
            i = end
            continue

        if ch == "$" and (i == 0 or not _is_ident_char(text[i - 1])):
            match = _DOLLAR_TAG.match(text, i)
            if match:
                tag = match.group(0)
                close = text.find(tag, match.end())
                if close == -1:
                    raise unterminated(f"dollar-quoted block {tag}", i)
                i = close + len(tag)
                continue

        i += 1

    flush(n)
    return statements
