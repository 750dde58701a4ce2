"""Deny-list for destructive SQL in an environment's files.

A remote that does not allow destructive operations only receives
environments whose SQL is additive. Every statement of the selected files is
parsed with sqlglot and classified by its node type, so casing, whitespace
and comments cannot hide an operation. Statements sqlglot only understands as
an opaque command are classified from their keyword tokens.
"""

from __future__ import annotations

import enum
from collections.abc import Iterable
from dataclasses import dataclass

import sqlglot
from loguru import logger
from sqlglot import exp
from sqlglot.errors import SqlglotError, TokenError

from src.dbfast import scanner, sql_splitter
from src.dbfast.models import FileEntry

DIALECT = "postgres"

# Keywords after ALTER ... DROP that remove a property, not an object
_HARMLESS_DROP_TARGETS = frozenset({"DEFAULT", "NOT", "EXPRESSION", "IDENTITY"})


class DangerousOperation(str, enum.Enum):
    """Operations the guard detects."""

    DROP = "DROP"
    TRUNCATE = "TRUNCATE"
    DELETE_WITHOUT_WHERE = "DELETE_WITHOUT_WHERE"
    ALTER_DROP = "ALTER_DROP"
    UNPARSEABLE = "UNPARSEABLE"


@dataclass(frozen=True)
class GuardViolation:
    operation: DangerousOperation
    statement_index: int
    statement: str
    source: str | None = None

    def describe(self) -> str:
        location = f"{self.source} " if self.source else ""
        return f"{location}#{self.statement_index} {self.operation.value}: {self.statement}"


def _classify_node(node: exp.Expression) -> DangerousOperation | None:
    """Check *node* and everything nested in it, outermost first."""
    for descendant in node.walk():
        # Older sqlglot releases yield (node, parent, key) tuples
        if isinstance(descendant, tuple):
            descendant = descendant[0]

        if isinstance(descendant, exp.Alter):
            actions = descendant.args.get("actions") or []
            if any(isinstance(action, exp.Drop) for action in actions):
                return DangerousOperation.ALTER_DROP
            if any(isinstance(action, exp.Command) for action in actions):
                # Actions sqlglot keeps as raw text
                return _classify_tokens(descendant.sql(dialect=DIALECT))
        elif isinstance(descendant, exp.Drop):
            return DangerousOperation.DROP
        elif isinstance(descendant, exp.TruncateTable):
            return DangerousOperation.TRUNCATE
        elif isinstance(descendant, exp.Delete) and descendant.args.get("where") is None:
            return DangerousOperation.DELETE_WITHOUT_WHERE
        elif isinstance(descendant, exp.Command):
            operation = _classify_tokens(descendant.sql(dialect=DIALECT))
            if operation is not None:
                return operation
    return None


def _classify_tokens(statement: str) -> DangerousOperation | None:
    try:
        words = [token.text.upper() for token in sqlglot.tokenize(statement, read=DIALECT)]
    except TokenError as exc:
        logger.warning(f"Cannot tokenize statement for the destructive check: {exc}")
        return DangerousOperation.UNPARSEABLE
    if not words:
        return None

    match words[0]:
        case "DROP":
            return DangerousOperation.DROP
        case "TRUNCATE":
            return DangerousOperation.TRUNCATE
        case "DELETE" if "WHERE" not in words:
            return DangerousOperation.DELETE_WITHOUT_WHERE
        case "ALTER":
            for word, following in zip(words, words[1:]):
                if word == "DROP" and following not in _HARMLESS_DROP_TARGETS:
                    return DangerousOperation.ALTER_DROP
    return None


def classify(statement: str) -> DangerousOperation | None:
    """Return the dangerous operation *statement* performs, if any."""
    try:
        node = sqlglot.parse_one(statement, read=DIALECT)
    except SqlglotError as exc:
        logger.debug(f"Classifying unparsed statement by keywords: {exc}")
        return _classify_tokens(statement)
    if isinstance(node, exp.Command):
        return _classify_tokens(statement)
    return _classify_node(node)


def scan_sql(text: str, source: str | None = None) -> list[GuardViolation]:
    """Return every destructive statement in *text*, in order.

    Raises:
        MalformedSqlError: If the text cannot be split
    """
    violations: list[GuardViolation] = []
    for index, statement in enumerate(sql_splitter.split(text, source)):
        operation = classify(statement)
        if operation is not None:
            violations.append(
                GuardViolation(
                    operation=operation,
                    statement_index=index,
                    statement=statement,
                    source=source,
                )
            )
    return violations


def scan_files(files: Iterable[FileEntry]) -> list[GuardViolation]:
    """Scan each file in order. Blocking; run it in a worker thread."""
    violations: list[GuardViolation] = []
    for entry in files:
        violations.extend(scan_sql(scanner.read_sql(entry), entry.relative_path))
    return violations
