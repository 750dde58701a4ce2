"""Database name validation.

Names reach ``CREATE DATABASE``, ``ALTER DATABASE`` and ``DROP DATABASE``
statements, which cannot take bind parameters, so every name is checked
before any SQL is built from it.
"""

from __future__ import annotations

import re

from src.dbfast.errors import InvalidIdentifierError

MIN_LENGTH = 2
# PostgreSQL truncates identifiers to NAMEDATALEN - 1 bytes
MAX_LENGTH = 63

_VALID_NAME = re.compile(r"[a-z_][a-z0-9_]*")
_DANGEROUS_CHARS = frozenset(";'\"\\/*-`$(){}[]<>|&!@#%^+=~?,.: \t\r\n\x00")

RESERVED_PREFIXES = ("pg_", "template")

RESERVED_WORDS = frozenset(
    {
        # SQL keywords
        "select", "insert", "update", "delete", "create", "drop", "alter",
        "table", "database", "index", "view", "trigger", "function",
        "procedure", "schema", "user", "group", "role", "grant", "revoke",
        "commit", "rollback", "transaction", "begin", "end", "if", "else",
        "while", "for", "loop", "return", "declare", "set", "with", "as",
        "from", "where", "order", "having", "union", "join", "inner", "outer",
        "left", "right", "full", "on", "and", "or", "not", "null", "true",
        "false", "exists", "in", "like", "between", "case", "when", "then",
        "distinct", "all", "any", "some",
        # System databases and schemas
        "postgresql", "postgres", "pg_catalog", "information_schema",
        "public", "template0", "template1",
        # Administrative names
        "admin", "root", "superuser", "replication", "backup", "restore",
    }
)  # fmt: skip


def validate_identifier(name: str) -> str:
    """Return *name* unchanged if it is a safe database name.

    Raises:
        InvalidIdentifierError: With the first rule the name breaks
    """
    if not isinstance(name, str) or not name:
        raise InvalidIdentifierError(str(name), "name is empty")
    if len(name) < MIN_LENGTH:
        raise InvalidIdentifierError(name, f"must be at least {MIN_LENGTH} characters")
    if len(name.encode("utf-8")) > MAX_LENGTH:
        raise InvalidIdentifierError(name, f"must be at most {MAX_LENGTH} bytes")

    bad = sorted({c for c in name if c in _DANGEROUS_CHARS})
    if bad:
        raise InvalidIdentifierError(name, f"contains forbidden characters {bad!r}")
    if name != name.lower():
        raise InvalidIdentifierError(name, "must be lowercase")
    if not _VALID_NAME.fullmatch(name):
        raise InvalidIdentifierError(
            name,
            "must start with a letter or underscore and contain only "
            "lowercase letters, digits and underscores",
        )
    if "__" in name:
        raise InvalidIdentifierError(name, "must not contain consecutive underscores")
    if name in RESERVED_WORDS:
        raise InvalidIdentifierError(name, "is a reserved word")
    for prefix in RESERVED_PREFIXES:
        if name.startswith(prefix):
            raise InvalidIdentifierError(name, f"must not start with '{prefix}'")
    return name


def is_valid_identifier(name: str) -> bool:
    try:
        validate_identifier(name)
    except InvalidIdentifierError:
        return False
    return True
