"""Error hierarchy for template, clone, backup and deployment operations.

Every error carries a human-readable ``message``, optional ``details`` (shown
in a panel by the CLI) and a ``context`` dict with the structured fields a
caller needs to act on the failure (file path, statement index, remote name,
backup id, ...).

Errors flagged ``transient`` are eligible for retry by the resilience layer.
Everything else, and in particular every policy violation, propagates
unchanged.
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from src.dbfast.models import DeploymentResult


class DbFastError(Exception):
    """Base class for all dbfast errors."""

    transient: bool = False

    def __init__(
        self,
        message: str,
        details: str | None = None,
        **context: Any,
    ) -> None:
        self.message = message
        self.details = details
        self.context = {k: v for k, v in context.items() if v is not None}
        super().__init__(message)

    def __str__(self) -> str:
        if not self.context:
            return self.message
        ctx = ", ".join(f"{k}={v}" for k, v in self.context.items())
        return f"{self.message} ({ctx})"


class ConfigurationError(DbFastError):
    """Raised when configuration is missing, unknown or inconsistent."""


class RepositoryIOError(DbFastError):
    """Raised when the SQL repository (or one of its files) cannot be read."""

    def __init__(self, message: str, path: Path | str | None = None) -> None:
        super().__init__(message, path=str(path) if path is not None else None)
        self.path = path


class MalformedSqlError(DbFastError):
    """Raised when a SQL file cannot be split into statements."""

    def __init__(
        self,
        message: str,
        *,
        offset: int,
        statement_index: int,
        source: Path | str | None = None,
    ) -> None:
        super().__init__(
            message,
            source=str(source) if source is not None else None,
            offset=offset,
            statement_index=statement_index,
        )
        self.offset = offset
        self.statement_index = statement_index
        self.source = source


class InvalidIdentifierError(DbFastError):
    """Raised when a database name is not safe to interpolate into SQL."""

    def __init__(self, name: str, reason: str) -> None:
        super().__init__(f"Invalid database name '{name}': {reason}", name=name)
        self.name = name
        self.reason = reason


class NameConflictError(DbFastError):
    """Raised when a clone target already exists or is being created."""

    def __init__(self, name: str, reason: str = "already exists") -> None:
        super().__init__(f"Database '{name}' {reason}", name=name)
        self.name = name


class TemplateBuildError(DbFastError):
    """Raised when a template rebuild fails mid-way."""

    def __init__(
        self,
        message: str,
        *,
        template_name: str,
        file: str | None = None,
        statement_index: int | None = None,
        details: str | None = None,
    ) -> None:
        super().__init__(
            message,
            details,
            template_name=template_name,
            file=file,
            statement_index=statement_index,
        )
        self.template_name = template_name
        self.file = file
        self.statement_index = statement_index


class ValidationFailedError(DbFastError):
    """Raised when introspection does not find the expected objects."""

    def __init__(
        self, message: str, missing: list[str] | None = None, **context: Any
    ) -> None:
        self.missing = sorted(missing or [])
        super().__init__(
            message,
            ", ".join(self.missing) if self.missing else None,
            **context,
        )


class BackupError(DbFastError):
    """Raised when a backup cannot be produced or persisted."""


class RestoreError(DbFastError):
    """Raised when a backup cannot be restored.

    ``during_rollback`` is set when the restore was an automatic rollback of a
    failed deployment; the remote then needs manual intervention.
    """

    def __init__(
        self,
        message: str,
        details: str | None = None,
        *,
        during_rollback: bool = False,
        **context: Any,
    ) -> None:
        super().__init__(message, details, **context)
        self.during_rollback = during_rollback


class ConfirmationRequiredError(DbFastError):
    """Raised when a remote requires explicit confirmation that was not given."""


class DestructiveOperationBlockedError(DbFastError):
    """Raised when an environment's SQL contains statements the remote forbids."""

    def __init__(self, remote_name: str, statements: list[str]) -> None:
        preview = "\n".join(s[:120] for s in statements[:5])
        super().__init__(
            f"Remote '{remote_name}' does not allow destructive operations "
            f"({len(statements)} blocked statement(s))",
            preview,
            remote=remote_name,
        )
        self.statements = statements


class DeploymentInProgressError(DbFastError):
    """Raised when a deployment to the same remote is already running."""

    def __init__(self, remote_name: str) -> None:
        super().__init__(
            f"A deployment to remote '{remote_name}' is already in progress",
            remote=remote_name,
        )


class CircuitOpenError(DbFastError):
    """Raised when a call is rejected because its circuit is open."""

    def __init__(self, name: str, retry_in: float) -> None:
        super().__init__(
            f"Circuit '{name}' is open; retry in {retry_in:.1f}s",
            circuit=name,
        )
        self.retry_in = retry_in


class DatabaseConnectionError(DbFastError):
    """Raised on pool, network or server availability failures."""

    transient = True


class OperationTimeoutError(DbFastError):
    """Raised when an engine call exceeds its time budget."""

    transient = True


class QueryError(DbFastError):
    """Raised when the engine rejects a statement."""

    def __init__(
        self,
        message: str,
        sqlstate: str | None = None,
        statement: str | None = None,
    ) -> None:
        super().__init__(message, statement, sqlstate=sqlstate)
        self.sqlstate = sqlstate
        self.statement = statement


class DeploymentFailedError(DbFastError):
    """Raised when a deployment fails after pre-flight; carries the result."""

    def __init__(self, result: DeploymentResult, cause: BaseException) -> None:
        super().__init__(
            f"Deployment to '{result.remote_name}' failed: {cause}",
            remote=result.remote_name,
            environment=result.environment_name,
            backup_id=result.backup_id,
            remote_state=result.remote_state,
        )
        self.result = result


def is_transient(exc: BaseException) -> bool:
    """Return True when *exc* may succeed if the operation is retried."""
    if isinstance(exc, DbFastError):
        return exc.transient
    return isinstance(exc, TimeoutError)
