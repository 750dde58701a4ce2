"""Data types shared by the scanner, template, clone, backup and deploy layers.

Snapshots produced during a single run are plain dataclasses; records that
are persisted between runs (templates and backups) are pydantic models so
they can be serialised to and from their JSON sidecar files.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(UTC)


# =============================================================================
# Repository
# =============================================================================


@dataclass(frozen=True)
class FileEntry:
    """Immutable snapshot of one SQL file at scan time."""

    relative_path: str
    absolute_path: Path
    content_fingerprint: str
    size: int

    @property
    def directories(self) -> tuple[str, ...]:
        """Directory components of the relative path (file name excluded)."""
        return tuple(self.relative_path.split("/")[:-1])

    @property
    def name(self) -> str:
        return self.relative_path.rsplit("/", 1)[-1]


@dataclass(frozen=True)
class FilteredFileSet:
    """Ordered files selected for one environment."""

    environment_name: str
    files: tuple[FileEntry, ...] = ()

    def __iter__(self):
        return iter(self.files)

    def __len__(self) -> int:
        return len(self.files)

    @property
    def paths(self) -> list[str]:
        return [f.relative_path for f in self.files]

    @property
    def fingerprint(self) -> str:
        from src.dbfast.scanner import fingerprint

        return fingerprint(self.files)


# =============================================================================
# Templates
# =============================================================================


class TemplateState(Enum):
    """Lifecycle state of a template. ``STALE`` is computed, never stored."""

    ABSENT = "absent"
    BUILDING = "building"
    READY = "ready"
    STALE = "stale"


class TemplateRecord(BaseModel):
    """Persisted metadata describing the live template database."""

    template_name: str
    database_name: str
    source_fingerprint: str
    environment_name: str
    built_at: datetime = Field(default_factory=utcnow)
    file_count: int = 0
    tables: list[str] = Field(default_factory=list)


@dataclass
class ValidationResult:
    """Outcome of introspecting a template or remote database."""

    tables_exist: bool
    expected_tables_missing: list[str] = field(default_factory=list)
    tables_found: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.tables_exist and not self.expected_tables_missing


# =============================================================================
# Clones
# =============================================================================


@dataclass(frozen=True)
class CloneRequest:
    template_name: str
    target_name: str
    requested_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class CloneResult:
    template_name: str
    target_name: str
    requested_at: datetime
    completed_at: datetime
    success: bool

    @property
    def duration_ms(self) -> float:
        return (self.completed_at - self.requested_at).total_seconds() * 1000


# =============================================================================
# Backups
# =============================================================================


class BackupInfo(BaseModel):
    """Metadata stored next to a dump file in the backup directory."""

    backup_id: str
    source_identifier: str
    file_path: Path
    size_bytes: int
    checksum: str
    created_at: datetime = Field(default_factory=utcnow)


# =============================================================================
# Deployments
# =============================================================================


class DeploymentState(Enum):
    """States of a single deployment attempt."""

    VALIDATING = "validating"
    BACKUP_PENDING = "backup_pending"
    BACKUP_DONE = "backup_done"
    DEPLOYING = "deploying"
    VERIFYING = "verifying"
    SUCCEEDED = "succeeded"
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (
            DeploymentState.SUCCEEDED,
            DeploymentState.ROLLED_BACK,
            DeploymentState.FAILED,
        )


class RemoteState(Enum):
    """What is known about the remote after a deployment attempt."""

    UNTOUCHED = "untouched"
    UPDATED = "updated"
    RESTORED = "restored"
    UNVERIFIED = "unverified"


@dataclass
class DeploymentResult:
    """Audit record of one deployment attempt."""

    remote_name: str
    environment_name: str
    backup_created: bool = False
    success: bool = False
    validation_passed: bool = False
    duration: float = 0.0
    rollback_performed: bool = False
    backup_id: str | None = None
    remote_state: RemoteState = RemoteState.UNTOUCHED
    dry_run: bool = False
    states: list[DeploymentState] = field(default_factory=list)
    error: str | None = None
