"""Configuration models.

The YAML configuration file has a top-level ``config:`` key whose content is
validated into :class:`ConfigData`. Environments and remotes are keyed by
name; the key is copied into each entry's ``name`` field.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal, Self
from urllib.parse import quote_plus, urlsplit

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator

from src.dbfast.resilience import CircuitBreakerConfig, RetryPolicy


class DatabaseConfig(BaseModel):
    """Local PostgreSQL server that hosts templates and clones."""

    host: str = "localhost"
    port: int = 5432
    user: str = "postgres"
    password: str | None = None
    maintenance_db: str = "postgres"
    template_name: str = "dbfast_template"
    sslmode: Literal["disable", "allow", "prefer", "require"] = "prefer"
    connect_timeout: int = 5
    pool_min: int = Field(default=1, ge=0)
    pool_max: int = Field(default=10, ge=1)

    def url_for(self, database: str) -> str:
        """Build a libpq URL for *database* on this server."""
        auth = quote_plus(self.user)
        if self.password:
            auth = f"{auth}:{quote_plus(self.password)}"
        return (
            f"postgresql://{auth}@{self.host}:{self.port}/{database}"
            f"?sslmode={self.sslmode}&connect_timeout={self.connect_timeout}"
        )


class RepositoryConfig(BaseModel):
    """Location of the SQL file tree."""

    path: Path = Path("db")
    metadata_dir: str = ".dbfast"

    @property
    def metadata_path(self) -> Path:
        return self.path / self.metadata_dir


class EnvironmentConfig(BaseModel):
    """File-inclusion policy for one named environment.

    Unset fields mean "no restriction".
    """

    model_config = ConfigDict(frozen=True)

    name: str = ""
    include_directories: tuple[str, ...] | None = None
    exclude_directories: tuple[str, ...] | None = None
    include_files: tuple[str, ...] | None = None
    exclude_files: tuple[str, ...] | None = None


class RemoteTarget(BaseModel):
    """A remote PostgreSQL database that receives deployments."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: str = ""
    connection_url: str = Field(
        validation_alias=AliasChoices("connection_url", "url"),
    )
    environment_name: str = Field(
        validation_alias=AliasChoices("environment_name", "environment", "env"),
    )
    allow_destructive: bool = False
    backup_before_deploy: bool = True
    require_confirmation: bool = False

    @property
    def database_name(self) -> str:
        path = urlsplit(self.connection_url).path.lstrip("/")
        return path or "postgres"

    @property
    def safe_url(self) -> str:
        """Connection URL with the password masked, for logs."""
        parts = urlsplit(self.connection_url)
        if parts.password:
            netloc = parts.netloc.replace(f":{parts.password}@", ":***@")
            return parts._replace(netloc=netloc).geturl()
        return self.connection_url


class BackupConfig(BaseModel):
    """Backup storage, retention and pg_dump/pg_restore time limit."""

    directory: Path = Path("backups")
    keep_count: int | None = Field(default=10, ge=0)
    max_age_days: float | None = Field(default=None, gt=0)
    tool_timeout: float | None = Field(default=3600.0, gt=0)


class ConfigData(BaseModel):
    """Root configuration object."""

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    repository: RepositoryConfig = Field(default_factory=RepositoryConfig)
    environments: dict[str, EnvironmentConfig] = Field(default_factory=dict)
    remotes: dict[str, RemoteTarget] = Field(default_factory=dict)
    backups: BackupConfig = Field(default_factory=BackupConfig)
    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)

    @model_validator(mode="after")
    def _apply_names(self) -> Self:
        self.environments = {
            key: env if env.name == key else env.model_copy(update={"name": key})
            for key, env in self.environments.items()
        }
        self.remotes = {
            key: remote
            if remote.name == key
            else remote.model_copy(update={"name": key})
            for key, remote in self.remotes.items()
        }
        return self

    @classmethod
    def default(cls, repo_path: str = "./db", template_name: str = "dbfast_template") -> ConfigData:
        """Sensible starting configuration with ``local`` and ``production``."""
        return cls(
            database=DatabaseConfig(template_name=template_name),
            repository=RepositoryConfig(path=Path(repo_path)),
            environments={
                "local": EnvironmentConfig(
                    include_directories=("0_schema", "1_seed_common", "2_seed_backend"),
                ),
                "production": EnvironmentConfig(
                    include_directories=("0_schema", "6_migration"),
                    exclude_directories=("1_seed_common", "2_seed_backend"),
                ),
            },
        )
