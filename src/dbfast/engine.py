"""High-level API tying the components together.

:class:`DbFast` is what the CLI (and any embedding application) talks to.
It owns nothing global: the connection pool, dump tool, inspector and
metrics sink are built from the configuration or injected.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

from loguru import logger

from src.dbfast import environment, scanner
from src.dbfast.backup import BackupManager
from src.dbfast.clone import CloneManager
from src.dbfast.config.config_data import ConfigData, EnvironmentConfig, RemoteTarget
from src.dbfast.deploy import DeploymentOrchestrator
from src.dbfast.errors import ConfigurationError
from src.dbfast.metadata import TemplateMetadataStore
from src.dbfast.metrics import MetricsSink, NullMetrics
from src.dbfast.models import (
    BackupInfo,
    CloneResult,
    DeploymentResult,
    FileEntry,
    FilteredFileSet,
    TemplateRecord,
)
from src.dbfast.resilience import Resilience
from src.dbfast.template import TemplateManager, template_name_for
from src.infra.postgres.connection import PostgresPool
from src.infra.postgres.dump import PgDumpTool
from src.infra.postgres.inspector import RemoteInspector


class DbFast:
    """Facade over scanning, filtering, templates, clones, backups and deploys."""

    def __init__(
        self,
        config: ConfigData,
        *,
        pool: Any | None = None,
        dump_tool: PgDumpTool | None = None,
        inspector: RemoteInspector | None = None,
        metrics: MetricsSink | None = None,
        resilience: Resilience | None = None,
    ) -> None:
        self.config = config
        self.pool = pool if pool is not None else PostgresPool(config.database)
        self.metrics = metrics or NullMetrics()
        self.resilience = resilience or Resilience(config.retry, config.circuit_breaker)
        dump_tool = dump_tool or PgDumpTool(timeout=config.backups.tool_timeout)
        inspector = inspector or RemoteInspector()

        self.templates = TemplateManager(
            self.pool, TemplateMetadataStore(config.repository.metadata_path / "templates")
        )
        self.clones = CloneManager(self.pool, self.resilience, self.metrics)
        self.backups = BackupManager(config.backups, dump_tool, self.resilience)
        self.orchestrator = DeploymentOrchestrator(
            config,
            self.templates,
            self.backups,
            dump_tool,
            inspector,
            self.resilience,
            self.metrics,
        )
        self.inspector = inspector

    async def close(self) -> None:
        await self.pool.close()

    async def __aenter__(self) -> DbFast:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    # =========================================================================
    # Lookup
    # =========================================================================

    def environment(self, name: str) -> EnvironmentConfig:
        env = self.config.environments.get(name)
        if env is None:
            known = ", ".join(sorted(self.config.environments)) or "none"
            raise ConfigurationError(
                f"Unknown environment '{name}'", f"Configured environments: {known}"
            )
        return env

    def remote(self, name: str) -> RemoteTarget:
        remote = self.config.remotes.get(name)
        if remote is None:
            known = ", ".join(sorted(self.config.remotes)) or "none"
            raise ConfigurationError(f"Unknown remote '{name}'", f"Configured remotes: {known}")
        return remote

    def template_name_for(self, environment_name: str) -> str:
        return template_name_for(self.config.database.template_name, environment_name)

    # =========================================================================
    # Core operations
    # =========================================================================

    async def scan_and_fingerprint(
        self, root: Path | None = None
    ) -> tuple[list[FileEntry], str]:
        files = await asyncio.to_thread(scanner.scan, root or self.config.repository.path)
        return files, scanner.fingerprint(files)

    def filter(self, files: list[FileEntry], environment_name: str) -> FilteredFileSet:
        return environment.filter_files(files, self.environment(environment_name))

    def needs_rebuild(self, template_name: str, fingerprint: str) -> bool:
        return self.templates.needs_rebuild(template_name, fingerprint)

    async def rebuild(
        self,
        template_name: str,
        files: FilteredFileSet | list[FileEntry],
        environment_name: str | None = None,
    ) -> TemplateRecord:
        return await self.templates.rebuild(
            template_name, files, environment_name=environment_name
        )

    async def clone(self, template_name: str, target_name: str) -> CloneResult:
        return await self.clones.clone(template_name, target_name)

    async def create_backup(self, remote: RemoteTarget | str) -> BackupInfo:
        if isinstance(remote, str):
            remote = self.remote(remote)
        return await self.backups.create_backup(remote)

    async def restore_backup(self, info: BackupInfo, remote: RemoteTarget | str) -> None:
        if isinstance(remote, str):
            remote = self.remote(remote)
        await self.backups.restore_backup(info, remote)

    async def deploy(
        self,
        remote_name: str,
        environment_name: str | None = None,
        confirmed: bool = False,
        *,
        skip_backup: bool = False,
        dry_run: bool = False,
    ) -> DeploymentResult:
        return await self.orchestrator.deploy(
            remote_name,
            environment_name,
            confirmed=confirmed,
            skip_backup=skip_backup,
            dry_run=dry_run,
        )

    # =========================================================================
    # Workflows
    # =========================================================================

    async def prepare(self, environment_name: str) -> TemplateRecord:
        """Scan, filter and make sure the environment's template is current."""
        files, _ = await self.scan_and_fingerprint()
        selected = self.filter(files, environment_name)
        return await self.templates.ensure(
            self.template_name_for(environment_name), selected, environment_name
        )

    async def seed(self, environment_name: str, target_name: str) -> CloneResult:
        """Create *target_name* holding *environment_name*'s current state."""
        record = await self.prepare(environment_name)
        result = await self.clone(record.template_name, target_name)
        logger.info(f"Seeded {target_name} from {record.template_name}")
        return result
