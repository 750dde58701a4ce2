"""Deployment of environment templates to remote databases.

A deployment is an explicit state machine. Each transition is one method
returning the next state, and the history is kept on the result::

    VALIDATING -> [BACKUP_PENDING -> BACKUP_DONE] -> DEPLOYING -> VERIFYING
               -> SUCCEEDED
               |  ROLLING_BACK -> ROLLED_BACK
               |  FAILED

Pre-flight problems (unknown remote, missing confirmation, unreachable
server) and backup failures are raised before the remote is touched. Once
the restore into the remote has started, a failure (or cancellation) rolls
the remote back to the pre-deployment backup when one exists; without one,
the remote is reported as unverified.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from src.dbfast import environment, scanner
from src.dbfast.backup import BackupManager
from src.dbfast.config.config_data import ConfigData, EnvironmentConfig, RemoteTarget
from src.dbfast.errors import (
    ConfigurationError,
    ConfirmationRequiredError,
    DeploymentFailedError,
    DeploymentInProgressError,
    DestructiveOperationBlockedError,
    ValidationFailedError,
)
from src.dbfast.metrics import MetricsSink, NullMetrics
from src.dbfast.models import (
    BackupInfo,
    DeploymentResult,
    DeploymentState,
    FilteredFileSet,
    RemoteState,
    TemplateRecord,
)
from src.dbfast.resilience import Resilience, RetryPolicy
from src.dbfast.sql_guard import scan_files
from src.dbfast.template import TemplateManager, template_name_for
from src.infra.postgres.dump import PgDumpTool
from src.infra.postgres.inspector import RemoteInspector

PRODUCTION = "production"


@dataclass
class _DeploymentRun:
    """Mutable context of one deployment attempt."""

    remote: RemoteTarget
    environment: EnvironmentConfig
    result: DeploymentResult
    confirmed: bool
    skip_backup: bool
    backup: BackupInfo | None = None
    expected_tables: tuple[str, ...] = ()
    remote_touched: bool = False

    @property
    def wants_backup(self) -> bool:
        return self.remote.backup_before_deploy and not self.skip_backup


class DeploymentOrchestrator:
    """Coordinates filter, template, backup, transfer and verification."""

    def __init__(
        self,
        config: ConfigData,
        templates: TemplateManager,
        backups: BackupManager,
        dump_tool: PgDumpTool,
        inspector: RemoteInspector,
        resilience: Resilience | None = None,
        metrics: MetricsSink | None = None,
    ) -> None:
        self._config = config
        self._templates = templates
        self._backups = backups
        self._dump = dump_tool
        self._inspector = inspector
        self._resilience = resilience or Resilience(RetryPolicy.network_operations())
        self._metrics = metrics or NullMetrics()
        self._in_flight: set[str] = set()

    def _resolve(
        self, remote_name: str, environment_name: str | None
    ) -> tuple[RemoteTarget, EnvironmentConfig]:
        remote = self._config.remotes.get(remote_name)
        if remote is None:
            known = ", ".join(sorted(self._config.remotes)) or "none"
            raise ConfigurationError(
                f"Unknown remote '{remote_name}'", f"Configured remotes: {known}"
            )
        env_name = environment_name or remote.environment_name
        env = self._config.environments.get(env_name)
        if env is None:
            known = ", ".join(sorted(self._config.environments)) or "none"
            raise ConfigurationError(
                f"Unknown environment '{env_name}'", f"Configured environments: {known}"
            )
        return remote, env

    async def deploy(
        self,
        remote_name: str,
        environment_name: str | None = None,
        confirmed: bool = False,
        skip_backup: bool = False,
        dry_run: bool = False,
    ) -> DeploymentResult:
        """Deploy an environment's template to a remote.

        Raises:
            ConfigurationError: Unknown remote/environment or unsafe settings
            ConfirmationRequiredError: The remote needs ``confirmed=True``
            DeploymentInProgressError: Another deployment to the remote is running
            BackupError: The pre-deployment backup failed (remote untouched)
            DestructiveOperationBlockedError: The environment's SQL has destructive
                statements the remote does not allow (remote untouched)
            DeploymentFailedError: Deployment failed; ``.result`` says whether
                the remote was restored
            RestoreError: Automatic rollback failed (``during_rollback`` set)
        """
        remote, env = self._resolve(remote_name, environment_name)
        if remote.name in self._in_flight:
            raise DeploymentInProgressError(remote.name)

        self._in_flight.add(remote.name)
        started = time.perf_counter()
        run = _DeploymentRun(
            remote=remote,
            environment=env,
            result=DeploymentResult(
                remote_name=remote.name, environment_name=env.name, dry_run=dry_run
            ),
            confirmed=confirmed,
            skip_backup=skip_backup,
        )
        try:
            await self._drive(run)
        except BaseException:
            self._metrics.increment("deploy.failure")
            raise
        finally:
            run.result.duration = time.perf_counter() - started
            self._in_flight.discard(remote.name)
            self._metrics.timing("deploy.duration", run.result.duration)

        self._metrics.increment("deploy.success")
        return run.result

    # =========================================================================
    # State machine
    # =========================================================================

    async def _drive(self, run: _DeploymentRun) -> None:
        transitions: dict[DeploymentState, Callable[[_DeploymentRun], Awaitable[DeploymentState]]] = {
            DeploymentState.VALIDATING: self._validate,
            DeploymentState.BACKUP_PENDING: self._backup,
            DeploymentState.BACKUP_DONE: self._backup_done,
            DeploymentState.DEPLOYING: self._deploy,
            DeploymentState.VERIFYING: self._verify,
        }
        state = DeploymentState.VALIDATING
        while not state.is_terminal:
            run.result.states.append(state)
            logger.debug(f"[{run.remote.name}] {state.value}")
            if state in (DeploymentState.DEPLOYING, DeploymentState.VERIFYING):
                state = await self._guarded(run, transitions[state])
            else:
                state = await transitions[state](run)
        run.result.states.append(state)

    async def _guarded(
        self,
        run: _DeploymentRun,
        step: Callable[[_DeploymentRun], Awaitable[DeploymentState]],
    ) -> DeploymentState:
        """Run a step that may change the remote, handling its failure."""
        try:
            return await step(run)
        except DestructiveOperationBlockedError as exc:
            self._fail(run, exc)
            raise
        except (Exception, asyncio.CancelledError) as exc:
            await self._recover(run, exc)
            if isinstance(exc, asyncio.CancelledError):
                raise
            raise DeploymentFailedError(run.result, exc) from exc

    def _fail(self, run: _DeploymentRun, exc: BaseException) -> None:
        run.result.error = str(exc) or exc.__class__.__name__
        run.result.states.append(DeploymentState.FAILED)

    async def _recover(self, run: _DeploymentRun, exc: BaseException) -> None:
        result = run.result
        result.error = str(exc) or exc.__class__.__name__
        if not run.remote_touched:
            logger.error(f"[{run.remote.name}] Deployment failed before touching the remote: {exc}")
            result.remote_state = RemoteState.UNTOUCHED
            result.states.append(DeploymentState.FAILED)
            return
        if run.backup is None:
            logger.error(f"[{run.remote.name}] Deployment failed without a backup: {exc}")
            result.remote_state = RemoteState.UNVERIFIED
            result.states.append(DeploymentState.FAILED)
            return

        logger.warning(f"[{run.remote.name}] Deployment failed, rolling back: {exc}")
        result.states.append(DeploymentState.ROLLING_BACK)
        self._metrics.increment("deploy.rollback_count")
        await asyncio.shield(
            self._backups.restore_backup(run.backup, run.remote, during_rollback=True)
        )
        result.rollback_performed = True
        result.remote_state = RemoteState.RESTORED
        result.states.append(DeploymentState.ROLLED_BACK)
        logger.info(f"[{run.remote.name}] Rolled back to backup {run.backup.backup_id}")

    async def _validate(self, run: _DeploymentRun) -> DeploymentState:
        remote, env = run.remote, run.environment
        logger.info(f"Validating deployment of '{env.name}' to '{remote.name}'")

        if env.name == PRODUCTION:
            if not remote.backup_before_deploy:
                raise ConfigurationError(
                    "Production deployments must have backup_before_deploy enabled",
                    remote=remote.name,
                )
            if remote.allow_destructive:
                logger.warning(f"Production remote '{remote.name}' allows destructive operations")
            if run.skip_backup:
                logger.warning(f"Skipping the backup of production remote '{remote.name}'")

        needs_confirmation = remote.require_confirmation or env.name == PRODUCTION
        if needs_confirmation and not run.confirmed and not run.result.dry_run:
            raise ConfirmationRequiredError(
                f"Deployment to '{remote.name}' ({env.name}) requires confirmation",
                remote=remote.name,
            )

        await self._resilience.call(
            remote.name,
            lambda: self._inspector.check_connectivity(remote.connection_url),
            operation="connectivity check",
        )

        if run.result.dry_run:
            logger.info(f"Dry run for '{remote.name}' passed pre-flight checks")
            run.result.success = True
            return DeploymentState.SUCCEEDED
        if run.wants_backup:
            return DeploymentState.BACKUP_PENDING
        return DeploymentState.DEPLOYING

    async def _backup(self, run: _DeploymentRun) -> DeploymentState:
        run.backup = await self._backups.create_backup(run.remote)
        run.result.backup_created = True
        run.result.backup_id = run.backup.backup_id
        return DeploymentState.BACKUP_DONE

    async def _backup_done(self, run: _DeploymentRun) -> DeploymentState:
        return DeploymentState.DEPLOYING

    async def _prepare_template(
        self, env: EnvironmentConfig
    ) -> tuple[TemplateRecord, FilteredFileSet]:
        root = Path(self._config.repository.path)
        files = await asyncio.to_thread(scanner.scan, root)
        selected = environment.filter_files(files, env)
        name = template_name_for(self._config.database.template_name, env.name)
        record = await self._templates.ensure(name, selected, env.name)
        validation = await self._templates.validate(name)
        if validation.expected_tables_missing:
            raise ValidationFailedError(
                f"Template {name} is missing expected tables",
                validation.expected_tables_missing,
                template=name,
            )
        return record, selected

    async def _deploy(self, run: _DeploymentRun) -> DeploymentState:
        remote = run.remote
        template, files = await self._prepare_template(run.environment)
        run.expected_tables = tuple(template.tables)

        if not remote.allow_destructive:
            violations = await asyncio.to_thread(scan_files, files)
            if violations:
                raise DestructiveOperationBlockedError(
                    remote.name, [v.describe() for v in violations]
                )

        artifact = await self._dump.dump(self._templates.connection_url(template.template_name))
        logger.info(
            f"Restoring {template.template_name} into {remote.safe_url} "
            f"({len(artifact)} bytes, clean={remote.allow_destructive})"
        )
        run.remote_touched = True
        await self._resilience.call(
            remote.name,
            lambda: self._dump.restore(artifact, remote.connection_url, clean=remote.allow_destructive),
            operation="deploy restore",
        )
        run.result.remote_state = RemoteState.UPDATED
        return DeploymentState.VERIFYING

    async def _verify(self, run: _DeploymentRun) -> DeploymentState:
        found = set(
            await self._resilience.call(
                run.remote.name,
                lambda: self._inspector.list_tables(run.remote.connection_url),
                operation="verify tables",
            )
        )
        missing = sorted(set(run.expected_tables) - found)
        if missing:
            raise ValidationFailedError(
                f"Remote '{run.remote.name}' is missing tables after deployment",
                missing,
                remote=run.remote.name,
            )
        run.result.validation_passed = True
        run.result.success = True
        logger.info(f"Deployment to '{run.remote.name}' verified ({len(found)} table(s))")
        return DeploymentState.SUCCEEDED
