"""Deployment CLI command."""

import asyncio

import typer

from src.cli.context import get_cli_context
from src.cli.shared.console import with_error_handling
from src.dbfast.deploy import PRODUCTION


@with_error_handling
def deploy(
    ctx: typer.Context,
    remote: str = typer.Argument(..., help="Remote to deploy to"),
    env: str | None = typer.Option(
        None, "--env", "-e", help="Environment to deploy (default: the remote's)"
    ),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation prompts"),
    skip_backup: bool = typer.Option(False, "--skip-backup", help="Do not back up first"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Validate only, don't deploy"),
) -> None:
    """🚀 Deploy an environment's template to a remote database."""
    cli = get_cli_context(ctx)
    config = cli.load_config()
    target = config.remotes.get(remote)

    confirmed = yes
    if target is not None and not yes and not dry_run:
        target_env = env or target.environment_name
        if target.require_confirmation or target_env == PRODUCTION:
            confirmed = cli.console.confirm_action(
                f"Deploy '{target_env}' to {remote}",
                details=(
                    f"Remote: {target.safe_url}\n"
                    f"Destructive: {'YES' if target.allow_destructive else 'NO'}\n"
                    f"Backup: {'YES' if target.backup_before_deploy and not skip_backup else 'NO'}"
                ),
            )
            if not confirmed:
                cli.console.print("[dim]Deployment cancelled.[/dim]")
                raise typer.Exit(1)

    async def _run() -> None:
        async with cli.engine() as engine:
            result = await engine.deploy(
                remote, env, confirmed, skip_backup=skip_backup, dry_run=dry_run
            )
        if result.dry_run:
            cli.console.ok(f"Dry run passed for {remote} ({result.environment_name})")
            return
        cli.console.ok(
            f"Deployed {result.environment_name} to {remote} in {result.duration:.1f}s"
        )
        if result.backup_id:
            cli.console.info(f"Backup available: {result.backup_id}")
            cli.console.info(f"Use 'dbfast backup restore {result.backup_id}' to roll back")

    asyncio.run(_run())
