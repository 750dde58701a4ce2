"""Remote database CLI commands.

Commands:
    add     - Add a remote to the configuration
    list    - List configured remotes
    test    - Check connectivity and schema of a remote
    remove  - Remove a remote from the configuration
"""

import asyncio

import typer

from src.cli.context import get_cli_context
from src.cli.shared.console import with_error_handling
from src.dbfast.config import RemoteTarget, save_config
from src.dbfast.config.config_loader import load_config
from src.dbfast.errors import ConfigurationError
from src.dbfast.template import template_name_for

app = typer.Typer(
    name="remote",
    help="🌐 Remote database management",
    no_args_is_help=True,
)


@app.command()
@with_error_handling
def add(
    ctx: typer.Context,
    name: str = typer.Option(..., "--name", help="Remote name"),
    url: str = typer.Option(..., "--url", help="postgresql://user@host:port/database"),
    env: str = typer.Option(..., "--env", help="Environment deployed to this remote"),
    allow_destructive: bool = typer.Option(False, "--allow-destructive"),
    skip_backup: bool = typer.Option(False, "--skip-backup", help="Disable pre-deploy backups"),
    require_confirmation: bool = typer.Option(False, "--require-confirmation"),
) -> None:
    """Add a remote database."""
    cli = get_cli_context(ctx)
    # Raw config keeps ${VAR} placeholders intact when saving
    raw = load_config(cli.config_path, processed=False)
    section = raw.setdefault("config", {}) or {}
    raw["config"] = section
    remotes = section.setdefault("remotes", {}) or {}
    section["remotes"] = remotes

    if name in remotes:
        raise ConfigurationError(f"Remote '{name}' already exists")
    if env not in (section.get("environments") or {}):
        raise ConfigurationError(f"Unknown environment '{env}'")
    if env == "production" and skip_backup:
        raise ConfigurationError("Production remotes must have backup_before_deploy enabled")

    remote = RemoteTarget(
        name=name,
        connection_url=url,
        environment_name=env,
        allow_destructive=allow_destructive,
        backup_before_deploy=not skip_backup,
        require_confirmation=require_confirmation,
    )
    remotes[name] = remote.model_dump(exclude={"name"})
    save_config(section, cli.config_path)
    cli.console.ok(f"Added remote '{name}' ({env})")


@app.command("list")
@with_error_handling
def list_remotes(ctx: typer.Context) -> None:
    """List configured remotes."""
    cli = get_cli_context(ctx)
    config = cli.load_config()
    if not config.remotes:
        cli.console.info("No remotes configured")
        return
    cli.console.table(
        "Remotes",
        ("Name", "Environment", "URL", "Destructive", "Backup", "Confirm"),
        [
            (
                r.name,
                r.environment_name,
                r.safe_url,
                "yes" if r.allow_destructive else "no",
                "yes" if r.backup_before_deploy else "no",
                "yes" if r.require_confirmation else "no",
            )
            for r in config.remotes.values()
        ],
    )


@app.command("test")
@with_error_handling
def check(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Remote to test"),
) -> None:
    """Check connectivity and the deployed tables of a remote."""
    cli = get_cli_context(ctx)

    async def _run() -> bool:
        async with cli.engine() as engine:
            remote = engine.remote(name)
            template = template_name_for(engine.config.database.template_name, remote.environment_name)
            record = engine.templates.get_record(template)
            expected = record.tables if record else []
            checks = await engine.inspector.verify(remote.connection_url, expected)
        return cli.console.print_checks(checks)

    if not asyncio.run(_run()):
        raise typer.Exit(1)


@app.command()
@with_error_handling
def remove(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Remote to remove"),
) -> None:
    """Remove a remote from the configuration."""
    cli = get_cli_context(ctx)
    raw = load_config(cli.config_path, processed=False)
    section = raw.get("config") or {}
    remotes = section.get("remotes") or {}
    if name not in remotes:
        raise ConfigurationError(f"Unknown remote '{name}'")
    del remotes[name]
    save_config(section, cli.config_path)
    cli.console.ok(f"Removed remote '{name}'")
