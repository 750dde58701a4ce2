"""Template and clone CLI commands.

Commands:
    seed   - Get a database holding an environment's current state
    clone  - Clone an existing template database
    drop   - Drop a cloned database
"""

import asyncio

import typer

from src.cli.context import get_cli_context
from src.cli.shared.console import with_error_handling


@with_error_handling
def seed(
    ctx: typer.Context,
    output: str = typer.Option(..., "--output", "-o", help="Name of the database to create"),
    env: str = typer.Option("local", "--env", "-e", help="Environment whose files to use"),
) -> None:
    """🌱 Get a seeded database instantly (rebuilding the template if needed)."""
    cli = get_cli_context(ctx)

    async def _run() -> None:
        async with cli.engine() as engine:
            template = engine.template_name_for(env)
            if engine.templates.get_record(template) is None:
                cli.console.info(f"Building template {template} for the first time...")
            record = await engine.prepare(env)
            result = await engine.clone(record.template_name, output)
            cli.console.ok(
                f"Created {result.target_name} from {record.template_name} "
                f"in {result.duration_ms:.0f}ms"
            )

    asyncio.run(_run())


@with_error_handling
def clone(
    ctx: typer.Context,
    template: str = typer.Argument(..., help="Template database to copy"),
    target: str = typer.Argument(..., help="Name of the new database"),
) -> None:
    """🧬 Clone a template database."""
    cli = get_cli_context(ctx)

    async def _run() -> None:
        async with cli.engine() as engine:
            result = await engine.clone(template, target)
            cli.console.ok(f"Cloned {template} -> {target} in {result.duration_ms:.0f}ms")

    asyncio.run(_run())


@with_error_handling
def drop(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Database to drop"),
    force: bool = typer.Option(False, "--force", "-f", help="Skip confirmation"),
) -> None:
    """🗑️  Drop a cloned database."""
    cli = get_cli_context(ctx)
    if not cli.console.confirm_action(f"Drop database {name}", force=force):
        raise typer.Exit(1)

    async def _run() -> None:
        async with cli.engine() as engine:
            if await engine.clones.drop_clone(name):
                cli.console.ok(f"Dropped {name}")
            else:
                cli.console.warn(f"Database {name} does not exist")

    asyncio.run(_run())
