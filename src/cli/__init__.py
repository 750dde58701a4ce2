"""Main CLI application module.

This module provides the main entry point for the dbfast CLI.

Commands:
- init, status, environments, validate-env: project configuration
- seed, clone, drop: local template databases and clones
- deploy: safety-gated deployment to remote databases

Command Groups:
- backup: backup management
- remote: remote database configuration
"""

from pathlib import Path

import typer

from .commands import (
    backup_app,
    clone,
    deploy,
    drop,
    environments,
    init,
    remote_app,
    seed,
    status,
    validate_env,
)
from src.dbfast.metrics import LoggingMetrics

from .context import configure_logging, get_cli_context

# Create the main CLI application
app = typer.Typer(
    help="⚡ DBFast - Lightning-fast PostgreSQL template databases",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


@app.callback()
def main_callback(
    ctx: typer.Context,
    config: Path = typer.Option(
        Path("dbfast.yaml"), "--config", "-c", help="Configuration file", envvar="DBFAST_CONFIG"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logs"),
) -> None:
    configure_logging(verbose)
    cli = get_cli_context(ctx)
    cli.use_config(config)
    if verbose:
        cli.metrics = LoggingMetrics()
    ctx.obj = cli


app.command()(init)
app.command()(status)
app.command()(environments)
app.command("validate-env")(validate_env)
app.command()(seed)
app.command()(clone)
app.command()(drop)
app.command()(deploy)

app.add_typer(backup_app, name="backup")
app.add_typer(remote_app, name="remote")


def main() -> None:
    """Main entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
