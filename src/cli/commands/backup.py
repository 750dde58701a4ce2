"""Backup CLI commands.

Commands:
    create   - Back up a remote database
    list     - List backups, newest first
    verify   - Check a backup's checksum
    restore  - Restore a backup into a remote
    cleanup  - Apply retention
"""

import asyncio
from datetime import timedelta

import typer

from src.cli.context import get_cli_context
from src.cli.shared.console import with_error_handling
from src.dbfast.errors import BackupError

app = typer.Typer(
    name="backup",
    help="💾 Backup management commands",
    no_args_is_help=True,
)


def _format_size(size: int) -> str:
    value = float(size)
    for unit in ("B", "KB", "MB", "GB"):
        if value < 1024 or unit == "GB":
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{size} B"


@app.command()
@with_error_handling
def create(
    ctx: typer.Context,
    remote: str = typer.Argument(..., help="Remote to back up"),
) -> None:
    """Back up a remote database."""
    cli = get_cli_context(ctx)

    async def _run() -> None:
        async with cli.engine() as engine:
            info = await engine.create_backup(remote)
        cli.console.ok(f"Backup created: {info.backup_id} ({_format_size(info.size_bytes)})")
        cli.console.info(f"File: {info.file_path}")

    asyncio.run(_run())


@app.command("list")
@with_error_handling
def list_backups(
    ctx: typer.Context,
    remote: str | None = typer.Option(None, "--remote", "-r", help="Only this remote's backups"),
) -> None:
    """List backups, newest first."""
    cli = get_cli_context(ctx)
    engine = cli.engine()
    backups = engine.backups.list_backups(remote)
    if not backups:
        cli.console.info("No backups found")
        return
    cli.console.table(
        "Backups",
        ("ID", "Source", "Created", "Size", "Checksum"),
        [
            (
                b.backup_id,
                b.source_identifier,
                b.created_at.strftime("%Y-%m-%d %H:%M:%S"),
                _format_size(b.size_bytes),
                b.checksum[:12],
            )
            for b in backups
        ],
    )


@app.command()
@with_error_handling
def verify(
    ctx: typer.Context,
    backup_id: str = typer.Argument(..., help="Backup to verify"),
) -> None:
    """Check that a backup file exists and matches its checksum."""
    cli = get_cli_context(ctx)
    engine = cli.engine()
    info = engine.backups.get_backup(backup_id)
    if info is None:
        raise BackupError(f"Backup {backup_id} not found")
    if not engine.backups.validate_backup(info):
        cli.console.error(f"Backup {backup_id} is missing or corrupt")
        raise typer.Exit(1)
    cli.console.ok(f"Backup {backup_id} is intact")


@app.command()
@with_error_handling
def restore(
    ctx: typer.Context,
    backup_id: str = typer.Argument(..., help="Backup to restore"),
    remote: str | None = typer.Option(
        None, "--remote", "-r", help="Target remote (default: the backup's source)"
    ),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
) -> None:
    """Restore a backup into a remote database."""
    cli = get_cli_context(ctx)
    engine = cli.engine()
    info = engine.backups.get_backup(backup_id)
    if info is None:
        raise BackupError(f"Backup {backup_id} not found")

    target_name = remote or info.source_identifier
    target = engine.remote(target_name)
    if not cli.console.confirm_action(
        f"Restore {backup_id} into {target_name}",
        details=f"Remote: {target.safe_url}",
        extra_warning="Objects contained in the backup will be replaced.",
        force=yes,
    ):
        raise typer.Exit(1)

    async def _run() -> None:
        async with engine:
            await engine.restore_backup(info, target)
        cli.console.ok(f"Restored {backup_id} into {target_name}")

    asyncio.run(_run())


@app.command()
@with_error_handling
def cleanup(
    ctx: typer.Context,
    keep: int | None = typer.Option(None, "--keep", help="Backups to keep per source"),
    max_age_days: float | None = typer.Option(
        None, "--max-age-days", help="Delete backups older than this"
    ),
) -> None:
    """Delete old backups (configured retention by default)."""
    cli = get_cli_context(ctx)
    engine = cli.engine()
    max_age = timedelta(days=max_age_days) if max_age_days is not None else None
    removed = asyncio.run(engine.backups.cleanup(keep, max_age))
    cli.console.ok(f"Removed {removed} backup(s)")
