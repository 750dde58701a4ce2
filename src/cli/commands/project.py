"""Project-level CLI commands.

Commands:
    init          - Write a starting dbfast.yaml for a SQL repository
    status        - Show configuration, repository and template status
    environments  - List configured environments and their file counts
    validate-env  - Check one environment's directories and patterns
"""

from pathlib import Path

import typer

from src.cli.context import get_cli_context
from src.cli.shared.console import with_error_handling
from src.dbfast import environment, scanner
from src.dbfast.config import ConfigData, save_config
from src.dbfast.errors import ConfigurationError, RepositoryIOError
from src.dbfast.metadata import TemplateMetadataStore
from src.dbfast.models import TemplateState
from src.dbfast.template import template_name_for

COMMON_DIRECTORIES = ("0_schema", "1_seed_common", "2_seed_backend", "6_migration")


@with_error_handling
def init(
    ctx: typer.Context,
    repo_dir: Path = typer.Option(..., "--repo-dir", help="SQL repository directory"),
    template_name: str = typer.Option(
        "dbfast_template", "--template-name", help="Base name of template databases"
    ),
    force: bool = typer.Option(False, "--force", "-f", help="Overwrite an existing config"),
) -> None:
    """🧰 Initialize dbfast for an existing SQL repository."""
    cli = get_cli_context(ctx)
    if not repo_dir.is_dir():
        raise RepositoryIOError(f"Repository directory not found: {repo_dir}", repo_dir)

    config_path = cli.config_path
    if config_path.exists() and not force:
        raise ConfigurationError(
            f"{config_path} already exists", "Use --force to overwrite it."
        )

    config = ConfigData.default(str(repo_dir), template_name)
    save_config(config, config_path)

    cli.console.ok("Initialized dbfast configuration")
    cli.console.info(f"Repository: {repo_dir}")
    cli.console.info(f"Template: {template_name}")
    cli.console.info(f"Configuration saved to: {config_path}")


@with_error_handling
def status(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="List files per environment"),
) -> None:
    """🔍 Show configuration, repository and template status."""
    cli = get_cli_context(ctx)
    out = cli.console
    out.print_header("DBFast Status")

    if not cli.config_path.exists():
        out.error(f"Configuration: no {cli.config_path} found")
        out.info("Run 'dbfast init --repo-dir <path>' to initialize")
        return

    config = cli.load_config()
    out.ok(f"Configuration: {cli.config_path}")
    db = config.database
    out.info(f"Database: {db.user}@{db.host}:{db.port}")
    out.info(f"Template base name: {db.template_name}")

    repo = config.repository.path
    if not repo.is_dir():
        out.error(f"Repository: directory not found at {repo}")
        return
    out.ok(f"Repository: {repo}")
    for name in COMMON_DIRECTORIES:
        if (repo / name).is_dir():
            out.print(f"   📁 {name}/")

    files = scanner.scan(repo)
    records = TemplateMetadataStore(config.repository.metadata_path / "templates").load_all()

    rows = []
    for env in config.environments.values():
        selected = environment.filter_files(files, env)
        name = template_name_for(db.template_name, env.name)
        record = records.get(name)
        if record is None:
            state = TemplateState.ABSENT
        elif record.source_fingerprint != selected.fingerprint:
            state = TemplateState.STALE
        else:
            state = TemplateState.READY
        rows.append(
            (
                env.name,
                len(selected),
                name,
                state.value,
                record.built_at.strftime("%Y-%m-%d %H:%M:%S") if record else "",
            )
        )
        if verbose:
            for path in selected.paths:
                out.print(f"   [dim]{env.name}: {path}[/dim]")

    out.table("Templates", ("Environment", "Files", "Template", "State", "Built"), rows)


@with_error_handling
def environments(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show filter settings"),
) -> None:
    """🌍 List configured environments."""
    cli = get_cli_context(ctx)
    config = cli.load_config()

    if not config.environments:
        cli.console.warn("No environments configured")
        return

    try:
        files = scanner.scan(config.repository.path)
    except RepositoryIOError as e:
        cli.console.warn(f"Cannot scan repository: {e}")
        files = None

    rows = []
    for env in config.environments.values():
        count = len(environment.filter_files(files, env)) if files is not None else "?"
        row = [env.name, count]
        if verbose:
            row += [
                ", ".join(env.include_directories or ()) or "*",
                ", ".join(env.exclude_directories or ()),
                ", ".join(env.include_files or ()),
                ", ".join(env.exclude_files or ()),
            ]
        rows.append(row)

    columns = ["Environment", "Files"]
    if verbose:
        columns += ["Include dirs", "Exclude dirs", "Include files", "Exclude files"]
    cli.console.table("Environments", columns, rows)


@with_error_handling
def validate_env(
    ctx: typer.Context,
    env: str = typer.Option(..., "--env", "-e", help="Environment to validate"),
) -> None:
    """✅ Validate an environment's directories and file patterns."""
    cli = get_cli_context(ctx)
    config = cli.load_config()
    env_config = config.environments.get(env)
    if env_config is None:
        known = ", ".join(sorted(config.environments)) or "none"
        raise ConfigurationError(f"Unknown environment '{env}'", f"Configured environments: {known}")

    result = environment.validate_environment(env_config, config.repository.path)
    for directory in result.missing_directories:
        cli.console.error(f"Directory not found: {directory}")
    for pattern in result.invalid_patterns:
        cli.console.error(f"Invalid pattern: {pattern}")
    if not result.ok:
        raise typer.Exit(1)

    files = environment.filter_files(scanner.scan(config.repository.path), env_config)
    cli.console.ok(f"Environment '{env}' is valid ({len(files)} file(s) selected)")
