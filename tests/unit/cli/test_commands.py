"""End-to-end tests of the CLI commands against the fake cluster."""

import pytest
from loguru import logger
from typer.testing import CliRunner

from src.cli import app
from src.cli.context import CLIContext
from src.cli.shared.console import CLIConsole
from src.dbfast.config import load_config, save_config
from src.dbfast.engine import DbFast
from src.dbfast.metrics import LoggingMetrics
from tests.fixtures import STAGING_URL, fast_resilience

runner = CliRunner()


@pytest.fixture(autouse=True)
def quiet_logging(monkeypatch):
    monkeypatch.setattr("src.cli.configure_logging", lambda verbose: None)
    monkeypatch.setenv("COLUMNS", "200")
    # Error output goes through the shared console, sized at import time
    monkeypatch.setattr("src.cli.shared.console.console", CLIConsole())


@pytest.fixture
def config_file(tmp_path, config):
    path = tmp_path / "dbfast.yaml"
    save_config(config, path)
    return path


@pytest.fixture
def cli_context(config, cluster, dump_tool, inspector):
    for remote in config.remotes.values():
        cluster.remotes.setdefault(remote.connection_url, {})

    def factory(cfg, metrics=None):
        return DbFast(
            cfg,
            pool=cluster,
            metrics=metrics,
            dump_tool=dump_tool,
            inspector=inspector,
            resilience=fast_resilience(),
        )

    return CLIContext(console=CLIConsole(), engine_factory=factory)


@pytest.fixture
def invoke(cli_context, config_file):
    def _invoke(*args, input=None):
        return runner.invoke(app, ["--config", str(config_file), *args], obj=cli_context, input=input)

    return _invoke


def test_init_writes_default_config(tmp_path, sql_repo, cli_context):
    path = tmp_path / "new.yaml"

    result = runner.invoke(
        app,
        ["--config", str(path), "init", "--repo-dir", str(sql_repo), "--template-name", "shop"],
        obj=cli_context,
    )

    assert result.exit_code == 0, result.output
    assert "Initialized dbfast configuration" in result.output
    config = load_config(path)
    assert config.database.template_name == "shop"
    assert set(config.environments) == {"local", "production"}


def test_init_refuses_to_overwrite(invoke, sql_repo):
    result = invoke("init", "--repo-dir", str(sql_repo))

    assert result.exit_code == 1
    assert "already exists" in result.output


def test_init_requires_existing_repository(invoke, tmp_path):
    result = invoke("init", "--repo-dir", str(tmp_path / "missing"), "--force")

    assert result.exit_code == 1
    assert "Repository directory not found" in result.output


def test_status_shows_template_states(invoke):
    result = invoke("status")

    assert result.exit_code == 0, result.output
    assert "app_local" in result.output
    assert "absent" in result.output


def test_status_without_config(cli_context, tmp_path):
    result = runner.invoke(app, ["--config", str(tmp_path / "none.yaml"), "status"], obj=cli_context)

    assert result.exit_code == 0
    assert "dbfast init" in result.output


def test_environments_lists_file_counts(invoke):
    result = invoke("environments", "--verbose")

    assert result.exit_code == 0, result.output
    for name in ("local", "staging", "production"):
        assert name in result.output
    assert "1_seed_common" in result.output


def test_validate_env(invoke):
    assert invoke("validate-env", "--env", "local").exit_code == 0

    unknown = invoke("validate-env", "--env", "qa")
    assert unknown.exit_code == 1
    assert "Unknown environment" in unknown.output


def test_validate_env_reports_missing_directory(tmp_path, config, invoke):
    config.environments["local"] = config.environments["local"].model_copy(
        update={"include_directories": ("0_schema", "9_missing")}
    )
    save_config(config, tmp_path / "dbfast.yaml")

    result = invoke("validate-env", "--env", "local")

    assert result.exit_code == 1
    assert "9_missing" in result.output


def test_seed_then_status_shows_ready(invoke, cluster):
    result = invoke("seed", "--output", "dev_one", "--env", "local")

    assert result.exit_code == 0, result.output
    assert "Created dev_one from app_local" in result.output
    assert cluster.row_counts(cluster.databases["dev_one"])["public.users"] == 2
    assert "ready" in invoke("status").output


def test_clone_rejects_unsafe_name(invoke, cluster):
    cluster.databases["tmpl"] = {}

    result = invoke("clone", "tmpl", "Bad-Name")

    assert result.exit_code == 1
    assert "Invalid database name" in result.output
    assert "Bad-Name" not in cluster.databases


def test_clone_and_drop(invoke, cluster):
    cluster.databases["tmpl"] = {"public.users": [{}]}

    assert invoke("clone", "tmpl", "copy_one").exit_code == 0
    assert "copy_one" in cluster.databases

    assert invoke("drop", "copy_one", "--force").exit_code == 0
    assert "copy_one" not in cluster.databases


def test_verbose_flag_logs_metrics(invoke, cli_context, cluster):
    """Test that --verbose installs the logging metrics sink for engine calls."""
    cluster.databases["tmpl"] = {}
    messages = []
    handler = logger.add(messages.append, level="DEBUG", format="{message}")
    try:
        result = invoke("--verbose", "clone", "tmpl", "copy_two")
    finally:
        logger.remove(handler)

    assert result.exit_code == 0, result.output
    assert isinstance(cli_context.metrics, LoggingMetrics)
    assert any("metric clone.success+=1" in m for m in messages)
    assert any(m.startswith("metric clone.duration=") for m in messages)


def test_metrics_are_off_by_default(invoke, cli_context, cluster):
    cluster.databases["tmpl"] = {}

    assert invoke("clone", "tmpl", "copy_three").exit_code == 0
    assert cli_context.metrics is None


def test_drop_cancelled_without_confirmation(invoke, cluster):
    cluster.databases["keep_me"] = {}

    result = invoke("drop", "keep_me", input="n\n")

    assert result.exit_code == 1
    assert "keep_me" in cluster.databases


def test_deploy_to_staging(invoke, cluster):
    result = invoke("deploy", "staging")

    assert result.exit_code == 0, result.output
    assert "Deployed staging to staging" in result.output
    assert "Backup available" in result.output
    assert "public.users" in cluster.remotes[STAGING_URL]


def test_deploy_to_production_asks_for_confirmation(invoke, dump_tool):
    result = invoke("deploy", "prod", input="n\n")

    assert result.exit_code == 1
    assert "Deployment cancelled" in result.output
    assert dump_tool.restores == []


def test_deploy_to_production_with_yes(invoke):
    result = invoke("deploy", "prod", "--yes")

    assert result.exit_code == 0, result.output


def test_deploy_dry_run(invoke, dump_tool):
    result = invoke("deploy", "prod", "--dry-run")

    assert result.exit_code == 0, result.output
    assert "Dry run passed" in result.output
    assert dump_tool.restores == []


def test_deploy_failure_reports_remote_state(invoke, inspector):
    inspector.hidden_tables.add("public.users")

    result = invoke("deploy", "staging")

    assert result.exit_code == 1
    assert "remote state: restored" in result.output
    assert "rollback performed: True" in result.output


def test_backup_lifecycle(invoke, config):
    created = invoke("backup", "create", "staging")
    assert created.exit_code == 0, created.output

    backup_id = next(p.stem for p in config.backups.directory.glob("*.dump"))

    listed = invoke("backup", "list")
    assert listed.exit_code == 0
    assert backup_id in listed.output

    assert invoke("backup", "verify", backup_id).exit_code == 0
    assert invoke("backup", "restore", backup_id, "--yes").exit_code == 0

    cleaned = invoke("backup", "cleanup", "--keep", "0")
    assert "Removed 1 backup(s)" in cleaned.output
    assert invoke("backup", "list").output.count(backup_id) == 0


def test_backup_verify_detects_corruption(invoke, config):
    invoke("backup", "create", "staging")
    archive = next(config.backups.directory.glob("*.dump"))
    archive.write_bytes(b"x" * archive.stat().st_size)

    result = invoke("backup", "verify", archive.stem)

    assert result.exit_code == 1
    assert "missing or corrupt" in result.output


def test_backup_unknown_id(invoke):
    result = invoke("backup", "verify", "nope")

    assert result.exit_code == 1
    assert "not found" in result.output


def test_remote_add_list_remove(invoke, config_file):
    added = invoke(
        "remote", "add", "--name", "qa", "--url", "postgresql://u:pw@qa.example.com/app", "--env", "staging"
    )
    assert added.exit_code == 0, added.output
    assert load_config(config_file).remotes["qa"].environment_name == "staging"

    listed = invoke("remote", "list")
    assert "qa" in listed.output
    assert "u:***@qa.example.com" in listed.output
    assert "pw@" not in listed.output

    assert invoke("remote", "remove", "qa").exit_code == 0
    assert "qa" not in load_config(config_file).remotes


def test_remote_add_rejects_unbacked_production(invoke):
    result = invoke(
        "remote", "add", "--name", "live", "--url", "postgresql://x/app", "--env", "production", "--skip-backup"
    )

    assert result.exit_code == 1
    assert "backup_before_deploy" in result.output


def test_remote_add_rejects_duplicate(invoke):
    result = invoke("remote", "add", "--name", "staging", "--url", "postgresql://x/app", "--env", "staging")

    assert result.exit_code == 1
    assert "already exists" in result.output


def test_remote_test_reports_checks(invoke, cluster):
    assert invoke("remote", "test", "staging").exit_code == 0

    cluster.unreachable.add(STAGING_URL)
    result = invoke("remote", "test", "staging")
    assert result.exit_code == 1
    assert "Cannot connect" in result.output
