"""Tests for the DbFast facade workflows."""

import pytest

from src.dbfast.errors import ConfigurationError
from src.dbfast.models import RemoteState
from tests.fixtures import STAGING_URL, write_sql


@pytest.mark.asyncio
async def test_scan_filter_and_rebuild(engine, cluster):
    files, fingerprint = await engine.scan_and_fingerprint()
    selected = engine.filter(files, "local")

    assert engine.needs_rebuild("app_local", selected.fingerprint)
    assert fingerprint != selected.fingerprint

    record = await engine.rebuild("app_local", selected)

    assert record.environment_name == "local"
    assert not engine.needs_rebuild("app_local", selected.fingerprint)
    assert "app_local" in cluster.databases


@pytest.mark.asyncio
async def test_seed_builds_template_once_and_clones(engine, cluster):
    first = await engine.seed("local", "dev_one")
    cluster.statements.clear()
    second = await engine.seed("local", "dev_two")

    assert first.template_name == second.template_name == "app_local"
    assert cluster.row_counts(cluster.databases["dev_two"])["public.users"] == 2
    assert not any("_build_" in sql for _, sql in cluster.statements)


@pytest.mark.asyncio
async def test_seed_picks_up_repository_changes(engine, sql_repo, cluster):
    await engine.seed("local", "dev_one")
    write_sql(sql_repo, "1_seed_common/002_more.sql", "INSERT INTO users (id) VALUES (3);")

    await engine.seed("local", "dev_two")

    assert len(cluster.databases["dev_two"]["public.users"]) == 3
    assert len(cluster.databases["dev_one"]["public.users"]) == 2


@pytest.mark.asyncio
async def test_backup_and_restore_by_remote_name(engine, cluster):
    cluster.remotes[STAGING_URL]["public.users"] = [{}]
    info = await engine.create_backup("staging")
    cluster.remotes[STAGING_URL]["public.users"] = []

    await engine.restore_backup(info, "staging")

    assert len(cluster.remotes[STAGING_URL]["public.users"]) == 1


@pytest.mark.asyncio
async def test_deploy_through_facade(engine):
    result = await engine.deploy("staging")

    assert result.remote_state is RemoteState.UPDATED


def test_unknown_names_raise_configuration_error(engine):
    with pytest.raises(ConfigurationError, match="Unknown environment 'qa'") as excinfo:
        engine.environment("qa")
    assert excinfo.value.details == "Configured environments: local, production, staging"
    with pytest.raises(ConfigurationError):
        engine.remote("nowhere")


def test_template_names_follow_environment(engine):
    assert engine.template_name_for("staging") == "app_staging"


@pytest.mark.asyncio
async def test_context_manager_closes_pool(engine, cluster, monkeypatch):
    closed = []

    async def _close():
        closed.append(True)

    monkeypatch.setattr(cluster, "close", _close)
    async with engine:
        pass

    assert closed == [True]
