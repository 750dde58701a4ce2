import pytest
import typer

from src.cli.shared.console import with_error_handling
from src.dbfast.errors import DeploymentFailedError, NameConflictError
from src.dbfast.models import DeploymentResult, RemoteState


def test_with_error_handling_handles_dbfast_error():
    @with_error_handling
    def _command() -> None:
        raise NameConflictError("dup")

    with pytest.raises(typer.Exit) as excinfo:
        _command()

    assert excinfo.value.exit_code == 1


def test_with_error_handling_handles_deployment_failure(capsys):
    result = DeploymentResult(remote_name="staging", environment_name="staging")
    result.remote_state = RemoteState.UNVERIFIED

    @with_error_handling
    def _command() -> None:
        raise DeploymentFailedError(result, RuntimeError("restore failed"))

    with pytest.raises(typer.Exit) as excinfo:
        _command()

    assert excinfo.value.exit_code == 1
    assert "unverified" in capsys.readouterr().out


def test_with_error_handling_handles_configuration_value_error():
    @with_error_handling
    def _command() -> None:
        raise ValueError("Invalid YAML structure: missing 'config' key")

    with pytest.raises(typer.Exit) as excinfo:
        _command()

    assert excinfo.value.exit_code == 1


def test_with_error_handling_handles_keyboard_interrupt():
    @with_error_handling
    def _command() -> None:
        raise KeyboardInterrupt

    with pytest.raises(typer.Exit) as excinfo:
        _command()

    assert excinfo.value.exit_code == 130


def test_with_error_handling_lets_other_errors_through():
    @with_error_handling
    def _command() -> None:
        raise RuntimeError("bug")

    with pytest.raises(RuntimeError):
        _command()
