"""Configuration loading with environment variable substitution."""

from pathlib import Path
from typing import Any, Literal, overload

import yaml
from dotenv import load_dotenv
from loguru import logger
from pydantic_core import ValidationError

from src.dbfast.config.config_data import ConfigData
from src.dbfast.config.config_utils import substitute_env_vars

CONFIG_PATH = Path("dbfast.yaml")


@overload
def load_config(file_path: Path = ..., *, processed: Literal[False]) -> dict[str, Any]: ...


@overload
def load_config(file_path: Path = ..., processed: Literal[True] = ...) -> ConfigData: ...


def load_config(
    file_path: Path = CONFIG_PATH, processed: bool = True
) -> ConfigData | dict[str, Any]:
    """
    Load a YAML file with environment variable substitution.

    Args:
        file_path: Path to the YAML file (default: dbfast.yaml)
        processed: Whether to substitute environment variables and validate.
                  - True (default): substitute env vars and validate as ConfigData
                  - False: return raw dict without validation or substitution

    Returns:
        ConfigData if processed is True, raw dict if processed is False

    Raises:
        ValueError: If required environment variables are missing, validation fails,
                   or YAML structure is invalid (missing 'config' key)
        FileNotFoundError: If the YAML file doesn't exist

    Relative repository and backup paths are resolved against the directory
    containing the configuration file, so commands behave the same from any
    working directory.
    """
    with open(file_path) as f:
        content = f.read()

    if processed:
        # Values in .env next to the config win over nothing, lose to the shell
        load_dotenv(file_path.parent / ".env", override=False)
        logger.info(f"Loading configuration from {file_path}")
        content = substitute_env_vars(content)

    try:
        loaded: dict[str, Any] = yaml.safe_load(content)
        if not processed:
            return loaded
        if not loaded:
            raise ValueError("Failed to parse YAML")
    except yaml.YAMLError as e:
        raise ValueError(f"Error parsing YAML: {e}") from e

    try:
        if "config" not in loaded:
            raise ValueError("Invalid YAML structure: missing 'config' key")
        config = ConfigData(**(loaded["config"] or {}))
    except ValidationError as e:
        raise ValueError(f"Invalid configuration: {e}") from e

    base_dir = file_path.resolve().parent
    if not config.repository.path.is_absolute():
        config.repository.path = base_dir / config.repository.path
    if not config.backups.directory.is_absolute():
        config.backups.directory = base_dir / config.backups.directory

    logger.debug(
        f"Loaded {len(config.environments)} environment(s) and "
        f"{len(config.remotes)} remote(s)"
    )
    return config


def _string_representer(dumper: yaml.SafeDumper, data: str) -> yaml.ScalarNode:
    """Quote strings that contain ${...} patterns or look like numbers."""
    if "${" in data or data.isdigit():
        return dumper.represent_scalar("tag:yaml.org,2002:str", data, style='"')
    return dumper.represent_scalar("tag:yaml.org,2002:str", data)


def save_config(config: ConfigData | dict[str, Any], file_path: Path = CONFIG_PATH) -> None:
    """Save the given configuration to a YAML file. In order to do it transactionally,
    it first writes to a temporary file and then renames it to the target path.

    Args:
        config: ConfigData instance or dict to save (without the 'config' wrapper).
        file_path: Destination path.
    """
    temp_path = file_path.with_suffix(".tmp")

    class QuotedDumper(yaml.SafeDumper):
        pass

    QuotedDumper.add_representer(str, _string_representer)

    serialized = config
    if isinstance(config, ConfigData):
        serialized = config.model_dump(mode="json", exclude_none=True)
        # Names are implied by their keys
        for section in ("environments", "remotes"):
            for entry in serialized.get(section, {}).values():
                entry.pop("name", None)

    with open(temp_path, "w") as f:
        yaml.dump(
            {"config": serialized},
            f,
            Dumper=QuotedDumper,
            default_flow_style=False,
            sort_keys=False,
            indent=2,
        )
    temp_path.replace(file_path)
