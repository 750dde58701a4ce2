from .config_data import (
    BackupConfig,
    ConfigData,
    DatabaseConfig,
    EnvironmentConfig,
    RemoteTarget,
    RepositoryConfig,
)
from .config_loader import CONFIG_PATH, load_config, save_config

__all__ = [
    "BackupConfig",
    "CONFIG_PATH",
    "ConfigData",
    "DatabaseConfig",
    "EnvironmentConfig",
    "RemoteTarget",
    "RepositoryConfig",
    "load_config",
    "save_config",
]
