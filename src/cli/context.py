"""CLI context and dependency container."""

from __future__ import annotations

import sys
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

import click
import typer
from loguru import logger

from src.cli.shared.console import CLIConsole, console
from src.dbfast.config import CONFIG_PATH, ConfigData, load_config
from src.dbfast.engine import DbFast
from src.dbfast.metrics import MetricsSink


def configure_logging(verbose: bool) -> None:
    """Send loguru output to stderr at the requested level."""
    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if verbose else "WARNING")


@dataclass
class CLIContext:
    """Runtime dependencies for CLI commands."""

    console: CLIConsole
    config_path: Path = CONFIG_PATH
    engine_factory: Callable[..., DbFast] = DbFast
    metrics: MetricsSink | None = None
    _config: ConfigData | None = field(default=None, repr=False)

    def use_config(self, path: Path) -> None:
        """Point the context at another configuration file."""
        if path != self.config_path:
            self.config_path = path
            self._config = None

    def load_config(self) -> ConfigData:
        if self._config is None:
            self._config = load_config(self.config_path)
        return self._config

    def engine(self) -> DbFast:
        """Build an engine for the loaded configuration.

        Use it as an async context manager so its connection pools close.
        """
        return self.engine_factory(self.load_config(), metrics=self.metrics)


def build_cli_context() -> CLIContext:
    """Build a fresh CLIContext."""
    return CLIContext(console=console)


def get_cli_context(ctx: typer.Context | None = None) -> CLIContext:
    """Return the CLIContext from Typer, falling back to a new instance."""
    context = ctx or click.get_current_context(silent=True)
    if context and isinstance(context.obj, CLIContext):
        return context.obj
    return build_cli_context()
