"""
Main CLI entry point for the Character Builder.

Provides a command-line interface over a JSON-file-backed document store for
inspecting and resolving character version history.
"""

import logging
from pathlib import Path
from typing import Optional

import click

from ..core.config import DEFAULT_CONFIG_PATH, Config
from ..core.exceptions import ConfigurationError
from ..core.logging import configure_logging
from .character import character_commands
from .config import config_commands

logger = logging.getLogger(__name__)


def load_config(config_path: Optional[str]) -> Config:
    """YAML file (explicit, or the default if present), then CB_* overrides."""
    path = Path(config_path or DEFAULT_CONFIG_PATH)
    if config_path or path.exists():
        config = Config.from_file(path)
    else:
        config = None
    return Config.from_env(base=config)


@click.group()
@click.version_option(version="0.1.0")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False),
    help=f"YAML configuration file (default: {DEFAULT_CONFIG_PATH})",
)
@click.option(
    "--data-file",
    type=click.Path(dir_okay=False),
    help="JSON file holding the document store",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output")
@click.option("--debug", "-d", is_flag=True, help="Enable debug output")
@click.pass_context
def cli(
    ctx: click.Context,
    config_path: Optional[str],
    data_file: Optional[str],
    verbose: bool,
    debug: bool,
) -> None:
    """
    Character Builder CLI

    Inspect character version history, restore earlier versions and resolve
    AI drafts.
    """
    ctx.ensure_object(dict)

    try:
        config = load_config(config_path)
    except ConfigurationError as e:
        click.echo(f"Configuration error: {e}", err=True)
        raise click.Abort()

    if debug:
        level = "DEBUG"
    elif verbose:
        level = "INFO"
    else:
        level = "WARNING"
    configure_logging(level=level, json_format=config.monitoring.json_logs)

    ctx.obj["config"] = config
    ctx.obj["data_file"] = data_file
    ctx.obj["verbose"] = verbose
    ctx.obj["debug"] = debug


@cli.group()
def config() -> None:
    """Configuration management commands."""
    pass


for command in character_commands.commands.values():
    cli.add_command(command)
for command in config_commands.commands.values():
    config.add_command(command)


if __name__ == "__main__":
    cli()
