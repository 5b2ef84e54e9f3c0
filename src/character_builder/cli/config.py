"""
Configuration commands for the Character Builder CLI.
"""

import json
import logging
import os
from pathlib import Path
from typing import Optional

import click
import yaml

from ..core.config import ENV_PREFIX, Config

logger = logging.getLogger(__name__)


@click.group()
def config_commands() -> None:
    """Configuration management commands."""
    pass


@config_commands.command()
@click.option(
    "--format",
    type=click.Choice(["json", "yaml", "table"]),
    default="table",
    help="Output format",
)
@click.option("--section", help="Show specific configuration section")
@click.pass_context
def show(ctx: click.Context, format: str, section: Optional[str]) -> None:
    """Show the effective configuration."""
    config: Config = ctx.obj["config"]
    data = config.to_dict()

    if section:
        if not isinstance(data.get(section), dict):
            click.echo(f"Unknown section: {section}", err=True)
            raise click.Abort()
        data = data[section]

    if format == "json":
        click.echo(json.dumps(data, indent=2, default=str))
    elif format == "yaml":
        click.echo(yaml.safe_dump(data, default_flow_style=False, sort_keys=False))
    else:
        click.echo("Character Builder Configuration")
        click.echo("=" * 40)
        for key, value in data.items():
            if isinstance(value, dict):
                click.echo(f"[{key}]")
                for option, option_value in value.items():
                    click.echo(f"  {option}: {option_value}")
            else:
                click.echo(f"{key}: {value}")


@config_commands.command()
@click.argument("file_path", type=click.Path(dir_okay=False))
@click.pass_context
def save(ctx: click.Context, file_path: str) -> None:
    """Write the effective configuration to a YAML file."""
    config: Config = ctx.obj["config"]
    try:
        config.save(Path(file_path))
    except OSError as e:
        click.echo(f"Error saving configuration: {e}", err=True)
        raise click.Abort()
    click.echo(f"Configuration saved to {file_path}")


@config_commands.command()
@click.pass_context
def env(ctx: click.Context) -> None:
    """List the environment variables that override configuration."""
    config: Config = ctx.obj["config"]
    click.echo(f"{ENV_PREFIX}ENVIRONMENT: {config.environment.value}")
    for section, options in config.to_dict().items():
        if not isinstance(options, dict):
            continue
        for option in options:
            name = f"{ENV_PREFIX}{section.upper()}__{option.upper()}"
            marker = " (set)" if name in os.environ else ""
            click.echo(f"{name}{marker}")
