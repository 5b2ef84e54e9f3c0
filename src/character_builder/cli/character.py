"""
Character and version commands for the Character Builder CLI.

Every command loads the JSON-backed document store, runs one version store
operation and writes the store back when something changed.
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, TypeVar

import click

from ..characters.types import CharacterVersion
from ..characters.version_store import VersionStore
from ..core.config import Config
from ..core.context import CharacterBuilderContext
from ..core.exceptions import CharacterBuilderError
from ..core.logging import correlation, generate_request_id
from ..storage import InMemoryDocumentStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


def run_operation(
    ctx: click.Context,
    operation: Callable[[VersionStore], Awaitable[T]],
    persist: bool = False,
) -> T:
    """Run a version store operation against the data file."""
    config: Config = ctx.obj["config"]
    data_file = Path(ctx.obj.get("data_file") or config.storage.data_file)

    try:
        store = InMemoryDocumentStore.load(data_file)
        versions = VersionStore(CharacterBuilderContext(store=store, config=config))
        with correlation(request_id=generate_request_id()):
            result = asyncio.run(operation(versions))
        if persist:
            store.save(data_file)
    except CharacterBuilderError as e:
        logger.debug(f"Command failed: {e!r}")
        click.echo(f"Error: {e.user_message} {e}", err=True)
        raise click.Abort()
    return result


def _format_version(version: CharacterVersion) -> str:
    flags = " [draft]" if version.is_draft else ""
    if version.restored_from_version_id:
        flags += f" (from {version.restored_from_version_id})"
    return (
        f"v{version.version_number:<4} {version.id}  {version.source.value:<7} "
        f"{version.created_at}  {version.commit_message}{flags}"
    )


def _load_snapshot(path: str) -> Any:
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"{path} is not valid JSON: {e}") from e


@click.group()
def character_commands() -> None:
    """Character and version history commands."""
    pass


@character_commands.command()
@click.option("--owner", required=True, help="Owner id of the new character")
@click.option("--name", required=True, help="Display name")
@click.option(
    "--snapshot",
    "snapshot_file",
    required=True,
    type=click.Path(exists=True, dir_okay=False),
    help="JSON file with the character sheet",
)
@click.option("--campaign", help="Campaign to link the character to")
@click.pass_context
def create(
    ctx: click.Context,
    owner: str,
    name: str,
    snapshot_file: str,
    campaign: Optional[str],
) -> None:
    """Create a character with its first version."""
    snapshot = _load_snapshot(snapshot_file)
    character = run_operation(
        ctx,
        lambda versions: versions.create_character(owner, name, snapshot, campaign),
        persist=True,
    )
    click.echo(character.id)


@character_commands.command(name="list")
@click.option("--owner", required=True, help="Owner id")
@click.pass_context
def list_characters(ctx: click.Context, owner: str) -> None:
    """List an owner's characters, most recently updated first."""
    characters = run_operation(ctx, lambda versions: versions.list_characters(owner))
    if not characters:
        click.echo("No characters found.")
        return
    for character in characters:
        status = " (generating)" if character.is_generating else ""
        click.echo(
            f"{character.id}  {character.display_name}  "
            f"v{character.latest_version_number}  {character.updated_at}{status}"
        )


@character_commands.command()
@click.argument("character_id")
@click.pass_context
def history(ctx: click.Context, character_id: str) -> None:
    """Show a character's version history, newest first."""
    for version in run_operation(ctx, lambda versions: versions.get_versions(character_id)):
        click.echo(_format_version(version))


@character_commands.command()
@click.argument("character_id")
@click.option("--version", "version_id", help="Version id (defaults to the latest)")
@click.pass_context
def show(ctx: click.Context, character_id: str, version_id: Optional[str]) -> None:
    """Print a version's character sheet as JSON."""

    async def fetch(versions: VersionStore) -> Optional[CharacterVersion]:
        if version_id:
            return await versions.get_version(character_id, version_id)
        return await versions.get_latest_version(character_id)

    version = run_operation(ctx, fetch)
    if version is None:
        click.echo(f"Character {character_id} has no versions.", err=True)
        raise click.Abort()
    click.echo(json.dumps(version.snapshot, indent=2, sort_keys=True))


@character_commands.command()
@click.argument("character_id")
@click.argument("version_id")
@click.option("--actor", help="Acting user; must own the character")
@click.pass_context
def restore(
    ctx: click.Context, character_id: str, version_id: str, actor: Optional[str]
) -> None:
    """Restore an earlier version as a new version."""
    new_id = run_operation(
        ctx,
        lambda versions: versions.restore_version(character_id, version_id, actor_id=actor),
        persist=True,
    )
    click.echo(new_id)


@character_commands.command()
@click.argument("character_id")
@click.argument("version_id")
@click.option("--actor", help="Acting user; must own the character")
@click.pass_context
def commit(
    ctx: click.Context, character_id: str, version_id: str, actor: Optional[str]
) -> None:
    """Accept a pending draft."""
    version = run_operation(
        ctx,
        lambda versions: versions.finalize_draft(character_id, version_id, actor_id=actor),
        persist=True,
    )
    click.echo(f"Committed version {version.version_number}")


@character_commands.command()
@click.argument("character_id")
@click.argument("version_id")
@click.option("--actor", help="Acting user; must own the character")
@click.pass_context
def dismiss(
    ctx: click.Context, character_id: str, version_id: str, actor: Optional[str]
) -> None:
    """Throw a pending draft away."""
    latest = run_operation(
        ctx,
        lambda versions: versions.discard_draft(character_id, version_id, actor_id=actor),
        persist=True,
    )
    if latest is None:
        click.echo("Draft dismissed; no versions remain.")
    else:
        click.echo(f"Draft dismissed; latest is version {latest.version_number}")
