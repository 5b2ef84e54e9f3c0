"""
Tests for the version store.
"""

import asyncio
from typing import Any, Dict

import pytest

from character_builder.characters.types import (
    Character,
    VersionSource,
    character_path,
    retired_draft_path,
    version_path,
)
from character_builder.characters.version_store import VersionStore
from character_builder.core.context import CharacterBuilderContext
from character_builder.core.exceptions import (
    AuthorizationError,
    BusyError,
    ConflictError,
    NotFoundError,
    StaleGenerationError,
    ValidationError,
)
from conftest import OWNER_ID, make_snapshot


async def add_draft(version_store: VersionStore, character_id: str, **changes: Any) -> str:
    return await version_store.create_version(
        character_id,
        make_snapshot(**(changes or {"level": 4})),
        "Draft via AI chat",
        VersionSource.AI,
        is_draft=True,
    )


class TestCharacters:
    """Test character creation and metadata."""

    @pytest.mark.asyncio
    async def test_create_character_writes_version_one(
        self, version_store: VersionStore, snapshot: Dict[str, Any]
    ) -> None:
        """Test a new character starts at a committed version 1."""
        character = await version_store.create_character(OWNER_ID, "Thorin", snapshot)

        versions = await version_store.get_versions(character.id)
        assert len(versions) == 1
        first = versions[0]
        assert first.version_number == 1
        assert first.source == VersionSource.MANUAL
        assert first.is_draft is False
        assert first.commit_message == "Initial character creation"
        assert character.latest_version_id == first.id
        assert character.created_at == character.updated_at

    @pytest.mark.asyncio
    async def test_create_character_rejects_invalid_snapshot(
        self, version_store: VersionStore, store: Any
    ) -> None:
        """Test nothing is written for an invalid sheet."""
        with pytest.raises(ValidationError):
            await version_store.create_character(OWNER_ID, "Nobody", {"name": "x"})
        assert store.to_dict()["documents"] == {}

    @pytest.mark.asyncio
    async def test_create_initial_version(
        self, version_store: VersionStore, store: Any, snapshot: Dict[str, Any]
    ) -> None:
        """Test version 1 for a character created without history."""
        await store.create_document(
            character_path("bare"),
            Character(
                id="bare", owner_id=OWNER_ID, display_name="Bare",
                created_at="t0", updated_at="t0",
            ).to_record(),
        )

        version_id = await version_store.create_initial_version("bare", snapshot)

        version = await version_store.get_version("bare", version_id)
        assert version.version_number == 1
        assert version.source == VersionSource.MANUAL
        character = await version_store.get_character("bare")
        assert character.latest_version_id == version_id
        assert character.updated_at != "t0"

        with pytest.raises(ConflictError):
            await version_store.create_initial_version("bare", snapshot)

    @pytest.mark.asyncio
    async def test_create_initial_version_validates(
        self, version_store: VersionStore, character: Character
    ) -> None:
        """Test an invalid first snapshot is rejected."""
        with pytest.raises(ValidationError):
            await version_store.create_initial_version(character.id, make_snapshot(level=0))

    @pytest.mark.asyncio
    async def test_list_characters_by_owner(
        self, version_store: VersionStore, snapshot: Dict[str, Any]
    ) -> None:
        """Test listing is per owner and newest first."""
        first = await version_store.create_character(OWNER_ID, "First", snapshot)
        await version_store.create_character("someone-else", "Other", snapshot)
        second = await version_store.create_character(OWNER_ID, "Second", snapshot)

        listed = await version_store.list_characters(OWNER_ID)
        assert [c.id for c in listed] == [second.id, first.id]

        await version_store.create_version(first.id, snapshot, "touch", "manual")
        listed = await version_store.list_characters(OWNER_ID)
        assert [c.id for c in listed] == [first.id, second.id]

    @pytest.mark.asyncio
    async def test_update_and_campaign_links(
        self, version_store: VersionStore, character: Character
    ) -> None:
        """Test metadata updates leave the history alone."""
        updated = await version_store.update_character(character.id, display_name="Thorin II")
        assert updated.display_name == "Thorin II"

        linked = await version_store.link_campaign(character.id, "campaign-1")
        assert linked.campaign_id == "campaign-1"
        assert linked.display_name == "Thorin II"

        unlinked = await version_store.unlink_campaign(character.id)
        assert unlinked.campaign_id is None
        assert len(await version_store.get_versions(character.id)) == 1

    @pytest.mark.asyncio
    async def test_update_rejects_foreign_actor(
        self, version_store: VersionStore, character: Character
    ) -> None:
        """Test non-owners cannot change metadata."""
        with pytest.raises(AuthorizationError):
            await version_store.update_character(
                character.id, display_name="Mine now", actor_id="intruder"
            )

    @pytest.mark.asyncio
    async def test_get_missing_character(self, version_store: VersionStore) -> None:
        """Test reading an unknown character."""
        with pytest.raises(NotFoundError) as exc_info:
            await version_store.get_character("missing")
        assert exc_info.value.details["operation"] == "get_character"
        assert exc_info.value.component == "VersionStore"


class TestCreateVersion:
    """Test appending versions."""

    @pytest.mark.asyncio
    async def test_append_advances_pointer(
        self, version_store: VersionStore, character: Character
    ) -> None:
        """Test a manual edit becomes the latest version."""
        version_id = await version_store.create_version(
            character.id, make_snapshot(level=5), "Level up", "manual"
        )

        latest = await version_store.get_latest_version(character.id)
        assert latest.id == version_id
        assert latest.version_number == 2
        assert latest.snapshot["level"] == 5
        refreshed = await version_store.get_character(character.id)
        assert refreshed.latest_version_id == version_id
        assert refreshed.updated_at > character.updated_at

    @pytest.mark.asyncio
    async def test_missing_character(self, version_store: VersionStore) -> None:
        """Test appending to an unknown character."""
        with pytest.raises(NotFoundError) as exc_info:
            await version_store.create_version(
                "missing", make_snapshot(), "edit", "manual"
            )
        assert exc_info.value.details["character_id"] == "missing"

    @pytest.mark.asyncio
    async def test_invalid_snapshot_writes_nothing(
        self, version_store: VersionStore, character: Character
    ) -> None:
        """Test validation happens before any write."""
        with pytest.raises(ValidationError):
            await version_store.create_version(
                character.id, make_snapshot(level=99), "bad", "manual"
            )
        assert len(await version_store.get_versions(character.id)) == 1

    @pytest.mark.asyncio
    async def test_foreign_actor_rejected(
        self, version_store: VersionStore, character: Character
    ) -> None:
        """Test non-owners cannot append."""
        with pytest.raises(AuthorizationError):
            await version_store.create_version(
                character.id, make_snapshot(), "edit", "manual", actor_id="intruder"
            )
        assert len(await version_store.get_versions(character.id)) == 1

    @pytest.mark.asyncio
    async def test_errors_name_attempted_version(
        self, version_store: VersionStore, character: Character
    ) -> None:
        """Test a failed write reports the id it would have used."""
        with pytest.raises(AuthorizationError) as exc_info:
            await version_store.create_version(
                character.id, make_snapshot(), "edit", "manual", actor_id="intruder"
            )

        details = exc_info.value.details
        assert details["operation"] == "create_version"
        assert details["character_id"] == character.id
        attempted = details["version_id"]
        assert attempted not in (character.id, character.latest_version_id)
        with pytest.raises(NotFoundError):
            await version_store.get_version(character.id, attempted)

    @pytest.mark.asyncio
    async def test_restore_link_must_exist(
        self, version_store: VersionStore, character: Character
    ) -> None:
        """Test restoredFromVersionId must reference a stored version."""
        with pytest.raises(NotFoundError):
            await version_store.create_version(
                character.id, make_snapshot(), "restore", "restore", "nope"
            )

    @pytest.mark.asyncio
    async def test_restore_source_requires_link(
        self, version_store: VersionStore, character: Character
    ) -> None:
        """Test restore versions must say what they restore."""
        with pytest.raises(ValidationError):
            await version_store.create_version(
                character.id, make_snapshot(), "restore", VersionSource.RESTORE
            )


class TestDrafts:
    """Test the single draft slot."""

    @pytest.mark.asyncio
    async def test_new_draft_supersedes_pending_one(
        self, version_store: VersionStore, store: Any, character: Character
    ) -> None:
        """Test only one draft exists and the old one is tombstoned."""
        first = await add_draft(version_store, character.id, level=4)
        second = await add_draft(version_store, character.id, level=5)

        versions = await version_store.get_versions(character.id)
        drafts = [v for v in versions if v.is_draft]
        assert [d.id for d in drafts] == [second]
        assert [v.version_number for v in versions] == [3, 1]

        tombstone = await store.get_document(retired_draft_path(character.id, first))
        assert tombstone["reason"] == "superseded"
        assert tombstone["supersededBy"] == second

        with pytest.raises(ConflictError) as exc_info:
            await version_store.finalize_draft(character.id, first)
        assert exc_info.value.error_code == "DRAFT_RETIRED"

    @pytest.mark.asyncio
    async def test_commit_in_place(
        self, version_store: VersionStore, character: Character
    ) -> None:
        """Test commit keeps the id and number and only flips the flag."""
        draft_id = await add_draft(version_store, character.id)
        before = await version_store.get_version(character.id, draft_id)

        committed = await version_store.finalize_draft(character.id, draft_id)

        assert committed.id == before.id
        assert committed.version_number == before.version_number
        assert committed.is_draft is False
        after = await version_store.get_version(character.id, draft_id)
        assert after.snapshot == before.snapshot
        assert after.created_at == before.created_at
        assert (await version_store.get_latest_version(character.id)).id == draft_id

    @pytest.mark.asyncio
    async def test_commit_twice_conflicts(
        self, version_store: VersionStore, character: Character
    ) -> None:
        """Test a second commit is reported as already resolved."""
        draft_id = await add_draft(version_store, character.id)
        await version_store.finalize_draft(character.id, draft_id)

        with pytest.raises(ConflictError) as exc_info:
            await version_store.finalize_draft(character.id, draft_id)
        assert exc_info.value.error_code == "ALREADY_COMMITTED"

    @pytest.mark.asyncio
    async def test_commit_unknown_version(
        self, version_store: VersionStore, character: Character
    ) -> None:
        """Test committing something that never existed."""
        with pytest.raises(NotFoundError):
            await version_store.finalize_draft(character.id, "never-existed")

    @pytest.mark.asyncio
    async def test_commit_non_latest_draft_conflicts(
        self, version_store: VersionStore, character: Character
    ) -> None:
        """Test a draft overtaken by a restore can no longer be committed."""
        first_id = (await version_store.get_versions(character.id))[0].id
        draft_id = await add_draft(version_store, character.id)
        await version_store.restore_version(character.id, first_id)

        with pytest.raises(ConflictError) as exc_info:
            await version_store.finalize_draft(character.id, draft_id)
        assert exc_info.value.error_code == "DRAFT_SUPERSEDED"

    @pytest.mark.asyncio
    async def test_dismiss_restores_previous_history(
        self, version_store: VersionStore, character: Character
    ) -> None:
        """Test dismissal leaves the history as it was before the draft."""
        await version_store.create_version(character.id, make_snapshot(level=5), "edit", "manual")
        before = await version_store.get_versions(character.id)

        draft_id = await add_draft(version_store, character.id)
        latest = await version_store.discard_draft(character.id, draft_id)

        assert await version_store.get_versions(character.id) == before
        assert latest.id == before[0].id
        refreshed = await version_store.get_character(character.id)
        assert refreshed.latest_version_id == before[0].id
        assert refreshed.latest_version_number == 2

    @pytest.mark.asyncio
    async def test_dismissed_number_never_reused(
        self, version_store: VersionStore, character: Character
    ) -> None:
        """Test the next version after a dismissal skips the dismissed number."""
        draft_id = await add_draft(version_store, character.id)
        dismissed_number = (await version_store.get_version(character.id, draft_id)).version_number
        await version_store.discard_draft(character.id, draft_id)

        new_id = await version_store.create_version(
            character.id, make_snapshot(), "edit", "manual"
        )
        new_version = await version_store.get_version(character.id, new_id)
        assert new_version.version_number == dismissed_number + 1

    @pytest.mark.asyncio
    async def test_commit_after_dismiss_conflicts(
        self, version_store: VersionStore, character: Character
    ) -> None:
        """Test resolving a draft twice in different ways."""
        draft_id = await add_draft(version_store, character.id)
        await version_store.discard_draft(character.id, draft_id)

        with pytest.raises(ConflictError):
            await version_store.finalize_draft(character.id, draft_id)
        with pytest.raises(ConflictError):
            await version_store.discard_draft(character.id, draft_id)

    @pytest.mark.asyncio
    async def test_dismiss_committed_version_conflicts(
        self, version_store: VersionStore, character: Character
    ) -> None:
        """Test committed versions cannot be dismissed."""
        first_id = character.latest_version_id
        with pytest.raises(ConflictError):
            await version_store.discard_draft(character.id, first_id)

    @pytest.mark.asyncio
    async def test_concurrent_commit_and_dismiss(
        self, version_store: VersionStore, character: Character
    ) -> None:
        """Test exactly one of a racing commit and dismiss wins."""
        draft_id = await add_draft(version_store, character.id)

        results = await asyncio.gather(
            version_store.finalize_draft(character.id, draft_id),
            version_store.discard_draft(character.id, draft_id),
            return_exceptions=True,
        )

        failures = [r for r in results if isinstance(r, Exception)]
        assert len(failures) == 1
        assert isinstance(failures[0], ConflictError)

    @pytest.mark.asyncio
    async def test_stale_generation_cannot_write(
        self, version_store: VersionStore, character: Character
    ) -> None:
        """Test a draft write guarded by an ended generation is refused."""
        await version_store.begin_generation(character.id, "gen-1")
        assert await version_store.end_generation(character.id, "gen-1") is True

        with pytest.raises(StaleGenerationError):
            await version_store.create_version(
                character.id, make_snapshot(), "Draft", "ai",
                is_draft=True, generation_id="gen-1",
            )
        assert len(await version_store.get_versions(character.id)) == 1

    @pytest.mark.asyncio
    async def test_generation_write_clears_flag(
        self, version_store: VersionStore, character: Character
    ) -> None:
        """Test the draft write ends its generation atomically."""
        await version_store.begin_generation(character.id, "gen-1")
        await version_store.create_version(
            character.id, make_snapshot(), "Draft", "ai",
            is_draft=True, generation_id="gen-1",
        )

        refreshed = await version_store.get_character(character.id)
        assert refreshed.is_generating is False
        assert refreshed.active_generation_id is None
        assert await version_store.end_generation(character.id, "gen-1") is False

    @pytest.mark.asyncio
    async def test_begin_generation_busy(
        self, version_store: VersionStore, character: Character
    ) -> None:
        """Test only one generation may be in flight."""
        await version_store.begin_generation(character.id, "gen-1")
        with pytest.raises(BusyError):
            await version_store.begin_generation(character.id, "gen-2")


class TestRestoreAndReads:
    """Test restore and one-shot reads."""

    @pytest.mark.asyncio
    async def test_full_lifecycle(
        self, version_store: VersionStore, character: Character
    ) -> None:
        """Test v1, AI draft v2, commit, then restore v1 as v3."""
        v1 = (await version_store.get_versions(character.id))[0]
        v2_id = await add_draft(version_store, character.id, level=4)
        v2 = await version_store.get_version(character.id, v2_id)
        assert v2.version_number == 2
        assert v2.is_draft is True

        await version_store.finalize_draft(character.id, v2_id)
        assert (await version_store.get_latest_version(character.id)).id == v2_id

        v3_id = await version_store.restore_version(character.id, v1.id)
        v3 = await version_store.get_version(character.id, v3_id)
        assert v3.version_number == 3
        assert v3.snapshot == v1.snapshot
        assert v3.source == VersionSource.RESTORE
        assert v3.restored_from_version_id == v1.id
        assert v3.commit_message == "Restored version 1"
        assert v3.is_draft is False

    @pytest.mark.asyncio
    async def test_restore_and_draft_race(
        self, version_store: VersionStore, character: Character
    ) -> None:
        """Test a restore and an AI draft racing get distinct numbers."""
        v1_id = character.latest_version_id
        await version_store.create_version(character.id, make_snapshot(level=5), "edit", "manual")

        restore_id, draft_id = await asyncio.gather(
            version_store.restore_version(character.id, v1_id),
            add_draft(version_store, character.id),
        )

        restored = await version_store.get_version(character.id, restore_id)
        draft = await version_store.get_version(character.id, draft_id)
        assert {restored.version_number, draft.version_number} == {3, 4}

    @pytest.mark.asyncio
    async def test_restore_draft_rejected(
        self, version_store: VersionStore, character: Character
    ) -> None:
        """Test drafts cannot be restored."""
        draft_id = await add_draft(version_store, character.id)
        with pytest.raises(ValidationError):
            await version_store.restore_version(character.id, draft_id)

    @pytest.mark.asyncio
    async def test_restore_missing_version(
        self, version_store: VersionStore, character: Character
    ) -> None:
        """Test restoring an unknown version."""
        with pytest.raises(NotFoundError):
            await version_store.restore_version(character.id, "missing")

    @pytest.mark.asyncio
    async def test_restore_by_foreign_actor(
        self, version_store: VersionStore, character: Character
    ) -> None:
        """Test non-owners cannot restore."""
        with pytest.raises(AuthorizationError):
            await version_store.restore_version(
                character.id, character.latest_version_id, actor_id="intruder"
            )

    @pytest.mark.asyncio
    async def test_get_version_revalidates(
        self,
        version_store: VersionStore,
        context: CharacterBuilderContext,
        character: Character,
    ) -> None:
        """Test a stored snapshot that drifted from the schema is reported."""
        path = version_path(character.id, character.latest_version_id)

        async def corrupt(txn: Any) -> None:
            await txn.get(path)
            txn.update(path, {"snapshot": {"name": "half a sheet"}})

        await context.store.transactional_read_modify_write(corrupt)

        with pytest.raises(ValidationError) as exc_info:
            await version_store.get_version(character.id, character.latest_version_id)
        assert exc_info.value.details["version_id"] == character.latest_version_id

    @pytest.mark.asyncio
    async def test_get_versions_unknown_character(self, version_store: VersionStore) -> None:
        """Test history of an unknown character."""
        with pytest.raises(NotFoundError):
            await version_store.get_versions("missing")

    @pytest.mark.asyncio
    async def test_get_pending_draft(
        self, version_store: VersionStore, character: Character
    ) -> None:
        """Test finding the pending draft."""
        assert await version_store.get_pending_draft(character.id) is None
        draft_id = await add_draft(version_store, character.id)
        assert (await version_store.get_pending_draft(character.id)).id == draft_id
