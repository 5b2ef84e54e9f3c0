"""
Append-only version history for characters.

Every mutation of a character's sheet lands here as a new numbered version.
Numbers are allocated by the ConflictResolver inside the same transaction that
writes the version, so concurrent writers never share a number and a number is
never reused, not even after a draft was dismissed.

Drafts are versions flagged ``isDraft``. A character holds at most one: a new
AI draft retires the pending one (recorded under ``retiredDrafts``) in the same
transaction that inserts the replacement. Committing flips the flag in place;
dismissing deletes the record and repoints the character at the highest
remaining version.
"""

import logging
from typing import Any, Dict, List, Optional, Union

from ..core.context import CharacterBuilderContext
from ..core.exceptions import (
    AuthorizationError,
    BusyError,
    CharacterBuilderError,
    ConflictError,
    NotFoundError,
    StaleGenerationError,
    TransientStoreError,
    ValidationError,
    wrap_errors,
)
from ..core.logging import get_logger
from ..core.protocols import Document, Transaction
from ..core.resilience import RetryConfig, RetryExhaustedError, retry_with_backoff
from .change_notifier import ChangeNotifier, Subscription
from .conflict_resolver import ConflictResolver
from .types import (
    CHARACTERS_COLLECTION,
    Character,
    CharacterVersion,
    RetiredReason,
    VersionSource,
    character_path,
    retired_draft_path,
    version_path,
    versions_path,
)

logger = logging.getLogger(__name__)
structured_logger = get_logger(__name__)

COMPONENT = "VersionStore"

_UNSET: Any = object()


def _check_owner(record: Document, character_id: str, actor_id: Optional[str]) -> None:
    if actor_id is not None and record.get("ownerId") != actor_id:
        raise AuthorizationError(actor_id, character_id, component=COMPONENT)


class VersionStore:
    """Character records and their append-only version history."""

    def __init__(
        self,
        context: CharacterBuilderContext,
        resolver: Optional[ConflictResolver] = None,
        notifier: Optional[ChangeNotifier] = None,
    ):
        self.context = context
        self.store = context.store
        self.config = context.config.versioning
        self.resolver = resolver or ConflictResolver(context)
        self.notifier = notifier or ChangeNotifier(context)
        self._read_retry = RetryConfig(
            max_attempts=self.config.max_attempts,
            base_delay=self.config.base_delay_s,
            max_delay=self.config.max_delay_s,
            jitter=self.config.jitter,
        )

    # -- helpers -----------------------------------------------------------

    def _validate(self, snapshot: Any) -> Dict[str, Any]:
        return self.context.validator(snapshot)

    async def _read(self, func: Any, description: str) -> Any:
        """One-shot read retried on transient backend failures."""
        try:
            return await retry_with_backoff(
                func,
                self._read_retry,
                expected_exceptions=(TransientStoreError,),
                description=description,
            )
        except RetryExhaustedError as e:
            raise e.last_exception

    async def _load_character(self, txn: Transaction, character_id: str) -> Document:
        record = await txn.get(character_path(character_id))
        if record is None:
            raise NotFoundError("Character", character_id, component=COMPONENT)
        return record

    async def _missing_version_error(
        self, txn: Transaction, character_id: str, version_id: str
    ) -> Exception:
        """NotFoundError, or ConflictError when the draft was already retired."""
        retired = await txn.get(retired_draft_path(character_id, version_id))
        if retired is not None:
            return ConflictError(
                f"Draft {version_id} was already {retired.get('reason')}",
                error_code="DRAFT_RETIRED",
                details={"reason": retired.get("reason")},
                component=COMPONENT,
            )
        return NotFoundError("CharacterVersion", version_id, component=COMPONENT)

    def _initial_version(self, character_id: str, snapshot: Dict[str, Any]) -> CharacterVersion:
        return CharacterVersion(
            id=self.context.id_factory(),
            character_id=character_id,
            version_number=1,
            snapshot=snapshot,
            commit_message=self.config.initial_commit_message,
            source=VersionSource.MANUAL,
            created_at=self.context.now_iso(),
        )

    # -- characters --------------------------------------------------------

    @wrap_errors("create_character", COMPONENT)
    async def create_character(
        self,
        owner_id: str,
        display_name: str,
        snapshot: Any,
        campaign_id: Optional[str] = None,
    ) -> Character:
        """Create a character together with its version 1.

        Both documents are written in one transaction, so a character never
        exists without history.

        Raises:
            ValidationError: If the snapshot does not match the schema
        """
        normalized = self._validate(snapshot)
        character_id = self.context.id_factory()
        version = self._initial_version(character_id, normalized)
        character = Character(
            id=character_id,
            owner_id=owner_id,
            display_name=display_name,
            campaign_id=campaign_id,
            created_at=version.created_at,
            updated_at=version.created_at,
            latest_version_id=version.id,
            latest_version_number=1,
            version_counter=1,
        )

        async def create(txn: Transaction) -> None:
            if await txn.get(character_path(character_id)) is not None:
                raise ConflictError(
                    f"Character {character_id} already exists", component=COMPONENT
                )
            txn.set(character_path(character_id), character.to_record())
            txn.set(version_path(character_id, version.id), version.to_record())

        await self.resolver.run(character_id, create, "create character")
        structured_logger.log_version_event(
            "character_created",
            character_id,
            owner_id=owner_id,
            version_id=version.id,
            version_number=1,
        )
        return character

    @wrap_errors("create_initial_version", COMPONENT)
    async def create_initial_version(self, character_id: str, snapshot: Any) -> str:
        """Write version 1 for a character that has no history yet.

        Returns:
            The id of the new version

        Raises:
            ConflictError: If the character already has versions
        """
        normalized = self._validate(snapshot)
        version = self._initial_version(character_id, normalized)

        async def write(txn: Transaction) -> None:
            await self._load_character(txn, character_id)
            existing = await txn.query_ordered_descending(
                versions_path(character_id), "versionNumber", limit=1
            )
            if existing:
                raise ConflictError(
                    f"Character {character_id} already has version history",
                    error_code="HISTORY_EXISTS",
                    component=COMPONENT,
                )
            txn.set(version_path(character_id, version.id), version.to_record())
            txn.update(
                character_path(character_id),
                {
                    "latestVersionId": version.id,
                    "latestVersionNumber": 1,
                    "versionCounter": 1,
                    "updatedAt": version.created_at,
                },
            )

        await self.resolver.run(character_id, write, "initial version")
        structured_logger.log_version_event(
            "initial_version", character_id, version_id=version.id, version_number=1
        )
        return version.id

    @wrap_errors("get_character", COMPONENT)
    async def get_character(self, character_id: str) -> Character:
        record = await self._read(
            lambda: self.store.get_document(character_path(character_id)),
            f"get character {character_id}",
        )
        if record is None:
            raise NotFoundError("Character", character_id, component=COMPONENT)
        return Character.from_record(record)

    @wrap_errors("list_characters", COMPONENT)
    async def list_characters(self, owner_id: str) -> List[Character]:
        """Characters owned by ``owner_id``, most recently updated first."""
        records = await self._read(
            lambda: self.store.query_ordered_descending(
                CHARACTERS_COLLECTION, "updatedAt"
            ),
            f"list characters of {owner_id}",
        )
        return [
            Character.from_record(record)
            for record in records
            if record.get("ownerId") == owner_id
        ]

    @wrap_errors("update_character", COMPONENT)
    async def update_character(
        self,
        character_id: str,
        *,
        display_name: Optional[str] = None,
        campaign_id: Any = _UNSET,
        actor_id: Optional[str] = None,
    ) -> Character:
        """Change character metadata. The version history is not touched."""
        fields: Dict[str, Any] = {}
        if display_name is not None:
            if not display_name.strip():
                raise ValidationError("name", display_name, "name must not be empty")
            fields["name"] = display_name
        if campaign_id is not _UNSET:
            fields["campaignId"] = campaign_id

        async def update(txn: Transaction) -> Document:
            record = await self._load_character(txn, character_id)
            _check_owner(record, character_id, actor_id)
            changes = dict(fields, updatedAt=self.context.now_iso())
            txn.update(character_path(character_id), changes)
            record.update(changes)
            return record

        record = await self.resolver.run(character_id, update, "update character")
        logger.info(f"Updated character {character_id}: {sorted(fields)}")
        return Character.from_record(record)

    async def link_campaign(
        self, character_id: str, campaign_id: str, actor_id: Optional[str] = None
    ) -> Character:
        return await self.update_character(
            character_id, campaign_id=campaign_id, actor_id=actor_id
        )

    async def unlink_campaign(
        self, character_id: str, actor_id: Optional[str] = None
    ) -> Character:
        return await self.update_character(
            character_id, campaign_id=None, actor_id=actor_id
        )

    # -- versions ----------------------------------------------------------

    @wrap_errors("create_version", COMPONENT)
    async def create_version(
        self,
        character_id: str,
        snapshot: Any,
        commit_message: str,
        source: Union[VersionSource, str],
        restored_from_version_id: Optional[str] = None,
        *,
        is_draft: bool = False,
        generation_id: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> str:
        """Append a new version and make it the character's latest.

        Args:
            character_id: Character to append to
            snapshot: Raw character sheet, validated before anything is written
            commit_message: Human readable description of the change
            source: Origin of the change
            restored_from_version_id: Committed version this one was copied from
            is_draft: Write a draft; a pending draft is retired in the same
                transaction
            generation_id: Only write if this generation is still the active
                one, and end it atomically with the write
            actor_id: When given, must be the character's owner

        Returns:
            The id of the new version

        Raises:
            ValidationError: If the snapshot is invalid or the restore source
                is a draft
            NotFoundError: If the character or the restore source is missing
            StaleGenerationError: If ``generation_id`` is no longer active
            ConflictError: If contention outlasted every retry
        """
        source = VersionSource(source)
        if source == VersionSource.RESTORE and not restored_from_version_id:
            raise ValidationError(
                "restoredFromVersionId", None, "restores must name their source version"
            )
        normalized = self._validate(snapshot)
        version_id = self.context.id_factory()

        async def write(txn: Transaction, number: int) -> CharacterVersion:
            record = await self._load_character(txn, character_id)
            _check_owner(record, character_id, actor_id)
            if generation_id is not None and record.get("activeGenerationId") != generation_id:
                raise StaleGenerationError(generation_id, component=COMPONENT)

            if restored_from_version_id:
                origin = await txn.get(version_path(character_id, restored_from_version_id))
                if origin is None:
                    raise NotFoundError(
                        "CharacterVersion", restored_from_version_id, component=COMPONENT
                    )
                if origin.get("isDraft"):
                    raise ValidationError(
                        "restoredFromVersionId",
                        restored_from_version_id,
                        "drafts cannot be restored",
                    )

            pending: List[Document] = []
            if is_draft:
                history = await txn.query_ordered_descending(
                    versions_path(character_id), "versionNumber"
                )
                pending = [doc for doc in history if doc.get("isDraft")]

            now = self.context.now_iso()
            version = CharacterVersion(
                id=version_id,
                character_id=character_id,
                version_number=number,
                snapshot=normalized,
                commit_message=commit_message,
                source=source,
                created_at=now,
                restored_from_version_id=restored_from_version_id,
                is_draft=is_draft,
            )

            for draft in pending:
                txn.delete(version_path(character_id, draft["id"]))
                txn.set(
                    retired_draft_path(character_id, draft["id"]),
                    {
                        "versionId": draft["id"],
                        "versionNumber": draft["versionNumber"],
                        "reason": RetiredReason.SUPERSEDED.value,
                        "supersededBy": version_id,
                        "retiredAt": now,
                    },
                )
            txn.set(version_path(character_id, version_id), version.to_record())

            changes: Dict[str, Any] = {
                "latestVersionId": version_id,
                "latestVersionNumber": number,
                "versionCounter": number,
                "updatedAt": now,
            }
            if generation_id is not None:
                changes.update(isGenerating=False, activeGenerationId=None)
            txn.update(character_path(character_id), changes)
            return version

        try:
            version = await self.resolver.allocate_and_write(
                character_id, write, "draft write" if is_draft else "version write"
            )
        except CharacterBuilderError as e:
            raise e.with_context(version_id=version_id)
        structured_logger.log_version_event(
            "version_created",
            character_id,
            version_id=version.id,
            version_number=version.version_number,
            source=version.source.value,
            is_draft=is_draft,
        )
        return version.id

    @wrap_errors("restore_version", COMPONENT)
    async def restore_version(
        self, character_id: str, version_id: str, actor_id: Optional[str] = None
    ) -> str:
        """Copy an earlier committed version forward as a new version.

        History is never rewritten: the restore is appended with a link back
        to its origin.

        Returns:
            The id of the new version
        """
        origin = await self._read(
            lambda: self.store.get_document(version_path(character_id, version_id)),
            f"get version {version_id}",
        )
        if origin is None:
            raise NotFoundError("CharacterVersion", version_id, component=COMPONENT)
        if origin.get("isDraft"):
            raise ValidationError("versionId", version_id, "drafts cannot be restored")

        return await self.create_version(
            character_id,
            origin["snapshot"],
            f"Restored version {origin['versionNumber']}",
            VersionSource.RESTORE,
            version_id,
            actor_id=actor_id,
        )

    @wrap_errors("get_versions", COMPONENT)
    async def get_versions(self, character_id: str) -> List[CharacterVersion]:
        """Full history, newest first, drafts included."""
        await self.get_character(character_id)
        records = await self._read(
            lambda: self.store.query_ordered_descending(
                versions_path(character_id), "versionNumber"
            ),
            f"get versions of {character_id}",
        )
        return [CharacterVersion.from_record(record) for record in records]

    @wrap_errors("get_version", COMPONENT)
    async def get_version(self, character_id: str, version_id: str) -> CharacterVersion:
        """Single version, with its snapshot checked against the current schema.

        Raises:
            NotFoundError: If the version does not exist
            ValidationError: If the stored snapshot no longer matches the schema
        """
        record = await self._read(
            lambda: self.store.get_document(version_path(character_id, version_id)),
            f"get version {version_id}",
        )
        if record is None:
            raise NotFoundError("CharacterVersion", version_id, component=COMPONENT)

        version = CharacterVersion.from_record(record)
        try:
            self._validate(version.snapshot)
        except ValidationError as e:
            structured_logger.warning(
                "Stored snapshot failed validation",
                character_id=character_id,
                version_id=version_id,
                field=e.details.get("field"),
            )
            raise
        return version

    @wrap_errors("get_latest_version", COMPONENT)
    async def get_latest_version(self, character_id: str) -> Optional[CharacterVersion]:
        records = await self._read(
            lambda: self.store.query_ordered_descending(
                versions_path(character_id), "versionNumber", limit=1
            ),
            f"get latest version of {character_id}",
        )
        return CharacterVersion.from_record(records[0]) if records else None

    @wrap_errors("get_pending_draft", COMPONENT)
    async def get_pending_draft(self, character_id: str) -> Optional[CharacterVersion]:
        for version in await self.get_versions(character_id):
            if version.is_draft:
                return version
        return None

    def watch_latest_version(self, character_id: str) -> Subscription:
        """Live feed of the character's highest-numbered version."""
        return self.notifier.subscribe_versions(character_id)

    # -- generation and draft lifecycle ------------------------------------

    @wrap_errors("begin_generation", COMPONENT)
    async def begin_generation(
        self, character_id: str, generation_id: str, actor_id: Optional[str] = None
    ) -> Character:
        """Mark a generation as in flight.

        Raises:
            BusyError: If another generation is already running
        """

        async def begin(txn: Transaction) -> Document:
            record = await self._load_character(txn, character_id)
            _check_owner(record, character_id, actor_id)
            if record.get("isGenerating"):
                raise BusyError(character_id, component=COMPONENT)
            changes = {"isGenerating": True, "activeGenerationId": generation_id}
            txn.update(character_path(character_id), changes)
            record.update(changes)
            return record

        record = await self.resolver.run(character_id, begin, "begin generation")
        return Character.from_record(record)

    @wrap_errors("end_generation", COMPONENT)
    async def end_generation(self, character_id: str, generation_id: str) -> bool:
        """Clear the in-flight flag if ``generation_id`` still owns it.

        Returns:
            True if the flag was cleared, False if another generation (or
            none) was active
        """

        async def end(txn: Transaction) -> bool:
            record = await self._load_character(txn, character_id)
            if record.get("activeGenerationId") != generation_id:
                return False
            txn.update(
                character_path(character_id),
                {"isGenerating": False, "activeGenerationId": None},
            )
            return True

        return await self.resolver.run(character_id, end, "end generation")

    @wrap_errors("finalize_draft", COMPONENT)
    async def finalize_draft(
        self, character_id: str, version_id: str, actor_id: Optional[str] = None
    ) -> CharacterVersion:
        """Commit a draft in place: the same record and number, ``isDraft`` off.

        Raises:
            NotFoundError: If the version never existed
            ConflictError: If the draft was already committed, dismissed or
                superseded by a newer version
        """

        async def finalize(txn: Transaction) -> Document:
            record = await self._load_character(txn, character_id)
            _check_owner(record, character_id, actor_id)
            draft = await txn.get(version_path(character_id, version_id))
            if draft is None:
                raise await self._missing_version_error(txn, character_id, version_id)
            if not draft.get("isDraft"):
                raise ConflictError(
                    f"Version {version_id} is already committed",
                    error_code="ALREADY_COMMITTED",
                    component=COMPONENT,
                )
            latest = await txn.query_ordered_descending(
                versions_path(character_id), "versionNumber", limit=1
            )
            if latest and latest[0]["id"] != version_id:
                raise ConflictError(
                    f"Draft {version_id} was superseded by version "
                    f"{latest[0]['versionNumber']}",
                    error_code="DRAFT_SUPERSEDED",
                    component=COMPONENT,
                )

            now = self.context.now_iso()
            txn.update(version_path(character_id, version_id), {"isDraft": False})
            txn.update(
                character_path(character_id),
                {
                    "latestVersionId": version_id,
                    "latestVersionNumber": draft["versionNumber"],
                    "updatedAt": now,
                },
            )
            draft["isDraft"] = False
            return draft

        committed = await self.resolver.run(character_id, finalize, "commit draft")
        structured_logger.log_version_event(
            "draft_committed",
            character_id,
            version_id=version_id,
            version_number=committed["versionNumber"],
        )
        return CharacterVersion.from_record(committed)

    @wrap_errors("discard_draft", COMPONENT)
    async def discard_draft(
        self, character_id: str, version_id: str, actor_id: Optional[str] = None
    ) -> Optional[CharacterVersion]:
        """Delete a draft and repoint the character at what remains.

        The high-water mark is left alone, so the discarded number is never
        handed out again.

        Returns:
            The character's new latest version

        Raises:
            NotFoundError: If the version never existed
            ConflictError: If the draft was already committed, dismissed or
                superseded
        """

        async def discard(txn: Transaction) -> Optional[Document]:
            record = await self._load_character(txn, character_id)
            _check_owner(record, character_id, actor_id)
            draft = await txn.get(version_path(character_id, version_id))
            if draft is None:
                raise await self._missing_version_error(txn, character_id, version_id)
            if not draft.get("isDraft"):
                raise ConflictError(
                    f"Version {version_id} is already committed",
                    error_code="ALREADY_COMMITTED",
                    component=COMPONENT,
                )
            history = await txn.query_ordered_descending(
                versions_path(character_id), "versionNumber"
            )
            remaining = [doc for doc in history if doc["id"] != version_id]
            new_latest = remaining[0] if remaining else None

            now = self.context.now_iso()
            txn.delete(version_path(character_id, version_id))
            txn.set(
                retired_draft_path(character_id, version_id),
                {
                    "versionId": version_id,
                    "versionNumber": draft["versionNumber"],
                    "reason": RetiredReason.DISMISSED.value,
                    "retiredAt": now,
                },
            )
            txn.update(
                character_path(character_id),
                {
                    "latestVersionId": new_latest["id"] if new_latest else None,
                    "latestVersionNumber": new_latest["versionNumber"] if new_latest else 0,
                    "updatedAt": now,
                },
            )
            return new_latest

        new_latest = await self.resolver.run(character_id, discard, "dismiss draft")
        structured_logger.log_version_event(
            "draft_dismissed",
            character_id,
            version_id=version_id,
            latest_version_id=new_latest["id"] if new_latest else None,
        )
        return CharacterVersion.from_record(new_latest) if new_latest else None
