"""
Character and version records for the Character Builder core.

Defines the aggregate root, the immutable version record and the document
layout they are persisted in.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

CHARACTERS_COLLECTION = "characters"


class VersionSource(Enum):
    """Where a version came from."""

    MANUAL = "manual"
    AI = "ai"
    RESTORE = "restore"


class RetiredReason(Enum):
    """Why a draft record was removed."""

    DISMISSED = "dismissed"
    SUPERSEDED = "superseded"


def character_path(character_id: str) -> str:
    return f"{CHARACTERS_COLLECTION}/{character_id}"


def versions_path(character_id: str) -> str:
    return f"{character_path(character_id)}/versions"


def version_path(character_id: str, version_id: str) -> str:
    return f"{versions_path(character_id)}/{version_id}"


def retired_draft_path(character_id: str, version_id: str) -> str:
    return f"{character_path(character_id)}/retiredDrafts/{version_id}"


@dataclass
class Character:
    """Aggregate root: a user's character and its pointer metadata."""

    id: str
    owner_id: str
    display_name: str
    created_at: str
    updated_at: str
    campaign_id: Optional[str] = None
    is_generating: bool = False
    active_generation_id: Optional[str] = None
    latest_version_id: Optional[str] = None
    latest_version_number: int = 0
    version_counter: int = 0

    def to_record(self) -> Dict[str, Any]:
        """Convert to the persisted document layout."""
        return {
            "id": self.id,
            "ownerId": self.owner_id,
            "name": self.display_name,
            "campaignId": self.campaign_id,
            "isGenerating": self.is_generating,
            "activeGenerationId": self.active_generation_id,
            "latestVersionId": self.latest_version_id,
            "latestVersionNumber": self.latest_version_number,
            "versionCounter": self.version_counter,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_record(cls, data: Dict[str, Any]) -> "Character":
        """Create from the persisted document layout."""
        return cls(
            id=data["id"],
            owner_id=data["ownerId"],
            display_name=data.get("name", ""),
            campaign_id=data.get("campaignId"),
            is_generating=bool(data.get("isGenerating", False)),
            active_generation_id=data.get("activeGenerationId"),
            latest_version_id=data.get("latestVersionId"),
            latest_version_number=int(data.get("latestVersionNumber", 0)),
            version_counter=int(data.get("versionCounter", 0)),
            created_at=data["createdAt"],
            updated_at=data["updatedAt"],
        )

    def metadata(self) -> "CharacterMetadata":
        return CharacterMetadata(
            character_id=self.id,
            owner_id=self.owner_id,
            display_name=self.display_name,
            campaign_id=self.campaign_id,
            is_generating=self.is_generating,
            latest_version_id=self.latest_version_id,
            updated_at=self.updated_at,
        )


@dataclass(frozen=True)
class CharacterMetadata:
    """Character fields streamed on the metadata feed."""

    character_id: str
    owner_id: str
    display_name: str
    campaign_id: Optional[str]
    is_generating: bool
    latest_version_id: Optional[str]
    updated_at: str


@dataclass
class CharacterVersion:
    """Numbered snapshot of a character with its provenance."""

    id: str
    character_id: str
    version_number: int
    snapshot: Dict[str, Any]
    commit_message: str
    source: VersionSource
    created_at: str
    restored_from_version_id: Optional[str] = None
    is_draft: bool = False
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_record(self) -> Dict[str, Any]:
        """Convert to the persisted document layout."""
        record: Dict[str, Any] = {
            "id": self.id,
            "characterId": self.character_id,
            "versionNumber": self.version_number,
            "snapshot": self.snapshot,
            "commitMessage": self.commit_message,
            "source": self.source.value,
            "isDraft": self.is_draft,
            "createdAt": self.created_at,
        }
        # Absent rather than null, so the layout matches what history UIs expect
        if self.restored_from_version_id:
            record["restoredFromVersionId"] = self.restored_from_version_id
        record.update(self.extra)
        return record

    @classmethod
    def from_record(cls, data: Dict[str, Any]) -> "CharacterVersion":
        """Create from the persisted document layout."""
        known = {
            "id",
            "characterId",
            "versionNumber",
            "snapshot",
            "commitMessage",
            "source",
            "restoredFromVersionId",
            "isDraft",
            "createdAt",
        }
        return cls(
            id=data["id"],
            character_id=data["characterId"],
            version_number=int(data["versionNumber"]),
            snapshot=data.get("snapshot") or {},
            commit_message=data.get("commitMessage", ""),
            source=VersionSource(data.get("source", VersionSource.MANUAL.value)),
            restored_from_version_id=data.get("restoredFromVersionId"),
            is_draft=bool(data.get("isDraft", False)),
            created_at=data["createdAt"],
            extra={k: v for k, v in data.items() if k not in known},
        )

    @property
    def change_key(self) -> tuple:
        """Identity of this version as observers see it."""
        return (self.id, self.is_draft)
