"""
Dependency bundle shared by the Character Builder components.

Every component receives its collaborators through this object instead of
reaching for module-level singletons.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

from .config import Config
from .protocols import DocumentStore, SchemaValidator


def utc_now() -> datetime:
    """Current time in UTC."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    """Generate a document id."""
    return uuid.uuid4().hex


@dataclass
class CharacterBuilderContext:
    """Collaborators and settings handed to each component's constructor."""

    store: DocumentStore
    config: Config = field(default_factory=Config)
    validator: Optional[SchemaValidator] = None
    clock: Callable[[], datetime] = utc_now
    id_factory: Callable[[], str] = new_id

    def __post_init__(self) -> None:
        if self.validator is None:
            # Imported lazily: the schema module pulls in pydantic models
            from ..characters.schema import validate_snapshot

            self.validator = validate_snapshot

    def now_iso(self) -> str:
        """Current time as an ISO-8601 string, the persisted timestamp format."""
        return self.clock().isoformat()
