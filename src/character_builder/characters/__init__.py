# Expose the version core for callers that only need the public surface
from .change_notifier import ChangeNotifier, Subscription
from .conflict_resolver import ConflictResolver
from .draft_controller import (
    DraftController,
    DraftState,
    GenerationOutcome,
    GenerationToken,
    OutcomeStatus,
)
from .inference import (
    ChatMessage,
    ChatReply,
    GenerationContext,
    InferenceCollaborator,
    InferenceResult,
    TwoPhaseInference,
    build_chat_messages,
)
from .schema import DndCharacter, validate_snapshot
from .types import Character, CharacterMetadata, CharacterVersion, VersionSource
from .version_store import VersionStore

__all__ = [
    "Character",
    "CharacterMetadata",
    "CharacterVersion",
    "ChangeNotifier",
    "ChatMessage",
    "ChatReply",
    "ConflictResolver",
    "DndCharacter",
    "DraftController",
    "DraftState",
    "GenerationContext",
    "GenerationOutcome",
    "GenerationToken",
    "InferenceCollaborator",
    "InferenceResult",
    "OutcomeStatus",
    "Subscription",
    "TwoPhaseInference",
    "VersionSource",
    "VersionStore",
    "build_chat_messages",
    "validate_snapshot",
]
