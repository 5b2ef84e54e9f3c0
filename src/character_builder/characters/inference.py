"""
Inference collaborator contract and the two-phase chat adapter.

The draft controller only needs something that turns a chat context into an
optional proposed snapshot plus explanation text. ``TwoPhaseInference`` builds
that out of two model calls: a conversational reply that also decides whether
the character should change, then a structured generation of the new sheet.
"""

import json
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional, Protocol

from ..core.logging import ProcessingTimer, get_logger

if TYPE_CHECKING:
    from .draft_controller import GenerationToken

structured_logger = get_logger(__name__)

USER_ROLE = "user"
ASSISTANT_ROLE = "assistant"

CURRENT_CHARACTER_PREAMBLE = "Current character:"
CURRENT_CHARACTER_ACK = "Got it, I have the current character sheet."


@dataclass
class ChatMessage:
    role: str
    content: str

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass
class GenerationContext:
    """Everything the collaborator sees for one generation."""

    character_id: str
    message: str
    current_snapshot: Optional[Dict[str, Any]] = None
    history: List[ChatMessage] = field(default_factory=list)
    max_history_messages: Optional[int] = None


@dataclass
class InferenceResult:
    """Outcome of one generation: a proposal, or just an answer."""

    proposed_snapshot: Optional[Dict[str, Any]]
    explanation_text: str = ""


@dataclass
class ChatReply:
    """First-phase reply of the chat model."""

    text: str
    should_update_character: bool = False


class InferenceCollaborator(Protocol):
    """Produces an optional proposed snapshot for a generation context."""

    async def generate(
        self, context: GenerationContext, token: "GenerationToken"
    ) -> InferenceResult:
        ...


Responder = Callable[[List[ChatMessage]], Awaitable[ChatReply]]
SnapshotGenerator = Callable[[List[ChatMessage]], Awaitable[Dict[str, Any]]]


def build_chat_messages(context: GenerationContext) -> List[ChatMessage]:
    """Assemble the model conversation for a generation.

    The current sheet goes first as a user/assistant exchange, then the most
    recent history, then the new user message.
    """
    messages: List[ChatMessage] = []
    if context.current_snapshot:
        messages.append(
            ChatMessage(
                USER_ROLE,
                f"{CURRENT_CHARACTER_PREAMBLE}\n"
                f"{json.dumps(context.current_snapshot, indent=2, sort_keys=True)}",
            )
        )
        messages.append(ChatMessage(ASSISTANT_ROLE, CURRENT_CHARACTER_ACK))

    history = context.history
    if context.max_history_messages is not None:
        history = history[-context.max_history_messages :] if context.max_history_messages else []
    messages.extend(history)
    messages.append(ChatMessage(USER_ROLE, context.message))
    return messages


class TwoPhaseInference:
    """Chat reply first, structured snapshot only when the reply asks for it.

    The reply text is published on the token as soon as it exists, so callers
    can show the answer while the sheet is still being generated.
    """

    def __init__(self, responder: Responder, snapshot_generator: SnapshotGenerator):
        self.responder = responder
        self.snapshot_generator = snapshot_generator

    async def generate(
        self, context: GenerationContext, token: "GenerationToken"
    ) -> InferenceResult:
        messages = build_chat_messages(context)

        with ProcessingTimer(
            structured_logger, "chat_reply", "TwoPhaseInference",
            character_id=context.character_id,
        ):
            reply = await self.responder(messages)
        token.publish_reply(reply.text)

        if not reply.should_update_character:
            return InferenceResult(None, reply.text)
        if token.cancelled:
            structured_logger.info(
                "Skipping snapshot generation for cancelled token",
                character_id=context.character_id,
                generation_id=token.id,
            )
            return InferenceResult(None, reply.text)

        with ProcessingTimer(
            structured_logger, "snapshot_generation", "TwoPhaseInference",
            character_id=context.character_id,
        ):
            snapshot = await self.snapshot_generator(
                messages + [ChatMessage(ASSISTANT_ROLE, reply.text)]
            )
        return InferenceResult(snapshot, reply.text)
