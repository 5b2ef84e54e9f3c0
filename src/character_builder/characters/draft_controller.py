"""
Draft lifecycle: generation, commit and dismissal of AI drafts.

A generation runs as a background task. Its token is the caller's handle:
it carries the chat reply as soon as it is known, can be cancelled, and
resolves to a GenerationOutcome. Cancellation is advisory; the collaborator
call keeps running, but its late result is discarded. The store also checks
that the generation is still the active one inside the draft transaction, so
a stale result can never become a draft.
"""

import asyncio
import functools
import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Dict, Optional

from ..core.context import CharacterBuilderContext
from ..core.exceptions import (
    CharacterBuilderError,
    InferenceError,
    StaleGenerationError,
    TransientStoreError,
)
from ..core.logging import correlation, get_logger
from ..core.resilience import RetryConfig, RetryExhaustedError, retry_with_backoff
from .inference import GenerationContext, InferenceCollaborator, InferenceResult
from .types import CharacterVersion, VersionSource
from .version_store import VersionStore

logger = logging.getLogger(__name__)
structured_logger = get_logger(__name__)

COMPONENT = "DraftController"


class DraftState(Enum):
    NO_DRAFT = "no_draft"
    GENERATING = "generating"
    DRAFT_PENDING = "draft_pending"
    COMMITTED = "committed"
    DISMISSED = "dismissed"


class OutcomeStatus(Enum):
    DRAFT_CREATED = "draft_created"
    NO_CHANGE = "no_change"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class GenerationOutcome:
    """How a generation ended."""

    token_id: str
    character_id: str
    status: OutcomeStatus
    version_id: Optional[str] = None
    explanation_text: str = ""
    error: Optional[CharacterBuilderError] = None


class GenerationToken:
    """Handle on one in-flight generation."""

    def __init__(self, token_id: str, character_id: str):
        self.id = token_id
        self.character_id = character_id
        self.reply_text: Optional[str] = None
        self._cancelled = False
        self._outcome: "asyncio.Future[GenerationOutcome]" = (
            asyncio.get_running_loop().create_future()
        )

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def done(self) -> bool:
        return self._outcome.done()

    def publish_reply(self, text: str) -> None:
        """Make the textual reply available before the draft exists."""
        self.reply_text = text

    async def wait(self, timeout: Optional[float] = None) -> GenerationOutcome:
        """Wait for the outcome. Timing out leaves the generation running."""
        return await asyncio.wait_for(asyncio.shield(self._outcome), timeout)

    def _resolve(self, outcome: GenerationOutcome) -> bool:
        if self._outcome.done():
            return False
        self._outcome.set_result(outcome)
        return True

    def __repr__(self) -> str:
        return f"GenerationToken(id={self.id!r}, character_id={self.character_id!r})"


class DraftController:
    """Runs generations and resolves drafts for every character."""

    def __init__(
        self,
        context: CharacterBuilderContext,
        version_store: VersionStore,
        inference: InferenceCollaborator,
    ):
        self.context = context
        self.version_store = version_store
        self.inference = inference
        generation = context.config.generation
        self.retry_config = RetryConfig(
            max_attempts=generation.max_attempts,
            base_delay=generation.base_delay_s,
            max_delay=generation.max_delay_s,
        )
        self._tokens: Dict[str, GenerationToken] = {}
        self._tasks: Dict[str, "asyncio.Task[None]"] = {}
        self._last_resolution: Dict[str, DraftState] = {}

    async def begin_generation(
        self,
        character_id: str,
        context: GenerationContext,
        actor_id: Optional[str] = None,
    ) -> GenerationToken:
        """Start generating a draft for a character.

        Raises:
            BusyError: If a generation for the character is already running
            NotFoundError: If the character does not exist
            AuthorizationError: If ``actor_id`` does not own the character
        """
        token = GenerationToken(self.context.id_factory(), character_id)
        await self.version_store.begin_generation(character_id, token.id, actor_id=actor_id)

        if context.max_history_messages is None:
            context = replace(
                context,
                max_history_messages=self.context.config.generation.max_history_messages,
            )

        self._tokens[token.id] = token
        self._last_resolution.pop(character_id, None)
        structured_logger.log_draft_transition(
            character_id, DraftState.NO_DRAFT.value, DraftState.GENERATING.value,
            generation_id=token.id,
        )

        task = asyncio.create_task(
            self._run_generation(token, context), name=f"generation-{token.id}"
        )
        self._tasks[token.id] = task
        task.add_done_callback(lambda _: self._forget(token.id))
        return token

    def _forget(self, token_id: str) -> None:
        self._tasks.pop(token_id, None)
        self._tokens.pop(token_id, None)

    async def _generate(
        self, context: GenerationContext, token: GenerationToken
    ) -> Optional[InferenceResult]:
        async def attempt() -> Optional[InferenceResult]:
            if token.cancelled:
                return None
            return await self.inference.generate(context, token)

        try:
            return await retry_with_backoff(
                attempt,
                self.retry_config,
                expected_exceptions=(TransientStoreError,),
                description=f"generation {token.id}",
            )
        except RetryExhaustedError as e:
            raise e.last_exception

    def _finish(self, token: GenerationToken, outcome: GenerationOutcome) -> bool:
        resolved = token._resolve(outcome)
        if resolved:
            to_state = (
                DraftState.DRAFT_PENDING
                if outcome.status == OutcomeStatus.DRAFT_CREATED
                else DraftState.NO_DRAFT
            )
            structured_logger.log_draft_transition(
                token.character_id,
                DraftState.GENERATING.value,
                to_state.value,
                generation_id=token.id,
                outcome=outcome.status.value,
                version_id=outcome.version_id,
            )
        return resolved

    async def _release(self, token: GenerationToken) -> None:
        try:
            await self.version_store.end_generation(token.character_id, token.id)
        except CharacterBuilderError as e:
            structured_logger.error(
                "Could not clear generation flag",
                character_id=token.character_id,
                generation_id=token.id,
                error=str(e),
            )

    async def _run_generation(
        self, token: GenerationToken, context: GenerationContext
    ) -> None:
        with correlation(character_id=token.character_id, generation_id=token.id):
            await self._drive(token, context)

    async def _drive(self, token: GenerationToken, context: GenerationContext) -> None:
        character_id = token.character_id

        outcome = functools.partial(GenerationOutcome, token.id, character_id)

        try:
            result = await self._generate(context, token)
        except Exception as e:
            if token.cancelled:
                await self._release(token)
                self._finish(token, outcome(OutcomeStatus.CANCELLED))
                return
            error = (
                e
                if isinstance(e, CharacterBuilderError)
                else InferenceError(f"Inference failed: {e}", component=COMPONENT)
            )
            if error is not e:
                error.__cause__ = e
            structured_logger.warning(
                "Generation failed", character_id=character_id, error=str(error)
            )
            await self._release(token)
            self._finish(token, outcome(OutcomeStatus.FAILED, error=error))
            return

        if result is None or token.cancelled:
            logger.info(f"Discarding late result of cancelled generation {token.id}")
            # cancel() may have failed to clear the flag
            await self._release(token)
            self._finish(token, outcome(OutcomeStatus.CANCELLED))
            return

        explanation = result.explanation_text or token.reply_text or ""
        if result.proposed_snapshot is None:
            await self._release(token)
            self._finish(
                token, outcome(OutcomeStatus.NO_CHANGE, explanation_text=explanation)
            )
            return

        try:
            version_id = await self.version_store.create_version(
                character_id,
                result.proposed_snapshot,
                self.context.config.versioning.draft_commit_message,
                VersionSource.AI,
                is_draft=True,
                generation_id=token.id,
            )
        except StaleGenerationError:
            logger.info(f"Generation {token.id} went stale before its draft was written")
            self._finish(token, outcome(OutcomeStatus.CANCELLED))
            return
        except CharacterBuilderError as e:
            structured_logger.warning(
                "Draft could not be written", character_id=character_id, error=str(e)
            )
            await self._release(token)
            self._finish(
                token,
                outcome(OutcomeStatus.FAILED, error=e, explanation_text=explanation),
            )
            return

        self._finish(
            token,
            outcome(
                OutcomeStatus.DRAFT_CREATED,
                version_id=version_id,
                explanation_text=explanation,
            ),
        )

    async def cancel(self, token: GenerationToken) -> bool:
        """Mark a generation stale and free the character for a new one.

        Returns:
            False if the generation had already finished or its draft was
            written first; the token then resolves to its real outcome
        """
        if token.done():
            return False
        token._cancelled = True
        if not await self.version_store.end_generation(token.character_id, token.id):
            return False
        return self._finish(
            token, GenerationOutcome(token.id, token.character_id, OutcomeStatus.CANCELLED)
        )

    async def wait(
        self, token: GenerationToken, timeout: Optional[float] = None
    ) -> GenerationOutcome:
        return await token.wait(timeout)

    async def commit(
        self, character_id: str, version_id: str, actor_id: Optional[str] = None
    ) -> CharacterVersion:
        """Accept the pending draft as a regular version.

        Raises:
            ConflictError: If the draft was already resolved or superseded
            NotFoundError: If the version never existed
        """
        version = await self.version_store.finalize_draft(
            character_id, version_id, actor_id=actor_id
        )
        self._last_resolution[character_id] = DraftState.COMMITTED
        structured_logger.log_draft_transition(
            character_id, DraftState.DRAFT_PENDING.value, DraftState.COMMITTED.value,
            version_id=version_id,
        )
        return version

    async def dismiss(
        self, character_id: str, version_id: str, actor_id: Optional[str] = None
    ) -> Optional[CharacterVersion]:
        """Throw the pending draft away.

        Returns:
            The version the character now points at
        """
        latest = await self.version_store.discard_draft(
            character_id, version_id, actor_id=actor_id
        )
        self._last_resolution[character_id] = DraftState.DISMISSED
        structured_logger.log_draft_transition(
            character_id, DraftState.DRAFT_PENDING.value, DraftState.DISMISSED.value,
            version_id=version_id,
        )
        return latest

    async def get_state(self, character_id: str) -> DraftState:
        """Current draft state, derived from what the store holds."""
        character = await self.version_store.get_character(character_id)
        if character.is_generating:
            return DraftState.GENERATING
        if await self.version_store.get_pending_draft(character_id) is not None:
            return DraftState.DRAFT_PENDING
        return DraftState.NO_DRAFT

    def last_resolution(self, character_id: str) -> Optional[DraftState]:
        """COMMITTED or DISMISSED for the last draft resolved through this controller."""
        return self._last_resolution.get(character_id)

    def active_tokens(self) -> Dict[str, GenerationToken]:
        return dict(self._tokens)

    async def shutdown(self) -> None:
        """Cancel every outstanding generation and wait for the tasks to end."""
        for token in list(self._tokens.values()):
            if not token.done():
                await self.cancel(token)
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info(f"Draft controller shut down, {len(tasks)} task(s) cancelled")
