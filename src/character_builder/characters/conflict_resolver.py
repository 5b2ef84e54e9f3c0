"""
Version number allocation under concurrent writers.

The next number is computed inside the same store transaction that inserts
the version, so the read-increment-write is atomic. When a concurrent commit
invalidates the transaction, the whole unit is retried with exponential
backoff; after the last attempt a ConflictError reaches the caller and
nothing has been written.
"""

import logging
from typing import Awaitable, Callable, Optional, TypeVar

from ..core.context import CharacterBuilderContext
from ..core.exceptions import ConflictError, NotFoundError, TransactionContentionError
from ..core.logging import get_logger
from ..core.protocols import Transaction
from ..core.resilience import RetryConfig, RetryExhaustedError, retry_with_backoff
from .types import character_path, versions_path

logger = logging.getLogger(__name__)
structured_logger = get_logger(__name__)

T = TypeVar("T")


class ConflictResolver:
    """Allocates version numbers and runs character transactions with retry."""

    def __init__(self, context: CharacterBuilderContext):
        self.context = context
        versioning = context.config.versioning
        self.retry_config = RetryConfig(
            max_attempts=versioning.max_attempts,
            base_delay=versioning.base_delay_s,
            max_delay=versioning.max_delay_s,
            jitter=versioning.jitter,
        )

    async def next_version_number(self, txn: Transaction, character_id: str) -> int:
        """Highest number ever allocated for the character, plus one.

        Reads both the character's high-water mark and the highest stored
        version so numbers are never reused, even after a draft was dismissed.
        """
        character = await txn.get(character_path(character_id))
        if character is None:
            raise NotFoundError("Character", character_id, component="ConflictResolver")

        latest = await txn.query_ordered_descending(
            versions_path(character_id), "versionNumber", limit=1
        )
        stored_max = int(latest[0]["versionNumber"]) if latest else 0
        return max(int(character.get("versionCounter", 0)), stored_max) + 1

    async def run(
        self,
        character_id: str,
        operation: Callable[[Transaction], Awaitable[T]],
        description: Optional[str] = None,
    ) -> T:
        """Run ``operation`` in a transaction, retrying on contention."""
        label = description or "transaction"

        async def attempt() -> T:
            return await self.context.store.transactional_read_modify_write(operation)

        try:
            return await retry_with_backoff(
                attempt,
                self.retry_config,
                expected_exceptions=(TransactionContentionError,),
                description=f"{label} for {character_id}",
            )
        except RetryExhaustedError as e:
            structured_logger.warning(
                "Transaction retries exhausted",
                character_id=character_id,
                operation=label,
                attempts=e.attempts,
            )
            raise ConflictError(
                f"Could not complete {label} after {e.attempts} attempts",
                error_code="RETRIES_EXHAUSTED",
                details={"character_id": character_id, "attempts": e.attempts},
                component="ConflictResolver",
            ) from e.last_exception

    async def allocate_and_write(
        self,
        character_id: str,
        write: Callable[[Transaction, int], Awaitable[T]],
        description: Optional[str] = None,
    ) -> T:
        """Allocate the next number and hand it to ``write`` in one transaction.

        ``write`` must only read before it writes; the number it receives is
        only ever persisted if the whole transaction commits.
        """

        async def operation(txn: Transaction) -> T:
            number = await self.next_version_number(txn, character_id)
            logger.debug(f"Allocated version {number} for character {character_id}")
            return await write(txn, number)

        return await self.run(character_id, operation, description or "version write")
