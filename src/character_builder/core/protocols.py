"""
Protocols and interfaces for the Character Builder core.

Defines the contracts of the external collaborators the core consumes: the
transactional document store and the schema validator. Any backend that
honours these contracts can stand in for the in-memory store used in tests.
"""

from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
    Protocol,
    TypeVar,
    Union,
)

T = TypeVar("T")

Document = Dict[str, Any]

# A listener receives the document (or None when deleted) for document paths
# and the full ordered list of documents for collection paths.
Listener = Callable[[Union[Optional[Document], List[Document]]], None]
Unsubscribe = Callable[[], None]

# validate(raw) -> normalized snapshot, raises ValidationError
SchemaValidator = Callable[[Any], Dict[str, Any]]


class Transaction(Protocol):
    """Read-modify-write unit handed to ``transactional_read_modify_write``.

    Reads are recorded; writes are buffered and applied atomically on commit.
    """

    async def get(self, path: str) -> Optional[Document]:
        """Read a document, or None if it does not exist."""
        ...

    async def query_ordered_descending(
        self, collection_path: str, order_field: str, limit: Optional[int] = None
    ) -> List[Document]:
        """Read a collection ordered by ``order_field`` descending."""
        ...

    def set(self, path: str, data: Document) -> None:
        """Create or replace a document."""
        ...

    def update(self, path: str, fields: Document) -> None:
        """Merge fields into an existing document."""
        ...

    def delete(self, path: str) -> None:
        """Delete a document."""
        ...


class DocumentStore(Protocol):
    """Durable document storage with transactions and subscriptions."""

    async def create_document(self, path: str, data: Document) -> None:
        """Create a document, failing if it already exists."""
        ...

    async def get_document(self, path: str) -> Optional[Document]:
        """Read a single document outside a transaction."""
        ...

    async def transactional_read_modify_write(
        self, fn: Callable[[Transaction], Awaitable[T]]
    ) -> T:
        """Run ``fn`` once inside a transaction and commit it atomically.

        Raises ``TransactionContentionError`` when a concurrent commit touched
        anything the transaction read. Retrying is the caller's decision.
        """
        ...

    async def query_ordered_descending(
        self, collection_path: str, order_field: str, limit: Optional[int] = None
    ) -> List[Document]:
        """One-shot ordered read of a collection."""
        ...

    def subscribe(self, path: str, listener: Listener) -> Unsubscribe:
        """Attach a live listener to a document or collection path.

        The listener is called with the current value right away and again
        after every committed change under the path.
        """
        ...
