"""
In-memory transactional document store.

Implements the DocumentStore contract with optimistic concurrency: every
document and every collection carries a revision, a transaction records the
revisions it read, and commit fails with TransactionContentionError when any
of them moved. Reads yield to the event loop so that concurrent writers
really interleave, which is what the conflict resolver is tested against.
"""

from __future__ import annotations

import asyncio
import copy
import itertools
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

from ..core.exceptions import ConflictError, NotFoundError, TransactionContentionError
from ..core.protocols import Document, Listener, Unsubscribe
from .snapshot_file import SNAPSHOT_FORMAT_VERSION, read_snapshot, write_snapshot

logger = logging.getLogger(__name__)

T = TypeVar("T")


def parent_path(path: str) -> str:
    """Collection path of a document path."""
    parent, _, _ = path.rpartition("/")
    return parent


def is_document_path(path: str) -> bool:
    """Document paths have an even number of segments."""
    return len(path.strip("/").split("/")) % 2 == 0


def _sort_key(order_field: str) -> Callable[[Document], Tuple[bool, Any]]:
    def key(doc: Document) -> Tuple[bool, Any]:
        value = doc.get(order_field)
        return (value is not None, value)

    return key


class _InMemoryTransaction:
    """Transaction with recorded reads and buffered writes."""

    def __init__(self, store: "InMemoryDocumentStore"):
        self._store = store
        self._read_revisions: Dict[str, int] = {}
        self._writes: List[Tuple[str, str, Optional[Document]]] = []

    def _check_read_allowed(self) -> None:
        if self._writes:
            raise RuntimeError("Transactions must perform all reads before writes")

    async def get(self, path: str) -> Optional[Document]:
        self._check_read_allowed()
        await self._store._yield()
        self._read_revisions.setdefault(path, self._store._revision(path))
        return self._store._read(path)

    async def query_ordered_descending(
        self, collection_path: str, order_field: str, limit: Optional[int] = None
    ) -> List[Document]:
        self._check_read_allowed()
        await self._store._yield()
        self._read_revisions.setdefault(
            collection_path, self._store._revision(collection_path)
        )
        return self._store._query(collection_path, order_field, limit)

    def set(self, path: str, data: Document) -> None:
        self._writes.append(("set", path, copy.deepcopy(data)))

    def update(self, path: str, fields: Document) -> None:
        self._writes.append(("update", path, copy.deepcopy(fields)))

    def delete(self, path: str) -> None:
        self._writes.append(("delete", path, None))


class InMemoryDocumentStore:
    """Document store backed by a dictionary of paths to documents."""

    def __init__(self, yield_on_read: bool = True):
        self.yield_on_read = yield_on_read
        self._documents: Dict[str, Document] = {}
        self._revisions: Dict[str, int] = {}
        self._clock = itertools.count(1)
        self._listeners: Dict[str, Dict[int, Listener]] = {}
        self._listener_ids = itertools.count(1)
        self.commit_count = 0
        self.contention_count = 0

    # -- internal helpers -------------------------------------------------

    async def _yield(self) -> None:
        if self.yield_on_read:
            await asyncio.sleep(0)

    def _revision(self, path: str) -> int:
        return self._revisions.get(path, 0)

    def _read(self, path: str) -> Optional[Document]:
        doc = self._documents.get(path)
        return copy.deepcopy(doc) if doc is not None else None

    def _query(
        self, collection_path: str, order_field: str, limit: Optional[int] = None
    ) -> List[Document]:
        docs = [
            doc
            for path, doc in self._documents.items()
            if parent_path(path) == collection_path
        ]
        docs.sort(key=_sort_key(order_field), reverse=True)
        if limit is not None:
            docs = docs[:limit]
        return copy.deepcopy(docs)

    def _commit(self, txn: _InMemoryTransaction) -> None:
        # Validation and apply run without awaiting, so they are atomic with
        # respect to every other coroutine on the loop.
        for path, seen in txn._read_revisions.items():
            if self._revision(path) != seen:
                self.contention_count += 1
                raise TransactionContentionError(path, component="InMemoryDocumentStore")

        pending: Dict[str, Optional[Document]] = {}
        for op, path, data in txn._writes:
            current = pending[path] if path in pending else self._documents.get(path)
            if op == "set":
                pending[path] = data
            elif op == "update":
                if current is None:
                    raise NotFoundError(
                        "document", path, component="InMemoryDocumentStore"
                    )
                merged = copy.deepcopy(current)
                merged.update(data or {})
                pending[path] = merged
            else:
                pending[path] = None

        touched: List[str] = []
        for path, data in pending.items():
            revision = next(self._clock)
            if data is None:
                self._documents.pop(path, None)
            else:
                self._documents[path] = data
            self._revisions[path] = revision
            self._revisions[parent_path(path)] = revision
            touched.append(path)

        self.commit_count += 1
        self._notify(touched)

    def _notify(self, touched: List[str]) -> None:
        paths: List[str] = []
        for path in touched:
            for candidate in (path, parent_path(path)):
                if candidate not in paths:
                    paths.append(candidate)

        for path in paths:
            listeners = list(self._listeners.get(path, {}).values())
            if not listeners:
                continue
            value = self._current_value(path)
            for listener in listeners:
                try:
                    listener(copy.deepcopy(value))
                except Exception as e:
                    # The commit already happened; one faulty observer must not
                    # fail the writer or starve the remaining listeners.
                    logger.error(f"Listener for {path} raised: {e}")

    def _current_value(self, path: str) -> Any:
        if is_document_path(path):
            return self._documents.get(path)
        return [
            self._documents[doc_path]
            for doc_path in sorted(self._documents)
            if parent_path(doc_path) == path
        ]

    # -- DocumentStore contract ------------------------------------------

    async def create_document(self, path: str, data: Document) -> None:
        async def create(txn: _InMemoryTransaction) -> None:
            if await txn.get(path) is not None:
                raise ConflictError(
                    f"Document already exists: {path}",
                    component="InMemoryDocumentStore",
                )
            txn.set(path, data)

        await self.transactional_read_modify_write(create)

    async def get_document(self, path: str) -> Optional[Document]:
        await self._yield()
        return self._read(path)

    async def transactional_read_modify_write(
        self, fn: Callable[[_InMemoryTransaction], Awaitable[T]]
    ) -> T:
        txn = _InMemoryTransaction(self)
        result = await fn(txn)
        self._commit(txn)
        return result

    async def query_ordered_descending(
        self, collection_path: str, order_field: str, limit: Optional[int] = None
    ) -> List[Document]:
        await self._yield()
        return self._query(collection_path, order_field, limit)

    def subscribe(self, path: str, listener: Listener) -> Unsubscribe:
        listener_id = next(self._listener_ids)
        self._listeners.setdefault(path, {})[listener_id] = listener
        logger.debug(f"Listener {listener_id} attached to {path}")

        listener(copy.deepcopy(self._current_value(path)))

        def unsubscribe() -> None:
            listeners = self._listeners.get(path)
            if listeners and listeners.pop(listener_id, None) is not None:
                logger.debug(f"Listener {listener_id} detached from {path}")
                if not listeners:
                    del self._listeners[path]

        return unsubscribe

    def listener_count(self, path: str) -> int:
        """Number of live listeners on a path."""
        return len(self._listeners.get(path, {}))

    # -- snapshots ---------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        """Serialize every document for persistence."""
        return {
            "format_version": SNAPSHOT_FORMAT_VERSION,
            "documents": copy.deepcopy(self._documents),
        }

    def save(self, path: Path) -> None:
        """Persist the store to a JSON file."""
        write_snapshot(path, self._documents)
        logger.info(f"Saved {len(self._documents)} documents to {path}")

    @classmethod
    def load(cls, path: Path, yield_on_read: bool = True) -> "InMemoryDocumentStore":
        """Load a store previously written with ``save``."""
        store = cls(yield_on_read=yield_on_read)
        for doc_path, doc in read_snapshot(path).items():
            store._documents[doc_path] = doc
            revision = next(store._clock)
            store._revisions[doc_path] = revision
            store._revisions[parent_path(doc_path)] = revision
        logger.debug(f"Loaded {len(store._documents)} documents from {path}")
        return store
