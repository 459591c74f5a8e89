"""
In-memory document store implementation for testing.

This module provides a simple in-memory store backend for:
- Unit tests
- Integration tests
- Local development without a MongoDB replica set

Invariants:
    - All data is lost on process exit
    - Change cursors see changes in write order, like a change stream
    - Watching a collection does not create it
    - Closing a cursor twice raises, so double-close bugs surface in tests

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep interface compatible with the DocumentStore protocol
    - Add features to help with testing scenarios
"""

from __future__ import annotations

import asyncio
import copy
import logging
import uuid
from collections import defaultdict
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from .base import (
    ChangeEvent,
    Document,
    OperationType,
    StoreConnectionError,
    StoreError,
    StoreOperationError,
    normalize_find_options,
)
from .matching import apply_pipeline, change_matches, matches, project, sort_documents

logger = logging.getLogger(__name__)

_CLOSED = object()


class InMemoryChangeCursor:
    """Change cursor fed by writes to an InMemoryDocumentStore.

    Events are queued from the moment the cursor is opened, so nothing
    written between watch() and the first iteration is lost.
    """

    def __init__(
        self,
        store: InMemoryDocumentStore,
        collection: str,
        pipeline: Sequence[Mapping[str, Any]],
    ) -> None:
        self._store = store
        self.collection = collection
        self.pipeline = [dict(stage) for stage in pipeline]
        self._queue: asyncio.Queue[Union[ChangeEvent, BaseException, object]] = asyncio.Queue()
        self._closed = False
        self.close_count = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def publish(self, change: ChangeEvent) -> None:
        """Queue a change if it passes the cursor's pipeline."""
        if self._closed:
            return
        if change_matches(change.to_dict(), self.pipeline):
            self._queue.put_nowait(change)

    def fail(self, exc: BaseException) -> None:
        """Make the next read raise exc (testing helper)."""
        if not self._closed:
            self._queue.put_nowait(exc)

    def end(self) -> None:
        """End iteration as if the store invalidated the stream (testing helper)."""
        if not self._closed:
            self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> InMemoryChangeCursor:
        return self

    async def __anext__(self) -> ChangeEvent:
        if self._closed:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            raise item
        return item  # type: ignore[return-value]

    async def close(self) -> None:
        """Close the cursor.

        Raises:
            StoreError: If the cursor was already closed
        """
        self.close_count += 1
        if self._closed:
            raise StoreError(f"Change cursor on {self.collection} closed twice")
        self._closed = True
        self._store._detach(self)
        self._queue.put_nowait(_CLOSED)


class InMemoryCollection:
    """Handle for one collection in an InMemoryDocumentStore."""

    def __init__(self, store: InMemoryDocumentStore, name: str) -> None:
        self._store = store
        self._name = name

    @property
    def name(self) -> str:
        return self._name

    async def aggregate(self, pipeline: Sequence[Mapping[str, Any]]) -> List[Document]:
        self._store._check_available("aggregate")
        await asyncio.sleep(0)
        return apply_pipeline(self._store._documents(self._name), pipeline)

    async def find(
        self,
        query: Mapping[str, Any],
        options: Optional[Mapping[str, Any]] = None,
    ) -> List[Document]:
        self._store._check_available("find")
        try:
            opts = normalize_find_options(options)
        except ValueError as e:
            raise StoreOperationError(str(e))
        await asyncio.sleep(0)

        docs = [d for d in self._store._documents(self._name) if matches(d, query)]
        if "sort" in opts:
            docs = sort_documents(docs, opts["sort"])
        docs = docs[opts.get("skip", 0):]
        if opts.get("limit"):
            docs = docs[: opts["limit"]]
        if "projection" in opts:
            docs = [project(d, opts["projection"]) for d in docs]
        return [copy.deepcopy(d) for d in docs]

    async def watch(self, pipeline: Sequence[Mapping[str, Any]]) -> InMemoryChangeCursor:
        self._store._check_available("watch")
        for stage in pipeline:
            if not isinstance(stage, Mapping) or list(stage) != ["$match"]:
                raise StoreOperationError(f"Unsupported change stream stage: {stage}")
        cursor = InMemoryChangeCursor(self._store, self._name, pipeline)
        self._store._cursors[self._name].append(cursor)
        logger.debug("In-memory change cursor opened", extra={"collection": self._name})
        return cursor


class InMemoryDocumentStore:
    """In-memory implementation of DocumentStore for testing.

    Writes go through insert_one/update_one/delete_one, which notify every
    open change cursor on the collection.

    Example:
        >>> store = InMemoryDocumentStore()
        >>> await store.connect()
        >>> await store.insert_one("orders", {"item": "pen"})
        >>> cursor = await store.get_collection("orders").watch([])
    """

    def __init__(self, database: str = "test") -> None:
        """Initialize in-memory store.

        Args:
            database: Reported database name
        """
        self._database = database
        self._collections: Dict[str, List[Document]] = {}
        self._cursors: Dict[str, List[InMemoryChangeCursor]] = defaultdict(list)
        self._connected = False
        self._pending_failures: List[BaseException] = []
        self.round_trips: Dict[str, int] = defaultdict(int)

    @property
    def database(self) -> str:
        return self._database

    @property
    def is_connected(self) -> bool:
        """Whether connected (always true after connect())."""
        return self._connected

    async def connect(self) -> None:
        """Connect (no-op for in-memory)."""
        self._connected = True
        logger.debug("InMemoryDocumentStore connected")

    async def close(self) -> None:
        """Close, ending every open cursor and clearing all data."""
        self._connected = False
        for cursors in self._cursors.values():
            for cursor in cursors:
                cursor.end()
        self._collections.clear()
        logger.debug("InMemoryDocumentStore closed")

    async def list_collections(self) -> List[str]:
        self._check_available("list_collections")
        await asyncio.sleep(0)
        return sorted(self._collections)

    def get_collection(self, name: str) -> InMemoryCollection:
        return InMemoryCollection(self, name)

    async def ping(self) -> bool:
        """Health check; fails while a failure is injected."""
        return bool(self._connected and not self._pending_failures)

    # Writes

    async def create_collection(self, name: str) -> None:
        """Create an empty collection."""
        self._collections.setdefault(name, [])

    async def insert_one(self, collection: str, document: Mapping[str, Any]) -> Any:
        """Insert a document, creating the collection if needed.

        Returns:
            The document's _id (generated when absent)
        """
        doc = copy.deepcopy(dict(document))
        doc.setdefault("_id", uuid.uuid4().hex)
        self._collections.setdefault(collection, []).append(doc)
        self._publish(
            collection,
            ChangeEvent(
                operation=OperationType.INSERT,
                document_key={"_id": doc["_id"]},
                full_document=copy.deepcopy(doc),
                collection=collection,
            ),
        )
        return doc["_id"]

    async def update_one(
        self,
        collection: str,
        query: Mapping[str, Any],
        update: Mapping[str, Any],
    ) -> bool:
        """Apply $set/$unset to the first matching document.

        Returns:
            True if a document was updated
        """
        unsupported = set(update) - {"$set", "$unset"}
        if unsupported:
            raise StoreOperationError(f"Unsupported update operators: {sorted(unsupported)}")

        for doc in self._documents(collection):
            if not matches(doc, query):
                continue
            updated = dict(update.get("$set", {}))
            removed = list(update.get("$unset", {}))
            doc.update(copy.deepcopy(updated))
            for name in removed:
                doc.pop(name, None)
            self._publish(
                collection,
                ChangeEvent(
                    operation=OperationType.UPDATE,
                    document_key={"_id": doc["_id"]},
                    update_description={
                        "updatedFields": copy.deepcopy(updated),
                        "removedFields": removed,
                    },
                    collection=collection,
                ),
            )
            return True
        return False

    async def delete_one(self, collection: str, query: Mapping[str, Any]) -> bool:
        """Delete the first matching document.

        Returns:
            True if a document was deleted
        """
        docs = self._documents(collection)
        for index, doc in enumerate(docs):
            if matches(doc, query):
                del docs[index]
                self._publish(
                    collection,
                    ChangeEvent(
                        operation=OperationType.DELETE,
                        document_key={"_id": doc["_id"]},
                        collection=collection,
                    ),
                )
                return True
        return False

    # Testing helpers

    def inject_failure(self, exc: Optional[BaseException] = None) -> None:
        """Make the next read round-trip raise exc (testing helper)."""
        self._pending_failures.append(exc or StoreConnectionError("injected failure"))

    def fail_cursors(self, collection: str, exc: Optional[BaseException] = None) -> int:
        """Make every open cursor on a collection raise (testing helper).

        Returns:
            Number of cursors affected
        """
        cursors = self.open_cursors(collection)
        for cursor in cursors:
            cursor.fail(exc or StoreConnectionError("change stream interrupted"))
        return len(cursors)

    def open_cursors(self, collection: str) -> List[InMemoryChangeCursor]:
        """Open cursors on a collection (testing helper)."""
        return list(self._cursors.get(collection, []))

    def open_cursor_count(self, collection: Optional[str] = None) -> int:
        """Count open cursors on one or all collections (testing helper)."""
        if collection is not None:
            return len(self._cursors.get(collection, []))
        return sum(len(c) for c in self._cursors.values())

    # Internals

    def _documents(self, collection: str) -> List[Document]:
        return self._collections.get(collection, [])

    def _publish(self, collection: str, change: ChangeEvent) -> None:
        for cursor in list(self._cursors.get(collection, [])):
            cursor.publish(change)

    def _detach(self, cursor: InMemoryChangeCursor) -> None:
        cursors = self._cursors.get(cursor.collection, [])
        if cursor in cursors:
            cursors.remove(cursor)

    def _check_available(self, operation: str) -> None:
        self.round_trips[operation] += 1
        if not self._connected:
            raise StoreConnectionError("Not connected")
        if self._pending_failures:
            raise self._pending_failures.pop(0)
