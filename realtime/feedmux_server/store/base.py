"""
Base protocol and types for the document store abstraction.

This module defines the DocumentStore protocol that all backends must
implement, the per-collection handle and change cursor protocols, the
ChangeEvent type emitted by change feeds, and common store errors.

Invariants:
    - ChangeEvent is immutable once produced
    - A ChangeCursor yields events in the order the store produced them
    - ChangeCursor.close() is called at most once per cursor
    - All backends translate driver errors into StoreError subclasses

How to change safely:
    - Protocol changes require updating every backend
    - Keep ChangeEvent.to_dict() in MongoDB change-event shape; clients reduce over it
"""

from __future__ import annotations

from abc import abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import (
    Any,
    AsyncIterator,
    Dict,
    List,
    Mapping,
    Optional,
    Protocol,
    Sequence,
    TYPE_CHECKING,
    runtime_checkable,
)
import copy
import logging

if TYPE_CHECKING:
    from ..config import ServerConfig

logger = logging.getLogger(__name__)

Document = Dict[str, Any]
Pipeline = List[Dict[str, Any]]

FIND_OPTION_NAMES = ("projection", "sort", "skip", "limit")


class StoreError(Exception):
    """Base exception for document store operations."""
    pass


class StoreConnectionError(StoreError):
    """Connection to the store failed or was lost."""
    pass


class StoreOperationError(StoreError):
    """The store rejected an operation (bad pipeline, unsupported stage, ...)."""
    pass


class OperationType(Enum):
    """Kinds of change a change feed reports."""

    INSERT = "insert"
    UPDATE = "update"
    REPLACE = "replace"
    DELETE = "delete"


@dataclass(frozen=True)
class ChangeEvent:
    """One store mutation notification.

    Attributes:
        operation: What happened to the document
        document_key: Identifies the document (usually {"_id": ...})
        full_document: Whole document for insert/replace (and update with lookup)
        update_description: Changed and removed fields for update
        collection: Collection the change happened in
        cluster_time: Store-assigned ordering timestamp, when available

    The dictionaries are copied on the way in and out so a produced event
    cannot be altered by its consumers.
    """
    operation: OperationType
    document_key: Dict[str, Any]
    full_document: Optional[Dict[str, Any]] = None
    update_description: Optional[Dict[str, Any]] = None
    collection: Optional[str] = None
    cluster_time: Any = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a MongoDB-shaped change event dictionary."""
        data: Dict[str, Any] = {
            "operationType": self.operation.value,
            "documentKey": copy.deepcopy(self.document_key),
        }
        if self.full_document is not None:
            data["fullDocument"] = copy.deepcopy(self.full_document)
        if self.update_description is not None:
            data["updateDescription"] = copy.deepcopy(self.update_description)
        if self.collection is not None:
            data["ns"] = {"coll": self.collection}
        if self.cluster_time is not None:
            data["clusterTime"] = self.cluster_time
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ChangeEvent:
        """Create from a MongoDB-shaped change event.

        Raises:
            ValueError: If the operation type is not a document change
        """
        op = data.get("operationType")
        try:
            operation = OperationType(op)
        except ValueError:
            raise ValueError(f"Unsupported change operation: {op}")

        ns = data.get("ns") or {}
        return cls(
            operation=operation,
            document_key=copy.deepcopy(dict(data.get("documentKey") or {})),
            full_document=copy.deepcopy(data.get("fullDocument")),
            update_description=copy.deepcopy(data.get("updateDescription")),
            collection=ns.get("coll"),
            cluster_time=data.get("clusterTime"),
        )

    def __str__(self) -> str:
        return f"ChangeEvent({self.operation.value}, key={self.document_key})"


@runtime_checkable
class ChangeCursor(Protocol):
    """A live, closeable stream of ChangeEvents for one collection.

    Example:
        >>> cursor = await handle.watch([{"$match": {"operationType": "insert"}}])
        >>> async for change in cursor:
        ...     print(change.document_key)
        >>> await cursor.close()
    """

    def __aiter__(self) -> AsyncIterator[ChangeEvent]:
        ...

    async def __anext__(self) -> ChangeEvent:
        ...

    @abstractmethod
    async def close(self) -> None:
        """Stop the feed and release its server-side resources.

        Safe to call once. Iteration ends after close.
        """
        ...


@runtime_checkable
class CollectionHandle(Protocol):
    """A resolved collection the fanout layer can query and watch."""

    @property
    def name(self) -> str:
        ...

    @abstractmethod
    async def aggregate(self, pipeline: Sequence[Mapping[str, Any]]) -> List[Document]:
        """Run a pipeline once and return the documents in store order.

        Raises:
            StoreOperationError: If the pipeline is rejected
            StoreConnectionError: If the store is unreachable
        """
        ...

    @abstractmethod
    async def find(
        self,
        query: Mapping[str, Any],
        options: Optional[Mapping[str, Any]] = None,
    ) -> List[Document]:
        """Run a single query.

        Args:
            query: Filter document
            options: Normalized find options (see normalize_find_options)
        """
        ...

    @abstractmethod
    async def watch(self, pipeline: Sequence[Mapping[str, Any]]) -> ChangeCursor:
        """Open a change cursor filtered by the pipeline.

        Changes made after this call returns are delivered by the cursor.
        """
        ...


@runtime_checkable
class DocumentStore(Protocol):
    """Protocol for document store backends.

    Example:
        >>> store = MongoDocumentStore(config.mongo)
        >>> await store.connect()
        >>> names = await store.list_collections()
        >>> orders = store.get_collection("orders")
    """

    @abstractmethod
    async def connect(self) -> None:
        """Connect to the store.

        Raises:
            StoreConnectionError: If connection fails
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Close the connection and release resources."""
        ...

    @abstractmethod
    async def list_collections(self) -> List[str]:
        """Names of the collections that currently exist."""
        ...

    @abstractmethod
    def get_collection(self, name: str) -> CollectionHandle:
        """Build a handle for a collection (no round-trip, no existence check)."""
        ...

    @abstractmethod
    async def ping(self) -> bool:
        """Whether the store answers (health checks; never raises)."""
        ...

    @property
    @abstractmethod
    def database(self) -> str:
        """Name of the database the collections live in."""
        ...

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Whether currently connected to the store."""
        ...


def normalize_find_options(options: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """Validate find options and convert them to keyword form.

    Accepts the option names a JavaScript driver client would send:
    ``projection``, ``sort`` (mapping or list of [field, direction] pairs),
    ``skip`` and ``limit``.

    Returns:
        Dictionary with only the supported keys, sort as a list of tuples

    Raises:
        ValueError: On unknown option names or malformed values
    """
    if not options:
        return {}

    unknown = sorted(set(options) - set(FIND_OPTION_NAMES))
    if unknown:
        raise ValueError(f"Unsupported find options: {', '.join(unknown)}")

    result: Dict[str, Any] = {}

    projection = options.get("projection")
    if projection is not None:
        if not isinstance(projection, Mapping):
            raise ValueError("projection must be an object")
        result["projection"] = dict(projection)

    sort = options.get("sort")
    if sort is not None:
        if isinstance(sort, Mapping):
            pairs = list(sort.items())
        elif isinstance(sort, (list, tuple)):
            pairs = []
            for item in sort:
                if not isinstance(item, (list, tuple)) or len(item) != 2:
                    raise ValueError("sort entries must be [field, direction] pairs")
                pairs.append((item[0], item[1]))
        else:
            raise ValueError("sort must be an object or a list of pairs")
        for key, direction in pairs:
            if not isinstance(key, str) or direction not in (1, -1):
                raise ValueError(f"Invalid sort direction for {key!r}: {direction!r}")
        result["sort"] = [(k, int(d)) for k, d in pairs]

    for name in ("skip", "limit"):
        value = options.get(name)
        if value is None:
            continue
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise ValueError(f"{name} must be a non-negative integer")
        result[name] = value

    return result


def create_document_store(config: "ServerConfig") -> DocumentStore:
    """Factory function to create a document store from configuration.

    Args:
        config: Server configuration

    Returns:
        Appropriate DocumentStore implementation

    Raises:
        ValueError: If backend is not supported
    """
    from ..config import StoreBackend

    if config.store_backend == StoreBackend.MONGO:
        from .mongo import MongoDocumentStore

        return MongoDocumentStore(config.mongo)
    elif config.store_backend == StoreBackend.MEMORY:
        from .memory import InMemoryDocumentStore

        return InMemoryDocumentStore(database=config.mongo.database)
    else:
        raise ValueError(f"Unsupported store backend: {config.store_backend}")
