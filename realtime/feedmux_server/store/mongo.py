"""
MongoDB document store implementation.

This module provides the production backend on top of pymongo's asyncio
API. Change feeds are MongoDB change streams, which require a replica set
(a single-node set is enough for development).

Invariants:
    - Change streams are opened before the caller takes its snapshot
    - Non-document events (drop, rename, invalidate) are not forwarded;
      invalidate ends the stream
    - Driver errors are translated into StoreError subclasses

How to change safely:
    - Test against a real replica set before deploying
    - Keep find option translation in sync with normalize_find_options
"""

from __future__ import annotations

import logging
from typing import Any, List, Mapping, Optional, Sequence

from pymongo import AsyncMongoClient
from pymongo.errors import (
    ConnectionFailure,
    OperationFailure,
    PyMongoError,
)

from .base import (
    ChangeEvent,
    Document,
    StoreConnectionError,
    StoreError,
    StoreOperationError,
    normalize_find_options,
)

logger = logging.getLogger(__name__)

# replSetInitiate on an initialized member fails with AlreadyInitialized
ALREADY_INITIALIZED = 23


# Server error codes that describe the deployment, not the query
_UNAVAILABLE_CODES = frozenset(
    {
        50,  # MaxTimeMSExpired
        91,  # ShutdownInProgress
        189,  # PrimarySteppedDown
        262,  # ExceededTimeLimit
        10107,  # NotWritablePrimary
        11600,  # InterruptedAtShutdown
        11602,  # InterruptedDueToReplStateChange
        13435,  # NotPrimaryNoSecondaryOk
        40573,  # $changeStream needs a replica set
    }
)
_ACCESS_CODES = frozenset({13, 18})  # Unauthorized, AuthenticationFailed


def _translate(e: PyMongoError, action: str) -> StoreError:
    if isinstance(e, ConnectionFailure):
        return StoreConnectionError(f"MongoDB unreachable during {action}: {e}")
    if isinstance(e, OperationFailure):
        if e.code in _UNAVAILABLE_CODES:
            return StoreConnectionError(f"MongoDB cannot serve {action}: {e}")
        if e.code in _ACCESS_CODES:
            return StoreError(f"MongoDB denied {action}: {e}")
        return StoreOperationError(f"MongoDB rejected {action}: {e}")
    return StoreError(f"MongoDB error during {action}: {e}")


class MongoChangeCursor:
    """ChangeCursor over a pymongo AsyncChangeStream."""

    def __init__(self, stream: Any, collection: str) -> None:
        self._stream = stream
        self.collection = collection

    def __aiter__(self) -> MongoChangeCursor:
        return self

    async def __anext__(self) -> ChangeEvent:
        while True:
            try:
                raw = await self._stream.next()
            except StopAsyncIteration:
                raise
            except PyMongoError as e:
                raise _translate(e, f"watch on {self.collection}") from e

            try:
                return ChangeEvent.from_dict(raw)
            except ValueError:
                logger.debug(
                    "Skipping non-document change event",
                    extra={
                        "collection": self.collection,
                        "operation_type": raw.get("operationType"),
                    },
                )

    async def close(self) -> None:
        try:
            await self._stream.close()
        except PyMongoError as e:
            raise _translate(e, f"closing watch on {self.collection}") from e


class MongoCollection:
    """CollectionHandle over a pymongo AsyncCollection."""

    def __init__(self, collection: Any, full_document: str = "default") -> None:
        self._collection = collection
        self._full_document = full_document

    @property
    def name(self) -> str:
        return self._collection.name

    async def aggregate(self, pipeline: Sequence[Mapping[str, Any]]) -> List[Document]:
        try:
            cursor = await self._collection.aggregate(list(pipeline))
            return await cursor.to_list(None)
        except PyMongoError as e:
            raise _translate(e, f"aggregate on {self.name}") from e

    async def find(
        self,
        query: Mapping[str, Any],
        options: Optional[Mapping[str, Any]] = None,
    ) -> List[Document]:
        try:
            kwargs = normalize_find_options(options)
        except ValueError as e:
            raise StoreOperationError(str(e)) from e

        try:
            cursor = self._collection.find(dict(query), **kwargs)
            return await cursor.to_list(None)
        except PyMongoError as e:
            raise _translate(e, f"find on {self.name}") from e

    async def watch(self, pipeline: Sequence[Mapping[str, Any]]) -> MongoChangeCursor:
        kwargs: dict[str, Any] = {}
        if self._full_document != "default":
            kwargs["full_document"] = self._full_document
        try:
            stream = await self._collection.watch(list(pipeline), **kwargs)
        except PyMongoError as e:
            raise _translate(e, f"watch on {self.name}") from e
        return MongoChangeCursor(stream, self.name)


class MongoDocumentStore:
    """MongoDB implementation of the DocumentStore protocol.

    Attributes:
        config: MongoConfig instance

    Example:
        >>> store = MongoDocumentStore(MongoConfig(uri="mongodb://localhost:27017"))
        >>> await store.connect()
        >>> await store.list_collections()
        ['result-cache-0', 'result-cache-1']
    """

    def __init__(self, config: Any) -> None:
        """Initialize MongoDB store.

        Args:
            config: MongoConfig instance with connection settings
        """
        self.config = config
        self._client: Optional[AsyncMongoClient] = None
        self._db: Any = None
        self._connected = False

    @property
    def database(self) -> str:
        return self.config.database

    @property
    def is_connected(self) -> bool:
        """Whether connected to MongoDB."""
        return self._connected and self._client is not None

    async def connect(self) -> None:
        """Connect to MongoDB and verify the server answers.

        Initiates a single-node replica set first when configured to, so
        change streams are available on a fresh development server.

        Raises:
            StoreConnectionError: If connection fails
        """
        if self._connected:
            return

        client_kwargs: dict[str, Any] = {
            "serverSelectionTimeoutMS": self.config.server_selection_timeout_ms,
            "directConnection": self.config.direct_connection,
        }

        try:
            self._client = AsyncMongoClient(self.config.uri, **client_kwargs)

            if self.config.init_replica_set:
                await self._init_replica_set()

            await self._client.admin.command("ping")
            self._db = self._client[self.config.database]
            self._connected = True

            logger.info(
                "Connected to MongoDB",
                extra={
                    "uri": self.config.redacted_uri,
                    "database": self.config.database,
                },
            )

        except PyMongoError as e:
            self._connected = False
            raise StoreConnectionError(f"Failed to connect to MongoDB: {e}") from e

    async def _init_replica_set(self) -> None:
        try:
            response = await self._client.admin.command({"replSetInitiate": {}})
            logger.info("Replica set initiated", extra={"response": str(response)})
        except OperationFailure as e:
            if e.code == ALREADY_INITIALIZED:
                logger.info("Replica set already initialized")
            else:
                logger.warning(f"replSetInitiate failed: {e}")

    async def close(self) -> None:
        """Close the client connection pool."""
        if self._client is not None:
            try:
                await self._client.close()
            except PyMongoError as e:
                logger.warning(f"Error closing MongoDB client: {e}")
            self._client = None
            self._db = None

        self._connected = False
        logger.info("MongoDB connection closed")

    async def list_collections(self) -> List[str]:
        if not self.is_connected:
            raise StoreConnectionError("Not connected")
        try:
            return await self._db.list_collection_names()
        except PyMongoError as e:
            raise _translate(e, "list_collections") from e

    def get_collection(self, name: str) -> MongoCollection:
        if not self.is_connected:
            raise StoreConnectionError("Not connected")
        return MongoCollection(self._db[name], full_document=self.config.full_document)

    async def ping(self) -> bool:
        """Check the server answers (used by the health endpoint)."""
        if not self.is_connected:
            return False
        try:
            await self._client.admin.command("ping")
            return True
        except PyMongoError:
            return False

    async def insert_one(self, collection: str, document: Mapping[str, Any]) -> Any:
        """Insert a document (used by the seed tool).

        Returns:
            The inserted _id
        """
        if not self.is_connected:
            raise StoreConnectionError("Not connected")
        try:
            result = await self._db[collection].insert_one(dict(document))
            return result.inserted_id
        except PyMongoError as e:
            raise _translate(e, f"insert on {collection}") from e
