"""
Collection name resolution.

Maps a client-supplied collection name to a store handle, verifying the
collection exists on first use. Resolved handles are cached for the
lifetime of the process.

Invariants:
    - A cache entry is written once and never replaced or evicted
    - Failed lookups are never cached, so a later-created collection
      resolves on the next request
    - Concurrent first lookups of one name are harmless: the first
      handle stored wins and both callers get it

How to change safely:
    - A dropped collection keeps its cached handle; its watchers fail and
      the client sees subscribeError
"""

from __future__ import annotations

import logging
from typing import Dict

from ..errors import CollectionNotFound, StoreUnavailable
from ..store.base import CollectionHandle, DocumentStore, StoreError

logger = logging.getLogger(__name__)


class CollectionResolver:
    """Resolves and caches collection handles.

    Example:
        >>> resolver = CollectionResolver(store)
        >>> handle = await resolver.resolve("result-cache-0")
    """

    def __init__(self, store: DocumentStore) -> None:
        self.store = store
        self._cache: Dict[str, CollectionHandle] = {}

    async def resolve(self, collection_name: str) -> CollectionHandle:
        """Return the handle for a collection.

        Raises:
            CollectionNotFound: If the store has no such collection
            StoreUnavailable: If listing collections failed
        """
        cached = self._cache.get(collection_name)
        if cached is not None:
            return cached

        try:
            names = await self.store.list_collections()
        except StoreError as e:
            logger.warning(
                f"Listing collections failed: {e}",
                extra={"collection": collection_name},
            )
            raise StoreUnavailable("list_collections", collection_name) from e

        if collection_name not in names:
            raise CollectionNotFound(collection_name, self.store.database)

        handle = self._cache.setdefault(collection_name, self.store.get_collection(collection_name))
        logger.debug("Collection resolved", extra={"collection": collection_name})
        return handle

    def is_cached(self, collection_name: str) -> bool:
        return collection_name in self._cache

    @property
    def cached_count(self) -> int:
        return len(self._cache)
