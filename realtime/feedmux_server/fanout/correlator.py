"""
Request/response correlation for one-shot find queries.

Clients tag each find with their own request id and match the
asynchronous findResults/findError back to it. The correlator keeps the
table of pending requests and routes each outcome to the connection that
asked.

Invariants:
    - Request ids are unique among pending requests; a duplicate is
      rejected and the pending request is left untouched
    - Each pending request is completed exactly once, then forgotten
    - An outcome for an unknown request id is ignored
    - Request ids are chosen by clients, never generated here

Finds are not cancelled when their connection disconnects. They run to
completion and the outcome is dropped by the channel, which no longer
knows the connection.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from ..config import FanoutConfig
from ..errors import DuplicateRequestId, FeedMuxError, InvalidQuery, StoreUnavailable
from ..store.base import Document, StoreError, StoreOperationError, normalize_find_options
from .events import FindError, FindResults, OutboundChannel, RequestId, send
from .resolver import CollectionResolver

logger = logging.getLogger(__name__)

GENERIC_FIND_ERROR = "Failed to find documents."


@dataclass
class PendingRequest:
    """A find that has been accepted and not yet answered."""

    request_id: RequestId
    connection_id: str
    collection_name: str
    query: Dict[str, Any]
    options: Dict[str, Any]
    started_at: float = field(default_factory=time.monotonic)


class QueryCorrelator:
    """Runs finds and routes their outcomes by request id.

    Example:
        >>> correlator = QueryCorrelator(resolver, channel)
        >>> await correlator.find("conn-1", "r1", "orders", {"item": "pen"})
    """

    def __init__(
        self,
        resolver: CollectionResolver,
        channel: OutboundChannel,
        config: Optional[FanoutConfig] = None,
    ) -> None:
        self.resolver = resolver
        self.channel = channel
        self.config = config or FanoutConfig()
        self._pending: Dict[RequestId, PendingRequest] = {}
        self.completed = 0

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def is_pending(self, request_id: RequestId) -> bool:
        return request_id in self._pending

    async def find(
        self,
        connection_id: str,
        request_id: RequestId,
        collection_name: str,
        query: Optional[Mapping[str, Any]] = None,
        options: Optional[Mapping[str, Any]] = None,
    ) -> Optional[List[Document]]:
        """Run a find and emit findResults or findError to the connection.

        Errors found before the request is accepted are raised and nothing
        is emitted; the caller reports them.

        Returns:
            The results sent, or None if the find failed

        Raises:
            DuplicateRequestId: request_id is already pending
            InvalidQuery: Malformed query or unsupported options
            FeedMuxError: Too many finds are pending
        """
        if request_id in self._pending:
            raise DuplicateRequestId(request_id)
        if len(self._pending) >= self.config.max_pending_finds:
            raise FeedMuxError(
                "Too many pending find requests",
                code="TOO_MANY_PENDING_FINDS",
                details={"limit": self.config.max_pending_finds},
            )

        if query is not None and not isinstance(query, Mapping):
            raise InvalidQuery("query must be an object", option="query")
        try:
            normalize_find_options(options)
        except ValueError as e:
            raise InvalidQuery(str(e), option="options") from e

        pending = PendingRequest(
            request_id=request_id,
            connection_id=connection_id,
            collection_name=collection_name,
            query=dict(query or {}),
            options=dict(options or {}),
        )
        self._pending[request_id] = pending

        try:
            outcome = await self._run(pending)
        except asyncio.CancelledError:
            self._pending.pop(request_id, None)
            raise

        await self.deliver(request_id, outcome)
        return list(outcome.results) if isinstance(outcome, FindResults) else None

    async def _run(self, pending: PendingRequest) -> Union[FindResults, FindError]:
        try:
            handle = await self.resolver.resolve(pending.collection_name)
            results = await handle.find(pending.query, pending.options)
        except FeedMuxError as e:
            return FindError(pending.request_id, e.message)
        except StoreOperationError as e:
            return FindError(pending.request_id, InvalidQuery(f"Query rejected: {e}").message)
        except StoreError as e:
            logger.warning(
                f"Find failed: {e}",
                extra={"request_id": pending.request_id, "collection": pending.collection_name},
            )
            return FindError(
                pending.request_id,
                StoreUnavailable("find", pending.collection_name).message,
            )
        except Exception as e:
            logger.error(
                f"Error finding documents in {pending.collection_name}: {e}",
                extra={"request_id": pending.request_id},
                exc_info=True,
            )
            return FindError(pending.request_id, GENERIC_FIND_ERROR)

        return FindResults(pending.request_id, tuple(results))

    async def deliver(self, request_id: RequestId, outcome: Union[FindResults, FindError]) -> bool:
        """Complete a pending request with its outcome.

        Returns:
            False if no request with that id is pending
        """
        pending = self._pending.pop(request_id, None)
        if pending is None:
            logger.debug("Outcome for unknown request ignored", extra={"request_id": request_id})
            return False

        self.completed += 1
        logger.debug(
            "Find completed",
            extra={
                "request_id": request_id,
                "connection_id": pending.connection_id,
                "collection": pending.collection_name,
                "event": outcome.event,
                "elapsed_ms": int((time.monotonic() - pending.started_at) * 1000),
            },
        )
        await send(self.channel, pending.connection_id, outcome)
        return True
