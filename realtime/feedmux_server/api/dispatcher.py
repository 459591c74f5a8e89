"""
Inbound event dispatch.

The dispatcher is the boundary between the transport and the fanout core.
It validates inbound payloads, calls the registry or correlator, and turns
every failure into the matching error event:

    subscribe / bufferedSubscribe  ->  subscribeError {collectionName, message}
    find                           ->  findError {requestId, message}

Invariants:
    - Only FeedMuxError messages and validation summaries reach clients;
      anything unexpected is logged and reported with a generic message
    - A payload whose collection name or request id cannot be recovered
      is logged and dropped, since the client could not correlate an error
    - Unknown event names are logged and ignored
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any, Dict, Optional

from pydantic import ValidationError

from ..errors import FeedMuxError
from ..fanout.correlator import GENERIC_FIND_ERROR, QueryCorrelator
from ..fanout.events import FindError, OutboundChannel, SubscribeError, send
from ..fanout.registry import SubscriptionRegistry
from .messages import (
    BufferedSubscribeRequest,
    FindRequest,
    SubscribeRequest,
    describe_validation_error,
)

logger = logging.getLogger(__name__)

GENERIC_SUBSCRIBE_ERROR = "Failed to subscribe."

Handler = Callable[[str, Any], Awaitable[None]]


class RequestDispatcher:
    """Routes named inbound events to the fanout core.

    Example:
        >>> dispatcher = RequestDispatcher(registry, correlator, channel)
        >>> dispatcher.open_connection("conn-1")
        >>> await dispatcher.dispatch("conn-1", "subscribe", {"collectionName": "orders"})
        >>> await dispatcher.on_disconnect("conn-1")
    """

    def __init__(
        self,
        registry: SubscriptionRegistry,
        correlator: QueryCorrelator,
        channel: OutboundChannel,
    ) -> None:
        self.registry = registry
        self.correlator = correlator
        self.channel = channel
        self._handlers: Dict[str, Handler] = {
            "subscribe": self._on_subscribe,
            "bufferedSubscribe": self._on_buffered_subscribe,
            "find": self._on_find,
        }

    @property
    def events(self) -> list[str]:
        return list(self._handlers)

    def open_connection(self, connection_id: str) -> None:
        self.registry.open_connection(connection_id)
        logger.info("Client connected", extra={"connection_id": connection_id})

    async def on_disconnect(self, connection_id: str) -> None:
        logger.info("Client disconnected", extra={"connection_id": connection_id})
        await self.registry.on_disconnect(connection_id)

    async def dispatch(self, connection_id: str, event: str, payload: Any) -> None:
        """Handle one inbound event."""
        handler = self._handlers.get(event)
        if handler is None:
            logger.warning(
                "Unknown event ignored",
                extra={"connection_id": connection_id, "event": event},
            )
            return
        await handler(connection_id, payload)

    def stats(self) -> Dict[str, Any]:
        stats = self.registry.stats()
        stats["pending_finds"] = self.correlator.pending_count
        stats["completed_finds"] = self.correlator.completed
        return stats

    # Handlers

    async def _on_subscribe(self, connection_id: str, payload: Any) -> None:
        try:
            request = SubscribeRequest.model_validate(payload)
        except ValidationError as e:
            await self._reject_subscribe(connection_id, payload, describe_validation_error(e))
            return

        logger.info(
            "Subscribe requested",
            extra={"connection_id": connection_id, "collection": request.collection_name},
        )
        await self._run_subscribe(
            connection_id,
            request.collection_name,
            self.registry.subscribe(connection_id, request.collection_name, request.pipeline),
        )

    async def _on_buffered_subscribe(self, connection_id: str, payload: Any) -> None:
        try:
            request = BufferedSubscribeRequest.model_validate(payload)
        except ValidationError as e:
            await self._reject_subscribe(connection_id, payload, describe_validation_error(e))
            return

        logger.info(
            "Buffered subscribe requested",
            extra={
                "connection_id": connection_id,
                "collection": request.collection_name,
                "change_limit": request.change_limit,
                "emit_delay_ms": request.emit_delay,
            },
        )
        await self._run_subscribe(
            connection_id,
            request.collection_name,
            self.registry.buffered_subscribe(
                connection_id,
                request.collection_name,
                request.change_limit,
                request.emit_delay,
                request.pipeline,
            ),
        )

    async def _run_subscribe(
        self,
        connection_id: str,
        collection_name: str,
        operation: Awaitable[Any],
    ) -> None:
        try:
            await operation
        except FeedMuxError as e:
            logger.info(
                f"Subscribe rejected: {e.message}",
                extra={
                    "connection_id": connection_id,
                    "collection": collection_name,
                    "code": e.code,
                },
            )
            await send(self.channel, connection_id, SubscribeError(collection_name, e.message))
        except Exception as e:
            logger.error(
                f"Subscribe failed: {e}",
                extra={"connection_id": connection_id, "collection": collection_name},
                exc_info=True,
            )
            await send(
                self.channel,
                connection_id,
                SubscribeError(collection_name, GENERIC_SUBSCRIBE_ERROR),
            )

    async def _on_find(self, connection_id: str, payload: Any) -> None:
        try:
            request = FindRequest.model_validate(payload)
        except ValidationError as e:
            request_id = _recover(payload, "requestId", (str, int))
            if request_id is None:
                logger.warning(
                    "Dropping find without a usable requestId",
                    extra={"connection_id": connection_id},
                )
                return
            await send(
                self.channel, connection_id, FindError(request_id, describe_validation_error(e))
            )
            return

        try:
            await self.correlator.find(
                connection_id,
                request.request_id,
                request.collection_name,
                request.query,
                request.options,
            )
        except FeedMuxError as e:
            logger.info(
                f"Find rejected: {e.message}",
                extra={"connection_id": connection_id, "request_id": request.request_id},
            )
            await send(self.channel, connection_id, FindError(request.request_id, e.message))
        except Exception as e:
            logger.error(
                f"Find failed: {e}",
                extra={"connection_id": connection_id, "request_id": request.request_id},
                exc_info=True,
            )
            await send(
                self.channel, connection_id, FindError(request.request_id, GENERIC_FIND_ERROR)
            )

    async def _reject_subscribe(self, connection_id: str, payload: Any, message: str) -> None:
        collection_name = _recover(payload, "collectionName", (str,))
        if collection_name is None:
            logger.warning(
                "Dropping subscribe without a usable collectionName",
                extra={"connection_id": connection_id},
            )
            return
        await send(self.channel, connection_id, SubscribeError(collection_name, message))


def _recover(payload: Any, key: str, types: tuple) -> Optional[Any]:
    if not isinstance(payload, dict):
        return None
    value = payload.get(key)
    if isinstance(value, bool) or not isinstance(value, types):
        return None
    return value
