"""
Watch multiplexer: one live change cursor per (connection, collection).

Each Subscription owns a change cursor and a pump task that reads the
cursor and feeds the subscription's sink: either a direct forward to the
connection or a ChangeBuffer. The multiplexer keeps the table of live
subscriptions and is the only place cursors are closed.

Invariants:
    - At most one live subscription per SubscriptionKey
    - Opening a key that is already live closes the old subscription first
    - A subscription is closed exactly once; its cursor is closed at most once
    - Changes reach the sink in cursor order
    - A cursor that raises or ends on its own tears its subscription down
      and is reported to on_failure; nothing is retried

How to change safely:
    - Sinks must not call back into the multiplexer for their own key
    - Test close paths against the in-memory store, whose cursors raise on
      double close
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from ..errors import WatcherFailure
from ..store.base import ChangeCursor, ChangeEvent, Pipeline
from .buffering import ChangeBuffer

logger = logging.getLogger(__name__)

Sink = Callable[[ChangeEvent], Awaitable[None]]


class DeliveryMode(Enum):
    """How a subscription's changes are delivered."""

    IMMEDIATE = "immediate"
    BUFFERED = "buffered"


@dataclass(frozen=True)
class SubscriptionKey:
    """Identity of a subscription: one per connection and collection."""

    connection_id: str
    collection_name: str

    def __str__(self) -> str:
        return f"{self.connection_id}/{self.collection_name}"


class Subscription:
    """A live change cursor bound to its delivery sink.

    Attributes:
        key: Connection and collection this subscription serves
        pipeline: Filter the cursor was opened with
        cursor: The store change cursor
        buffer: ChangeBuffer for buffered delivery, None for immediate
        delivered: Changes handed to the sink so far
    """

    def __init__(
        self,
        key: SubscriptionKey,
        pipeline: Pipeline,
        cursor: ChangeCursor,
        sink: Sink,
        buffer: Optional[ChangeBuffer] = None,
    ) -> None:
        self.key = key
        self.pipeline = pipeline
        self.cursor = cursor
        self.buffer = buffer
        self._sink = sink
        self._task: Optional[asyncio.Task] = None
        self._closed = False
        self.delivered = 0

    @property
    def mode(self) -> DeliveryMode:
        return DeliveryMode.BUFFERED if self.buffer is not None else DeliveryMode.IMMEDIATE

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self, pump: Callable[[Subscription], Awaitable[None]]) -> None:
        if self._task is not None:
            raise RuntimeError(f"Subscription {self.key} already started")
        self._task = asyncio.get_running_loop().create_task(
            pump(self), name=f"watch:{self.key}"
        )

    async def deliver(self, change: ChangeEvent) -> None:
        await self._sink(change)
        self.delivered += 1

    async def close(self) -> None:
        """Stop delivery and close the cursor.

        Never raises because of the cursor: a failing close is logged.
        """
        if self._closed:
            return
        self._closed = True

        if self.buffer is not None:
            self.buffer.discard()

        task = self._task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            await asyncio.wait([task])

        try:
            await self.cursor.close()
        except Exception as e:
            logger.warning(
                f"Closing change cursor failed: {e}",
                extra={
                    "connection_id": self.key.connection_id,
                    "collection": self.key.collection_name,
                },
            )

    def describe(self) -> Dict[str, Any]:
        info: Dict[str, Any] = {
            "collection": self.key.collection_name,
            "mode": self.mode.value,
            "delivered": self.delivered,
        }
        if self.buffer is not None:
            info["change_limit"] = self.buffer.change_limit
            info["emit_delay_ms"] = self.buffer.emit_delay_ms
            info["pending"] = self.buffer.pending
        return info


FailureCallback = Callable[[SubscriptionKey, WatcherFailure], Awaitable[None]]


class WatchMultiplexer:
    """Table of live subscriptions and their pump tasks.

    Example:
        >>> mux = WatchMultiplexer(on_failure=report)
        >>> await mux.open(subscription)
        >>> await mux.close_connection("conn-1")
    """

    def __init__(self, on_failure: Optional[FailureCallback] = None) -> None:
        self._subscriptions: Dict[SubscriptionKey, Subscription] = {}
        self._on_failure = on_failure

    def __len__(self) -> int:
        return len(self._subscriptions)

    def __contains__(self, key: SubscriptionKey) -> bool:
        return key in self._subscriptions

    def get(self, key: SubscriptionKey) -> Optional[Subscription]:
        return self._subscriptions.get(key)

    def keys_for(self, connection_id: str) -> List[SubscriptionKey]:
        return [k for k in self._subscriptions if k.connection_id == connection_id]

    def subscriptions(self) -> List[Subscription]:
        return list(self._subscriptions.values())

    async def open(self, subscription: Subscription) -> None:
        """Register a subscription and start pumping its cursor.

        An existing subscription for the same key is closed before the new
        one starts.
        """
        key = subscription.key
        previous = self._subscriptions.pop(key, None)
        if previous is not None:
            logger.info(
                "Replacing existing subscription",
                extra={"connection_id": key.connection_id, "collection": key.collection_name},
            )
            await previous.close()

        self._subscriptions[key] = subscription
        subscription.start(self._pump)

    async def close(self, key: SubscriptionKey) -> bool:
        """Close and forget one subscription.

        Returns:
            True if the key was live
        """
        subscription = self._subscriptions.pop(key, None)
        if subscription is None:
            return False
        await subscription.close()
        return True

    async def close_connection(self, connection_id: str) -> int:
        """Close every subscription owned by a connection.

        Returns:
            Number of subscriptions closed
        """
        keys = self.keys_for(connection_id)
        for key in keys:
            await self.close(key)
        return len(keys)

    async def close_all(self) -> int:
        keys = list(self._subscriptions)
        for key in keys:
            await self.close(key)
        return len(keys)

    async def _pump(self, subscription: Subscription) -> None:
        key = subscription.key
        try:
            async for change in subscription.cursor:
                if subscription.closed:
                    return
                await subscription.deliver(change)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if subscription.closed:
                return
            logger.warning(
                f"Change stream failed: {e}",
                extra={"connection_id": key.connection_id, "collection": key.collection_name},
                exc_info=True,
            )
            reason = str(e)
        else:
            if subscription.closed:
                return
            logger.warning(
                "Change stream ended unexpectedly",
                extra={"connection_id": key.connection_id, "collection": key.collection_name},
            )
            reason = "change stream ended"

        if self._subscriptions.get(key) is subscription:
            del self._subscriptions[key]

        # Changes already read are still delivered before the failure report
        if subscription.buffer is not None:
            try:
                await subscription.buffer.flush()
            except Exception as e:
                logger.warning(f"Final flush failed: {e}", extra={"key": str(key)})
        await subscription.close()

        if self._on_failure is None:
            return
        try:
            await self._on_failure(key, WatcherFailure(key.collection_name, reason))
        except Exception as e:
            logger.error(f"Reporting watcher failure failed: {e}", exc_info=True)
