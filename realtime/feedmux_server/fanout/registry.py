"""
Subscription registry and connection lifecycle.

The registry turns subscribe requests into live subscriptions:

    resolve collection -> open change cursor -> run snapshot pipeline
        -> emit initialDocuments -> start delivering changes

The cursor is opened before the snapshot runs, so a change committed while
the snapshot is being read is delivered rather than lost. A client may see
such a change both in the snapshot and as an update.

Invariants:
    - Subscribe operations of one connection are serialized; different
      connections never wait on each other
    - If any step after opening the cursor fails, the cursor is closed
      before the error propagates
    - A live subscription for the same key is only replaced once the new
      cursor and snapshot are ready; a failed re-subscribe leaves it running
    - A connection that disconnects while a subscribe is in flight ends up
      with no subscription and no initialDocuments
    - on_disconnect is idempotent and never raises
    - Buffered parameters are validated before any store access
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..config import FanoutConfig
from ..errors import (
    InvalidSubscriptionParameters,
    StoreUnavailable,
    WatcherFailure,
)
from ..store.base import (
    ChangeCursor,
    ChangeEvent,
    CollectionHandle,
    Document,
    Pipeline,
    StoreError,
    StoreOperationError,
)
from .buffering import ChangeBuffer
from .events import (
    BufferedUpdateDocuments,
    InitialDocuments,
    OutboundChannel,
    SubscribeError,
    UpdateDocuments,
    send,
)
from .multiplexer import Subscription, SubscriptionKey, WatchMultiplexer
from .resolver import CollectionResolver

logger = logging.getLogger(__name__)


@dataclass
class ConnectionState:
    """Per-connection bookkeeping.

    Attributes:
        lock: Serializes subscribe operations of this connection
        closed: Set when the connection disconnects
    """

    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    closed: bool = False


class SubscriptionRegistry:
    """Creates, replaces and tears down subscriptions.

    Attributes:
        resolver: Collection resolver
        channel: Outbound channel to connections
        config: Limits for buffered subscriptions
        multiplexer: Live subscription table

    Example:
        >>> registry = SubscriptionRegistry(resolver, channel)
        >>> registry.open_connection("conn-1")
        >>> docs = await registry.subscribe("conn-1", "orders", [])
        >>> await registry.on_disconnect("conn-1")
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
        self.multiplexer = WatchMultiplexer(on_failure=self._report_watcher_failure)
        self._connections: Dict[str, ConnectionState] = {}

    # Connections

    def open_connection(self, connection_id: str) -> None:
        """Start tracking a connection. Subscribes require this first."""
        if connection_id not in self._connections:
            self._connections[connection_id] = ConnectionState()

    def is_open(self, connection_id: str) -> bool:
        state = self._connections.get(connection_id)
        return state is not None and not state.closed

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    async def on_disconnect(self, connection_id: str) -> int:
        """Release everything a connection owns.

        Every subscription is closed (cursor closed, timer disarmed, buffer
        discarded) before this returns. Pending finds are left alone.

        Returns:
            Number of subscriptions closed
        """
        state = self._connections.pop(connection_id, None)
        if state is not None:
            state.closed = True

        try:
            closed = await self.multiplexer.close_connection(connection_id)
        except Exception as e:
            logger.error(
                f"Cleanup failed: {e}",
                extra={"connection_id": connection_id},
                exc_info=True,
            )
            return 0

        if state is not None or closed:
            logger.info(
                "Cleaned up connection",
                extra={"connection_id": connection_id, "subscriptions_closed": closed},
            )
        return closed

    async def close_all(self) -> int:
        """Disconnect every connection (server shutdown)."""
        total = 0
        for connection_id in list(self._connections):
            total += await self.on_disconnect(connection_id)
        total += await self.multiplexer.close_all()
        return total

    # Subscribe paths

    async def subscribe(
        self,
        connection_id: str,
        collection_name: str,
        pipeline: Optional[Sequence[Mapping[str, Any]]] = None,
    ) -> Optional[List[Document]]:
        """Subscribe with immediate delivery.

        Returns:
            The snapshot sent as initialDocuments, or None if the connection
            closed before the subscription went live

        Raises:
            CollectionNotFound: Unknown collection
            StoreUnavailable: Store round-trip failed
            InvalidSubscriptionParameters: Malformed pipeline
        """
        return await self._subscribe(connection_id, collection_name, pipeline, None)

    async def buffered_subscribe(
        self,
        connection_id: str,
        collection_name: str,
        change_limit: Any,
        emit_delay_ms: Any,
        pipeline: Optional[Sequence[Mapping[str, Any]]] = None,
    ) -> Optional[List[Document]]:
        """Subscribe with changes coalesced into batches.

        Args:
            change_limit: Batch size that triggers delivery (>= 1)
            emit_delay_ms: Quiet period before a partial batch is delivered (>= 0)

        Raises:
            InvalidSubscriptionParameters: Before any store access, if the
                buffering parameters are out of range or not integers
        """
        self._check_buffering(change_limit, emit_delay_ms)
        return await self._subscribe(
            connection_id, collection_name, pipeline, (change_limit, emit_delay_ms)
        )

    def _check_buffering(self, change_limit: Any, emit_delay_ms: Any) -> None:
        limits = (
            ("changeLimit", change_limit, 1, self.config.max_change_limit),
            ("emitDelay", emit_delay_ms, 0, self.config.max_emit_delay_ms),
        )
        for name, value, minimum, maximum in limits:
            if isinstance(value, bool) or not isinstance(value, int):
                raise InvalidSubscriptionParameters(
                    f"{name} must be an integer", parameter=name, value=value
                )
            if value < minimum:
                raise InvalidSubscriptionParameters(
                    f"{name} must be at least {minimum}", parameter=name, value=value
                )
            if value > maximum:
                raise InvalidSubscriptionParameters(
                    f"{name} must be at most {maximum}", parameter=name, value=value
                )

    async def _subscribe(
        self,
        connection_id: str,
        collection_name: str,
        pipeline: Optional[Sequence[Mapping[str, Any]]],
        buffering: Optional[Tuple[int, int]],
    ) -> Optional[List[Document]]:
        stages = _as_pipeline(pipeline)
        key = SubscriptionKey(connection_id, collection_name)

        state = self._connections.get(connection_id)
        if state is None or state.closed:
            logger.debug("Subscribe on closed connection ignored", extra={"key": str(key)})
            return None

        async with state.lock:
            if state.closed:
                return None

            handle = await self.resolver.resolve(collection_name)
            if state.closed:
                return None

            cursor = await self._watch(handle, stages)
            live = False
            try:
                documents = await self._snapshot(handle, stages)
                if state.closed:
                    return None

                await send(
                    self.channel,
                    connection_id,
                    InitialDocuments(collection_name, tuple(documents)),
                )
                if state.closed:
                    return None

                subscription = self._build(key, stages, cursor, buffering)
                await self.multiplexer.open(subscription)
                live = True
            finally:
                if not live:
                    await _close_quietly(cursor, key)

        logger.info(
            "Watching collection",
            extra={
                "connection_id": connection_id,
                "collection": collection_name,
                "mode": subscription.mode.value,
                "snapshot_size": len(documents),
            },
        )
        return documents

    async def _watch(self, handle: CollectionHandle, pipeline: Pipeline) -> ChangeCursor:
        try:
            return await handle.watch(pipeline)
        except StoreOperationError as e:
            raise InvalidSubscriptionParameters(
                f"Pipeline rejected: {e}", parameter="pipeline"
            ) from e
        except StoreError as e:
            logger.warning(f"Opening change stream failed: {e}", extra={"collection": handle.name})
            raise StoreUnavailable("watch", handle.name) from e

    async def _snapshot(self, handle: CollectionHandle, pipeline: Pipeline) -> List[Document]:
        try:
            return await handle.aggregate(pipeline)
        except StoreOperationError as e:
            raise InvalidSubscriptionParameters(
                f"Pipeline rejected: {e}", parameter="pipeline"
            ) from e
        except StoreError as e:
            logger.warning(f"Snapshot failed: {e}", extra={"collection": handle.name})
            raise StoreUnavailable("snapshot", handle.name) from e

    def _build(
        self,
        key: SubscriptionKey,
        pipeline: Pipeline,
        cursor: ChangeCursor,
        buffering: Optional[Tuple[int, int]],
    ) -> Subscription:
        channel = self.channel

        if buffering is None:
            async def forward(change: ChangeEvent) -> None:
                await send(channel, key.connection_id, UpdateDocuments(key.collection_name, change))

            return Subscription(key, pipeline, cursor, forward)

        async def deliver_batch(changes: List[ChangeEvent]) -> None:
            await send(
                channel,
                key.connection_id,
                BufferedUpdateDocuments(key.collection_name, tuple(changes)),
            )

        change_limit, emit_delay_ms = buffering
        buffer = ChangeBuffer(change_limit, emit_delay_ms, deliver_batch, name=str(key))
        return Subscription(key, pipeline, cursor, buffer.add, buffer=buffer)

    async def _report_watcher_failure(self, key: SubscriptionKey, failure: WatcherFailure) -> None:
        if not self.is_open(key.connection_id):
            return
        await send(
            self.channel,
            key.connection_id,
            SubscribeError(key.collection_name, failure.message),
        )

    # Introspection

    def subscriptions_for(self, connection_id: str) -> List[Subscription]:
        return [s for s in self.multiplexer.subscriptions() if s.key.connection_id == connection_id]

    def stats(self) -> Dict[str, Any]:
        subscriptions = self.multiplexer.subscriptions()
        return {
            "connections": len(self._connections),
            "subscriptions": len(subscriptions),
            "buffered_subscriptions": sum(1 for s in subscriptions if s.buffer is not None),
            "resolved_collections": self.resolver.cached_count,
        }


def _as_pipeline(pipeline: Optional[Sequence[Mapping[str, Any]]]) -> Pipeline:
    if pipeline is None:
        return []
    if isinstance(pipeline, (str, bytes, Mapping)) or not isinstance(pipeline, Sequence):
        raise InvalidSubscriptionParameters(
            "pipeline must be a list of stages", parameter="pipeline"
        )
    stages = []
    for stage in pipeline:
        if not isinstance(stage, Mapping):
            raise InvalidSubscriptionParameters(
                "pipeline stages must be objects", parameter="pipeline", value=stage
            )
        stages.append(dict(stage))
    return stages


async def _close_quietly(cursor: ChangeCursor, key: SubscriptionKey) -> None:
    try:
        await cursor.close()
    except Exception as e:
        logger.warning(f"Closing change cursor failed: {e}", extra={"key": str(key)})
