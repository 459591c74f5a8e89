"""
Change coalescing for buffered subscriptions.

A ChangeBuffer collects change events and hands them to its flush callback
in ordered batches. A batch goes out when either:
- the queue reaches change_limit (count trigger), or
- no new change arrived for emit_delay milliseconds (quiet-period trigger)

Every add() re-arms the timer, so a steady trickle of changes below the
limit is held until the stream goes quiet (debounce). Burst behaviour:

    changes:  a b c . . . . d
    limit 3:  [a b c]       (timer) [d]

Invariants:
    - At most one timer is armed per buffer
    - Every flush disarms the timer, whatever triggered it
    - Batches are delivered in the order they were taken
    - No batch is larger than change_limit, and none is empty
    - After discard() the buffer never calls its flush callback again
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import List, Optional, Set

from ..store.base import ChangeEvent

logger = logging.getLogger(__name__)

FlushCallback = Callable[[List[ChangeEvent]], Awaitable[None]]


class ChangeBuffer:
    """Count-or-quiet-period batching of change events.

    Attributes:
        change_limit: Queue length that triggers an immediate flush
        emit_delay_ms: Quiet period after the last change before flushing

    Example:
        >>> buffer = ChangeBuffer(3, 500, on_flush=deliver)
        >>> await buffer.add(change)
    """

    def __init__(
        self,
        change_limit: int,
        emit_delay_ms: int,
        on_flush: FlushCallback,
        name: str = "",
    ) -> None:
        if change_limit < 1:
            raise ValueError(f"change_limit must be at least 1, got {change_limit}")
        if emit_delay_ms < 0:
            raise ValueError(f"emit_delay_ms must not be negative, got {emit_delay_ms}")

        self.change_limit = change_limit
        self.emit_delay_ms = emit_delay_ms
        self.name = name
        self._on_flush = on_flush

        self._queue: List[ChangeEvent] = []
        self._timer: Optional[asyncio.TimerHandle] = None
        self._flush_tasks: Set[asyncio.Task] = set()
        self._emit_lock = asyncio.Lock()
        self._discarded = False

        self.flush_count = 0
        self.flushed_changes = 0

    @property
    def pending(self) -> int:
        """Changes waiting for the next flush."""
        return len(self._queue)

    @property
    def armed(self) -> bool:
        """Whether a quiet-period timer is pending."""
        return self._timer is not None

    @property
    def discarded(self) -> bool:
        return self._discarded

    async def add(self, change: ChangeEvent) -> None:
        """Queue a change, flushing now if the queue reached change_limit."""
        if self._discarded:
            return

        self._queue.append(change)
        self._disarm()

        if len(self._queue) >= self.change_limit:
            await self.flush()
        else:
            self._arm()

    async def flush(self) -> None:
        """Deliver everything queued as one batch.

        The queue is taken and the timer disarmed before the callback runs,
        so changes arriving during delivery start the next batch.
        """
        self._disarm()
        if self._discarded or not self._queue:
            return

        batch = self._queue
        self._queue = []

        async with self._emit_lock:
            if self._discarded:
                return
            await self._on_flush(batch)

        self.flush_count += 1
        self.flushed_changes += len(batch)
        logger.debug(
            "Flushed buffered changes",
            extra={"buffer": self.name, "batch_size": len(batch)},
        )

    def discard(self) -> None:
        """Drop queued changes and stop all timers and pending flushes."""
        if self._discarded:
            return
        self._discarded = True
        self._disarm()
        for task in list(self._flush_tasks):
            task.cancel()
        dropped = len(self._queue)
        self._queue = []
        if dropped:
            logger.debug(
                "Discarded buffered changes",
                extra={"buffer": self.name, "dropped": dropped},
            )

    def _arm(self) -> None:
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self.emit_delay_ms / 1000, self._on_timer)

    def _disarm(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_timer(self) -> None:
        self._timer = None
        if self._discarded:
            return
        task = asyncio.get_running_loop().create_task(self._flush_from_timer())
        self._flush_tasks.add(task)
        task.add_done_callback(self._flush_tasks.discard)

    async def _flush_from_timer(self) -> None:
        try:
            await self.flush()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(
                f"Timed flush failed: {e}",
                extra={"buffer": self.name},
                exc_info=True,
            )
