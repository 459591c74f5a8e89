"""
Unit tests for ChangeBuffer.

Tests cover:
- Count-triggered flushes
- Quiet-period (debounced) flushes
- Timer handling after flushes
- Discard and ordering guarantees
"""

import asyncio

import pytest

from realtime.feedmux_server.fanout.buffering import ChangeBuffer
from realtime.feedmux_server.store.base import ChangeEvent, OperationType


def _change(n):
    return ChangeEvent(
        operation=OperationType.INSERT,
        document_key={"_id": n},
        full_document={"_id": n},
        collection="orders",
    )


class Recorder:
    """Flush callback recording the _ids of each batch."""

    def __init__(self, delay: float = 0.0) -> None:
        self.batches = []
        self.delay = delay

    async def __call__(self, batch):
        if self.delay:
            await asyncio.sleep(self.delay)
        self.batches.append([c.document_key["_id"] for c in batch])


class TestChangeBuffer:
    """Tests for ChangeBuffer."""

    def test_rejects_bad_parameters(self):
        with pytest.raises(ValueError):
            ChangeBuffer(0, 100, on_flush=Recorder())
        with pytest.raises(ValueError):
            ChangeBuffer(1, -1, on_flush=Recorder())

    @pytest.mark.asyncio
    async def test_count_trigger(self):
        """Reaching change_limit flushes immediately."""
        recorder = Recorder()
        buffer = ChangeBuffer(2, 40000, on_flush=recorder)

        await buffer.add(_change(1))
        assert recorder.batches == []
        assert buffer.armed

        await buffer.add(_change(2))
        assert recorder.batches == [[1, 2]]
        assert buffer.pending == 0
        assert not buffer.armed

        await buffer.add(_change(3))
        assert recorder.batches == [[1, 2]]
        assert buffer.pending == 1
        buffer.discard()

    @pytest.mark.asyncio
    async def test_quiet_period_trigger(self, wait_until):
        """A change below the limit goes out after emit_delay."""
        recorder = Recorder()
        buffer = ChangeBuffer(10, 20, on_flush=recorder)

        await buffer.add(_change(1))
        await wait_until(lambda: recorder.batches)

        assert recorder.batches == [[1]]
        assert not buffer.armed
        assert buffer.flush_count == 1
        assert buffer.flushed_changes == 1

    @pytest.mark.asyncio
    async def test_debounce(self, wait_until):
        """Each new change restarts the quiet period."""
        recorder = Recorder()
        buffer = ChangeBuffer(10, 200, on_flush=recorder)

        await buffer.add(_change(1))
        await asyncio.sleep(0.1)
        await buffer.add(_change(2))
        await asyncio.sleep(0.1)
        await buffer.add(_change(3))
        assert recorder.batches == []

        await wait_until(lambda: recorder.batches)
        assert recorder.batches == [[1, 2, 3]]

    @pytest.mark.asyncio
    async def test_count_flush_disarms_timer(self):
        """No stale timer fires after a count-triggered flush."""
        recorder = Recorder()
        buffer = ChangeBuffer(2, 30, on_flush=recorder)

        await buffer.add(_change(1))
        await buffer.add(_change(2))
        await asyncio.sleep(0.1)

        assert recorder.batches == [[1, 2]]
        assert buffer.flush_count == 1

    @pytest.mark.asyncio
    async def test_timer_after_count_flush(self, wait_until):
        """Changes after a count flush start a fresh quiet period."""
        recorder = Recorder()
        buffer = ChangeBuffer(2, 30, on_flush=recorder)

        for n in (1, 2, 3):
            await buffer.add(_change(n))
        await wait_until(lambda: len(recorder.batches) == 2)

        assert recorder.batches == [[1, 2], [3]]

    @pytest.mark.asyncio
    async def test_zero_delay(self, wait_until):
        """emit_delay 0 flushes on the next loop iteration."""
        recorder = Recorder()
        buffer = ChangeBuffer(5, 0, on_flush=recorder)

        await buffer.add(_change(1))
        assert recorder.batches == []

        await wait_until(lambda: recorder.batches)
        assert recorder.batches == [[1]]

    @pytest.mark.asyncio
    async def test_discard(self):
        """A discarded buffer never flushes."""
        recorder = Recorder()
        buffer = ChangeBuffer(10, 20, on_flush=recorder)

        await buffer.add(_change(1))
        buffer.discard()
        await buffer.add(_change(2))
        await asyncio.sleep(0.06)
        await buffer.flush()

        assert recorder.batches == []
        assert buffer.discarded
        assert buffer.pending == 0
        assert not buffer.armed

    @pytest.mark.asyncio
    async def test_discard_during_delivery(self):
        """Batches waiting on a slow delivery are dropped by discard."""
        recorder = Recorder(delay=0.05)
        buffer = ChangeBuffer(1, 1000, on_flush=recorder)

        first = asyncio.create_task(buffer.add(_change(1)))
        second = asyncio.create_task(buffer.add(_change(2)))
        await asyncio.sleep(0.01)
        buffer.discard()
        await asyncio.gather(first, second)

        assert recorder.batches == [[1]]

    @pytest.mark.asyncio
    async def test_batches_in_order(self):
        """Overlapping flushes deliver batches in the order taken."""
        recorder = Recorder(delay=0.01)
        buffer = ChangeBuffer(1, 1000, on_flush=recorder)

        await asyncio.gather(*(buffer.add(_change(n)) for n in range(5)))

        assert recorder.batches == [[0], [1], [2], [3], [4]]

    @pytest.mark.asyncio
    async def test_flush_empty_is_noop(self):
        recorder = Recorder()
        buffer = ChangeBuffer(3, 1000, on_flush=recorder)

        await buffer.flush()

        assert recorder.batches == []
        assert buffer.flush_count == 0
