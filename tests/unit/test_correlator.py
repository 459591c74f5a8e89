"""
Unit tests for QueryCorrelator.

Tests cover:
- Results matched to request ids, including out-of-order completion
- Duplicate and unknown request ids
- Option validation and store errors as findError
"""

import asyncio

import pytest

from realtime.feedmux_server.config import FanoutConfig
from realtime.feedmux_server.errors import DuplicateRequestId, FeedMuxError, InvalidQuery
from realtime.feedmux_server.fanout.correlator import GENERIC_FIND_ERROR, QueryCorrelator
from realtime.feedmux_server.fanout.events import FindResults
from realtime.feedmux_server.fanout.resolver import CollectionResolver


@pytest.fixture
async def orders(store):
    for n, status in enumerate(["open", "paid", "open"]):
        await store.insert_one("orders", {"_id": n, "status": status})
    await store.insert_one("users", {"_id": "u1", "name": "ada"})
    return store


@pytest.fixture
def correlator(store, channel):
    return QueryCorrelator(CollectionResolver(store), channel)


def _gate(handle):
    """Hold a handle's finds until the returned event is set."""
    original = handle.find
    release = asyncio.Event()

    async def gated_find(query, options=None):
        await release.wait()
        return await original(query, options)

    handle.find = gated_find
    return release


class TestQueryCorrelator:
    """Tests for QueryCorrelator."""

    @pytest.mark.asyncio
    async def test_find_results(self, orders, channel, correlator):
        """Matching documents are sent as findResults with the request id."""
        results = await correlator.find("c1", "r1", "orders", {"status": "open"})

        assert results == [{"_id": 0, "status": "open"}, {"_id": 2, "status": "open"}]
        assert channel.emitted == [
            ("c1", "findResults", {"requestId": "r1", "results": results}),
        ]
        assert correlator.pending_count == 0
        assert correlator.completed == 1

    @pytest.mark.asyncio
    async def test_find_with_options(self, orders, channel, correlator):
        results = await correlator.find(
            "c1", 7, "orders", {}, {"sort": {"_id": -1}, "limit": 2, "projection": {"_id": 1}}
        )

        assert results == [{"_id": 2}, {"_id": 1}]
        assert channel.payloads("findResults")[0]["requestId"] == 7

    @pytest.mark.asyncio
    async def test_concurrent_finds_out_of_order(self, orders, channel, correlator):
        """Each result reaches its own request id, whatever the completion order."""
        orders_handle = await correlator.resolver.resolve("orders")
        release = _gate(orders_handle)

        slow = asyncio.create_task(correlator.find("c1", "A", "orders", {"status": "paid"}))
        await asyncio.sleep(0.01)
        fast = await correlator.find("c1", "B", "users", {})
        assert correlator.is_pending("A")

        release.set()
        await slow

        assert [p["requestId"] for p in channel.payloads("findResults")] == ["B", "A"]
        by_id = {p["requestId"]: p["results"] for p in channel.payloads("findResults")}
        assert by_id["A"] == [{"_id": 1, "status": "paid"}]
        assert by_id["B"] == fast == [{"_id": "u1", "name": "ada"}]

    @pytest.mark.asyncio
    async def test_duplicate_pending_id(self, orders, channel, correlator):
        """A duplicate id is rejected and the first request still completes."""
        release = _gate(await correlator.resolver.resolve("orders"))
        first = asyncio.create_task(correlator.find("c1", "r1", "orders", {}))
        await asyncio.sleep(0.01)

        with pytest.raises(DuplicateRequestId):
            await correlator.find("c1", "r1", "users", {})

        release.set()
        results = await first
        assert len(results) == 3
        assert channel.names() == ["findResults"]

    @pytest.mark.asyncio
    async def test_id_reusable_after_completion(self, orders, correlator):
        await correlator.find("c1", "r1", "orders", {})
        assert await correlator.find("c1", "r1", "users", {}) == [{"_id": "u1", "name": "ada"}]

    @pytest.mark.asyncio
    async def test_unknown_request_id_ignored(self, channel, correlator):
        delivered = await correlator.deliver("nope", FindResults("nope", ()))

        assert delivered is False
        assert channel.emitted == []

    @pytest.mark.asyncio
    async def test_missing_collection(self, store, channel, correlator):
        """A missing collection is reported as findError."""
        assert await correlator.find("c1", "r1", "ghost", {}) is None

        assert channel.emitted == [
            (
                "c1",
                "findError",
                {"requestId": "r1", "message": "Collection name ghost does not exist in test"},
            ),
        ]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "options", [{"hint": "x"}, {"limit": -1}, {"sort": {"a": 0}}]
    )
    async def test_invalid_options(self, orders, channel, correlator, options):
        """Unsupported options are rejected before the request is accepted."""
        with pytest.raises(InvalidQuery):
            await correlator.find("c1", "r1", "orders", {}, options)

        assert channel.emitted == []
        assert not correlator.is_pending("r1")

    @pytest.mark.asyncio
    async def test_invalid_query(self, orders, correlator):
        with pytest.raises(InvalidQuery):
            await correlator.find("c1", "r1", "orders", ["status"])

    @pytest.mark.asyncio
    async def test_store_failure(self, orders, channel, correlator):
        """Store errors become findError without internal detail."""
        await correlator.resolver.resolve("orders")
        orders.inject_failure()

        assert await correlator.find("c1", "r1", "orders", {}) is None

        message = channel.payloads("findError")[0]["message"]
        assert message == "Document store unavailable during find on orders"
        assert correlator.pending_count == 0

    @pytest.mark.asyncio
    async def test_unexpected_error(self, orders, channel, correlator):
        """Unexpected exceptions are logged and reported generically."""
        handle = await correlator.resolver.resolve("orders")

        async def broken_find(query, options=None):
            raise RuntimeError("secret internals")

        handle.find = broken_find
        await correlator.find("c1", "r1", "orders", {})

        assert channel.payloads("findError") == [{"requestId": "r1", "message": GENERIC_FIND_ERROR}]

    @pytest.mark.asyncio
    async def test_disconnected_connection(self, orders, channel, correlator):
        """A find for a vanished connection completes and its outcome is dropped."""
        channel.disconnect("c1")

        results = await correlator.find("c1", "r1", "orders", {"status": "paid"})

        assert results == [{"_id": 1, "status": "paid"}]
        assert channel.emitted == []
        assert correlator.pending_count == 0

    @pytest.mark.asyncio
    async def test_pending_limit(self, orders, store, channel):
        correlator = QueryCorrelator(
            CollectionResolver(store), channel, FanoutConfig(max_pending_finds=1)
        )
        release = _gate(await correlator.resolver.resolve("orders"))
        first = asyncio.create_task(correlator.find("c1", "r1", "orders", {}))
        await asyncio.sleep(0.01)

        with pytest.raises(FeedMuxError) as exc_info:
            await correlator.find("c1", "r2", "orders", {})

        assert exc_info.value.code == "TOO_MANY_PENDING_FINDS"
        release.set()
        await first

    @pytest.mark.asyncio
    async def test_cancelled_find_forgotten(self, orders, correlator):
        _gate(await correlator.resolver.resolve("orders"))
        task = asyncio.create_task(correlator.find("c1", "r1", "orders", {}))
        await asyncio.sleep(0.01)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert not correlator.is_pending("r1")
