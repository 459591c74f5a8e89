"""
Integration tests for the websocket server with the in-memory store.

Tests cover:
- Subscribe, buffered subscribe and find over real websocket frames
- Error events for bad requests
- Cleanup when the socket closes
- Health and stats endpoints
"""

import datetime

import pytest
from aiohttp import test_utils
from bson import ObjectId

from realtime.feedmux_server.api import (
    RequestDispatcher,
    WebSocketChannel,
    create_ws_app,
    decode_frame,
    encode_frame,
)
from realtime.feedmux_server.config import HttpConfig
from realtime.feedmux_server.fanout import (
    CollectionResolver,
    QueryCorrelator,
    SubscriptionRegistry,
)


class Harness:
    """A running app plus the pieces tests inspect."""

    def __init__(self, client, registry, channel):
        self.client = client
        self.registry = registry
        self.channel = channel

    async def connect(self):
        return await self.client.ws_connect("/ws")


async def _send(ws, event, data):
    await ws.send_str(encode_frame(event, data))


async def _receive(ws):
    return decode_frame(await ws.receive_str(timeout=2))


@pytest.fixture
async def harness(store):
    channel = WebSocketChannel()
    resolver = CollectionResolver(store)
    registry = SubscriptionRegistry(resolver, channel)
    dispatcher = RequestDispatcher(registry, QueryCorrelator(resolver, channel), channel)
    app = create_ws_app(
        dispatcher,
        channel,
        HttpConfig(cors_origins=("http://app.test",)),
        health_check=store.ping,
    )

    client = test_utils.TestClient(test_utils.TestServer(app))
    await client.start_server()
    yield Harness(client, registry, channel)
    await client.close()


class TestFrames:
    """Tests for the frame codec."""

    def test_round_trip(self):
        text = encode_frame("find", {"requestId": 1, "query": {}})
        assert decode_frame(text) == ("find", {"requestId": 1, "query": {}})

    def test_extended_json(self):
        """ObjectIds and dates use relaxed Extended JSON."""
        oid = ObjectId("65a1b2c3d4e5f6a7b8c9d0e1")
        when = datetime.datetime(2024, 1, 2, 3, 4, 5, tzinfo=datetime.timezone.utc)

        text = encode_frame("initialDocuments", {"data": [{"_id": oid, "at": when}]})

        assert '{"$oid": "65a1b2c3d4e5f6a7b8c9d0e1"}' in text
        assert '{"$date": "2024-01-02T03:04:05Z"}' in text

    @pytest.mark.parametrize(
        "text",
        [
            "not json",
            "[]",
            '{"data": {}}',
            '{"event": 1}',
            '{"event": "find", "data": {"query": {"_id": {"$oid": "zz"}}}}',
            '{"event": "find", "data": {"query": {"at": {"$date": "yesterday"}}}}',
        ],
    )
    def test_decode_rejects(self, text):
        with pytest.raises(ValueError):
            decode_frame(text)


class TestWebSocket:
    """Tests for the /ws endpoint."""

    @pytest.mark.asyncio
    async def test_subscribe_and_changes(self, store, harness):
        await store.insert_one("orders", {"_id": 1, "item": "pen"})
        ws = await harness.connect()

        await _send(ws, "subscribe", {"collectionName": "orders", "pipeline": []})
        event, data = await _receive(ws)
        assert event == "initialDocuments"
        assert data == {"collectionName": "orders", "data": [{"_id": 1, "item": "pen"}]}

        await store.insert_one("orders", {"_id": 2, "item": "ink"})
        event, data = await _receive(ws)
        assert event == "updateDocuments"
        assert data["change"]["operationType"] == "insert"
        assert data["change"]["fullDocument"] == {"_id": 2, "item": "ink"}
        await ws.close()

    @pytest.mark.asyncio
    async def test_buffered_subscribe(self, store, harness):
        await store.create_collection("orders")
        ws = await harness.connect()

        await _send(
            ws,
            "bufferedSubscribe",
            {"collectionName": "orders", "changeLimit": 2, "emitDelay": 40000},
        )
        assert (await _receive(ws))[0] == "initialDocuments"

        for n in range(2):
            await store.insert_one("orders", {"_id": n})
        event, data = await _receive(ws)

        assert event == "bufferedUpdateDocuments"
        assert [c["documentKey"]["_id"] for c in data["changes"]] == [0, 1]
        await ws.close()

    @pytest.mark.asyncio
    async def test_find(self, store, harness):
        await store.insert_one("orders", {"_id": 1, "status": "paid"})
        ws = await harness.connect()

        await _send(
            ws,
            "find",
            {"requestId": 1718000000000, "collectionName": "orders", "query": {}},
        )
        event, data = await _receive(ws)

        assert event == "findResults"
        assert data == {"requestId": 1718000000000, "results": [{"_id": 1, "status": "paid"}]}
        await ws.close()

    @pytest.mark.asyncio
    async def test_unknown_collection(self, harness):
        ws = await harness.connect()

        await _send(ws, "subscribe", {"collectionName": "ghost"})
        event, data = await _receive(ws)

        assert event == "subscribeError"
        assert data == {
            "collectionName": "ghost",
            "message": "Collection name ghost does not exist in test",
        }
        await ws.close()

    @pytest.mark.asyncio
    async def test_malformed_frames_skipped(self, store, harness):
        """Bad frames are dropped and the connection keeps working."""
        await store.create_collection("orders")
        ws = await harness.connect()

        await ws.send_str("not json")
        await ws.send_bytes(b"\x00\x01")
        await _send(ws, "unsubscribe", {"collectionName": "orders"})
        await _send(ws, "find", {"requestId": "r1", "collectionName": "orders"})
        event, data = await _receive(ws)

        assert event == "findResults"
        assert data == {"requestId": "r1", "results": []}
        await ws.close()

    @pytest.mark.asyncio
    async def test_bad_extended_json_skipped(self, store, harness):
        """A frame with an invalid ObjectId is dropped without closing the socket."""
        await store.insert_one("orders", {"_id": 1})
        ws = await harness.connect()

        await ws.send_str(
            '{"event": "find", "data": {"requestId": "bad", "collectionName": "orders",'
            ' "query": {"_id": {"$oid": "zz"}}}}'
        )
        await _send(ws, "find", {"requestId": "r1", "collectionName": "orders"})
        event, data = await _receive(ws)

        assert event == "findResults"
        assert data == {"requestId": "r1", "results": [{"_id": 1}]}
        assert not ws.closed
        await ws.close()

    @pytest.mark.asyncio
    async def test_close_cleans_up(self, store, harness, wait_until):
        """Closing the socket closes its subscriptions and forgets the connection."""
        await store.create_collection("orders")
        await store.create_collection("users")
        ws = await harness.connect()

        await _send(ws, "subscribe", {"collectionName": "orders"})
        await _receive(ws)
        await _send(
            ws,
            "bufferedSubscribe",
            {"collectionName": "users", "changeLimit": 10, "emitDelay": 40000},
        )
        await _receive(ws)
        assert store.open_cursor_count() == 2

        await ws.close()
        await wait_until(lambda: harness.registry.connection_count == 0)

        assert store.open_cursor_count() == 0
        assert len(harness.registry.multiplexer) == 0
        assert harness.channel.connection_count == 0

    @pytest.mark.asyncio
    async def test_connections_isolated(self, store, harness):
        """One client's errors and results never reach another."""
        await store.create_collection("orders")
        first = await harness.connect()
        second = await harness.connect()

        await _send(first, "subscribe", {"collectionName": "ghost"})
        await _send(second, "find", {"requestId": "r1", "collectionName": "orders"})

        assert (await _receive(first))[0] == "subscribeError"
        assert (await _receive(second))[0] == "findResults"
        await first.close()
        await second.close()


class TestHttpRoutes:
    """Tests for the health and stats routes."""

    @pytest.mark.asyncio
    async def test_health(self, store, harness):
        response = await harness.client.get("/v1/health")

        assert response.status == 200
        assert await response.json() == {"healthy": True, "connections": 0}

    @pytest.mark.asyncio
    async def test_health_store_down(self, store, harness):
        store.inject_failure()

        response = await harness.client.get("/v1/health")

        assert response.status == 503
        assert (await response.json())["healthy"] is False

    @pytest.mark.asyncio
    async def test_stats(self, store, harness):
        await store.create_collection("orders")
        ws = await harness.connect()
        await _send(ws, "subscribe", {"collectionName": "orders"})
        await _receive(ws)

        response = await harness.client.get("/v1/stats")
        stats = await response.json()

        assert stats["connections"] == 1
        assert stats["subscriptions"] == 1
        assert stats["pending_finds"] == 0
        await ws.close()

    @pytest.mark.asyncio
    async def test_cors(self, harness):
        response = await harness.client.get(
            "/v1/health", headers={"Origin": "http://app.test"}
        )
        assert response.headers["Access-Control-Allow-Origin"] == "http://app.test"

        response = await harness.client.get(
            "/v1/health", headers={"Origin": "http://evil.test"}
        )
        assert "Access-Control-Allow-Origin" not in response.headers

    @pytest.mark.asyncio
    async def test_unknown_route(self, harness):
        response = await harness.client.get("/v1/nothing")
        assert response.status == 404
