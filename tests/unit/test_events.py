"""
Unit tests for outbound message payloads.
"""

import pytest

from realtime.feedmux_server.fanout.events import (
    BufferedUpdateDocuments,
    FindError,
    FindResults,
    InitialDocuments,
    SubscribeError,
    UpdateDocuments,
    send,
)
from realtime.feedmux_server.store.base import ChangeEvent, OperationType

DELETE = ChangeEvent(OperationType.DELETE, {"_id": 3}, collection="orders")


class TestPayloads:
    """Wire event names and payload shapes."""

    @pytest.mark.parametrize(
        "message, event, payload",
        [
            (
                InitialDocuments("orders", ({"_id": 1},)),
                "initialDocuments",
                {"collectionName": "orders", "data": [{"_id": 1}]},
            ),
            (
                UpdateDocuments("orders", DELETE),
                "updateDocuments",
                {
                    "collectionName": "orders",
                    "change": {
                        "operationType": "delete",
                        "documentKey": {"_id": 3},
                        "ns": {"coll": "orders"},
                    },
                },
            ),
            (
                FindResults(17, ()),
                "findResults",
                {"requestId": 17, "results": []},
            ),
            (
                FindError("r1", "nope"),
                "findError",
                {"requestId": "r1", "message": "nope"},
            ),
            (
                SubscribeError("orders", "nope"),
                "subscribeError",
                {"collectionName": "orders", "message": "nope"},
            ),
        ],
    )
    def test_payload(self, message, event, payload):
        assert message.event == event
        assert message.to_payload() == payload

    def test_buffered_changes_keep_order(self):
        changes = tuple(
            ChangeEvent(OperationType.INSERT, {"_id": n}, full_document={"_id": n})
            for n in range(3)
        )
        payload = BufferedUpdateDocuments("orders", changes).to_payload()

        assert payload["collectionName"] == "orders"
        assert [c["documentKey"]["_id"] for c in payload["changes"]] == [0, 1, 2]

    @pytest.mark.asyncio
    async def test_send(self, channel):
        await send(channel, "c1", SubscribeError("orders", "nope"))

        assert channel.emitted == [
            ("c1", "subscribeError", {"collectionName": "orders", "message": "nope"}),
        ]
