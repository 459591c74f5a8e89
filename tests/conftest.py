"""
Shared fixtures for FeedMux tests.

Provides:
- store: a connected InMemoryDocumentStore
- channel: a RecordingChannel capturing every emitted event
- wait_until: poll an async condition without fixed sleeps
"""

import asyncio
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

import pytest

from realtime.feedmux_server.store.memory import InMemoryDocumentStore


class RecordingChannel:
    """OutboundChannel that records emits instead of sending them.

    Connections marked with disconnect() are dropped silently, like a
    transport that no longer knows the socket.
    """

    def __init__(self) -> None:
        self.emitted: List[Tuple[str, str, Dict[str, Any]]] = []
        self.gone: Set[str] = set()

    async def emit(self, connection_id: str, event: str, payload: Dict[str, Any]) -> None:
        if connection_id in self.gone:
            return
        self.emitted.append((connection_id, event, payload))

    def disconnect(self, connection_id: str) -> None:
        self.gone.add(connection_id)

    def payloads(self, event: str, connection_id: Optional[str] = None) -> List[Dict[str, Any]]:
        return [
            payload
            for cid, name, payload in self.emitted
            if name == event and (connection_id is None or cid == connection_id)
        ]

    def names(self, connection_id: Optional[str] = None) -> List[str]:
        return [
            name for cid, name, _ in self.emitted if connection_id is None or cid == connection_id
        ]


async def _wait_until(
    predicate: Callable[[], bool],
    timeout: float = 2.0,
    interval: float = 0.005,
) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("Condition not met before timeout")
        await asyncio.sleep(interval)


@pytest.fixture
async def store():
    """Create a connected in-memory store."""
    s = InMemoryDocumentStore()
    await s.connect()
    yield s
    await s.close()


@pytest.fixture
def channel():
    """Create a recording channel."""
    return RecordingChannel()


@pytest.fixture
def wait_until():
    """Return the polling helper."""
    return _wait_until
