"""
Outbound messages and the channel they are delivered through.

Every message FeedMux sends to a subscriber is one of the dataclasses
below. Each carries its wire event name and renders its own payload, so
the transport never builds dictionaries by hand.

Invariants:
    - Payload keys match what browser clients read (camelCase)
    - Change payloads use the MongoDB change-event shape
    - Messages are immutable once built
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, ClassVar, Dict, Protocol, Tuple, Union, runtime_checkable

from ..store.base import ChangeEvent, Document

RequestId = Union[str, int]


@dataclass(frozen=True)
class InitialDocuments:
    """Snapshot result sent once per subscribe."""

    event: ClassVar[str] = "initialDocuments"

    collection_name: str
    documents: Tuple[Document, ...]

    def to_payload(self) -> Dict[str, Any]:
        return {"collectionName": self.collection_name, "data": list(self.documents)}


@dataclass(frozen=True)
class UpdateDocuments:
    """A single change for an immediate subscription."""

    event: ClassVar[str] = "updateDocuments"

    collection_name: str
    change: ChangeEvent

    def to_payload(self) -> Dict[str, Any]:
        return {"collectionName": self.collection_name, "change": self.change.to_dict()}


@dataclass(frozen=True)
class BufferedUpdateDocuments:
    """An ordered batch of changes for a buffered subscription."""

    event: ClassVar[str] = "bufferedUpdateDocuments"

    collection_name: str
    changes: Tuple[ChangeEvent, ...]

    def to_payload(self) -> Dict[str, Any]:
        return {
            "collectionName": self.collection_name,
            "changes": [change.to_dict() for change in self.changes],
        }


@dataclass(frozen=True)
class FindResults:
    """Result of a find request."""

    event: ClassVar[str] = "findResults"

    request_id: RequestId
    results: Tuple[Document, ...]

    def to_payload(self) -> Dict[str, Any]:
        return {"requestId": self.request_id, "results": list(self.results)}


@dataclass(frozen=True)
class FindError:
    """Failure of a find request."""

    event: ClassVar[str] = "findError"

    request_id: RequestId
    message: str

    def to_payload(self) -> Dict[str, Any]:
        return {"requestId": self.request_id, "message": self.message}


@dataclass(frozen=True)
class SubscribeError:
    """Failure of a subscribe, or of a subscription's change cursor."""

    event: ClassVar[str] = "subscribeError"

    collection_name: str
    message: str

    def to_payload(self) -> Dict[str, Any]:
        return {"collectionName": self.collection_name, "message": self.message}


OutboundMessage = Union[
    InitialDocuments,
    UpdateDocuments,
    BufferedUpdateDocuments,
    FindResults,
    FindError,
    SubscribeError,
]


@runtime_checkable
class OutboundChannel(Protocol):
    """Named-event delivery to one connection.

    Emitting to a connection the channel no longer knows is a silent no-op.
    """

    async def emit(self, connection_id: str, event: str, payload: Dict[str, Any]) -> None:
        ...


async def send(channel: OutboundChannel, connection_id: str, message: OutboundMessage) -> None:
    """Deliver a message through a channel."""
    await channel.emit(connection_id, message.event, message.to_payload())
