"""
Fanout module for FeedMux.

This module is the subscription/fanout core:
- resolver: collection name -> cached store handle
- registry: subscribe paths and connection cleanup
- multiplexer: one live change cursor per (connection, collection)
- buffering: count-or-quiet-period batching
- correlator: find requests matched to their results by request id
- events: the outbound message types and the channel protocol

Invariants:
    - All state lives in this process and is lost on restart
    - Delivery is at-least-once and in store order per subscription
    - Nothing here knows about websockets; output goes through an
      OutboundChannel
"""

from .buffering import ChangeBuffer
from .correlator import PendingRequest, QueryCorrelator
from .events import (
    BufferedUpdateDocuments,
    FindError,
    FindResults,
    InitialDocuments,
    OutboundChannel,
    OutboundMessage,
    SubscribeError,
    UpdateDocuments,
    send,
)
from .multiplexer import DeliveryMode, Subscription, SubscriptionKey, WatchMultiplexer
from .registry import SubscriptionRegistry
from .resolver import CollectionResolver

__all__ = [
    # Core
    "CollectionResolver",
    "SubscriptionRegistry",
    "WatchMultiplexer",
    "ChangeBuffer",
    "QueryCorrelator",
    # Types
    "Subscription",
    "SubscriptionKey",
    "DeliveryMode",
    "PendingRequest",
    # Outbound messages
    "OutboundChannel",
    "OutboundMessage",
    "InitialDocuments",
    "UpdateDocuments",
    "BufferedUpdateDocuments",
    "FindResults",
    "FindError",
    "SubscribeError",
    "send",
]
