"""
FeedMux Server - live document-store change feeds for remote subscribers.

This package bridges a document store's native change feed (MongoDB change
streams) to many concurrent websocket clients:
- Clients subscribe to a collection with a filter pipeline
- The server sends an initial snapshot, then every matching change
- Buffered subscriptions coalesce bursts by count or quiet period
- One-shot find requests are correlated with their asynchronous results

Architecture:
    ┌─────────────┐     ┌─────────────┐     ┌──────────────────┐
    │   Client    │◀───▶│  WebSocket  │────▶│ RequestDispatcher│
    │ (browser)   │     │   Server    │     └────────┬─────────┘
    └─────────────┘     └──────▲──────┘              │
                               │          ┌──────────┴──────────┐
                               │          ▼                     ▼
                               │   ┌─────────────┐      ┌──────────────┐
                               │   │Subscription │      │    Query     │
                               │   │  Registry   │      │  Correlator  │
                               │   └──────┬──────┘      └──────┬───────┘
                               │          ▼                    │
                               │   ┌─────────────┐             │
                               └───│   Watch     │             │
                                   │ Multiplexer │──▶ Buffers  │
                                   └──────┬──────┘             │
                                          ▼                    ▼
                        ┌─────────────────────────────────────────┐
                        │   Document store (MongoDB / in-memory)  │
                        └─────────────────────────────────────────┘

Invariants:
    - At most one live watcher per (connection, collection)
    - Change events reach the client in store order, buffered or not
    - A disconnected connection owns no watchers and no armed timers
    - All state is in-memory and process-local

How to change safely:
    - New inbound events need a pydantic model in api/messages.py
    - New outbound events need a dataclass in fanout/events.py
    - Test cleanup paths with the in-memory store's double-close detection
"""

from ._version import __version__

__all__ = ["__version__"]
