"""
Document store abstraction for FeedMux.

This module provides a pluggable store backend interface supporting:
- MongoDB (change streams; production)
- In-memory (for testing and local development)

The store owns the data and the change feed. FeedMux only reads: it lists
collections, runs snapshot pipelines and finds, and opens change cursors.

Invariants:
    - A change cursor delivers events in store order
    - Each change cursor is closed at most once
    - Backend errors surface as StoreError subclasses

How to change safely:
    - New backends must implement the DocumentStore protocol
    - Run the unit suite against the in-memory backend and the e2e suite
      against a real replica set
"""

from .base import (
    ChangeCursor,
    ChangeEvent,
    CollectionHandle,
    Document,
    DocumentStore,
    OperationType,
    Pipeline,
    StoreConnectionError,
    StoreError,
    StoreOperationError,
    create_document_store,
    normalize_find_options,
)
from .memory import InMemoryChangeCursor, InMemoryCollection, InMemoryDocumentStore

__all__ = [
    # Protocol and types
    "DocumentStore",
    "CollectionHandle",
    "ChangeCursor",
    "ChangeEvent",
    "OperationType",
    "Document",
    "Pipeline",
    "StoreError",
    "StoreConnectionError",
    "StoreOperationError",
    # Helpers
    "create_document_store",
    "normalize_find_options",
    # Implementations
    "InMemoryDocumentStore",
    "InMemoryCollection",
    "InMemoryChangeCursor",
]
