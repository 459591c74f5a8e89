"""
Error types for FeedMux.

This module defines the request-level errors surfaced to subscribers:
- FeedMuxError: Base exception
- CollectionNotFound: Requested collection does not exist
- InvalidSubscriptionParameters: Malformed buffered-subscribe arguments
- DuplicateRequestId: Request id collides with a pending request
- WatcherFailure: Change cursor failed after it was opened
- StoreUnavailable: Store round-trip failed
- InvalidQuery: Unsupported find options

Invariants:
    - All errors inherit from FeedMuxError
    - message is safe to send to the client; internal detail stays in logs
    - code is stable for programmatic handling
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class FeedMuxError(Exception):
    """Base exception for all FeedMux request errors.

    Attributes:
        message: Human-readable error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "FEEDMUX_ERROR"
        self.details = details or {}


class CollectionNotFound(FeedMuxError):
    """Requested collection is absent from the store.

    Never fatal; reported through subscribeError or findError.
    """

    def __init__(self, collection_name: str, database: Optional[str] = None) -> None:
        message = f"Collection name {collection_name} does not exist"
        if database:
            message += f" in {database}"
        super().__init__(
            message,
            code="COLLECTION_NOT_FOUND",
            details={"collection_name": collection_name, "database": database},
        )
        self.collection_name = collection_name
        self.database = database


class InvalidSubscriptionParameters(FeedMuxError):
    """Buffered-subscribe arguments are out of range or of the wrong type."""

    def __init__(
        self,
        message: str,
        parameter: Optional[str] = None,
        value: Any = None,
    ) -> None:
        super().__init__(
            message,
            code="INVALID_SUBSCRIPTION_PARAMETERS",
            details={"parameter": parameter, "value": value},
        )
        self.parameter = parameter
        self.value = value


class DuplicateRequestId(FeedMuxError):
    """A find request reused the id of a request that is still pending."""

    def __init__(self, request_id: Any) -> None:
        super().__init__(
            f"Request id {request_id} is already pending",
            code="DUPLICATE_REQUEST_ID",
            details={"request_id": request_id},
        )
        self.request_id = request_id


class WatcherFailure(FeedMuxError):
    """A change cursor errored or ended after it was opened.

    The owning subscription is torn down; retrying is up to the client.
    """

    def __init__(self, collection_name: str, reason: Optional[str] = None) -> None:
        message = f"Change stream for {collection_name} failed"
        if reason:
            message += f": {reason}"
        super().__init__(
            message,
            code="WATCHER_FAILURE",
            details={"collection_name": collection_name},
        )
        self.collection_name = collection_name


class StoreUnavailable(FeedMuxError):
    """A store round-trip (resolve, snapshot, find) failed."""

    def __init__(self, operation: str, collection_name: Optional[str] = None) -> None:
        message = f"Document store unavailable during {operation}"
        if collection_name:
            message += f" on {collection_name}"
        super().__init__(
            message,
            code="STORE_UNAVAILABLE",
            details={"operation": operation, "collection_name": collection_name},
        )
        self.operation = operation
        self.collection_name = collection_name


class InvalidQuery(FeedMuxError):
    """Find options could not be translated into a store query."""

    def __init__(self, message: str, option: Optional[str] = None) -> None:
        super().__init__(
            message,
            code="INVALID_QUERY",
            details={"option": option},
        )
        self.option = option
