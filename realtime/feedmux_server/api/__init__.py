"""
API module for FeedMux server.

This module provides the external interface:
- WebSocket endpoint carrying named JSON events
- Inbound payload validation
- Dispatch of inbound events to the fanout core

Invariants:
    - Every inbound payload is validated before it reaches the core
    - Errors reach clients only as subscribeError / findError events

How to change safely:
    - Add new inbound events to messages.py and the dispatcher together
    - Keep event names and payload keys stable
"""

from .dispatcher import RequestDispatcher
from .messages import BufferedSubscribeRequest, FindRequest, SubscribeRequest
from .ws_server import WebSocketChannel, WebSocketServer, create_ws_app, decode_frame, encode_frame

__all__ = [
    "RequestDispatcher",
    "SubscribeRequest",
    "BufferedSubscribeRequest",
    "FindRequest",
    "WebSocketChannel",
    "WebSocketServer",
    "create_ws_app",
    "encode_frame",
    "decode_frame",
]
