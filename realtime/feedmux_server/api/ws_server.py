"""
WebSocket server implementation for FeedMux.

Clients talk to FeedMux over a single websocket at /ws. Every frame, in
both directions, is a JSON object naming an event:

    {"event": "subscribe", "data": {"collectionName": "orders", "pipeline": []}}
    {"event": "initialDocuments", "data": {"collectionName": "orders", "data": [...]}}

Frames are encoded as relaxed MongoDB Extended JSON, so ObjectIds and
dates survive the round trip ({"$oid": ...}, {"$date": ...}).

Also served:
- GET /v1/health - store reachability
- GET /v1/stats - connection and subscription counts

Invariants:
    - Each websocket is one connection with a fresh connection id
    - Inbound frames are handled as independent tasks, so a slow find
      never holds up the frames behind it
    - Closing the socket always runs disconnect cleanup
    - Events for a connection that is gone are dropped silently

How to change safely:
    - Keep the frame envelope stable; browser clients depend on it
    - New routes belong under /v1/
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from typing import Any, Dict, Optional, Set, Tuple

from aiohttp import WSCloseCode, WSMsgType, web
from bson import json_util
from bson.errors import BSONError

from ..config import HttpConfig
from .dispatcher import RequestDispatcher

logger = logging.getLogger(__name__)


def encode_frame(event: str, payload: Any) -> str:
    """Render an outbound frame as relaxed Extended JSON."""
    return json_util.dumps(
        {"event": event, "data": payload},
        json_options=json_util.RELAXED_JSON_OPTIONS,
    )


def decode_frame(text: str) -> Tuple[str, Any]:
    """Parse an inbound frame.

    Raises:
        ValueError: If the frame is not JSON, carries malformed Extended JSON
            values or has no event name
    """
    try:
        message = json_util.loads(text)
    except (BSONError, TypeError, OverflowError) as e:
        raise ValueError(f"Invalid Extended JSON: {e}") from e
    if not isinstance(message, dict) or not isinstance(message.get("event"), str):
        raise ValueError("Frame must be an object with a string 'event'")
    return message["event"], message.get("data")


class WebSocketChannel:
    """OutboundChannel over open websockets, keyed by connection id."""

    def __init__(self) -> None:
        self._sockets: Dict[str, web.WebSocketResponse] = {}

    def register(self, connection_id: str, ws: web.WebSocketResponse) -> None:
        self._sockets[connection_id] = ws

    def unregister(self, connection_id: str) -> None:
        self._sockets.pop(connection_id, None)

    def __contains__(self, connection_id: str) -> bool:
        return connection_id in self._sockets

    @property
    def connection_count(self) -> int:
        return len(self._sockets)

    async def emit(self, connection_id: str, event: str, payload: Dict[str, Any]) -> None:
        ws = self._sockets.get(connection_id)
        if ws is None or ws.closed:
            logger.debug(
                "Dropping event for closed connection",
                extra={"connection_id": connection_id, "event": event},
            )
            return
        try:
            await ws.send_str(encode_frame(event, payload))
        except ConnectionResetError as e:
            logger.debug(
                f"Dropping event, socket closing: {e}",
                extra={"connection_id": connection_id, "event": event},
            )

    async def close_all(self, app: Optional[web.Application] = None) -> None:
        """Close every open websocket (aiohttp on_shutdown hook)."""
        for ws in list(self._sockets.values()):
            await ws.close(code=WSCloseCode.GOING_AWAY, message=b"Server shutdown")


HealthCheck = Callable[[], Awaitable[bool]]


def create_ws_app(
    dispatcher: RequestDispatcher,
    channel: WebSocketChannel,
    config: Optional[HttpConfig] = None,
    health_check: Optional[HealthCheck] = None,
) -> web.Application:
    """Create the aiohttp application for FeedMux.

    Args:
        dispatcher: Inbound event dispatcher
        channel: Channel the dispatcher's components emit through
        config: HTTP server configuration
        health_check: Async callable reporting store reachability

    Returns:
        aiohttp Application instance
    """
    config = config or HttpConfig()
    app = web.Application()

    async def handle_websocket(request: web.Request) -> web.WebSocketResponse:
        """Handle GET /ws - one subscriber connection."""
        ws = web.WebSocketResponse(
            heartbeat=config.heartbeat_seconds,
            max_msg_size=config.max_message_size,
        )
        await ws.prepare(request)
        request["websocket"] = ws

        connection_id = uuid.uuid4().hex
        channel.register(connection_id, ws)
        dispatcher.open_connection(connection_id)
        tasks: Set[asyncio.Task] = set()

        try:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    try:
                        event, data = decode_frame(msg.data)
                    except ValueError as e:
                        logger.warning(
                            f"Malformed frame dropped: {e}",
                            extra={"connection_id": connection_id},
                        )
                        continue
                    task = asyncio.create_task(dispatcher.dispatch(connection_id, event, data))
                    tasks.add(task)
                    task.add_done_callback(tasks.discard)
                    task.add_done_callback(_log_task_failure)
                elif msg.type == WSMsgType.BINARY:
                    logger.warning(
                        "Binary frame dropped",
                        extra={"connection_id": connection_id},
                    )
                elif msg.type == WSMsgType.ERROR:
                    logger.warning(
                        f"Websocket error: {ws.exception()}",
                        extra={"connection_id": connection_id},
                    )
        finally:
            channel.unregister(connection_id)
            await dispatcher.on_disconnect(connection_id)

        return ws

    async def handle_health(request: web.Request) -> web.Response:
        """Handle GET /v1/health - Health check."""
        healthy = await health_check() if health_check is not None else True
        result = {"healthy": healthy, "connections": channel.connection_count}
        return web.json_response(result, status=200 if healthy else 503)

    async def handle_stats(request: web.Request) -> web.Response:
        """Handle GET /v1/stats - Subscription statistics."""
        return web.json_response(dispatcher.stats())

    app.router.add_get("/ws", handle_websocket)
    app.router.add_get("/v1/health", handle_health)
    app.router.add_get("/v1/stats", handle_stats)

    # Add CORS middleware
    @web.middleware
    async def cors_middleware(request: web.Request, handler: Callable) -> web.StreamResponse:
        if request.method == "OPTIONS":
            response = web.Response()
        else:
            try:
                response = await handler(request)
            except web.HTTPException as e:
                response = e

        # Headers of an upgraded websocket are already on the wire
        if response.prepared:
            return response

        origin = request.headers.get("Origin", "*")
        if "*" in config.cors_origins or origin in config.cors_origins:
            response.headers["Access-Control-Allow-Origin"] = origin
        response.headers["Access-Control-Allow-Methods"] = "GET, OPTIONS"
        response.headers["Access-Control-Allow-Headers"] = "Content-Type"

        return response

    app.middlewares.append(cors_middleware)

    # Add error handler
    @web.middleware
    async def error_middleware(request: web.Request, handler: Callable) -> web.StreamResponse:
        try:
            return await handler(request)
        except web.HTTPException:
            raise
        except Exception as e:
            logger.error(f"HTTP handler error: {e}", exc_info=True)
            # An upgraded socket has no room for an HTTP error response
            ws = request.get("websocket")
            if ws is not None and ws.prepared:
                raise
            return web.json_response(
                {"error": str(e), "error_code": "INTERNAL"},
                status=500,
            )

    app.middlewares.insert(0, error_middleware)

    app.on_shutdown.append(channel.close_all)

    return app


def _log_task_failure(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(f"Event handler failed: {exc}", exc_info=exc)


class WebSocketServer:
    """Runs the FeedMux aiohttp application.

    Example:
        >>> server = WebSocketServer(app, host="0.0.0.0", port=5000)
        >>> await server.start()
        >>> await server.stop()
    """

    def __init__(self, app: web.Application, host: str = "0.0.0.0", port: int = 5000) -> None:
        self.app = app
        self.host = host
        self.port = port
        self._runner: Optional[web.AppRunner] = None

    async def start(self) -> None:
        self._runner = web.AppRunner(self.app)
        await self._runner.setup()

        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()

        logger.info(f"WebSocket server running on ws://{self.host}:{self.port}/ws")

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
            logger.info("WebSocket server stopped")
