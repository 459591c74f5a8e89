"""
FeedMux Server - Main entry point.

This module starts the FeedMux server with all components:
- Document store connection (MongoDB or in-memory)
- Fanout core (resolver, registry, correlator)
- WebSocket server

Usage:
    python -m realtime.feedmux_server.main
    feedmux-server

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - The store is connected before the server accepts connections
    - Shutdown closes every subscription before the store closes

How to change safely:
    - Test shutdown sequence with live subscriptions
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys

import json_log_formatter

from .api import RequestDispatcher, WebSocketChannel, WebSocketServer, create_ws_app
from .config import ServerConfig
from .fanout import CollectionResolver, QueryCorrelator, SubscriptionRegistry
from .store import DocumentStore, create_document_store

logger = logging.getLogger(__name__)


def setup_logging(config: ServerConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Server configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("pymongo").setLevel(logging.WARNING)
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)


class Server:
    """FeedMux Server orchestrator.

    Manages the lifecycle of all server components:
    - Document store connection
    - Fanout core
    - WebSocket server

    Attributes:
        config: Server configuration
        store: Document store instance
        registry: Subscription registry
        correlator: Find request correlator

    Example:
        >>> server = Server()
        >>> await server.start()
        >>> # Server is running
        >>> await server.stop()
    """

    def __init__(self, config: ServerConfig | None = None) -> None:
        """Initialize the server.

        Args:
            config: Optional server configuration (loaded from env if not provided)
        """
        self.config = config or ServerConfig.from_env()
        self._running = False
        self._shutdown_event = asyncio.Event()

        # Components (initialized in start())
        self.store: DocumentStore | None = None
        self.channel: WebSocketChannel | None = None
        self.registry: SubscriptionRegistry | None = None
        self.correlator: QueryCorrelator | None = None
        self.dispatcher: RequestDispatcher | None = None
        self.ws_server: WebSocketServer | None = None

    async def start(self) -> None:
        """Start the server and wait for a shutdown request."""
        if self._running:
            logger.warning("Server already running")
            return

        logger.info("Starting FeedMux server")
        self.config.log_config()

        try:
            # Connect document store
            self.store = create_document_store(self.config)
            await self.store.connect()
            logger.info("Document store connected", extra={"database": self.store.database})

            # Build fanout core
            self.channel = WebSocketChannel()
            resolver = CollectionResolver(self.store)
            self.registry = SubscriptionRegistry(resolver, self.channel, self.config.fanout)
            self.correlator = QueryCorrelator(resolver, self.channel, self.config.fanout)
            self.dispatcher = RequestDispatcher(self.registry, self.correlator, self.channel)

            # Start WebSocket server
            app = create_ws_app(
                self.dispatcher,
                self.channel,
                self.config.http,
                health_check=self.store.ping,
            )
            self.ws_server = WebSocketServer(app, self.config.http.host, self.config.http.port)
            await self.ws_server.start()

            self._running = True
            logger.info("FeedMux server started successfully")

            # Wait for shutdown signal
            await self._shutdown_event.wait()

        except Exception as e:
            logger.error(f"Server startup failed: {e}", exc_info=True)
            self._running = True
            await self.stop()
            raise

    async def stop(self) -> None:
        """Stop the server gracefully."""
        if not self._running:
            return

        logger.info("Stopping FeedMux server")

        if self.ws_server:
            await self.ws_server.stop()

        if self.registry:
            closed = await self.registry.close_all()
            logger.info("Subscriptions closed", extra={"count": closed})

        if self.store:
            await self.store.close()

        self._running = False
        logger.info("FeedMux server stopped")

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()


def main() -> None:
    """Main entry point."""
    # Load configuration
    try:
        config = ServerConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    # Setup logging
    setup_logging(config)

    # Create server
    server = Server(config)

    # Setup signal handlers
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    def handle_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, initiating shutdown")
        server.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal, sig)

    # Run server
    try:
        loop.run_until_complete(server.start())
    except KeyboardInterrupt:
        pass
    finally:
        loop.run_until_complete(server.stop())
        loop.close()


if __name__ == "__main__":
    main()
