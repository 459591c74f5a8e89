"""
Configuration management for FeedMux Server.

All configuration is done via environment variables - no config files inside containers.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Production deployments MUST set explicit values for MONGO_URI
    - Credentials embedded in MONGO_URI are never logged

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Keep env var names stable; clients' deployment manifests depend on them
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from urllib.parse import urlsplit, urlunsplit

logger = logging.getLogger(__name__)


class StoreBackend(Enum):
    """Supported document store backends."""

    MONGO = "mongo"
    MEMORY = "memory"


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass(frozen=True)
class MongoConfig:
    """MongoDB backend configuration.

    Attributes:
        uri: Connection string
        database: Database whose collections are exposed to subscribers
        direct_connection: Connect directly to the host instead of discovering the set
        init_replica_set: Run replSetInitiate on connect (single-node dev setups)
        server_selection_timeout_ms: How long to wait for a usable server
        full_document: Change stream fullDocument mode ("default" or "updateLookup")
    """

    uri: str = "mongodb://localhost:27017"
    database: str = "test"
    direct_connection: bool = True
    init_replica_set: bool = False
    server_selection_timeout_ms: int = 5000
    full_document: str = "default"

    @classmethod
    def from_env(cls) -> MongoConfig:
        """Load configuration from environment variables."""
        return cls(
            uri=os.getenv("MONGO_URI", "mongodb://localhost:27017"),
            database=os.getenv("MONGO_DATABASE", "test"),
            direct_connection=_env_bool("MONGO_DIRECT_CONNECTION", "true"),
            init_replica_set=_env_bool("MONGO_INIT_REPLICA_SET", "false"),
            server_selection_timeout_ms=int(
                os.getenv("MONGO_SERVER_SELECTION_TIMEOUT_MS", "5000")
            ),
            full_document=os.getenv("MONGO_FULL_DOCUMENT", "default"),
        )

    @property
    def redacted_uri(self) -> str:
        """Connection string with any password replaced."""
        parts = urlsplit(self.uri)
        if parts.password is None:
            return self.uri
        netloc = parts.netloc.replace(f":{parts.password}@", ":***@", 1)
        return urlunsplit(parts._replace(netloc=netloc))


@dataclass(frozen=True)
class HttpConfig:
    """HTTP/websocket server configuration.

    Attributes:
        host: Address to bind
        port: Port to listen on
        cors_origins: Allowed CORS origins ("*" allows any)
        heartbeat_seconds: Websocket ping interval
        max_message_size: Largest inbound websocket frame in bytes
    """

    host: str = "0.0.0.0"
    port: int = 5000
    cors_origins: tuple[str, ...] = ("*",)
    heartbeat_seconds: float = 30.0
    max_message_size: int = 4 * 1024 * 1024  # 4MB

    @classmethod
    def from_env(cls) -> HttpConfig:
        """Load configuration from environment variables."""
        origins = os.getenv("CORS_ORIGINS", "*")
        return cls(
            host=os.getenv("HTTP_HOST", "0.0.0.0"),
            port=int(os.getenv("HTTP_PORT", "5000")),
            cors_origins=tuple(o.strip() for o in origins.split(",") if o.strip()),
            heartbeat_seconds=float(os.getenv("WS_HEARTBEAT_SECONDS", "30")),
            max_message_size=int(os.getenv("WS_MAX_MESSAGE_SIZE", str(4 * 1024 * 1024))),
        )


@dataclass(frozen=True)
class FanoutConfig:
    """Subscription and query limits.

    Attributes:
        max_change_limit: Largest changeLimit a buffered subscription may request
        max_emit_delay_ms: Longest emitDelay a buffered subscription may request
        max_pending_finds: Pending find requests allowed across the process
    """

    max_change_limit: int = 10000
    max_emit_delay_ms: int = 3600 * 1000  # 1 hour
    max_pending_finds: int = 1000

    @classmethod
    def from_env(cls) -> FanoutConfig:
        """Load configuration from environment variables."""
        return cls(
            max_change_limit=int(os.getenv("FANOUT_MAX_CHANGE_LIMIT", "10000")),
            max_emit_delay_ms=int(os.getenv("FANOUT_MAX_EMIT_DELAY_MS", str(3600 * 1000))),
            max_pending_finds=int(os.getenv("FANOUT_MAX_PENDING_FINDS", "1000")),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class ServerConfig:
    """Complete server configuration.

    Attributes:
        store_backend: Which document store backend to use
        mongo: MongoDB configuration (if store_backend is MONGO)
        http: HTTP/websocket server configuration
        fanout: Subscription and query limits
        observability: Logging configuration
    """

    store_backend: StoreBackend = StoreBackend.MONGO
    mongo: MongoConfig = field(default_factory=MongoConfig)
    http: HttpConfig = field(default_factory=HttpConfig)
    fanout: FanoutConfig = field(default_factory=FanoutConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ServerConfig:
        """Load complete configuration from environment variables.

        Returns:
            ServerConfig with all sections populated from environment.

        Raises:
            ValueError: If required configuration is missing or invalid.
        """
        backend_str = os.getenv("STORE_BACKEND", "mongo").lower()
        try:
            store_backend = StoreBackend(backend_str)
        except ValueError:
            raise ValueError(
                f"Invalid STORE_BACKEND '{backend_str}'. Must be one of: mongo, memory"
            )

        config = cls(
            store_backend=store_backend,
            mongo=MongoConfig.from_env(),
            http=HttpConfig.from_env(),
            fanout=FanoutConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self.store_backend == StoreBackend.MONGO:
            if not self.mongo.uri:
                raise ValueError("MONGO_URI is required when STORE_BACKEND=mongo")
            if not self.mongo.database:
                raise ValueError("MONGO_DATABASE is required when STORE_BACKEND=mongo")
            if self.mongo.full_document not in ("default", "updateLookup"):
                raise ValueError(
                    f"Invalid MONGO_FULL_DOCUMENT '{self.mongo.full_document}'. "
                    "Must be one of: default, updateLookup"
                )

        if not 0 < self.http.port < 65536:
            raise ValueError(f"HTTP_PORT out of range: {self.http.port}")
        if not self.http.cors_origins:
            raise ValueError("CORS_ORIGINS must list at least one origin")

        if self.fanout.max_change_limit < 1:
            raise ValueError("FANOUT_MAX_CHANGE_LIMIT must be at least 1")
        if self.fanout.max_emit_delay_ms < 0:
            raise ValueError("FANOUT_MAX_EMIT_DELAY_MS must not be negative")
        if self.fanout.max_pending_finds < 1:
            raise ValueError("FANOUT_MAX_PENDING_FINDS must be at least 1")

        if self.observability.log_format not in ("json", "text"):
            raise ValueError(
                f"Invalid LOG_FORMAT '{self.observability.log_format}'. Must be one of: json, text"
            )

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Server configuration loaded",
            extra={
                "store_backend": self.store_backend.value,
                "mongo_uri": self.mongo.redacted_uri
                if self.store_backend == StoreBackend.MONGO
                else None,
                "mongo_database": self.mongo.database
                if self.store_backend == StoreBackend.MONGO
                else None,
                "http_bind": f"{self.http.host}:{self.http.port}",
                "cors_origins": list(self.http.cors_origins),
                "max_change_limit": self.fanout.max_change_limit,
                "max_emit_delay_ms": self.fanout.max_emit_delay_ms,
                "log_level": self.observability.log_level,
            },
        )
