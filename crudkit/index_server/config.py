"""
Configuration management for the crudkit index server.

All configuration is done via environment variables - no config files
inside containers. The one exception is the declarative index spec, whose
path is itself an environment variable (INDEX_SPEC_PATH).

Invariants:
    - All settings have sensible defaults for local development
    - Production deployments MUST pick the kafka feed backend explicitly
    - Secrets are never logged or exposed in error messages

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Deprecate settings by logging warnings but continuing to support them
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)


class FeedBackend(Enum):
    """Supported change feed backends."""

    MEMORY = "memory"
    KAFKA = "kafka"


@dataclass(frozen=True)
class KafkaConfig:
    """Kafka/Redpanda change feed configuration.

    Each resource type maps to its own single-partition topic named
    ``{topic_prefix}.{resource_type}`` so that per-type ordering is total.

    Attributes:
        brokers: Comma-separated list of broker addresses
        topic_prefix: Prefix for per-resource-type topics
        sasl_mechanism: SASL authentication mechanism (PLAIN, SCRAM-SHA-256, etc.)
        sasl_username: SASL username (if authentication enabled)
        sasl_password: SASL password (if authentication enabled)
        security_protocol: Security protocol (PLAINTEXT, SSL, SASL_PLAINTEXT, SASL_SSL)
        ssl_cafile: Path to CA certificate file
        acks: Producer acknowledgment level ('all' for strongest durability)
        enable_idempotence: Enable idempotent producer
        request_timeout_ms: Producer/consumer request timeout
    """

    brokers: str = "localhost:9092"
    topic_prefix: str = "crudkit.changes"
    sasl_mechanism: str | None = None
    sasl_username: str | None = None
    sasl_password: str | None = None
    security_protocol: str = "PLAINTEXT"
    ssl_cafile: str | None = None
    acks: str = "all"
    enable_idempotence: bool = True
    request_timeout_ms: int = 30000

    @classmethod
    def from_env(cls) -> KafkaConfig:
        """Load configuration from environment variables."""
        return cls(
            brokers=os.getenv("KAFKA_BROKERS", "localhost:9092"),
            topic_prefix=os.getenv("KAFKA_TOPIC_PREFIX", "crudkit.changes"),
            sasl_mechanism=os.getenv("KAFKA_SASL_MECHANISM"),
            sasl_username=os.getenv("KAFKA_SASL_USERNAME"),
            sasl_password=os.getenv("KAFKA_SASL_PASSWORD"),
            security_protocol=os.getenv("KAFKA_SECURITY_PROTOCOL", "PLAINTEXT"),
            ssl_cafile=os.getenv("KAFKA_SSL_CAFILE"),
            acks=os.getenv("KAFKA_ACKS", "all"),
            enable_idempotence=os.getenv("KAFKA_ENABLE_IDEMPOTENCE", "true").lower() == "true",
            request_timeout_ms=int(os.getenv("KAFKA_REQUEST_TIMEOUT_MS", "30000")),
        )


@dataclass(frozen=True)
class FeedRetryConfig:
    """Reconnect policy for change feed subscriptions.

    The n-th retry waits ``min(base_delay_ms * 2**n, max_delay_ms)``.

    Attributes:
        base_delay_ms: Delay before the first retry
        max_delay_ms: Upper bound for a single delay
        max_retries: Consecutive failed reconnects before giving up
    """

    base_delay_ms: int = 100
    max_delay_ms: int = 10000
    max_retries: int = 8

    @classmethod
    def from_env(cls) -> FeedRetryConfig:
        """Load configuration from environment variables."""
        return cls(
            base_delay_ms=int(os.getenv("FEED_RETRY_BASE_DELAY_MS", "100")),
            max_delay_ms=int(os.getenv("FEED_RETRY_MAX_DELAY_MS", "10000")),
            max_retries=int(os.getenv("FEED_RETRY_MAX_RETRIES", "8")),
        )

    def delay_seconds(self, attempt: int) -> float:
        """Backoff delay for a zero-based retry attempt."""
        return min(self.base_delay_ms * (2**attempt), self.max_delay_ms) / 1000.0


@dataclass(frozen=True)
class FeedConfig:
    """Change feed configuration.

    Attributes:
        backend: Which feed backend to use
        kafka: Kafka settings (if backend is KAFKA)
        retry: Subscription reconnect policy
    """

    backend: FeedBackend = FeedBackend.MEMORY
    kafka: KafkaConfig = field(default_factory=KafkaConfig)
    retry: FeedRetryConfig = field(default_factory=FeedRetryConfig)

    @classmethod
    def from_env(cls) -> FeedConfig:
        """Load configuration from environment variables.

        Raises:
            ValueError: If FEED_BACKEND is not a known backend
        """
        backend_str = os.getenv("FEED_BACKEND", "memory").lower()
        try:
            backend = FeedBackend(backend_str)
        except ValueError:
            raise ValueError(
                f"Invalid FEED_BACKEND '{backend_str}'. Must be one of: memory, kafka"
            )
        return cls(
            backend=backend,
            kafka=KafkaConfig.from_env(),
            retry=FeedRetryConfig.from_env(),
        )


@dataclass(frozen=True)
class EngineConfig:
    """Index engine configuration.

    Attributes:
        catch_up_timeout_seconds: Deadline for the catch-up phase of one index
        queue_size: Default bound of the inbound queue between feed and worker
        default_backpressure: Policy for indexes that don't choose one
            ("stall" or "drop_and_flag")
        max_auto_resumes: Automatic resumes allowed for indexes with a
            retry/skip resume policy before they stay failed
        auto_resume_delay_ms: Base delay before an automatic resume
        watch_queue_size: Per-watcher buffer; a lagging watcher loses the
            oldest pending updates, never the latest
        index_spec_path: Optional YAML file with declarative index specs
    """

    catch_up_timeout_seconds: float = 300.0
    queue_size: int = 1000
    default_backpressure: str = "stall"
    max_auto_resumes: int = 3
    auto_resume_delay_ms: int = 1000
    watch_queue_size: int = 64
    index_spec_path: str | None = None

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load configuration from environment variables."""
        return cls(
            catch_up_timeout_seconds=float(os.getenv("CATCH_UP_TIMEOUT_SECONDS", "300")),
            queue_size=int(os.getenv("INDEX_QUEUE_SIZE", "1000")),
            default_backpressure=os.getenv("INDEX_BACKPRESSURE", "stall").lower(),
            max_auto_resumes=int(os.getenv("MAX_AUTO_RESUMES", "3")),
            auto_resume_delay_ms=int(os.getenv("AUTO_RESUME_DELAY_MS", "1000")),
            watch_queue_size=int(os.getenv("WATCH_QUEUE_SIZE", "64")),
            index_spec_path=os.getenv("INDEX_SPEC_PATH"),
        )


@dataclass(frozen=True)
class HttpConfig:
    """HTTP query surface configuration.

    Attributes:
        enabled: Whether to serve the HTTP API
        host: Bind host
        port: Bind port
    """

    enabled: bool = True
    host: str = "0.0.0.0"
    port: int = 8080

    @classmethod
    def from_env(cls) -> HttpConfig:
        """Load configuration from environment variables."""
        return cls(
            enabled=os.getenv("HTTP_ENABLED", "true").lower() == "true",
            host=os.getenv("HTTP_HOST", "0.0.0.0"),
            port=int(os.getenv("HTTP_PORT", "8080")),
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
        feed: Change feed configuration
        engine: Index engine configuration
        http: HTTP API configuration
        observability: Logging configuration
    """

    feed: FeedConfig = field(default_factory=FeedConfig)
    engine: EngineConfig = field(default_factory=EngineConfig)
    http: HttpConfig = field(default_factory=HttpConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ServerConfig:
        """Load complete configuration from environment variables.

        Raises:
            ValueError: If required configuration is missing or invalid.
        """
        config = cls(
            feed=FeedConfig.from_env(),
            engine=EngineConfig.from_env(),
            http=HttpConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )
        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self.feed.backend == FeedBackend.KAFKA and not self.feed.kafka.brokers:
            raise ValueError("KAFKA_BROKERS is required when FEED_BACKEND=kafka")

        if self.engine.default_backpressure not in ("stall", "drop_and_flag"):
            raise ValueError(
                f"Invalid INDEX_BACKPRESSURE '{self.engine.default_backpressure}'. "
                "Must be one of: stall, drop_and_flag"
            )
        if self.engine.queue_size <= 0:
            raise ValueError("INDEX_QUEUE_SIZE must be positive")
        if self.engine.catch_up_timeout_seconds <= 0:
            raise ValueError("CATCH_UP_TIMEOUT_SECONDS must be positive")
        if self.engine.watch_queue_size <= 0:
            raise ValueError("WATCH_QUEUE_SIZE must be positive")

        if self.engine.index_spec_path and not os.path.exists(self.engine.index_spec_path):
            logger.warning(
                f"Index spec file does not exist: {self.engine.index_spec_path}. "
                "No indexes will be registered at startup."
            )

        if self.feed.backend == FeedBackend.MEMORY:
            logger.warning("Using in-memory change feed; all state is lost on exit")

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Server configuration loaded",
            extra={
                "feed_backend": self.feed.backend.value,
                "kafka_brokers": self.feed.kafka.brokers
                if self.feed.backend == FeedBackend.KAFKA
                else None,
                "kafka_topic_prefix": self.feed.kafka.topic_prefix
                if self.feed.backend == FeedBackend.KAFKA
                else None,
                "catch_up_timeout_seconds": self.engine.catch_up_timeout_seconds,
                "queue_size": self.engine.queue_size,
                "default_backpressure": self.engine.default_backpressure,
                "index_spec_path": self.engine.index_spec_path,
                "http_bind": f"{self.http.host}:{self.http.port}" if self.http.enabled else None,
                "log_level": self.observability.log_level,
            },
        )
