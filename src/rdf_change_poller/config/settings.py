"""
Centralized configuration for the change poller.

This module provides:
- Type-safe configuration classes, one per concern
- Environment variable parsing with defaults
- Validation of values that would make polling impossible

Every value the poller needs is passed explicitly at construction time;
nothing here is read implicitly by the consumer code.
"""

import os
from datetime import datetime, timezone
from typing import List, Optional, Dict, Any, FrozenSet
from dataclasses import dataclass, field
from enum import Enum

from ..core.exceptions import ConfigurationError


class Environment(str, Enum):
    """Deployment environment enumeration."""
    DEVELOPMENT = "development"
    TESTING = "testing"
    STAGING = "staging"
    PRODUCTION = "production"


class DedupPolicy(str, Enum):
    """How repeated changes for one entity inside a poll cycle are collapsed."""
    FIRST_WINS = "first_wins"
    LATEST_REVISION = "latest_revision"


DEFAULT_TOPIC_PREFIX = "mediawiki."

DEFAULT_CANONICAL_TOPICS = (
    "revision-create",
    "page-delete",
    "page-undelete",
    "page-properties-change",
)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes", "on")


def _split_csv(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def parse_start_time(value: str) -> datetime:
    """Parse an ISO-8601 start time, treating naive values as UTC."""
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as e:
        raise ConfigurationError(f"Invalid start time {value!r}: {e}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


@dataclass
class KafkaConfig:
    """Kafka consumer connection configuration."""
    bootstrap_servers: List[str] = field(default_factory=lambda: ["localhost:9092"])
    client_id: str = "rdf-change-poller"
    session_timeout_ms: int = 30000
    fetch_min_bytes: int = 1
    fetch_max_wait_ms: int = 500
    security_protocol: str = "PLAINTEXT"

    # Upper bound for a single consume() call, so close() is observed promptly
    consume_wait_seconds: float = 1.0

    @classmethod
    def from_env(cls) -> "KafkaConfig":
        """Create Kafka config from environment variables."""
        return cls(
            bootstrap_servers=_split_csv(
                os.getenv("KAFKA_BOOTSTRAP_SERVERS", "localhost:9092")
            ),
            client_id=os.getenv("KAFKA_CLIENT_ID", "rdf-change-poller"),
            session_timeout_ms=int(os.getenv("KAFKA_SESSION_TIMEOUT_MS", "30000")),
            fetch_min_bytes=int(os.getenv("KAFKA_FETCH_MIN_BYTES", "1")),
            fetch_max_wait_ms=int(os.getenv("KAFKA_FETCH_MAX_WAIT_MS", "500")),
            security_protocol=os.getenv("KAFKA_SECURITY_PROTOCOL", "PLAINTEXT"),
            consume_wait_seconds=float(os.getenv("KAFKA_CONSUME_WAIT_SECONDS", "1.0")),
        )

    def to_consumer_config(self, group_id: str) -> Dict[str, Any]:
        """Render the confluent_kafka consumer properties."""
        return {
            "bootstrap.servers": ",".join(self.bootstrap_servers),
            "group.id": group_id,
            "client.id": self.client_id,
            # Positions are tracked explicitly through the offsets repository
            "enable.auto.commit": False,
            "enable.auto.offset.store": False,
            "auto.offset.reset": "earliest",
            "session.timeout.ms": self.session_timeout_ms,
            "fetch.min.bytes": self.fetch_min_bytes,
            "fetch.wait.max.ms": self.fetch_max_wait_ms,
            "security.protocol": self.security_protocol,
        }


@dataclass
class PollerConfig:
    """What to consume, from where, and how to shape batches."""
    target_domain: str = "www.wikidata.org"
    allowed_namespaces: FrozenSet[int] = frozenset()
    max_batch_size: int = 100
    poll_timeout_seconds: float = 5.0
    start_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    cluster_names: List[str] = field(default_factory=list)
    consumer_group_id: str = "rdf-change-poller"

    topic_prefix: str = DEFAULT_TOPIC_PREFIX
    canonical_topics: List[str] = field(default_factory=lambda: list(DEFAULT_CANONICAL_TOPICS))
    ignore_stored_offsets: bool = False
    dedup_policy: DedupPolicy = DedupPolicy.FIRST_WINS

    @classmethod
    def from_env(cls) -> "PollerConfig":
        """Create poller config from environment variables."""
        start_time = os.getenv("POLLER_START_TIME")
        namespaces = _split_csv(os.getenv("POLLER_ALLOWED_NAMESPACES"))
        topics = _split_csv(os.getenv("POLLER_CANONICAL_TOPICS"))

        return cls(
            target_domain=os.getenv("POLLER_TARGET_DOMAIN", "www.wikidata.org"),
            allowed_namespaces=frozenset(int(ns) for ns in namespaces),
            max_batch_size=int(os.getenv("POLLER_MAX_BATCH_SIZE", "100")),
            poll_timeout_seconds=float(os.getenv("POLLER_POLL_TIMEOUT", "5.0")),
            start_time=parse_start_time(start_time) if start_time else datetime.now(timezone.utc),
            cluster_names=_split_csv(os.getenv("POLLER_CLUSTERS")),
            consumer_group_id=os.getenv("POLLER_CONSUMER_GROUP_ID", "rdf-change-poller"),
            topic_prefix=os.getenv("POLLER_TOPIC_PREFIX", DEFAULT_TOPIC_PREFIX),
            canonical_topics=topics or list(DEFAULT_CANONICAL_TOPICS),
            ignore_stored_offsets=_env_bool("POLLER_IGNORE_STORED_OFFSETS", "false"),
            dedup_policy=DedupPolicy(os.getenv("POLLER_DEDUP_POLICY", DedupPolicy.FIRST_WINS.value)),
        )

    @property
    def subscribed_canonical_topics(self) -> List[str]:
        """Canonical topic names including the platform prefix."""
        return [f"{self.topic_prefix}{topic}" for topic in self.canonical_topics]

    def validate(self) -> None:
        """Validate poller settings."""
        if not self.target_domain:
            raise ConfigurationError("A target domain must be configured")
        if self.max_batch_size <= 0:
            raise ConfigurationError("Max batch size must be positive")
        if self.poll_timeout_seconds <= 0:
            raise ConfigurationError("Poll timeout must be positive")
        if not self.consumer_group_id:
            raise ConfigurationError("A consumer group id must be configured")
        if not self.canonical_topics:
            raise ConfigurationError("At least one canonical topic must be configured")
        if self.start_time.tzinfo is None:
            raise ConfigurationError("Start time must be timezone-aware")
        for cluster in self.cluster_names:
            if not cluster or "." in cluster:
                raise ConfigurationError(f"Invalid cluster name: {cluster!r}")


@dataclass
class DatabaseConfig:
    """Offsets store configuration."""
    url: str = "sqlite:///offsets.db"
    pool_size: int = 5
    pool_recycle: int = 3600
    echo: bool = False

    @classmethod
    def from_env(cls) -> "DatabaseConfig":
        """Create offsets store config from environment variables."""
        return cls(
            url=os.getenv("OFFSETS_DB_URL", "sqlite:///offsets.db"),
            pool_size=int(os.getenv("OFFSETS_DB_POOL_SIZE", "5")),
            pool_recycle=int(os.getenv("OFFSETS_DB_POOL_RECYCLE", "3600")),
            echo=_env_bool("OFFSETS_DB_ECHO", "false"),
        )


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = "INFO"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    date_format: str = "%Y-%m-%d %H:%M:%S"

    # File logging
    log_to_file: bool = False
    log_file_path: Optional[str] = None
    max_file_size: int = 10 * 1024 * 1024  # 10MB
    backup_count: int = 5

    # Structured logging (JSON)
    structured: bool = False

    @classmethod
    def from_env(cls) -> "LoggingConfig":
        """Create logging config from environment variables."""
        return cls(
            level=os.getenv("LOG_LEVEL", "INFO").upper(),
            format=os.getenv("LOG_FORMAT", "%(asctime)s - %(name)s - %(levelname)s - %(message)s"),
            date_format=os.getenv("LOG_DATE_FORMAT", "%Y-%m-%d %H:%M:%S"),
            log_to_file=_env_bool("LOG_TO_FILE", "false"),
            log_file_path=os.getenv("LOG_FILE_PATH"),
            max_file_size=int(os.getenv("LOG_MAX_FILE_SIZE", str(10 * 1024 * 1024))),
            backup_count=int(os.getenv("LOG_BACKUP_COUNT", "5")),
            structured=_env_bool("LOG_STRUCTURED", "false"),
        )


@dataclass
class MonitoringConfig:
    """Prometheus metrics configuration."""
    enabled: bool = False
    metrics_port: int = 8000

    @classmethod
    def from_env(cls) -> "MonitoringConfig":
        """Create monitoring config from environment variables."""
        return cls(
            enabled=_env_bool("MONITORING_ENABLED", "false"),
            metrics_port=int(os.getenv("METRICS_PORT", "8000")),
        )


@dataclass
class AppConfig:
    """Main application configuration."""
    environment: Environment = Environment.DEVELOPMENT
    debug: bool = False

    # Component configs
    kafka: KafkaConfig = field(default_factory=KafkaConfig.from_env)
    poller: PollerConfig = field(default_factory=PollerConfig.from_env)
    database: DatabaseConfig = field(default_factory=DatabaseConfig.from_env)
    logging: LoggingConfig = field(default_factory=LoggingConfig.from_env)
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig.from_env)

    # Caller-side retry of retryable poll/store failures
    max_retries: int = 5
    retry_delay_seconds: float = 1.0

    app_name: str = "rdf-change-poller"
    version: str = "1.0.0"

    @classmethod
    def from_env(cls) -> "AppConfig":
        """Create application config from environment variables."""
        env_str = os.getenv("ENVIRONMENT", "development").lower()
        try:
            environment = Environment(env_str)
        except ValueError:
            environment = Environment.DEVELOPMENT

        return cls(
            environment=environment,
            debug=_env_bool("DEBUG", "false"),
            max_retries=int(os.getenv("POLLER_MAX_RETRIES", "5")),
            retry_delay_seconds=float(os.getenv("POLLER_RETRY_DELAY", "1.0")),
            app_name=os.getenv("APP_NAME", "rdf-change-poller"),
            version=os.getenv("APP_VERSION", "1.0.0"),
        )

    def validate(self) -> None:
        """Validate configuration values."""
        if not self.kafka.bootstrap_servers:
            raise ConfigurationError("At least one Kafka bootstrap server must be configured")

        if not self.database.url:
            raise ConfigurationError("An offsets store URL must be configured")

        if self.max_retries < 0:
            raise ConfigurationError("Max retries cannot be negative")

        self.poller.validate()

    def to_dict(self) -> Dict[str, Any]:
        """Convert config to dictionary for logging."""
        return {
            "environment": self.environment.value,
            "debug": self.debug,
            "app_name": self.app_name,
            "version": self.version,
            "kafka": {
                "bootstrap_servers": self.kafka.bootstrap_servers,
                "client_id": self.kafka.client_id,
            },
            "poller": {
                "target_domain": self.poller.target_domain,
                "allowed_namespaces": sorted(self.poller.allowed_namespaces),
                "max_batch_size": self.poller.max_batch_size,
                "poll_timeout_seconds": self.poller.poll_timeout_seconds,
                "start_time": self.poller.start_time.isoformat(),
                "cluster_names": self.poller.cluster_names,
                "consumer_group_id": self.poller.consumer_group_id,
                "dedup_policy": self.poller.dedup_policy.value,
            },
            "max_retries": self.max_retries,
        }
