"""
Configuration package for the change poller.

This package provides centralized configuration management with:
- Environment variable support
- Configuration file loading (YAML/JSON)
- Type-safe configuration classes
- Validation of every value the poller depends on
"""

from .settings import (
    AppConfig,
    KafkaConfig,
    PollerConfig,
    DatabaseConfig,
    LoggingConfig,
    MonitoringConfig,
    Environment,
    DedupPolicy,
    DEFAULT_TOPIC_PREFIX,
    DEFAULT_CANONICAL_TOPICS,
    parse_start_time,
)

from .loader import (
    ConfigLoader,
    load_configuration,
    DEFAULT_CONFIG_YAML,
)

__all__ = [
    # Configuration classes
    "AppConfig",
    "KafkaConfig",
    "PollerConfig",
    "DatabaseConfig",
    "LoggingConfig",
    "MonitoringConfig",
    "Environment",
    "DedupPolicy",

    # Constants and helpers
    "DEFAULT_TOPIC_PREFIX",
    "DEFAULT_CANONICAL_TOPICS",
    "parse_start_time",

    # Loading utilities
    "ConfigLoader",
    "load_configuration",
    "DEFAULT_CONFIG_YAML",
]
