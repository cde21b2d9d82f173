"""
Configuration loader utilities.

Provides functions to load configuration from various sources:
- Configuration files (YAML/JSON)
- Environment variables (override file values)
- Dataclass defaults (fallback)
"""

import os
import json
import logging
import yaml
from pathlib import Path
from typing import Dict, Any, Optional

from ..core.exceptions import ConfigurationError
from .settings import (
    AppConfig,
    KafkaConfig,
    PollerConfig,
    DatabaseConfig,
    LoggingConfig,
    MonitoringConfig,
    Environment,
    DedupPolicy,
    parse_start_time,
)

logger = logging.getLogger(__name__)


# Environment variable -> dotted config path
ENV_MAPPINGS = {
    'ENVIRONMENT': 'environment',
    'DEBUG': 'debug',
    'APP_NAME': 'app_name',
    'APP_VERSION': 'version',
    'POLLER_MAX_RETRIES': 'max_retries',
    'POLLER_RETRY_DELAY': 'retry_delay_seconds',
    # Kafka settings
    'KAFKA_BOOTSTRAP_SERVERS': 'kafka.bootstrap_servers',
    'KAFKA_CLIENT_ID': 'kafka.client_id',
    'KAFKA_SESSION_TIMEOUT_MS': 'kafka.session_timeout_ms',
    'KAFKA_FETCH_MIN_BYTES': 'kafka.fetch_min_bytes',
    'KAFKA_FETCH_MAX_WAIT_MS': 'kafka.fetch_max_wait_ms',
    'KAFKA_SECURITY_PROTOCOL': 'kafka.security_protocol',
    'KAFKA_CONSUME_WAIT_SECONDS': 'kafka.consume_wait_seconds',
    # Poller settings
    'POLLER_TARGET_DOMAIN': 'poller.target_domain',
    'POLLER_ALLOWED_NAMESPACES': 'poller.allowed_namespaces',
    'POLLER_MAX_BATCH_SIZE': 'poller.max_batch_size',
    'POLLER_POLL_TIMEOUT': 'poller.poll_timeout_seconds',
    'POLLER_START_TIME': 'poller.start_time',
    'POLLER_CLUSTERS': 'poller.cluster_names',
    'POLLER_CONSUMER_GROUP_ID': 'poller.consumer_group_id',
    'POLLER_TOPIC_PREFIX': 'poller.topic_prefix',
    'POLLER_CANONICAL_TOPICS': 'poller.canonical_topics',
    'POLLER_IGNORE_STORED_OFFSETS': 'poller.ignore_stored_offsets',
    'POLLER_DEDUP_POLICY': 'poller.dedup_policy',
    # Offsets store settings
    'OFFSETS_DB_URL': 'database.url',
    'OFFSETS_DB_POOL_SIZE': 'database.pool_size',
    'OFFSETS_DB_POOL_RECYCLE': 'database.pool_recycle',
    'OFFSETS_DB_ECHO': 'database.echo',
    # Logging settings
    'LOG_LEVEL': 'logging.level',
    'LOG_FORMAT': 'logging.format',
    'LOG_DATE_FORMAT': 'logging.date_format',
    'LOG_TO_FILE': 'logging.log_to_file',
    'LOG_FILE_PATH': 'logging.log_file_path',
    'LOG_MAX_FILE_SIZE': 'logging.max_file_size',
    'LOG_BACKUP_COUNT': 'logging.backup_count',
    'LOG_STRUCTURED': 'logging.structured',
    # Monitoring settings
    'MONITORING_ENABLED': 'monitoring.enabled',
    'METRICS_PORT': 'monitoring.metrics_port',
}

_INT_FIELDS = {
    'session_timeout_ms', 'fetch_min_bytes', 'fetch_max_wait_ms', 'max_batch_size',
    'pool_size', 'pool_recycle', 'max_file_size', 'backup_count', 'metrics_port',
    'max_retries',
}
_FLOAT_FIELDS = {'consume_wait_seconds', 'poll_timeout_seconds', 'retry_delay_seconds'}
_BOOL_FIELDS = {
    'debug', 'ignore_stored_offsets', 'echo', 'log_to_file', 'structured', 'enabled',
}
_LIST_FIELDS = {'bootstrap_servers', 'cluster_names', 'canonical_topics'}


class ConfigLoader:
    """Configuration loader with support for multiple sources."""

    def __init__(self):
        self.config_paths = [
            Path.cwd() / "config" / "poller.yaml",
            Path.cwd() / "config" / "poller.json",
            Path.home() / ".rdf_change_poller" / "config.yaml",
            Path.home() / ".rdf_change_poller" / "config.json",
        ]

    def load_from_file(self, config_path: Optional[Path] = None) -> Dict[str, Any]:
        """
        Load configuration from file.

        Args:
            config_path: Specific config file path, or None to try defaults

        Returns:
            Configuration dictionary from file, or empty dict if not found

        Raises:
            ConfigurationError: If an explicitly requested file is missing or unreadable
        """
        if config_path:
            if not config_path.exists():
                raise ConfigurationError(f"Config file not found: {config_path}")
            return self._read(config_path)

        for path in self.config_paths:
            if path.exists():
                logger.info(f"Loading configuration from {path}")
                return self._read(path)

        return {}

    def _read(self, path: Path) -> Dict[str, Any]:
        try:
            with open(path, 'r', encoding='utf-8') as f:
                if path.suffix.lower() in ['.yaml', '.yml']:
                    data = yaml.safe_load(f) or {}
                else:
                    data = json.load(f) or {}
        except (OSError, yaml.YAMLError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Failed to load config from {path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigurationError(f"Config file {path} must contain a mapping")
        return data

    def merge_configs(self, file_config: Dict[str, Any]) -> Dict[str, Any]:
        """
        Merge file configuration with environment variables.

        Environment variables take precedence over file config.
        """
        merged = {
            key: dict(value) if isinstance(value, dict) else value
            for key, value in file_config.items()
        }

        for env_var, config_path in ENV_MAPPINGS.items():
            env_value = os.getenv(env_var)
            if env_value is not None:
                self._set_nested_value(merged, config_path, env_value)

        return merged

    def _set_nested_value(self, config: Dict[str, Any], path: str, value: Any) -> None:
        """Set a value in a nested dictionary using dot notation."""
        keys = path.split('.')
        current = config

        for key in keys[:-1]:
            if key not in current:
                current[key] = {}
            current = current[key]

        current[keys[-1]] = value

    def _coerce(self, key: str, value: Any) -> Any:
        """Convert raw file/env values to the types the dataclasses expect."""
        try:
            if key in _INT_FIELDS:
                return int(value)
            if key in _FLOAT_FIELDS:
                return float(value)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid value for {key}: {value!r}") from e

        if key in _BOOL_FIELDS:
            if isinstance(value, bool):
                return value
            return str(value).lower() in ('true', '1', 'yes', 'on')
        if key in _LIST_FIELDS:
            if isinstance(value, str):
                return [item.strip() for item in value.split(',') if item.strip()]
            return [str(item) for item in value]
        if key == 'allowed_namespaces':
            if isinstance(value, str):
                value = [item for item in value.split(',') if item.strip()]
            try:
                return frozenset(int(item) for item in value)
            except (TypeError, ValueError) as e:
                raise ConfigurationError(f"Invalid namespace list: {value!r}") from e
        if key == 'start_time':
            return parse_start_time(str(value))
        if key == 'dedup_policy':
            try:
                return DedupPolicy(value)
            except ValueError as e:
                raise ConfigurationError(f"Unknown dedup policy: {value!r}") from e
        return value

    def _section(self, cls, values: Optional[Dict[str, Any]]):
        values = values or {}
        known = set(cls.__dataclass_fields__)
        unknown = set(values) - known
        if unknown:
            raise ConfigurationError(
                f"Unknown {cls.__name__} settings: {', '.join(sorted(unknown))}"
            )
        return cls(**{key: self._coerce(key, value) for key, value in values.items()})

    def load_config(self, config_path: Optional[Path] = None) -> AppConfig:
        """
        Load and create AppConfig from available sources.

        Args:
            config_path: Optional specific config file path

        Returns:
            Fully configured and validated AppConfig instance
        """
        merged = self.merge_configs(self.load_from_file(config_path))

        env_str = str(merged.get('environment', 'development')).lower()
        try:
            environment = Environment(env_str)
        except ValueError as e:
            raise ConfigurationError(f"Unknown environment: {env_str!r}") from e

        top_level = {
            key: self._coerce(key, merged[key])
            for key in ('debug', 'max_retries', 'retry_delay_seconds', 'app_name', 'version')
            if key in merged
        }

        config = AppConfig(
            environment=environment,
            kafka=self._section(KafkaConfig, merged.get('kafka')),
            poller=self._section(PollerConfig, merged.get('poller')),
            database=self._section(DatabaseConfig, merged.get('database')),
            logging=self._section(LoggingConfig, merged.get('logging')),
            monitoring=self._section(MonitoringConfig, merged.get('monitoring')),
            **top_level,
        )
        config.validate()
        return config


def load_configuration(config_path: Optional[Path] = None) -> AppConfig:
    """
    Convenience function to load application configuration.

    Args:
        config_path: Optional path to configuration file

    Returns:
        Configured AppConfig instance
    """
    loader = ConfigLoader()
    return loader.load_config(config_path)


# Example configuration file template
DEFAULT_CONFIG_YAML = """
environment: development
debug: false

kafka:
  bootstrap_servers:
    - localhost:9092
  client_id: rdf-change-poller

poller:
  target_domain: www.wikidata.org
  allowed_namespaces: [0, 120, 146]
  max_batch_size: 100
  poll_timeout_seconds: 5.0
  start_time: "2018-02-09T20:12:33Z"
  cluster_names: []
  consumer_group_id: rdf-change-poller
  dedup_policy: first_wins

database:
  url: sqlite:///offsets.db

logging:
  level: INFO
  structured: false

monitoring:
  enabled: false
  metrics_port: 8000
"""
