"""
Logging configuration for the change poller.

This module provides:
- Structured logging with JSON output (python-json-logger)
- Console and rotating file handlers
- Environment-specific levels for third-party libraries
- Batch performance logging
"""

import os
import sys
import logging
import logging.handlers
from datetime import datetime, timezone
from typing import Dict, Any, Optional
from pathlib import Path

from pythonjsonlogger import jsonlogger

from ..config import LoggingConfig, Environment


class StructuredFormatter(jsonlogger.JsonFormatter):
    """JSON formatter with service and performance fields."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)

        log_record['timestamp'] = datetime.now(timezone.utc).isoformat()
        log_record['level'] = record.levelname

        log_record['service'] = 'rdf-change-poller'
        log_record['version'] = os.getenv('APP_VERSION', '1.0.0')
        log_record['environment'] = os.getenv('ENVIRONMENT', 'development')

        if hasattr(record, 'perf_duration_ms'):
            log_record['duration_ms'] = record.perf_duration_ms
        if hasattr(record, 'perf_operation'):
            log_record['operation'] = record.perf_operation


def setup_logging(config: LoggingConfig, environment: Environment) -> None:
    """
    Set up logging configuration.

    Args:
        config: Logging configuration
        environment: Deployment environment
    """
    root_logger = logging.getLogger()
    root_logger.handlers.clear()

    level = getattr(logging, config.level, logging.INFO)
    root_logger.setLevel(level)

    if config.structured:
        formatter = StructuredFormatter(
            fmt='%(timestamp)s %(level)s %(name)s %(message)s',
            datefmt='%Y-%m-%dT%H:%M:%SZ'
        )
    else:
        formatter = logging.Formatter(
            fmt=config.format,
            datefmt=config.date_format
        )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if config.log_to_file and config.log_file_path:
        log_path = Path(config.log_file_path)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            filename=str(log_path),
            maxBytes=config.max_file_size,
            backupCount=config.backup_count,
            encoding='utf-8'
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    if environment == Environment.PRODUCTION:
        # Reduce noise from third-party libraries
        logging.getLogger('sqlalchemy').setLevel(logging.WARNING)
        logging.getLogger('confluent_kafka').setLevel(logging.WARNING)
    elif environment == Environment.DEVELOPMENT:
        logging.getLogger('rdf_change_poller').setLevel(logging.DEBUG)


class PerformanceLogger:
    """Logger for poll cycle performance."""

    def __init__(self, logger_name: str = 'rdf_change_poller.performance'):
        self.logger = logging.getLogger(logger_name)

    def log_batch(
        self,
        record_count: int,
        change_count: int,
        processing_time_ms: float,
        extra: Optional[Dict[str, Any]] = None
    ) -> None:
        """Log poll cycle throughput."""
        throughput = record_count / (processing_time_ms / 1000) if processing_time_ms > 0 else 0

        extra_data = extra or {}
        extra_data.update({
            'perf_operation': 'poll_cycle',
            'perf_batch_size': change_count,
            'perf_record_count': record_count,
            'perf_duration_ms': processing_time_ms,
            'perf_throughput_msg_per_sec': throughput,
        })

        self.logger.info(
            f"Polled {record_count} records into {change_count} changes in "
            f"{processing_time_ms:.2f}ms ({throughput:.2f} msg/s)",
            extra=extra_data
        )


performance_logger = PerformanceLogger()
