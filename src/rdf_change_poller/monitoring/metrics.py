"""
Prometheus metrics for the change poller.

Each PollerMetrics owns its CollectorRegistry so several pollers (and tests)
never collide on metric names.
"""

import logging
from typing import Optional

from prometheus_client import Counter, Gauge, Histogram, CollectorRegistry, start_http_server

from ..config import MonitoringConfig

logger = logging.getLogger(__name__)


class PollerMetrics:
    """Prometheus metrics collector for one poller."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()

        self.records_consumed = Counter(
            'rdf_poller_records_consumed_total',
            'Total number of stream records consumed',
            ['topic'],
            registry=self.registry
        )

        self.decode_failures = Counter(
            'rdf_poller_decode_failures_total',
            'Total number of records that could not be decoded',
            ['topic'],
            registry=self.registry
        )

        self.events_filtered = Counter(
            'rdf_poller_events_filtered_total',
            'Total number of decoded events dropped by domain/namespace filters',
            registry=self.registry
        )

        self.changes_emitted = Counter(
            'rdf_poller_changes_emitted_total',
            'Total number of changes handed to callers',
            registry=self.registry
        )

        self.duplicates_collapsed = Counter(
            'rdf_poller_duplicates_collapsed_total',
            'Total number of changes collapsed into an earlier change for the same entity',
            registry=self.registry
        )

        self.batches = Counter(
            'rdf_poller_batches_total',
            'Total number of batches produced',
            registry=self.registry
        )

        self.poll_duration = Histogram(
            'rdf_poller_poll_duration_seconds',
            'Time spent in one poll cycle',
            buckets=(0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0),
            registry=self.registry
        )

        self.last_offset = Gauge(
            'rdf_poller_last_offset',
            'Last consumed offset',
            ['topic', 'partition'],
            registry=self.registry
        )

    def record_consumed(self, topic: str) -> None:
        self.records_consumed.labels(topic=topic).inc()

    def record_decode_failure(self, topic: str) -> None:
        self.decode_failures.labels(topic=topic).inc()

    def record_filtered(self) -> None:
        self.events_filtered.inc()

    def record_batch(self, batch, duration_seconds: float, duplicates: int = 0) -> None:
        """Record a produced batch and the position it reached."""
        self.batches.inc()
        self.changes_emitted.inc(len(batch.changes))
        self.duplicates_collapsed.inc(duplicates)
        self.poll_duration.observe(duration_seconds)
        for key, value in batch.position.items():
            self.last_offset.labels(topic=key.topic, partition=str(key.partition)).set(value.offset)


def start_metrics_server(config: MonitoringConfig, metrics: PollerMetrics) -> bool:
    """Expose metrics over HTTP when monitoring is enabled."""
    if not config.enabled:
        return False
    start_http_server(config.metrics_port, registry=metrics.registry)
    logger.info(f"Metrics available on port {config.metrics_port}")
    return True
