"""
Monitoring package for the change poller.

Provides Prometheus counters, gauges and histograms describing stream
consumption, and an optional HTTP endpoint exposing them.
"""

from .metrics import PollerMetrics, start_metrics_server

__all__ = [
    "PollerMetrics",
    "start_metrics_server",
]
