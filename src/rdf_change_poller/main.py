"""
Main entry point for the change poller.

This module provides:
- Application initialization from configuration
- The poll -> handle -> store offsets loop
- Caller-side retry of retryable failures
- Graceful shutdown on SIGINT/SIGTERM
"""

import sys
import time
import signal
import logging
import argparse
from pathlib import Path
from typing import Callable, Optional, TypeVar

from .config import AppConfig, load_configuration
from .consumer import Batch, KafkaPoller, StreamPosition, create_kafka_poller
from .core.exceptions import ChangePollerError, PollerClosedError, RetryableError
from .core.logging import setup_logging
from .database import OffsetsRepository, create_offsets_repository
from .monitoring import PollerMetrics, start_metrics_server

logger = logging.getLogger(__name__)

T = TypeVar("T")

BatchHandler = Callable[[Batch], None]


def log_batch_handler(batch: Batch) -> None:
    """Default handler: report the changes that would be re-indexed."""
    for change in batch.changes:
        logger.info(
            f"Change {change.entity_id} revision={change.revision} "
            f"at {change.timestamp.isoformat()}"
        )


class ChangePollerApplication:
    """
    Main change poller application.

    Owns the offsets repository and the poller, and stores the position
    reached only after the handler accepted a batch.
    """

    def __init__(self, config: AppConfig, handler: BatchHandler = log_batch_handler):
        self.config = config
        self.handler = handler
        self.metrics: Optional[PollerMetrics] = None
        self.repository: Optional[OffsetsRepository] = None
        self.poller: Optional[KafkaPoller] = None
        self.stopping = False
        self._stored: Optional[StreamPosition] = None

    def initialize(self) -> None:
        """Initialize metrics, offsets store and poller."""
        logger.info("Initializing change poller...")

        self.metrics = PollerMetrics()
        start_metrics_server(self.config.monitoring, self.metrics)

        self.repository = self.with_retries(
            "prepare offsets store",
            lambda: create_offsets_repository(
                self.config.database, self.config.poller.consumer_group_id
            ),
        )
        self.poller = create_kafka_poller(
            self.config.poller, self.config.kafka, self.repository, self.metrics
        )
        logger.info("Change poller initialized")

    def run(self) -> None:
        """Run until stopped or a fatal error occurs."""
        self.initialize()

        try:
            batch = self.with_retries("poll first batch", self.poller.first_batch)
            while True:
                self.process(batch)
                if self.stopping:
                    break
                batch = self.with_retries("poll batch", self.poller.next_batch)
        except PollerClosedError:
            logger.info("Poller closed, leaving poll loop")
        finally:
            self.cleanup()

    def process(self, batch: Batch) -> None:
        """Hand the batch to the handler, then store the position reached."""
        if batch.has_changes:
            self.handler(batch)

        position = self.poller.current_offsets()
        if position and position != self._stored:
            self.with_retries("store offsets", lambda: self.repository.store(position))
            self._stored = position
            logger.debug(f"Stored position {position!r}")

    def with_retries(self, description: str, operation: Callable[[], T]) -> T:
        """Call operation, retrying RetryableError with a linear backoff."""
        attempt = 0
        while True:
            try:
                return operation()
            except RetryableError as e:
                attempt += 1
                if attempt > self.config.max_retries or self.stopping:
                    logger.error(f"Giving up on {description} after {attempt} attempts: {e}")
                    raise
                delay = self.config.retry_delay_seconds * attempt
                logger.warning(f"Failed to {description} (attempt {attempt}), retrying in {delay:.1f}s: {e}")
                time.sleep(delay)

    def stop(self) -> None:
        """Request shutdown; safe to call from a signal handler."""
        logger.info("Stopping change poller...")
        self.stopping = True
        if self.poller is not None:
            self.poller.request_close()

    def cleanup(self) -> None:
        """Clean up all resources."""
        logger.info("Cleaning up change poller resources...")
        if self.poller is not None:
            self.poller.close()
        logger.info("Cleanup completed")


def main(argv: Optional[list] = None) -> int:
    """Console entry point."""
    parser = argparse.ArgumentParser(description="Poll Wikibase change events for RDF re-indexing")
    parser.add_argument("--config", type=Path, help="YAML or JSON configuration file")
    args = parser.parse_args(argv)

    try:
        config = load_configuration(args.config)
    except ChangePollerError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 2

    setup_logging(config.logging, config.environment)
    logger.info(f"Starting change poller v{config.version}")
    logger.info(f"Environment: {config.environment.value}")
    logger.debug(f"Configuration: {config.to_dict()}")

    app = ChangePollerApplication(config)

    def signal_handler(signum, frame):
        logger.info(f"Received signal {signum}, initiating shutdown...")
        app.stop()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        app.run()
    except ChangePollerError as e:
        logger.error(f"Change poller failed: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
