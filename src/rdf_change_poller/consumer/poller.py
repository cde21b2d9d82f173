"""
Kafka change poller.

This module provides:
- Start offset resolution from stored offsets or by timestamp
- Explicit partition assignment (no consumer group rebalancing)
- Bounded poll cycles producing deduplicated batches
- Classification of broker failures into retryable and fatal errors
- Idempotent, thread-safe shutdown

The poller never commits offsets itself. After acting on a batch the caller
passes current_offsets() to an OffsetsRepository; records consumed after the
last stored position are delivered again after a restart.
"""

import time
import logging
import threading
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional, TYPE_CHECKING

from confluent_kafka import (
    Consumer,
    KafkaError,
    KafkaException,
    TopicPartition,
    OFFSET_BEGINNING,
    TIMESTAMP_NOT_AVAILABLE,
)

from ..config import KafkaConfig, PollerConfig
from ..core.exceptions import (
    ChangePollerError,
    DecodeError,
    FatalError,
    PollerClosedError,
    RetryableError,
)
from ..core.logging import performance_logger
from ..monitoring import PollerMetrics
from .batch import Batch, BatchAggregator, PartitionOffset, StreamPosition, TopicPartitionKey
from .decoder import EventDecoder
from .routing import ClusterRouter
from .transformer import ChangeNormalizer

if TYPE_CHECKING:
    from ..database.repository import OffsetsRepository

logger = logging.getLogger(__name__)


class PollerState(str, Enum):
    """Lifecycle of a KafkaPoller."""
    CREATED = "created"
    RESOLVING_OFFSETS = "resolving_offsets"
    SUBSCRIBED = "subscribed"
    POLLING = "polling"
    CLOSED = "closed"


FATAL_ERROR_CODES = frozenset({
    KafkaError._AUTHENTICATION,
    KafkaError._INVALID_ARG,
    KafkaError._UNKNOWN_TOPIC,
    KafkaError.SASL_AUTHENTICATION_FAILED,
    KafkaError.TOPIC_AUTHORIZATION_FAILED,
    KafkaError.GROUP_AUTHORIZATION_FAILED,
    KafkaError.CLUSTER_AUTHORIZATION_FAILED,
})

RETRYABLE_ERROR_CODES = frozenset({
    KafkaError._TRANSPORT,
    KafkaError._ALL_BROKERS_DOWN,
    KafkaError._TIMED_OUT,
    KafkaError.REQUEST_TIMED_OUT,
    KafkaError.LEADER_NOT_AVAILABLE,
    KafkaError.NOT_LEADER_FOR_PARTITION,
})


def classify_kafka_error(error: KafkaError, context: str = "Kafka error") -> ChangePollerError:
    """Map a broker/client error to RetryableError or FatalError."""
    message = f"{context}: {error.str()} (code {error.code()})"
    if error.fatal() or error.code() in FATAL_ERROR_CODES:
        return FatalError(message)
    if error.retriable() or error.code() in RETRYABLE_ERROR_CODES:
        return RetryableError(message)
    return FatalError(message)


def _kafka_error_of(exception: KafkaException) -> Optional[KafkaError]:
    if exception.args and isinstance(exception.args[0], KafkaError):
        return exception.args[0]
    return None


class KafkaPoller:
    """
    Polls the change topics of one or more clusters into batches.

    One thread owns the poller and makes every first_batch / next_batch /
    current_offsets call. close() may be called from any other thread;
    signal handlers use request_close().
    """

    def __init__(
        self,
        consumer: Consumer,
        config: PollerConfig,
        repository: "OffsetsRepository",
        metrics: Optional[PollerMetrics] = None,
        consume_wait_seconds: float = 1.0,
        metadata_timeout_seconds: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.consumer = consumer
        self.config = config
        self.repository = repository
        self.metrics = metrics or PollerMetrics()
        self.router = ClusterRouter(config.cluster_names)
        self.decoder = EventDecoder(self.router, config.topic_prefix)
        self.normalizer = ChangeNormalizer(config.target_domain, config.allowed_namespaces)

        self.consume_wait_seconds = consume_wait_seconds
        self.metadata_timeout_seconds = metadata_timeout_seconds
        self._clock = clock

        self.state = PollerState.CREATED
        self._position = StreamPosition()
        self._start_offsets: Dict[TopicPartitionKey, int] = {}

        self._lock = threading.Lock()
        self._in_flight = False
        self._close_requested = False

        logger.info(f"Kafka poller created for topics: {self.topics}")

    @property
    def topics(self) -> List[str]:
        """Concrete topics this poller consumes."""
        return sorted(self.router.topics(self.config.subscribed_canonical_topics))

    @property
    def closed(self) -> bool:
        return self.state is PollerState.CLOSED

    def __enter__(self) -> "KafkaPoller":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def first_batch(self) -> Batch:
        """Resolve start offsets and subscribe if needed, then poll one cycle."""
        return self._run(self._poll_cycle)

    def next_batch(self) -> Batch:
        """Poll one more cycle, continuing where the previous batch left off."""
        return self._run(self._poll_cycle)

    def current_offsets(self) -> StreamPosition:
        """Position reached by the most recently emitted batch."""
        return self._position

    def close(self) -> None:
        """
        Release the consumer connection.

        Safe to call repeatedly, before subscription, and while another
        thread is polling; an in-flight poll finishes its current bounded
        wait and releases the consumer itself.
        """
        with self._lock:
            if self.state is PollerState.CLOSED:
                return
            self._close_requested = True
            if self._in_flight:
                logger.info("Close requested while polling, deferring to poll thread")
                return
            self._release()

    def request_close(self) -> None:
        """
        Ask the poller to stop without waiting for the lock.

        Safe to call from a signal handler running on the polling thread.
        The current cycle ends after its bounded wait, later calls raise
        PollerClosedError, and close() still has to release the consumer.
        """
        self._close_requested = True

    def _run(self, operation: Callable[[], Batch]) -> Batch:
        with self._lock:
            if self.state is PollerState.CLOSED or self._close_requested:
                raise PollerClosedError("Poller is closed")
            self._in_flight = True

        try:
            if self.state is PollerState.CREATED:
                self._subscribe()
            return operation()
        finally:
            with self._lock:
                self._in_flight = False
                if self._close_requested:
                    self._release()

    def _release(self) -> None:
        """Close the consumer; caller holds the lock."""
        logger.info("Closing Kafka poller...")
        try:
            self.consumer.close()
        except (KafkaException, RuntimeError) as e:
            logger.warning(f"Error while closing Kafka consumer: {e}")
        finally:
            self.state = PollerState.CLOSED
        logger.info("Kafka poller closed")

    def _subscribe(self) -> None:
        self.state = PollerState.RESOLVING_OFFSETS
        try:
            assignments = self._resolve_offsets()
            self.consumer.assign(assignments)
        except KafkaException as e:
            self.state = PollerState.CREATED
            raise self._classify(e, "Failed to assign partitions") from e
        except Exception:
            self.state = PollerState.CREATED
            raise

        self.state = PollerState.SUBSCRIBED
        logger.info(
            "Assigned partitions: "
            + ", ".join(f"{tp.topic}[{tp.partition}]@{tp.offset}" for tp in assignments)
        )

    def _resolve_offsets(self) -> List[TopicPartition]:
        """
        Starting offset of every partition.

        Stored offsets resume at stored + 1; partitions without a stored
        offset are located by start time, or from the beginning when no
        record exists at or after it.
        """
        start_time = self.config.start_time
        if self.config.ignore_stored_offsets:
            stored = StreamPosition()
            logger.info("Ignoring stored offsets, seeking by start time")
        else:
            stored = self.repository.load(start_time)

        position: Dict[TopicPartitionKey, PartitionOffset] = {}
        assignments: List[TopicPartition] = []
        to_seek: List[TopicPartitionKey] = []

        for key in self._partitions():
            entry = stored.get(key)
            if entry is None:
                to_seek.append(key)
                continue
            position[key] = entry
            assignments.append(TopicPartition(key.topic, key.partition, entry.offset + 1))
            logger.info(f"Resuming {key.topic}[{key.partition}] after stored offset {entry.offset}")

        if to_seek:
            for tp in self._offsets_for_time(to_seek, start_time):
                key = TopicPartitionKey(tp.topic, tp.partition)
                if tp.offset < 0:
                    logger.info(
                        f"No record at or after {start_time.isoformat()} in "
                        f"{tp.topic}[{tp.partition}], starting from the beginning"
                    )
                    tp = TopicPartition(tp.topic, tp.partition, OFFSET_BEGINNING)
                elif tp.offset > 0:
                    position[key] = PartitionOffset(tp.offset - 1, start_time)
                assignments.append(tp)

        self._position = StreamPosition(position)
        self._start_offsets = {
            TopicPartitionKey(tp.topic, tp.partition): tp.offset for tp in assignments
        }
        return assignments

    def _partitions(self) -> List[TopicPartitionKey]:
        partitions = []
        for topic in self.topics:
            try:
                metadata = self.consumer.list_topics(topic, timeout=self.metadata_timeout_seconds)
            except KafkaException as e:
                raise self._classify(e, f"Failed to list partitions of {topic}") from e

            topic_metadata = metadata.topics.get(topic)
            if topic_metadata is None:
                raise FatalError(f"Topic {topic} not found")
            if topic_metadata.error is not None:
                raise classify_kafka_error(topic_metadata.error, f"Metadata error for {topic}")
            if not topic_metadata.partitions:
                raise FatalError(f"Topic {topic} has no partitions")

            partitions.extend(TopicPartitionKey(topic, p) for p in sorted(topic_metadata.partitions))
        return partitions

    def _offsets_for_time(self, keys: List[TopicPartitionKey], start_time: datetime) -> List[TopicPartition]:
        timestamp_ms = int(start_time.timestamp() * 1000)
        query = [TopicPartition(key.topic, key.partition, timestamp_ms) for key in keys]
        try:
            found = self.consumer.offsets_for_times(query, timeout=self.metadata_timeout_seconds)
        except KafkaException as e:
            raise self._classify(e, "Failed to look up offsets by time") from e

        for tp in found:
            if tp.error is not None:
                raise classify_kafka_error(tp.error, f"Offset lookup failed for {tp.topic}[{tp.partition}]")
        return found

    def _poll_cycle(self) -> Batch:
        """
        Consume until the poll timeout elapses or max_batch_size records
        were read, whichever comes first.
        """
        self.state = PollerState.POLLING
        started = self._clock()
        deadline = started + self.config.poll_timeout_seconds
        aggregator = BatchAggregator(self.config.max_batch_size, self.config.dedup_policy)

        try:
            while not aggregator.is_full and not self._close_requested:
                remaining = deadline - self._clock()
                if remaining <= 0:
                    break
                messages = self.consumer.consume(
                    num_messages=aggregator.remaining,
                    timeout=min(remaining, self.consume_wait_seconds),
                )
                for message in messages:
                    self._handle_message(message, aggregator)
        except KafkaException as e:
            self._rewind()
            raise self._classify(e, "Poll failed") from e
        except ChangePollerError:
            self._rewind()
            raise

        batch = aggregator.build(self._position)
        self._position = batch.position

        duration = self._clock() - started
        self.metrics.record_batch(batch, duration, aggregator.duplicates)
        performance_logger.log_batch(batch.records, len(batch.changes), duration * 1000)
        return batch

    def _handle_message(self, message, aggregator: BatchAggregator) -> None:
        error = message.error()
        if error is not None:
            if error.code() == KafkaError._PARTITION_EOF:
                logger.debug(f"Reached end of partition {message.topic()}[{message.partition()}]")
                return
            raise classify_kafka_error(error, f"Error reading {message.topic()}[{message.partition()}]")

        topic, partition, offset = message.topic(), message.partition(), message.offset()
        record_time = self._record_time(message)
        self.metrics.record_consumed(topic)

        try:
            event = self.decoder.decode(topic, message.value(), offset)
        except DecodeError as e:
            logger.warning(f"Skipping record: {e}")
            self.metrics.record_decode_failure(topic)
            aggregator.track(topic, partition, offset, record_time)
            return

        try:
            change = self.normalizer.normalize(event)
        except (ValueError, OverflowError) as e:
            logger.warning(f"Skipping record {topic}[{partition}]@{offset}: {e}")
            self.metrics.record_decode_failure(topic)
            aggregator.track(topic, partition, offset, record_time)
            return
        if change is None:
            self.metrics.record_filtered()
            aggregator.track(topic, partition, offset, record_time)
            return

        aggregator.add(change, topic, partition, offset, record_time)

    def _record_time(self, message) -> Optional[datetime]:
        timestamp_type, timestamp_ms = message.timestamp()
        if timestamp_type == TIMESTAMP_NOT_AVAILABLE or timestamp_ms is None or timestamp_ms < 0:
            return None
        return datetime.fromtimestamp(timestamp_ms / 1000.0, tz=timezone.utc)

    def _rewind(self) -> None:
        """
        Seek every assigned partition back to the last emitted position, so
        records of the discarded batch are read again.

        The consumer may have fetched records of a partition that never
        reached the batch before the failure, so all partitions are reset,
        not only the ones that produced records.
        """
        for key in self._start_offsets:
            emitted = self._position.get(key)
            offset = emitted.offset + 1 if emitted else self._start_offsets.get(key, OFFSET_BEGINNING)
            try:
                self.consumer.seek(TopicPartition(key.topic, key.partition, offset))
            except KafkaException as e:
                logger.error(f"Failed to rewind {key.topic}[{key.partition}] to {offset}: {e}")

    def _classify(self, exception: KafkaException, context: str) -> ChangePollerError:
        error = _kafka_error_of(exception)
        if error is None:
            return FatalError(f"{context}: {exception}")
        return classify_kafka_error(error, context)


def create_kafka_poller(
    poller_config: PollerConfig,
    kafka_config: KafkaConfig,
    repository: "OffsetsRepository",
    metrics: Optional[PollerMetrics] = None,
) -> KafkaPoller:
    """
    Build a KafkaPoller with its own confluent_kafka consumer.

    Raises:
        FatalError: If the consumer configuration is rejected
    """
    poller_config.validate()
    consumer_config = kafka_config.to_consumer_config(poller_config.consumer_group_id)

    try:
        consumer = Consumer(consumer_config)
    except KafkaException as e:
        raise FatalError(f"Invalid Kafka consumer configuration: {e}") from e

    return KafkaPoller(
        consumer,
        poller_config,
        repository,
        metrics=metrics,
        consume_wait_seconds=kafka_config.consume_wait_seconds,
    )
