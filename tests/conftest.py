"""
Test configuration and fixtures for the change poller tests.

This module provides:
- A fake confluent_kafka consumer with per-partition logs and a fake clock
- Event payload loading from tests/fixtures/events
- Poller, config and repository fixtures
- Test data factories
"""

import json
from datetime import datetime, timezone
from pathlib import Path
from types import SimpleNamespace
from typing import Any, Dict, List, Optional, Tuple

import pytest
from confluent_kafka import OFFSET_BEGINNING, TIMESTAMP_CREATE_TIME, TIMESTAMP_NOT_AVAILABLE, TopicPartition
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from rdf_change_poller.config import DatabaseConfig, PollerConfig
from rdf_change_poller.consumer import KafkaPoller
from rdf_change_poller.database import InMemoryOffsetsRepository, create_offsets_repository
from rdf_change_poller.monitoring import PollerMetrics

EVENTS_DIR = Path(__file__).parent / "fixtures" / "events"

CREATE_TOPIC = "mediawiki.revision-create"
DELETE_TOPIC = "mediawiki.page-delete"
UNDELETE_TOPIC = "mediawiki.page-undelete"
CHANGE_TOPIC = "mediawiki.page-properties-change"
ALL_TOPICS = (CREATE_TOPIC, DELETE_TOPIC, UNDELETE_TOPIC, CHANGE_TOPIC)

DOMAIN = "acme.test"
BEGIN_DATE = datetime.fromtimestamp(1518207153, tz=timezone.utc)


def load_event(name: str) -> bytes:
    """Raw payload of a fixture event."""
    return (EVENTS_DIR / name).read_bytes()


def load_event_json(name: str) -> Dict[str, Any]:
    return json.loads(load_event(name))


class FakeClock:
    """Monotonic clock advanced by the fake consumer instead of real waiting."""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeMessage:
    """Stand-in for confluent_kafka.Message."""

    def __init__(self, value, topic=CREATE_TOPIC, partition=0, offset=0, key=None,
                 timestamp_ms=None, error=None):
        self._value = value
        self._topic = topic
        self._partition = partition
        self._offset = offset
        self._key = key
        self._timestamp_ms = timestamp_ms
        self._error = error

    def value(self):
        return self._value

    def topic(self):
        return self._topic

    def partition(self):
        return self._partition

    def offset(self):
        return self._offset

    def key(self):
        return self._key

    def timestamp(self):
        if self._timestamp_ms is None:
            return TIMESTAMP_NOT_AVAILABLE, -1
        return TIMESTAMP_CREATE_TIME, self._timestamp_ms

    def error(self):
        return self._error


class FakeConsumer:
    """
    In-memory consumer honouring assign/seek positions.

    Records are delivered in the order they were produced, across
    partitions, starting at each partition's assigned position.
    """

    def __init__(self, clock: Optional[FakeClock] = None, partitions: Optional[Dict[str, int]] = None):
        self.clock = clock or FakeClock()
        self.partition_counts: Dict[str, int] = dict(partitions or {})
        self.log: List[FakeMessage] = []
        self.next_offsets: Dict[Tuple[str, int], int] = {}
        self.time_index: Dict[Tuple[str, int], int] = {}
        self.positions: Dict[Tuple[str, int], int] = {}
        self.assigned: List[TopicPartition] = []
        self.seeks: List[TopicPartition] = []
        self.consume_calls: List[Tuple[int, float]] = []
        self.consume_errors: List[Exception] = []
        self.list_topics_error: Optional[Exception] = None
        self.close_count = 0
        self.on_consume = None

    def produce(self, topic: str, value, partition: int = 0, timestamp_ms: Optional[int] = None,
                error=None) -> FakeMessage:
        self.partition_counts.setdefault(topic, partition + 1)
        offset = self.next_offsets.get((topic, partition), 0)
        self.next_offsets[(topic, partition)] = offset + 1
        message = FakeMessage(value, topic, partition, offset, timestamp_ms=timestamp_ms, error=error)
        self.log.append(message)
        return message

    def list_topics(self, topic=None, timeout=-1):
        if self.list_topics_error is not None:
            raise self.list_topics_error
        count = self.partition_counts.get(topic, 1)
        topic_metadata = SimpleNamespace(
            topic=topic,
            partitions={p: SimpleNamespace(id=p) for p in range(count)},
            error=None,
        )
        return SimpleNamespace(topics={topic: topic_metadata})

    def offsets_for_times(self, partitions, timeout=-1):
        return [
            TopicPartition(tp.topic, tp.partition, self.time_index.get((tp.topic, tp.partition), -1))
            for tp in partitions
        ]

    def assign(self, partitions):
        self.assigned = list(partitions)
        for tp in partitions:
            offset = 0 if tp.offset == OFFSET_BEGINNING else tp.offset
            self.positions[(tp.topic, tp.partition)] = offset

    def seek(self, partition):
        self.seeks.append(partition)
        offset = 0 if partition.offset == OFFSET_BEGINNING else partition.offset
        self.positions[(partition.topic, partition.partition)] = offset

    def consume(self, num_messages=1, timeout=-1):
        self.consume_calls.append((num_messages, timeout))
        if self.on_consume is not None:
            self.on_consume(self)
        if self.consume_errors:
            raise self.consume_errors.pop(0)

        delivered = []
        for message in self.log:
            if len(delivered) >= num_messages:
                break
            key = (message.topic(), message.partition())
            if key in self.positions and message.offset() == self.positions[key]:
                delivered.append(message)
                self.positions[key] = message.offset() + 1

        if not delivered:
            self.clock.advance(timeout)
        return delivered

    def close(self):
        self.close_count += 1


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_consumer(clock) -> FakeConsumer:
    return FakeConsumer(clock)


@pytest.fixture
def poller_config() -> PollerConfig:
    """Poller configuration matching the fixture events."""
    return PollerConfig(
        target_domain=DOMAIN,
        allowed_namespaces=frozenset({0, 120}),
        max_batch_size=5,
        poll_timeout_seconds=2.0,
        start_time=BEGIN_DATE,
        consumer_group_id="acme-test-consumer",
    )


@pytest.fixture
def repository() -> InMemoryOffsetsRepository:
    return InMemoryOffsetsRepository("acme-test-consumer")


@pytest.fixture
def sql_repository():
    """SqlAlchemyOffsetsRepository on an in-memory SQLite database."""
    engine = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    repo = create_offsets_repository(DatabaseConfig(url="sqlite://"), "acme-test-consumer", engine=engine)
    yield repo
    engine.dispose()


@pytest.fixture
def make_poller(fake_consumer, poller_config, repository, clock):
    """Factory for pollers over the fake consumer; closes them afterwards."""
    pollers = []

    def factory(config: Optional[PollerConfig] = None, repo=None, consumer=None, **kwargs) -> KafkaPoller:
        poller = KafkaPoller(
            consumer or fake_consumer,
            config or poller_config,
            repo or repository,
            metrics=kwargs.pop("metrics", PollerMetrics()),
            consume_wait_seconds=kwargs.pop("consume_wait_seconds", 0.5),
            clock=clock,
            **kwargs,
        )
        pollers.append(poller)
        return poller

    yield factory

    for poller in pollers:
        poller.close()


# Pytest configuration
def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "integration: marks tests wiring the full poll/store pipeline"
    )
    config.addinivalue_line(
        "markers", "unit: marks tests as unit tests"
    )


# Test data factories
def create_event_payload(topic: str = CREATE_TOPIC, **overrides) -> bytes:
    """Factory for wire event payloads."""
    defaults = {
        "meta": {"domain": DOMAIN, "dt": "2018-02-19T13:31:23Z", "topic": topic},
        "page_title": "Q1",
        "page_namespace": 0,
        "rev_id": 10,
    }
    meta_overrides = overrides.pop("meta", {})
    defaults["meta"].update(meta_overrides)
    defaults.update(overrides)
    return json.dumps(defaults).encode("utf-8")
