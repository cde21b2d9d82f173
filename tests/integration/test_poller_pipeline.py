"""
Integration tests for the poll -> handle -> store offsets pipeline.

A fake broker feeds the poller while offsets go through the SQLAlchemy
repository, so restarts exercise the whole resume path.
"""

from dataclasses import replace

import pytest

from rdf_change_poller.consumer import KafkaPoller, StreamPosition
from rdf_change_poller.monitoring import PollerMetrics

from tests.conftest import (
    CHANGE_TOPIC,
    CREATE_TOPIC,
    DELETE_TOPIC,
    FakeConsumer,
    create_event_payload,
    load_event,
)

pytestmark = pytest.mark.integration


class Broker:
    """Shared topic log; each poller instance gets its own consumer over it."""

    def __init__(self, clock):
        self.clock = clock
        self.source = FakeConsumer(clock)

    def consumer(self) -> FakeConsumer:
        consumer = FakeConsumer(self.clock, self.source.partition_counts)
        consumer.log = self.source.log
        consumer.time_index = self.source.time_index
        return consumer

    def produce(self, topic, value, partition=0):
        return self.source.produce(topic, value, partition)


@pytest.fixture
def broker(clock):
    return Broker(clock)


@pytest.fixture
def start_poller(broker, poller_config, sql_repository, clock):
    pollers = []

    def factory(config=None):
        poller = KafkaPoller(
            broker.consumer(),
            config or poller_config,
            sql_repository,
            metrics=PollerMetrics(),
            consume_wait_seconds=0.5,
            clock=clock,
        )
        pollers.append(poller)
        return poller

    yield factory

    for poller in pollers:
        poller.close()


def drain(poller, repository):
    """Poll until an empty batch, storing offsets after every batch."""
    entity_ids = []
    batch = poller.first_batch()
    while True:
        entity_ids.extend(change.entity_id for change in batch.changes)
        repository.store(poller.current_offsets())
        if batch.records == 0:
            return entity_ids
        batch = poller.next_batch()


class TestPollerPipeline:
    """End-to-end scenarios across restarts."""

    def test_restart_resumes_after_stored_offsets(self, broker, start_poller, sql_repository):
        """Test that a restarted poller does not redeliver stored records."""
        for i in range(3):
            broker.produce(CREATE_TOPIC, create_event_payload(page_title=f"Q{i}", rev_id=i + 1))

        first = start_poller()
        assert drain(first, sql_repository) == ["Q0", "Q1", "Q2"]
        first.close()

        broker.produce(CREATE_TOPIC, create_event_payload(page_title="Q3", rev_id=4))
        broker.produce(DELETE_TOPIC, load_event("page-delete.json"))

        second = start_poller()
        assert drain(second, sql_repository) == ["Q3", "Q47462581"]

    def test_unstored_batch_is_redelivered(self, broker, start_poller, sql_repository):
        """Test at-least-once delivery when offsets were not stored."""
        broker.produce(CREATE_TOPIC, create_event_payload(page_title="Q1"))

        crashed = start_poller()
        assert [c.entity_id for c in crashed.first_batch().changes] == ["Q1"]
        crashed.close()

        restarted = start_poller()
        assert [c.entity_id for c in restarted.first_batch().changes] == ["Q1"]

    def test_filtered_records_are_not_redelivered(self, broker, start_poller, sql_repository):
        """Test that positions stored after filtered-only batches are honoured."""
        broker.produce(CREATE_TOPIC, load_event("rc-domain.json"))
        broker.produce(CHANGE_TOPIC, load_event("prop-change-wb.json"))

        first = start_poller()
        assert drain(first, sql_repository) == []
        first.close()

        stored = sql_repository.load(first.config.start_time)
        assert stored.offset_of(CREATE_TOPIC, 0) == 0
        assert stored.offset_of(CHANGE_TOPIC, 0) == 0

        broker.produce(CREATE_TOPIC, load_event("create-event.json"))
        second = start_poller()
        assert drain(second, sql_repository) == ["Q123"]

    def test_clusters_resume_independently(self, broker, start_poller, sql_repository, poller_config):
        """Test that each cluster's copy of a topic keeps its own offset."""
        config = replace(poller_config, cluster_names=["north", "south"])
        north, south = "north." + CREATE_TOPIC, "south." + CREATE_TOPIC
        broker.produce(north, create_event_payload(page_title="Q1"))
        broker.produce(north, create_event_payload(page_title="Q2"))
        broker.produce(south, create_event_payload(page_title="Q3"))

        first = start_poller(config)
        assert drain(first, sql_repository) == ["Q1", "Q2", "Q3"]
        first.close()

        broker.produce(south, create_event_payload(page_title="Q4"))
        second = start_poller(config)

        assert drain(second, sql_repository) == ["Q4"]
        position = second.current_offsets()
        assert position.offset_of(north, 0) == 1
        assert position.offset_of(south, 0) == 1

    def test_ignore_stored_offsets_replays_from_start_time(
        self, broker, start_poller, sql_repository, poller_config
    ):
        """Test replaying the stream despite stored offsets."""
        broker.produce(CREATE_TOPIC, create_event_payload(page_title="Q1"))
        broker.produce(CREATE_TOPIC, create_event_payload(page_title="Q2"))
        first = start_poller()
        drain(first, sql_repository)
        first.close()

        broker.source.time_index[(CREATE_TOPIC, 0)] = 1
        replay = start_poller(replace(poller_config, ignore_stored_offsets=True))

        assert [c.entity_id for c in replay.first_batch().changes] == ["Q2"]
        assert sql_repository.load(poller_config.start_time) != StreamPosition()
