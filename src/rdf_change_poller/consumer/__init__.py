"""
Consumer package for the change poller.

This package provides:
- Change event variants and the canonical Change record
- Decoding of raw stream records per topic schema
- Domain/namespace filtering and normalization
- Per-cycle deduplication into batches with their stream position
- Cluster-aware topic routing
- The KafkaPoller driving the whole pipeline
"""

from .events import (
    NO_REVISION,
    Change,
    ChangeEvent,
    RevisionCreate,
    PageDelete,
    PageUndelete,
    PropertyChange,
)

from .routing import ClusterRouter, ClusterTopic, expand_topics

from .batch import (
    Batch,
    BatchAggregator,
    PartitionOffset,
    StreamPosition,
    TopicPartitionKey,
)

from .decoder import EventDecoder, parse_event_time, entity_id_from_title

from .transformer import ChangeNormalizer, is_redundant

from .poller import (
    KafkaPoller,
    PollerState,
    classify_kafka_error,
    create_kafka_poller,
)

__all__ = [
    # Model
    "NO_REVISION",
    "Change",
    "ChangeEvent",
    "RevisionCreate",
    "PageDelete",
    "PageUndelete",
    "PropertyChange",

    # Routing
    "ClusterRouter",
    "ClusterTopic",
    "expand_topics",

    # Batches
    "Batch",
    "BatchAggregator",
    "PartitionOffset",
    "StreamPosition",
    "TopicPartitionKey",

    # Decoding and normalization
    "EventDecoder",
    "parse_event_time",
    "entity_id_from_title",
    "ChangeNormalizer",
    "is_redundant",

    # Poller
    "KafkaPoller",
    "PollerState",
    "classify_kafka_error",
    "create_kafka_poller",
]
