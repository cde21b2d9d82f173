"""
Batches of changes and the stream position they were read up to.

StreamPosition is a plain value: callers snapshot it from the poller after
acting on a batch and hand it to an OffsetsRepository. Offsets recorded here
are the last consumed offset of each partition, so consumption resumes at
offset + 1.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterator, List, Mapping, NamedTuple, Optional, Tuple

from ..config import DedupPolicy
from .events import Change


class TopicPartitionKey(NamedTuple):
    """A concrete topic and partition."""
    topic: str
    partition: int


class PartitionOffset(NamedTuple):
    """Last consumed offset of a partition, with its record time when known."""
    offset: int
    timestamp: Optional[datetime] = None


class StreamPosition(Mapping[TopicPartitionKey, PartitionOffset]):
    """Immutable mapping from (topic, partition) to the last consumed offset."""

    __slots__ = ("_offsets",)

    def __init__(self, offsets: Optional[Mapping[Tuple[str, int], PartitionOffset]] = None):
        self._offsets: Dict[TopicPartitionKey, PartitionOffset] = {
            TopicPartitionKey(*key): PartitionOffset(*value)
            for key, value in (offsets or {}).items()
        }

    def __getitem__(self, key: Tuple[str, int]) -> PartitionOffset:
        return self._offsets[TopicPartitionKey(*key)]

    def __iter__(self) -> Iterator[TopicPartitionKey]:
        return iter(self._offsets)

    def __len__(self) -> int:
        return len(self._offsets)

    def __eq__(self, other) -> bool:
        if isinstance(other, StreamPosition):
            return self._offsets == other._offsets
        return NotImplemented

    def __hash__(self):
        return hash(frozenset(self._offsets.items()))

    def __repr__(self) -> str:
        entries = ", ".join(
            f"{key.topic}[{key.partition}]={value.offset}"
            for key, value in sorted(self._offsets.items())
        )
        return f"StreamPosition({entries})"

    def offset_of(self, topic: str, partition: int) -> Optional[int]:
        entry = self._offsets.get(TopicPartitionKey(topic, partition))
        return entry.offset if entry else None

    def merged(self, other: Mapping[Tuple[str, int], PartitionOffset]) -> "StreamPosition":
        """
        Combine two positions, keeping the higher offset per partition.

        An offset never moves backwards for a partition already present.
        """
        offsets = dict(self._offsets)
        for key, value in other.items():
            key = TopicPartitionKey(*key)
            value = PartitionOffset(*value)
            current = offsets.get(key)
            if current is None or value.offset > current.offset:
                offsets[key] = value
        return StreamPosition(offsets)

    def to_dict(self) -> Dict[str, Dict[int, int]]:
        """Nested {topic: {partition: offset}} view for logging."""
        result: Dict[str, Dict[int, int]] = {}
        for key, value in self._offsets.items():
            result.setdefault(key.topic, {})[key.partition] = value.offset
        return result


@dataclass(frozen=True)
class Batch:
    """Changes produced by one poll cycle and the position reached."""
    changes: Tuple[Change, ...]
    position: StreamPosition
    records: int = 0

    @property
    def has_changes(self) -> bool:
        return bool(self.changes)

    @property
    def left_off(self) -> Optional[datetime]:
        """Latest change timestamp in the batch."""
        if not self.changes:
            return None
        return max(change.timestamp for change in self.changes)

    def __len__(self) -> int:
        return len(self.changes)


@dataclass
class BatchAggregator:
    """
    Accumulates changes of one poll cycle.

    Changes are kept in arrival order and collapsed per entity id according
    to the dedup policy:
    - FIRST_WINS: the first change seen for an entity is kept, later ones
      in the same cycle are dropped.
    - LATEST_REVISION: the first slot is kept but its change is replaced by
      a later change carrying a higher revision.
    Every consumed record, including ones that produced no change, advances
    the tracked offset of its partition.
    """
    max_batch_size: int
    policy: DedupPolicy = DedupPolicy.FIRST_WINS
    _changes: List[Change] = field(default_factory=list)
    _slots: Dict[str, int] = field(default_factory=dict)
    _offsets: Dict[TopicPartitionKey, PartitionOffset] = field(default_factory=dict)
    _records: int = 0
    duplicates: int = 0

    def track(self, topic: str, partition: int, offset: int, timestamp: Optional[datetime] = None) -> None:
        """Record that a record was consumed."""
        self._records += 1
        key = TopicPartitionKey(topic, partition)
        current = self._offsets.get(key)
        if current is None or offset > current.offset:
            self._offsets[key] = PartitionOffset(offset, timestamp)

    def add(
        self,
        change: Change,
        topic: str,
        partition: int,
        offset: int,
        timestamp: Optional[datetime] = None,
    ) -> bool:
        """
        Add a change read from the given record.

        Returns:
            True if the change is part of the output, False if collapsed
        """
        self.track(topic, partition, offset, timestamp)

        slot = self._slots.get(change.entity_id)
        if slot is None:
            self._slots[change.entity_id] = len(self._changes)
            self._changes.append(change)
            return True

        self.duplicates += 1
        if self.policy is DedupPolicy.LATEST_REVISION:
            if change.revision > self._changes[slot].revision:
                self._changes[slot] = change
                return True
        return False

    @property
    def is_full(self) -> bool:
        return self._records >= self.max_batch_size

    @property
    def remaining(self) -> int:
        return max(self.max_batch_size - self._records, 0)

    def build(self, previous: StreamPosition) -> Batch:
        """Produce the batch, advancing the previous position."""
        return Batch(
            changes=tuple(self._changes),
            position=previous.merged(self._offsets),
            records=self._records,
        )
