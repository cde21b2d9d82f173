from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    Column,
    Integer,
    String,
    DateTime,
    BigInteger,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func

Base = declarative_base()


# Kafka Offset Tracking Table
class KafkaOffset(Base):
    __tablename__ = "kafka_offsets"

    id = Column(Integer, primary_key=True)
    consumer_id = Column(String, nullable=False)
    topic = Column(String, nullable=False)
    partition = Column(Integer, nullable=False)
    offset = Column(BigInteger, nullable=False)
    # Record time at this offset, stored as naive UTC
    event_time = Column(DateTime)
    stored_at = Column(DateTime, default=func.now(), nullable=False)

    # One row per consumer and topic-partition
    __table_args__ = (
        UniqueConstraint("consumer_id", "topic", "partition", name="unique_consumer_topic_partition"),
    )

    def __repr__(self):
        return (
            f"<KafkaOffset(consumer_id={self.consumer_id}, topic={self.topic}, "
            f"partition={self.partition}, offset={self.offset}, event_time={self.event_time})>"
        )


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def from_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
