"""
Offsets repositories.

An OffsetsRepository durably records, per consumer, the last consumed offset
of every (topic, partition) and returns it on restart. Writes are
last-write-wins by key. Every failure is raised as a RepositoryError
subclass; a failed store leaves previously stored values untouched.

Implementations:
- InMemoryOffsetsRepository: process-local reference implementation
- SqlAlchemyOffsetsRepository: durable, backed by the kafka_offsets table
"""

import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.exc import (
    ArgumentError,
    DisconnectionError,
    IntegrityError,
    OperationalError,
    SQLAlchemyError,
    TimeoutError as PoolTimeoutError,
)
from sqlalchemy.orm import sessionmaker

from ..config import DatabaseConfig
from ..consumer.batch import PartitionOffset, StreamPosition, TopicPartitionKey
from ..core.exceptions import FatalRepositoryError, RetryableRepositoryError
from .models import Base, KafkaOffset, from_naive_utc, to_naive_utc

logger = logging.getLogger(__name__)

# Failures worth retrying: lost connections, pool exhaustion, lock timeouts,
# and a concurrent insert of the same key
RETRYABLE_ERRORS = (OperationalError, DisconnectionError, PoolTimeoutError, IntegrityError)


class OffsetsRepository(ABC):
    """Durable storage of consumed offsets for one named consumer."""

    def __init__(self, consumer_id: str):
        self.consumer_id = consumer_id

    @abstractmethod
    def store(self, position: StreamPosition) -> None:
        """
        Record the offset (and record time, when known) of every partition in position.

        Raises:
            RepositoryError: If the offsets could not be recorded
        """

    @abstractmethod
    def load(self, as_of: datetime) -> StreamPosition:
        """
        Return the most recently stored offset of every known partition.

        Partitions never stored are absent. Entries stored without a record
        time carry as_of as their timestamp.

        Raises:
            RepositoryError: If the offsets could not be read
        """


class InMemoryOffsetsRepository(OffsetsRepository):
    """Offsets kept in process memory."""

    def __init__(self, consumer_id: str):
        super().__init__(consumer_id)
        self._offsets: Dict[TopicPartitionKey, PartitionOffset] = {}
        self._lock = threading.Lock()

    def store(self, position: StreamPosition) -> None:
        with self._lock:
            updated = dict(self._offsets)
            updated.update(position.items())
            self._offsets = updated
        logger.debug(f"Stored offsets for {self.consumer_id}: {position!r}")

    def load(self, as_of: datetime) -> StreamPosition:
        with self._lock:
            offsets = dict(self._offsets)
        return StreamPosition({
            key: PartitionOffset(value.offset, value.timestamp or as_of)
            for key, value in offsets.items()
        })


class SqlAlchemyOffsetsRepository(OffsetsRepository):
    """Offsets kept in the kafka_offsets table of a relational database."""

    def __init__(self, session_factory: sessionmaker, consumer_id: str):
        super().__init__(consumer_id)
        self.session_factory = session_factory

    def store(self, position: StreamPosition) -> None:
        if not position:
            return

        now = datetime.now(timezone.utc).replace(tzinfo=None)
        try:
            with self.session_factory.begin() as session:
                for key, value in position.items():
                    record = (
                        session.query(KafkaOffset)
                        .filter_by(consumer_id=self.consumer_id, topic=key.topic, partition=key.partition)
                        .one_or_none()
                    )
                    if record is None:
                        session.add(KafkaOffset(
                            consumer_id=self.consumer_id,
                            topic=key.topic,
                            partition=key.partition,
                            offset=value.offset,
                            event_time=to_naive_utc(value.timestamp),
                            stored_at=now,
                        ))
                    else:
                        record.offset = value.offset
                        record.event_time = to_naive_utc(value.timestamp)
                        record.stored_at = now
        except SQLAlchemyError as e:
            raise self._classify("store", e) from e

        logger.debug(f"Stored {len(position)} offsets for {self.consumer_id}")

    def load(self, as_of: datetime) -> StreamPosition:
        try:
            with self.session_factory() as session:
                records = (
                    session.query(KafkaOffset)
                    .filter_by(consumer_id=self.consumer_id)
                    .all()
                )
                offsets = {
                    (record.topic, record.partition): PartitionOffset(
                        record.offset,
                        from_naive_utc(record.event_time) or as_of,
                    )
                    for record in records
                }
        except SQLAlchemyError as e:
            raise self._classify("load", e) from e

        logger.debug(f"Loaded {len(offsets)} offsets for {self.consumer_id}")
        return StreamPosition(offsets)

    def _classify(self, operation: str, error: SQLAlchemyError):
        message = f"Failed to {operation} offsets for {self.consumer_id}: {error}"
        if isinstance(error, RETRYABLE_ERRORS) or getattr(error, "connection_invalidated", False):
            logger.warning(message)
            return RetryableRepositoryError(message)
        logger.error(message)
        return FatalRepositoryError(message)


def create_engine_from_config(config: DatabaseConfig) -> Engine:
    """Create the SQLAlchemy engine for the offsets store."""
    kwargs = {"echo": config.echo, "pool_pre_ping": True}
    if not config.url.startswith("sqlite"):
        kwargs.update(pool_size=config.pool_size, pool_recycle=config.pool_recycle)

    try:
        return create_engine(config.url, **kwargs)
    except (ArgumentError, ValueError) as e:
        raise FatalRepositoryError(f"Invalid offsets store URL: {e}") from e
    except ImportError as e:
        raise FatalRepositoryError(f"No database driver for offsets store: {e}") from e


def create_offsets_repository(
    config: DatabaseConfig,
    consumer_id: str,
    engine: Optional[Engine] = None,
) -> SqlAlchemyOffsetsRepository:
    """
    Build a SqlAlchemyOffsetsRepository, creating the offsets table if needed.

    Raises:
        FatalRepositoryError: If the URL is malformed or no driver is installed
        RetryableRepositoryError: If the store is unreachable
    """
    engine = engine or create_engine_from_config(config)

    try:
        Base.metadata.create_all(engine)
    except SQLAlchemyError as e:
        if isinstance(e, RETRYABLE_ERRORS):
            raise RetryableRepositoryError(f"Offsets store unavailable: {e}") from e
        raise FatalRepositoryError(f"Failed to prepare offsets store: {e}") from e

    session_factory = sessionmaker(bind=engine, expire_on_commit=False)
    return SqlAlchemyOffsetsRepository(session_factory, consumer_id)
