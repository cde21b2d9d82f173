"""
Unit tests for offsets repositories.

Tests cover:
- Store/load round trips for the in-memory and SQLAlchemy repositories
- Last-write-wins per partition
- Isolation between consumer ids
- Error classification
- Engine creation from configuration
"""

from datetime import datetime, timezone
from unittest.mock import MagicMock, Mock

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError, ProgrammingError

from rdf_change_poller.config import DatabaseConfig
from rdf_change_poller.consumer import PartitionOffset, StreamPosition
from rdf_change_poller.core.exceptions import (
    FatalError,
    FatalRepositoryError,
    RetryableError,
    RetryableRepositoryError,
)
from rdf_change_poller.database import (
    InMemoryOffsetsRepository,
    KafkaOffset,
    SqlAlchemyOffsetsRepository,
    create_engine_from_config,
)

from tests.conftest import CREATE_TOPIC, DELETE_TOPIC

AS_OF = datetime(2018, 2, 9, 20, 12, 33, tzinfo=timezone.utc)
RECORD_TIME = datetime(2018, 2, 19, 13, 31, 23, 500000, tzinfo=timezone.utc)


class OffsetsRepositoryContract:
    """Behaviour shared by every OffsetsRepository."""

    @pytest.fixture
    def repo(self):
        raise NotImplementedError

    def test_load_empty(self, repo):
        """Test that a fresh store has no offsets."""
        assert repo.load(AS_OF) == StreamPosition()

    def test_round_trip(self, repo):
        """Test storing and loading offsets with record times."""
        repo.store(StreamPosition({
            (CREATE_TOPIC, 0): PartitionOffset(10, RECORD_TIME),
            (DELETE_TOPIC, 3): PartitionOffset(2, RECORD_TIME),
        }))

        loaded = repo.load(AS_OF)

        assert loaded == StreamPosition({
            (CREATE_TOPIC, 0): PartitionOffset(10, RECORD_TIME),
            (DELETE_TOPIC, 3): PartitionOffset(2, RECORD_TIME),
        })

    def test_missing_record_time_defaults_to_as_of(self, repo):
        """Test that offsets stored without time load with as_of."""
        repo.store(StreamPosition({(CREATE_TOPIC, 0): PartitionOffset(10)}))

        assert repo.load(AS_OF)[(CREATE_TOPIC, 0)] == PartitionOffset(10, AS_OF)

    def test_last_write_wins(self, repo):
        """Test that a later store overwrites the same partition only."""
        repo.store(StreamPosition({
            (CREATE_TOPIC, 0): PartitionOffset(10),
            (CREATE_TOPIC, 1): PartitionOffset(20),
        }))
        repo.store(StreamPosition({(CREATE_TOPIC, 0): PartitionOffset(15)}))

        loaded = repo.load(AS_OF)

        assert loaded.offset_of(CREATE_TOPIC, 0) == 15
        assert loaded.offset_of(CREATE_TOPIC, 1) == 20

    def test_store_empty_position(self, repo):
        """Test that storing an empty position changes nothing."""
        repo.store(StreamPosition({(CREATE_TOPIC, 0): PartitionOffset(1)}))
        repo.store(StreamPosition())

        assert repo.load(AS_OF).offset_of(CREATE_TOPIC, 0) == 1


class TestInMemoryOffsetsRepository(OffsetsRepositoryContract):
    """Test cases for InMemoryOffsetsRepository."""

    @pytest.fixture
    def repo(self, repository):
        return repository

    def test_consumer_id(self, repo):
        assert repo.consumer_id == "acme-test-consumer"


class TestSqlAlchemyOffsetsRepository(OffsetsRepositoryContract):
    """Test cases for SqlAlchemyOffsetsRepository."""

    @pytest.fixture
    def repo(self, sql_repository):
        return sql_repository

    def test_consumers_are_isolated(self, repo):
        """Test that offsets are kept per consumer id."""
        other = SqlAlchemyOffsetsRepository(repo.session_factory, "other-consumer")

        repo.store(StreamPosition({(CREATE_TOPIC, 0): PartitionOffset(10)}))
        other.store(StreamPosition({(CREATE_TOPIC, 0): PartitionOffset(99)}))

        assert repo.load(AS_OF).offset_of(CREATE_TOPIC, 0) == 10
        assert other.load(AS_OF).offset_of(CREATE_TOPIC, 0) == 99

    def test_one_row_per_partition(self, repo):
        """Test that repeated stores update rows in place."""
        for offset in range(5):
            repo.store(StreamPosition({(CREATE_TOPIC, 0): PartitionOffset(offset)}))

        with repo.session_factory() as session:
            rows = session.query(KafkaOffset).all()

        assert len(rows) == 1
        assert rows[0].offset == 4
        assert rows[0].stored_at is not None

    def test_large_offsets(self, repo):
        """Test that offsets beyond 32 bits survive a round trip."""
        repo.store(StreamPosition({(CREATE_TOPIC, 0): PartitionOffset(2 ** 40)}))

        assert repo.load(AS_OF).offset_of(CREATE_TOPIC, 0) == 2 ** 40


class TestRepositoryErrors:
    """Test cases for error classification."""

    @staticmethod
    def failing_repository(error):
        session_factory = Mock()
        session_factory.begin.side_effect = error
        session_factory.side_effect = error
        return SqlAlchemyOffsetsRepository(session_factory, "acme-test-consumer")

    def test_operational_error_is_retryable(self):
        """Test that a lost connection can be retried."""
        repo = self.failing_repository(OperationalError("SELECT 1", {}, Exception("connection refused")))

        with pytest.raises(RetryableRepositoryError) as exc_info:
            repo.load(AS_OF)

        assert isinstance(exc_info.value, RetryableError)

    def test_integrity_error_is_retryable(self):
        """Test that a concurrent insert of the same key can be retried."""
        repo = self.failing_repository(IntegrityError("INSERT", {}, Exception("duplicate key")))

        with pytest.raises(RetryableRepositoryError):
            repo.store(StreamPosition({(CREATE_TOPIC, 0): PartitionOffset(1)}))

    def test_programming_error_is_fatal(self):
        """Test that schema problems are not retried."""
        repo = self.failing_repository(ProgrammingError("SELECT", {}, Exception("no such table")))

        with pytest.raises(FatalRepositoryError) as exc_info:
            repo.store(StreamPosition({(CREATE_TOPIC, 0): PartitionOffset(1)}))

        assert isinstance(exc_info.value, FatalError)

    def test_failed_store_keeps_previous_offsets(self, sql_repository):
        """Test that a failing transaction leaves stored offsets untouched."""
        sql_repository.store(StreamPosition({(CREATE_TOPIC, 0): PartitionOffset(5)}))

        session = MagicMock()
        session.query.side_effect = OperationalError("UPDATE", {}, Exception("database is locked"))
        broken = MagicMock()
        broken.begin.return_value.__enter__.return_value = session
        failing = SqlAlchemyOffsetsRepository(broken, sql_repository.consumer_id)

        with pytest.raises(RetryableRepositoryError):
            failing.store(StreamPosition({(CREATE_TOPIC, 0): PartitionOffset(9)}))

        assert sql_repository.load(AS_OF).offset_of(CREATE_TOPIC, 0) == 5


class TestCreateEngine:
    """Test cases for create_engine_from_config."""

    def test_malformed_url_is_fatal(self):
        """Test that an unparseable URL fails without retry."""
        with pytest.raises(FatalRepositoryError):
            create_engine_from_config(DatabaseConfig(url="not a url"))

    def test_unknown_driver_is_fatal(self):
        """Test that a missing driver fails without retry."""
        with pytest.raises(FatalRepositoryError):
            create_engine_from_config(DatabaseConfig(url="nosuchdb://localhost/offsets"))

    def test_sqlite_engine(self, tmp_path):
        """Test creating a file-backed SQLite engine."""
        engine = create_engine_from_config(DatabaseConfig(url=f"sqlite:///{tmp_path / 'offsets.db'}"))

        try:
            assert engine.dialect.name == "sqlite"
        finally:
            engine.dispose()
