"""
Database package for offset tracking.

Provides the kafka_offsets table model and the OffsetsRepository
implementations that persist stream positions between restarts.
"""

from .models import Base, KafkaOffset
from .repository import (
    OffsetsRepository,
    InMemoryOffsetsRepository,
    SqlAlchemyOffsetsRepository,
    create_engine_from_config,
    create_offsets_repository,
)

__all__ = [
    "Base",
    "KafkaOffset",
    "OffsetsRepository",
    "InMemoryOffsetsRepository",
    "SqlAlchemyOffsetsRepository",
    "create_engine_from_config",
    "create_offsets_repository",
]
