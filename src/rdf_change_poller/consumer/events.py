"""
Change event model.

ChangeEvent is a closed set of variants, one per upstream wire schema.
Variants are decoded from a single stream record and discarded once
normalized into a Change.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import FrozenSet, Union

# Revision value for change kinds that carry no revision number
NO_REVISION = -1


@dataclass(frozen=True)
class RevisionCreate:
    """A new revision of an entity page was saved."""
    entity_id: str
    revision: int
    timestamp: datetime
    domain: str
    namespace: int


@dataclass(frozen=True)
class PageDelete:
    """An entity page was deleted."""
    entity_id: str
    timestamp: datetime
    domain: str
    namespace: int


@dataclass(frozen=True)
class PageUndelete:
    """A deleted entity page was restored at a given revision."""
    entity_id: str
    revision: int
    timestamp: datetime
    domain: str
    namespace: int


@dataclass(frozen=True)
class PropertyChange:
    """Page properties of an entity page changed."""
    entity_id: str
    timestamp: datetime
    domain: str
    namespace: int
    added_properties: FrozenSet[str] = frozenset()
    removed_properties: FrozenSet[str] = frozenset()


ChangeEvent = Union[RevisionCreate, PageDelete, PageUndelete, PropertyChange]


@dataclass(frozen=True)
class Change:
    """Canonical change handed to callers for re-indexing."""
    entity_id: str
    revision: int
    timestamp: datetime

    def __post_init__(self):
        if not self.entity_id:
            raise ValueError("Change entity id must not be empty")
        if self.revision < NO_REVISION:
            raise ValueError(f"Invalid revision {self.revision} for {self.entity_id}")

    @property
    def has_revision(self) -> bool:
        return self.revision != NO_REVISION
