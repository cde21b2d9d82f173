"""
Normalization of decoded change events into canonical changes.

This module provides:
- Conversion of every ChangeEvent variant into a Change
- Domain and namespace filtering
- Suppression of redundant page-properties-change events

A filtered event produces no Change. That is an expected outcome and not
an error.
"""

import logging
from typing import AbstractSet, Iterable, Optional

from .events import (
    NO_REVISION,
    Change,
    ChangeEvent,
    RevisionCreate,
    PageDelete,
    PageUndelete,
    PropertyChange,
)

logger = logging.getLogger(__name__)

# Page properties maintained by the knowledge base itself
REDUNDANT_PROPERTY_PREFIX = "wikibase"


def is_redundant(event: PropertyChange) -> bool:
    """
    A properties change touching only wikibase-maintained page properties
    accompanies an edit already reported on revision-create.
    """
    touched = event.added_properties | event.removed_properties
    return bool(touched) and all(
        name.startswith(REDUNDANT_PROPERTY_PREFIX) for name in touched
    )


class ChangeNormalizer:
    """Converts ChangeEvent variants to Change records for one target wiki."""

    def __init__(self, target_domain: str, allowed_namespaces: Iterable[int] = ()):
        """
        Initialize the normalizer.

        Args:
            target_domain: Only events emitted by this wiki domain are kept
            allowed_namespaces: Namespaces holding entities; empty for no restriction
        """
        self.target_domain = target_domain
        self.allowed_namespaces: AbstractSet[int] = frozenset(allowed_namespaces)

    def accepts(self, event: ChangeEvent) -> bool:
        """Check domain, namespace and redundancy filters."""
        if event.domain != self.target_domain:
            return False
        if self.allowed_namespaces and event.namespace not in self.allowed_namespaces:
            return False
        if isinstance(event, PropertyChange) and is_redundant(event):
            return False
        return True

    def normalize(self, event: ChangeEvent) -> Optional[Change]:
        """
        Convert an event to a Change.

        Returns:
            The Change, or None when the event is filtered out
        """
        if not self.accepts(event):
            logger.debug(
                f"Filtered {type(event).__name__} for {event.entity_id} "
                f"(domain={event.domain}, namespace={event.namespace})"
            )
            return None

        if isinstance(event, (RevisionCreate, PageUndelete)):
            revision = event.revision
        elif isinstance(event, (PageDelete, PropertyChange)):
            revision = NO_REVISION
        else:
            raise TypeError(f"Unsupported change event: {type(event).__name__}")

        return Change(event.entity_id, revision, event.timestamp)
