"""
Decoder for upstream change event records.

Each canonical topic carries one JSON schema:
- revision-create: page_title, rev_id, page_namespace, meta.domain, meta.dt
- page-delete: page_title, page_namespace, meta.domain, meta.dt
- page-undelete: page_title, rev_id, page_namespace, meta.domain, meta.dt
- page-properties-change: page_title, page_namespace, meta.domain, meta.dt,
  optional added_properties / removed_properties

Event times keep at most microsecond precision, the resolution of
datetime; further fractional digits are truncated, not rounded.
Revision ids are non-negative.

Any failure to decode a record raises DecodeError for that record only.
"""

import re
import json
import logging
from datetime import datetime, timedelta, timezone
from json import JSONDecodeError
from typing import Any, Callable, Dict, FrozenSet, Optional

from ..config import DEFAULT_TOPIC_PREFIX
from ..core.exceptions import DecodeError
from .events import ChangeEvent, RevisionCreate, PageDelete, PageUndelete, PropertyChange
from .routing import ClusterRouter

logger = logging.getLogger(__name__)

_EVENT_TIME = re.compile(
    r"^(?P<base>\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2})"
    r"(?:\.(?P<fraction>\d+))?"
    r"(?P<zone>Z|[+-]\d{2}:?\d{2})$"
)


def parse_event_time(value: str) -> datetime:
    """
    Parse an ISO-8601 event time into an aware UTC datetime.

    Accepts whole seconds ("2018-02-19T13:31:23Z") and any number of
    fractional digits ("2018-10-24T00:28:24.1623Z"). Digits beyond
    microseconds are truncated.
    """
    match = _EVENT_TIME.match(value.strip()) if isinstance(value, str) else None
    if not match:
        raise ValueError(f"Invalid event time: {value!r}")

    base = datetime.strptime(match.group("base"), "%Y-%m-%dT%H:%M:%S")
    fraction = (match.group("fraction") or "")[:6].ljust(6, "0")

    zone = match.group("zone")
    if zone == "Z":
        tz = timezone.utc
    else:
        sign = -1 if zone[0] == "-" else 1
        digits = zone[1:].replace(":", "")
        tz = timezone(sign * timedelta(hours=int(digits[:2]), minutes=int(digits[2:])))

    try:
        return base.replace(microsecond=int(fraction), tzinfo=tz).astimezone(timezone.utc)
    except OverflowError as e:
        raise ValueError(f"Event time out of range: {value!r}") from e


def entity_id_from_title(title: str) -> str:
    """Strip the namespace prefix of a page title ("Property:P31" -> "P31")."""
    return title.rsplit(":", 1)[-1]


class EventDecoder:
    """
    Decodes raw stream records into ChangeEvent variants.

    The concrete topic is mapped to its canonical topic through the
    ClusterRouter; the canonical topic selects the schema.
    """

    def __init__(
        self,
        router: Optional[ClusterRouter] = None,
        topic_prefix: str = DEFAULT_TOPIC_PREFIX,
    ):
        self.router = router or ClusterRouter()
        self.topic_prefix = topic_prefix
        self._schemas: Dict[str, Callable[[Dict[str, Any]], ChangeEvent]] = {
            f"{topic_prefix}revision-create": self._revision_create,
            f"{topic_prefix}page-delete": self._page_delete,
            f"{topic_prefix}page-undelete": self._page_undelete,
            f"{topic_prefix}page-properties-change": self._property_change,
        }

    @property
    def canonical_topics(self) -> FrozenSet[str]:
        return frozenset(self._schemas)

    def decode(self, topic: str, payload: Optional[bytes], offset: Optional[int] = None) -> ChangeEvent:
        """
        Decode one record.

        Args:
            topic: Concrete topic name the record was read from
            payload: Raw record value
            offset: Record offset, used only for error reporting

        Returns:
            The decoded ChangeEvent variant

        Raises:
            DecodeError: If the topic is unknown or the payload is malformed
        """
        schema = self._schemas.get(self.router.canonical_of(topic))
        if schema is None:
            raise DecodeError(topic, "unknown topic", offset)

        data = self._parse_payload(topic, payload, offset)

        try:
            return schema(data)
        except (KeyError, TypeError, ValueError) as e:
            raise DecodeError(topic, str(e), offset) from e

    def _parse_payload(self, topic: str, payload: Optional[bytes], offset: Optional[int]) -> Dict[str, Any]:
        if payload is None:
            raise DecodeError(topic, "empty payload", offset)

        try:
            if isinstance(payload, (bytes, bytearray)):
                payload = payload.decode("utf-8")
            data = json.loads(payload)
        except (UnicodeDecodeError, JSONDecodeError) as e:
            raise DecodeError(topic, f"malformed payload: {e}", offset) from e

        if not isinstance(data, dict):
            raise DecodeError(topic, "payload is not a JSON object", offset)
        return data

    def _revision_create(self, data: Dict[str, Any]) -> RevisionCreate:
        return RevisionCreate(
            entity_id=self._entity_id(data),
            revision=self._revision(data),
            timestamp=self._timestamp(data),
            domain=self._domain(data),
            namespace=self._int(data, "page_namespace"),
        )

    def _page_delete(self, data: Dict[str, Any]) -> PageDelete:
        return PageDelete(
            entity_id=self._entity_id(data),
            timestamp=self._timestamp(data),
            domain=self._domain(data),
            namespace=self._int(data, "page_namespace"),
        )

    def _page_undelete(self, data: Dict[str, Any]) -> PageUndelete:
        return PageUndelete(
            entity_id=self._entity_id(data),
            revision=self._revision(data),
            timestamp=self._timestamp(data),
            domain=self._domain(data),
            namespace=self._int(data, "page_namespace"),
        )

    def _property_change(self, data: Dict[str, Any]) -> PropertyChange:
        return PropertyChange(
            entity_id=self._entity_id(data),
            timestamp=self._timestamp(data),
            domain=self._domain(data),
            namespace=self._int(data, "page_namespace"),
            added_properties=self._property_names(data, "added_properties"),
            removed_properties=self._property_names(data, "removed_properties"),
        )

    def _meta(self, data: Dict[str, Any]) -> Dict[str, Any]:
        meta = data.get("meta")
        if not isinstance(meta, dict):
            raise ValueError("missing meta block")
        return meta

    def _domain(self, data: Dict[str, Any]) -> str:
        domain = self._meta(data).get("domain")
        if not isinstance(domain, str) or not domain:
            raise ValueError("missing meta.domain")
        return domain

    def _timestamp(self, data: Dict[str, Any]) -> datetime:
        dt = self._meta(data).get("dt")
        if dt is None:
            raise ValueError("missing meta.dt")
        return parse_event_time(dt)

    def _entity_id(self, data: Dict[str, Any]) -> str:
        title = data.get("page_title")
        if not isinstance(title, str) or not title:
            raise ValueError("missing page_title")
        entity_id = entity_id_from_title(title)
        if not entity_id:
            raise ValueError(f"no entity id in page_title {title!r}")
        return entity_id

    def _int(self, data: Dict[str, Any], name: str) -> int:
        value = data.get(name)
        # bool is an int subclass and never a valid id
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValueError(f"missing or invalid {name}")
        return value

    def _revision(self, data: Dict[str, Any]) -> int:
        revision = self._int(data, "rev_id")
        if revision < 0:
            raise ValueError(f"negative rev_id {revision}")
        return revision

    def _property_names(self, data: Dict[str, Any], name: str) -> FrozenSet[str]:
        value = data.get(name) or {}
        if not isinstance(value, dict):
            raise ValueError(f"invalid {name}")
        return frozenset(value)
