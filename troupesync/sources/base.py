"""
troupesync.sources.base — Event Data Source Contract
=====================================================

An event data source turns one event's external payload into:

1. an updated field → property map for the event (field synchronization), and
2. candidate members merged into the sync pass's shared
   :class:`~troupesync.engine.identity.AttendeeMap` (audience synchronization).

Variants only implement :meth:`EventDataSource.fetch`, which returns the
source's fields and records as a :class:`SourceTable`.  The two passes are
shared:

- **Validation scan** — every mapped field is coerced record by record.  The
  first failing record invalidates the field from that record onwards; the
  records accepted before it still count.  Overridden mappings survive a
  failure, automatic ones are reset to null.
- **Audience scan** — runs only if a field maps to ``Member ID`` and every
  observed identifying value coerced.  A member appearing twice in one
  event keeps its first record.

Source errors (:class:`~troupesync.errors.SourceError`) are caught here and
reported as a deletion marker for the event; anything else, including
:class:`~troupesync.errors.ProviderUnavailable`, propagates and aborts the pass.
"""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from troupesync.constants import MEMBER_ID_PROPERTY
from troupesync.engine.coercion import CoercionError, PropertyType, coerce_value
from troupesync.engine.identity import (
    AttendedEvent,
    AttendeeMap,
    CandidateMember,
    ObservedValue,
)
from troupesync.engine.matchers import FieldMapping, FieldMatcher, synchronize_fields
from troupesync.errors import SourceError, SourceMalformed

logger = logging.getLogger(__name__)

_UNOBSERVED = object()


# ---------------------------------------------------------------------------
# Snapshots handed to adapters (plain data, safe to share across threads)
# ---------------------------------------------------------------------------
@dataclass(slots=True)
class TroupeContext:
    id: str
    property_types: dict[str, PropertyType]
    matchers: list[FieldMatcher]
    origin_event_id: str | None = None


@dataclass(slots=True)
class EventSnapshot:
    id: str
    title: str
    start_date: datetime
    source: str
    source_uri: str
    value: float
    event_type_id: str | None = None
    field_map: dict[str, FieldMapping] = field(default_factory=dict)
    discovered: bool = False


@dataclass(slots=True)
class SourceTable:
    """Fields and records as read from a source.

    A record omits a field id when the source holds no observation for it
    (e.g. an unanswered form question).  An empty spreadsheet cell is an
    observation of ``""``.
    """

    fields: dict[str, str]
    records: list[dict[str, Any]]
    boolean_pairs: dict[str, tuple[str, str]] = field(default_factory=dict)
    allowed: Callable[[str, PropertyType], bool] | None = None


@dataclass(slots=True)
class IngestResult:
    event_id: str
    field_map: dict[str, FieldMapping] | None = None
    delete: bool = False
    reason: str | None = None
    audience: int = 0


# ---------------------------------------------------------------------------
# Contract
# ---------------------------------------------------------------------------
class EventDataSource(ABC):
    """One adapter instance serves every event of its kind in a sync pass."""

    kind: str = ""
    uri_pattern: re.Pattern

    def __init__(self, client, troupe: TroupeContext, attendees: AttendeeMap) -> None:
        self.client = client
        self.troupe = troupe
        self.attendees = attendees

    def init(self) -> None:
        """Acquire the provider handle."""
        self.client.open()

    def resolve_id(self, uri: str) -> str:
        match = self.uri_pattern.search(uri or "")
        if match is None:
            raise SourceMalformed(f"Not a {self.kind} URI: {uri!r}")
        return match.group("id")

    @abstractmethod
    def fetch(self, event: EventSnapshot, as_of: datetime) -> SourceTable:
        """Read the event's fields and records from the provider."""

    # -------------------------------------------------------------------
    # Two-pass ingestion
    # -------------------------------------------------------------------
    def discover_audience(self, event: EventSnapshot, as_of: datetime) -> IngestResult:
        try:
            table = self.fetch(event, as_of)
        except SourceError as exc:
            logger.warning(
                "Event %s (%s) flagged for deletion: %s", event.id, event.source_uri, exc
            )
            return IngestResult(event.id, delete=True, reason=str(exc))

        field_map = synchronize_fields(
            event.field_map,
            table.fields,
            self.troupe.matchers,
            self.troupe.property_types,
            table.allowed,
        )

        # Pass 1: validation scan
        targets: dict[str, str] = {}
        columns: dict[str, list[Any]] = {}
        failed_at: dict[str, int] = {}
        total = len(table.records)
        for fid, mapping in field_map.items():
            if mapping.property is None:
                continue
            ptype = self.troupe.property_types[mapping.property]
            pair = table.boolean_pairs.get(fid)
            targets[fid] = mapping.property
            columns[fid] = []
            failed_at[fid] = total
            for index, record in enumerate(table.records):
                if fid not in record:
                    columns[fid].append(_UNOBSERVED)
                    continue
                try:
                    columns[fid].append(coerce_value(ptype, record[fid], pair))
                except CoercionError as exc:
                    logger.info(
                        "Event %s: field %r invalid at record %d (%s)",
                        event.id, mapping.field, index + 1, exc,
                    )
                    failed_at[fid] = index
                    break

        for fid, index in failed_at.items():
            if index < total and not field_map[fid].override:
                field_map[fid].property = None

        event.field_map = field_map
        id_field = next(
            (fid for fid, prop in targets.items() if prop == MEMBER_ID_PROPERTY), None
        )
        if id_field is None or failed_at[id_field] < total:
            logger.info("Event %s has no valid %s field; audience skipped",
                        event.id, MEMBER_ID_PROPERTY)
            return IngestResult(event.id, field_map)

        # Pass 2: audience scan
        attended = AttendedEvent(event.id, event.event_type_id, event.value, event.start_date)
        origin = event.id == self.troupe.origin_event_id
        seen: set[str] = set()
        audience = 0
        for index in range(total):
            key = columns[id_field][index]
            if key is _UNOBSERVED or key in seen:
                continue
            seen.add(key)
            properties = {}
            for fid, prop in targets.items():
                if index >= failed_at[fid]:
                    continue
                value = columns[fid][index]
                if value is _UNOBSERVED:
                    continue
                properties[prop] = ObservedValue(value, event.start_date, event.id, origin)
            candidate = CandidateMember(str(key), properties, {event.id: attended})
            if self.attendees.merge(candidate):
                audience += 1
            else:
                logger.warning("Duplicate attendance of %s at event %s rejected", key, event.id)

        return IngestResult(event.id, field_map, audience=audience)
