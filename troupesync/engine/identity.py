"""
troupesync.engine.identity — Member Identity Resolver
======================================================

Adapters emit one :class:`CandidateMember` per (member, event).  Candidates
sharing an identifying value are merged into a single member:

- Values from the troupe's origin event beat values from any other event.
- Otherwise the value from the latest event wins, ranked by
  ``(start_date, event_id)``.  The rule does not depend on arrival order,
  so concurrent ingestion gives the same result as sequential ingestion.
- A member cannot attend one event twice; a second candidate for an event
  the member already holds is rejected.

Persisted values flagged ``override`` are never replaced
(:func:`merge_into_persisted`).
"""

from __future__ import annotations

import threading
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from troupesync.engine.coercion import PropertyType, as_utc, is_empty


@dataclass(frozen=True, slots=True)
class AttendedEvent:
    """One entry of a member's attendance record."""

    event_id: str
    type_id: str | None
    value: float
    start_date: datetime

    def to_entry(self) -> dict:
        return {
            "type_id": self.type_id,
            "value": self.value,
            "start_date": self.start_date.isoformat(),
        }

    @classmethod
    def from_entry(cls, event_id: str, entry: Mapping) -> AttendedEvent:
        return cls(
            event_id=event_id,
            type_id=entry.get("type_id"),
            value=float(entry.get("value", 0)),
            start_date=as_utc(datetime.fromisoformat(entry["start_date"])),
        )


@dataclass(frozen=True, slots=True)
class ObservedValue:
    """A property value plus where it came from."""

    value: Any
    start_date: datetime
    event_id: str
    origin: bool = False

    def beats(self, other: ObservedValue) -> bool:
        if self.origin != other.origin:
            return self.origin
        return (self.start_date, self.event_id) > (other.start_date, other.event_id)


@dataclass(slots=True)
class CandidateMember:
    key: str
    properties: dict[str, ObservedValue] = field(default_factory=dict)
    events: dict[str, AttendedEvent] = field(default_factory=dict)

    def absorb(self, other: CandidateMember) -> bool:
        """Merge *other* into this candidate.  Returns False if rejected."""
        if any(event_id in self.events for event_id in other.events):
            return False
        self.events.update(other.events)
        for name, observed in other.properties.items():
            current = self.properties.get(name)
            if current is None or observed.beats(current):
                self.properties[name] = observed
        return True


class AttendeeMap:
    """Concurrency-safe candidate map keyed by identifying value.

    Insertion is merge-on-insert: a read-modify-write under a per-key lock,
    so two adapters discovering the same member at once never lose data.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}
        self._members: dict[str, CandidateMember] = {}

    def _lock_for(self, key: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(key, threading.Lock())

    def merge(self, candidate: CandidateMember) -> bool:
        with self._lock_for(candidate.key):
            with self._guard:
                existing = self._members.get(candidate.key)
                if existing is None:
                    self._members[candidate.key] = candidate
                    return True
            return existing.absorb(candidate)

    def snapshot(self) -> dict[str, CandidateMember]:
        """Members sorted by identifying value."""
        with self._guard:
            return {key: self._members[key] for key in sorted(self._members)}

    def __len__(self) -> int:
        with self._guard:
            return len(self._members)

    def __contains__(self, key: object) -> bool:
        with self._guard:
            return key in self._members


# ---------------------------------------------------------------------------
# Persisted members
# ---------------------------------------------------------------------------
def normalize_properties(
    properties: Mapping[str, Mapping] | None, names: Iterable[str]
) -> dict[str, dict]:
    """Give *properties* exactly the keys in *names* (new ones start null)."""
    properties = properties or {}
    result = {}
    for name in names:
        current = properties.get(name)
        if current is None:
            result[name] = {"value": None, "override": False}
        else:
            result[name] = {
                "value": current.get("value"),
                "override": bool(current.get("override", False)),
            }
    return result


def merge_into_persisted(
    properties: Mapping[str, Mapping] | None,
    candidate: CandidateMember,
    property_types: Mapping[str, PropertyType],
) -> dict[str, dict]:
    """Apply this pass's observations to a member's stored properties.

    Overridden values stay untouched.  Origin-event values are written with
    ``override=True`` so later passes keep them.
    """
    result = normalize_properties(properties, property_types)
    for name, observed in candidate.properties.items():
        if name not in result or result[name]["override"]:
            continue
        result[name] = {"value": observed.value, "override": observed.origin}
    return result


def missing_required(
    properties: Mapping[str, Mapping], property_types: Mapping[str, PropertyType]
) -> list[str]:
    return [
        name
        for name, ptype in property_types.items()
        if ptype.required and is_empty((properties.get(name) or {}).get("value"))
    ]
