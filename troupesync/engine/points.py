"""
troupesync.engine.points — Points Calculator
=============================================

A point type is a named, inclusive date range.  An attended event credits
its value to every point type whose range contains the event's start date.

Two entry points:

- :func:`tally` — full recomputation from a member's attended events.
- :func:`event_deltas` — the per-point-type change caused by editing one
  event's value or date, for bulk updates scoped to that event's attendees.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime

from troupesync.engine.coercion import as_utc
from troupesync.engine.identity import AttendedEvent


@dataclass(frozen=True, slots=True)
class PointRange:
    name: str
    start: datetime
    end: datetime

    def covers(self, when: datetime) -> bool:
        return self.start <= as_utc(when) <= self.end

    @classmethod
    def from_dict(cls, name: str, raw: Mapping) -> PointRange:
        start = as_utc(datetime.fromisoformat(raw["start_date"]))
        end = as_utc(datetime.fromisoformat(raw["end_date"]))
        if end < start:
            raise ValueError(f"Point type {name!r} ends before it starts")
        return cls(name=name, start=start, end=end)


def parse_point_types(raw: Mapping[str, Mapping]) -> list[PointRange]:
    return [PointRange.from_dict(name, value) for name, value in raw.items()]


def covering(point_types: Iterable[PointRange], when: datetime) -> list[str]:
    """Names of the point types whose range contains *when*."""
    return [pt.name for pt in point_types if pt.covers(when)]


def tally(
    events: Iterable[AttendedEvent], point_types: Iterable[PointRange]
) -> dict[str, float]:
    """Point totals for one member, every point type present (zero if unearned)."""
    point_types = list(point_types)
    totals = {pt.name: 0.0 for pt in point_types}
    for attended in events:
        for name in covering(point_types, attended.start_date):
            totals[name] += attended.value
    return totals


def event_deltas(
    point_types: Iterable[PointRange],
    old_value: float,
    old_date: datetime | None,
    new_value: float,
    new_date: datetime | None,
) -> dict[str, float]:
    """Change per point type when an event moves from (old_value, old_date)
    to (new_value, new_date).

    Pass ``None`` for *new_date* to describe a deletion and ``None`` for
    *old_date* to describe a creation.  Zero deltas are omitted.
    """
    deltas: dict[str, float] = defaultdict(float)
    point_types = list(point_types)
    if old_date is not None:
        for name in covering(point_types, old_date):
            deltas[name] -= old_value
    if new_date is not None:
        for name in covering(point_types, new_date):
            deltas[name] += new_value
    return {name: delta for name, delta in deltas.items() if delta != 0}
