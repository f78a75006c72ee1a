"""
troupesync.services.bucket_service — Attendance Bucket Writer
==============================================================

Persists each member's attended events across ``events_attended_buckets``
pages of at most ``MAX_PAGE_SIZE`` entries.

- :func:`write_member_buckets` rewrites a member's pages from a full list
  (used by sync); pages are reused in place and leftovers deleted.
- :func:`append_attendance` adds one entry, opening a new page when the
  last one is full.
- :func:`remove_event_entries` unsets an event wherever it is recorded,
  without compacting pages.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from troupesync.constants import MAX_PAGE_SIZE
from troupesync.database.models import EventsAttendedBucket
from troupesync.engine.buckets import paginate
from troupesync.engine.identity import AttendedEvent
from troupesync.errors import ClientError

logger = logging.getLogger(__name__)


def member_buckets(session: Session, member_id: str) -> list[EventsAttendedBucket]:
    return list(session.scalars(
        select(EventsAttendedBucket)
        .where(EventsAttendedBucket.member_id == member_id)
        .order_by(EventsAttendedBucket.page)
    ))


def member_attendance(session: Session, member_id: str) -> list[AttendedEvent]:
    return [
        AttendedEvent.from_entry(event_id, entry)
        for bucket in member_buckets(session, member_id)
        for event_id, entry in bucket.events.items()
    ]


def write_member_buckets(
    session: Session, troupe_id: str, member_id: str, events: Iterable[AttendedEvent]
) -> int:
    """Replace a member's pages with *events*.  Returns the page count."""
    pages = paginate(events)
    existing = {bucket.page: bucket for bucket in member_buckets(session, member_id)}
    for page, entries in enumerate(pages):
        bucket = existing.pop(page, None)
        if bucket is None:
            session.add(EventsAttendedBucket(
                troupe_id=troupe_id, member_id=member_id, page=page, events=entries
            ))
        elif bucket.events != entries:
            bucket.events = entries
    for bucket in existing.values():
        session.delete(bucket)
    return len(pages)


def append_attendance(
    session: Session, troupe_id: str, member_id: str, attended: AttendedEvent
) -> EventsAttendedBucket:
    """Record one attended event on the member's last page.

    Raises
    ------
    ClientError
        If the member already has an entry for the event.
    """
    buckets = member_buckets(session, member_id)
    if any(attended.event_id in bucket.events for bucket in buckets):
        raise ClientError(f"Member {member_id} already attended event {attended.event_id}")

    last = buckets[-1] if buckets else None
    if last is None or len(last.events) >= MAX_PAGE_SIZE:
        last = EventsAttendedBucket(
            troupe_id=troupe_id,
            member_id=member_id,
            page=0 if last is None else last.page + 1,
            events={},
        )
        session.add(last)
    last.events = {**last.events, attended.event_id: attended.to_entry()}
    session.flush()
    return last


def troupe_buckets(session: Session, troupe_id: str) -> list[EventsAttendedBucket]:
    return list(session.scalars(
        select(EventsAttendedBucket).where(EventsAttendedBucket.troupe_id == troupe_id)
    ))


def attendees_of(session: Session, troupe_id: str, event_id: str) -> list[str]:
    """Member ids with an entry for *event_id*."""
    return sorted({
        bucket.member_id
        for bucket in troupe_buckets(session, troupe_id)
        if event_id in bucket.events
    })


def update_event_entries(
    session: Session, troupe_id: str, event_id: str, **changes
) -> int:
    """Patch ``type_id`` / ``value`` / ``start_date`` on every entry for *event_id*."""
    touched = 0
    for bucket in troupe_buckets(session, troupe_id):
        entry = bucket.events.get(event_id)
        if entry is None:
            continue
        bucket.events = {**bucket.events, event_id: {**entry, **changes}}
        touched += 1
    return touched


def remove_event_entries(session: Session, troupe_id: str, event_ids: Iterable[str]) -> int:
    """Unset *event_ids* from every bucket.  Returns buckets touched."""
    doomed = set(event_ids)
    touched = 0
    for bucket in troupe_buckets(session, troupe_id):
        if doomed.isdisjoint(bucket.events):
            continue
        bucket.events = {k: v for k, v in bucket.events.items() if k not in doomed}
        touched += 1
    if touched:
        logger.debug("Removed %d event(s) from %d bucket(s)", len(doomed), touched)
    return touched


def delete_member_buckets(session: Session, member_ids: Iterable[str]) -> None:
    ids = list(member_ids)
    if ids:
        session.execute(
            delete(EventsAttendedBucket).where(EventsAttendedBucket.member_id.in_(ids))
        )
