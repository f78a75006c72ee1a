"""
troupesync.engine.buckets — Attendance Page Layout
===================================================

A member's attended events are stored across pages of at most
``MAX_PAGE_SIZE`` entries.  Pages are filled in ``(start_date, event_id)``
order so a rewrite of the same attendance yields the same pages.
"""

from __future__ import annotations

from collections.abc import Iterable

from troupesync.constants import MAX_PAGE_SIZE
from troupesync.engine.identity import AttendedEvent


def paginate(
    events: Iterable[AttendedEvent], page_size: int = MAX_PAGE_SIZE
) -> list[dict[str, dict]]:
    """Split *events* into page dicts (event id → entry).

    Raises
    ------
    ValueError
        If the same event appears twice.
    """
    ordered = sorted(events, key=lambda e: (e.start_date, e.event_id))
    seen: set[str] = set()
    pages: list[dict[str, dict]] = []
    for attended in ordered:
        if attended.event_id in seen:
            raise ValueError(f"Duplicate attendance for event {attended.event_id}")
        seen.add(attended.event_id)
        if not pages or len(pages[-1]) >= page_size:
            pages.append({})
        pages[-1][attended.event_id] = attended.to_entry()
    return pages
