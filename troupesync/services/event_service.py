"""
troupesync.services.event_service — Event & Event Type Mutations
=================================================================

Every write here:
  1. Pre-checks quotas (``QuotaExceeded`` → nothing happens)
  2. Claims the troupe row while its sync lock is clear (``SyncInProgress``)
  3. Applies the change, shifting attendee points by delta where an event's
     value, date or type moved
  4. Decrements the quota counters in the same transaction

Bulk variants run the per-item path under a :class:`LimitScope` and apply
one aggregated counter update.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import Engine, select, update
from sqlalchemy.orm import Session

from troupesync.constants import DRIVE_FOLDER_REGEX, FORMS_REGEX, SHEETS_REGEX
from troupesync.database.engine import get_session
from troupesync.database.models import Event, EventType, Troupe
from troupesync.engine.coercion import as_utc, parse_date, parse_number, parse_property_types
from troupesync.engine.matchers import dump_field_map, load_field_map
from troupesync.engine.points import event_deltas, parse_point_types
from troupesync.errors import ClientError
from troupesync.services.bucket_service import (
    attendees_of,
    remove_event_entries,
    update_event_entries,
)
from troupesync.services.limit_service import (
    LimitScope,
    increment_troupe_limits,
    limit_scope,
    quota_guard,
    require_within_limits,
)
from troupesync.services.lock_service import claim_unlocked
from troupesync.services.points_service import apply_point_deltas

logger = logging.getLogger(__name__)

EVENT_FIELDS = frozenset({
    "title", "start_date", "value", "event_type_id", "source_uri", "field_to_property_map",
})
EVENT_TYPE_FIELDS = frozenset({"title", "value", "source_folder_uris"})


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def infer_source(uri: str) -> str:
    """``"sheets"``, ``"forms"`` or ``""`` for an unrecognised URI."""
    if SHEETS_REGEX.search(uri or ""):
        return "sheets"
    if FORMS_REGEX.search(uri or ""):
        return "forms"
    return ""


def event_to_dict(event: Event) -> dict:
    return {
        "id": event.id,
        "troupe_id": event.troupe_id,
        "title": event.title,
        "start_date": as_utc(event.start_date).isoformat(),
        "source": event.source,
        "source_uri": event.source_uri,
        "event_type_id": event.event_type_id,
        "value": event.value,
        "discovered": event.discovered,
        "field_to_property_map": dict(event.field_to_property_map or {}),
    }


def event_type_to_dict(event_type: EventType) -> dict:
    return {
        "id": event_type.id,
        "troupe_id": event_type.troupe_id,
        "title": event_type.title,
        "value": event_type.value,
        "source_folder_uris": list(event_type.source_folder_uris or []),
    }


def _require_value(raw: Any) -> float:
    number = parse_number(raw)
    if number is None:
        raise ClientError(f"Invalid point value: {raw!r}")
    return float(number)


def _require_date(raw: Any) -> datetime:
    parsed = parse_date(raw)
    if parsed is None:
        raise ClientError(f"Invalid date: {raw!r}")
    return parsed


def _get_event(session: Session, troupe_id: str, event_id: str) -> Event:
    event = session.get(Event, event_id)
    if event is None or event.troupe_id != troupe_id:
        raise ClientError(f"Event not found: {event_id}")
    return event


def _get_event_type(session: Session, troupe_id: str, type_id: str) -> EventType:
    event_type = session.get(EventType, type_id)
    if event_type is None or event_type.troupe_id != troupe_id:
        raise ClientError(f"Event type not found: {type_id}")
    return event_type


def _check_uri_free(session: Session, troupe_id: str, uri: str, exclude: str | None = None) -> None:
    clash = session.scalar(
        select(Event.id).where(Event.troupe_id == troupe_id, Event.source_uri == uri)
    )
    if clash is not None and clash != exclude:
        raise ClientError(f"An event already uses {uri}")


def _check_folder_uris(uris: Iterable[str]) -> list[str]:
    uris = list(uris)
    for uri in uris:
        if not DRIVE_FOLDER_REGEX.search(uri or ""):
            raise ClientError(f"Not a Drive folder URI: {uri!r}")
    if len(set(uris)) != len(uris):
        raise ClientError("Duplicate folder URIs")
    return uris


def shift_event_points(
    session: Session,
    troupe: Troupe,
    event_id: str,
    old_value: float,
    old_date: datetime | None,
    new_value: float,
    new_date: datetime | None,
) -> int:
    """Apply an event's value/date change to its attendees' totals."""
    deltas = event_deltas(
        parse_point_types(troupe.point_types or {}), old_value, old_date, new_value, new_date
    )
    if not deltas:
        return 0
    members = attendees_of(session, troupe.id, event_id)
    return apply_point_deltas(session, troupe.id, members, deltas)


def apply_field_overrides(
    troupe: Troupe, field_map: Mapping[str, Mapping], overrides: Mapping[str, str | None]
) -> dict[str, dict]:
    """Manually map fields to properties, keeping one field per property.

    A field auto-mapped to a property taken by an override is unmapped; a
    clash with another manual mapping is refused.
    """
    types = parse_property_types(troupe.member_property_types or {})
    mappings = load_field_map(field_map)
    for fid, prop in overrides.items():
        if fid not in mappings:
            raise ClientError(f"Unknown field: {fid}")
        if prop is not None and prop not in types:
            raise ClientError(f"Unknown member property: {prop}")
        if prop is not None:
            for other_id, other in mappings.items():
                if other_id == fid or other.property != prop:
                    continue
                if other.override and other_id not in overrides:
                    raise ClientError(f"{prop!r} is already mapped to field {other.field!r}")
                other.property = None
                other.override = False
        mappings[fid].property = prop
        mappings[fid].override = True
        mappings[fid].matcher_id = None
    return dump_field_map(mappings)


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------
def _add_event(
    session: Session, troupe: Troupe, draft: Mapping[str, Any], scope: LimitScope | None
) -> Event:
    modifications = {"modify_operations_left": -1, "events_left": -1}
    require_within_limits(session, troupe.id, modifications, scope)

    title = str(draft.get("title") or "").strip()
    if not title:
        raise ClientError("Event title is required")
    uri = str(draft.get("source_uri") or "").strip()
    if not uri:
        raise ClientError("Event source URI is required")
    _check_uri_free(session, troupe.id, uri)

    event_type = None
    if draft.get("event_type_id"):
        event_type = _get_event_type(session, troupe.id, draft["event_type_id"])
    if draft.get("value") is not None:
        value = _require_value(draft["value"])
    else:
        value = event_type.value if event_type else 0.0

    event = Event(
        troupe_id=troupe.id,
        title=title,
        start_date=_require_date(draft.get("start_date")),
        source=infer_source(uri),
        source_uri=uri,
        event_type_id=event_type.id if event_type else None,
        value=value,
        field_to_property_map={},
    )
    session.add(event)
    session.flush()
    increment_troupe_limits(session, troupe.id, modifications, scope)
    return event


def create_event(engine: Engine, troupe_id: str, **draft: Any) -> dict:
    """Create one event.  Keyword fields: title, start_date, source_uri,
    value (defaults to the event type's), event_type_id."""
    with get_session(engine) as session:
        troupe = claim_unlocked(session, troupe_id)
        event = _add_event(session, troupe, draft, scope=None)
        logger.info("Event %s created in troupe %s", event.id, troupe_id)
        return event_to_dict(event)


def create_events(engine: Engine, troupe_id: str, drafts: list[Mapping[str, Any]]) -> list[dict]:
    """Bulk create: one quota check, one aggregated counter update."""
    if not drafts:
        return []
    with get_session(engine) as session:
        troupe = claim_unlocked(session, troupe_id)
        require_within_limits(session, troupe_id, {
            "modify_operations_left": -len(drafts), "events_left": -len(drafts),
        })
        with limit_scope(session, troupe_id) as scope:
            events = [_add_event(session, troupe, draft, scope) for draft in drafts]
        logger.info("%d event(s) created in troupe %s", len(events), troupe_id)
        return [event_to_dict(event) for event in events]


def update_event(engine: Engine, troupe_id: str, event_id: str, updates: Mapping[str, Any]) -> dict:
    """Edit an event.  Value, date and type changes shift attendee points.

    ``updates["field_to_property_map"]`` maps field ids to a property name
    (or None) and marks them as manual overrides.
    """
    unknown = set(updates) - EVENT_FIELDS
    if unknown:
        raise ClientError(f"Unknown event fields: {sorted(unknown)}")

    with quota_guard(engine, troupe_id, {"modify_operations_left": -1}) as session:
        troupe = claim_unlocked(session, troupe_id)
        event = _get_event(session, troupe_id, event_id)
        old_value = event.value
        old_date = as_utc(event.start_date)
        old_type = event.event_type_id

        if "title" in updates:
            title = str(updates["title"] or "").strip()
            if not title:
                raise ClientError("Event title is required")
            event.title = title
        if "start_date" in updates:
            event.start_date = _require_date(updates["start_date"])
        if "event_type_id" in updates:
            type_id = updates["event_type_id"]
            event_type = _get_event_type(session, troupe_id, type_id) if type_id else None
            event.event_type_id = event_type.id if event_type else None
            if event_type is not None and "value" not in updates:
                event.value = event_type.value
        if "value" in updates:
            event.value = _require_value(updates["value"])
        if "source_uri" in updates:
            uri = str(updates["source_uri"] or "").strip()
            if not uri:
                raise ClientError("Event source URI is required")
            if uri != event.source_uri:
                _check_uri_free(session, troupe_id, uri, exclude=event.id)
                event.source_uri = uri
                event.source = infer_source(uri)
                event.field_to_property_map = {}
        if "field_to_property_map" in updates:
            event.field_to_property_map = apply_field_overrides(
                troupe, event.field_to_property_map or {}, updates["field_to_property_map"]
            )

        new_date = as_utc(event.start_date)
        if event.value != old_value or new_date != old_date:
            shift_event_points(session, troupe, event.id, old_value, old_date, event.value, new_date)
        if event.value != old_value or new_date != old_date or event.event_type_id != old_type:
            update_event_entries(
                session, troupe_id, event.id,
                type_id=event.event_type_id, value=event.value, start_date=new_date.isoformat(),
            )
        event.last_updated = datetime.now(UTC)
        return event_to_dict(event)


def _remove_event(session: Session, troupe: Troupe, event: Event, scope: LimitScope | None) -> None:
    modifications = {"modify_operations_left": -1, "events_left": 1}
    require_within_limits(session, troupe.id, modifications, scope)
    shift_event_points(
        session, troupe, event.id, event.value, as_utc(event.start_date), 0.0, None
    )
    remove_event_entries(session, troupe.id, [event.id])
    if troupe.origin_event_id == event.id:
        troupe.origin_event_id = None
    session.delete(event)
    session.flush()
    increment_troupe_limits(session, troupe.id, modifications, scope)


def delete_event(engine: Engine, troupe_id: str, event_id: str) -> None:
    with get_session(engine) as session:
        troupe = claim_unlocked(session, troupe_id)
        _remove_event(session, troupe, _get_event(session, troupe_id, event_id), scope=None)
    logger.info("Event %s deleted from troupe %s", event_id, troupe_id)


def delete_events(engine: Engine, troupe_id: str, event_ids: list[str]) -> int:
    if not event_ids:
        return 0
    with get_session(engine) as session:
        troupe = claim_unlocked(session, troupe_id)
        require_within_limits(
            session, troupe_id, {"modify_operations_left": -len(event_ids)}
        )
        with limit_scope(session, troupe_id) as scope:
            for event_id in event_ids:
                _remove_event(session, troupe, _get_event(session, troupe_id, event_id), scope)
    logger.info("%d event(s) deleted from troupe %s", len(event_ids), troupe_id)
    return len(event_ids)


# ---------------------------------------------------------------------------
# Event types
# ---------------------------------------------------------------------------
def create_event_type(
    engine: Engine,
    troupe_id: str,
    *,
    title: str,
    value: Any,
    source_folder_uris: Iterable[str] = (),
) -> dict:
    uris = _check_folder_uris(source_folder_uris)
    title = str(title or "").strip()
    if not title:
        raise ClientError("Event type title is required")
    modifications = {
        "modify_operations_left": -1,
        "event_types_left": -1,
        "source_folder_uris_left": -len(uris),
    }
    with quota_guard(engine, troupe_id, modifications) as session:
        claim_unlocked(session, troupe_id)
        event_type = EventType(
            troupe_id=troupe_id, title=title, value=_require_value(value),
            source_folder_uris=uris,
        )
        session.add(event_type)
        session.flush()
        logger.info("Event type %s created in troupe %s", event_type.id, troupe_id)
        return event_type_to_dict(event_type)


def update_event_type(
    engine: Engine, troupe_id: str, type_id: str, updates: Mapping[str, Any]
) -> dict:
    """Edit an event type.  A value change is applied to every event of the
    type, shifting their attendees' points."""
    unknown = set(updates) - EVENT_TYPE_FIELDS
    if unknown:
        raise ClientError(f"Unknown event type fields: {sorted(unknown)}")

    with get_session(engine) as session:
        troupe = claim_unlocked(session, troupe_id)
        event_type = _get_event_type(session, troupe_id, type_id)

        uris = list(event_type.source_folder_uris or [])
        if "source_folder_uris" in updates:
            uris = _check_folder_uris(updates["source_folder_uris"])
        modifications = {
            "modify_operations_left": -1,
            "source_folder_uris_left": len(event_type.source_folder_uris or []) - len(uris),
        }
        require_within_limits(session, troupe_id, modifications)

        if "title" in updates:
            title = str(updates["title"] or "").strip()
            if not title:
                raise ClientError("Event type title is required")
            event_type.title = title
        event_type.source_folder_uris = uris

        if "value" in updates:
            new_value = _require_value(updates["value"])
            if new_value != event_type.value:
                event_type.value = new_value
                events = session.scalars(
                    select(Event).where(Event.troupe_id == troupe_id, Event.event_type_id == type_id)
                ).all()
                for event in events:
                    old_value = event.value
                    event.value = new_value
                    date = as_utc(event.start_date)
                    shift_event_points(session, troupe, event.id, old_value, date, new_value, date)
                    update_event_entries(session, troupe_id, event.id, value=new_value)
                logger.info(
                    "Event type %s value → %s applied to %d event(s)", type_id, new_value, len(events)
                )
        event_type.last_updated = datetime.now(UTC)
        session.flush()
        increment_troupe_limits(session, troupe_id, modifications)
        return event_type_to_dict(event_type)


def delete_event_type(engine: Engine, troupe_id: str, type_id: str) -> None:
    """Delete an event type.  Its events stay, untyped."""
    with get_session(engine) as session:
        claim_unlocked(session, troupe_id)
        event_type = _get_event_type(session, troupe_id, type_id)
        modifications = {
            "modify_operations_left": -1,
            "event_types_left": 1,
            "source_folder_uris_left": len(event_type.source_folder_uris or []),
        }
        require_within_limits(session, troupe_id, modifications)
        event_ids = session.scalars(
            select(Event.id).where(Event.troupe_id == troupe_id, Event.event_type_id == type_id)
        ).all()
        session.execute(
            update(Event)
            .where(Event.troupe_id == troupe_id, Event.event_type_id == type_id)
            .values(event_type_id=None)
            .execution_options(synchronize_session=False)
        )
        for event_id in event_ids:
            update_event_entries(session, troupe_id, event_id, type_id=None)
        session.delete(event_type)
        session.flush()
        increment_troupe_limits(session, troupe_id, modifications)
    logger.info("Event type %s deleted from troupe %s", type_id, troupe_id)
