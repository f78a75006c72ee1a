"""
troupesync.services.troupe_service — Troupe Configuration
==========================================================

Creation seeds a troupe with the default member properties, the all-time
``Total`` point type, the default field matchers and its quota row.
Configuration edits follow the same quota → lock → mutate → account
pattern as the other services.  Point-type range edits rebuild that point
type from the attendance buckets.
"""

from __future__ import annotations

import copy
import logging
from collections.abc import Mapping, Sequence
from typing import Any

from sqlalchemy import Engine, delete, select

from troupesync.constants import (
    BASE_MEMBER_PROPERTY_TYPES,
    BASE_POINT_TYPES,
    DEFAULT_MATCHERS,
    TOTAL_POINT_TYPE,
)
from troupesync.database.engine import get_session
from troupesync.database.models import (
    Event,
    EventsAttendedBucket,
    EventType,
    Member,
    MemberPoints,
    Troupe,
    new_id,
)
from troupesync.engine.coercion import PropertyType
from troupesync.engine.matchers import (
    MATCH_CONDITIONS,
    MATCH_FILTERS,
    dump_field_map,
    load_field_map,
)
from troupesync.engine.points import PointRange
from troupesync.errors import ClientError, QuotaExceeded
from troupesync.services.limit_service import (
    increment_global_limits,
    increment_troupe_limits,
    init_troupe_limits,
    quota_guard,
    remove_troupe_limits,
    require_within_limits,
    within_global_limits,
)
from troupesync.services.lock_service import claim_unlocked
from troupesync.services.log_sheet import LogSheetService
from troupesync.services.points_service import drop_point_type, recompute_point_type

logger = logging.getLogger(__name__)

TROUPE_FIELDS = frozenset({"name", "origin_event_id"})


def troupe_to_dict(troupe: Troupe) -> dict:
    return {
        "id": troupe.id,
        "name": troupe.name,
        "origin_event_id": troupe.origin_event_id,
        "log_sheet_uri": troupe.log_sheet_uri,
        "sync_lock": troupe.sync_lock,
        "member_property_types": dict(troupe.member_property_types or {}),
        "point_types": copy.deepcopy(troupe.point_types or {}),
        "field_matchers": copy.deepcopy(troupe.field_matchers or []),
    }


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------
def create_troupe(engine: Engine, name: str, *, has_invite_code: bool = False) -> dict:
    """Create a troupe with default configuration and its quota row.

    Troupes created without an invite code consume the global
    ``uninvited_users_left`` counter.
    """
    name = str(name or "").strip()
    if not name:
        raise ClientError("Troupe name is required")

    with get_session(engine) as session:
        if not has_invite_code and not within_global_limits(
            session, {"uninvited_users_left": -1}
        ):
            logger.warning("Uninvited troupe creation refused: global limit reached")
            raise QuotaExceeded("No more troupes can be created without an invite code")

        troupe = Troupe(
            name=name,
            member_property_types=dict(BASE_MEMBER_PROPERTY_TYPES),
            point_types=copy.deepcopy(BASE_POINT_TYPES),
            field_matchers=[{**matcher, "id": new_id()} for matcher in DEFAULT_MATCHERS],
        )
        session.add(troupe)
        session.flush()
        init_troupe_limits(session, troupe.id, has_invite_code)
        if not has_invite_code:
            increment_global_limits(session, {"uninvited_users_left": -1})
        session.flush()
        logger.info("Troupe %s (%s) created", troupe.id, name)
        return troupe_to_dict(troupe)


def delete_troupe(engine: Engine, troupe_id: str, log_sheet: LogSheetService | None = None) -> None:
    """Delete a troupe and everything it owns."""
    with get_session(engine) as session:
        troupe = claim_unlocked(session, troupe_id)
        if log_sheet is not None and troupe.log_sheet_uri:
            try:
                log_sheet.delete_log(troupe_to_dict(troupe), [], [])
            except Exception:
                logger.exception("Log sheet deletion failed for troupe %s", troupe_id)
        for model in (MemberPoints, EventsAttendedBucket, Member, Event, EventType):
            session.execute(delete(model).where(model.troupe_id == troupe_id))
        remove_troupe_limits(session, troupe_id)
        session.delete(troupe)
    logger.info("Troupe %s deleted", troupe_id)


def update_troupe(engine: Engine, troupe_id: str, updates: Mapping[str, Any]) -> dict:
    """Rename the troupe or choose its origin event (None clears it)."""
    unknown = set(updates) - TROUPE_FIELDS
    if unknown:
        raise ClientError(f"Unknown troupe fields: {sorted(unknown)}")

    with quota_guard(engine, troupe_id, {"modify_operations_left": -1}) as session:
        troupe = claim_unlocked(session, troupe_id)
        if "name" in updates:
            name = str(updates["name"] or "").strip()
            if not name:
                raise ClientError("Troupe name is required")
            troupe.name = name
        if "origin_event_id" in updates:
            origin = updates["origin_event_id"]
            if origin is not None:
                event = session.get(Event, origin)
                if event is None or event.troupe_id != troupe_id:
                    raise ClientError(f"Event not found: {origin}")
            troupe.origin_event_id = origin
        return troupe_to_dict(troupe)


def create_log_sheet(engine: Engine, troupe_id: str, log_sheet: LogSheetService) -> dict:
    """Create the troupe's log sheet and remember its URI."""
    with quota_guard(engine, troupe_id, {"modify_operations_left": -1}) as session:
        troupe = claim_unlocked(session, troupe_id)
        if troupe.log_sheet_uri:
            raise ClientError("Troupe already has a log sheet")
        troupe.log_sheet_uri = log_sheet.create_log(troupe_to_dict(troupe), [], [])
        return troupe_to_dict(troupe)


# ---------------------------------------------------------------------------
# Member property types
# ---------------------------------------------------------------------------
def set_member_property_types(
    engine: Engine, troupe_id: str, changes: Mapping[str, str | None]
) -> dict:
    """Add, retype (``name → "number?"``) or remove (``name → None``) properties.

    The default properties cannot be changed.  Removing a property strips it
    from every member and unmaps any field pointing at it.
    """
    for name in changes:
        if name in BASE_MEMBER_PROPERTY_TYPES:
            raise ClientError(f"{name!r} is a default property and cannot be changed")

    with get_session(engine) as session:
        troupe = claim_unlocked(session, troupe_id)
        current = dict(troupe.member_property_types or {})
        added = removed = 0
        for name, declared in changes.items():
            if declared is None:
                if current.pop(name, None) is not None:
                    removed += 1
                continue
            try:
                PropertyType.parse(declared)
            except ValueError as exc:
                raise ClientError(str(exc)) from exc
            if name not in current:
                added += 1
            current[name] = declared

        modifications = {
            "modify_operations_left": -1,
            "member_property_types_left": removed - added,
        }
        require_within_limits(session, troupe_id, modifications)
        troupe.member_property_types = current

        dropped = {name for name, declared in changes.items() if declared is None}
        if dropped:
            for member in session.scalars(select(Member).where(Member.troupe_id == troupe_id)):
                member.properties = {
                    k: v for k, v in (member.properties or {}).items() if k not in dropped
                }
            for event in session.scalars(select(Event).where(Event.troupe_id == troupe_id)):
                mappings = load_field_map(event.field_to_property_map)
                for mapping in mappings.values():
                    if mapping.property in dropped:
                        mapping.property = None
                event.field_to_property_map = dump_field_map(mappings)

        session.flush()
        increment_troupe_limits(session, troupe_id, modifications)
        return troupe_to_dict(troupe)


# ---------------------------------------------------------------------------
# Point types
# ---------------------------------------------------------------------------
def set_point_types(
    engine: Engine, troupe_id: str, changes: Mapping[str, Mapping[str, str] | None]
) -> dict:
    """Add, re-range or remove (``None``) point types.

    New or re-ranged point types are rebuilt from attendance buckets.
    """
    if TOTAL_POINT_TYPE in changes and changes[TOTAL_POINT_TYPE] is None:
        raise ClientError(f"{TOTAL_POINT_TYPE!r} cannot be removed")

    with get_session(engine) as session:
        troupe = claim_unlocked(session, troupe_id)
        current = copy.deepcopy(troupe.point_types or {})
        added = removed = 0
        rebuild: list[PointRange] = []
        for name, declared in changes.items():
            if declared is None:
                if current.pop(name, None) is not None:
                    removed += 1
                continue
            try:
                point_range = PointRange.from_dict(name, declared)
            except (KeyError, TypeError, ValueError) as exc:
                raise ClientError(f"Invalid point type {name!r}: {exc}") from exc
            if name not in current:
                added += 1
            current[name] = {
                "start_date": point_range.start.isoformat(),
                "end_date": point_range.end.isoformat(),
            }
            rebuild.append(point_range)

        modifications = {"modify_operations_left": -1, "point_types_left": removed - added}
        require_within_limits(session, troupe_id, modifications)
        troupe.point_types = current

        for name, declared in changes.items():
            if declared is None:
                drop_point_type(session, troupe_id, name)
        session.flush()
        for point_range in rebuild:
            recompute_point_type(session, troupe_id, point_range)

        session.flush()
        increment_troupe_limits(session, troupe_id, modifications)
        return troupe_to_dict(troupe)


# ---------------------------------------------------------------------------
# Field matchers
# ---------------------------------------------------------------------------
def set_field_matchers(engine: Engine, troupe_id: str, matchers: Sequence[Mapping[str, Any]]) -> dict:
    """Replace the troupe's matcher list.  Takes effect on the next sync."""
    with get_session(engine) as session:
        troupe = claim_unlocked(session, troupe_id)
        properties = troupe.member_property_types or {}
        cleaned = []
        for raw in matchers:
            condition = raw.get("match_condition", "contains")
            filters = list(raw.get("filters") or [])
            expression = str(raw.get("field_expression") or "")
            target = raw.get("member_property")
            if condition not in MATCH_CONDITIONS:
                raise ClientError(f"Unknown match condition: {condition!r}")
            if not set(filters) <= MATCH_FILTERS:
                raise ClientError(f"Unknown matcher filters: {sorted(set(filters) - MATCH_FILTERS)}")
            if not expression:
                raise ClientError("Matcher field expression is required")
            if target not in properties:
                raise ClientError(f"Unknown member property: {target!r}")
            try:
                priority = int(raw.get("priority", 0))
            except (TypeError, ValueError) as exc:
                raise ClientError(f"Invalid matcher priority: {raw.get('priority')!r}") from exc
            cleaned.append({
                "id": raw.get("id") or new_id(),
                "match_condition": condition,
                "field_expression": expression,
                "member_property": target,
                "filters": filters,
                "priority": priority,
            })

        modifications = {
            "modify_operations_left": -1,
            "field_matchers_left": len(troupe.field_matchers or []) - len(cleaned),
        }
        require_within_limits(session, troupe_id, modifications)
        troupe.field_matchers = cleaned
        session.flush()
        increment_troupe_limits(session, troupe_id, modifications)
        return troupe_to_dict(troupe)
