"""
troupesync.services.member_service — Member Mutations
======================================================

Manual property edits default to ``override=True``, which shields the value
from every later sync.  Passing ``{"value": …, "override": False}`` writes a
value that the next sync may replace.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import Engine, select
from sqlalchemy.orm import Session

from troupesync.constants import MEMBER_ID_PROPERTY
from troupesync.database.engine import get_session
from troupesync.database.models import Member
from troupesync.engine.coercion import CoercionError, coerce_value, parse_property_types
from troupesync.engine.identity import normalize_properties
from troupesync.errors import ClientError
from troupesync.services.bucket_service import delete_member_buckets, member_attendance
from troupesync.services.limit_service import (
    LimitScope,
    increment_troupe_limits,
    limit_scope,
    quota_guard,
    require_within_limits,
)
from troupesync.services.lock_service import claim_unlocked
from troupesync.services.points_service import delete_member_points, member_points

logger = logging.getLogger(__name__)

_MANUAL_BOOLEAN = ("true", "false")


def member_to_dict(session: Session, member: Member) -> dict:
    return {
        "id": member.id,
        "troupe_id": member.troupe_id,
        "member_key": member.member_key,
        "properties": dict(member.properties or {}),
        "points": member_points(session, member.id),
        "events_attended": sorted(a.event_id for a in member_attendance(session, member.id)),
    }


def _get_member(session: Session, troupe_id: str, member_id: str) -> Member:
    member = session.get(Member, member_id)
    if member is None or member.troupe_id != troupe_id:
        raise ClientError(f"Member not found: {member_id}")
    return member


def update_member(
    engine: Engine, troupe_id: str, member_id: str, properties: Mapping[str, Any]
) -> dict:
    """Set member properties by hand.

    Each value is either a raw value or ``{"value": ..., "override": bool}``;
    ``override`` defaults to True.
    """
    with quota_guard(engine, troupe_id, {"modify_operations_left": -1}) as session:
        troupe = claim_unlocked(session, troupe_id)
        member = _get_member(session, troupe_id, member_id)
        types = parse_property_types(troupe.member_property_types or {})
        result = normalize_properties(member.properties, types)

        for name, change in properties.items():
            if name not in types:
                raise ClientError(f"Unknown member property: {name}")
            if isinstance(change, Mapping):
                raw, override = change.get("value"), bool(change.get("override", True))
            else:
                raw, override = change, True
            try:
                value = coerce_value(types[name], raw, _MANUAL_BOOLEAN)
            except CoercionError as exc:
                raise ClientError(f"{name}: {exc}") from exc
            result[name] = {"value": value, "override": override}

        new_key = str(result[MEMBER_ID_PROPERTY]["value"])
        if new_key != member.member_key:
            clash = session.scalar(
                select(Member.id).where(Member.troupe_id == troupe_id, Member.member_key == new_key)
            )
            if clash is not None:
                raise ClientError(f"Another member already has {MEMBER_ID_PROPERTY} {new_key!r}")
            member.member_key = new_key

        member.properties = result
        member.last_updated = datetime.now(UTC)
        session.flush()
        logger.info("Member %s updated in troupe %s", member_id, troupe_id)
        return member_to_dict(session, member)


def _remove_member(
    session: Session, troupe_id: str, member: Member, scope: LimitScope | None
) -> None:
    modifications = {"modify_operations_left": -1, "members_left": 1}
    require_within_limits(session, troupe_id, modifications, scope)
    delete_member_points(session, [member.id])
    delete_member_buckets(session, [member.id])
    session.delete(member)
    session.flush()
    increment_troupe_limits(session, troupe_id, modifications, scope)


def delete_member(engine: Engine, troupe_id: str, member_id: str) -> None:
    with get_session(engine) as session:
        claim_unlocked(session, troupe_id)
        _remove_member(session, troupe_id, _get_member(session, troupe_id, member_id), None)
    logger.info("Member %s deleted from troupe %s", member_id, troupe_id)


def delete_members(engine: Engine, troupe_id: str, member_ids: list[str]) -> int:
    if not member_ids:
        return 0
    with get_session(engine) as session:
        claim_unlocked(session, troupe_id)
        require_within_limits(
            session, troupe_id, {"modify_operations_left": -len(member_ids)}
        )
        with limit_scope(session, troupe_id) as scope:
            for member_id in member_ids:
                _remove_member(session, troupe_id, _get_member(session, troupe_id, member_id), scope)
    logger.info("%d member(s) deleted from troupe %s", len(member_ids), troupe_id)
    return len(member_ids)
