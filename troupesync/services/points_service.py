"""
troupesync.services.points_service — Point Totals Persistence
==============================================================

Point totals live in ``member_points`` (one row per member per point type)
so event edits can be applied as SQL-level bulk deltas::

    UPDATE member_points SET total = total + :delta
     WHERE member_id IN (:attendees) AND point_type IN (:covering)

One statement is issued per distinct delta value.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Iterable, Mapping

from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session

from troupesync.database.models import Member, MemberPoints
from troupesync.engine.points import PointRange, tally
from troupesync.services.bucket_service import member_attendance

logger = logging.getLogger(__name__)


def _ensure_rows(
    session: Session, troupe_id: str, member_ids: list[str], names: Iterable[str]
) -> None:
    names = list(names)
    present = set(session.execute(
        select(MemberPoints.member_id, MemberPoints.point_type).where(
            MemberPoints.member_id.in_(member_ids), MemberPoints.point_type.in_(names)
        )
    ).tuples())
    for member_id in member_ids:
        for name in names:
            if (member_id, name) not in present:
                session.add(MemberPoints(
                    troupe_id=troupe_id, member_id=member_id, point_type=name, total=0.0
                ))
    session.flush()


def apply_point_deltas(
    session: Session,
    troupe_id: str,
    member_ids: Iterable[str],
    deltas: Mapping[str, float],
) -> int:
    """Add ``deltas[point_type]`` to each listed member's total.

    Returns the number of rows updated.
    """
    member_ids = sorted(set(member_ids))
    if not member_ids or not deltas:
        return 0
    _ensure_rows(session, troupe_id, member_ids, deltas)

    by_delta: dict[float, list[str]] = defaultdict(list)
    for name, delta in deltas.items():
        by_delta[delta].append(name)

    updated = 0
    for delta, names in by_delta.items():
        result = session.execute(
            update(MemberPoints)
            .where(
                MemberPoints.troupe_id == troupe_id,
                MemberPoints.member_id.in_(member_ids),
                MemberPoints.point_type.in_(names),
            )
            .values(total=MemberPoints.total + delta)
            .execution_options(synchronize_session=False)
        )
        updated += result.rowcount
    for obj in list(session.identity_map.values()):
        if isinstance(obj, MemberPoints):
            session.expire(obj)
    logger.debug("Point deltas %s applied to %d member(s)", dict(deltas), len(member_ids))
    return updated


def write_member_points(
    session: Session, troupe_id: str, member_id: str, totals: Mapping[str, float]
) -> None:
    """Make the member's rows equal *totals* exactly (extra rows deleted)."""
    rows = {
        row.point_type: row
        for row in session.scalars(
            select(MemberPoints).where(MemberPoints.member_id == member_id)
        )
    }
    for name, total in totals.items():
        row = rows.pop(name, None)
        if row is None:
            session.add(MemberPoints(
                troupe_id=troupe_id, member_id=member_id, point_type=name, total=total
            ))
        elif row.total != total:
            row.total = total
    for row in rows.values():
        session.delete(row)


def member_points(session: Session, member_id: str) -> dict[str, float]:
    return {
        row.point_type: row.total
        for row in session.scalars(
            select(MemberPoints).where(MemberPoints.member_id == member_id)
        )
    }


def recompute_point_type(session: Session, troupe_id: str, point_range: PointRange) -> int:
    """Rebuild one point type for every member from their buckets."""
    member_ids = session.scalars(select(Member.id).where(Member.troupe_id == troupe_id)).all()
    for member_id in member_ids:
        total = tally(member_attendance(session, member_id), [point_range])[point_range.name]
        row = session.scalar(
            select(MemberPoints).where(
                MemberPoints.member_id == member_id,
                MemberPoints.point_type == point_range.name,
            )
        )
        if row is None:
            session.add(MemberPoints(
                troupe_id=troupe_id, member_id=member_id,
                point_type=point_range.name, total=total,
            ))
        else:
            row.total = total
    logger.info("Point type %r recomputed for %d member(s)", point_range.name, len(member_ids))
    return len(member_ids)


def drop_point_type(session: Session, troupe_id: str, name: str) -> None:
    session.execute(
        delete(MemberPoints).where(
            MemberPoints.troupe_id == troupe_id, MemberPoints.point_type == name
        )
    )


def delete_member_points(session: Session, member_ids: Iterable[str]) -> None:
    ids = list(member_ids)
    if ids:
        session.execute(delete(MemberPoints).where(MemberPoints.member_id.in_(ids)))
