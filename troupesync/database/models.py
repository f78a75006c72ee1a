"""
troupesync.database.models — SQLAlchemy 2.0 Data Models
========================================================

Tables:
- troupes                  — Tenant configuration + advisory sync lock
- event_types              — Point value + Drive folders events are discovered from
- events                   — One attendance-taking occasion and its field map
- members                  — One tracked individual per identifying value
- member_points            — Accumulated points per member per point type
- events_attended_buckets  — Fixed-capacity pages of attended events
- troupe_limits            — Per-troupe remaining-operation counters
- global_limits            — Single-row service-wide counters

JSON columns use PostgreSQL ``JSONB``; values stored in them are plain
JSON (dates as ISO-8601 strings).  Always assign a fresh dict/list to a
JSON attribute instead of mutating it in place.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def new_id() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all troupesync ORM models."""


# ---------------------------------------------------------------------------
# Troupes
# ---------------------------------------------------------------------------
class Troupe(Base):
    __tablename__ = "troupes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    origin_event_id: Mapped[str | None] = mapped_column(String(36), default=None)
    log_sheet_uri: Mapped[str | None] = mapped_column(String(500), default=None)
    sync_lock: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    sync_locked_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=None
    )
    last_updated: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    # name → "string!" | "number?" | ...
    member_property_types: Mapped[dict] = mapped_column(JSONB, default=dict)
    # name → {"start_date": iso, "end_date": iso}
    point_types: Mapped[dict] = mapped_column(JSONB, default=dict)
    # [{"id", "match_condition", "field_expression", "member_property", "filters", "priority"}]
    field_matchers: Mapped[list] = mapped_column(JSONB, default=list)

    event_types: Mapped[list[EventType]] = relationship(
        back_populates="troupe", cascade="all, delete-orphan"
    )
    events: Mapped[list[Event]] = relationship(
        back_populates="troupe", cascade="all, delete-orphan"
    )
    members: Mapped[list[Member]] = relationship(
        back_populates="troupe", cascade="all, delete-orphan"
    )
    limits: Mapped[TroupeLimit | None] = relationship(
        back_populates="troupe", uselist=False, cascade="all, delete-orphan"
    )


# ---------------------------------------------------------------------------
# Event types
# ---------------------------------------------------------------------------
class EventType(Base):
    __tablename__ = "event_types"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    troupe_id: Mapped[str] = mapped_column(
        ForeignKey("troupes.id", ondelete="CASCADE"), nullable=False
    )
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    value: Mapped[float] = mapped_column(Float, default=0.0)
    source_folder_uris: Mapped[list] = mapped_column(JSONB, default=list)
    last_updated: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    troupe: Mapped[Troupe] = relationship(back_populates="event_types")

    __table_args__ = (
        Index("ix_event_types_troupe", "troupe_id"),
    )


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------
class Event(Base):
    __tablename__ = "events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    troupe_id: Mapped[str] = mapped_column(
        ForeignKey("troupes.id", ondelete="CASCADE"), nullable=False
    )
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    # "sheets" | "forms" | ""
    source: Mapped[str] = mapped_column(String(10), default="")
    source_uri: Mapped[str] = mapped_column(String(500), nullable=False)
    event_type_id: Mapped[str | None] = mapped_column(
        ForeignKey("event_types.id", ondelete="SET NULL"), default=None
    )
    value: Mapped[float] = mapped_column(Float, default=0.0)
    # Created by folder discovery (and therefore removable by it)
    discovered: Mapped[bool] = mapped_column(Boolean, default=False)
    # field id → {"field", "property", "matcher_id", "override"}
    field_to_property_map: Mapped[dict] = mapped_column(JSONB, default=dict)
    last_updated: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    troupe: Mapped[Troupe] = relationship(back_populates="events")

    __table_args__ = (
        UniqueConstraint("troupe_id", "source_uri", name="uq_events_troupe_source"),
        Index("ix_events_troupe_type", "troupe_id", "event_type_id"),
    )


# ---------------------------------------------------------------------------
# Members
# ---------------------------------------------------------------------------
class Member(Base):
    __tablename__ = "members"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    troupe_id: Mapped[str] = mapped_column(
        ForeignKey("troupes.id", ondelete="CASCADE"), nullable=False
    )
    # Mirror of properties["Member ID"]["value"], for lookups
    member_key: Mapped[str] = mapped_column(String(200), nullable=False)
    # name → {"value": ..., "override": bool}
    properties: Mapped[dict] = mapped_column(JSONB, default=dict)
    last_updated: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    troupe: Mapped[Troupe] = relationship(back_populates="members")
    points: Mapped[list[MemberPoints]] = relationship(
        back_populates="member", cascade="all, delete-orphan"
    )
    buckets: Mapped[list[EventsAttendedBucket]] = relationship(
        back_populates="member", cascade="all, delete-orphan"
    )

    __table_args__ = (
        UniqueConstraint("troupe_id", "member_key", name="uq_members_troupe_key"),
    )


class MemberPoints(Base):
    __tablename__ = "member_points"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    troupe_id: Mapped[str] = mapped_column(
        ForeignKey("troupes.id", ondelete="CASCADE"), nullable=False
    )
    member_id: Mapped[str] = mapped_column(
        ForeignKey("members.id", ondelete="CASCADE"), nullable=False
    )
    point_type: Mapped[str] = mapped_column(String(100), nullable=False)
    total: Mapped[float] = mapped_column(Float, default=0.0)

    member: Mapped[Member] = relationship(back_populates="points")

    __table_args__ = (
        UniqueConstraint("member_id", "point_type", name="uq_member_points_type"),
        Index("ix_member_points_troupe", "troupe_id", "point_type"),
    )


# ---------------------------------------------------------------------------
# Attendance pages
# ---------------------------------------------------------------------------
class EventsAttendedBucket(Base):
    __tablename__ = "events_attended_buckets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    troupe_id: Mapped[str] = mapped_column(
        ForeignKey("troupes.id", ondelete="CASCADE"), nullable=False
    )
    member_id: Mapped[str] = mapped_column(
        ForeignKey("members.id", ondelete="CASCADE"), nullable=False
    )
    page: Mapped[int] = mapped_column(Integer, nullable=False)
    # event id → {"type_id": str | None, "value": float, "start_date": iso}
    events: Mapped[dict] = mapped_column(JSONB, default=dict)

    member: Mapped[Member] = relationship(back_populates="buckets")

    __table_args__ = (
        UniqueConstraint("member_id", "page", name="uq_buckets_member_page"),
        Index("ix_buckets_troupe", "troupe_id"),
    )


# ---------------------------------------------------------------------------
# Quotas
# ---------------------------------------------------------------------------
class TroupeLimit(Base):
    __tablename__ = "troupe_limits"

    troupe_id: Mapped[str] = mapped_column(
        ForeignKey("troupes.id", ondelete="CASCADE"), primary_key=True
    )
    has_invite_code: Mapped[bool] = mapped_column(Boolean, default=False)
    get_operations_left: Mapped[int] = mapped_column(Integer, default=0)
    modify_operations_left: Mapped[int] = mapped_column(Integer, default=0)
    manual_syncs_left: Mapped[int] = mapped_column(Integer, default=0)
    member_property_types_left: Mapped[int] = mapped_column(Integer, default=0)
    point_types_left: Mapped[int] = mapped_column(Integer, default=0)
    field_matchers_left: Mapped[int] = mapped_column(Integer, default=0)
    event_types_left: Mapped[int] = mapped_column(Integer, default=0)
    source_folder_uris_left: Mapped[int] = mapped_column(Integer, default=0)
    events_left: Mapped[int] = mapped_column(Integer, default=0)
    members_left: Mapped[int] = mapped_column(Integer, default=0)

    troupe: Mapped[Troupe] = relationship(back_populates="limits")


class GlobalLimit(Base):
    __tablename__ = "global_limits"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, default=1)
    uninvited_users_left: Mapped[int] = mapped_column(Integer, default=0)
