"""Initial troupe sync schema

Revision ID: 0a1c5e7b9d21
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

# revision identifiers, used by Alembic.
revision = "0a1c5e7b9d21"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "troupes",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("origin_event_id", sa.String(36), nullable=True),
        sa.Column("log_sheet_uri", sa.String(500), nullable=True),
        sa.Column("sync_lock", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("sync_locked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_updated", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("member_property_types", JSONB(), nullable=False, server_default="{}"),
        sa.Column("point_types", JSONB(), nullable=False, server_default="{}"),
        sa.Column("field_matchers", JSONB(), nullable=False, server_default="[]"),
    )

    op.create_table(
        "event_types",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "troupe_id", sa.String(36),
            sa.ForeignKey("troupes.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("value", sa.Float(), server_default="0"),
        sa.Column("source_folder_uris", JSONB(), nullable=False, server_default="[]"),
        sa.Column("last_updated", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_event_types_troupe", "event_types", ["troupe_id"])

    op.create_table(
        "events",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "troupe_id", sa.String(36),
            sa.ForeignKey("troupes.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("source", sa.String(10), server_default=""),
        sa.Column("source_uri", sa.String(500), nullable=False),
        sa.Column(
            "event_type_id", sa.String(36),
            sa.ForeignKey("event_types.id", ondelete="SET NULL"), nullable=True,
        ),
        sa.Column("value", sa.Float(), server_default="0"),
        sa.Column("discovered", sa.Boolean(), server_default="false"),
        sa.Column("field_to_property_map", JSONB(), nullable=False, server_default="{}"),
        sa.Column("last_updated", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("troupe_id", "source_uri", name="uq_events_troupe_source"),
    )
    op.create_index("ix_events_troupe_type", "events", ["troupe_id", "event_type_id"])

    op.create_table(
        "members",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "troupe_id", sa.String(36),
            sa.ForeignKey("troupes.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("member_key", sa.String(200), nullable=False),
        sa.Column("properties", JSONB(), nullable=False, server_default="{}"),
        sa.Column("last_updated", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("troupe_id", "member_key", name="uq_members_troupe_key"),
    )

    op.create_table(
        "member_points",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "troupe_id", sa.String(36),
            sa.ForeignKey("troupes.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column(
            "member_id", sa.String(36),
            sa.ForeignKey("members.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("point_type", sa.String(100), nullable=False),
        sa.Column("total", sa.Float(), server_default="0"),
        sa.UniqueConstraint("member_id", "point_type", name="uq_member_points_type"),
    )
    op.create_index("ix_member_points_troupe", "member_points", ["troupe_id", "point_type"])

    op.create_table(
        "events_attended_buckets",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "troupe_id", sa.String(36),
            sa.ForeignKey("troupes.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column(
            "member_id", sa.String(36),
            sa.ForeignKey("members.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("page", sa.Integer(), nullable=False),
        sa.Column("events", JSONB(), nullable=False, server_default="{}"),
        sa.UniqueConstraint("member_id", "page", name="uq_buckets_member_page"),
    )
    op.create_index("ix_buckets_troupe", "events_attended_buckets", ["troupe_id"])

    op.create_table(
        "troupe_limits",
        sa.Column(
            "troupe_id", sa.String(36),
            sa.ForeignKey("troupes.id", ondelete="CASCADE"), primary_key=True,
        ),
        sa.Column("has_invite_code", sa.Boolean(), server_default="false"),
        sa.Column("get_operations_left", sa.Integer(), server_default="0"),
        sa.Column("modify_operations_left", sa.Integer(), server_default="0"),
        sa.Column("manual_syncs_left", sa.Integer(), server_default="0"),
        sa.Column("member_property_types_left", sa.Integer(), server_default="0"),
        sa.Column("point_types_left", sa.Integer(), server_default="0"),
        sa.Column("field_matchers_left", sa.Integer(), server_default="0"),
        sa.Column("event_types_left", sa.Integer(), server_default="0"),
        sa.Column("source_folder_uris_left", sa.Integer(), server_default="0"),
        sa.Column("events_left", sa.Integer(), server_default="0"),
        sa.Column("members_left", sa.Integer(), server_default="0"),
    )

    op.create_table(
        "global_limits",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("uninvited_users_left", sa.Integer(), server_default="0"),
    )


def downgrade() -> None:
    op.drop_table("global_limits")
    op.drop_table("troupe_limits")
    op.drop_index("ix_buckets_troupe", table_name="events_attended_buckets")
    op.drop_table("events_attended_buckets")
    op.drop_index("ix_member_points_troupe", table_name="member_points")
    op.drop_table("member_points")
    op.drop_table("members")
    op.drop_index("ix_events_troupe_type", table_name="events")
    op.drop_table("events")
    op.drop_index("ix_event_types_troupe", table_name="event_types")
    op.drop_table("event_types")
    op.drop_table("troupes")
