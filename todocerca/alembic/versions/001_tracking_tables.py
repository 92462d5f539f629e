"""Tracking tables: profiles, locations, groups, trackers, geofences, alerts.

Revision ID: 001
Revises: None
Create Date: 2026-10-19
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Profiles (role + authoritative presence)
    op.create_table(
        "profiles",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("subject_id", sa.Uuid(), nullable=False, unique=True),
        sa.Column("nickname", sa.String(), nullable=True),
        sa.Column("role", sa.String(), nullable=False, server_default="client"),
        sa.Column("state", sa.String(), nullable=False, server_default="available"),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )

    # Tracking groups
    op.create_table(
        "tracking_groups",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("owner_id", sa.Uuid(), nullable=False),
        sa.Column("subscription_status", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "tracking_group_members",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("group_id", sa.Uuid(), sa.ForeignKey("tracking_groups.id"), nullable=False),
        sa.Column("subject_id", sa.Uuid(), nullable=False),
        sa.Column("nickname", sa.String(), nullable=False),
        sa.Column("is_owner", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("group_id", "subject_id", name="uq_group_member"),
    )

    # Latest positions (one row per subject+group)
    op.create_table(
        "subject_locations",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("subject_id", sa.Uuid(), nullable=False),
        sa.Column("group_id", sa.Uuid(), sa.ForeignKey("tracking_groups.id"), nullable=True),
        sa.Column("latitude", sa.Float(), nullable=False),
        sa.Column("longitude", sa.Float(), nullable=False),
        sa.Column("accuracy_m", sa.Float(), nullable=True),
        sa.Column("speed", sa.Float(), nullable=True),
        sa.Column("course", sa.Float(), nullable=True),
        sa.Column("recorded_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("subject_id", "group_id", name="uq_subject_location"),
    )
    op.create_index("ix_subject_locations_subject_id", "subject_locations", ["subject_id"])
    # Ungrouped rows have group_id NULL, which the unique constraint does not cover
    op.create_index(
        "uq_subject_location_ungrouped",
        "subject_locations",
        ["subject_id"],
        unique=True,
        postgresql_where=sa.text("group_id IS NULL"),
    )

    op.create_table(
        "provider_locations",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("subject_id", sa.Uuid(), nullable=False, unique=True),
        sa.Column("latitude", sa.Float(), nullable=False),
        sa.Column("longitude", sa.Float(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )

    # Hardware trackers
    op.create_table(
        "gps_trackers",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("group_id", sa.Uuid(), sa.ForeignKey("tracking_groups.id"), nullable=False),
        sa.Column("imei", sa.String(), nullable=False, unique=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("battery_level", sa.Integer(), nullable=True),
        sa.Column("ignition", sa.Boolean(), nullable=True),
        sa.Column("external_voltage", sa.Float(), nullable=True),
        sa.Column("odometer", sa.Float(), nullable=True),
        sa.Column("gsm_signal", sa.Float(), nullable=True),
        sa.Column("satellites", sa.Integer(), nullable=True),
        sa.Column("last_seen", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "gps_tracker_settings",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "tracker_id", sa.Uuid(), sa.ForeignKey("gps_trackers.id"), nullable=False, unique=True
        ),
        sa.Column("speed_limit_kmh", sa.Float(), nullable=True),
        sa.Column("speed_alert_enabled", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("low_battery_threshold", sa.Float(), nullable=True),
        sa.Column("battery_alert_enabled", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("power_cut_alert_enabled", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("ignition_alert_enabled", sa.Boolean(), nullable=False, server_default="false"),
    )

    op.create_table(
        "gps_tracker_history",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("tracker_id", sa.Uuid(), sa.ForeignKey("gps_trackers.id"), nullable=False),
        sa.Column("latitude", sa.Float(), nullable=False),
        sa.Column("longitude", sa.Float(), nullable=False),
        sa.Column("speed", sa.Float(), nullable=True),
        sa.Column("altitude", sa.Float(), nullable=True),
        sa.Column("course", sa.Float(), nullable=True),
        sa.Column("ignition", sa.Boolean(), nullable=True),
        sa.Column("odometer", sa.Float(), nullable=True),
        sa.Column("fuel_level", sa.Float(), nullable=True),
        sa.Column("external_voltage", sa.Float(), nullable=True),
        sa.Column("gsm_signal", sa.Float(), nullable=True),
        sa.Column("satellites", sa.Integer(), nullable=True),
        sa.Column("hdop", sa.Float(), nullable=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_gps_tracker_history_tracker_ts", "gps_tracker_history", ["tracker_id", "timestamp"]
    )

    # Geofences
    op.create_table(
        "gps_geofences",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("group_id", sa.Uuid(), sa.ForeignKey("tracking_groups.id"), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.String(), nullable=True),
        sa.Column("fence_type", sa.String(), nullable=False),
        sa.Column("center_lat", sa.Float(), nullable=True),
        sa.Column("center_lng", sa.Float(), nullable=True),
        sa.Column("radius_meters", sa.Float(), nullable=True),
        sa.Column("polygon_points", sa.JSON(), nullable=True),
        sa.Column("alert_on_enter", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("alert_on_exit", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "gps_tracker_geofences",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("tracker_id", sa.Uuid(), sa.ForeignKey("gps_trackers.id"), nullable=False),
        sa.Column(
            "geofence_id",
            sa.Uuid(),
            sa.ForeignKey("gps_geofences.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("is_inside", sa.Boolean(), nullable=True),
        sa.Column("last_checked_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("tracker_id", "geofence_id", name="uq_tracker_geofence"),
    )

    # Alerts (append-only)
    op.create_table(
        "gps_alerts",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("subject_device_id", sa.Uuid(), nullable=False),
        sa.Column("group_id", sa.Uuid(), sa.ForeignKey("tracking_groups.id"), nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("message", sa.String(), nullable=True),
        sa.Column("latitude", sa.Float(), nullable=True),
        sa.Column("longitude", sa.Float(), nullable=True),
        sa.Column("speed", sa.Float(), nullable=True),
        sa.Column(
            "geofence_id",
            sa.Uuid(),
            sa.ForeignKey("gps_geofences.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("is_resolved", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_by", sa.Uuid(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_gps_alerts_group_created", "gps_alerts", ["group_id", "created_at"])


def downgrade() -> None:
    op.drop_index("ix_gps_alerts_group_created", table_name="gps_alerts")
    op.drop_table("gps_alerts")
    op.drop_table("gps_tracker_geofences")
    op.drop_table("gps_geofences")
    op.drop_index("ix_gps_tracker_history_tracker_ts", table_name="gps_tracker_history")
    op.drop_table("gps_tracker_history")
    op.drop_table("gps_tracker_settings")
    op.drop_table("gps_trackers")
    op.drop_table("provider_locations")
    op.drop_index("uq_subject_location_ungrouped", table_name="subject_locations")
    op.drop_index("ix_subject_locations_subject_id", table_name="subject_locations")
    op.drop_table("subject_locations")
    op.drop_table("tracking_group_members")
    op.drop_table("tracking_groups")
    op.drop_table("profiles")
