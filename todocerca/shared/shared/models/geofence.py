"""Geofence models: shapes owned by a group and their tracker assignments."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, DateTime, Float, ForeignKey, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from shared.models.base import Base


class Geofence(Base):
    __tablename__ = "gps_geofences"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    group_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("tracking_groups.id"))
    name: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[str | None] = mapped_column(String, default=None)

    # "circle" | "polygon"
    fence_type: Mapped[str] = mapped_column(String, nullable=False)
    center_lat: Mapped[float | None] = mapped_column(Float, default=None)
    center_lng: Mapped[float | None] = mapped_column(Float, default=None)
    radius_meters: Mapped[float | None] = mapped_column(Float, default=None)
    # [{"lat": ..., "lng": ...}, ...] in drawing order
    polygon_points: Mapped[list | None] = mapped_column(JSON, default=None)

    alert_on_enter: Mapped[bool] = mapped_column(Boolean, default=False)
    alert_on_exit: Mapped[bool] = mapped_column(Boolean, default=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )


class TrackerGeofence(Base):
    """Many-to-many tracker ↔ geofence assignment with last containment flag."""

    __tablename__ = "gps_tracker_geofences"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    tracker_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("gps_trackers.id"))
    geofence_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("gps_geofences.id", ondelete="CASCADE")
    )
    is_inside: Mapped[bool | None] = mapped_column(Boolean, default=None)
    last_checked_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=None
    )

    __table_args__ = (
        UniqueConstraint("tracker_id", "geofence_id", name="uq_tracker_geofence"),
    )
