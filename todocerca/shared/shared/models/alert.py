"""Alert model: append-only audit trail; rows are resolved, never deleted."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from shared.models.base import Base


class Alert(Base):
    __tablename__ = "gps_alerts"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    subject_device_id: Mapped[uuid.UUID] = mapped_column()
    group_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("tracking_groups.id"))

    # geofence_enter | geofence_exit | speed_limit | low_battery | power_cut
    # | ignition_on | ignition_off
    kind: Mapped[str] = mapped_column(String, nullable=False)
    title: Mapped[str] = mapped_column(String, nullable=False)
    message: Mapped[str | None] = mapped_column(String, default=None)

    latitude: Mapped[float | None] = mapped_column(Float, default=None)
    longitude: Mapped[float | None] = mapped_column(Float, default=None)
    speed: Mapped[float | None] = mapped_column(Float, default=None)
    geofence_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("gps_geofences.id", ondelete="SET NULL"), default=None
    )

    is_read: Mapped[bool] = mapped_column(Boolean, default=False)
    is_resolved: Mapped[bool] = mapped_column(Boolean, default=False)
    resolved_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=None
    )
    resolved_by: Mapped[uuid.UUID | None] = mapped_column(default=None)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        Index("ix_gps_alerts_group_created", "group_id", "created_at"),
    )
