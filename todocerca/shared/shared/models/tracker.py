"""GPS hardware tracker models: devices, alert settings, position history."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from shared.models.base import Base


class Tracker(Base):
    __tablename__ = "gps_trackers"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    group_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("tracking_groups.id"))
    imei: Mapped[str] = mapped_column(String, unique=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    # Last reported telemetry
    battery_level: Mapped[int | None] = mapped_column(Integer, default=None)
    ignition: Mapped[bool | None] = mapped_column(Boolean, default=None)
    external_voltage: Mapped[float | None] = mapped_column(Float, default=None)
    odometer: Mapped[float | None] = mapped_column(Float, default=None)
    gsm_signal: Mapped[float | None] = mapped_column(Float, default=None)
    satellites: Mapped[int | None] = mapped_column(Integer, default=None)
    last_seen: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=None
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )


class TrackerSettings(Base):
    __tablename__ = "gps_tracker_settings"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    tracker_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("gps_trackers.id"), unique=True
    )
    speed_limit_kmh: Mapped[float | None] = mapped_column(Float, default=None)
    speed_alert_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    low_battery_threshold: Mapped[float | None] = mapped_column(Float, default=None)
    battery_alert_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    power_cut_alert_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    ignition_alert_enabled: Mapped[bool] = mapped_column(Boolean, default=False)


class HistoryPoint(Base):
    """Append-only hardware position log. Rows are never updated."""

    __tablename__ = "gps_tracker_history"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    tracker_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("gps_trackers.id"))
    latitude: Mapped[float] = mapped_column(Float, nullable=False)
    longitude: Mapped[float] = mapped_column(Float, nullable=False)
    speed: Mapped[float | None] = mapped_column(Float, default=None)
    altitude: Mapped[float | None] = mapped_column(Float, default=None)
    course: Mapped[float | None] = mapped_column(Float, default=None)
    ignition: Mapped[bool | None] = mapped_column(Boolean, default=None)
    odometer: Mapped[float | None] = mapped_column(Float, default=None)
    fuel_level: Mapped[float | None] = mapped_column(Float, default=None)
    external_voltage: Mapped[float | None] = mapped_column(Float, default=None)
    gsm_signal: Mapped[float | None] = mapped_column(Float, default=None)
    satellites: Mapped[int | None] = mapped_column(Integer, default=None)
    hdop: Mapped[float | None] = mapped_column(Float, default=None)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        Index("ix_gps_tracker_history_tracker_ts", "tracker_id", "timestamp"),
    )
