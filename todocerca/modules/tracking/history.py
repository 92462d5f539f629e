"""Hardware tracker history: day-range queries and trip statistics."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timezone

from sqlalchemy import select

from modules.tracking.domain import as_uuid
from modules.tracking.geo import haversine_m
from shared.models.tracker import HistoryPoint


@dataclass(frozen=True)
class HistoryStats:
    total_distance_km: float
    max_speed: float
    avg_speed: float
    total_time_hours: float
    start_time: datetime | None
    end_time: datetime | None
    points_count: int

    def to_dict(self) -> dict:
        return {
            "total_distance_km": round(self.total_distance_km, 3),
            "max_speed": self.max_speed,
            "avg_speed": round(self.avg_speed, 2),
            "total_time_hours": round(self.total_time_hours, 3),
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "points_count": self.points_count,
        }


def history_stats(points) -> HistoryStats | None:
    """Stats over points ordered by timestamp. None for an empty history.

    Points need ``latitude``, ``longitude``, ``speed`` and ``timestamp``.
    """
    points = list(points)
    if not points:
        return None

    distance_m = 0.0
    for prev, cur in zip(points, points[1:]):
        distance_m += haversine_m(prev.latitude, prev.longitude, cur.latitude, cur.longitude)

    speeds = [p.speed for p in points if p.speed is not None]
    first, last = points[0], points[-1]
    return HistoryStats(
        total_distance_km=distance_m / 1000.0,
        max_speed=max(speeds) if speeds else 0.0,
        avg_speed=sum(speeds) / len(speeds) if speeds else 0.0,
        total_time_hours=(last.timestamp - first.timestamp).total_seconds() / 3600.0,
        start_time=first.timestamp,
        end_time=last.timestamp,
        points_count=len(points),
    )


def day_bounds(start: date, end: date) -> tuple[datetime, datetime]:
    """Expand a date range to whole UTC days."""
    return (
        datetime.combine(start, time.min, tzinfo=timezone.utc),
        datetime.combine(end, time.max, tzinfo=timezone.utc),
    )


def point_to_dict(point: HistoryPoint) -> dict:
    return {
        "latitude": point.latitude,
        "longitude": point.longitude,
        "speed": point.speed,
        "altitude": point.altitude,
        "course": point.course,
        "ignition": point.ignition,
        "odometer": point.odometer,
        "fuel_level": point.fuel_level,
        "external_voltage": point.external_voltage,
        "gsm_signal": point.gsm_signal,
        "satellites": point.satellites,
        "timestamp": point.timestamp.isoformat(),
    }


async def fetch_history(session_factory, tracker_id: str, start: date, end: date) -> dict:
    """Points for whole days ``start``..``end`` (inclusive) plus their stats."""
    if end < start:
        raise ValueError("end date is before start date")
    lower, upper = day_bounds(start, end)
    async with session_factory() as session:
        result = await session.execute(
            select(HistoryPoint)
            .where(
                HistoryPoint.tracker_id == as_uuid(tracker_id),
                HistoryPoint.timestamp >= lower,
                HistoryPoint.timestamp <= upper,
            )
            .order_by(HistoryPoint.timestamp.asc())
        )
        points = result.scalars().all()

    stats = history_stats(points)
    return {
        "tracker_id": str(tracker_id),
        "points": [point_to_dict(p) for p in points],
        "stats": stats.to_dict() if stats else None,
    }
