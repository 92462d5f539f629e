"""Geofence management for a tracking group."""

from __future__ import annotations

import structlog
from sqlalchemy import delete, func, select

from modules.tracking.domain import as_uuid, utcnow
from shared.models.geofence import Geofence, TrackerGeofence
from shared.models.tracker import Tracker

logger = structlog.get_logger()

FENCE_TYPES = ("circle", "polygon")


def _points(points) -> list[dict] | None:
    if points is None:
        return None
    normalised = []
    for p in points:
        if hasattr(p, "model_dump"):
            p = p.model_dump()
        normalised.append({"lat": float(p["lat"]), "lng": float(p["lng"])})
    return normalised


def validate_geometry(
    fence_type: str,
    center_lat: float | None,
    center_lng: float | None,
    radius_meters: float | None,
    polygon_points: list | None,
) -> None:
    """Raise ValueError unless the geometry matches the fence type."""
    if fence_type not in FENCE_TYPES:
        raise ValueError(f"fence_type must be one of {', '.join(FENCE_TYPES)}")
    if fence_type == "circle":
        if center_lat is None or center_lng is None:
            raise ValueError("circle geofence needs center_lat and center_lng")
        if not -90 <= center_lat <= 90 or not -180 <= center_lng <= 180:
            raise ValueError("circle center out of range")
        if radius_meters is None or radius_meters <= 0:
            raise ValueError("circle geofence needs a positive radius_meters")
    elif not polygon_points or len(polygon_points) < 3:
        raise ValueError("polygon geofence needs at least 3 points")


def geofence_to_dict(fence: Geofence, trackers_count: int | None = None) -> dict:
    data = {
        "id": str(fence.id),
        "group_id": str(fence.group_id),
        "name": fence.name,
        "description": fence.description,
        "fence_type": fence.fence_type,
        "center_lat": fence.center_lat,
        "center_lng": fence.center_lng,
        "radius_meters": fence.radius_meters,
        "polygon_points": fence.polygon_points,
        "alert_on_enter": fence.alert_on_enter,
        "alert_on_exit": fence.alert_on_exit,
        "is_active": fence.is_active,
    }
    if trackers_count is not None:
        data["trackers_count"] = trackers_count
    return data


class GeofenceTools:
    """Create, change and assign geofences owned by a tracking group."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def list_geofences(self, group_id: str) -> dict:
        """Geofences of a group with the number of trackers assigned to each."""
        gid = as_uuid(group_id)
        counts = (
            select(TrackerGeofence.geofence_id, func.count(TrackerGeofence.id).label("n"))
            .group_by(TrackerGeofence.geofence_id)
            .subquery()
        )
        async with self.session_factory() as session:
            result = await session.execute(
                select(Geofence, counts.c.n)
                .outerjoin(counts, counts.c.geofence_id == Geofence.id)
                .where(Geofence.group_id == gid)
                .order_by(Geofence.created_at.desc())
            )
            rows = result.all()
        return {"geofences": [geofence_to_dict(fence, n or 0) for fence, n in rows]}

    async def create_geofence(
        self,
        group_id: str,
        name: str,
        fence_type: str,
        description: str | None = None,
        center_lat: float | None = None,
        center_lng: float | None = None,
        radius_meters: float | None = None,
        polygon_points: list | None = None,
        alert_on_enter: bool = False,
        alert_on_exit: bool = True,
    ) -> dict:
        points = _points(polygon_points)
        validate_geometry(fence_type, center_lat, center_lng, radius_meters, points)
        now = utcnow()
        fence = Geofence(
            group_id=as_uuid(group_id),
            name=name,
            description=description,
            fence_type=fence_type,
            center_lat=center_lat if fence_type == "circle" else None,
            center_lng=center_lng if fence_type == "circle" else None,
            radius_meters=radius_meters if fence_type == "circle" else None,
            polygon_points=points if fence_type == "polygon" else None,
            alert_on_enter=alert_on_enter,
            alert_on_exit=alert_on_exit,
            is_active=True,
            created_at=now,
            updated_at=now,
        )
        async with self.session_factory() as session:
            session.add(fence)
            await session.commit()
        logger.info("geofence_created", geofence_id=str(fence.id), group_id=str(group_id))
        return geofence_to_dict(fence)

    async def _get(self, session, geofence_id: str) -> Geofence | None:
        result = await session.execute(select(Geofence).where(Geofence.id == as_uuid(geofence_id)))
        return result.scalar_one_or_none()

    async def update_geofence(self, geofence_id: str, **changes) -> dict:
        changes = {k: v for k, v in changes.items() if v is not None}
        if "polygon_points" in changes:
            changes["polygon_points"] = _points(changes["polygon_points"])

        async with self.session_factory() as session:
            fence = await self._get(session, geofence_id)
            if fence is None:
                return {"error": f"Geofence {geofence_id} not found"}

            merged = {
                "center_lat": fence.center_lat,
                "center_lng": fence.center_lng,
                "radius_meters": fence.radius_meters,
                "polygon_points": fence.polygon_points,
            }
            merged.update({k: v for k, v in changes.items() if k in merged})
            validate_geometry(fence.fence_type, **merged)

            for key, value in changes.items():
                setattr(fence, key, value)
            fence.updated_at = utcnow()
            await session.commit()
        return geofence_to_dict(fence)

    async def set_active(self, geofence_id: str, is_active: bool) -> dict:
        return await self.update_geofence(geofence_id, is_active=is_active)

    async def delete_geofence(self, geofence_id: str) -> dict:
        async with self.session_factory() as session:
            fence = await self._get(session, geofence_id)
            if fence is None:
                return {"error": f"Geofence {geofence_id} not found"}
            await session.execute(
                delete(TrackerGeofence).where(TrackerGeofence.geofence_id == fence.id)
            )
            await session.delete(fence)
            await session.commit()
        logger.info("geofence_deleted", geofence_id=str(geofence_id))
        return {"success": True, "geofence_id": str(geofence_id)}

    async def assign_tracker(self, geofence_id: str, tracker_id: str) -> dict:
        """Assign a tracker. Assigning twice is a no-op."""
        gid = as_uuid(geofence_id)
        tid = as_uuid(tracker_id)
        async with self.session_factory() as session:
            fence = await self._get(session, geofence_id)
            if fence is None:
                return {"error": f"Geofence {geofence_id} not found"}
            result = await session.execute(select(Tracker).where(Tracker.id == tid))
            tracker = result.scalar_one_or_none()
            if tracker is None or tracker.group_id != fence.group_id:
                return {"error": f"Tracker {tracker_id} not found in this group"}

            result = await session.execute(
                select(TrackerGeofence).where(
                    TrackerGeofence.geofence_id == gid,
                    TrackerGeofence.tracker_id == tid,
                )
            )
            if result.scalar_one_or_none() is not None:
                return {"success": True, "already_assigned": True}

            session.add(TrackerGeofence(geofence_id=gid, tracker_id=tid))
            await session.commit()
        return {"success": True, "already_assigned": False}

    async def unassign_tracker(self, geofence_id: str, tracker_id: str) -> dict:
        async with self.session_factory() as session:
            result = await session.execute(
                delete(TrackerGeofence).where(
                    TrackerGeofence.geofence_id == as_uuid(geofence_id),
                    TrackerGeofence.tracker_id == as_uuid(tracker_id),
                )
            )
            await session.commit()
        return {"success": True, "removed": result.rowcount or 0}
