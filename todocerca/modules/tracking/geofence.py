"""Geofence evaluation.

``evaluate`` is a pure function: it compares containment of the previous and
current position against one shape and reports at most one transition.
Remembering the previous position per (subject, shape) is the caller's job;
``GeofenceMonitor`` does that in memory for phone-tracked group members (see
``GroupGeofenceWatch``), the hardware ingest pipeline does it through the
persisted ``is_inside`` flag of each tracker assignment.
"""

from __future__ import annotations

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from modules.tracking.alerts import AlertRecorder
from modules.tracking.domain import AlertRecord, GeofenceShape, Position, Transition, as_uuid
from modules.tracking.errors import WriteError
from modules.tracking.geo import haversine_m, point_in_polygon
from shared.models.geofence import Geofence

logger = structlog.get_logger()


def is_inside(shape: GeofenceShape, lat: float, lng: float) -> bool:
    """Containment test. Malformed shapes contain nothing."""
    if shape.kind == "circle":
        if shape.center is None or not shape.radius_m:
            return False
        return haversine_m(shape.center[0], shape.center[1], lat, lng) <= shape.radius_m
    if shape.kind == "polygon":
        return point_in_polygon(lat, lng, shape.points)
    return False


def transition_between(
    shape: GeofenceShape, was_inside: bool | None, now_inside: bool
) -> Transition | None:
    """Transition for a containment change, honouring the shape's enabled alerts."""
    if not shape.is_active or was_inside is None or was_inside == now_inside:
        return None
    if now_inside and shape.alert_on_enter:
        return Transition.ENTER
    if not now_inside and shape.alert_on_exit:
        return Transition.EXIT
    return None


def evaluate(
    shape: GeofenceShape, previous: Position | None, current: Position
) -> Transition | None:
    """Enter/exit transition from ``previous`` to ``current``, or None.

    Steady containment, a missing previous position and inactive shapes never
    produce a transition.
    """
    if previous is None or not shape.is_active:
        return None
    was = is_inside(shape, previous.latitude, previous.longitude)
    now = is_inside(shape, current.latitude, current.longitude)
    return transition_between(shape, was, now)


def shape_from_row(row) -> GeofenceShape:
    """Build a ``GeofenceShape`` from a ``Geofence`` row."""
    center = None
    if row.center_lat is not None and row.center_lng is not None:
        center = (row.center_lat, row.center_lng)
    points: tuple[tuple[float, float], ...] = ()
    for p in row.polygon_points or []:
        try:
            points += ((float(p["lat"]), float(p["lng"])),)
        except (KeyError, TypeError, ValueError):
            logger.warning("geofence_point_malformed", geofence_id=str(row.id), point=p)
    return GeofenceShape(
        id=str(row.id),
        group_id=str(row.group_id),
        kind=row.fence_type,
        name=row.name,
        center=center,
        radius_m=row.radius_meters,
        points=points,
        alert_on_enter=bool(row.alert_on_enter),
        alert_on_exit=bool(row.alert_on_exit),
        is_active=bool(row.is_active),
    )


def geofence_alert(
    shape: GeofenceShape, transition: Transition, subject_device_id: str, position: Position
) -> AlertRecord:
    if transition is Transition.ENTER:
        kind = "geofence_enter"
        title = f"Entrada a geocerca: {shape.name}"
        message = f'El dispositivo entró a la zona "{shape.name}"'
    else:
        kind = "geofence_exit"
        title = f"Salida de geocerca: {shape.name}"
        message = f'El dispositivo salió de la zona "{shape.name}"'
    return AlertRecord(
        subject_device_id=str(subject_device_id),
        group_id=shape.group_id,
        kind=kind,
        title=title,
        message=message,
        latitude=position.latitude,
        longitude=position.longitude,
        speed=position.speed,
        geofence_id=shape.id,
    )


class GeofenceMonitor:
    """Tracks the previous position per (subject, shape) and emits alerts once per transition."""

    def __init__(self):
        self._previous: dict[tuple[str, str], Position] = {}

    def seed(self, subject_id: str, shape_id: str, position: Position | None) -> None:
        if position is not None:
            self._previous[(str(subject_id), str(shape_id))] = position

    def check(
        self, subject_id: str, position: Position, shapes: list[GeofenceShape]
    ) -> list[AlertRecord]:
        alerts = []
        for shape in shapes:
            key = (str(subject_id), shape.id)
            transition = evaluate(shape, self._previous.get(key), position)
            self._previous[key] = position
            if transition is None:
                continue
            logger.info(
                "geofence_transition",
                subject_id=str(subject_id),
                geofence_id=shape.id,
                transition=transition.value,
            )
            alerts.append(geofence_alert(shape, transition, subject_id, position))
        return alerts

    def forget(self, subject_id: str) -> None:
        for key in [k for k in self._previous if k[0] == str(subject_id)]:
            del self._previous[key]


class GroupGeofenceWatch:
    """Evaluates positions written for group members against the group's active geofences.

    Hardware trackers are not routed here; ingest keeps their containment in
    the assignment rows.  Lookup and alert failures are logged and never fail
    the location write that triggered them.
    """

    def __init__(self, session_factory, recorder: AlertRecorder, monitor: GeofenceMonitor | None = None):
        self.session_factory = session_factory
        self.recorder = recorder
        self.monitor = monitor or GeofenceMonitor()

    async def load_shapes(self, group_id: str) -> list[GeofenceShape]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Geofence).where(
                    Geofence.group_id == as_uuid(group_id),
                    Geofence.is_active.is_(True),
                )
            )
            return [shape_from_row(row) for row in result.scalars().all()]

    async def observe(self, subject_id: str, position: Position, group_id: str | None) -> list[AlertRecord]:
        if group_id is None:
            return []
        try:
            shapes = await self.load_shapes(group_id)
        except (SQLAlchemyError, OSError, ValueError) as e:
            logger.warning("geofence_lookup_failed", subject_id=str(subject_id), group_id=str(group_id), error=str(e))
            return []

        alerts = self.monitor.check(subject_id, position, shapes)
        if alerts:
            try:
                await self.recorder.record(alerts)
            except WriteError as e:
                logger.warning("geofence_alerts_not_recorded", subject_id=str(subject_id), error=str(e))
        return alerts

    def forget(self, subject_id: str) -> None:
        self.monitor.forget(subject_id)
