"""Hardware tracker ingest: telematics webhook messages to positions and alerts.

Messages come in the flespi shape: either flat dotted keys
(``"position.latitude"``) or nested objects (``{"position": {"latitude": ..}}``).
Each message is handled on its own; a bad one is logged and skipped.
"""

from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy import select

from modules.tracking.alerts import AlertRecorder
from modules.tracking.domain import Position, utcnow
from modules.tracking.errors import WriteError
from modules.tracking.geofence import geofence_alert, is_inside, shape_from_row, transition_between
from modules.tracking.sink import LocationSink
from modules.tracking.triggers import Telemetry, TriggerSettings, detect_thresholds
from shared.config import Settings, get_settings
from shared.models.geofence import Geofence, TrackerGeofence
from shared.models.tracker import Tracker, TrackerSettings

logger = structlog.get_logger()

# Odometers above this are reported in metres rather than km
ODOMETER_METRES_THRESHOLD = 1_000_000


def extract_messages(payload: Any) -> list:
    """Accept a bare list, a wrapper object (messages/data/items) or a single message."""
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        for key in ("messages", "data", "items"):
            if isinstance(payload.get(key), list):
                return payload[key]
        return [payload] if payload else []
    return []


def _lookup(message: dict, *paths: str) -> Any:
    """First non-None value among dotted ``paths``, flat or nested."""
    for path in paths:
        if path in message and message[path] is not None:
            return message[path]
        node: Any = message
        for part in path.split("."):
            if not isinstance(node, dict) or part not in node:
                node = None
                break
            node = node[part]
        if node is not None:
            return node
    return None


def to_num(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        n = float(value)
    except (TypeError, ValueError):
        return None
    return n if math.isfinite(n) else None


def to_bool(value: Any) -> bool | None:
    if value is True or value == 1 or value == "1":
        return True
    if value is False or value == 0 or value == "0":
        return False
    return None


def parse_imei(message: dict) -> str | None:
    raw = _lookup(message, "ident", "device.ident", "device.imei")
    if raw is None:
        return None
    imei = str(raw).strip()
    return imei or None


def parse_telemetry(message: dict) -> Telemetry:
    odometer = to_num(_lookup(message, "vehicle.mileage", "position.mileage", "mileage"))
    if odometer is not None and odometer > ODOMETER_METRES_THRESHOLD:
        odometer = odometer / 1000.0
    satellites = to_num(_lookup(message, "position.satellites", "satellites"))
    return Telemetry(
        latitude=to_num(_lookup(message, "position.latitude")),
        longitude=to_num(_lookup(message, "position.longitude")),
        speed=to_num(_lookup(message, "position.speed")),
        altitude=to_num(_lookup(message, "position.altitude")),
        course=to_num(_lookup(message, "position.direction", "position.course")),
        battery_level=to_num(_lookup(message, "battery.level", "device.battery.level")),
        external_voltage=to_num(
            _lookup(message, "external.powersource.voltage", "power.voltage", "device.power.voltage")
        ),
        ignition=to_bool(_lookup(message, "engine.ignition.status", "din.1", "ignition")),
        odometer=odometer,
        gsm_signal=to_num(_lookup(message, "gsm.signal.level", "gsm.signal.dbm")),
        satellites=int(satellites) if satellites is not None else None,
        hdop=to_num(_lookup(message, "position.hdop")),
        fuel_level=to_num(_lookup(message, "fuel.level", "can.fuel.level")),
    )


def parse_timestamp(message: dict) -> datetime:
    raw = to_num(_lookup(message, "timestamp", "server.timestamp"))
    if raw is None:
        return utcnow()
    return datetime.fromtimestamp(raw, tz=timezone.utc)


class HardwareIngest:
    def __init__(
        self,
        session_factory,
        sink: LocationSink,
        recorder: AlertRecorder,
        settings: Settings | None = None,
    ):
        self.session_factory = session_factory
        self.sink = sink
        self.recorder = recorder
        self.settings = settings or get_settings()

    async def process(self, payload: Any) -> int:
        """Handle a webhook body. Returns the number of messages processed."""
        messages = extract_messages(payload)
        logger.info("hardware_batch_received", count=len(messages))
        processed = 0
        for message in messages:
            if not isinstance(message, dict):
                continue
            try:
                if await self.process_message(message):
                    processed += 1
            except Exception:
                logger.exception("hardware_message_failed", ident=message.get("ident"))
        return processed

    async def process_message(self, message: dict) -> bool:
        imei = parse_imei(message)
        if imei is None:
            logger.debug("hardware_message_skipped", reason="no_imei")
            return False

        telemetry = parse_telemetry(message)
        timestamp = parse_timestamp(message)
        now = utcnow()
        position: Position | None = None
        geofence_alerts = []

        async with self.session_factory() as session:
            result = await session.execute(
                select(Tracker).where(Tracker.imei == imei, Tracker.is_active.is_(True))
            )
            tracker = result.scalar_one_or_none()
            if tracker is None:
                logger.info("hardware_tracker_unknown", imei=imei)
                return False

            tracker_id = str(tracker.id)
            group_id = str(tracker.group_id)
            previous_battery = tracker.battery_level
            previous_ignition = tracker.ignition

            tracker.last_seen = now
            if telemetry.battery_level is not None:
                tracker.battery_level = round(telemetry.battery_level)
            if telemetry.ignition is not None:
                tracker.ignition = telemetry.ignition
            if telemetry.odometer is not None:
                tracker.odometer = telemetry.odometer
            if telemetry.external_voltage is not None:
                tracker.external_voltage = telemetry.external_voltage
            if telemetry.gsm_signal is not None:
                tracker.gsm_signal = telemetry.gsm_signal
            if telemetry.satellites is not None:
                tracker.satellites = telemetry.satellites

            result = await session.execute(
                select(TrackerSettings).where(TrackerSettings.tracker_id == tracker.id)
            )
            trigger_settings = TriggerSettings.from_row(
                result.scalar_one_or_none(),
                default_speed_limit=self.settings.default_speed_limit_kmh,
                default_battery=self.settings.default_low_battery_threshold,
            )

            if telemetry.has_position:
                position = Position(
                    subject_id=tracker_id,
                    latitude=telemetry.latitude,
                    longitude=telemetry.longitude,
                    timestamp=timestamp,
                    group_id=group_id,
                    speed=telemetry.speed,
                    course=telemetry.course,
                )
                result = await session.execute(
                    select(TrackerGeofence, Geofence)
                    .join(Geofence, TrackerGeofence.geofence_id == Geofence.id)
                    .where(TrackerGeofence.tracker_id == tracker.id)
                )
                for assignment, fence in result.all():
                    shape = shape_from_row(fence)
                    if not shape.is_active:
                        continue
                    inside = is_inside(shape, position.latitude, position.longitude)
                    # The persisted flag is the previous containment; NULL never fires.
                    transition = transition_between(shape, assignment.is_inside, inside)
                    assignment.is_inside = inside
                    assignment.last_checked_at = now
                    if transition is not None:
                        geofence_alerts.append(geofence_alert(shape, transition, tracker_id, position))

            await session.commit()

        if position is not None:
            try:
                await self.sink.write_location(tracker_id, position, group_id=group_id)
                await self.sink.append_history(
                    tracker_id,
                    position,
                    altitude=telemetry.altitude,
                    ignition=telemetry.ignition,
                    odometer=telemetry.odometer,
                    fuel_level=telemetry.fuel_level,
                    external_voltage=telemetry.external_voltage,
                    gsm_signal=telemetry.gsm_signal,
                    satellites=telemetry.satellites,
                    hdop=telemetry.hdop,
                )
            except (WriteError, ValueError) as e:
                logger.warning("hardware_position_write_failed", tracker_id=tracker_id, error=str(e))

        alerts = detect_thresholds(
            tracker_id,
            group_id,
            telemetry,
            trigger_settings,
            previous_battery=previous_battery,
            previous_ignition=previous_ignition,
        )
        alerts.extend(geofence_alerts)
        if alerts:
            await self.recorder.record(alerts)

        logger.info(
            "hardware_message_processed",
            tracker_id=tracker_id,
            has_position=position is not None,
            alerts=len(alerts),
        )
        return True
