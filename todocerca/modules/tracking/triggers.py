"""Threshold trigger detectors for hardware trackers.

Structurally the same as geofence transitions: each detector compares the
new telemetry with the previous reported value and emits at most one
``AlertRecord``.
"""

from __future__ import annotations

from dataclasses import dataclass

from modules.tracking.domain import AlertRecord

POWER_CUT_VOLTAGE = 1.0


@dataclass(frozen=True)
class TriggerSettings:
    speed_limit_kmh: float = 120.0
    speed_alert_enabled: bool = False
    low_battery_threshold: float = 20.0
    battery_alert_enabled: bool = False
    power_cut_alert_enabled: bool = False
    ignition_alert_enabled: bool = False

    @classmethod
    def from_row(cls, row, default_speed_limit: float = 120.0, default_battery: float = 20.0):
        """Build from a ``TrackerSettings`` row; a missing row disables every trigger."""
        if row is None:
            return cls(speed_limit_kmh=default_speed_limit, low_battery_threshold=default_battery)
        return cls(
            speed_limit_kmh=row.speed_limit_kmh or default_speed_limit,
            speed_alert_enabled=bool(row.speed_alert_enabled),
            low_battery_threshold=row.low_battery_threshold or default_battery,
            battery_alert_enabled=bool(row.battery_alert_enabled),
            power_cut_alert_enabled=bool(row.power_cut_alert_enabled),
            ignition_alert_enabled=bool(row.ignition_alert_enabled),
        )


@dataclass(frozen=True)
class Telemetry:
    """Normalised values from one hardware message. Every field may be missing."""

    latitude: float | None = None
    longitude: float | None = None
    speed: float | None = None
    altitude: float | None = None
    course: float | None = None
    battery_level: float | None = None
    external_voltage: float | None = None
    ignition: bool | None = None
    odometer: float | None = None
    gsm_signal: float | None = None
    satellites: int | None = None
    hdop: float | None = None
    fuel_level: float | None = None

    @property
    def has_position(self) -> bool:
        return self.latitude is not None and self.longitude is not None


def detect_thresholds(
    tracker_id: str,
    group_id: str,
    telemetry: Telemetry,
    settings: TriggerSettings,
    previous_battery: float | None = None,
    previous_ignition: bool | None = None,
) -> list[AlertRecord]:
    alerts = []

    def _alert(kind: str, title: str, message: str, speed: float | None = None) -> AlertRecord:
        return AlertRecord(
            subject_device_id=str(tracker_id),
            group_id=str(group_id),
            kind=kind,
            title=title,
            message=message,
            latitude=telemetry.latitude,
            longitude=telemetry.longitude,
            speed=speed,
        )

    speed = telemetry.speed
    if settings.speed_alert_enabled and speed is not None and speed > settings.speed_limit_kmh:
        alerts.append(
            _alert(
                "speed_limit",
                f"Exceso de velocidad: {speed:.0f} km/h",
                f"El dispositivo superó el límite de {settings.speed_limit_kmh:g} km/h",
                speed=speed,
            )
        )

    battery = telemetry.battery_level
    threshold = settings.low_battery_threshold
    # Only the crossing fires; a battery that stays low is not re-reported.
    if (
        settings.battery_alert_enabled
        and battery is not None
        and battery <= threshold
        and (previous_battery is None or previous_battery > threshold)
    ):
        alerts.append(
            _alert(
                "low_battery",
                f"Batería baja: {battery:g}%",
                f"La batería del dispositivo está por debajo del {threshold:g}%",
            )
        )

    voltage = telemetry.external_voltage
    if settings.power_cut_alert_enabled and voltage is not None and voltage < POWER_CUT_VOLTAGE:
        alerts.append(
            _alert(
                "power_cut",
                "Corte de energía detectado",
                "Se ha desconectado la alimentación externa del dispositivo",
            )
        )

    ignition = telemetry.ignition
    if (
        settings.ignition_alert_enabled
        and ignition is not None
        and previous_ignition is not None
        and ignition != previous_ignition
    ):
        if ignition:
            alerts.append(_alert("ignition_on", "Motor encendido", "El vehículo ha sido encendido"))
        else:
            alerts.append(_alert("ignition_off", "Motor apagado", "El vehículo ha sido apagado"))

    return alerts
