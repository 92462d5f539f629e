"""Tracking domain types: pure data, no I/O."""

from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Read a timestamp without tzinfo as UTC; aware values are converted."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def as_uuid(value) -> uuid.UUID:
    """Coerce an id to ``uuid.UUID``. Raises ValueError for malformed ids."""
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError, AttributeError) as e:
        raise ValueError(f"invalid id: {value!r}") from e


class Presence(str, enum.Enum):
    AVAILABLE = "available"
    BUSY = "busy"
    OFFLINE = "offline"

    @classmethod
    def parse(cls, value: str | None) -> "Presence | None":
        """Return the enum member for ``value``, or None for anything unknown."""
        if value is None:
            return None
        try:
            return cls(value)
        except ValueError:
            return None


@dataclass(frozen=True)
class Position:
    """A single location read for a subject."""

    subject_id: str
    latitude: float
    longitude: float
    timestamp: datetime = field(default_factory=utcnow)
    group_id: str | None = None
    accuracy: float | None = None
    speed: float | None = None
    course: float | None = None

    def __post_init__(self):
        object.__setattr__(self, "timestamp", as_utc(self.timestamp))

    def validate(self) -> None:
        if not -90.0 <= self.latitude <= 90.0:
            raise ValueError(f"latitude out of range: {self.latitude}")
        if not -180.0 <= self.longitude <= 180.0:
            raise ValueError(f"longitude out of range: {self.longitude}")


@dataclass(frozen=True)
class PresenceState:
    subject_id: str
    state: Presence
    updated_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class GeofenceShape:
    """A circle (center + radius in metres) or polygon (ordered lat/lng pairs)."""

    id: str
    group_id: str
    kind: str  # "circle" | "polygon"
    name: str = ""
    center: tuple[float, float] | None = None
    radius_m: float | None = None
    points: tuple[tuple[float, float], ...] = ()
    alert_on_enter: bool = False
    alert_on_exit: bool = True
    is_active: bool = True


class Transition(str, enum.Enum):
    ENTER = "enter"
    EXIT = "exit"


@dataclass(frozen=True)
class AlertRecord:
    """An alert ready to be persisted. Built by detectors, written by AlertRecorder."""

    subject_device_id: str
    group_id: str
    kind: str
    title: str
    message: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    speed: float | None = None
    geofence_id: str | None = None


@dataclass(frozen=True)
class LocationSnapshot:
    """One visible subject in a fan-out view: position joined with presence."""

    subject_id: str
    latitude: float
    longitude: float
    updated_at: datetime
    group_id: str | None = None
    state: Presence | None = None
    nickname: str | None = None
    is_owner: bool = False
