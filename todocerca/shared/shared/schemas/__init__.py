"""Pydantic schemas for the tracking service."""

from shared.schemas.common import ErrorResponse, HealthResponse
from shared.schemas.notifications import AlertNotification
from shared.schemas.tracking import (
    GeofenceIn,
    GeofenceUpdate,
    IngestResult,
    PositionIn,
    PresenceOut,
    PresenceUpdate,
    RelayDeniedIn,
    RelayFixIn,
    SnapshotEntryOut,
    TrackingStartIn,
    TrackingStatusOut,
)

__all__ = [
    "AlertNotification",
    "ErrorResponse",
    "GeofenceIn",
    "GeofenceUpdate",
    "HealthResponse",
    "IngestResult",
    "PositionIn",
    "PresenceOut",
    "PresenceUpdate",
    "RelayDeniedIn",
    "RelayFixIn",
    "SnapshotEntryOut",
    "TrackingStartIn",
    "TrackingStatusOut",
]
