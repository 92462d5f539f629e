"""Notification schemas published on the alerts channel via Redis pub/sub."""

from __future__ import annotations

from pydantic import BaseModel


class AlertNotification(BaseModel):
    """An alert handed to the notification surface (toast, badge, push).

    Formatting and delivery belong to the consumer; this is only what
    triggered and where.
    """

    alert_id: str
    group_id: str
    subject_device_id: str
    kind: str  # "geofence_enter" | "geofence_exit" | "speed_limit" | ...
    title: str
    message: str | None = None
    geofence_id: str | None = None
    latitude: float | None = None
    longitude: float | None = None
