"""Request/response schemas for the tracking service endpoints."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class PositionIn(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    accuracy: float | None = None
    speed: float | None = None
    course: float | None = None
    timestamp: datetime | None = None  # device time; server time when omitted
    group_id: str | None = None


class RelayFixIn(PositionIn):
    platform: str = "web"  # "native" or "web"; decided on the first fix only


class RelayDeniedIn(BaseModel):
    platform: str = "web"
    reason: str | None = None


class PresenceOut(BaseModel):
    subject_id: str
    state: str | None
    updated_at: datetime | None = None


class PresenceUpdate(BaseModel):
    state: str


class TrackingStartIn(BaseModel):
    group_id: str | None = None
    platform: str | None = None  # "native" or "web"


class TrackingStatusOut(BaseModel):
    subject_id: str
    state: str
    permission_blocked: bool = False


class SnapshotEntryOut(BaseModel):
    subject_id: str
    group_id: str | None = None
    latitude: float
    longitude: float
    updated_at: datetime
    state: str | None = None
    nickname: str | None = None
    is_owner: bool = False


class PolygonPoint(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)


class GeofenceIn(BaseModel):
    name: str
    description: str | None = None
    fence_type: str  # "circle" | "polygon"
    center_lat: float | None = None
    center_lng: float | None = None
    radius_meters: float | None = None
    polygon_points: list[PolygonPoint] | None = None
    alert_on_enter: bool = False
    alert_on_exit: bool = True


class GeofenceUpdate(BaseModel):
    name: str | None = None
    description: str | None = None
    center_lat: float | None = None
    center_lng: float | None = None
    radius_meters: float | None = None
    polygon_points: list[PolygonPoint] | None = None
    alert_on_enter: bool | None = None
    alert_on_exit: bool | None = None
    is_active: bool | None = None


class IngestResult(BaseModel):
    processed: int
