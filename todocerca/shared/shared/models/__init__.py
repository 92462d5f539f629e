"""SQLAlchemy models."""

from shared.models.alert import Alert
from shared.models.base import Base
from shared.models.geofence import Geofence, TrackerGeofence
from shared.models.location import ProviderLocation, SubjectLocation
from shared.models.profile import Profile
from shared.models.tracker import HistoryPoint, Tracker, TrackerSettings
from shared.models.tracking_group import TrackingGroup, TrackingGroupMember

__all__ = [
    "Alert",
    "Base",
    "Geofence",
    "HistoryPoint",
    "Profile",
    "ProviderLocation",
    "SubjectLocation",
    "Tracker",
    "TrackerGeofence",
    "TrackerSettings",
    "TrackingGroup",
    "TrackingGroupMember",
]
