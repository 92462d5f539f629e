"""Tracking error taxonomy.

Position source and sink errors are caught at the tracking loop boundary and
turned into loop-state transitions; ``Unauthorized`` is final for the call
that raised it.
"""

from __future__ import annotations


class TrackingError(Exception):
    """Base class for tracking failures."""

    kind = "tracking_error"


class PermissionDenied(TrackingError):
    """The user declined location access. Prompt, don't retry."""

    kind = "permission_denied"


class PositionUnavailable(TrackingError):
    """Hardware/signal problem. The next poll cycle retries."""

    kind = "position_unavailable"


class PositionTimeout(PositionUnavailable):
    """A single-shot read did not complete in time."""

    kind = "timeout"


class WriteError(TrackingError):
    """Backend write failed. Not retried immediately."""

    kind = "write_error"


class Unauthorized(TrackingError):
    """Presence change attempted by someone other than the subject."""

    kind = "unauthorized"
