"""Position source adapter: one interface over native and browser geolocation.

Each platform (the packaged mobile shell, a plain browser) is reached through a
``GeolocationDriver``.  ``detect_position_source`` picks the matching
``PositionSource`` variant once, so callers never branch per call.

Permission is asked lazily on first use and remembered for the life of the
source; a denial surfaces as ``PermissionDenied`` so callers can show the
permission guide instead of retrying.
"""

from __future__ import annotations

import asyncio
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Protocol

import structlog

from modules.tracking.domain import Position, as_utc
from modules.tracking.errors import (
    PermissionDenied,
    PositionTimeout,
    PositionUnavailable,
    TrackingError,
)

logger = structlog.get_logger()

# W3C GeolocationPositionError codes, also used by the native shell bridge
PERMISSION_DENIED = 1
POSITION_UNAVAILABLE = 2
TIMEOUT = 3

DEFAULT_TIMEOUT_SECONDS = 10.0


class DriverError(Exception):
    """Raised by drivers with a W3C-style error code."""

    def __init__(self, code: int, message: str = ""):
        self.code = code
        super().__init__(message or f"geolocation error {code}")


class GeolocationDriver(Protocol):
    """Platform primitives a position source is built on.

    Fixes are plain dicts with ``latitude``, ``longitude`` and optionally
    ``accuracy``, ``speed``, ``heading`` and ``timestamp`` (epoch ms or
    datetime).
    """

    def is_native_platform(self) -> bool: ...

    async def check_permission(self) -> str: ...  # "granted" | "denied" | "prompt"

    async def request_permission(self) -> str: ...

    async def read_position(self, high_accuracy: bool = True) -> dict: ...

    async def start_watch(
        self,
        on_fix: Callable[[dict], None],
        on_error: Callable[[DriverError], None],
        high_accuracy: bool = True,
    ) -> Any: ...

    def stop_watch(self, watch_id: Any) -> None: ...


@dataclass
class WatcherHandle:
    """Opaque handle returned by ``watch_position``."""

    watch_id: Any
    handle_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    active: bool = True


def error_from_driver(exc: DriverError) -> TrackingError:
    """Map a driver error code onto the tracking error taxonomy."""
    if exc.code == PERMISSION_DENIED:
        return PermissionDenied(str(exc))
    if exc.code == TIMEOUT:
        return PositionTimeout(str(exc))
    return PositionUnavailable(str(exc))


def _fix_timestamp(raw: Any) -> datetime:
    if isinstance(raw, datetime):
        return as_utc(raw)
    if isinstance(raw, (int, float)):
        # Geolocation APIs report epoch milliseconds
        return datetime.fromtimestamp(raw / 1000.0, tz=timezone.utc)
    return datetime.now(timezone.utc)


def position_from_fix(subject_id: str, fix: dict) -> Position:
    """Build a ``Position`` from a driver fix dict."""
    try:
        lat = float(fix["latitude"])
        lng = float(fix["longitude"])
    except (KeyError, TypeError, ValueError) as e:
        raise PositionUnavailable(f"malformed fix: {fix!r}") from e

    position = Position(
        subject_id=subject_id,
        latitude=lat,
        longitude=lng,
        timestamp=_fix_timestamp(fix.get("timestamp")),
        accuracy=fix.get("accuracy"),
        speed=fix.get("speed"),
        course=fix.get("heading", fix.get("course")),
    )
    try:
        position.validate()
    except ValueError as e:
        raise PositionUnavailable(str(e)) from e
    return position


class PositionSource(ABC):
    """Single-shot read, continuous watch and watch cancellation for one subject."""

    platform = "unknown"

    def __init__(
        self,
        driver: GeolocationDriver,
        subject_id: str,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        self.driver = driver
        self.subject_id = subject_id
        self.timeout = timeout
        # None = not asked yet, True = granted, False = denied
        self._permission: bool | None = None
        self._watches: dict[str, WatcherHandle] = {}

    @property
    def permission(self) -> bool | None:
        return self._permission

    def reset_permission(self) -> None:
        """Forget a cached answer so the next use asks again (after the user fixed settings)."""
        self._permission = None

    @abstractmethod
    async def _ensure_permission(self) -> None:
        """Raise ``PermissionDenied`` unless location access is available."""

    async def get_current_position(self, timeout: float | None = None) -> Position:
        """Read the current position once.

        Raises ``PermissionDenied``, ``PositionTimeout`` or ``PositionUnavailable``.
        """
        await self._ensure_permission()
        limit = self.timeout if timeout is None else timeout
        try:
            fix = await asyncio.wait_for(self.driver.read_position(high_accuracy=True), limit)
        except asyncio.TimeoutError as e:
            raise PositionTimeout(f"no fix within {limit}s") from e
        except DriverError as e:
            raise self._on_driver_error(e) from e
        self._permission = True
        return position_from_fix(self.subject_id, fix)

    async def watch_position(
        self,
        on_update: Callable[[Position], None],
        on_error: Callable[[TrackingError], None] | None = None,
    ) -> WatcherHandle:
        """Start a continuous watch that runs until ``clear_watch``.

        Only the driver handshake is bounded by the read timeout; a hung start
        raises ``PositionTimeout``.
        """
        await self._ensure_permission()

        def _on_fix(fix: dict) -> None:
            try:
                position = position_from_fix(self.subject_id, fix)
            except PositionUnavailable as e:
                logger.warning("watch_fix_rejected", subject_id=self.subject_id, error=str(e))
                return
            on_update(position)

        def _on_error(exc: DriverError) -> None:
            err = self._on_driver_error(exc)
            logger.warning(
                "watch_position_error",
                subject_id=self.subject_id,
                platform=self.platform,
                kind=err.kind,
            )
            if on_error is not None:
                on_error(err)

        try:
            watch_id = await asyncio.wait_for(
                self.driver.start_watch(_on_fix, _on_error, high_accuracy=True), self.timeout
            )
        except asyncio.TimeoutError as e:
            raise PositionTimeout(f"watch not started within {self.timeout}s") from e
        except DriverError as e:
            raise self._on_driver_error(e) from e

        handle = WatcherHandle(watch_id=watch_id)
        self._watches[handle.handle_id] = handle
        logger.debug(
            "watch_started",
            subject_id=self.subject_id,
            platform=self.platform,
            handle=handle.handle_id,
        )
        return handle

    def clear_watch(self, handle: WatcherHandle) -> None:
        """Release a watch. Clearing an already-cleared handle is a no-op."""
        if not handle.active:
            return
        handle.active = False
        self._watches.pop(handle.handle_id, None)
        try:
            self.driver.stop_watch(handle.watch_id)
        except Exception as e:
            logger.warning(
                "watch_clear_failed",
                subject_id=self.subject_id,
                handle=handle.handle_id,
                error=str(e),
            )

    @property
    def active_watches(self) -> int:
        return len(self._watches)

    def _on_driver_error(self, exc: DriverError) -> TrackingError:
        err = error_from_driver(exc)
        if isinstance(err, PermissionDenied):
            self._permission = False
        return err


class NativePositionSource(PositionSource):
    """Packaged mobile shell: explicit permission check/request, high accuracy."""

    platform = "native"

    async def _ensure_permission(self) -> None:
        if self._permission is True:
            return
        if self._permission is False:
            raise PermissionDenied("location permission denied")

        try:
            status = await self.driver.check_permission()
            if status != "granted":
                status = await self.driver.request_permission()
        except DriverError as e:
            raise self._on_driver_error(e) from e

        self._permission = status == "granted"
        logger.info(
            "location_permission_resolved",
            subject_id=self.subject_id,
            platform=self.platform,
            granted=self._permission,
        )
        if not self._permission:
            raise PermissionDenied("location permission denied")


class BrowserPositionSource(PositionSource):
    """Browser geolocation: permission is implied by the first read's outcome."""

    platform = "web"

    async def _ensure_permission(self) -> None:
        if self._permission is False:
            raise PermissionDenied("location permission denied")


def detect_position_source(
    driver: GeolocationDriver,
    subject_id: str,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
) -> PositionSource:
    """Pick the source variant for ``driver``'s platform. Call once per device."""
    if driver.is_native_platform():
        return NativePositionSource(driver, subject_id, timeout)
    return BrowserPositionSource(driver, subject_id, timeout)
