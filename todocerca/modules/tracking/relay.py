"""Relay driver: geolocation primitives backed by fixes the device pushes over HTTP.

The mobile shell and the browser page own the actual geolocation APIs; they
forward every fix (and any permission denial) to ``POST /relay/{subject_id}/...``.
A ``RelayDriver`` turns that stream back into the ``GeolocationDriver``
primitives so the server-side tracking loop can run unchanged.
"""

from __future__ import annotations

import asyncio
import itertools
import time
from typing import Callable

import structlog

from modules.tracking.source import (
    PERMISSION_DENIED,
    DriverError,
    PositionSource,
    detect_position_source,
)

logger = structlog.get_logger()


class RelayDriver:
    """A ``GeolocationDriver`` fed by ``push_fix`` / ``push_denied``."""

    def __init__(self, native: bool = False, max_fix_age: float = 2.0):
        self.native = native
        self.max_fix_age = max_fix_age
        self._last_fix: dict | None = None
        self._last_fix_at = 0.0
        self._denied = False
        self._waiters: list[asyncio.Future] = []
        self._watches: dict[int, tuple[Callable, Callable]] = {}
        self._ids = itertools.count(1)

    def is_native_platform(self) -> bool:
        return self.native

    async def check_permission(self) -> str:
        if self._denied:
            return "denied"
        return "granted" if self._last_fix is not None else "prompt"

    async def request_permission(self) -> str:
        # The device prompts on its side and reports a denial via push_denied.
        return "denied" if self._denied else "granted"

    async def read_position(self, high_accuracy: bool = True) -> dict:
        if self._denied:
            raise DriverError(PERMISSION_DENIED, "location permission denied on device")
        if self._last_fix is not None and time.monotonic() - self._last_fix_at <= self.max_fix_age:
            return dict(self._last_fix)
        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            return await waiter
        finally:
            if waiter in self._waiters:
                self._waiters.remove(waiter)

    async def start_watch(self, on_fix, on_error, high_accuracy: bool = True) -> int:
        if self._denied:
            raise DriverError(PERMISSION_DENIED, "location permission denied on device")
        watch_id = next(self._ids)
        self._watches[watch_id] = (on_fix, on_error)
        return watch_id

    def stop_watch(self, watch_id) -> None:
        self._watches.pop(watch_id, None)

    def push_fix(self, fix: dict) -> None:
        """Deliver a fix from the device to pending reads and active watches."""
        self._denied = False
        self._last_fix = dict(fix)
        self._last_fix_at = time.monotonic()
        for waiter in self._waiters:
            if not waiter.done():
                waiter.set_result(dict(fix))
        self._waiters.clear()
        for on_fix, _ in list(self._watches.values()):
            on_fix(dict(fix))

    def push_denied(self, reason: str = "") -> None:
        """Record a permission denial reported by the device."""
        self._denied = True
        error = DriverError(PERMISSION_DENIED, reason or "location permission denied on device")
        for waiter in self._waiters:
            if not waiter.done():
                waiter.set_exception(error)
        self._waiters.clear()
        for _, on_error in list(self._watches.values()):
            on_error(error)

    @property
    def watch_count(self) -> int:
        return len(self._watches)


class RelayHub:
    """Per-subject relay drivers and their (once-detected) position sources."""

    def __init__(self, timeout: float = 10.0):
        self.timeout = timeout
        self._drivers: dict[str, RelayDriver] = {}
        self._sources: dict[str, PositionSource] = {}

    def driver_for(self, subject_id: str, platform: str | None = None) -> RelayDriver:
        driver = self._drivers.get(subject_id)
        if driver is None:
            driver = RelayDriver(native=platform == "native")
            self._drivers[subject_id] = driver
            logger.info("relay_driver_created", subject_id=subject_id, platform=platform or "web")
        return driver

    def source_for(self, subject_id: str) -> PositionSource:
        source = self._sources.get(subject_id)
        if source is None:
            source = detect_position_source(self.driver_for(subject_id), subject_id, self.timeout)
            self._sources[subject_id] = source
        return source

    def forget(self, subject_id: str) -> None:
        self._drivers.pop(subject_id, None)
        self._sources.pop(subject_id, None)
