"""Shared test fixtures for the tracking test suite.

Provides mock database sessions, Redis clients, a scriptable geolocation
driver and model factories so tests run without Postgres or Redis.
"""

from __future__ import annotations

import asyncio
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from modules.tracking.source import DriverError
from shared.config import Settings
from shared.models.geofence import Geofence
from shared.models.location import SubjectLocation
from shared.models.profile import Profile
from shared.models.tracker import Tracker


# ---------------------------------------------------------------------------
# Database mocks
# ---------------------------------------------------------------------------


@pytest.fixture
def mock_db_session():
    """Mock async SQLAlchemy session.

    Supports the patterns used by the tracking code:
        session.execute(stmt) -> result
        session.add(obj) / session.add_all(objs)
        session.commit()
    """
    session = AsyncMock()
    session.execute = AsyncMock(return_value=make_result())
    session.add = MagicMock()
    session.add_all = MagicMock()
    return session


@pytest.fixture
def mock_session_factory(mock_db_session):
    """Mock async session factory compatible with ``async with factory() as session:``."""

    @asynccontextmanager
    async def _session_ctx():
        yield mock_db_session

    factory = MagicMock(side_effect=lambda: _session_ctx())
    return factory


# ---------------------------------------------------------------------------
# Redis mock
# ---------------------------------------------------------------------------


@pytest.fixture
def mock_redis():
    """Mock async Redis client with common operations."""
    redis = AsyncMock()
    redis.get = AsyncMock(return_value=None)
    redis.set = AsyncMock()
    redis.publish = AsyncMock()
    return redis


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@pytest.fixture
def fast_settings():
    """Settings with intervals short enough for event-loop tests."""
    return Settings(
        tracking_poll_interval_seconds=0.01,
        tracking_supervisor_interval_seconds=0.05,
        sink_min_write_interval_seconds=0.0,
        fanout_poll_interval_seconds=60.0,
        fanout_min_refresh_spacing_seconds=0.0,
        position_timeout_seconds=0.2,
    )


# ---------------------------------------------------------------------------
# Geolocation driver
# ---------------------------------------------------------------------------


class FakeDriver:
    """Scriptable ``GeolocationDriver``.

    ``fixes`` is consumed by ``read_position`` (the last fix repeats);
    ``emit`` pushes a fix to every active watch.
    """

    def __init__(self, native=False, permission="granted", fixes=None, read_error=None):
        self.native = native
        self.permission = permission
        self.request_result = permission
        self.fixes = list(fixes or [{"latitude": 20.0, "longitude": -103.0}])
        self.read_error = read_error
        self.read_delay = 0.0
        self.watch_delay = 0.0
        self.reads = 0
        self.checks = 0
        self.requests = 0
        self.watches: dict[int, tuple] = {}
        self.stopped: list[int] = []
        self._next_id = 0

    def is_native_platform(self):
        return self.native

    async def check_permission(self):
        self.checks += 1
        return self.permission

    async def request_permission(self):
        self.requests += 1
        return self.request_result

    async def read_position(self, high_accuracy=True):
        self.reads += 1
        if self.read_delay:
            await asyncio.sleep(self.read_delay)
        if self.read_error is not None:
            raise DriverError(self.read_error)
        if len(self.fixes) > 1:
            return dict(self.fixes.pop(0))
        return dict(self.fixes[0])

    async def start_watch(self, on_fix, on_error, high_accuracy=True):
        if self.watch_delay:
            await asyncio.sleep(self.watch_delay)
        self._next_id += 1
        self.watches[self._next_id] = (on_fix, on_error)
        return self._next_id

    def stop_watch(self, watch_id):
        self.watches.pop(watch_id, None)
        self.stopped.append(watch_id)

    def emit(self, fix):
        for on_fix, _ in list(self.watches.values()):
            on_fix(dict(fix))

    def fail_watches(self, code):
        for _, on_error in list(self.watches.values()):
            on_error(DriverError(code))


@pytest.fixture
def fake_driver():
    return FakeDriver()


# ---------------------------------------------------------------------------
# Model factories
# ---------------------------------------------------------------------------


@pytest.fixture
def subject_id():
    """Return a stable UUID string for a test subject."""
    return str(uuid.uuid4())


@pytest.fixture
def make_profile():
    def _make(
        subject_id: str | None = None,
        role: str = "provider",
        state: str = "available",
        nickname: str | None = None,
    ) -> Profile:
        now = datetime.now(timezone.utc)
        return Profile(
            id=uuid.uuid4(),
            subject_id=uuid.UUID(subject_id) if subject_id else uuid.uuid4(),
            nickname=nickname,
            role=role,
            state=state,
            updated_at=now,
            created_at=now,
        )

    return _make


@pytest.fixture
def make_subject_location():
    def _make(
        subject_id: str | None = None,
        group_id: str | None = None,
        latitude: float = 20.0,
        longitude: float = -103.0,
        recorded_at: datetime | None = None,
    ) -> SubjectLocation:
        now = datetime.now(timezone.utc)
        return SubjectLocation(
            id=uuid.uuid4(),
            subject_id=uuid.UUID(subject_id) if subject_id else uuid.uuid4(),
            group_id=uuid.UUID(group_id) if group_id else None,
            latitude=latitude,
            longitude=longitude,
            recorded_at=recorded_at or now,
            updated_at=now,
        )

    return _make


@pytest.fixture
def make_tracker():
    def _make(
        group_id: str | None = None,
        imei: str = "860000000000001",
        battery_level: int | None = None,
        ignition: bool | None = None,
    ) -> Tracker:
        return Tracker(
            id=uuid.uuid4(),
            group_id=uuid.UUID(group_id) if group_id else uuid.uuid4(),
            imei=imei,
            name="Camioneta",
            is_active=True,
            battery_level=battery_level,
            ignition=ignition,
            created_at=datetime.now(timezone.utc),
        )

    return _make


@pytest.fixture
def make_geofence():
    def _make(
        group_id: str | None = None,
        fence_type: str = "circle",
        name: str = "Oficina",
        center_lat: float | None = 20.0,
        center_lng: float | None = -103.0,
        radius_meters: float | None = 500.0,
        polygon_points: list | None = None,
        alert_on_enter: bool = False,
        alert_on_exit: bool = True,
        is_active: bool = True,
    ) -> Geofence:
        now = datetime.now(timezone.utc)
        return Geofence(
            id=uuid.uuid4(),
            group_id=uuid.UUID(group_id) if group_id else uuid.uuid4(),
            name=name,
            fence_type=fence_type,
            center_lat=center_lat,
            center_lng=center_lng,
            radius_meters=radius_meters,
            polygon_points=polygon_points,
            alert_on_enter=alert_on_enter,
            alert_on_exit=alert_on_exit,
            is_active=is_active,
            created_at=now,
            updated_at=now,
        )

    return _make


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def make_result(one=None, many=None, rows=None, rowcount=0):
    """Build a mock ``Result``.

    ``one`` backs ``scalar_one_or_none()``, ``many`` backs ``scalars().all()``
    and ``rows`` backs ``all()`` (tuples for multi-entity selects).
    """
    result = MagicMock()
    result.scalar_one_or_none.return_value = one
    result.scalars.return_value.all.return_value = list(many or [])
    result.all.return_value = list(rows or [])
    result.rowcount = rowcount
    return result


def make_execute_side_effect(*results):
    """Create an execute side_effect that returns different results per call.

    Usage::

        session.execute = AsyncMock(
            side_effect=make_execute_side_effect(result1, result2)
        )

    Calls beyond the given results return an empty result.
    """
    call_idx = 0

    async def _side_effect(stmt, *args, **kwargs):
        nonlocal call_idx
        if call_idx < len(results):
            r = results[call_idx]
            call_idx += 1
            return r
        return make_result()

    return _side_effect


async def settle(rounds: int = 5) -> None:
    """Let pending tasks and callbacks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)
