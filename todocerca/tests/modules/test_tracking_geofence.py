"""Tests for geofence evaluation and threshold triggers.

Evaluation is pure, so most tests drive positions through ``evaluate`` and
``GeofenceMonitor`` directly and count the transitions.  ``GroupGeofenceWatch``
runs against the mocked session.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from modules.tracking.domain import GeofenceShape, Position, Transition
from modules.tracking.errors import WriteError
from modules.tracking.geo import haversine_m, point_in_polygon
from modules.tracking.geofence import (
    GeofenceMonitor,
    GroupGeofenceWatch,
    evaluate,
    is_inside,
    shape_from_row,
    transition_between,
)
from modules.tracking.triggers import Telemetry, TriggerSettings, detect_thresholds
from tests.conftest import make_result

SUBJECT = "7d3f6a1c-1111-4a4a-9b9b-000000000001"
GROUP = "7d3f6a1c-2222-4a4a-9b9b-000000000002"


def _circle(**kwargs) -> GeofenceShape:
    defaults = dict(
        id="fence-1",
        group_id=GROUP,
        kind="circle",
        name="Oficina",
        center=(20.0, -103.0),
        radius_m=500.0,
        alert_on_enter=False,
        alert_on_exit=True,
    )
    defaults.update(kwargs)
    return GeofenceShape(**defaults)


def _pos(lat: float, lng: float) -> Position:
    return Position(subject_id=SUBJECT, latitude=lat, longitude=lng)


SQUARE = ((20.0, -103.0), (20.0, -102.9), (20.1, -102.9), (20.1, -103.0))


# ===================================================================
# Geometry
# ===================================================================


class TestGeometry:
    def test_haversine_zero(self):
        assert haversine_m(20.0, -103.0, 20.0, -103.0) == 0

    def test_haversine_hundredth_degree_latitude(self):
        d = haversine_m(20.0, -103.0, 20.01, -103.0)
        assert 1100 < d < 1120

    def test_point_in_square(self):
        assert point_in_polygon(20.05, -102.95, SQUARE) is True

    def test_point_outside_square(self):
        assert point_in_polygon(20.2, -102.95, SQUARE) is False

    def test_degenerate_polygon_contains_nothing(self):
        assert point_in_polygon(20.0, -103.0, ((20.0, -103.0), (20.1, -103.0))) is False

    def test_concave_polygon(self):
        # U shape opening north; the notch is outside
        u_shape = (
            (0.0, 0.0), (0.0, 3.0), (3.0, 3.0), (3.0, 2.0),
            (1.0, 2.0), (1.0, 1.0), (3.0, 1.0), (3.0, 0.0),
        )
        assert point_in_polygon(0.5, 1.5, u_shape) is True
        assert point_in_polygon(2.0, 1.5, u_shape) is False
        assert point_in_polygon(2.0, 0.5, u_shape) is True


# ===================================================================
# evaluate
# ===================================================================


class TestEvaluate:
    def test_exit_fires_when_leaving_circle(self):
        """Centre of the fence, then ~1.1 km north: one exit."""
        shape = _circle()
        assert evaluate(shape, _pos(20.0, -103.0), _pos(20.01, -103.0)) is Transition.EXIT

    def test_enter_suppressed_when_disabled(self):
        shape = _circle()
        assert evaluate(shape, _pos(20.01, -103.0), _pos(20.0, -103.0)) is None

    def test_enter_fires_when_enabled(self):
        shape = _circle(alert_on_enter=True)
        assert evaluate(shape, _pos(20.01, -103.0), _pos(20.0, -103.0)) is Transition.ENTER

    def test_no_previous_never_fires(self):
        shape = _circle(alert_on_enter=True)
        assert evaluate(shape, None, _pos(20.0, -103.0)) is None
        assert evaluate(shape, None, _pos(20.5, -103.0)) is None

    def test_steady_state_never_fires(self):
        shape = _circle(alert_on_enter=True)
        assert evaluate(shape, _pos(20.0, -103.0), _pos(20.001, -103.0)) is None
        assert evaluate(shape, _pos(21.0, -103.0), _pos(21.1, -103.0)) is None

    def test_inactive_shape_never_fires(self):
        shape = _circle(is_active=False)
        assert evaluate(shape, _pos(20.0, -103.0), _pos(20.01, -103.0)) is None

    def test_polygon_transitions(self):
        shape = GeofenceShape(
            id="poly",
            group_id=GROUP,
            kind="polygon",
            points=SQUARE,
            alert_on_enter=True,
            alert_on_exit=True,
        )
        assert evaluate(shape, _pos(19.9, -102.95), _pos(20.05, -102.95)) is Transition.ENTER
        assert evaluate(shape, _pos(20.05, -102.95), _pos(20.2, -102.95)) is Transition.EXIT

    def test_circle_without_radius_contains_nothing(self):
        assert is_inside(_circle(radius_m=None), 20.0, -103.0) is False

    def test_transition_between_unknown_previous(self):
        assert transition_between(_circle(), None, False) is None


# ===================================================================
# GeofenceMonitor
# ===================================================================


class TestGeofenceMonitor:
    def test_exit_scenario_yields_one_exit_alert(self):
        monitor = GeofenceMonitor()
        shape = _circle()

        assert monitor.check(SUBJECT, _pos(20.0, -103.0), [shape]) == []
        alerts = monitor.check(SUBJECT, _pos(20.01, -103.0), [shape])

        assert len(alerts) == 1
        assert alerts[0].kind == "geofence_exit"
        assert alerts[0].geofence_id == "fence-1"
        assert alerts[0].group_id == GROUP
        assert "Oficina" in alerts[0].title

    def test_reverse_scenario_yields_nothing(self):
        monitor = GeofenceMonitor()
        shape = _circle()

        monitor.check(SUBJECT, _pos(20.01, -103.0), [shape])
        assert monitor.check(SUBJECT, _pos(20.0, -103.0), [shape]) == []

    def test_double_crossing_reports_exactly_one_enter_and_one_exit(self):
        monitor = GeofenceMonitor()
        shape = _circle(alert_on_enter=True)
        track = [
            (20.02, -103.0),   # outside
            (20.015, -103.0),  # outside
            (20.002, -103.0),  # inside (enter)
            (20.0, -103.0),    # inside
            (19.998, -103.0),  # inside
            (19.99, -103.0),   # outside (exit)
            (19.98, -103.0),   # outside
        ]
        kinds = []
        for lat, lng in track:
            kinds.extend(a.kind for a in monitor.check(SUBJECT, _pos(lat, lng), [shape]))

        assert kinds == ["geofence_enter", "geofence_exit"]

    def test_previous_tracked_per_subject(self):
        monitor = GeofenceMonitor()
        shape = _circle()
        other = "7d3f6a1c-1111-4a4a-9b9b-000000000099"

        monitor.check(SUBJECT, _pos(20.0, -103.0), [shape])
        # First sighting of another subject outside: no previous, no alert
        assert monitor.check(other, _pos(20.01, -103.0), [shape]) == []

    def test_seeded_previous_position(self):
        monitor = GeofenceMonitor()
        shape = _circle()
        monitor.seed(SUBJECT, shape.id, _pos(20.0, -103.0))

        alerts = monitor.check(SUBJECT, _pos(20.01, -103.0), [shape])
        assert [a.kind for a in alerts] == ["geofence_exit"]

    def test_forget_drops_history(self):
        monitor = GeofenceMonitor()
        shape = _circle()
        monitor.check(SUBJECT, _pos(20.0, -103.0), [shape])
        monitor.forget(SUBJECT)

        assert monitor.check(SUBJECT, _pos(20.01, -103.0), [shape]) == []


class TestGroupGeofenceWatch:
    @pytest.fixture
    def recorder(self):
        recorder = MagicMock()
        recorder.record = AsyncMock(return_value=[])
        return recorder

    @pytest.fixture
    def fence(self, make_geofence, mock_db_session):
        row = make_geofence(group_id=GROUP)
        mock_db_session.execute = AsyncMock(return_value=make_result(many=[row]))
        return row

    @pytest.mark.asyncio
    async def test_phone_exit_is_recorded(self, mock_session_factory, recorder, fence):
        watch = GroupGeofenceWatch(mock_session_factory, recorder)

        assert await watch.observe(SUBJECT, _pos(20.0, -103.0), GROUP) == []
        alerts = await watch.observe(SUBJECT, _pos(20.01, -103.0), GROUP)

        assert [a.kind for a in alerts] == ["geofence_exit"]
        assert alerts[0].geofence_id == str(fence.id)
        assert alerts[0].subject_device_id == SUBJECT
        recorder.record.assert_awaited_once_with(alerts)

    @pytest.mark.asyncio
    async def test_entry_without_alert_on_enter_is_silent(self, mock_session_factory, recorder, fence):
        watch = GroupGeofenceWatch(mock_session_factory, recorder)

        await watch.observe(SUBJECT, _pos(20.01, -103.0), GROUP)
        assert await watch.observe(SUBJECT, _pos(20.0, -103.0), GROUP) == []
        recorder.record.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_ungrouped_position_skips_lookup(self, mock_session_factory, mock_db_session, recorder):
        watch = GroupGeofenceWatch(mock_session_factory, recorder)

        assert await watch.observe(SUBJECT, _pos(20.0, -103.0), None) == []
        mock_db_session.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_lookup_failure_is_logged_not_raised(self, mock_session_factory, mock_db_session, recorder):
        mock_db_session.execute = AsyncMock(side_effect=OperationalError("SELECT", {}, Exception("down")))
        watch = GroupGeofenceWatch(mock_session_factory, recorder)

        assert await watch.observe(SUBJECT, _pos(20.0, -103.0), GROUP) == []

    @pytest.mark.asyncio
    async def test_record_failure_still_returns_alerts(self, mock_session_factory, recorder, fence):
        recorder.record.side_effect = WriteError("db down")
        watch = GroupGeofenceWatch(mock_session_factory, recorder)

        await watch.observe(SUBJECT, _pos(20.0, -103.0), GROUP)
        alerts = await watch.observe(SUBJECT, _pos(20.01, -103.0), GROUP)

        assert [a.kind for a in alerts] == ["geofence_exit"]

    @pytest.mark.asyncio
    async def test_forget_restarts_history(self, mock_session_factory, recorder, fence):
        watch = GroupGeofenceWatch(mock_session_factory, recorder)

        await watch.observe(SUBJECT, _pos(20.0, -103.0), GROUP)
        watch.forget(SUBJECT)

        assert await watch.observe(SUBJECT, _pos(20.01, -103.0), GROUP) == []


class TestShapeFromRow:
    def test_polygon_row(self, make_geofence):
        row = make_geofence(
            fence_type="polygon",
            center_lat=None,
            center_lng=None,
            radius_meters=None,
            polygon_points=[{"lat": p[0], "lng": p[1]} for p in SQUARE],
        )
        shape = shape_from_row(row)
        assert shape.kind == "polygon"
        assert shape.points == SQUARE
        assert shape.center is None

    def test_malformed_points_skipped(self, make_geofence):
        row = make_geofence(fence_type="polygon", polygon_points=[{"lat": 1.0}, {"lat": 2, "lng": 3}])
        assert shape_from_row(row).points == ((2.0, 3.0),)


# ===================================================================
# Threshold triggers
# ===================================================================


class TestThresholdTriggers:
    def _detect(self, telemetry, settings, **previous):
        return detect_thresholds("tracker-1", GROUP, telemetry, settings, **previous)

    def test_speed_over_limit(self):
        alerts = self._detect(
            Telemetry(latitude=20.0, longitude=-103.0, speed=130.0),
            TriggerSettings(speed_alert_enabled=True, speed_limit_kmh=100.0),
        )
        assert [a.kind for a in alerts] == ["speed_limit"]
        assert alerts[0].speed == 130.0
        assert alerts[0].title == "Exceso de velocidad: 130 km/h"

    def test_speed_disabled(self):
        assert self._detect(Telemetry(speed=300.0), TriggerSettings()) == []

    def test_battery_fires_only_on_crossing(self):
        settings = TriggerSettings(battery_alert_enabled=True, low_battery_threshold=20.0)
        assert [a.kind for a in self._detect(
            Telemetry(battery_level=15.0), settings, previous_battery=40.0
        )] == ["low_battery"]
        assert self._detect(Telemetry(battery_level=12.0), settings, previous_battery=15.0) == []

    def test_battery_unknown_previous_fires(self):
        settings = TriggerSettings(battery_alert_enabled=True)
        assert len(self._detect(Telemetry(battery_level=5.0), settings)) == 1

    def test_power_cut(self):
        settings = TriggerSettings(power_cut_alert_enabled=True)
        assert [a.kind for a in self._detect(Telemetry(external_voltage=0.2), settings)] == ["power_cut"]
        assert self._detect(Telemetry(external_voltage=12.4), settings) == []

    def test_ignition_change(self):
        settings = TriggerSettings(ignition_alert_enabled=True)
        on = self._detect(Telemetry(ignition=True), settings, previous_ignition=False)
        off = self._detect(Telemetry(ignition=False), settings, previous_ignition=True)
        assert [a.kind for a in on] == ["ignition_on"]
        assert [a.kind for a in off] == ["ignition_off"]

    def test_ignition_first_report_is_silent(self):
        settings = TriggerSettings(ignition_alert_enabled=True)
        assert self._detect(Telemetry(ignition=True), settings, previous_ignition=None) == []

    def test_settings_from_missing_row(self):
        settings = TriggerSettings.from_row(None, default_speed_limit=90.0)
        assert settings.speed_limit_kmh == 90.0
        assert settings.speed_alert_enabled is False
