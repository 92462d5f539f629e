"""Tests for the hardware tracker webhook ingest."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from modules.tracking.errors import WriteError
from modules.tracking.ingest import (
    HardwareIngest,
    extract_messages,
    parse_imei,
    parse_telemetry,
    parse_timestamp,
    to_bool,
    to_num,
)
from shared.config import Settings
from shared.models.geofence import TrackerGeofence
from shared.models.tracker import TrackerSettings
from tests.conftest import make_execute_side_effect, make_result

IMEI = "860000000000001"


def _message(**overrides) -> dict:
    message = {
        "ident": IMEI,
        "timestamp": 1_746_100_800,
        "position.latitude": 20.0,
        "position.longitude": -103.0,
        "position.speed": 42.0,
    }
    message.update(overrides)
    return message


# ===================================================================
# Parsing
# ===================================================================


class TestParsing:
    def test_extract_messages_shapes(self):
        assert extract_messages([{"a": 1}]) == [{"a": 1}]
        assert extract_messages({"messages": [{"a": 1}]}) == [{"a": 1}]
        assert extract_messages({"data": [{"a": 1}]}) == [{"a": 1}]
        assert extract_messages({"ident": "1"}) == [{"ident": "1"}]
        assert extract_messages({}) == []
        assert extract_messages("junk") == []

    def test_flat_and_nested_keys(self):
        flat = parse_telemetry({"position.latitude": 1.5, "position.longitude": 2.5})
        nested = parse_telemetry({"position": {"latitude": 1.5, "longitude": 2.5}})

        assert (flat.latitude, flat.longitude) == (1.5, 2.5)
        assert (nested.latitude, nested.longitude) == (1.5, 2.5)
        assert flat.has_position is True

    def test_odometer_in_metres_is_converted(self):
        assert parse_telemetry({"vehicle.mileage": 2_500_000}).odometer == 2500.0
        assert parse_telemetry({"vehicle.mileage": 1234.5}).odometer == 1234.5

    def test_ignition_and_battery(self):
        telemetry = parse_telemetry({"engine.ignition.status": 1, "battery.level": "87"})
        assert telemetry.ignition is True
        assert telemetry.battery_level == 87.0

    def test_imei_variants(self):
        assert parse_imei({"ident": 860000000000001}) == IMEI
        assert parse_imei({"device": {"imei": " 123 "}}) == "123"
        assert parse_imei({"ident": "  "}) is None
        assert parse_imei({}) is None

    def test_timestamp_seconds(self):
        assert parse_timestamp({"timestamp": 1_746_100_800}).year == 2025

    def test_coercion(self):
        assert to_num("nan") is None
        assert to_num(True) is None
        assert to_num("3.5") == 3.5
        assert to_bool("0") is False
        assert to_bool("maybe") is None

    def test_missing_position(self):
        assert parse_telemetry({"ident": IMEI}).has_position is False


# ===================================================================
# HardwareIngest
# ===================================================================


@pytest.fixture
def sink():
    sink = MagicMock()
    sink.write_location = AsyncMock(return_value=True)
    sink.append_history = AsyncMock()
    return sink


@pytest.fixture
def recorder():
    recorder = MagicMock()
    recorder.record = AsyncMock(return_value=[])
    return recorder


@pytest.fixture
def ingest(mock_session_factory, sink, recorder):
    return HardwareIngest(mock_session_factory, sink, recorder, Settings())


def _recorded_kinds(recorder) -> list[str]:
    if not recorder.record.await_count:
        return []
    return [a.kind for a in recorder.record.await_args[0][0]]


class TestHardwareIngest:
    @pytest.mark.asyncio
    async def test_position_written_and_history_appended(self, ingest, sink, mock_db_session, make_tracker):
        tracker = make_tracker()
        mock_db_session.execute = AsyncMock(
            side_effect=make_execute_side_effect(make_result(one=tracker), make_result(), make_result(rows=[]))
        )

        assert await ingest.process([_message()]) == 1

        args, kwargs = sink.write_location.await_args
        assert args[0] == str(tracker.id)
        assert args[1].speed == 42.0
        assert kwargs["group_id"] == str(tracker.group_id)
        sink.append_history.assert_awaited_once()
        assert tracker.last_seen is not None
        mock_db_session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_unknown_imei_is_skipped(self, ingest, sink, recorder):
        assert await ingest.process({"messages": [_message()]}) == 0

        sink.write_location.assert_not_awaited()
        recorder.record.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_message_without_position_updates_telemetry_only(self, ingest, sink, mock_db_session, make_tracker):
        tracker = make_tracker()
        mock_db_session.execute = AsyncMock(
            side_effect=make_execute_side_effect(make_result(one=tracker), make_result())
        )

        assert await ingest.process({"ident": IMEI, "battery.level": 64.4}) == 1

        assert tracker.battery_level == 64
        sink.write_location.assert_not_awaited()
        assert mock_db_session.execute.await_count == 2

    @pytest.mark.asyncio
    async def test_threshold_alerts_recorded(self, ingest, recorder, mock_db_session, make_tracker):
        tracker = make_tracker(battery_level=50, ignition=False)
        settings_row = TrackerSettings(
            tracker_id=tracker.id,
            speed_limit_kmh=30.0,
            speed_alert_enabled=True,
            low_battery_threshold=20.0,
            battery_alert_enabled=True,
            power_cut_alert_enabled=False,
            ignition_alert_enabled=True,
        )
        mock_db_session.execute = AsyncMock(
            side_effect=make_execute_side_effect(
                make_result(one=tracker), make_result(one=settings_row), make_result(rows=[])
            )
        )

        await ingest.process(_message(**{"battery.level": 10, "engine.ignition.status": True}))

        assert sorted(_recorded_kinds(recorder)) == ["ignition_on", "low_battery", "speed_limit"]
        assert tracker.ignition is True

    @pytest.mark.asyncio
    async def test_geofence_exit_flips_flag_and_alerts(self, ingest, recorder, mock_db_session, make_tracker, make_geofence):
        tracker = make_tracker()
        fence = make_geofence(group_id=str(tracker.group_id))
        assignment = TrackerGeofence(tracker_id=tracker.id, geofence_id=fence.id, is_inside=True)
        mock_db_session.execute = AsyncMock(
            side_effect=make_execute_side_effect(
                make_result(one=tracker), make_result(), make_result(rows=[(assignment, fence)])
            )
        )

        await ingest.process(_message(**{"position.latitude": 20.01}))

        assert assignment.is_inside is False
        assert assignment.last_checked_at is not None
        records = recorder.record.await_args[0][0]
        assert [r.kind for r in records] == ["geofence_exit"]
        assert records[0].geofence_id == str(fence.id)

    @pytest.mark.asyncio
    async def test_first_geofence_check_only_sets_flag(self, ingest, recorder, mock_db_session, make_tracker, make_geofence):
        tracker = make_tracker()
        fence = make_geofence(alert_on_enter=True)
        assignment = TrackerGeofence(tracker_id=tracker.id, geofence_id=fence.id, is_inside=None)
        mock_db_session.execute = AsyncMock(
            side_effect=make_execute_side_effect(
                make_result(one=tracker), make_result(), make_result(rows=[(assignment, fence)])
            )
        )

        await ingest.process(_message())

        assert assignment.is_inside is True
        recorder.record.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_inactive_geofence_not_evaluated(self, ingest, recorder, mock_db_session, make_tracker, make_geofence):
        tracker = make_tracker()
        fence = make_geofence(is_active=False)
        assignment = TrackerGeofence(tracker_id=tracker.id, geofence_id=fence.id, is_inside=True)
        mock_db_session.execute = AsyncMock(
            side_effect=make_execute_side_effect(
                make_result(one=tracker), make_result(), make_result(rows=[(assignment, fence)])
            )
        )

        await ingest.process(_message(**{"position.latitude": 20.5}))

        assert assignment.is_inside is True
        recorder.record.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_write_failure_still_records_alerts(self, ingest, sink, recorder, mock_db_session, make_tracker):
        tracker = make_tracker(ignition=True)
        sink.write_location.side_effect = WriteError("db down")
        settings_row = TrackerSettings(tracker_id=tracker.id, ignition_alert_enabled=True)
        mock_db_session.execute = AsyncMock(
            side_effect=make_execute_side_effect(
                make_result(one=tracker), make_result(one=settings_row), make_result(rows=[])
            )
        )

        assert await ingest.process(_message(**{"engine.ignition.status": 0})) == 1

        assert _recorded_kinds(recorder) == ["ignition_off"]

    @pytest.mark.asyncio
    async def test_bad_message_does_not_stop_batch(self, ingest, sink, mock_db_session, make_tracker):
        tracker = make_tracker()
        mock_db_session.execute = AsyncMock(
            side_effect=make_execute_side_effect(
                make_result(one=tracker), make_result(), make_result(rows=[]),
                make_result(one=tracker), make_result(), make_result(rows=[]),
            )
        )
        mock_db_session.commit.side_effect = [RuntimeError("boom"), None]

        processed = await ingest.process([_message(), "not-a-dict", _message()])

        assert processed == 1
        sink.write_location.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_message_without_imei(self, ingest, mock_db_session):
        assert await ingest.process([{"position.latitude": 1.0}]) == 0
        mock_db_session.execute.assert_not_awaited()
