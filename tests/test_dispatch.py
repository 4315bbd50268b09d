from __future__ import annotations

import threading
from datetime import datetime

import pytest

from unmanned.core.state_machine import WaypointNavigator
from unmanned.core.types import Mission, NavigationError, OutcomeStatus, Waypoint
from unmanned.dispatch import RECORD_FIELDS, CommandDispatch, CommandRejected, encode_sample, encode_text

from conftest import HOME_LAT, HOME_LON


@pytest.fixture()
def missions() -> tuple[Mission, ...]:
    return (
        Mission(points=(Waypoint(lat=HOME_LAT + 0.001, lon=HOME_LON),), name="north"),
        Mission(points=(Waypoint(lat=HOME_LAT, lon=HOME_LON + 0.001),), name="east", return_to_start=True),
    )


@pytest.fixture()
def dispatch(navigator, missions) -> CommandDispatch:
    return CommandDispatch(navigator, missions, command_timeout_s=1.0)


def test_location_control_runs_goto(dispatch, vehicle) -> None:
    vehicle.publish_state()
    outcome = dispatch.execute("location", {"lat": HOME_LAT + 0.001, "lon": HOME_LON, "alt_agl_m": 20})
    assert outcome.ok
    assert vehicle.gotos[0][:2] == (HOME_LAT + 0.001, HOME_LON)


def test_invalid_payload_is_rejected(dispatch, vehicle) -> None:
    with pytest.raises(CommandRejected, match="invalid location payload"):
        dispatch.execute("location", {"lat": 123.0, "lon": 0.0})
    with pytest.raises(CommandRejected):
        dispatch.execute("takeoff", {"altitude_agl_m": -5})
    with pytest.raises(CommandRejected, match="unknown control"):
        dispatch.execute("barrel_roll", {})
    assert vehicle.calls == []


def test_failed_outcome_is_rejected_with_outcome(dispatch, vehicle) -> None:
    with pytest.raises(CommandRejected) as excinfo:
        dispatch.execute("location", {"lat": HOME_LAT, "lon": HOME_LON})
    assert excinfo.value.outcome.error is NavigationError.NOT_READY


def test_mission_selected_by_number_or_name(dispatch, vehicle) -> None:
    vehicle.publish_state()
    assert dispatch.execute("mission", {"mission": 1}).ok
    assert dispatch.execute("mission", {"mission": "east", "return_to_start": False}).ok
    # mission 2 normally returns to start; the override removed that leg
    assert len(vehicle.gotos) == 2
    assert vehicle.gotos[1][:2] == (HOME_LAT, HOME_LON + 0.001)


def test_mission_lookup_errors(dispatch) -> None:
    with pytest.raises(CommandRejected, match="out of range"):
        dispatch.execute("mission", {"mission": 3})
    with pytest.raises(CommandRejected, match="unknown mission"):
        dispatch.execute("mission", {"mission": "west"})


def test_mission_failure_carries_leg(dispatch, vehicle) -> None:
    vehicle.publish_state()
    vehicle.fail_goto[1] = 7
    with pytest.raises(CommandRejected) as excinfo:
        dispatch.execute("mission", {"mission": "north"})
    assert excinfo.value.outcome.leg == 1
    assert excinfo.value.outcome.code == 7


def test_takeoff_and_landing_controls(dispatch, vehicle) -> None:
    vehicle.publish_state()
    assert dispatch.execute("takeoff", {"altitude_agl_m": 10}).ok
    assert dispatch.execute("landing", {}).ok
    assert vehicle.names() == ["arm", "set_takeoff_altitude", "takeoff", "land", "disarm"]


def test_offboard_and_shell_go_straight_to_link(dispatch, vehicle) -> None:
    assert dispatch.execute("offboard", {"forward_m_s": 1.5, "yaw_rate_deg_s": 10}) is None
    assert dispatch.execute("shell", {"command": "reboot"}) is None
    assert vehicle.calls == [
        ("set_body_velocity", (1.5, 0.0, 0.0, 10.0)),
        ("send_shell", ("reboot",)),
    ]


def test_controls_rejected_without_link(aggregator, missions) -> None:
    nav = WaypointNavigator(aggregator)
    dispatch = CommandDispatch(nav, missions)
    try:
        with pytest.raises(CommandRejected) as excinfo:
            dispatch.execute("shell", {"command": "ls"})
        assert excinfo.value.outcome.error is NavigationError.NOT_INITIALIZED
        with pytest.raises(CommandRejected):
            dispatch.execute("mission", {"mission": 1})
    finally:
        nav.shutdown()


def test_cancelled_outcome_is_returned(aggregator, vehicle, missions) -> None:
    nav = WaypointNavigator(aggregator, vehicle, cfg={"arrival_timeout_s": 10.0})
    dispatch = CommandDispatch(nav, missions)
    vehicle.publish_state()
    vehicle.stuck_gotos.add(1)
    try:
        timer = threading.Timer(0.3, lambda: dispatch.execute("cancel"))
        timer.start()
        outcome = dispatch.execute("mission", {"mission": 1})
        assert outcome.status is OutcomeStatus.CANCELLED
    finally:
        nav.shutdown()


def test_sample_record_encoding(aggregator, vehicle) -> None:
    vehicle.publish_state()
    sample = aggregator.get_latest()

    values = encode_sample(sample)
    assert len(values) == len(RECORD_FIELDS)
    record = dict(zip(RECORD_FIELDS, values))
    assert record["sampleTime"] == pytest.approx(sample.timestamp_ms / 1000.0)
    assert record["latitude"] == HOME_LAT
    assert record["accelDown"] == pytest.approx(-9.81)
    assert record["temperature"] == 21.5
    assert record["magDown"] == 0.4

    text = encode_text(sample)
    assert text.endswith("\n")
    tokens = text.rstrip("\n").split(",")
    assert len(tokens) == len(RECORD_FIELDS)
    assert datetime.fromisoformat(tokens[0]).utcoffset().total_seconds() == 0
    assert float(tokens[1]) == HOME_LAT
