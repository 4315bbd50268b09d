from __future__ import annotations

import logging
import threading
import time

import pytest

from unmanned.core.types import Mission, NavigationError, Waypoint
from unmanned.dispatch import CommandRejected
from unmanned.driver import UnmannedDriver
from unmanned.main import _control_for, _stream, build_parser, main

from conftest import HOME_LAT, HOME_LON, VirtualVehicleLink

CFG = {
    "navigation": {"arrival_timeout_s": 1.0},
    "telemetry": {"history_size": 4},
    "link": {"command_timeout_s": 1.0},
}


def test_driver_rejects_controls_before_start() -> None:
    driver = UnmannedDriver(CFG)
    with pytest.raises(CommandRejected) as excinfo:
        driver.dispatch.execute("location", {"lat": HOME_LAT, "lon": HOME_LON})
    assert excinfo.value.outcome.error is NavigationError.NOT_INITIALIZED


def test_driver_binds_fresh_state_per_connection() -> None:
    mission = Mission(points=(Waypoint(lat=HOME_LAT + 0.001, lon=HOME_LON),), name="one")
    driver = UnmannedDriver(CFG, [mission])
    link = VirtualVehicleLink()
    driver.start(link)
    try:
        assert driver.running
        link.publish_state()
        first_telemetry = driver.telemetry
        assert first_telemetry.get_latest() is not None
        assert driver.dispatch.execute("mission", {"mission": "one"}).ok
    finally:
        driver.stop()

    assert link.closed
    assert not driver.running
    assert driver.telemetry is not first_telemetry
    assert driver.telemetry.get_latest() is None
    with pytest.raises(CommandRejected):
        driver.dispatch.execute("mission", {"mission": 1})


def test_cli_arguments_map_to_controls() -> None:
    parser = build_parser()
    args = parser.parse_args(["goto", "47.1", "8.2", "--alt", "40", "--hover", "3", "--return-to-start"])
    assert _control_for(args) == (
        "location",
        {"lat": 47.1, "lon": 8.2, "alt_agl_m": 40.0, "hover_s": 3.0, "return_to_start": True},
    )
    assert _control_for(parser.parse_args(["mission", "2"])) == ("mission", {"mission": 2})
    assert _control_for(parser.parse_args(["mission", "survey", "--no-return-to-start"])) == (
        "mission",
        {"mission": "survey", "return_to_start": False},
    )
    assert _control_for(parser.parse_args(["takeoff", "12"])) == ("takeoff", {"altitude_agl_m": 12.0})
    assert _control_for(parser.parse_args(["land", "--no-disarm"])) == ("landing", {"disarm": False})
    assert _control_for(parser.parse_args(["run"])) is None


def test_cli_fails_on_missing_plan(tmp_path) -> None:
    assert main(["--no-log-file", "--plan", str(tmp_path / "missing.plan"), "land"]) == 1


def _run_args(mission: str):
    return build_parser().parse_args(["--no-log-file", "run", "--mission", mission, "--interval", "0.1"])


def test_run_mission_rejection_sets_exit_code() -> None:
    mission = Mission(points=(Waypoint(lat=HOME_LAT + 0.001, lon=HOME_LON),), name="one")
    driver = UnmannedDriver(CFG, [mission])
    link = VirtualVehicleLink()
    link.fail_goto[1] = 4
    driver.start(link)
    try:
        link.publish_state()
        started = time.monotonic()
        assert _stream(driver, _run_args("one"), logging.getLogger("test"), threading.Event()) == 1
        assert time.monotonic() - started < 5.0
    finally:
        driver.stop()


def test_run_unknown_mission_sets_exit_code() -> None:
    driver = UnmannedDriver(CFG, [])
    driver.start(VirtualVehicleLink())
    try:
        assert _stream(driver, _run_args("7"), logging.getLogger("test"), threading.Event()) == 1
    finally:
        driver.stop()


def test_run_mission_success_keeps_streaming() -> None:
    mission = Mission(points=(Waypoint(lat=HOME_LAT + 0.001, lon=HOME_LON),), name="one")
    driver = UnmannedDriver(CFG, [mission])
    link = VirtualVehicleLink()
    driver.start(link)
    stop = threading.Event()
    timer = threading.Timer(0.5, stop.set)
    try:
        link.publish_state()
        timer.start()
        assert _stream(driver, _run_args("one"), logging.getLogger("test"), stop) == 0
        assert len(link.gotos) == 1
    finally:
        timer.cancel()
        driver.stop()
