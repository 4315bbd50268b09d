from __future__ import annotations

import pytest

from unmanned.core.types import Mission, NavigationError, OutcomeStatus, Waypoint

from conftest import GROUND_MSL, HOME_LAT, HOME_LON


def _mission(return_to_start: bool = False) -> Mission:
    return Mission(
        points=(
            Waypoint(lat=HOME_LAT + 0.001, lon=HOME_LON, alt_agl_m=30.0),
            Waypoint(lat=HOME_LAT + 0.001, lon=HOME_LON + 0.001, alt_agl_m=80.0),
            Waypoint(lat=HOME_LAT, lon=HOME_LON + 0.001, alt_agl_m=5.0),
        ),
        return_to_start=return_to_start,
        name="triangle",
    )


def test_mission_flies_every_leg_at_first_waypoint_altitude(navigator, vehicle) -> None:
    vehicle.publish_state()
    mission = _mission()

    outcome = navigator.run_mission(mission)

    assert outcome.ok, str(outcome)
    assert [g[:2] for g in vehicle.gotos] == [(p.lat, p.lon) for p in mission.points]
    assert all(g[2] == pytest.approx(GROUND_MSL + 30.0) for g in vehicle.gotos)


def test_mission_aborts_at_failing_leg(navigator, vehicle) -> None:
    vehicle.publish_state()
    vehicle.fail_goto[2] = 7

    outcome = navigator.run_mission(_mission(return_to_start=True))

    assert outcome.status is OutcomeStatus.FAILED
    assert outcome.error is NavigationError.LINK_FAILURE
    assert outcome.code == 7
    assert outcome.leg == 2
    # no third leg, no return leg
    assert len(vehicle.gotos) == 2


def test_mission_timeout_reports_leg(navigator, vehicle) -> None:
    vehicle.publish_state()
    vehicle.stuck_gotos.add(3)
    outcome = navigator.run_mission(_mission())
    assert outcome.error is NavigationError.TIMEOUT
    assert outcome.leg == 3


def test_mission_returns_to_start_captured_before_first_leg(navigator, vehicle) -> None:
    vehicle.publish_state()
    # final leg completes without the vehicle moving; still counts
    vehicle.stuck_gotos.add(4)

    outcome = navigator.run_mission(_mission(return_to_start=True))

    assert outcome.ok
    assert len(vehicle.gotos) == 4
    assert vehicle.gotos[-1][:2] == (HOME_LAT, HOME_LON)
    assert vehicle.gotos[-1][2] == pytest.approx(GROUND_MSL + 30.0)


def test_mission_not_ready_without_telemetry(navigator, vehicle) -> None:
    outcome = navigator.run_mission(_mission())
    assert outcome.error is NavigationError.NOT_READY
    assert vehicle.gotos == []


def test_mission_model_is_immutable_and_non_empty() -> None:
    mission = _mission()
    with pytest.raises(Exception):
        mission.return_to_start = True  # type: ignore[misc]
    with pytest.raises(Exception):
        Mission(points=())
    with pytest.raises(Exception):
        Waypoint(lat=0, lon=0, hover_s=-1)
