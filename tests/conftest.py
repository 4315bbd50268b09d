from __future__ import annotations

from concurrent.futures import Future
from typing import Any, Optional

import pytest

from unmanned.core.state_machine import WaypointNavigator
from unmanned.core.types import Imu, LandedState, Position, Vector3, VelocityNed
from unmanned.telemetry.aggregator import TelemetryAggregator
from unmanned.vehicle.api_interface import (
    LinkCommandError,
    TelemetryCallback,
    TelemetryStream,
    VehicleLink,
    completed_future,
    failed_future,
)

HOME_LAT = 47.3977419
HOME_LON = 8.5455938
GROUND_MSL = 488.0


def make_imu(temperature: float = 21.5) -> Imu:
    return Imu(
        acceleration_frd=Vector3(forward=0.1, right=-0.2, down=-9.81),
        angular_velocity_frd=Vector3(forward=0.01, right=0.02, down=0.03),
        magnetic_field_frd=Vector3(forward=0.2, right=0.0, down=0.4),
        temperature_degc=temperature,
    )


class VirtualVehicleLink(VehicleLink):
    """Scripted vehicle: records every primitive and moves instantly to goto targets.

    ``fail_goto`` maps a 1-based goto number to the MAV_RESULT it should fail with.
    ``stuck_gotos`` are goto numbers whose command completes without the vehicle moving.
    ``hung_gotos`` are goto numbers whose completion never arrives.
    """

    def __init__(self, lat: float = HOME_LAT, lon: float = HOME_LON, ground_msl: float = GROUND_MSL) -> None:
        self.lat = lat
        self.lon = lon
        self.ground_msl = ground_msl
        self.rel_alt = 0.0
        self.armed = False
        self.takeoff_altitude = 0.0
        self.calls: list[tuple[str, tuple[Any, ...]]] = []
        self.fail_goto: dict[int, int] = {}
        self.stuck_gotos: set[int] = set()
        self.hung_gotos: set[int] = set()
        self.fail_arm_code: Optional[int] = None
        self.closed = False
        self.pending: list[Future] = []
        self._subscribers: dict[TelemetryStream, list[TelemetryCallback]] = {s: [] for s in TelemetryStream}

    # telemetry ---------------------------------------------------------
    def subscribe(self, stream: TelemetryStream, callback: TelemetryCallback) -> None:
        self._subscribers[stream].append(callback)

    def unsubscribe(self, stream: TelemetryStream, callback: TelemetryCallback) -> None:
        self._subscribers[stream] = [cb for cb in self._subscribers[stream] if cb != callback]

    def push(self, stream: TelemetryStream, value: Any) -> None:
        for cb in list(self._subscribers[stream]):
            cb(value)

    def publish_state(self) -> None:
        self.push(
            TelemetryStream.POSITION,
            Position(
                latitude_deg=self.lat,
                longitude_deg=self.lon,
                absolute_altitude_m=self.ground_msl + self.rel_alt,
                relative_altitude_m=self.rel_alt,
            ),
        )
        self.push(TelemetryStream.VELOCITY_NED, VelocityNed(north_m_s=0.0, east_m_s=0.0, down_m_s=0.0))
        self.push(TelemetryStream.IMU, make_imu())

    @property
    def gotos(self) -> list[tuple[Any, ...]]:
        return [args for name, args in self.calls if name == "goto_location"]

    def names(self) -> list[str]:
        return [name for name, _ in self.calls]

    # primitives --------------------------------------------------------
    def arm(self) -> Future:
        self.calls.append(("arm", ()))
        if self.fail_arm_code is not None:
            return failed_future(LinkCommandError("arm", self.fail_arm_code))
        self.armed = True
        self.push(TelemetryStream.ARMED, True)
        return completed_future()

    def disarm(self) -> Future:
        self.calls.append(("disarm", ()))
        self.armed = False
        self.push(TelemetryStream.ARMED, False)
        return completed_future()

    def set_takeoff_altitude(self, altitude_m: float) -> Future:
        self.calls.append(("set_takeoff_altitude", (altitude_m,)))
        self.takeoff_altitude = altitude_m
        return completed_future()

    def takeoff(self) -> Future:
        self.calls.append(("takeoff", ()))
        self.push(TelemetryStream.LANDED_STATE, LandedState.IN_AIR)
        self.rel_alt = self.takeoff_altitude
        self.publish_state()
        return completed_future()

    def land(self) -> Future:
        self.calls.append(("land", ()))
        self.rel_alt = 0.0
        self.publish_state()
        self.push(TelemetryStream.LANDED_STATE, LandedState.ON_GROUND)
        return completed_future()

    def goto_location(self, lat: float, lon: float, altitude_msl_m: float, approach_speed: float) -> Future:
        self.calls.append(("goto_location", (lat, lon, altitude_msl_m, approach_speed)))
        n = len(self.gotos)
        if n in self.fail_goto:
            return failed_future(LinkCommandError("goto_location", self.fail_goto[n]))
        if n in self.hung_gotos:
            fut: Future = Future()
            self.pending.append(fut)
            return fut
        if n not in self.stuck_gotos:
            self.lat, self.lon = lat, lon
            self.rel_alt = altitude_msl_m - self.ground_msl
            self.publish_state()
        return completed_future()

    def set_body_velocity(self, forward_m_s: float, right_m_s: float, down_m_s: float, yaw_rate_deg_s: float) -> Future:
        self.calls.append(("set_body_velocity", (forward_m_s, right_m_s, down_m_s, yaw_rate_deg_s)))
        return completed_future()

    def send_shell(self, text: str) -> Future:
        self.calls.append(("send_shell", (text,)))
        return completed_future()

    def close(self) -> None:
        self.closed = True


@pytest.fixture()
def aggregator():
    tel = TelemetryAggregator()
    tel.start()
    yield tel
    tel.stop()


@pytest.fixture()
def vehicle(aggregator) -> VirtualVehicleLink:
    link = VirtualVehicleLink()
    aggregator.attach(link)
    return link


@pytest.fixture()
def navigator(aggregator, vehicle):
    nav = WaypointNavigator(aggregator, vehicle, cfg={"arrival_timeout_s": 1.0})
    yield nav
    nav.shutdown()
