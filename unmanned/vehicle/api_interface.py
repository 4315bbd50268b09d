from __future__ import annotations

from abc import ABC, abstractmethod
from concurrent.futures import Future
from enum import Enum
from typing import Any, Callable, Optional


class TelemetryStream(Enum):
    POSITION = "position"
    VELOCITY_NED = "velocity_ned"
    IMU = "imu"
    ATTITUDE = "attitude"
    ARMED = "armed"
    HEALTH = "health"
    LANDED_STATE = "landed_state"
    SHELL = "shell"


class LinkCommandError(Exception):
    """A vehicle primitive completed with a failure.

    ``code`` is the vendor result code (MAVLink ``MAV_RESULT``), or ``None`` when the command never
    reached the vehicle.
    """

    def __init__(self, command: str, code: Optional[int] = None, message: str = "") -> None:
        self.command = command
        self.code = code
        self.message = message
        text = f"{command} failed"
        if code is not None:
            text += f" (code {code})"
        if message:
            text += f": {message}"
        super().__init__(text)


class LinkClosedError(LinkCommandError):
    def __init__(self, command: str) -> None:
        super().__init__(command, None, "link closed")


def completed_future() -> Future:
    fut: Future = Future()
    fut.set_result(None)
    return fut


def failed_future(exc: BaseException) -> Future:
    fut: Future = Future()
    fut.set_exception(exc)
    return fut


TelemetryCallback = Callable[[Any], None]


class VehicleLink(ABC):
    """Live connection to one vehicle.

    Telemetry is pushed to callbacks registered with :meth:`subscribe`; callbacks run on the link's
    own threads and must return quickly. Every motion primitive returns a ``Future`` that resolves to
    ``None`` on success or fails with :class:`LinkCommandError`. A caller that gives up waiting
    cancels the future so the link stops tracking it.
    """

    @abstractmethod
    def subscribe(self, stream: TelemetryStream, callback: TelemetryCallback) -> None: ...

    @abstractmethod
    def unsubscribe(self, stream: TelemetryStream, callback: TelemetryCallback) -> None: ...

    @abstractmethod
    def arm(self) -> Future: ...

    @abstractmethod
    def disarm(self) -> Future: ...

    @abstractmethod
    def set_takeoff_altitude(self, altitude_m: float) -> Future: ...

    @abstractmethod
    def takeoff(self) -> Future: ...

    @abstractmethod
    def land(self) -> Future: ...

    @abstractmethod
    def goto_location(self, lat: float, lon: float, altitude_msl_m: float, approach_speed: float) -> Future: ...

    @abstractmethod
    def set_body_velocity(self, forward_m_s: float, right_m_s: float, down_m_s: float, yaw_rate_deg_s: float) -> Future: ...

    @abstractmethod
    def send_shell(self, text: str) -> Future: ...

    @abstractmethod
    def close(self) -> None: ...


__all__ = [
    "TelemetryStream",
    "TelemetryCallback",
    "VehicleLink",
    "LinkCommandError",
    "LinkClosedError",
    "completed_future",
    "failed_future",
]
