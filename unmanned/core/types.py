from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


class Position(_Frozen):
    latitude_deg: float
    longitude_deg: float
    absolute_altitude_m: float
    relative_altitude_m: float


class VelocityNed(_Frozen):
    north_m_s: float
    east_m_s: float
    down_m_s: float


class Vector3(_Frozen):
    """Forward/right/down (FRD) body-frame vector."""

    forward: float
    right: float
    down: float


class Imu(_Frozen):
    acceleration_frd: Vector3
    angular_velocity_frd: Vector3
    magnetic_field_frd: Vector3
    temperature_degc: float


class Attitude(_Frozen):
    roll_deg: float
    pitch_deg: float
    yaw_deg: float


class Health(_Frozen):
    gyrometer_ok: bool
    accelerometer_ok: bool
    magnetometer_ok: bool
    global_position_ok: bool


class LandedState(Enum):
    """Mirrors MAV_LANDED_STATE."""

    UNDEFINED = 0
    ON_GROUND = 1
    IN_AIR = 2
    TAKING_OFF = 3
    LANDING = 4


class VehicleStatus(_Frozen):
    armed: Optional[bool] = None
    landed_state: LandedState = LandedState.UNDEFINED
    health: Optional[Health] = None


class TelemetrySample(_Frozen):
    """Merged snapshot of the latest position, velocity, IMU and attitude readings.

    ``timestamp_ms`` is the emission time in milliseconds. ``attitude`` stays ``None`` until the
    attitude stream has delivered at least once.
    """

    timestamp_ms: float
    position: Position
    velocity: VelocityNed
    imu: Imu
    attitude: Optional[Attitude] = None


class Waypoint(_Frozen):
    """Mission waypoint; altitude is above ground at the point of departure."""

    lat: float
    lon: float
    alt_agl_m: float = 30.0
    hover_s: float = Field(default=0.0, ge=0.0)


class Mission(_Frozen):
    points: Tuple[Waypoint, ...] = Field(min_length=1)
    return_to_start: bool = False
    name: Optional[str] = None


class HomePosition(_Frozen):
    lat: float
    lon: float


class OutcomeStatus(Enum):
    ARRIVED = "arrived"
    CANCELLED = "cancelled"
    FAILED = "failed"


class NavigationError(Enum):
    NOT_READY = "not_ready"
    LINK_FAILURE = "link_failure"
    TIMEOUT = "timeout"
    NOT_INITIALIZED = "not_initialized"


@dataclass(frozen=True)
class NavigationOutcome:
    """Terminal result of one navigation operation.

    ``leg`` is the 1-based index of the mission leg that failed, when the failure happened on a
    mission leg. ``code`` carries the vendor result code for link failures.
    """

    status: OutcomeStatus
    error: Optional[NavigationError] = None
    code: Optional[int] = None
    leg: Optional[int] = None
    detail: str = ""

    @classmethod
    def arrived(cls) -> "NavigationOutcome":
        return cls(OutcomeStatus.ARRIVED)

    @classmethod
    def cancelled(cls) -> "NavigationOutcome":
        return cls(OutcomeStatus.CANCELLED, detail="cancelled")

    @classmethod
    def failed(
        cls, error: NavigationError, detail: str = "", code: Optional[int] = None
    ) -> "NavigationOutcome":
        return cls(OutcomeStatus.FAILED, error=error, code=code, detail=detail)

    @property
    def ok(self) -> bool:
        return self.status is OutcomeStatus.ARRIVED

    def for_leg(self, leg: int) -> "NavigationOutcome":
        return replace(self, leg=leg)

    def __str__(self) -> str:
        parts = [self.status.value]
        if self.error is not None:
            parts.append(self.error.value)
        if self.code is not None:
            parts.append(f"code={self.code}")
        if self.leg is not None:
            parts.append(f"leg={self.leg}")
        if self.detail:
            parts.append(self.detail)
        return " ".join(parts)
