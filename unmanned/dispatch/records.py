from __future__ import annotations

from datetime import datetime, timezone

from ..core.types import TelemetrySample

TOKEN_SEPARATOR = ","
BLOCK_SEPARATOR = "\n"

RECORD_FIELDS = (
    "sampleTime",
    "latitude",
    "longitude",
    "altitude",
    "velocityNorth",
    "velocityEast",
    "velocityDown",
    "accelForward",
    "accelRight",
    "accelDown",
    "angularVelForward",
    "angularVelRight",
    "angularVelDown",
    "temperature",
    "magForward",
    "magRight",
    "magDown",
)


def encode_sample(sample: TelemetrySample) -> tuple[float, ...]:
    """Flatten a sample into host record order; sample time is in seconds."""
    pos = sample.position
    vel = sample.velocity
    imu = sample.imu
    acc = imu.acceleration_frd
    gyro = imu.angular_velocity_frd
    mag = imu.magnetic_field_frd
    return (
        sample.timestamp_ms / 1000.0,
        pos.latitude_deg,
        pos.longitude_deg,
        pos.absolute_altitude_m,
        vel.north_m_s,
        vel.east_m_s,
        vel.down_m_s,
        acc.forward,
        acc.right,
        acc.down,
        gyro.forward,
        gyro.right,
        gyro.down,
        imu.temperature_degc,
        mag.forward,
        mag.right,
        mag.down,
    )


def encode_text(sample: TelemetrySample) -> str:
    values = encode_sample(sample)
    stamp = datetime.fromtimestamp(values[0], tz=timezone.utc).isoformat()
    tokens = [stamp] + [repr(float(v)) for v in values[1:]]
    return TOKEN_SEPARATOR.join(tokens) + BLOCK_SEPARATOR


__all__ = ["RECORD_FIELDS", "TOKEN_SEPARATOR", "BLOCK_SEPARATOR", "encode_sample", "encode_text"]
