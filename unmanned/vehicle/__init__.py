from .api_interface import (
    LinkClosedError,
    LinkCommandError,
    TelemetryStream,
    VehicleLink,
    completed_future,
    failed_future,
)

__all__ = [
    "LinkClosedError",
    "LinkCommandError",
    "TelemetryStream",
    "VehicleLink",
    "completed_future",
    "failed_future",
]
