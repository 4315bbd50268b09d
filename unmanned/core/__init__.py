from .state_machine import NavState, WaypointNavigator
from .types import Mission, NavigationError, NavigationOutcome, OutcomeStatus, TelemetrySample, Waypoint

__all__ = [
    "WaypointNavigator",
    "NavState",
    "Mission",
    "Waypoint",
    "TelemetrySample",
    "NavigationOutcome",
    "OutcomeStatus",
    "NavigationError",
]
