from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import CancelledError, Future, ThreadPoolExecutor
from enum import Enum
from typing import Callable, Optional

from ..core.types import (
    HomePosition,
    LandedState,
    Mission,
    NavigationError,
    NavigationOutcome,
    TelemetrySample,
    VehicleStatus,
    Waypoint,
)
from ..telemetry.aggregator import TelemetryAggregator
from ..utils.geo import ARRIVAL_TOLERANCE_DEG, altitude_msl, distance_m, position_within_tolerance
from ..vehicle.api_interface import LinkCommandError, VehicleLink, failed_future

log = logging.getLogger(__name__)

# DO_REPOSITION ground speed; -1 leaves the vehicle's cruise speed in place
DEFAULT_APPROACH_SPEED = -1.0
DEFAULT_ARRIVAL_TIMEOUT_S = 120.0
_POLL_S = 0.1


class NavState(Enum):
    IDLE = 0
    ARMING = 1
    TAKING_OFF = 2
    EN_ROUTE = 3
    HOVERING = 4
    RETURNING_HOME = 5
    LANDING = 6
    DONE = 7


class _Operation:
    def __init__(self, name: str, link: VehicleLink) -> None:
        self.name = name
        self.link = link
        self.cancelled = threading.Event()
        self.wakeup = threading.Event()

    def cancel(self) -> None:
        self.cancelled.set()
        self.wakeup.set()


class WaypointNavigator:
    """Drives the vehicle through motion goals and reports one :class:`NavigationOutcome` each.

    Operations block the calling thread and are serialized: a second request waits for the one in
    flight. Forward legs finish only when the goto command has completed *and* a telemetry sample
    puts the vehicle within the arrival tolerance of the target. Return-to-start legs finish on
    command completion alone.

    Every wait is bounded by ``arrival_timeout_s`` and is interrupted by :meth:`cancel`. Cancelling
    does not retract a command the vehicle already accepted.
    """

    def __init__(
        self,
        telemetry: TelemetryAggregator,
        link: Optional[VehicleLink] = None,
        cfg: Optional[dict] = None,
    ) -> None:
        self.telemetry = telemetry
        self.link = link
        self.cfg = cfg or {}
        self.tolerance_deg = float(self.cfg.get("arrival_tolerance_deg", ARRIVAL_TOLERANCE_DEG))
        self.approach_speed = float(self.cfg.get("approach_speed_m_s", DEFAULT_APPROACH_SPEED))
        self.arrival_timeout_s = float(self.cfg.get("arrival_timeout_s", DEFAULT_ARRIVAL_TIMEOUT_S))
        self.takeoff_margin_m = float(self.cfg.get("takeoff_altitude_margin_m", 0.0))
        self.state = NavState.IDLE
        self.last_outcome: Optional[NavigationOutcome] = None
        self._op_lock = threading.Lock()
        self._current: Optional[_Operation] = None
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="navigator")

    # ------------------------------------------------------------------
    # Link management
    # ------------------------------------------------------------------
    def attach_link(self, link: VehicleLink) -> None:
        self.link = link

    def detach_link(self) -> None:
        self.link = None
        self.cancel()

    def shutdown(self) -> None:
        self.cancel()
        self._executor.shutdown(wait=False, cancel_futures=True)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------
    def goto_one(self, target: Waypoint, return_to_start: bool = False) -> NavigationOutcome:
        return self._run("goto", lambda op: self._goto_one(op, target, return_to_start))

    def run_mission(self, mission: Mission) -> NavigationOutcome:
        return self._run("mission", lambda op: self._run_mission(op, mission))

    def takeoff(self, altitude_agl_m: float) -> NavigationOutcome:
        return self._run("takeoff", lambda op: self._takeoff(op, altitude_agl_m))

    def land(self, disarm: bool = True) -> NavigationOutcome:
        return self._run("land", lambda op: self._land(op, disarm))

    def submit_goto(self, target: Waypoint, return_to_start: bool = False) -> Future:
        return self._executor.submit(self.goto_one, target, return_to_start)

    def submit_mission(self, mission: Mission) -> Future:
        return self._executor.submit(self.run_mission, mission)

    def cancel(self) -> bool:
        """Stop waiting on the operation in flight. Returns False when nothing was running."""
        op = self._current
        if op is None:
            return False
        log.info("Cancelling %s", op.name)
        op.cancel()
        return True

    @property
    def busy(self) -> bool:
        return self._current is not None

    def _run(self, name: str, body: Callable[[_Operation], NavigationOutcome]) -> NavigationOutcome:
        with self._op_lock:
            link = self.link
            if link is None:
                outcome = NavigationOutcome.failed(
                    NavigationError.NOT_INITIALIZED, "Unmanned System not initialized"
                )
            else:
                op = _Operation(name, link)
                self._current = op
                self.state = NavState.IDLE
                try:
                    outcome = body(op)
                finally:
                    self._current = None
            self.state = NavState.DONE
            self.last_outcome = outcome
        if outcome.ok:
            log.info("%s finished: %s", name, outcome)
        else:
            log.warning("%s finished: %s", name, outcome)
        return outcome

    # ------------------------------------------------------------------
    # Operation bodies
    # ------------------------------------------------------------------
    def _goto_one(self, op: _Operation, target: Waypoint, return_to_start: bool) -> NavigationOutcome:
        sample = self.telemetry.get_latest()
        if sample is None:
            return NavigationOutcome.failed(NavigationError.NOT_READY, "no telemetry yet")
        alt_msl = altitude_msl(target.alt_agl_m, sample.position)
        log.info(
            "Terrain offset %.1f m, target altitude %.1f m MSL",
            sample.position.absolute_altitude_m - sample.position.relative_altitude_m,
            alt_msl,
        )
        home = HomePosition(lat=sample.position.latitude_deg, lon=sample.position.longitude_deg)

        failure = self._leg(op, target, alt_msl)
        if failure is not None:
            return failure
        if return_to_start:
            failure = self._return_home(op, home, alt_msl)
            if failure is not None:
                return failure
        return NavigationOutcome.arrived()

    def _run_mission(self, op: _Operation, mission: Mission) -> NavigationOutcome:
        sample = self.telemetry.get_latest()
        if sample is None:
            return NavigationOutcome.failed(NavigationError.NOT_READY, "no telemetry yet")
        home = HomePosition(lat=sample.position.latitude_deg, lon=sample.position.longitude_deg)
        # Fixed from the first waypoint for every leg.
        alt_msl = altitude_msl(mission.points[0].alt_agl_m, sample.position)
        log.info(
            "Starting mission %s: %d legs at %.1f m MSL",
            mission.name or "<unnamed>",
            len(mission.points),
            alt_msl,
        )

        for leg, point in enumerate(mission.points, start=1):
            log.info("Mission leg %d/%d", leg, len(mission.points))
            failure = self._leg(op, point, alt_msl)
            if failure is not None:
                return failure.for_leg(leg) if failure.error is not None else failure

        log.info("Mission complete")
        if mission.return_to_start:
            failure = self._return_home(op, home, alt_msl)
            if failure is not None:
                return failure
        return NavigationOutcome.arrived()

    def _leg(self, op: _Operation, point: Waypoint, alt_msl: float) -> Optional[NavigationOutcome]:
        self.state = NavState.EN_ROUTE
        latest = self.telemetry.get_latest()
        if latest is not None:
            log.info(
                "Moving to lat=%.7f lon=%.7f alt=%.1f m MSL (%.1f m away)",
                point.lat,
                point.lon,
                alt_msl,
                distance_m(latest.position.latitude_deg, latest.position.longitude_deg, point.lat, point.lon),
            )

        def arrived(sample: TelemetrySample) -> bool:
            return position_within_tolerance(sample.position, point.lat, point.lon, self.tolerance_deg)

        failure = self._await(
            op,
            lambda: op.link.goto_location(point.lat, point.lon, alt_msl, self.approach_speed),
            sample_condition=arrived,
        )
        if failure is not None:
            return failure
        log.info("Reached lat=%.7f lon=%.7f", point.lat, point.lon)
        if point.hover_s > 0:
            self.state = NavState.HOVERING
            log.info("Hovering for %.1f s", point.hover_s)
            if op.cancelled.wait(point.hover_s):
                return NavigationOutcome.cancelled()
        return None

    def _return_home(self, op: _Operation, home: HomePosition, alt_msl: float) -> Optional[NavigationOutcome]:
        self.state = NavState.RETURNING_HOME
        log.info("Moving back to home lat=%.7f lon=%.7f", home.lat, home.lon)
        failure = self._await(
            op, lambda: op.link.goto_location(home.lat, home.lon, alt_msl, self.approach_speed)
        )
        if failure is not None and failure.error is not None:
            return NavigationOutcome.failed(
                failure.error, f"return to start: {failure.detail}", code=failure.code
            )
        return failure

    def _takeoff(self, op: _Operation, altitude_agl_m: float) -> NavigationOutcome:
        self.state = NavState.ARMING
        log.info("Arming")
        failure = self._await(op, op.link.arm)
        if failure is None:
            log.info("Setting takeoff altitude AGL: %.1f m", altitude_agl_m)
            failure = self._await(op, lambda: op.link.set_takeoff_altitude(altitude_agl_m))
        if failure is not None:
            return failure

        self.state = NavState.TAKING_OFF
        threshold = altitude_agl_m - self.takeoff_margin_m

        def climbed(sample: TelemetrySample) -> bool:
            return sample.position.relative_altitude_m >= threshold

        failure = self._await(op, op.link.takeoff, sample_condition=climbed)
        if failure is not None:
            return failure
        log.info("Reached takeoff altitude")
        return NavigationOutcome.arrived()

    def _land(self, op: _Operation, disarm: bool) -> NavigationOutcome:
        self.state = NavState.LANDING
        log.info("Landing")

        def on_ground(status: VehicleStatus) -> bool:
            return status.landed_state is LandedState.ON_GROUND

        failure = self._await(op, op.link.land, status_condition=on_ground)
        if failure is not None:
            return failure
        log.info("Landed")
        if disarm:
            if self.telemetry.get_status().armed is False:
                log.info("System already disarmed")
            else:
                log.info("Disarming")
                failure = self._await(op, op.link.disarm)
                if failure is not None:
                    return failure
        return NavigationOutcome.arrived()

    # ------------------------------------------------------------------
    # Waiting
    # ------------------------------------------------------------------
    def _await(
        self,
        op: _Operation,
        issue: Callable[[], Future],
        sample_condition: Optional[Callable[[TelemetrySample], bool]] = None,
        status_condition: Optional[Callable[[VehicleStatus], bool]] = None,
    ) -> Optional[NavigationOutcome]:
        """Issue a command and wait for its completion plus an optional telemetry condition.

        The condition is only evaluated once the command has completed: first against the current
        telemetry, then against every later update. Returns ``None`` on success.
        """
        completed = threading.Event()
        satisfied = threading.Event()

        def on_sample(sample: TelemetrySample) -> None:
            if completed.is_set() and sample_condition is not None and sample_condition(sample):
                satisfied.set()
                op.wakeup.set()

        def on_status(status: VehicleStatus) -> None:
            if completed.is_set() and status_condition is not None and status_condition(status):
                satisfied.set()
                op.wakeup.set()

        def on_done(_fut: Future) -> None:
            completed.set()
            if sample_condition is not None:
                latest = self.telemetry.get_latest()
                if latest is not None and sample_condition(latest):
                    satisfied.set()
            if status_condition is not None and status_condition(self.telemetry.get_status()):
                satisfied.set()
            op.wakeup.set()

        if sample_condition is not None:
            self.telemetry.add_listener(on_sample)
        if status_condition is not None:
            self.telemetry.add_status_listener(on_status)
        future: Optional[Future] = None
        try:
            try:
                future = issue()
            except LinkCommandError as exc:
                future = failed_future(exc)
            future.add_done_callback(on_done)

            deadline = time.monotonic() + self.arrival_timeout_s
            needs_condition = sample_condition is not None or status_condition is not None
            while True:
                op.wakeup.clear()
                if op.cancelled.is_set():
                    return NavigationOutcome.cancelled()
                if future.done():
                    failure = self._command_failure(future)
                    if failure is not None:
                        return failure
                    if not needs_condition or satisfied.is_set():
                        return None
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    waiting_for = "arrival" if future.done() else "command completion"
                    return NavigationOutcome.failed(
                        NavigationError.TIMEOUT,
                        f"no {waiting_for} within {self.arrival_timeout_s:.0f} s",
                    )
                op.wakeup.wait(min(remaining, _POLL_S))
        finally:
            # release a command we stopped waiting for so the link can drop it
            if future is not None and not future.done():
                future.cancel()
            if sample_condition is not None:
                self.telemetry.remove_listener(on_sample)
            if status_condition is not None:
                self.telemetry.remove_status_listener(on_status)

    @staticmethod
    def _command_failure(future: Future) -> Optional[NavigationOutcome]:
        try:
            exc = future.exception()
        except CancelledError:
            return NavigationOutcome.failed(NavigationError.LINK_FAILURE, "command cancelled by link")
        if exc is None:
            return None
        code = getattr(exc, "code", None)
        return NavigationOutcome.failed(NavigationError.LINK_FAILURE, str(exc), code=code)


__all__ = ["WaypointNavigator", "NavState", "DEFAULT_APPROACH_SPEED", "DEFAULT_ARRIVAL_TIMEOUT_S"]
