from __future__ import annotations

import logging
import threading
import time
from collections import deque
from queue import Queue
from typing import Any, Callable, Optional

import numpy as np

from ..core.types import (
    Attitude,
    Health,
    Imu,
    LandedState,
    Position,
    TelemetrySample,
    VehicleStatus,
    VelocityNed,
)
from ..vehicle.api_interface import TelemetryStream, VehicleLink

log = logging.getLogger(__name__)

MAX_NUM_TIMING_SAMPLES = 10

SampleListener = Callable[[TelemetrySample], None]
StatusListener = Callable[[VehicleStatus], None]

_STOP = object()


_EPOCH_MS = time.time() * 1000.0
_MONOTONIC_ORIGIN = time.monotonic()


def _monotonic_epoch_ms() -> float:
    """Epoch milliseconds anchored once at import and advanced by the monotonic clock."""
    return _EPOCH_MS + (time.monotonic() - _MONOTONIC_ORIGIN) * 1000.0


class TelemetryAggregator:
    """Merges the vehicle's independent telemetry streams into coherent samples.

    A sample is emitted on every update once position, velocity and IMU have each been seen at
    least once. The in-progress readings, the interval history, the vehicle status and the latest
    sample share one lock; emission happens inside that critical section so a sample is never built
    from a half-applied update.

    Listeners are not called on producer threads. While the dispatcher thread runs (between
    :meth:`start` and :meth:`stop`) emitted samples and status changes go into a queue that it
    drains in order; otherwise only the latest sample and status are kept.
    """

    def __init__(
        self,
        history_size: int = MAX_NUM_TIMING_SAMPLES,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self._lock = threading.Lock()
        self._clock = clock or _monotonic_epoch_ms

        self._position: Optional[Position] = None
        self._velocity: Optional[VelocityNed] = None
        self._imu: Optional[Imu] = None
        self._attitude: Optional[Attitude] = None
        self._status = VehicleStatus()
        self._latest: Optional[TelemetrySample] = None
        self._intervals: deque[float] = deque(maxlen=max(1, int(history_size)))

        self._listeners: list[SampleListener] = []
        self._status_listeners: list[StatusListener] = []
        self._outbox: Queue[Any] = Queue()
        self._dispatch_thread: Optional[threading.Thread] = None
        self._dispatching = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self) -> None:
        if self._dispatch_thread is not None and self._dispatch_thread.is_alive():
            return
        self._dispatch_thread = threading.Thread(
            target=self._dispatch_loop, name="telemetry-dispatch", daemon=True
        )
        with self._lock:
            self._dispatching = True
        self._dispatch_thread.start()

    def stop(self) -> None:
        thread = self._dispatch_thread
        if thread is None:
            return
        with self._lock:
            self._dispatching = False
        self._outbox.put(_STOP)
        if thread.is_alive():
            thread.join(timeout=2.0)
        self._dispatch_thread = None

    def attach(self, link: VehicleLink) -> None:
        """Subscribe to every telemetry stream of ``link``."""
        link.subscribe(TelemetryStream.POSITION, self.on_position_update)
        link.subscribe(TelemetryStream.VELOCITY_NED, self.on_velocity_update)
        link.subscribe(TelemetryStream.IMU, self.on_imu_update)
        link.subscribe(TelemetryStream.ATTITUDE, self.on_attitude_update)
        link.subscribe(TelemetryStream.ARMED, self.on_armed_update)
        link.subscribe(TelemetryStream.HEALTH, self.on_health_update)
        link.subscribe(TelemetryStream.LANDED_STATE, self.on_landed_state_update)

    def detach(self, link: VehicleLink) -> None:
        link.unsubscribe(TelemetryStream.POSITION, self.on_position_update)
        link.unsubscribe(TelemetryStream.VELOCITY_NED, self.on_velocity_update)
        link.unsubscribe(TelemetryStream.IMU, self.on_imu_update)
        link.unsubscribe(TelemetryStream.ATTITUDE, self.on_attitude_update)
        link.unsubscribe(TelemetryStream.ARMED, self.on_armed_update)
        link.unsubscribe(TelemetryStream.HEALTH, self.on_health_update)
        link.unsubscribe(TelemetryStream.LANDED_STATE, self.on_landed_state_update)

    # ------------------------------------------------------------------
    # Producers
    # ------------------------------------------------------------------
    def on_position_update(self, position: Position, timestamp_ms: Optional[float] = None) -> None:
        with self._lock:
            self._position = position
            self._emit_locked(timestamp_ms)

    def on_velocity_update(self, velocity: VelocityNed, timestamp_ms: Optional[float] = None) -> None:
        with self._lock:
            self._velocity = velocity
            self._emit_locked(timestamp_ms)

    def on_imu_update(self, imu: Imu, timestamp_ms: Optional[float] = None) -> None:
        with self._lock:
            self._imu = imu
            self._emit_locked(timestamp_ms)

    def on_attitude_update(self, attitude: Attitude, timestamp_ms: Optional[float] = None) -> None:
        with self._lock:
            self._attitude = attitude
            self._emit_locked(timestamp_ms)

    def on_armed_update(self, armed: bool) -> None:
        with self._lock:
            if self._status.armed == armed:
                return
            self._status = self._status.model_copy(update={"armed": bool(armed)})
            self._publish_locked("status", self._status)

    def on_health_update(self, health: Health) -> None:
        with self._lock:
            if self._status.health == health:
                return
            self._status = self._status.model_copy(update={"health": health})
            self._publish_locked("status", self._status)

    def on_landed_state_update(self, landed_state: LandedState) -> None:
        with self._lock:
            if self._status.landed_state is landed_state:
                return
            self._status = self._status.model_copy(update={"landed_state": landed_state})
            self._publish_locked("status", self._status)

    def _emit_locked(self, timestamp_ms: Optional[float]) -> None:
        if self._position is None or self._velocity is None or self._imu is None:
            return
        stamp = float(timestamp_ms) if timestamp_ms is not None else float(self._clock())
        if self._latest is not None:
            self._intervals.append((stamp - self._latest.timestamp_ms) / 1000.0)
        sample = TelemetrySample(
            timestamp_ms=stamp,
            position=self._position,
            velocity=self._velocity,
            imu=self._imu,
            attitude=self._attitude,
        )
        self._latest = sample
        self._publish_locked("sample", sample)

    def _publish_locked(self, kind: str, payload: Any) -> None:
        if self._dispatching:
            self._outbox.put((kind, payload))

    # ------------------------------------------------------------------
    # Consumers
    # ------------------------------------------------------------------
    def get_latest(self) -> Optional[TelemetrySample]:
        with self._lock:
            return self._latest

    def get_status(self) -> VehicleStatus:
        with self._lock:
            return self._status

    def get_average_sampling_period(self) -> float:
        """Mean of the recent emission intervals in seconds; 0.0 means no data yet."""
        with self._lock:
            if not self._intervals:
                return 0.0
            return float(np.mean(self._intervals))

    def get_sampling_history(self) -> tuple[float, ...]:
        with self._lock:
            return tuple(self._intervals)

    def add_listener(self, listener: SampleListener) -> None:
        with self._lock:
            self._listeners = [*self._listeners, listener]

    def remove_listener(self, listener: SampleListener) -> None:
        with self._lock:
            self._listeners = [cb for cb in self._listeners if cb != listener]

    def add_status_listener(self, listener: StatusListener) -> None:
        with self._lock:
            self._status_listeners = [*self._status_listeners, listener]

    def remove_status_listener(self, listener: StatusListener) -> None:
        with self._lock:
            self._status_listeners = [cb for cb in self._status_listeners if cb != listener]

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------
    def _dispatch_loop(self) -> None:
        while True:
            item = self._outbox.get()
            if item is _STOP:
                break
            kind, payload = item
            with self._lock:
                listeners = self._status_listeners if kind == "status" else self._listeners
            for listener in listeners:
                try:
                    listener(payload)
                except Exception as exc:
                    log.warning("Telemetry listener %r failed: %s", listener, exc)


__all__ = ["TelemetryAggregator", "MAX_NUM_TIMING_SAMPLES"]
