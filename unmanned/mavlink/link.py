from __future__ import annotations

import logging
import math
import threading
import time
from collections import deque
from concurrent.futures import Future, InvalidStateError
from typing import Any, Optional

from pymavlink import mavutil  # type: ignore[import]

from ..core.types import Attitude, Health, Imu, LandedState, Position, Vector3, VelocityNed
from ..vehicle.api_interface import (
    LinkClosedError,
    LinkCommandError,
    TelemetryCallback,
    TelemetryStream,
    VehicleLink,
    completed_future,
    failed_future,
)

log = logging.getLogger(__name__)

_G = 9.80665
_SHELL_CHUNK = 70

# Mode the vehicle must be in to follow velocity setpoints.
_PX4_MAIN_MODE_OFFBOARD = 6
_ARDUPILOT_GUIDED = 4
_ARDUPILOT_GUIDED_BY_TYPE = {
    mavutil.mavlink.MAV_TYPE_FIXED_WING: 15,
    mavutil.mavlink.MAV_TYPE_GROUND_ROVER: 15,
    mavutil.mavlink.MAV_TYPE_SURFACE_BOAT: 15,
}

_VELOCITY_ONLY_MASK = (
    mavutil.mavlink.POSITION_TARGET_TYPEMASK_X_IGNORE
    | mavutil.mavlink.POSITION_TARGET_TYPEMASK_Y_IGNORE
    | mavutil.mavlink.POSITION_TARGET_TYPEMASK_Z_IGNORE
    | mavutil.mavlink.POSITION_TARGET_TYPEMASK_AX_IGNORE
    | mavutil.mavlink.POSITION_TARGET_TYPEMASK_AY_IGNORE
    | mavutil.mavlink.POSITION_TARGET_TYPEMASK_AZ_IGNORE
    | mavutil.mavlink.POSITION_TARGET_TYPEMASK_YAW_IGNORE
)


class MavlinkVehicleLink(VehicleLink):
    """VehicleLink over a pymavlink connection (UDP, TCP or serial).

    A reader thread decodes incoming messages into telemetry values and command acknowledgements;
    an IO thread keeps our own heartbeat going. Commands that the vehicle acknowledges with
    COMMAND_ACK resolve their future from that ACK; fire-and-forget messages resolve as soon as
    they are written.
    """

    def __init__(
        self,
        url: str,
        *,
        target_system: int = 0,
        target_component: int = mavutil.mavlink.MAV_COMP_ID_AUTOPILOT1,
        source_system: int = 245,
        source_component: int = mavutil.mavlink.MAV_COMP_ID_ONBOARD_COMPUTER,
        heartbeat_rate_hz: float = 1.0,
        telemetry_rate_hz: float = 4.0,
        imu_rate_hz: float = 0.5,
    ) -> None:
        self.url = url
        self.target_system = int(target_system)
        self.target_component = int(target_component)
        self.source_system = int(source_system)
        self.source_component = int(source_component)
        self.heartbeat_period = 1.0 / max(heartbeat_rate_hz, 0.1)
        self.telemetry_rate_hz = float(telemetry_rate_hz)
        self.imu_rate_hz = float(imu_rate_hz)

        self._conn: Optional[Any] = None
        self._read_thread: Optional[threading.Thread] = None
        self._io_thread: Optional[threading.Thread] = None
        self._running = False
        self._boot_time = time.time()
        self._vehicle_seen = threading.Event()
        self._send_lock = threading.Lock()

        self._subscribers: dict[TelemetryStream, list[TelemetryCallback]] = {s: [] for s in TelemetryStream}
        self._subscribers_lock = threading.Lock()

        self._pending: dict[int, deque[tuple[str, Future]]] = {}
        self._pending_lock = threading.Lock()
        self._takeoff_altitude_m = 2.5
        self.autopilot: Optional[int] = None
        self.vehicle_type: Optional[int] = None
        self.custom_mode: Optional[int] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self) -> None:
        if self._running:
            return
        log.info("Opening MAVLink connection %s", self.url)
        self._conn = mavutil.mavlink_connection(
            self.url,
            source_system=self.source_system,
            source_component=self.source_component,
            autoreconnect=True,
        )
        self._running = True
        self._read_thread = threading.Thread(target=self._read_loop, name="mavlink-read", daemon=True)
        self._io_thread = threading.Thread(target=self._io_loop, name="mavlink-io", daemon=True)
        self._read_thread.start()
        self._io_thread.start()

    def wait_connected(self, timeout: Optional[float] = None) -> bool:
        """Block until a heartbeat from the vehicle has been seen."""
        return self._vehicle_seen.wait(timeout)

    @property
    def connected(self) -> bool:
        return self._vehicle_seen.is_set()

    def close(self) -> None:
        if not self._running:
            return
        log.info("Closing MAVLink connection %s", self.url)
        self._running = False
        self._vehicle_seen.clear()
        if self._read_thread and self._read_thread.is_alive():
            self._read_thread.join(timeout=2.0)
        if self._io_thread and self._io_thread.is_alive():
            self._io_thread.join(timeout=2.0)
        with self._pending_lock:
            pending = [entry for queue in self._pending.values() for entry in queue]
            self._pending.clear()
        for name, fut in pending:
            _settle(fut, LinkClosedError(name))
        if self._conn is not None:
            try:
                self._conn.close()
            except OSError as exc:  # pragma: no cover - transport dependent
                log.debug("Error closing MAVLink connection: %s", exc)
        self._conn = None

    # ------------------------------------------------------------------
    # Telemetry subscriptions
    # ------------------------------------------------------------------
    def subscribe(self, stream: TelemetryStream, callback: TelemetryCallback) -> None:
        with self._subscribers_lock:
            self._subscribers[stream] = [*self._subscribers[stream], callback]

    def unsubscribe(self, stream: TelemetryStream, callback: TelemetryCallback) -> None:
        with self._subscribers_lock:
            self._subscribers[stream] = [cb for cb in self._subscribers[stream] if cb != callback]

    def _publish(self, stream: TelemetryStream, value: Any) -> None:
        with self._subscribers_lock:
            callbacks = self._subscribers[stream]
        for cb in callbacks:
            try:
                cb(value)
            except Exception as exc:
                log.warning("%s subscriber failed: %s", stream.value, exc)

    # ------------------------------------------------------------------
    # Motion primitives
    # ------------------------------------------------------------------
    def arm(self) -> Future:
        return self._command_long("arm", mavutil.mavlink.MAV_CMD_COMPONENT_ARM_DISARM, 1)

    def disarm(self) -> Future:
        return self._command_long("disarm", mavutil.mavlink.MAV_CMD_COMPONENT_ARM_DISARM, 0)

    def set_takeoff_altitude(self, altitude_m: float) -> Future:
        self._takeoff_altitude_m = float(altitude_m)
        return completed_future()

    def takeoff(self) -> Future:
        # Altitude relative to home, as ArduPilot interprets NAV_TAKEOFF param7.
        return self._command_long(
            "takeoff", mavutil.mavlink.MAV_CMD_NAV_TAKEOFF, 0, 0, 0, math.nan, 0, 0, self._takeoff_altitude_m
        )

    def land(self) -> Future:
        return self._command_long("land", mavutil.mavlink.MAV_CMD_NAV_LAND, 0, 0, 0, math.nan, 0, 0, 0)

    def goto_location(self, lat: float, lon: float, altitude_msl_m: float, approach_speed: float) -> Future:
        return self._command_int(
            "goto_location",
            mavutil.mavlink.MAV_CMD_DO_REPOSITION,
            frame=mavutil.mavlink.MAV_FRAME_GLOBAL,
            param1=float(approach_speed),
            param2=mavutil.mavlink.MAV_DO_REPOSITION_FLAGS_CHANGE_MODE,
            param4=math.nan,
            x=int(lat * 1e7),
            y=int(lon * 1e7),
            z=float(altitude_msl_m),
        )

    def set_body_velocity(self, forward_m_s: float, right_m_s: float, down_m_s: float, yaw_rate_deg_s: float) -> Future:
        """Stream one body-frame velocity setpoint.

        The setpoint goes out first so the autopilot accepts the mode switch that follows when the
        vehicle is not yet in its offboard mode (OFFBOARD on PX4, GUIDED on ArduPilot).
        """
        fut = self._send_now(
            "set_body_velocity",
            "set_position_target_local_ned_send",
            self._time_boot_ms(),
            self.target_system,
            self.target_component,
            mavutil.mavlink.MAV_FRAME_BODY_NED,
            _VELOCITY_ONLY_MASK,
            0,
            0,
            0,
            float(forward_m_s),
            float(right_m_s),
            float(down_m_s),
            0,
            0,
            0,
            0,
            math.radians(yaw_rate_deg_s),
        )
        if fut.exception() is not None or self.offboard_active:
            return fut
        return self.start_offboard()

    @property
    def offboard_active(self) -> bool:
        """True when the last vehicle heartbeat reported the offboard mode."""
        if self.custom_mode is None:
            return False
        if self.autopilot == mavutil.mavlink.MAV_AUTOPILOT_ARDUPILOTMEGA:
            return self.custom_mode == self._offboard_custom_mode()
        return (self.custom_mode >> 16) & 0xFF == _PX4_MAIN_MODE_OFFBOARD

    def start_offboard(self) -> Future:
        log.info("Switching vehicle to offboard mode (custom mode %d)", self._offboard_custom_mode())
        return self._command_long(
            "set_offboard_mode",
            mavutil.mavlink.MAV_CMD_DO_SET_MODE,
            mavutil.mavlink.MAV_MODE_FLAG_CUSTOM_MODE_ENABLED,
            self._offboard_custom_mode(),
        )

    def _offboard_custom_mode(self) -> int:
        if self.autopilot == mavutil.mavlink.MAV_AUTOPILOT_ARDUPILOTMEGA:
            return _ARDUPILOT_GUIDED_BY_TYPE.get(self.vehicle_type, _ARDUPILOT_GUIDED)
        # PX4 packs the main mode into bits 16..23
        return _PX4_MAIN_MODE_OFFBOARD << 16

    def send_shell(self, text: str) -> Future:
        if not text.endswith("\n"):
            text += "\n"
        payload = text.encode("utf-8")
        flags = mavutil.mavlink.SERIAL_CONTROL_FLAG_EXCLUSIVE | mavutil.mavlink.SERIAL_CONTROL_FLAG_RESPOND
        fut: Future = completed_future()
        for start in range(0, len(payload), _SHELL_CHUNK):
            chunk = payload[start : start + _SHELL_CHUNK]
            data = list(chunk) + [0] * (_SHELL_CHUNK - len(chunk))
            fut = self._send_now(
                "shell",
                "serial_control_send",
                mavutil.mavlink.SERIAL_CONTROL_DEV_SHELL,
                flags,
                0,
                0,
                len(chunk),
                data,
            )
            if fut.exception() is not None:
                break
        return fut

    def set_message_rate(self, message_id: int, rate_hz: float) -> Future:
        interval_us = int(1e6 / rate_hz) if rate_hz > 0 else -1
        return self._command_long(
            "set_message_interval",
            mavutil.mavlink.MAV_CMD_SET_MESSAGE_INTERVAL,
            message_id,
            interval_us,
            supersede=False,
        )

    # ------------------------------------------------------------------
    # Internal loops
    # ------------------------------------------------------------------
    def _read_loop(self) -> None:
        assert self._conn is not None
        while self._running:
            try:
                msg = self._conn.recv_match(blocking=True, timeout=0.5)
            except Exception as exc:  # pragma: no cover - transport error
                log.debug("MAVLink recv error: %s", exc)
                continue
            if not self._running:
                break
            if msg is None:
                continue
            msg_type = msg.get_type()
            if msg_type == "BAD_DATA":
                continue
            if self.target_system and msg.get_srcSystem() != self.target_system:
                continue
            handler_name = f"_handle_{msg_type.lower()}"
            handler = getattr(self, handler_name, None)
            if handler:
                try:
                    handler(msg)
                except Exception as exc:  # pragma: no cover - handler bug
                    log.warning("MAVLink handler %s failed: %s", handler_name, exc)

    def _io_loop(self) -> None:
        last_hb = 0.0
        while self._running:
            now = time.time()
            if now - last_hb >= self.heartbeat_period:
                self._send_heartbeat()
                last_hb = now
            time.sleep(0.05)

    # ------------------------------------------------------------------
    # Message handlers
    # ------------------------------------------------------------------
    def _handle_heartbeat(self, msg) -> None:
        if msg.type == mavutil.mavlink.MAV_TYPE_GCS or msg.autopilot == mavutil.mavlink.MAV_AUTOPILOT_INVALID:
            return
        if not self._vehicle_seen.is_set():
            if not self.target_system:
                self.target_system = msg.get_srcSystem()
            log.info("Vehicle connection detected (system=%d)", self.target_system)
            self._vehicle_seen.set()
            self._request_streams()
        self.autopilot = int(msg.autopilot)
        self.vehicle_type = int(msg.type)
        self.custom_mode = int(msg.custom_mode)
        self._publish(TelemetryStream.ARMED, bool(msg.base_mode & mavutil.mavlink.MAV_MODE_FLAG_SAFETY_ARMED))

    def _handle_global_position_int(self, msg) -> None:
        self._publish(
            TelemetryStream.POSITION,
            Position(
                latitude_deg=msg.lat / 1e7,
                longitude_deg=msg.lon / 1e7,
                absolute_altitude_m=msg.alt / 1000.0,
                relative_altitude_m=msg.relative_alt / 1000.0,
            ),
        )
        self._publish(
            TelemetryStream.VELOCITY_NED,
            VelocityNed(north_m_s=msg.vx / 100.0, east_m_s=msg.vy / 100.0, down_m_s=msg.vz / 100.0),
        )

    def _handle_highres_imu(self, msg) -> None:
        self._publish(
            TelemetryStream.IMU,
            Imu(
                acceleration_frd=Vector3(forward=msg.xacc, right=msg.yacc, down=msg.zacc),
                angular_velocity_frd=Vector3(forward=msg.xgyro, right=msg.ygyro, down=msg.zgyro),
                magnetic_field_frd=Vector3(forward=msg.xmag, right=msg.ymag, down=msg.zmag),
                temperature_degc=msg.temperature,
            ),
        )

    def _handle_scaled_imu(self, msg) -> None:
        # mG, mrad/s, mgauss, cdegC
        self._publish(
            TelemetryStream.IMU,
            Imu(
                acceleration_frd=Vector3(
                    forward=msg.xacc * _G / 1000.0, right=msg.yacc * _G / 1000.0, down=msg.zacc * _G / 1000.0
                ),
                angular_velocity_frd=Vector3(
                    forward=msg.xgyro / 1000.0, right=msg.ygyro / 1000.0, down=msg.zgyro / 1000.0
                ),
                magnetic_field_frd=Vector3(
                    forward=msg.xmag / 1000.0, right=msg.ymag / 1000.0, down=msg.zmag / 1000.0
                ),
                temperature_degc=getattr(msg, "temperature", 0) / 100.0,
            ),
        )

    def _handle_attitude(self, msg) -> None:
        self._publish(
            TelemetryStream.ATTITUDE,
            Attitude(
                roll_deg=math.degrees(msg.roll),
                pitch_deg=math.degrees(msg.pitch),
                yaw_deg=math.degrees(msg.yaw),
            ),
        )

    def _handle_sys_status(self, msg) -> None:
        bits = msg.onboard_control_sensors_health
        self._publish(
            TelemetryStream.HEALTH,
            Health(
                gyrometer_ok=bool(bits & mavutil.mavlink.MAV_SYS_STATUS_SENSOR_3D_GYRO),
                accelerometer_ok=bool(bits & mavutil.mavlink.MAV_SYS_STATUS_SENSOR_3D_ACCEL),
                magnetometer_ok=bool(bits & mavutil.mavlink.MAV_SYS_STATUS_SENSOR_3D_MAG),
                global_position_ok=bool(bits & mavutil.mavlink.MAV_SYS_STATUS_SENSOR_GPS),
            ),
        )

    def _handle_extended_sys_state(self, msg) -> None:
        try:
            state = LandedState(int(msg.landed_state))
        except ValueError:
            state = LandedState.UNDEFINED
        self._publish(TelemetryStream.LANDED_STATE, state)

    def _handle_command_ack(self, msg) -> None:
        command = int(msg.command)
        result = int(msg.result)
        if result == mavutil.mavlink.MAV_RESULT_IN_PROGRESS:
            return
        entry = None
        with self._pending_lock:
            queue = self._pending.get(command)
            while queue:
                candidate = queue.popleft()
                if not candidate[1].done():
                    entry = candidate
                    break
        if entry is None:
            log.debug("Unsolicited COMMAND_ACK for command %d (result %d)", command, result)
            return
        name, fut = entry
        if result == mavutil.mavlink.MAV_RESULT_ACCEPTED:
            log.debug("%s accepted", name)
            _settle(fut)
        else:
            log.warning("%s rejected by vehicle (result %d)", name, result)
            _settle(fut, LinkCommandError(name, result))

    def _handle_serial_control(self, msg) -> None:
        count = int(msg.count)
        if count <= 0:
            return
        text = bytes(msg.data[:count]).decode("utf-8", errors="replace")
        log.debug("Shell: %s", text.rstrip())
        self._publish(TelemetryStream.SHELL, text)

    # ------------------------------------------------------------------
    # Command helpers
    # ------------------------------------------------------------------
    def _request_streams(self) -> None:
        rates = (
            (mavutil.mavlink.MAVLINK_MSG_ID_GLOBAL_POSITION_INT, self.telemetry_rate_hz),
            (mavutil.mavlink.MAVLINK_MSG_ID_ATTITUDE, self.telemetry_rate_hz),
            (mavutil.mavlink.MAVLINK_MSG_ID_EXTENDED_SYS_STATE, 1.0),
            (mavutil.mavlink.MAVLINK_MSG_ID_SYS_STATUS, 1.0),
            (mavutil.mavlink.MAVLINK_MSG_ID_HIGHRES_IMU, self.imu_rate_hz),
        )
        for message_id, rate in rates:
            self.set_message_rate(message_id, rate).add_done_callback(
                lambda f, mid=message_id: self._log_rate_result(mid, f)
            )

    @staticmethod
    def _log_rate_result(message_id: int, fut: Future) -> None:
        exc = fut.exception()
        if exc is not None:
            log.info("Message rate for id %d not set: %s", message_id, exc)

    def _register(self, name: str, command: int, supersede: bool = True) -> Future:
        """Track a command until its COMMAND_ACK arrives.

        COMMAND_ACK only names the command id, so a new request for the same id fails any earlier
        one still waiting, unless ``supersede`` is False (requests the vehicle answers in order).
        A caller that stops waiting may ``cancel()`` the future; it is then forgotten.
        """
        fut: Future = Future()
        with self._pending_lock:
            queue = self._pending.setdefault(command, deque())
            stale = list(queue) if supersede else []
            if supersede:
                queue.clear()
            queue.append((name, fut))
        for old_name, old in stale:
            if not old.done():
                log.info("%s superseded by %s before it was acknowledged", old_name, name)
                _settle(old, LinkCommandError(old_name, None, f"superseded by {name}"))
        fut.add_done_callback(lambda f, c=command: self._unregister(c, f))
        return fut

    def _unregister(self, command: int, fut: Future) -> None:
        with self._pending_lock:
            queue = self._pending.get(command)
            if queue:
                self._pending[command] = deque(entry for entry in queue if entry[1] is not fut)

    def _command_long(self, name: str, command: int, *params: float, supersede: bool = True) -> Future:
        padded = list(params) + [0.0] * (7 - len(params))
        fut = self._register(name, command, supersede)
        try:
            self._send(
                "command_long_send",
                self.target_system,
                self.target_component,
                command,
                0,
                *padded,
            )
        except Exception as exc:
            _settle(fut, LinkCommandError(name, None, str(exc)))
        return fut

    def _command_int(
        self,
        name: str,
        command: int,
        *,
        frame: int,
        param1: float = 0.0,
        param2: float = 0.0,
        param3: float = 0.0,
        param4: float = 0.0,
        x: int = 0,
        y: int = 0,
        z: float = 0.0,
    ) -> Future:
        fut = self._register(name, command)
        try:
            self._send(
                "command_int_send",
                self.target_system,
                self.target_component,
                frame,
                command,
                0,
                0,
                param1,
                param2,
                param3,
                param4,
                x,
                y,
                z,
            )
        except Exception as exc:
            _settle(fut, LinkCommandError(name, None, str(exc)))
        return fut

    def _send_now(self, name: str, method: str, *args) -> Future:
        try:
            self._send(method, *args)
        except Exception as exc:
            return failed_future(LinkCommandError(name, None, str(exc)))
        return completed_future()

    def _send(self, method: str, *args) -> None:
        """Call ``conn.mav.<method>(*args)`` under the send lock."""
        with self._send_lock:
            conn = self._conn
            if conn is None:
                raise LinkClosedError(method)
            getattr(conn.mav, method)(*args)

    def _send_heartbeat(self) -> None:
        try:
            self._send(
                "heartbeat_send",
                mavutil.mavlink.MAV_TYPE_GCS,
                mavutil.mavlink.MAV_AUTOPILOT_INVALID,
                0,
                0,
                mavutil.mavlink.MAV_STATE_ACTIVE,
            )
        except Exception as exc:  # pragma: no cover - transport error
            log.debug("Failed to send heartbeat: %s", exc)

    def _time_boot_ms(self) -> int:
        return int(max(0.0, time.time() - self._boot_time) * 1000)



def _settle(fut: Future, exc: Optional[BaseException] = None) -> None:
    """Resolve ``fut`` unless the caller already cancelled it."""
    if fut.done():
        return
    try:
        if exc is None:
            fut.set_result(None)
        else:
            fut.set_exception(exc)
    except InvalidStateError:
        pass


__all__ = ["MavlinkVehicleLink"]
