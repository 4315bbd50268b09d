from __future__ import annotations

import logging
import os
from typing import Any, Optional, Sequence

from .core.state_machine import WaypointNavigator
from .core.types import Mission
from .dispatch.commands import CommandDispatch
from .mavlink.link import MavlinkVehicleLink
from .telemetry.aggregator import MAX_NUM_TIMING_SAMPLES, TelemetryAggregator
from .vehicle.api_interface import VehicleLink

log = logging.getLogger(__name__)

DEFAULT_LINK_URL = "udpin:0.0.0.0:14540"


def connect_mavlink(link_cfg: dict[str, Any]) -> MavlinkVehicleLink:
    """Open a MAVLink link and wait for the vehicle's first heartbeat.

    Raises ``ConnectionError`` when no vehicle shows up within ``connect_timeout_s``.
    """
    link = MavlinkVehicleLink(
        url=str(os.getenv("MAVLINK_URL") or link_cfg.get("url", DEFAULT_LINK_URL)),
        target_system=int(link_cfg.get("target_system", 0)),
        target_component=int(link_cfg.get("target_component", 1)),
        source_system=int(link_cfg.get("source_system", 245)),
        heartbeat_rate_hz=float(link_cfg.get("heartbeat_rate_hz", 1.0)),
        telemetry_rate_hz=float(link_cfg.get("telemetry_rate_hz", 4.0)),
        imu_rate_hz=float(link_cfg.get("imu_rate_hz", 0.5)),
    )
    timeout = float(link_cfg.get("connect_timeout_s", 30.0))
    link.start()
    log.info("Waiting for vehicle on %s", link.url)
    if not link.wait_connected(timeout):
        link.close()
        raise ConnectionError(f"no vehicle heartbeat on {link.url} within {timeout:.0f} s")
    return link


class UnmannedDriver:
    """Owns one vehicle connection and the telemetry/navigation objects bound to it.

    Telemetry state and the navigator are created fresh by :meth:`start` and discarded by
    :meth:`stop`. Before ``start`` the dispatch rejects every control as not initialized.
    """

    def __init__(self, cfg: Optional[dict] = None, missions: Sequence[Mission] = ()) -> None:
        self.cfg = cfg or {}
        self.missions = tuple(missions)
        self.link: Optional[VehicleLink] = None
        self._build(None)

    def _build(self, link: Optional[VehicleLink]) -> None:
        tel_cfg = self.cfg.get("telemetry", {}) or {}
        self.telemetry = TelemetryAggregator(
            history_size=int(tel_cfg.get("history_size", MAX_NUM_TIMING_SAMPLES))
        )
        self.navigator = WaypointNavigator(self.telemetry, link, self.cfg.get("navigation", {}) or {})
        self.dispatch = CommandDispatch(
            self.navigator,
            self.missions,
            command_timeout_s=float((self.cfg.get("link", {}) or {}).get("command_timeout_s", 10.0)),
        )

    @property
    def running(self) -> bool:
        return self.link is not None

    def start(self, link: Optional[VehicleLink] = None) -> None:
        """Bind to ``link``, or connect over MAVLink using the ``link:`` config."""
        if self.link is not None:
            return
        if link is None:
            link = connect_mavlink(self.cfg.get("link", {}) or {})
        self.navigator.shutdown()
        self._build(link)
        self.telemetry.attach(link)
        self.telemetry.start()
        self.link = link
        log.info("Unmanned System initialized")

    def stop(self) -> None:
        link = self.link
        if link is None:
            return
        self.link = None
        self.navigator.detach_link()
        self.navigator.shutdown()
        self.telemetry.detach(link)
        self.telemetry.stop()
        link.close()
        self._build(None)
        log.info("Unmanned System stopped")

    def __enter__(self) -> "UnmannedDriver":
        self.start()
        return self

    def __exit__(self, *exc_info) -> None:
        self.stop()


__all__ = ["UnmannedDriver", "connect_mavlink", "DEFAULT_LINK_URL"]
