from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
import threading
from typing import Any, Optional

import yaml

from .core.types import OutcomeStatus, TelemetrySample
from .dispatch.commands import CommandRejected
from .dispatch.records import encode_text
from .driver import UnmannedDriver
from .mission.mission_loader import load_missions, load_qgc_plan
from .utils.logging_setup import setup_logging

DEFAULT_CONFIG = os.path.join(os.path.dirname(__file__), "config", "default.yaml")


def load_yaml(path: str) -> dict:
    with open(path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="unmanned-driver")
    parser.add_argument("--config", type=str, default=None, help="Path to default.yaml override")
    parser.add_argument("--url", type=str, default=os.getenv("MAVLINK_URL", None), help="pymavlink connection string")
    parser.add_argument("--log-level", type=str, default=os.getenv("LOG_LEVEL", "INFO"))
    parser.add_argument("--no-log-file", action="store_true", help="Log to the console only")
    parser.add_argument("--plan", type=str, default=None, help="QGC .plan file to use as mission 1")
    sub = parser.add_subparsers(dest="cmd", required=True)

    runp = sub.add_parser("run", help="Connect and stream telemetry until interrupted")
    runp.add_argument("--mission", type=str, default=None, help="Mission number or name to fly")
    runp.add_argument("--interval", type=float, default=5.0, help="Seconds between telemetry reports")

    gotop = sub.add_parser("goto", help="Fly to one location")
    gotop.add_argument("lat", type=float)
    gotop.add_argument("lon", type=float)
    gotop.add_argument("--alt", type=float, default=30.0, help="Altitude above ground, m")
    gotop.add_argument("--hover", type=float, default=0.0, help="Hover time at target, s")
    gotop.add_argument("--return-to-start", action="store_true")

    missp = sub.add_parser("mission", help="Fly a configured mission")
    missp.add_argument("mission", type=str, help="1-based mission number or mission name")
    rts = missp.add_mutually_exclusive_group()
    rts.add_argument("--return-to-start", dest="return_to_start", action="store_true", default=None)
    rts.add_argument("--no-return-to-start", dest="return_to_start", action="store_false")

    takeoffp = sub.add_parser("takeoff", help="Arm and climb")
    takeoffp.add_argument("altitude", type=float, help="Altitude above ground, m")

    landp = sub.add_parser("land", help="Land and disarm")
    landp.add_argument("--no-disarm", action="store_true")
    return parser


def _mission_key(text: str) -> Any:
    return int(text) if text.isdigit() else text


def _control_for(args: argparse.Namespace) -> Optional[tuple[str, dict[str, Any]]]:
    if args.cmd == "goto":
        return "location", {
            "lat": args.lat,
            "lon": args.lon,
            "alt_agl_m": args.alt,
            "hover_s": args.hover,
            "return_to_start": args.return_to_start,
        }
    if args.cmd == "mission":
        payload: dict[str, Any] = {"mission": _mission_key(args.mission)}
        if args.return_to_start is not None:
            payload["return_to_start"] = args.return_to_start
        return "mission", payload
    if args.cmd == "takeoff":
        return "takeoff", {"altitude_agl_m": args.altitude}
    if args.cmd == "land":
        return "landing", {"disarm": not args.no_disarm}
    return None


def _stream(
    driver: UnmannedDriver,
    args: argparse.Namespace,
    logger: logging.Logger,
    stop: Optional[threading.Event] = None,
) -> int:
    """Report telemetry until ``stop`` is set; a rejected ``--mission`` ends the run with 1."""
    if stop is None:
        stop = threading.Event()

        def handle_signal(signum, frame):  # noqa: ARG001
            stop.set()
            driver.navigator.cancel()

        signal.signal(signal.SIGINT, handle_signal)
        signal.signal(signal.SIGTERM, handle_signal)

    def on_sample(sample: TelemetrySample) -> None:
        logger.debug("Sample: %s", encode_text(sample).rstrip())

    driver.telemetry.add_listener(on_sample)
    failed = threading.Event()

    def fly() -> None:
        try:
            outcome = driver.dispatch.execute("mission", {"mission": _mission_key(args.mission)})
        except CommandRejected as exc:
            logger.error("Mission rejected: %s", exc)
            failed.set()
            stop.set()
        else:
            logger.info("Mission finished: %s", outcome)

    if args.mission:
        threading.Thread(target=fly, name="mission", daemon=True).start()

    while not stop.wait(max(args.interval, 0.1)):
        sample = driver.telemetry.get_latest()
        if sample is None:
            logger.info("No telemetry yet")
            continue
        pos = sample.position
        logger.info(
            "lat=%.7f lon=%.7f alt=%.1f m (rel %.1f m), avg sampling period %.3f s, %s",
            pos.latitude_deg,
            pos.longitude_deg,
            pos.absolute_altitude_m,
            pos.relative_altitude_m,
            driver.telemetry.get_average_sampling_period(),
            driver.navigator.state.name,
        )
    return 1 if failed.is_set() else 0


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    setup_logging(args.log_level, to_file=not args.no_log_file)
    logger = logging.getLogger(__name__)

    cfg = load_yaml(args.config or DEFAULT_CONFIG)
    if args.url:
        cfg.setdefault("link", {})["url"] = args.url

    try:
        missions = load_missions(cfg)
        if args.plan:
            missions.insert(0, load_qgc_plan(args.plan))
    except (OSError, ValueError) as exc:
        logger.error("Failed to load missions: %s", exc)
        return 1

    driver = UnmannedDriver(cfg, missions)
    try:
        driver.start()
    except ConnectionError as exc:
        logger.error("%s", exc)
        return 1

    try:
        if args.cmd == "run":
            return _stream(driver, args, logger)
        control, payload = _control_for(args)
        outcome = driver.dispatch.execute(control, payload)
        if outcome is not None and outcome.status is OutcomeStatus.CANCELLED:
            return 1
        return 0
    except CommandRejected as exc:
        logger.error("Command rejected: %s", exc)
        return 1
    finally:
        driver.stop()


if __name__ == "__main__":
    sys.exit(main())
