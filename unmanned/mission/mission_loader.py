from __future__ import annotations

import json
import logging
from typing import Any, List, Optional

from pydantic import ValidationError

from ..core.types import Mission, Waypoint

log = logging.getLogger(__name__)

_NAV_WAYPOINT = 16


def mission_from_config(entry: dict[str, Any], index: int = 1) -> Mission:
    """Build a Mission from one ``missions:`` config entry.

    Points use the config keys ``latitude``, ``longitude``, ``altitude_agl`` and ``hover_seconds``.
    Raises ``ValueError`` with the mission number when the entry is malformed.
    """
    try:
        points = [
            Waypoint(
                lat=p["latitude"],
                lon=p["longitude"],
                alt_agl_m=p.get("altitude_agl", 30.0),
                hover_s=p.get("hover_seconds", 0.0),
            )
            for p in entry.get("points") or []
        ]
        return Mission(
            points=tuple(points),
            return_to_start=bool(entry.get("return_to_start", False)),
            name=entry.get("name"),
        )
    except (KeyError, TypeError, ValidationError) as exc:
        raise ValueError(f"mission {index} is invalid: {exc}") from exc


def load_missions(cfg: dict[str, Any]) -> List[Mission]:
    missions = [mission_from_config(entry, i) for i, entry in enumerate(cfg.get("missions") or [], start=1)]
    log.info("Loaded %d mission(s) from configuration", len(missions))
    return missions


def load_qgc_plan(path: str, name: Optional[str] = None, return_to_start: bool = False) -> Mission:
    """Parse a QGroundControl .plan (JSON) into a Mission.

    Only MAV_CMD_NAV_WAYPOINT items become waypoints. The item altitude is taken as above ground and
    ``param1``/``Hold`` as hover seconds. Other items are skipped.
    """
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)

    items = data.get("mission", {}).get("items", [])
    points: List[Waypoint] = []
    for it in items:
        cmd = it.get("command") or it.get("Command")
        if cmd not in (_NAV_WAYPOINT, "MAV_CMD_NAV_WAYPOINT"):
            continue
        coord = it.get("coordinate") or [None, None, None]
        params = it.get("params") or [None] * 7
        lat = coord[0] if coord[0] is not None else params[4]
        lon = coord[1] if coord[1] is not None else params[5]
        alt = coord[2] if len(coord) > 2 and coord[2] is not None else params[6]
        hold = it.get("Hold", it.get("param1", params[0]))
        if lat is None or lon is None:
            continue
        points.append(
            Waypoint(
                lat=float(lat),
                lon=float(lon),
                alt_agl_m=float(alt) if alt is not None else 30.0,
                hover_s=max(0.0, float(hold)) if hold is not None else 0.0,
            )
        )
    if not points:
        raise ValueError(f"{path}: plan contains no waypoints")
    log.info("Loaded %d waypoint(s) from %s", len(points), path)
    return Mission(points=tuple(points), return_to_start=return_to_start, name=name or path)


__all__ = ["load_missions", "mission_from_config", "load_qgc_plan"]
