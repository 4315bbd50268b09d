from __future__ import annotations

from geographiclib.geodesic import Geodesic

from ..core.types import Position

# Per-axis proximity, in degrees, at which a target latitude/longitude counts as reached.
ARRIVAL_TOLERANCE_DEG = 0.000003


def within_tolerance(
    lat: float, lon: float, target_lat: float, target_lon: float, tolerance_deg: float = ARRIVAL_TOLERANCE_DEG
) -> bool:
    """True when both |dlat| and |dlon| are within ``tolerance_deg``.

    Each axis is checked on its own; this is not a radius.
    """
    return abs(lat - target_lat) <= tolerance_deg and abs(lon - target_lon) <= tolerance_deg


def position_within_tolerance(
    position: Position, target_lat: float, target_lon: float, tolerance_deg: float = ARRIVAL_TOLERANCE_DEG
) -> bool:
    return within_tolerance(position.latitude_deg, position.longitude_deg, target_lat, target_lon, tolerance_deg)


def altitude_msl(altitude_agl_m: float, position: Position) -> float:
    """Convert an above-ground altitude to MSL using the terrain offset under ``position``.

    The offset is ``absolute - relative`` altitude of the current reading, so it is only valid for
    terrain close to where the reading was taken.
    """
    terrain_offset = position.absolute_altitude_m - position.relative_altitude_m
    return altitude_agl_m + terrain_offset


def distance_m(lat0: float, lon0: float, lat1: float, lon1: float) -> float:
    """Geodesic distance on WGS84 in metres."""
    g = Geodesic.WGS84.Inverse(lat0, lon0, lat1, lon1)
    return float(g["s12"])
