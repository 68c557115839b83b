from __future__ import annotations

import json
from math import asin, cos, radians, sin, sqrt

from flash_hr.models import Employee, LocationStatus

EARTH_RADIUS_M = 6371000.0


def distance_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    lat1_rad = radians(lat1)
    lat2_rad = radians(lat2)
    delta_lat = lat2_rad - lat1_rad
    delta_lon = radians(lon2) - radians(lon1)

    a = sin(delta_lat / 2) ** 2 + cos(lat1_rad) * cos(lat2_rad) * sin(delta_lon / 2) ** 2
    return EARTH_RADIUS_M * 2 * asin(sqrt(a))


def parse_location(raw: str | None) -> tuple[float, float] | None:
    """Read the app's `{"lat": .., "lng": ..}` payload (or a bare `lat,lng`)."""

    value = (raw or "").strip()
    if not value:
        return None

    try:
        payload = json.loads(value)
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        lat = payload.get("lat", payload.get("latitude"))
        lon = payload.get("lng", payload.get("lon", payload.get("longitude")))
    else:
        parts = [part.strip() for part in value.split(",")]
        if len(parts) != 2:
            return None
        lat, lon = parts

    try:
        lat_value = float(lat)
        lon_value = float(lon)
    except (TypeError, ValueError):
        return None

    if not (-90.0 <= lat_value <= 90.0 and -180.0 <= lon_value <= 180.0):
        return None
    return lat_value, lon_value


def evaluate_location(
    employee: Employee,
    raw_location: str | None,
    *,
    default_radius_m: int,
) -> tuple[LocationStatus, dict[str, float | int | str]]:
    point = parse_location(raw_location)
    if point is None:
        return LocationStatus.NO_LOCATION, {"reason": "no_location_payload"}

    if employee.site_lat is None or employee.site_lon is None:
        return LocationStatus.UNVERIFIED_LOCATION, {"reason": "site_location_not_set"}

    radius_m = employee.site_radius_m or default_radius_m
    distance_value = distance_m(employee.site_lat, employee.site_lon, point[0], point[1])
    flags = {
        "distance_m": round(distance_value, 2),
        "radius_m": radius_m,
    }

    if distance_value <= radius_m:
        return LocationStatus.VERIFIED_SITE, flags

    return LocationStatus.UNVERIFIED_LOCATION, flags
