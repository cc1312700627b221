"""
Geographic helpers for candidate search.

Coordinates travel as (longitude, latitude) pairs, matching the GeoJSON
order used by the mobile clients.
"""

import math
from typing import Tuple

from necromancer.app.core.exceptions import InvalidCoordinates

EARTH_RADIUS_METERS = 6371000.0
METERS_PER_DEGREE = math.pi * EARTH_RADIUS_METERS / 180.0


def validate_coordinates(coordinates) -> Tuple[float, float]:
    """
    Validate and normalize a (longitude, latitude) pair.

    Raises:
        InvalidCoordinates: If the pair is malformed or out of range
    """
    try:
        longitude, latitude = coordinates
        longitude = float(longitude)
        latitude = float(latitude)
    except (TypeError, ValueError):
        raise InvalidCoordinates(*_describe(coordinates))

    if math.isnan(longitude) or math.isnan(latitude):
        raise InvalidCoordinates(longitude, latitude)
    if not -180.0 <= longitude <= 180.0 or not -90.0 <= latitude <= 90.0:
        raise InvalidCoordinates(longitude, latitude)

    return longitude, latitude


def _describe(coordinates):
    if isinstance(coordinates, (list, tuple)) and len(coordinates) == 2:
        return coordinates[0], coordinates[1]
    return coordinates, None


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Calculate the great-circle distance between two points on Earth.

    Args:
        lat1, lon1: First point coordinates (degrees)
        lat2, lon2: Second point coordinates (degrees)

    Returns:
        Distance in meters
    """
    lat1_rad = math.radians(lat1)
    lat2_rad = math.radians(lat2)
    dlat = lat2_rad - lat1_rad
    dlon = math.radians(lon2 - lon1)

    a = math.sin(dlat / 2)**2 + math.cos(lat1_rad) * math.cos(lat2_rad) * math.sin(dlon / 2)**2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_METERS * c


def bounding_box(longitude: float, latitude: float, radius_meters: float) -> Tuple[float, float, float, float]:
    """
    Degree box enclosing the circle of `radius_meters` around a point.

    Used as a cheap SQL prefilter before exact haversine distances.

    Returns:
        (min_longitude, min_latitude, max_longitude, max_latitude)
    """
    # 1% slack so the box never clips the circle
    lat_delta = 1.01 * radius_meters / METERS_PER_DEGREE
    poleward_latitude = min(90.0, abs(latitude) + lat_delta)
    cos_lat = math.cos(math.radians(poleward_latitude))
    if cos_lat < 1e-6:
        lon_delta = 180.0
    else:
        lon_delta = min(180.0, lat_delta / cos_lat)

    return (
        longitude - lon_delta,
        max(-90.0, latitude - lat_delta),
        longitude + lon_delta,
        min(90.0, latitude + lat_delta),
    )
