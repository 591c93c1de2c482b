"""
Geofence validation service.
Uses Haversine formula to calculate distance between points.

This is the only distance function in the codebase: clock-in, clock-out,
location ingestion and manager overrides all go through it.
"""
import math
from dataclasses import dataclass
from typing import Optional

from ..config import settings

# Earth radius in meters
EARTH_RADIUS_M = 6371000


@dataclass(frozen=True)
class GeofenceCheck:
    distance_meters: int
    radius_meters: int
    is_within: bool


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Calculate the great circle distance between two points on Earth.

    Args:
        lat1: Latitude of first point
        lon1: Longitude of first point
        lat2: Latitude of second point
        lon2: Longitude of second point

    Returns:
        Distance in meters
    """
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    delta_phi = math.radians(lat2 - lat1)
    delta_lambda = math.radians(lon2 - lon1)

    a = (
        math.sin(delta_phi / 2) ** 2 +
        math.cos(phi1) * math.cos(phi2) * math.sin(delta_lambda / 2) ** 2
    )
    # Float error can push a slightly above 1 for antipodal points
    a = min(1.0, max(0.0, a))
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_M * c


def distance_meters(lat1: float, lon1: float, lat2: float, lon2: float) -> int:
    """Distance between two coordinates, rounded to whole meters."""
    return int(round(haversine_distance(lat1, lon1, lat2, lon2)))


def check_geofence(
    point_lat: float,
    point_lng: float,
    venue_lat: float,
    venue_lng: float,
    radius_m: Optional[int] = None,
) -> GeofenceCheck:
    """
    Check whether a point falls inside a venue's circular geofence.

    The boundary is inclusive: a point exactly `radius_m` away is on site.
    """
    if radius_m is None:
        radius_m = settings.default_geofence_radius_m
    distance = distance_meters(point_lat, point_lng, venue_lat, venue_lng)
    return GeofenceCheck(
        distance_meters=distance,
        radius_meters=int(radius_m),
        is_within=distance <= radius_m,
    )


def is_valid_coordinates(lat: float, lng: float) -> bool:
    return -90 <= lat <= 90 and -180 <= lng <= 180
