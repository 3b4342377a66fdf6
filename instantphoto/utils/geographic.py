"""Geographic utilities for location-based matching"""

import math

EARTH_RADIUS_M = 6_371_000
# Same sphere as haversine_distance so the bounding box always encloses the circle
METERS_PER_DEGREE_LAT = math.pi * EARTH_RADIUS_M / 180


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Calculate the great circle distance between two points on Earth
    Returns distance in meters
    """
    # Convert to radians
    lat1, lon1, lat2, lon2 = map(math.radians, [lat1, lon1, lat2, lon2])

    # Haversine formula
    dlat = lat2 - lat1
    dlon = lon2 - lon1
    a = math.sin(dlat/2)**2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon/2)**2
    c = 2 * math.asin(math.sqrt(a))

    return EARTH_RADIUS_M * c


def meters_to_deg_lat(meters: float) -> float:
    return meters / METERS_PER_DEGREE_LAT


def meters_to_deg_lon(meters: float, at_lat: float) -> float:
    # Longitude degrees shrink towards the poles
    cos_lat = max(math.cos(math.radians(at_lat)), 1e-6)
    return meters / (METERS_PER_DEGREE_LAT * cos_lat)


def bounding_box(lat: float, lon: float, radius_m: float) -> tuple[float, float, float, float]:
    """
    Box (min_lat, max_lat, min_lon, max_lon) enclosing a circle of radius_m
    Used as a cheap index-friendly prefilter before the exact haversine check
    """
    dlat = meters_to_deg_lat(radius_m)
    dlon = meters_to_deg_lon(radius_m, lat)
    return lat - dlat, lat + dlat, lon - dlon, lon + dlon


def is_valid_coordinate(lat: float, lon: float) -> bool:
    return -90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0
