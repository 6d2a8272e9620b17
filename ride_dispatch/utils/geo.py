"""
Geographic distance calculations.

Single home for great-circle math used by the geo index, dispatch and the
nearby-drivers endpoint.
"""

from math import asin, cos, radians, sin, sqrt

EARTH_RADIUS_KM = 6371.0


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Great-circle distance between two WGS84 points in kilometers.

    Identical coordinates yield exactly 0.0.
    """
    if lat1 == lat2 and lon1 == lon2:
        return 0.0
    lat1, lon1, lat2, lon2 = map(radians, [float(lat1), float(lon1), float(lat2), float(lon2)])
    dlat = lat2 - lat1
    dlon = lon2 - lon1
    a = sin(dlat / 2) ** 2 + cos(lat1) * cos(lat2) * sin(dlon / 2) ** 2
    # Clamp float drift near antipodes
    c = 2 * asin(min(1.0, sqrt(a)))
    return c * EARTH_RADIUS_KM


def offset_point(lat: float, lon: float, north_km: float = 0.0, east_km: float = 0.0) -> tuple[float, float]:
    """Approximate point displaced by the given kilometers (small offsets only)."""
    dlat = north_km / 111.32
    dlon = east_km / (111.32 * cos(radians(lat))) if east_km else 0.0
    return lat + dlat, lon + dlon
