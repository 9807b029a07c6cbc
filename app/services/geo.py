"""Distance helpers for proximity queries and ETA estimates.

Distances here are planar: Euclidean distance on raw latitude/longitude
degrees, not great-circle distance. This is an approximation that holds up
at metro scale (a few tens of km) and degrades with latitude and range.
Callers pass radii in degrees (0.1 is roughly 10km near the equator).
"""

import math

from app.config import AMBULANCE_SPEED_KMH

# Rough length of one degree, used only to turn planar degrees into km
KM_PER_DEGREE = 111.0
MIN_ETA_MINUTES = 1


def planar_distance(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Euclidean distance in degrees between two coordinates."""
    return math.sqrt((lat1 - lat2) ** 2 + (lng1 - lng2) ** 2)


def within_radius(lat1: float, lng1: float, lat2: float, lng2: float, radius: float) -> bool:
    return planar_distance(lat1, lng1, lat2, lng2) <= radius


def estimate_arrival_minutes(
    from_lat: float,
    from_lng: float,
    to_lat: float,
    to_lng: float,
    speed_kmh: float = AMBULANCE_SPEED_KMH,
) -> int:
    """Estimate travel minutes from the planar distance at an average speed."""
    km = planar_distance(from_lat, from_lng, to_lat, to_lng) * KM_PER_DEGREE
    minutes = math.ceil(km / speed_kmh * 60)
    return max(MIN_ETA_MINUTES, minutes)
