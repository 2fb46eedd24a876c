"""
Geospatial utilities for technician routing.
"""

import math
from typing import Tuple

Point = Tuple[float, float]

EARTH_RADIUS_KM = 6371.0088  # mean Earth radius


def haversine_km(origin: Point, destination: Point) -> float:
    """
    Compute great-circle distance between two (lat, lng) points in kilometers.
    """
    lat1, lon1 = origin
    lat2, lon2 = destination
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    # Rounding can push `a` marginally above 1 for antipodal points.
    a = min(1.0, a)
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def travel_time_minutes(distance_km: float, speed_kmph: float) -> float:
    """
    Convert distance (km) to travel time in minutes given speed (km/h).
    """
    if speed_kmph <= 0:
        raise ValueError("speed_kmph must be positive")
    if distance_km <= 0:
        return 0.0
    hours = distance_km / speed_kmph
    return hours * 60.0


def minutes_to_hhmm(minutes: float) -> str:
    total = int(round(minutes))
    return f"{total // 60:02d}:{total % 60:02d}"


def hhmm_to_minutes(value: str) -> int:
    """
    Parse "HH:MM" into minutes after midnight.
    """
    hours, _, mins = value.strip().partition(":")
    h, m = int(hours), int(mins or 0)
    if not (0 <= h <= 24 and 0 <= m < 60) or h * 60 + m > 24 * 60:
        raise ValueError(f"invalid time of day: {value!r}")
    return h * 60 + m
