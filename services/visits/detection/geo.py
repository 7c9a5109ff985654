"""Great-circle math and detection-radius helpers (no external dependencies)."""

from __future__ import annotations

import math

EARTH_RADIUS_M = 6_371_000.0  # mean Earth radius in meters


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Compute Haversine distance in meters between two lat/lon points.

    Args:
        lat1: Latitude 1 in degrees.
        lon1: Longitude 1 in degrees.
        lat2: Latitude 2 in degrees.
        lon2: Longitude 2 in degrees.

    Returns:
        Distance in meters.
    """

    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = math.sin(d_phi / 2.0) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2.0) ** 2
    c = 2.0 * math.atan2(math.sqrt(a), math.sqrt(1.0 - a))
    return EARTH_RADIUS_M * c


def is_valid_coordinate(lat: float, lon: float) -> bool:
    """Finite and inside [-90, 90] x [-180, 180]."""

    if not (math.isfinite(lat) and math.isfinite(lon)):
        return False
    return -90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0


def clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))


def detection_radius_m(
    accuracy_m: float | None,
    *,
    multiplier: float,
    min_radius_m: float,
    max_radius_m: float,
) -> float:
    """Accuracy-scaled detection radius.

    A ping without an accuracy reading gets the minimum radius.
    """

    scaled = (accuracy_m or 0.0) * multiplier
    return clamp(scaled, min_radius_m, max_radius_m)
