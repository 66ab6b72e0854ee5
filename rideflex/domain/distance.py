"""
Distance calculation using the Haversine formula.

Assumption
----------
We use great-circle (Haversine) distance instead of a real routing engine
to keep fares and driver ranking deterministic.  The PostGIS index is only
used to *retrieve* candidates; every distance shown to a client comes from
this module so the value is the same one the fare engine uses.

Complexity: O(1) per call.
"""

from __future__ import annotations

import math

from .errors import InvalidArgument

EARTH_RADIUS_KM = 6_371.0


def haversine_km(
    lat1: float, lng1: float, lat2: float, lng2: float
) -> float:
    """Return the great-circle distance in **km** between two points."""
    lat1_r, lat2_r = math.radians(lat1), math.radians(lat2)
    dlat = math.radians(lat2 - lat1)
    dlng = math.radians(lng2 - lng1)

    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(lat1_r) * math.cos(lat2_r) * math.sin(dlng / 2) ** 2
    )
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(a))


def is_valid_coordinate(lng, lat) -> bool:
    """True for a finite (longitude, latitude) pair inside WGS84 bounds."""
    for value in (lng, lat):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return False
        if not math.isfinite(value):
            return False
    return -180 <= lng <= 180 and -90 <= lat <= 90


def validate_coordinate(lng, lat, label: str = "point") -> tuple[float, float]:
    """Return ``(lng, lat)`` as floats or raise ``InvalidArgument``."""
    if not is_valid_coordinate(lng, lat):
        raise InvalidArgument(
            f"{label} must be [lng, lat] within [-180, 180] x [-90, 90], "
            f"got [{lng}, {lat}]"
        )
    return float(lng), float(lat)
