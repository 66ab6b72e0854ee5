"""
Proximity Driver Matching
=========================

1. **Retrieval** -- the driver repository asks PostGIS for eligible drivers
   (``online``, active, approved, with a location) within the radius,
   using the partial GiST index on ``drivers.current_location``.
2. **Re-measure**  -- every candidate's distance is recomputed with
   Haversine and rounded to 2 decimals.  The index measures on the
   spheroid, so a candidate right on the boundary may come back slightly
   over the radius; such candidates are dropped to keep the reported
   distances consistent with the radius the client asked for.
3. **Rank**       -- stable ascending sort on the reported distance, so
   ties keep the retrieval order.

Complexity
----------
Let K = candidates returned by the index.
* Retrieval: O(log N + K) with the GiST index
* Re-measure + sort: O(K log K)
"""

from __future__ import annotations

import logging

from .distance import haversine_km, is_valid_coordinate, validate_coordinate
from .entities import NearbyDriver
from .enums import DriverStatus
from .errors import NotFound, ValidationError
from .pricing import round_half_up

logger = logging.getLogger(__name__)

DEFAULT_RADIUS_M = 5000


def driver_profile(driver) -> dict:
    """Client-facing summary of a driver with display fallbacks."""
    make = getattr(driver, "vehicle_make", None) or "Unknown"
    model = getattr(driver, "vehicle_model", None) or "Vehicle"
    status = getattr(driver, "status", None)
    return {
        "name": driver.name or "Unknown",
        "photo": getattr(driver, "photo", None) or "default-driver.jpg",
        "phone_no": getattr(driver, "phone_no", None) or "N/A",
        "vehicle": f"{make} {model}",
        "vehicle_plate": getattr(driver, "license_plate", None) or "N/A",
        "status": getattr(status, "value", status) or DriverStatus.OFFLINE.value,
        "total_trips": int(getattr(driver, "total_trips", 0) or 0),
        "acceptance_rate": float(getattr(driver, "acceptance_rate", 0) or 0),
    }


class GeoMatcher:
    """Finds eligible drivers around a point and keeps their positions fresh."""

    def __init__(self, drivers, default_radius_m: int = DEFAULT_RADIUS_M):
        self.drivers = drivers
        self.default_radius_m = default_radius_m

    async def find_nearby(
        self, lng, lat, max_distance_m: int | None = None
    ) -> list[NearbyDriver]:
        lng, lat = validate_coordinate(lng, lat, "search point")
        radius_m = self.default_radius_m if max_distance_m is None else max_distance_m
        if radius_m <= 0:
            raise ValidationError("max distance must be positive")
        max_km = radius_m / 1000

        candidates = await self.drivers.find_eligible_near(lng, lat, radius_m)

        nearby: list[NearbyDriver] = []
        for driver, d_lng, d_lat in candidates:
            if not is_valid_coordinate(d_lng, d_lat):
                logger.warning("Driver %s has an unusable location; skipped", driver.id)
                continue
            distance = round_half_up(haversine_km(lat, lng, d_lat, d_lng), 2)
            if distance > max_km:
                continue
            nearby.append(
                NearbyDriver(
                    driver_id=driver.id,
                    distance_km=distance,
                    profile=driver_profile(driver),
                )
            )

        nearby.sort(key=lambda n: n.distance_km)
        return nearby

    async def update_location(self, driver_id: int, lng, lat):
        """Move a driver.  Malformed coordinates clear the location so the
        driver drops out of the index instead of matching at a bogus point."""
        driver = await self.drivers.get_by_id(driver_id)
        if not driver:
            raise NotFound("No driver found with that ID")
        if is_valid_coordinate(lng, lat):
            await self.drivers.set_location(driver, float(lng), float(lat))
        else:
            logger.warning(
                "Clearing location of driver %s: invalid coordinates [%s, %s]",
                driver_id, lng, lat,
            )
            await self.drivers.clear_location(driver)
        return driver

    async def set_status(self, driver_id: int, status):
        try:
            status = DriverStatus(status)
        except ValueError:
            raise ValidationError(f"Invalid driver status {status!r}") from None
        driver = await self.drivers.get_by_id(driver_id)
        if not driver:
            raise NotFound("No driver found with that ID")
        driver.status = status
        return driver
