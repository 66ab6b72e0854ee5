"""
Value objects and result types passed between the domain services and
the API layer.

ORM rows (see ``infrastructure/models.py``) are the mutable entities;
everything here is either immutable or a plain result container.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Optional

from .distance import validate_coordinate
from .errors import ValidationError


# ── Value Objects ─────────────────────────────────────────────────────


@dataclass(frozen=True)
class Location:
    longitude: float
    latitude: float
    address: str = ""

    @classmethod
    def parse(cls, raw: Any, label: str = "location") -> "Location":
        """Build a location from ``{"coordinates": [lng, lat], "address"}``
        or from an existing ``Location``.  Raises ``ValidationError``."""
        if isinstance(raw, Location):
            validate_coordinate(raw.longitude, raw.latitude, label)
            return raw
        if raw is None:
            raise ValidationError(f"{label} is required")
        if isinstance(raw, dict):
            coords = raw.get("coordinates")
            address = raw.get("address") or ""
        else:
            coords = getattr(raw, "coordinates", None)
            address = getattr(raw, "address", "") or ""
        if not isinstance(coords, (list, tuple)) or len(coords) != 2:
            raise ValidationError(
                f"{label} coordinates must contain exactly [lng, lat]"
            )
        lng, lat = validate_coordinate(coords[0], coords[1], label)
        return cls(longitude=lng, latitude=lat, address=address)

    @property
    def coordinates(self) -> list[float]:
        return [self.longitude, self.latitude]

    def to_dict(self) -> dict:
        return {"coordinates": self.coordinates, "address": self.address}


@dataclass(frozen=True)
class FareBreakdown:
    base_fare: int
    distance_fare: int
    time_fare: int
    surge_multiplier: float
    total_fare: int
    currency: str = "INR"

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class FareEstimate:
    distance_km: float
    estimated_duration_min: int
    fare: FareBreakdown


@dataclass(frozen=True)
class NearbyDriver:
    driver_id: int
    distance_km: float
    profile: dict = field(default_factory=dict)


# ── Results ───────────────────────────────────────────────────────────


@dataclass
class TripView:
    """A trip with its rider and driver fetched explicitly by id."""

    trip: Any
    rider: Optional[Any] = None
    driver: Optional[Any] = None


@dataclass
class Reconciliation:
    """Outcome of applying a payment completion to trip and rider state."""

    payment: Any
    trip: Optional[Any] = None
    rider: Optional[Any] = None
    payment_updated: bool = False
    stats_updated: bool = False


@dataclass
class PaymentView:
    """A payment with its trip, rider and driver fetched explicitly by id."""

    payment: Any
    trip: Optional[Any] = None
    rider: Optional[Any] = None
    driver: Optional[Any] = None


@dataclass
class Page:
    """One page of a newest-first listing."""

    items: list
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        return -(-self.total // self.limit)


@dataclass(frozen=True)
class RatingStats:
    average_rating: float = 0.0
    total_reviews: int = 0


MAX_PAGE_SIZE = 100


def page_offset(page: int, limit: int) -> int:
    """Row offset of a 1-based ``page``; rejects out-of-range paging."""
    if page < 1:
        raise ValidationError("page must be 1 or greater")
    if not 1 <= limit <= MAX_PAGE_SIZE:
        raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}")
    return (page - 1) * limit
