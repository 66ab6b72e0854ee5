"""
Fare Engine  (Strategy Pattern)
===============================

Formula
-------
Fare = (Base_Fare + Distance x Rate_Per_KM + Duration x Rate_Per_Min) x Surge

* **Distance**  -- Haversine km between pickup and drop-off, 2 decimals.
* **Duration**  -- ``distance x 2`` minutes (fixed 30 km/h assumption).
* **Surge**     -- max over the active surge factors, never below 1.0:

  ================  =========================  ==========
  factor            window                     multiplier
  ================  =========================  ==========
  peak hours        07-10h and 17-20h          1.5
  weekend           Saturday / Sunday          1.3
  late night        22h-05h                    1.4
  random spike      20 % of estimates          1.2
  ================  =========================  ==========

Hour windows are inclusive of the whole closing hour (10:59 is still peak).
Surge is read from the wall clock every time, so an estimate is advisory
until the trip is finalised.

Every component is rounded half-up to a whole currency unit.

Complexity: O(1) per estimate.
"""

from __future__ import annotations

import random
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from .distance import haversine_km
from .entities import FareBreakdown, FareEstimate, Location
from .enums import VehicleClass
from .errors import InvalidArgument

MINUTES_PER_KM = 2  # 30 km/h


def round_half_up(value: float, digits: int = 0):
    """Round like ``Math.round``: halves go up.  Returns ``int`` for 0 digits."""
    quantum = Decimal(1).scaleb(-digits)
    rounded = Decimal(repr(value)).quantize(quantum, rounding=ROUND_HALF_UP)
    return int(rounded) if digits == 0 else float(rounded)


@dataclass(frozen=True)
class FareRate:
    base: int
    per_km: int
    per_min: int


DEFAULT_RATES: dict[VehicleClass, FareRate] = {
    VehicleClass.SEDAN: FareRate(base=50, per_km=12, per_min=2),
    VehicleClass.SUV: FareRate(base=80, per_km=18, per_min=3),
    VehicleClass.VAN: FareRate(base=100, per_km=22, per_min=4),
}


def parse_vehicle_class(value) -> VehicleClass:
    try:
        return VehicleClass(value)
    except ValueError:
        raise InvalidArgument(
            f"Invalid vehicle class {value!r}; expected one of "
            f"{', '.join(v.value for v in VehicleClass)}"
        ) from None


# ── Surge factor strategies ───────────────────────────────────────────


class SurgeFactor(ABC):
    @abstractmethod
    def multiplier(self, now: datetime) -> float: ...


class PeakHourSurge(SurgeFactor):
    def __init__(
        self,
        windows: tuple[tuple[int, int], ...] = ((7, 10), (17, 20)),
        value: float = 1.5,
    ):
        self.windows = windows
        self.value = value

    def multiplier(self, now: datetime) -> float:
        if any(start <= now.hour <= end for start, end in self.windows):
            return self.value
        return 1.0


class WeekendSurge(SurgeFactor):
    def __init__(self, value: float = 1.3):
        self.value = value

    def multiplier(self, now: datetime) -> float:
        return self.value if now.weekday() >= 5 else 1.0


class LateNightSurge(SurgeFactor):
    def __init__(self, start_hour: int = 22, end_hour: int = 5, value: float = 1.4):
        self.start_hour = start_hour
        self.end_hour = end_hour
        self.value = value

    def multiplier(self, now: datetime) -> float:
        if now.hour >= self.start_hour or now.hour <= self.end_hour:
            return self.value
        return 1.0


class RandomSpikeSurge(SurgeFactor):
    """Simulated demand spike hitting a fraction of estimates."""

    def __init__(
        self,
        probability: float = 0.2,
        value: float = 1.2,
        rng: Optional[random.Random] = None,
    ):
        self.probability = probability
        self.value = value
        self.rng = rng or random.Random()

    def multiplier(self, now: datetime) -> float:
        return self.value if self.rng.random() < self.probability else 1.0


# ── Engine facade ─────────────────────────────────────────────────────


class FareEngine:
    """High-level API used by the trip lifecycle and the estimate endpoint."""

    def __init__(
        self,
        rates: Optional[dict[VehicleClass, FareRate]] = None,
        currency: str = "INR",
        tz: str = "Asia/Kolkata",
        surge_factors: Optional[list[SurgeFactor]] = None,
        spike_probability: float = 0.2,
        clock: Optional[Callable[[], datetime]] = None,
        rng: Optional[random.Random] = None,
    ):
        self.rates = rates or DEFAULT_RATES
        self.currency = currency
        self.tz = ZoneInfo(tz)
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        if surge_factors is None:
            surge_factors = [
                PeakHourSurge(),
                WeekendSurge(),
                LateNightSurge(),
                RandomSpikeSurge(probability=spike_probability, rng=rng),
            ]
        self.surge_factors = surge_factors

    def rate_for(self, vehicle_class) -> FareRate:
        rate = self.rates.get(parse_vehicle_class(vehicle_class))
        if rate is None:
            raise InvalidArgument(f"No fare rate for vehicle class {vehicle_class}")
        return rate

    def surge_multiplier(self, at: Optional[datetime] = None) -> float:
        now = at or self.clock()
        if now.tzinfo is not None:
            now = now.astimezone(self.tz)
        surge = max(
            [1.0] + [factor.multiplier(now) for factor in self.surge_factors]
        )
        return round_half_up(surge, 2)

    def price(
        self,
        distance_km: float,
        duration_min: float,
        vehicle_class,
        surge: float = 1.0,
    ) -> FareBreakdown:
        rate = self.rate_for(vehicle_class)
        raw = rate.base + distance_km * rate.per_km + duration_min * rate.per_min
        return FareBreakdown(
            base_fare=rate.base,
            distance_fare=round_half_up(distance_km * rate.per_km),
            time_fare=round_half_up(duration_min * rate.per_min),
            surge_multiplier=surge,
            total_fare=round_half_up(raw * surge),
            currency=self.currency,
        )

    def estimate(
        self,
        pickup: Location,
        dropoff: Location,
        vehicle_class,
        at: Optional[datetime] = None,
    ) -> FareEstimate:
        # validate the class before touching the clock / random source
        self.rate_for(vehicle_class)
        distance = round_half_up(
            haversine_km(
                pickup.latitude, pickup.longitude,
                dropoff.latitude, dropoff.longitude,
            ),
            2,
        )
        duration = distance * MINUTES_PER_KM
        fare = self.price(
            distance, duration, vehicle_class, self.surge_multiplier(at)
        )
        return FareEstimate(
            distance_km=distance,
            estimated_duration_min=round_half_up(duration),
            fare=fare,
        )
