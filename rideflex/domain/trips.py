"""
Trip Lifecycle
==============

Owns the trip state machine (see ``TRIP_TRANSITIONS`` in ``enums.py``)::

    requested -> driver_assigned -> [driver_arriving] -> driver_arrived
              -> trip_started -> completed

with ``cancelled_by_rider``, ``cancelled_by_driver`` and ``no_show``
reachable from every status before ``completed``.  ``driver_arriving`` is
optional: a driver may report arrival straight after assignment.

Every mutating operation loads the trip with ``SELECT ... FOR UPDATE`` so
the precondition is evaluated against the status at write time; a
concurrent loser gets ``Conflict`` / ``InvalidTransition`` instead of
overwriting the winner.  No retries happen here.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from .distance import validate_coordinate
from .entities import FareBreakdown, Location, TripView
from .enums import (
    ADVANCE_EXCLUDED,
    CANCELLED_STATUSES,
    IN_PROGRESS_STATUSES,
    STATUS_TIMESTAMPS,
    TRIP_TRANSITIONS,
    DriverStatus,
    TripPaymentStatus,
    TripStatus,
    is_terminal,
)
from .errors import Conflict, Forbidden, InvalidTransition, NotFound, ValidationError
from .notify import notify
from .pricing import FareEngine, parse_vehicle_class

logger = logging.getLogger(__name__)

CANCELLED_BY = {
    "rider": TripStatus.CANCELLED_BY_RIDER,
    "driver": TripStatus.CANCELLED_BY_DRIVER,
}


def apply_fare(trip, fare: FareBreakdown) -> None:
    trip.base_fare = fare.base_fare
    trip.distance_fare = fare.distance_fare
    trip.time_fare = fare.time_fare
    trip.surge_multiplier = fare.surge_multiplier
    trip.total_fare = fare.total_fare
    trip.fare_currency = fare.currency


def _parse_status(value) -> TripStatus:
    try:
        return TripStatus(value)
    except ValueError:
        raise ValidationError(f"Unknown trip status {value!r}") from None


class TripLifecycle:
    def __init__(
        self,
        trips,
        riders,
        drivers,
        fare_engine: FareEngine,
        notifier=None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.trips = trips
        self.riders = riders
        self.drivers = drivers
        self.fare_engine = fare_engine
        self.notifier = notifier
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    # ── helpers ───────────────────────────────────────────────────

    async def _locked(self, trip_id: int):
        trip = await self.trips.get_for_update(trip_id)
        if not trip:
            raise NotFound("No trip found with that ID")
        return trip

    def _enter(self, trip, status: TripStatus) -> None:
        current = TripStatus(trip.status)
        if is_terminal(current):
            raise InvalidTransition(
                f"Trip {trip.id} is already {current.value} and can no longer change"
            )
        if status not in TRIP_TRANSITIONS[current]:
            raise InvalidTransition(
                f"Cannot transition trip {trip.id} from {current.value} "
                f"to {status.value}"
            )
        trip.status = status
        setattr(trip, STATUS_TIMESTAMPS[status], self.clock())
        logger.info("Trip %s: %s -> %s", trip.id, current.value, status.value)

    @staticmethod
    def _ensure_driver(trip, driver_id: Optional[int]) -> None:
        """``driver_id`` is the acting driver; ``None`` means an admin acts."""
        if driver_id is not None and trip.driver_id != driver_id:
            raise Forbidden(f"Trip {trip.id} is not assigned to you")

    async def _release_driver(self, trip, completed: bool = False) -> None:
        if not trip.driver_id:
            return
        driver = await self.drivers.get_by_id(trip.driver_id)
        if not driver:
            return
        if DriverStatus(driver.status) == DriverStatus.BUSY:
            driver.status = DriverStatus.ONLINE
        if completed:
            driver.total_trips = (driver.total_trips or 0) + 1

    # ── operations ────────────────────────────────────────────────

    async def create(
        self,
        rider_id: int,
        pickup,
        dropoff,
        stops=None,
        vehicle_class=None,
    ):
        pickup = Location.parse(pickup, "pickup location")
        dropoff = Location.parse(dropoff, "dropoff location")
        stop_points = [
            Location.parse(stop, f"stop {i + 1}")
            for i, stop in enumerate(stops or [])
        ]
        if vehicle_class is None:
            raise ValidationError("vehicle class is required")
        vehicle_class = parse_vehicle_class(vehicle_class)

        if not await self.riders.get_by_id(rider_id):
            raise NotFound("No rider found with that ID")

        estimate = self.fare_engine.estimate(pickup, dropoff, vehicle_class)
        trip = await self.trips.create_trip(
            rider_id=rider_id,
            pickup=pickup,
            dropoff=dropoff,
            stops=[s.to_dict() for s in stop_points],
            vehicle_class=vehicle_class,
            distance_km=estimate.distance_km,
            estimated_duration_min=estimate.estimated_duration_min,
            requested_at=self.clock(),
        )
        apply_fare(trip, estimate.fare)
        trip.status = TripStatus.REQUESTED
        trip.payment_status = TripPaymentStatus.UNPAID
        logger.info(
            "Trip %s requested by rider %s (%s, est. fare %s)",
            trip.id, rider_id, vehicle_class.value, estimate.fare.total_fare,
        )
        return trip

    async def assign_driver(self, trip_id: int, driver_id: int):
        trip = await self._locked(trip_id)
        if TripStatus(trip.status) != TripStatus.REQUESTED:
            raise Conflict(
                f"Trip {trip_id} is {TripStatus(trip.status).value}; "
                "only requested trips can be assigned"
            )
        driver = await self.drivers.get_by_id(driver_id)
        if not driver:
            raise NotFound("No driver found with that ID")

        self._enter(trip, TripStatus.DRIVER_ASSIGNED)
        trip.driver_id = driver.id
        driver.status = DriverStatus.BUSY

        await notify(
            self.notifier, "trip.driver_assigned",
            trip_id=trip.id, rider_id=trip.rider_id, driver_id=driver.id,
        )
        return trip

    async def advance_status(
        self, trip_id: int, new_status, driver_id: Optional[int] = None
    ):
        new_status = _parse_status(new_status)
        trip = await self._locked(trip_id)
        self._ensure_driver(trip, driver_id)
        if new_status in ADVANCE_EXCLUDED:
            raise InvalidTransition(
                f"{new_status.value} cannot be set directly on trip {trip_id}"
            )
        self._enter(trip, new_status)
        if new_status == TripStatus.NO_SHOW:
            await self._release_driver(trip)
        return trip

    async def cancel(
        self, trip_id: int, cancelled_by: str, actor_id: Optional[int] = None
    ):
        target = CANCELLED_BY.get(getattr(cancelled_by, "value", cancelled_by))
        if target is None:
            raise ValidationError("cancelled_by must be 'rider' or 'driver'")
        trip = await self._locked(trip_id)
        if actor_id is not None:
            owner = (
                trip.rider_id
                if target == TripStatus.CANCELLED_BY_RIDER
                else trip.driver_id
            )
            if owner != actor_id:
                raise Forbidden(f"Trip {trip.id} does not belong to you")
        if TripStatus(trip.status) in CANCELLED_STATUSES:
            return trip
        self._enter(trip, target)
        await self._release_driver(trip)
        await notify(
            self.notifier, "trip.cancelled",
            trip_id=trip.id, rider_id=trip.rider_id,
            driver_id=trip.driver_id, status=target.value,
        )
        return trip

    async def append_route_point(
        self, trip_id: int, lng, lat, driver_id: Optional[int] = None
    ):
        lng, lat = validate_coordinate(lng, lat, "route point")
        trip = await self._locked(trip_id)
        self._ensure_driver(trip, driver_id)
        if TripStatus(trip.status) not in IN_PROGRESS_STATUSES:
            raise Conflict(
                f"Route points can only be recorded while a trip is in "
                f"progress (trip {trip_id} is {TripStatus(trip.status).value})"
            )
        return await self.trips.add_route_point(
            trip, lng=lng, lat=lat, recorded_at=self.clock()
        )

    async def finalize(
        self,
        trip_id: int,
        actual_distance_km: float,
        actual_duration_min: float,
        fare: Optional[FareBreakdown] = None,
        driver_id: Optional[int] = None,
    ):
        if actual_distance_km is None or actual_distance_km < 0:
            raise ValidationError("actual distance must be a non-negative number")
        if actual_duration_min is None or actual_duration_min < 0:
            raise ValidationError("actual duration must be a non-negative number")

        trip = await self._locked(trip_id)
        self._ensure_driver(trip, driver_id)
        if TripStatus(trip.status) != TripStatus.TRIP_STARTED:
            raise InvalidTransition(
                f"Trip {trip_id} can only be completed from trip_started "
                f"(currently {TripStatus(trip.status).value})"
            )
        if fare is None:
            fare = self.fare_engine.price(
                actual_distance_km,
                actual_duration_min,
                trip.vehicle_class,
                self.fare_engine.surge_multiplier(self.clock()),
            )
        apply_fare(trip, fare)
        trip.distance_km = actual_distance_km
        trip.actual_duration_min = actual_duration_min
        self._enter(trip, TripStatus.COMPLETED)
        await self._release_driver(trip, completed=True)

        await notify(
            self.notifier, "trip.completed",
            trip_id=trip.id, rider_id=trip.rider_id, total_fare=trip.total_fare,
        )
        return trip

    async def describe(self, trip_id: int) -> TripView:
        """Trip plus rider and driver, each fetched explicitly by id."""
        trip = await self.trips.get_by_id(trip_id)
        if not trip:
            raise NotFound("No trip found with that ID")
        rider = await self.riders.get_by_id(trip.rider_id)
        driver = (
            await self.drivers.get_by_id(trip.driver_id) if trip.driver_id else None
        )
        return TripView(trip=trip, rider=rider, driver=driver)
