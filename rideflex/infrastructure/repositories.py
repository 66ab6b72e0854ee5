"""
Repository Pattern -- abstracts DB access so domain logic stays DB-agnostic.

Each repository receives an ``AsyncSession`` (unit-of-work) and exposes
domain-relevant queries only.  The session is committed by the request
dependency, so repositories ``flush`` but never ``commit``.

The two reconciliation writes (``PaymentRepository.mark_paid`` and
``RiderRepository.apply_trip_stats``) are conditional ``UPDATE`` statements
that report whether a row changed.  PostgreSQL re-evaluates the ``WHERE``
clause after waiting on a concurrent writer's row lock, so only one of two
racing callers sees ``True``.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from geoalchemy2 import Geography, WKTElement
from sqlalchemy import and_, cast, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .models import (
    DriverModel,
    PaymentModel,
    ReviewModel,
    RiderModel,
    TripModel,
    TripRoutePointModel,
)
from rideflex.domain.entities import Location
from rideflex.domain.enums import (
    BLOCKING_PAYMENT_STATUSES,
    OPEN_PAYMENT_STATUSES,
    SETTLED_PAYMENT_STATUSES,
    DriverStatus,
    PaymentStatus,
    PaymentType,
    ReviewStatus,
    TripPaymentStatus,
    TripStatus,
)
from rideflex.domain.errors import Conflict


def _point(lng: float, lat: float) -> WKTElement:
    return WKTElement(f"POINT({lng} {lat})", srid=4326)


class TripRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create_trip(
        self,
        *,
        rider_id: int,
        pickup: Location,
        dropoff: Location,
        stops: list[dict],
        vehicle_class,
        distance_km: float,
        estimated_duration_min: float,
        requested_at: datetime,
    ) -> TripModel:
        trip = TripModel(
            rider_id=rider_id,
            pickup_lat=pickup.latitude,
            pickup_lng=pickup.longitude,
            pickup_address=pickup.address,
            dropoff_lat=dropoff.latitude,
            dropoff_lng=dropoff.longitude,
            dropoff_address=dropoff.address,
            stops=stops,
            vehicle_class=vehicle_class,
            distance_km=distance_km,
            estimated_duration_min=estimated_duration_min,
            requested_at=requested_at,
            status=TripStatus.REQUESTED,
            payment_status=TripPaymentStatus.UNPAID,
        )
        self.session.add(trip)
        await self.session.flush()
        return trip

    async def get_by_id(self, trip_id: int) -> Optional[TripModel]:
        return await self.session.get(TripModel, trip_id)

    async def get_for_update(self, trip_id: int) -> Optional[TripModel]:
        """SELECT ... FOR UPDATE so the status check holds until commit."""
        result = await self.session.execute(
            select(TripModel)
            .where(TripModel.id == trip_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def add_route_point(
        self, trip: TripModel, *, lng: float, lat: float, recorded_at: datetime
    ) -> TripRoutePointModel:
        point = TripRoutePointModel(
            trip_id=trip.id, lng=lng, lat=lat, recorded_at=recorded_at
        )
        self.session.add(point)
        await self.session.flush()
        return point

    async def mark_paid(self, trip_id: int, payment_id: int) -> Optional[TripModel]:
        await self.session.execute(
            update(TripModel)
            .where(TripModel.id == trip_id)
            .values(payment_status=TripPaymentStatus.PAID, payment_id=payment_id)
            .execution_options(synchronize_session=False)
        )
        trip = await self.get_by_id(trip_id)
        if trip is not None:
            await self.session.refresh(trip)
        return trip


class DriverRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, driver_id: int) -> Optional[DriverModel]:
        return await self.session.get(DriverModel, driver_id)

    async def find_eligible_near(
        self, lng: float, lat: float, radius_m: float
    ) -> list[tuple[DriverModel, float, float]]:
        """Online, active, approved drivers within ``radius_m`` of the point,
        nearest first.  Returns ``(driver, lng, lat)`` tuples."""
        origin = cast(func.ST_SetSRID(func.ST_MakePoint(lng, lat), 4326), Geography)
        location = cast(DriverModel.current_location, Geography)
        result = await self.session.execute(
            select(
                DriverModel,
                func.ST_X(DriverModel.current_location),
                func.ST_Y(DriverModel.current_location),
            )
            .where(
                DriverModel.status == DriverStatus.ONLINE,
                DriverModel.is_active.is_(True),
                DriverModel.is_approved.is_(True),
                DriverModel.current_location.isnot(None),
                func.ST_DWithin(location, origin, radius_m),
            )
            .order_by(func.ST_Distance(location, origin))
        )
        return [(driver, d_lng, d_lat) for driver, d_lng, d_lat in result.all()]

    async def set_location(self, driver: DriverModel, lng: float, lat: float) -> None:
        driver.current_location = _point(lng, lat)
        await self.session.flush()

    async def clear_location(self, driver: DriverModel) -> None:
        driver.current_location = None
        await self.session.flush()

    async def set_rating(
        self, driver: DriverModel, *, rating: float, total_reviews: int
    ) -> None:
        driver.rating = rating
        driver.total_reviews = total_reviews
        await self.session.flush()


class RiderRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, rider_id: int) -> Optional[RiderModel]:
        return await self.session.get(RiderModel, rider_id)

    async def apply_trip_stats(
        self,
        rider: RiderModel,
        *,
        expected_trips: int,
        total_amount_spent: int,
        paid_at: datetime,
    ) -> bool:
        """Write the aggregates only while ``total_trips < expected_trips``."""
        result = await self.session.execute(
            update(RiderModel)
            .where(
                RiderModel.id == rider.id,
                RiderModel.total_trips < expected_trips,
            )
            .values(
                total_trips=expected_trips,
                total_amount_spent=total_amount_spent,
                last_payment_date=paid_at,
            )
            .execution_options(synchronize_session=False)
        )
        await self.session.refresh(rider)
        return result.rowcount > 0


class PaymentRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create_payment(self, **fields) -> PaymentModel:
        payment = PaymentModel(**fields)
        try:
            async with self.session.begin_nested():
                self.session.add(payment)
        except IntegrityError:
            raise Conflict("Trip already has an active payment") from None
        return payment

    async def get_by_id(self, payment_id: int) -> Optional[PaymentModel]:
        return await self.session.get(PaymentModel, payment_id)

    async def get_by_intent_id(self, intent_id: str) -> Optional[PaymentModel]:
        if not intent_id:
            return None
        result = await self.session.execute(
            select(PaymentModel).where(
                PaymentModel.stripe_payment_intent_id == intent_id
            )
        )
        return result.scalar_one_or_none()

    async def find_blocking_for_trip(self, trip_id: int) -> Optional[PaymentModel]:
        result = await self.session.execute(
            select(PaymentModel)
            .where(
                PaymentModel.trip_id == trip_id,
                PaymentModel.type == PaymentType.TRIP_PAYMENT,
                PaymentModel.status.in_(list(BLOCKING_PAYMENT_STATUSES)),
            )
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def mark_paid(
        self,
        payment: PaymentModel,
        *,
        completed_at: datetime,
        stripe_payment_intent_id: Optional[str] = None,
        stripe_customer_id: Optional[str] = None,
    ) -> bool:
        """``status -> paid`` only from an open status.  Returns whether this
        call made the change."""
        await self.session.flush()
        values = {"status": PaymentStatus.PAID, "completed_at": completed_at}
        if stripe_payment_intent_id:
            values["stripe_payment_intent_id"] = stripe_payment_intent_id
        if stripe_customer_id:
            values["stripe_customer_id"] = stripe_customer_id
        result = await self.session.execute(
            update(PaymentModel)
            .where(
                PaymentModel.id == payment.id,
                PaymentModel.status.in_(list(OPEN_PAYMENT_STATUSES)),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self.session.refresh(payment)
        return result.rowcount > 0

    def _settled_trip_payments(self, rider_id: int):
        return and_(
            PaymentModel.rider_id == rider_id,
            PaymentModel.type == PaymentType.TRIP_PAYMENT,
            PaymentModel.status.in_(list(SETTLED_PAYMENT_STATUSES)),
        )

    async def count_paid_before(
        self, rider_id: int, created_at: datetime, *, exclude_id: int
    ) -> int:
        """Settled trip payments of the rider ordered before ``(created_at, id)``."""
        result = await self.session.execute(
            select(func.count())
            .select_from(PaymentModel)
            .where(
                self._settled_trip_payments(rider_id),
                PaymentModel.id != exclude_id,
                or_(
                    PaymentModel.created_at < created_at,
                    and_(
                        PaymentModel.created_at == created_at,
                        PaymentModel.id < exclude_id,
                    ),
                ),
            )
        )
        return result.scalar() or 0

    async def sum_paid_amount(self, rider_id: int) -> int:
        result = await self.session.execute(
            select(func.coalesce(func.sum(PaymentModel.amount), 0)).where(
                self._settled_trip_payments(rider_id)
            )
        )
        return int(result.scalar() or 0)

    async def list_for_party(
        self,
        *,
        rider_id: Optional[int] = None,
        driver_id: Optional[int] = None,
        offset: int = 0,
        limit: int = 10,
    ) -> tuple[list[PaymentModel], int]:
        """A page of one party's payments, newest first, with the full count."""
        if driver_id is not None:
            condition = PaymentModel.driver_id == driver_id
        else:
            condition = PaymentModel.rider_id == rider_id
        total = await self.session.execute(
            select(func.count()).select_from(PaymentModel).where(condition)
        )
        result = await self.session.execute(
            select(PaymentModel)
            .where(condition)
            .order_by(PaymentModel.created_at.desc(), PaymentModel.id.desc())
            .offset(offset)
            .limit(limit)
        )
        return list(result.scalars().all()), total.scalar() or 0

    async def expire_stale(self, now: datetime) -> int:
        result = await self.session.execute(
            update(PaymentModel)
            .where(
                PaymentModel.status.in_(
                    [PaymentStatus.CREATED, PaymentStatus.PENDING]
                ),
                PaymentModel.expires_at.isnot(None),
                PaymentModel.expires_at < now,
            )
            .values(status=PaymentStatus.EXPIRED, expired_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0


class ReviewRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create_review(self, **fields) -> ReviewModel:
        review = ReviewModel(**fields)
        try:
            async with self.session.begin_nested():
                self.session.add(review)
        except IntegrityError:
            raise Conflict("Trip has already been reviewed") from None
        return review

    async def get_by_id(self, review_id: int) -> Optional[ReviewModel]:
        return await self.session.get(ReviewModel, review_id)

    async def get_by_trip(self, trip_id: int) -> Optional[ReviewModel]:
        result = await self.session.execute(
            select(ReviewModel).where(ReviewModel.trip_id == trip_id)
        )
        return result.scalar_one_or_none()

    async def set_status(self, review: ReviewModel, status: ReviewStatus) -> None:
        review.status = status
        await self.session.flush()

    async def list_for_driver(
        self, driver_id: int, *, offset: int = 0, limit: int = 10
    ) -> tuple[list[ReviewModel], int]:
        """Active reviews of a driver, newest first, with the full count."""
        condition = and_(
            ReviewModel.driver_id == driver_id,
            ReviewModel.status == ReviewStatus.ACTIVE,
        )
        total = await self.session.execute(
            select(func.count()).select_from(ReviewModel).where(condition)
        )
        result = await self.session.execute(
            select(ReviewModel)
            .where(condition)
            .order_by(ReviewModel.created_at.desc(), ReviewModel.id.desc())
            .offset(offset)
            .limit(limit)
        )
        return list(result.scalars().all()), total.scalar() or 0

    async def rating_stats(self, driver_id: int) -> tuple[float, int]:
        """Unrounded average and count of the driver's active reviews."""
        result = await self.session.execute(
            select(
                func.coalesce(func.avg(ReviewModel.rating), 0),
                func.count(ReviewModel.id),
            ).where(
                ReviewModel.driver_id == driver_id,
                ReviewModel.status == ReviewStatus.ACTIVE,
            )
        )
        average, count = result.one()
        return float(average or 0), int(count or 0)
