"""
SQLAlchemy ORM models  (maps to PostgreSQL + PostGIS).

Tables
------
* ``riders``             -- passengers and their payment aggregates
* ``drivers``            -- drivers, vehicle and live location
* ``trips``              -- one ride from request to terminal status
* ``trip_route_points``  -- ordered breadcrumb trail of a trip
* ``payments``           -- trip payments and tips
* ``reviews``            -- a rider's rating of the driver, one per trip

Indexes
-------
* **Partial GIST** on ``drivers.current_location`` over rows that have a
  location, used by the nearby-driver query.
* **Partial UNIQUE** on ``payments.trip_id`` for live trip payments: at
  most one trip payment per trip may be outside failed/cancelled/expired.
* **B-Tree** on status / owner columns used by the services.
"""

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    func,
    text,
)
from geoalchemy2 import Geometry

from .database import Base
from rideflex.domain.enums import (
    RELEASED_PAYMENT_STATUSES,
    DriverStatus,
    PaymentStatus,
    PaymentType,
    ReviewStatus,
    TripPaymentStatus,
    TripStatus,
    VehicleClass,
)


def _enum(enum_cls, name: str) -> Enum:
    """Store enum *values* (``"driver_assigned"``) rather than member names."""
    return Enum(
        enum_cls,
        name=name,
        values_callable=lambda members: [m.value for m in members],
    )


class RiderModel(Base):
    __tablename__ = "riders"
    __mapper_args__ = {"eager_defaults": True}

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(120), nullable=False)
    email = Column(String(255), unique=True, nullable=False)
    phone_no = Column(String(20), nullable=True)
    stripe_customer_id = Column(String(255), nullable=True)

    # Maintained only by payment reconciliation
    total_trips = Column(Integer, default=0, nullable=False)
    total_amount_spent = Column(Integer, default=0, nullable=False)
    last_payment_date = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())


class DriverModel(Base):
    __tablename__ = "drivers"
    __mapper_args__ = {"eager_defaults": True}

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(120), nullable=False)
    email = Column(String(255), unique=True, nullable=False)
    phone_no = Column(String(20), nullable=True)
    photo = Column(String(255), nullable=True)
    licence_no = Column(String(64), unique=True, nullable=False)

    vehicle_make = Column(String(60), nullable=True)
    vehicle_model = Column(String(60), nullable=True)
    license_plate = Column(String(20), unique=True, nullable=True)
    vehicle_class = Column(_enum(VehicleClass, "vehicleclass"), nullable=True)

    status = Column(
        _enum(DriverStatus, "driverstatus"),
        default=DriverStatus.OFFLINE,
        nullable=False,
    )
    # NULL when unknown or malformed -- never defaulted to (0, 0)
    current_location = Column(Geometry("POINT", srid=4326), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    is_approved = Column(Boolean, default=False, nullable=False)

    total_trips = Column(Integer, default=0, nullable=False)
    acceptance_rate = Column(Float, default=0.0, nullable=False)
    # Average of active reviews, refreshed whenever one changes
    rating = Column(Float, default=0.0, nullable=False)
    total_reviews = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index(
            "idx_drivers_location",
            "current_location",
            postgresql_using="gist",
            postgresql_where=text("current_location IS NOT NULL"),
        ),
        Index("idx_drivers_status", "status"),
    )


class TripModel(Base):
    __tablename__ = "trips"
    __mapper_args__ = {"eager_defaults": True}

    id = Column(Integer, primary_key=True, autoincrement=True)
    rider_id = Column(Integer, ForeignKey("riders.id"), nullable=False)
    driver_id = Column(Integer, ForeignKey("drivers.id"), nullable=True)

    pickup_lat = Column(Float, nullable=False)
    pickup_lng = Column(Float, nullable=False)
    pickup_address = Column(String(255), nullable=False, default="")
    dropoff_lat = Column(Float, nullable=False)
    dropoff_lng = Column(Float, nullable=False)
    dropoff_address = Column(String(255), nullable=False, default="")
    stops = Column(JSON, nullable=False, default=list)

    vehicle_class = Column(_enum(VehicleClass, "vehicleclass"), nullable=False)
    status = Column(
        _enum(TripStatus, "tripstatus"),
        default=TripStatus.REQUESTED,
        nullable=False,
    )

    # Fare breakdown; total_fare is final only once status = completed
    base_fare = Column(Integer, default=0, nullable=False)
    distance_fare = Column(Integer, default=0, nullable=False)
    time_fare = Column(Integer, default=0, nullable=False)
    surge_multiplier = Column(Float, default=1.0, nullable=False)
    total_fare = Column(Integer, default=0, nullable=False)
    fare_currency = Column(String(8), default="INR", nullable=False)

    distance_km = Column(Float, default=0.0, nullable=False)
    estimated_duration_min = Column(Float, default=0.0, nullable=False)
    actual_duration_min = Column(Float, default=0.0, nullable=False)

    requested_at = Column(DateTime(timezone=True), server_default=func.now())
    driver_assigned_at = Column(DateTime(timezone=True), nullable=True)
    driver_arriving_at = Column(DateTime(timezone=True), nullable=True)
    driver_arrived_at = Column(DateTime(timezone=True), nullable=True)
    trip_started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    payment_status = Column(
        _enum(TripPaymentStatus, "trippaymentstatus"),
        default=TripPaymentStatus.UNPAID,
        nullable=False,
    )
    payment_id = Column(Integer, nullable=True)
    review_id = Column(Integer, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("idx_trips_rider_status", "rider_id", "status"),
        Index("idx_trips_driver_status", "driver_id", "status"),
        Index("idx_trips_status_requested", "status", "requested_at"),
    )


class TripRoutePointModel(Base):
    __tablename__ = "trip_route_points"

    id = Column(Integer, primary_key=True, autoincrement=True)
    trip_id = Column(Integer, ForeignKey("trips.id", ondelete="CASCADE"), nullable=False)
    recorded_at = Column(DateTime(timezone=True), nullable=False)
    lng = Column(Float, nullable=False)
    lat = Column(Float, nullable=False)

    __table_args__ = (Index("idx_route_points_trip", "trip_id", "id"),)


class PaymentModel(Base):
    __tablename__ = "payments"
    __mapper_args__ = {"eager_defaults": True}

    id = Column(Integer, primary_key=True, autoincrement=True)
    rider_id = Column(Integer, ForeignKey("riders.id"), nullable=False)
    driver_id = Column(Integer, ForeignKey("drivers.id"), nullable=False)
    trip_id = Column(Integer, ForeignKey("trips.id"), nullable=False)
    type = Column(
        _enum(PaymentType, "paymenttype"),
        default=PaymentType.TRIP_PAYMENT,
        nullable=False,
    )

    amount = Column(Integer, nullable=False)
    base_fare = Column(Integer, nullable=False)
    tip_amount = Column(Integer, default=0, nullable=False)
    discount = Column(Integer, default=0, nullable=False)
    promo_code = Column(String(40), nullable=True)
    platform_fee = Column(Integer, nullable=False)
    driver_earnings = Column(Integer, nullable=False)
    currency = Column(String(3), default="inr", nullable=False)

    stripe_session_id = Column(String(255), unique=True, nullable=True)
    session_url = Column(String(1024), nullable=True)
    stripe_payment_intent_id = Column(String(255), unique=True, nullable=True)
    stripe_customer_id = Column(String(255), nullable=True)

    status = Column(
        _enum(PaymentStatus, "paymentstatus"),
        default=PaymentStatus.CREATED,
        nullable=False,
    )
    expires_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    failed_at = Column(DateTime(timezone=True), nullable=True)
    expired_at = Column(DateTime(timezone=True), nullable=True)
    failure_reason = Column(String(500), nullable=True)

    refunded_amount = Column(Integer, default=0, nullable=False)
    refund_reason = Column(String(500), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index(
            "uq_payments_live_trip",
            "trip_id",
            unique=True,
            postgresql_where=text(
                "type = 'trip_payment' AND status NOT IN ("
                + ", ".join(
                    f"'{s.value}'" for s in sorted(RELEASED_PAYMENT_STATUSES)
                )
                + ")"
            ),
        ),
        Index("idx_payments_rider_status", "rider_id", "status"),
        Index("idx_payments_driver_status", "driver_id", "status"),
        Index("idx_payments_status_expires", "status", "expires_at"),
        CheckConstraint("refunded_amount <= amount", name="ck_payments_refund"),
    )


class ReviewModel(Base):
    __tablename__ = "reviews"
    __mapper_args__ = {"eager_defaults": True}

    id = Column(Integer, primary_key=True, autoincrement=True)
    trip_id = Column(Integer, ForeignKey("trips.id"), unique=True, nullable=False)
    rider_id = Column(Integer, ForeignKey("riders.id"), nullable=False)
    driver_id = Column(Integer, ForeignKey("drivers.id"), nullable=False)

    rating = Column(Float, nullable=False)
    comment = Column(String(500), nullable=False, default="")
    tags = Column(JSON, nullable=False, default=list)
    status = Column(
        _enum(ReviewStatus, "reviewstatus"),
        default=ReviewStatus.ACTIVE,
        nullable=False,
    )

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("idx_reviews_driver_status", "driver_id", "status"),
        CheckConstraint("rating >= 1 AND rating <= 5", name="ck_reviews_rating"),
    )
