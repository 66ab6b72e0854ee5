"""Initial schema with PostGIS extension and all core tables.

Revision ID: 001
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa
from geoalchemy2 import Geometry


revision = "001"
down_revision = None
branch_labels = None
depends_on = None

VEHICLE_CLASS = ("Sedan", "SUV", "Van")
DRIVER_STATUS = ("offline", "online", "busy", "break")
TRIP_STATUS = (
    "requested",
    "driver_assigned",
    "driver_arriving",
    "driver_arrived",
    "trip_started",
    "completed",
    "cancelled_by_rider",
    "cancelled_by_driver",
    "no_show",
)
TRIP_PAYMENT_STATUS = ("unpaid", "paid")
PAYMENT_STATUS = (
    "created",
    "pending",
    "processing",
    "paid",
    "failed",
    "cancelled",
    "expired",
    "refunded",
    "partially_refunded",
)
PAYMENT_TYPE = ("trip_payment", "tip")


def _timestamps():
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
    ]


def upgrade() -> None:
    # Enable PostGIS extension
    op.execute("CREATE EXTENSION IF NOT EXISTS postgis")

    vehicle_class = sa.Enum(*VEHICLE_CLASS, name="vehicleclass")

    # ── riders ────────────────────────────────────────────────────────
    op.create_table(
        "riders",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(120), nullable=False),
        sa.Column("email", sa.String(255), unique=True, nullable=False),
        sa.Column("phone_no", sa.String(20), nullable=True),
        sa.Column("stripe_customer_id", sa.String(255), nullable=True),
        sa.Column("total_trips", sa.Integer, nullable=False, server_default="0"),
        sa.Column(
            "total_amount_spent", sa.Integer, nullable=False, server_default="0"
        ),
        sa.Column("last_payment_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
    )

    # ── drivers ───────────────────────────────────────────────────────
    op.create_table(
        "drivers",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(120), nullable=False),
        sa.Column("email", sa.String(255), unique=True, nullable=False),
        sa.Column("phone_no", sa.String(20), nullable=True),
        sa.Column("photo", sa.String(255), nullable=True),
        sa.Column("licence_no", sa.String(64), unique=True, nullable=False),
        sa.Column("vehicle_make", sa.String(60), nullable=True),
        sa.Column("vehicle_model", sa.String(60), nullable=True),
        sa.Column("license_plate", sa.String(20), unique=True, nullable=True),
        sa.Column("vehicle_class", vehicle_class, nullable=True),
        sa.Column(
            "status",
            sa.Enum(*DRIVER_STATUS, name="driverstatus"),
            nullable=False,
            server_default="offline",
        ),
        sa.Column(
            "current_location", Geometry("POINT", srid=4326), nullable=True
        ),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column(
            "is_approved", sa.Boolean, nullable=False, server_default=sa.false()
        ),
        sa.Column("total_trips", sa.Integer, nullable=False, server_default="0"),
        sa.Column("acceptance_rate", sa.Float, nullable=False, server_default="0"),
        *_timestamps(),
    )
    op.create_index(
        "idx_drivers_location",
        "drivers",
        ["current_location"],
        postgresql_using="gist",
        postgresql_where=sa.text("current_location IS NOT NULL"),
    )
    op.create_index("idx_drivers_status", "drivers", ["status"])

    # ── trips ─────────────────────────────────────────────────────────
    op.create_table(
        "trips",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "rider_id", sa.Integer, sa.ForeignKey("riders.id"), nullable=False
        ),
        sa.Column(
            "driver_id", sa.Integer, sa.ForeignKey("drivers.id"), nullable=True
        ),
        sa.Column("pickup_lat", sa.Float, nullable=False),
        sa.Column("pickup_lng", sa.Float, nullable=False),
        sa.Column("pickup_address", sa.String(255), nullable=False, server_default=""),
        sa.Column("dropoff_lat", sa.Float, nullable=False),
        sa.Column("dropoff_lng", sa.Float, nullable=False),
        sa.Column(
            "dropoff_address", sa.String(255), nullable=False, server_default=""
        ),
        sa.Column("stops", sa.JSON, nullable=False, server_default="[]"),
        sa.Column("vehicle_class", vehicle_class, nullable=False),
        sa.Column(
            "status",
            sa.Enum(*TRIP_STATUS, name="tripstatus"),
            nullable=False,
            server_default="requested",
        ),
        sa.Column("base_fare", sa.Integer, nullable=False, server_default="0"),
        sa.Column("distance_fare", sa.Integer, nullable=False, server_default="0"),
        sa.Column("time_fare", sa.Integer, nullable=False, server_default="0"),
        sa.Column("surge_multiplier", sa.Float, nullable=False, server_default="1"),
        sa.Column("total_fare", sa.Integer, nullable=False, server_default="0"),
        sa.Column("fare_currency", sa.String(8), nullable=False, server_default="INR"),
        sa.Column("distance_km", sa.Float, nullable=False, server_default="0"),
        sa.Column(
            "estimated_duration_min", sa.Float, nullable=False, server_default="0"
        ),
        sa.Column(
            "actual_duration_min", sa.Float, nullable=False, server_default="0"
        ),
        sa.Column(
            "requested_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
        sa.Column("driver_assigned_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("driver_arriving_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("driver_arrived_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("trip_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "payment_status",
            sa.Enum(*TRIP_PAYMENT_STATUS, name="trippaymentstatus"),
            nullable=False,
            server_default="unpaid",
        ),
        sa.Column("payment_id", sa.Integer, nullable=True),
        sa.Column("review_id", sa.Integer, nullable=True),
        *_timestamps(),
    )
    op.create_index("idx_trips_rider_status", "trips", ["rider_id", "status"])
    op.create_index("idx_trips_driver_status", "trips", ["driver_id", "status"])
    op.create_index(
        "idx_trips_status_requested", "trips", ["status", "requested_at"]
    )

    # ── trip_route_points ─────────────────────────────────────────────
    op.create_table(
        "trip_route_points",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "trip_id",
            sa.Integer,
            sa.ForeignKey("trips.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("recorded_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("lng", sa.Float, nullable=False),
        sa.Column("lat", sa.Float, nullable=False),
    )
    op.create_index("idx_route_points_trip", "trip_route_points", ["trip_id", "id"])

    # ── payments ──────────────────────────────────────────────────────
    op.create_table(
        "payments",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "rider_id", sa.Integer, sa.ForeignKey("riders.id"), nullable=False
        ),
        sa.Column(
            "driver_id", sa.Integer, sa.ForeignKey("drivers.id"), nullable=False
        ),
        sa.Column("trip_id", sa.Integer, sa.ForeignKey("trips.id"), nullable=False),
        sa.Column(
            "type",
            sa.Enum(*PAYMENT_TYPE, name="paymenttype"),
            nullable=False,
            server_default="trip_payment",
        ),
        sa.Column("amount", sa.Integer, nullable=False),
        sa.Column("base_fare", sa.Integer, nullable=False),
        sa.Column("tip_amount", sa.Integer, nullable=False, server_default="0"),
        sa.Column("discount", sa.Integer, nullable=False, server_default="0"),
        sa.Column("promo_code", sa.String(40), nullable=True),
        sa.Column("platform_fee", sa.Integer, nullable=False),
        sa.Column("driver_earnings", sa.Integer, nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default="inr"),
        sa.Column("stripe_session_id", sa.String(255), unique=True, nullable=True),
        sa.Column("session_url", sa.String(1024), nullable=True),
        sa.Column(
            "stripe_payment_intent_id", sa.String(255), unique=True, nullable=True
        ),
        sa.Column("stripe_customer_id", sa.String(255), nullable=True),
        sa.Column(
            "status",
            sa.Enum(*PAYMENT_STATUS, name="paymentstatus"),
            nullable=False,
            server_default="created",
        ),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expired_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failure_reason", sa.String(500), nullable=True),
        sa.Column("refunded_amount", sa.Integer, nullable=False, server_default="0"),
        sa.Column("refund_reason", sa.String(500), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("refunded_amount <= amount", name="ck_payments_refund"),
    )
    # At most one live trip payment per trip
    op.create_index(
        "uq_payments_live_trip",
        "payments",
        ["trip_id"],
        unique=True,
        postgresql_where=sa.text(
            "type = 'trip_payment' "
            "AND status NOT IN ('failed', 'cancelled', 'expired')"
        ),
    )
    op.create_index("idx_payments_rider_status", "payments", ["rider_id", "status"])
    op.create_index(
        "idx_payments_driver_status", "payments", ["driver_id", "status"]
    )
    op.create_index(
        "idx_payments_status_expires", "payments", ["status", "expires_at"]
    )


def downgrade() -> None:
    op.drop_table("payments")
    op.drop_table("trip_route_points")
    op.drop_table("trips")
    op.drop_table("drivers")
    op.drop_table("riders")
    for enum_name in (
        "paymenttype",
        "paymentstatus",
        "trippaymentstatus",
        "tripstatus",
        "driverstatus",
        "vehicleclass",
    ):
        op.execute(f"DROP TYPE IF EXISTS {enum_name}")
