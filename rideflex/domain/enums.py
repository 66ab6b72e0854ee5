"""Domain enumerations and state-transition rules."""

import enum


class TripStatus(str, enum.Enum):
    REQUESTED = "requested"
    DRIVER_ASSIGNED = "driver_assigned"
    DRIVER_ARRIVING = "driver_arriving"
    DRIVER_ARRIVED = "driver_arrived"
    TRIP_STARTED = "trip_started"
    COMPLETED = "completed"
    CANCELLED_BY_RIDER = "cancelled_by_rider"
    CANCELLED_BY_DRIVER = "cancelled_by_driver"
    NO_SHOW = "no_show"


CANCELLED_STATUSES = frozenset(
    {TripStatus.CANCELLED_BY_RIDER, TripStatus.CANCELLED_BY_DRIVER}
)

# Side branches reachable from every pre-completion status
_ABANDON = {
    TripStatus.CANCELLED_BY_RIDER,
    TripStatus.CANCELLED_BY_DRIVER,
    TripStatus.NO_SHOW,
}

# State machine: maps current status -> set of valid next statuses
TRIP_TRANSITIONS: dict[TripStatus, set[TripStatus]] = {
    TripStatus.REQUESTED: {TripStatus.DRIVER_ASSIGNED} | _ABANDON,
    TripStatus.DRIVER_ASSIGNED: {
        TripStatus.DRIVER_ARRIVING,
        TripStatus.DRIVER_ARRIVED,
    }
    | _ABANDON,
    TripStatus.DRIVER_ARRIVING: {TripStatus.DRIVER_ARRIVED} | _ABANDON,
    TripStatus.DRIVER_ARRIVED: {TripStatus.TRIP_STARTED} | _ABANDON,
    TripStatus.TRIP_STARTED: {TripStatus.COMPLETED} | _ABANDON,
    TripStatus.COMPLETED: set(),
    TripStatus.CANCELLED_BY_RIDER: set(),
    TripStatus.CANCELLED_BY_DRIVER: set(),
    TripStatus.NO_SHOW: set(),
}

# Statuses that need a dedicated operation (assign / finalize / cancel)
# and therefore cannot be reached through a plain status advance.
ADVANCE_EXCLUDED = frozenset(
    {TripStatus.DRIVER_ASSIGNED, TripStatus.COMPLETED} | CANCELLED_STATUSES
)

# Statuses during which the driver is en route or on trip
IN_PROGRESS_STATUSES = frozenset(
    {
        TripStatus.DRIVER_ASSIGNED,
        TripStatus.DRIVER_ARRIVING,
        TripStatus.DRIVER_ARRIVED,
        TripStatus.TRIP_STARTED,
    }
)

# Column stamped when a trip enters a status
STATUS_TIMESTAMPS: dict[TripStatus, str] = {
    TripStatus.DRIVER_ASSIGNED: "driver_assigned_at",
    TripStatus.DRIVER_ARRIVING: "driver_arriving_at",
    TripStatus.DRIVER_ARRIVED: "driver_arrived_at",
    TripStatus.TRIP_STARTED: "trip_started_at",
    TripStatus.COMPLETED: "completed_at",
    TripStatus.CANCELLED_BY_RIDER: "completed_at",
    TripStatus.CANCELLED_BY_DRIVER: "completed_at",
    TripStatus.NO_SHOW: "completed_at",
}


def is_terminal(status: TripStatus) -> bool:
    return not TRIP_TRANSITIONS[TripStatus(status)]


class VehicleClass(str, enum.Enum):
    SEDAN = "Sedan"
    SUV = "SUV"
    VAN = "Van"


class DriverStatus(str, enum.Enum):
    OFFLINE = "offline"
    ONLINE = "online"
    BUSY = "busy"
    BREAK = "break"


class TripPaymentStatus(str, enum.Enum):
    UNPAID = "unpaid"
    PAID = "paid"


class PaymentStatus(str, enum.Enum):
    CREATED = "created"
    PENDING = "pending"
    PROCESSING = "processing"
    PAID = "paid"
    FAILED = "failed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"


# Payments that may still be settled by the processor
OPEN_PAYMENT_STATUSES = frozenset(
    {PaymentStatus.CREATED, PaymentStatus.PENDING, PaymentStatus.PROCESSING}
)

# A trip with a payment in one of these cannot open another checkout
BLOCKING_PAYMENT_STATUSES = frozenset(
    {PaymentStatus.PAID, PaymentStatus.PROCESSING}
)

# Payments that no longer hold the per-trip uniqueness slot
RELEASED_PAYMENT_STATUSES = frozenset(
    {PaymentStatus.FAILED, PaymentStatus.CANCELLED, PaymentStatus.EXPIRED}
)

REFUNDABLE_PAYMENT_STATUSES = frozenset(
    {PaymentStatus.PAID, PaymentStatus.PARTIALLY_REFUNDED}
)

# Payments that were collected at some point; rider aggregates count these
SETTLED_PAYMENT_STATUSES = REFUNDABLE_PAYMENT_STATUSES | {PaymentStatus.REFUNDED}


class PaymentType(str, enum.Enum):
    TRIP_PAYMENT = "trip_payment"
    TIP = "tip"


class PaymentSource(str, enum.Enum):
    """Which delivery path reported a payment completion."""

    REDIRECT = "redirect"
    WEBHOOK = "webhook"
    INTENT = "intent"


class Role(str, enum.Enum):
    RIDER = "rider"
    DRIVER = "driver"
    ADMIN = "admin"


class ReviewStatus(str, enum.Enum):
    ACTIVE = "active"
    HIDDEN = "hidden"
    REPORTED = "reported"


REVIEW_TAGS = frozenset(
    {
        "excellent_driver",
        "safe_driving",
        "clean_car",
        "friendly",
        "punctual",
        "smooth_ride",
        "good_music",
        "helpful",
        "polite",
        "professional",
        "late_arrival",
        "rude_behavior",
        "unsafe_driving",
        "dirty_car",
        "cancelled_trip",
        "overcharging",
        "poor_navigation",
        "quiet_ride",
        "average_experience",
    }
)
