"""Pydantic request / response schemas for the REST API."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from rideflex.domain.entities import (
    FareBreakdown,
    NearbyDriver,
    Page,
    RatingStats,
    Reconciliation,
)


def _value(v):
    return getattr(v, "value", v)


# ── Requests ──────────────────────────────────────────────────────────


class LocationIn(BaseModel):
    coordinates: list[Any] = Field(
        ..., description="``[longitude, latitude]`` in WGS84 degrees."
    )
    address: str = ""


class TripCreateRequest(BaseModel):
    pickup_location: LocationIn
    dropoff_location: LocationIn
    stops: list[LocationIn] = []
    vehicle_class: str = Field(..., examples=["Sedan", "SUV", "Van"])


class FareEstimateRequest(BaseModel):
    pickup_location: LocationIn
    dropoff_location: LocationIn
    vehicle_class: str


class AssignDriverRequest(BaseModel):
    driver_id: Optional[int] = Field(
        None, description="Defaults to the calling driver."
    )


class TripStatusRequest(BaseModel):
    status: str


class CancelTripRequest(BaseModel):
    cancelled_by: Optional[str] = Field(
        None, description="``rider`` or ``driver``; defaults to the caller's role."
    )


class RoutePointRequest(BaseModel):
    lng: float
    lat: float


class CompleteTripRequest(BaseModel):
    actual_distance_km: float = Field(..., ge=0)
    actual_duration_min: float = Field(..., ge=0)


class DriverLocationRequest(BaseModel):
    coordinates: list[Any] = Field(
        default_factory=list,
        description="``[longitude, latitude]``; anything malformed clears the location.",
    )


class DriverStatusRequest(BaseModel):
    status: str


class CheckoutRequest(BaseModel):
    trip_id: int
    tip_amount: int = 0
    promo_code: Optional[str] = None
    customer_email: Optional[str] = None


class PaymentIntentRequest(BaseModel):
    trip_id: int
    tip_amount: int = 0
    payment_method_id: Optional[str] = None


class TipRequest(BaseModel):
    trip_id: int
    tip_amount: int
    payment_method_id: Optional[str] = None


class RefundRequest(BaseModel):
    amount: Optional[int] = Field(None, description="Whole currency units; defaults to the remainder.")
    reason: Optional[str] = Field(None, max_length=500)


class PaymentMethodRequest(BaseModel):
    payment_method_id: str


class ReviewRequest(BaseModel):
    rating: float = Field(..., description="1 to 5 in steps of 0.5.")
    comment: str = ""
    tags: list[str] = []


class ReviewStatusRequest(BaseModel):
    status: str = Field(..., examples=["active", "hidden", "reported"])


# ── Responses ─────────────────────────────────────────────────────────


class LocationOut(BaseModel):
    coordinates: list[float]
    address: str = ""


class FareOut(BaseModel):
    base_fare: int
    distance_fare: int
    time_fare: int
    surge_multiplier: float
    total_fare: int
    currency: str

    @classmethod
    def from_breakdown(cls, fare: FareBreakdown) -> "FareOut":
        return cls(**fare.to_dict())


class FareEstimateResponse(BaseModel):
    distance_km: float
    estimated_duration_min: int
    fare: FareOut


class TripResponse(BaseModel):
    id: int
    rider_id: int
    driver_id: Optional[int] = None
    pickup_location: LocationOut
    dropoff_location: LocationOut
    stops: list[LocationOut] = []
    vehicle_class: str
    status: str
    fare: FareOut
    distance_km: float
    estimated_duration_min: float
    actual_duration_min: float = 0
    requested_at: Optional[datetime] = None
    driver_assigned_at: Optional[datetime] = None
    driver_arriving_at: Optional[datetime] = None
    driver_arrived_at: Optional[datetime] = None
    trip_started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    payment_status: str
    payment_id: Optional[int] = None

    @classmethod
    def from_trip(cls, trip) -> "TripResponse":
        return cls(
            id=trip.id,
            rider_id=trip.rider_id,
            driver_id=trip.driver_id,
            pickup_location=LocationOut(
                coordinates=[trip.pickup_lng, trip.pickup_lat],
                address=trip.pickup_address or "",
            ),
            dropoff_location=LocationOut(
                coordinates=[trip.dropoff_lng, trip.dropoff_lat],
                address=trip.dropoff_address or "",
            ),
            stops=[LocationOut(**stop) for stop in (trip.stops or [])],
            vehicle_class=_value(trip.vehicle_class),
            status=_value(trip.status),
            fare=FareOut(
                base_fare=trip.base_fare or 0,
                distance_fare=trip.distance_fare or 0,
                time_fare=trip.time_fare or 0,
                surge_multiplier=trip.surge_multiplier or 1.0,
                total_fare=trip.total_fare or 0,
                currency=trip.fare_currency or "INR",
            ),
            distance_km=trip.distance_km or 0,
            estimated_duration_min=trip.estimated_duration_min or 0,
            actual_duration_min=trip.actual_duration_min or 0,
            requested_at=trip.requested_at,
            driver_assigned_at=trip.driver_assigned_at,
            driver_arriving_at=trip.driver_arriving_at,
            driver_arrived_at=trip.driver_arrived_at,
            trip_started_at=trip.trip_started_at,
            completed_at=trip.completed_at,
            payment_status=_value(trip.payment_status),
            payment_id=trip.payment_id,
        )


class RiderSummary(BaseModel):
    id: int
    name: str
    phone_no: Optional[str] = None
    total_trips: int = 0
    total_amount_spent: int = 0
    last_payment_date: Optional[datetime] = None

    model_config = {"from_attributes": True}


class TripDetailResponse(TripResponse):
    rider: Optional[RiderSummary] = None
    driver: Optional[dict] = None


class RoutePointResponse(BaseModel):
    trip_id: int
    lng: float
    lat: float
    recorded_at: datetime

    model_config = {"from_attributes": True}


class NearbyDriverResponse(BaseModel):
    driver_id: int
    distance_km: float
    name: str
    photo: str
    phone_no: str
    vehicle: str
    vehicle_plate: str
    status: str
    total_trips: int
    acceptance_rate: float

    @classmethod
    def from_match(cls, match: NearbyDriver) -> "NearbyDriverResponse":
        return cls(driver_id=match.driver_id, distance_km=match.distance_km, **match.profile)


class DriverResponse(BaseModel):
    id: int
    name: str
    status: str
    has_location: bool

    @classmethod
    def from_driver(cls, driver) -> "DriverResponse":
        return cls(
            id=driver.id,
            name=driver.name,
            status=_value(driver.status),
            has_location=driver.current_location is not None,
        )


class PaymentResponse(BaseModel):
    id: int
    trip_id: int
    rider_id: int
    driver_id: Optional[int] = None
    type: str
    amount: int
    base_fare: int
    tip_amount: int = 0
    discount: int = 0
    promo_code: Optional[str] = None
    platform_fee: int
    driver_earnings: int
    currency: str
    status: str
    session_url: Optional[str] = None
    stripe_session_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    refunded_amount: int = 0

    @classmethod
    def from_payment(cls, payment) -> "PaymentResponse":
        return cls(
            id=payment.id,
            trip_id=payment.trip_id,
            rider_id=payment.rider_id,
            driver_id=payment.driver_id,
            type=_value(payment.type),
            amount=payment.amount,
            base_fare=payment.base_fare,
            tip_amount=payment.tip_amount or 0,
            discount=payment.discount or 0,
            promo_code=payment.promo_code,
            platform_fee=payment.platform_fee,
            driver_earnings=payment.driver_earnings,
            currency=payment.currency,
            status=_value(payment.status),
            session_url=payment.session_url,
            stripe_session_id=payment.stripe_session_id,
            expires_at=payment.expires_at,
            completed_at=payment.completed_at,
            refunded_amount=payment.refunded_amount or 0,
        )


class PaymentHistoryResponse(BaseModel):
    results: int
    total: int
    total_pages: int
    current_page: int
    payments: list[PaymentResponse]

    @classmethod
    def from_page(cls, page: Page) -> "PaymentHistoryResponse":
        return cls(
            results=len(page.items),
            total=page.total,
            total_pages=page.total_pages,
            current_page=page.page,
            payments=[PaymentResponse.from_payment(p) for p in page.items],
        )


class PaymentDetailResponse(PaymentResponse):
    trip: Optional[TripResponse] = None
    rider: Optional[RiderSummary] = None
    driver: Optional[dict] = None


class CheckoutResponse(BaseModel):
    payment_id: int
    session_id: str
    url: str
    amount: int


class PaymentIntentResponse(BaseModel):
    payment: PaymentResponse
    intent_id: str
    intent_status: str
    client_secret: Optional[str] = None


class ReconciliationResponse(BaseModel):
    payment: PaymentResponse
    trip_payment_status: Optional[str] = None
    rider_total_trips: Optional[int] = None
    rider_total_amount_spent: Optional[int] = None
    payment_updated: bool
    stats_updated: bool

    @classmethod
    def from_result(cls, result: Reconciliation) -> "ReconciliationResponse":
        return cls(
            payment=PaymentResponse.from_payment(result.payment),
            trip_payment_status=_value(result.trip.payment_status) if result.trip else None,
            rider_total_trips=result.rider.total_trips if result.rider else None,
            rider_total_amount_spent=(
                result.rider.total_amount_spent if result.rider else None
            ),
            payment_updated=result.payment_updated,
            stats_updated=result.stats_updated,
        )


class PaymentMethodResponse(BaseModel):
    id: str
    brand: Optional[str] = None
    last4: Optional[str] = None
    exp_month: Optional[int] = None
    exp_year: Optional[int] = None


class ReviewResponse(BaseModel):
    id: int
    trip_id: int
    rider_id: int
    driver_id: int
    rating: float
    comment: str = ""
    tags: list[str] = []
    status: str
    created_at: Optional[datetime] = None

    @classmethod
    def from_review(cls, review) -> "ReviewResponse":
        return cls(
            id=review.id,
            trip_id=review.trip_id,
            rider_id=review.rider_id,
            driver_id=review.driver_id,
            rating=review.rating,
            comment=review.comment or "",
            tags=list(review.tags or []),
            status=_value(review.status),
            created_at=review.created_at,
        )


class RatingStatsOut(BaseModel):
    average_rating: float
    total_reviews: int


class DriverReviewsResponse(BaseModel):
    results: int
    total_reviews: int
    current_page: int
    total_pages: int
    driver_stats: RatingStatsOut
    reviews: list[ReviewResponse]

    @classmethod
    def from_page(cls, page: Page, stats: RatingStats) -> "DriverReviewsResponse":
        return cls(
            results=len(page.items),
            total_reviews=page.total,
            current_page=page.page,
            total_pages=page.total_pages,
            driver_stats=RatingStatsOut(
                average_rating=stats.average_rating,
                total_reviews=stats.total_reviews,
            ),
            reviews=[ReviewResponse.from_review(r) for r in page.items],
        )


class WebhookAck(BaseModel):
    received: bool = True
    handled: bool


class HealthResponse(BaseModel):
    status: str = "ok"


class ErrorResponse(BaseModel):
    kind: str
    detail: str
