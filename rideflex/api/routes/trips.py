"""
Trip endpoints
==============

POST  /api/v1/trips                 -- request a trip (rider)
POST  /api/v1/trips/fare-estimate   -- price a trip without creating it
GET   /api/v1/trips/{trip_id}       -- trip with rider and driver
PATCH /api/v1/trips/{trip_id}/assign   -- assign a driver
PATCH /api/v1/trips/{trip_id}/status   -- arriving / arrived / started / no_show
PATCH /api/v1/trips/{trip_id}/cancel   -- cancel (rider or driver)
POST  /api/v1/trips/{trip_id}/route    -- append a route point
POST  /api/v1/trips/{trip_id}/complete -- finalize with actual distance / duration
"""

from typing import Optional

from fastapi import APIRouter, Depends, Request

from rideflex.api.dependencies import (
    Principal,
    get_fare_engine,
    get_principal,
    get_trip_lifecycle,
)
from rideflex.api.middleware import limiter
from rideflex.api.schemas import (
    AssignDriverRequest,
    CancelTripRequest,
    CompleteTripRequest,
    FareEstimateRequest,
    FareEstimateResponse,
    FareOut,
    RiderSummary,
    RoutePointRequest,
    RoutePointResponse,
    TripCreateRequest,
    TripDetailResponse,
    TripResponse,
    TripStatusRequest,
)
from rideflex.config import settings
from rideflex.domain.entities import Location
from rideflex.domain.enums import Role
from rideflex.domain.errors import ValidationError
from rideflex.domain.matching import driver_profile
from rideflex.domain.pricing import FareEngine
from rideflex.domain.trips import TripLifecycle

router = APIRouter(prefix="/trips", tags=["trips"])


@router.post(
    "",
    status_code=201,
    response_model=TripResponse,
    summary="Request a trip",
)
@limiter.limit(settings.rate_limit)
async def create_trip(
    request: Request,
    body: TripCreateRequest,
    principal: Principal = Depends(get_principal),
    trips: TripLifecycle = Depends(get_trip_lifecycle),
):
    principal.ensure(Role.RIDER)
    trip = await trips.create(
        rider_id=principal.id,
        pickup=body.pickup_location.model_dump(),
        dropoff=body.dropoff_location.model_dump(),
        stops=[stop.model_dump() for stop in body.stops],
        vehicle_class=body.vehicle_class,
    )
    return TripResponse.from_trip(trip)


@router.post(
    "/fare-estimate",
    response_model=FareEstimateResponse,
    summary="Estimate distance, duration and fare",
    description="Surge is read from the current wall clock, so the figure is advisory.",
)
@limiter.limit(settings.rate_limit)
async def estimate_fare(
    request: Request,
    body: FareEstimateRequest,
    fare_engine: FareEngine = Depends(get_fare_engine),
):
    estimate = fare_engine.estimate(
        Location.parse(body.pickup_location.model_dump(), "pickup location"),
        Location.parse(body.dropoff_location.model_dump(), "dropoff location"),
        body.vehicle_class,
    )
    return FareEstimateResponse(
        distance_km=estimate.distance_km,
        estimated_duration_min=estimate.estimated_duration_min,
        fare=FareOut.from_breakdown(estimate.fare),
    )


@router.get(
    "/{trip_id}",
    response_model=TripDetailResponse,
    summary="Get a trip with its rider and driver",
)
@limiter.limit(settings.rate_limit)
async def get_trip(
    request: Request,
    trip_id: int,
    principal: Principal = Depends(get_principal),
    trips: TripLifecycle = Depends(get_trip_lifecycle),
):
    view = await trips.describe(trip_id)
    if principal.role == Role.RIDER:
        principal.ensure_self(Role.RIDER, view.trip.rider_id)
    elif principal.role == Role.DRIVER:
        principal.ensure_self(Role.DRIVER, view.trip.driver_id)
    base = TripResponse.from_trip(view.trip)
    return TripDetailResponse(
        **base.model_dump(),
        rider=RiderSummary.model_validate(view.rider) if view.rider else None,
        driver=driver_profile(view.driver) if view.driver else None,
    )


@router.patch(
    "/{trip_id}/assign",
    response_model=TripResponse,
    summary="Assign a driver to a requested trip",
)
@limiter.limit(settings.rate_limit)
async def assign_driver(
    request: Request,
    trip_id: int,
    body: AssignDriverRequest,
    principal: Principal = Depends(get_principal),
    trips: TripLifecycle = Depends(get_trip_lifecycle),
):
    principal.ensure(Role.DRIVER, Role.ADMIN)
    driver_id = body.driver_id if body.driver_id is not None else principal.id
    principal.ensure_self(Role.DRIVER, driver_id)
    trip = await trips.assign_driver(trip_id, driver_id)
    return TripResponse.from_trip(trip)


@router.patch(
    "/{trip_id}/status",
    response_model=TripResponse,
    summary="Advance a trip along its lifecycle",
)
@limiter.limit(settings.rate_limit)
async def update_status(
    request: Request,
    trip_id: int,
    body: TripStatusRequest,
    principal: Principal = Depends(get_principal),
    trips: TripLifecycle = Depends(get_trip_lifecycle),
):
    principal.ensure(Role.DRIVER, Role.ADMIN)
    trip = await trips.advance_status(
        trip_id, body.status, driver_id=principal.acting_id
    )
    return TripResponse.from_trip(trip)


@router.patch(
    "/{trip_id}/cancel",
    response_model=TripResponse,
    summary="Cancel a trip",
    description="Idempotent: cancelling an already-cancelled trip returns it unchanged.",
)
@limiter.limit(settings.rate_limit)
async def cancel_trip(
    request: Request,
    trip_id: int,
    body: Optional[CancelTripRequest] = None,
    principal: Principal = Depends(get_principal),
    trips: TripLifecycle = Depends(get_trip_lifecycle),
):
    if principal.role == Role.ADMIN:
        cancelled_by = body.cancelled_by if body else None
        if not cancelled_by:
            raise ValidationError("cancelled_by is required")
    else:
        cancelled_by = principal.role.value
    trip = await trips.cancel(trip_id, cancelled_by, actor_id=principal.acting_id)
    return TripResponse.from_trip(trip)


@router.post(
    "/{trip_id}/route",
    status_code=201,
    response_model=RoutePointResponse,
    summary="Record a route point for an in-progress trip",
)
@limiter.limit(settings.rate_limit)
async def append_route_point(
    request: Request,
    trip_id: int,
    body: RoutePointRequest,
    principal: Principal = Depends(get_principal),
    trips: TripLifecycle = Depends(get_trip_lifecycle),
):
    principal.ensure(Role.DRIVER, Role.ADMIN)
    point = await trips.append_route_point(
        trip_id, body.lng, body.lat, driver_id=principal.acting_id
    )
    return RoutePointResponse.model_validate(point)


@router.post(
    "/{trip_id}/complete",
    response_model=TripResponse,
    summary="Complete a started trip and freeze its fare",
)
@limiter.limit(settings.rate_limit)
async def complete_trip(
    request: Request,
    trip_id: int,
    body: CompleteTripRequest,
    principal: Principal = Depends(get_principal),
    trips: TripLifecycle = Depends(get_trip_lifecycle),
):
    principal.ensure(Role.DRIVER, Role.ADMIN)
    trip = await trips.finalize(
        trip_id,
        body.actual_distance_km,
        body.actual_duration_min,
        driver_id=principal.acting_id,
    )
    return TripResponse.from_trip(trip)
