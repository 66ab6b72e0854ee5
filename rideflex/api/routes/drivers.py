"""
Driver endpoints
================

PATCH /api/v1/drivers/{driver_id}/location -- report current position
PATCH /api/v1/drivers/{driver_id}/status   -- go online / offline / on break
"""

from fastapi import APIRouter, Depends, Request

from rideflex.api.dependencies import Principal, get_geo_matcher, get_principal
from rideflex.api.middleware import limiter
from rideflex.api.schemas import (
    DriverLocationRequest,
    DriverResponse,
    DriverStatusRequest,
)
from rideflex.config import settings
from rideflex.domain.enums import Role
from rideflex.domain.matching import GeoMatcher

router = APIRouter(prefix="/drivers", tags=["drivers"])


@router.patch(
    "/{driver_id}/location",
    response_model=DriverResponse,
    summary="Update a driver's location",
    description="Malformed coordinates clear the stored location.",
)
@limiter.limit(settings.rate_limit)
async def update_location(
    request: Request,
    driver_id: int,
    body: DriverLocationRequest,
    principal: Principal = Depends(get_principal),
    matcher: GeoMatcher = Depends(get_geo_matcher),
):
    principal.ensure_self(Role.DRIVER, driver_id)
    coords = body.coordinates if len(body.coordinates) == 2 else [None, None]
    driver = await matcher.update_location(driver_id, coords[0], coords[1])
    return DriverResponse.from_driver(driver)


@router.patch(
    "/{driver_id}/status",
    response_model=DriverResponse,
    summary="Update a driver's availability",
)
@limiter.limit(settings.rate_limit)
async def update_status(
    request: Request,
    driver_id: int,
    body: DriverStatusRequest,
    principal: Principal = Depends(get_principal),
    matcher: GeoMatcher = Depends(get_geo_matcher),
):
    principal.ensure_self(Role.DRIVER, driver_id)
    driver = await matcher.set_status(driver_id, body.status)
    return DriverResponse.from_driver(driver)
