"""
Rider endpoints
===============

GET /api/v1/riders/nearby-drivers?lat=&lng=&max_distance= -- drivers around a point
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from rideflex.api.dependencies import get_geo_matcher
from rideflex.api.middleware import limiter
from rideflex.api.schemas import NearbyDriverResponse
from rideflex.config import settings
from rideflex.domain.matching import GeoMatcher

router = APIRouter(prefix="/riders", tags=["riders"])


@router.get(
    "/nearby-drivers",
    response_model=list[NearbyDriverResponse],
    summary="List online drivers near a point, nearest first",
)
@limiter.limit(settings.rate_limit)
async def nearby_drivers(
    request: Request,
    lat: float = Query(...),
    lng: float = Query(...),
    max_distance: Optional[int] = Query(
        None, description="Search radius in metres (default 5000)."
    ),
    matcher: GeoMatcher = Depends(get_geo_matcher),
):
    matches = await matcher.find_nearby(lng, lat, max_distance)
    return [NearbyDriverResponse.from_match(m) for m in matches]
