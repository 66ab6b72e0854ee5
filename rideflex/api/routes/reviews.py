"""
Review endpoints
================

POST  /api/v1/reviews/trip/{trip_id}        -- rate the driver of a trip (rider)
GET   /api/v1/reviews/driver/{driver_id}    -- a driver's active reviews
PATCH /api/v1/reviews/{review_id}/status    -- hide / report / restore (admin)
"""

from fastapi import APIRouter, Depends, Query, Request

from rideflex.api.dependencies import Principal, get_principal, get_review_service
from rideflex.api.middleware import limiter
from rideflex.api.schemas import (
    DriverReviewsResponse,
    ReviewRequest,
    ReviewResponse,
    ReviewStatusRequest,
)
from rideflex.config import settings
from rideflex.domain.enums import Role
from rideflex.domain.reviews import ReviewService

router = APIRouter(prefix="/reviews", tags=["reviews"])


@router.post(
    "/trip/{trip_id}",
    status_code=201,
    response_model=ReviewResponse,
    summary="Review the driver of a completed trip",
)
@limiter.limit(settings.rate_limit)
async def create_review(
    request: Request,
    trip_id: int,
    body: ReviewRequest,
    principal: Principal = Depends(get_principal),
    reviews: ReviewService = Depends(get_review_service),
):
    principal.ensure(Role.RIDER)
    review = await reviews.submit(
        trip_id,
        principal.id,
        rating=body.rating,
        comment=body.comment,
        tags=body.tags,
    )
    return ReviewResponse.from_review(review)


@router.get(
    "/driver/{driver_id}",
    response_model=DriverReviewsResponse,
    summary="List a driver's reviews with their rating summary",
)
@limiter.limit(settings.rate_limit)
async def driver_reviews(
    request: Request,
    driver_id: int,
    page: int = Query(1),
    limit: int = Query(10),
    reviews: ReviewService = Depends(get_review_service),
):
    result, stats = await reviews.driver_reviews(driver_id, page=page, limit=limit)
    return DriverReviewsResponse.from_page(result, stats)


@router.patch(
    "/{review_id}/status",
    response_model=ReviewResponse,
    summary="Change whether a review counts towards the driver's rating",
)
@limiter.limit(settings.rate_limit)
async def update_review_status(
    request: Request,
    review_id: int,
    body: ReviewStatusRequest,
    principal: Principal = Depends(get_principal),
    reviews: ReviewService = Depends(get_review_service),
):
    principal.ensure(Role.ADMIN)
    review = await reviews.set_status(review_id, body.status)
    return ReviewResponse.from_review(review)
