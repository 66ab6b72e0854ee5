"""
Driver Reviews
==============

A rider rates the driver of a completed trip once, from 1 to 5 in half
steps.  The driver's ``rating`` / ``total_reviews`` are recomputed from
the active reviews after every change rather than adjusted in place, so
hiding a review and showing it again lands on the same numbers.
"""

from __future__ import annotations

import logging
import numbers
from typing import Optional

from .entities import Page, RatingStats, page_offset
from .enums import REVIEW_TAGS, ReviewStatus, TripStatus
from .errors import Conflict, Forbidden, NotFound, ValidationError
from .notify import notify
from .pricing import round_half_up

logger = logging.getLogger(__name__)

MAX_COMMENT_LENGTH = 500


def validate_rating(value) -> float:
    if isinstance(value, bool) or not isinstance(value, numbers.Real):
        raise ValidationError("Rating must be a number")
    if not 1 <= value <= 5:
        raise ValidationError("Rating must be between 1 and 5")
    if (value * 2) % 1:
        raise ValidationError(
            "Rating must be a whole number or half number (e.g., 4.5)"
        )
    return float(value)


def _validate_tags(tags) -> list[str]:
    tags = list(tags or [])
    unknown = sorted(set(tags) - REVIEW_TAGS)
    if unknown:
        raise ValidationError(f"Unknown review tags: {', '.join(unknown)}")
    # keep first occurrence order
    return list(dict.fromkeys(tags))


def _parse_review_status(value) -> ReviewStatus:
    try:
        return ReviewStatus(value)
    except ValueError:
        raise ValidationError(
            "Status must be one of: "
            + ", ".join(s.value for s in ReviewStatus)
        ) from None


class ReviewService:
    def __init__(self, reviews, trips, drivers, notifier=None):
        self.reviews = reviews
        self.trips = trips
        self.drivers = drivers
        self.notifier = notifier

    async def submit(
        self,
        trip_id: int,
        rider_id: int,
        rating,
        comment: Optional[str] = "",
        tags=None,
    ):
        rating = validate_rating(rating)
        comment = (comment or "").strip()
        if len(comment) > MAX_COMMENT_LENGTH:
            raise ValidationError(
                f"Review comment cannot exceed {MAX_COMMENT_LENGTH} characters"
            )
        tags = _validate_tags(tags)

        trip = await self.trips.get_for_update(trip_id)
        if not trip:
            raise NotFound("Trip not found")
        if trip.rider_id != rider_id:
            raise Forbidden("You can only review your own trips")
        if trip.status != TripStatus.COMPLETED:
            raise Conflict("Only completed trips can be reviewed")
        if trip.driver_id is None:
            raise Conflict("Trip has no driver to review")
        if await self.reviews.get_by_trip(trip.id):
            raise Conflict("Trip has already been reviewed")

        review = await self.reviews.create_review(
            trip_id=trip.id,
            rider_id=rider_id,
            driver_id=trip.driver_id,
            rating=rating,
            comment=comment,
            tags=tags,
            status=ReviewStatus.ACTIVE,
        )
        trip.review_id = review.id
        logger.info(
            "Trip %s reviewed: driver %s rated %s", trip.id, trip.driver_id, rating
        )
        await self.refresh_driver_rating(trip.driver_id)
        await notify(
            self.notifier, "review.received",
            review_id=review.id, trip_id=trip.id, driver_id=trip.driver_id,
            rating=rating,
        )
        return review

    async def set_status(self, review_id: int, status):
        status = _parse_review_status(status)
        review = await self.reviews.get_by_id(review_id)
        if not review:
            raise NotFound("No review found with that ID")
        if review.status != status:
            await self.reviews.set_status(review, status)
            logger.info("Review %s is now %s", review.id, status.value)
            await self.refresh_driver_rating(review.driver_id)
        return review

    async def driver_reviews(
        self, driver_id: int, page: int = 1, limit: int = 10
    ) -> tuple[Page, RatingStats]:
        offset = page_offset(page, limit)
        if not await self.drivers.get_by_id(driver_id):
            raise NotFound("No driver found with that ID")
        items, total = await self.reviews.list_for_driver(
            driver_id, offset=offset, limit=limit
        )
        stats = await self.rating_stats(driver_id)
        return Page(items=items, total=total, page=page, limit=limit), stats

    async def rating_stats(self, driver_id: int) -> RatingStats:
        average, count = await self.reviews.rating_stats(driver_id)
        if not count:
            return RatingStats()
        return RatingStats(
            average_rating=round_half_up(average, 1), total_reviews=count
        )

    async def refresh_driver_rating(self, driver_id: int) -> RatingStats:
        stats = await self.rating_stats(driver_id)
        driver = await self.drivers.get_by_id(driver_id)
        if driver is None:
            logger.warning("Review left for missing driver %s", driver_id)
            return stats
        await self.drivers.set_rating(
            driver,
            rating=stats.average_rating,
            total_reviews=stats.total_reviews,
        )
        return stats
