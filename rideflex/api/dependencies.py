"""FastAPI dependency injection helpers.

Every request gets its own ``AsyncSession``; the domain services are built
per request on top of repositories bound to that session.  Tests swap any
of these through ``app.dependency_overrides``.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from fastapi import Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession

from rideflex.config import settings
from rideflex.domain.enums import Role
from rideflex.domain.errors import Forbidden
from rideflex.domain.matching import GeoMatcher
from rideflex.domain.payments import PaymentLedger, PaymentMethods
from rideflex.domain.pricing import FareEngine
from rideflex.domain.reviews import ReviewService
from rideflex.domain.trips import TripLifecycle
from rideflex.infrastructure.database import async_session_factory
from rideflex.infrastructure.notifications import LoggingNotifier, Notifier
from rideflex.infrastructure.processor import PaymentProcessor, StripeProcessor
from rideflex.infrastructure.repositories import (
    DriverRepository,
    PaymentRepository,
    ReviewRepository,
    RiderRepository,
    TripRepository,
)


async def get_db() -> AsyncSession:  # type: ignore[misc]
    """Yield an async DB session; commit on success, rollback on error."""
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


# ── Identity ──────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Principal:
    """Caller identity as asserted by the upstream auth gateway."""

    id: int
    role: Role

    def ensure(self, *roles: Role) -> None:
        if self.role not in roles:
            raise Forbidden(
                f"This action is restricted to {', '.join(r.value for r in roles)}"
            )

    def ensure_self(self, role: Role, user_id: int) -> None:
        """Callers in ``role`` may only act on their own record; admins on any."""
        if self.role == Role.ADMIN:
            return
        if self.role != role or self.id != user_id:
            raise Forbidden("You can only act on your own account")

    @property
    def acting_id(self) -> Optional[int]:
        """Own id for riders and drivers; ``None`` for admins, who act on any record."""
        return None if self.role == Role.ADMIN else self.id


async def get_principal(
    x_user_id: Optional[str] = Header(None),
    x_user_role: Optional[str] = Header(None),
) -> Principal:
    if not x_user_id or not x_user_role:
        raise Forbidden("Missing caller identity")
    try:
        return Principal(id=int(x_user_id), role=Role(x_user_role.lower()))
    except ValueError:
        raise Forbidden("Malformed caller identity") from None


# ── Collaborators ─────────────────────────────────────────────────────


@lru_cache
def get_fare_engine() -> FareEngine:
    return FareEngine(
        currency=settings.fare_currency,
        tz=settings.surge_timezone,
        spike_probability=settings.surge_spike_probability,
    )


@lru_cache
def get_processor() -> PaymentProcessor:
    return StripeProcessor(
        secret_key=settings.stripe_secret_key,
        webhook_secret=settings.stripe_webhook_secret,
    )


@lru_cache
def get_notifier() -> Notifier:
    return LoggingNotifier()


# ── Domain services ───────────────────────────────────────────────────


def get_geo_matcher(db: AsyncSession = Depends(get_db)) -> GeoMatcher:
    return GeoMatcher(DriverRepository(db), default_radius_m=settings.nearby_radius_m)


def get_trip_lifecycle(
    db: AsyncSession = Depends(get_db),
    fare_engine: FareEngine = Depends(get_fare_engine),
    notifier: Notifier = Depends(get_notifier),
) -> TripLifecycle:
    return TripLifecycle(
        trips=TripRepository(db),
        riders=RiderRepository(db),
        drivers=DriverRepository(db),
        fare_engine=fare_engine,
        notifier=notifier,
    )


def get_payment_ledger(
    db: AsyncSession = Depends(get_db),
    processor: PaymentProcessor = Depends(get_processor),
    notifier: Notifier = Depends(get_notifier),
) -> PaymentLedger:
    return PaymentLedger(
        payments=PaymentRepository(db),
        trips=TripRepository(db),
        riders=RiderRepository(db),
        processor=processor,
        notifier=notifier,
        drivers=DriverRepository(db),
        currency=settings.payment_currency,
        platform_fee_rate=settings.platform_fee_rate,
        driver_share_rate=settings.driver_share_rate,
        frontend_url=settings.frontend_url,
        product_name=settings.checkout_product_name,
        promo_codes=settings.promo_codes,
    )


def get_payment_methods(
    db: AsyncSession = Depends(get_db),
    processor: PaymentProcessor = Depends(get_processor),
) -> PaymentMethods:
    return PaymentMethods(RiderRepository(db), processor)


def get_review_service(
    db: AsyncSession = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
) -> ReviewService:
    return ReviewService(
        reviews=ReviewRepository(db),
        trips=TripRepository(db),
        drivers=DriverRepository(db),
        notifier=notifier,
    )
