"""
Payment Ledger
==============

One ``trip_payment`` row per trip, driven through the processor::

    created -> pending -> [processing] -> paid
                   \\-> cancelled | expired | failed
    paid -> partially_refunded -> refunded

Reconciliation
--------------
A checkout completes through two independent paths that can race or both
fire: the rider's browser landing on the success page, and the processor's
``checkout.session.completed`` webhook.  ``reconcile_completion`` makes
them converge:

1. ``status -> paid`` is a conditional write (only from an open status),
   so exactly one caller observes ``payment_updated`` and touches the trip.
2. The rider aggregate is guarded by ``total_trips < expected`` where
   ``expected`` = rider's paid trip payments created before this one + 1.
   ``total_amount_spent`` is recomputed from all paid trip payments rather
   than incremented, so a late or repeated trigger either sees the guard
   already satisfied or writes the identical value.

The store gives per-row atomic updates only; the partial unique index on
``payments.trip_id`` is what stops two live payment rows for one trip.

Amounts are whole currency units; the processor is handed minor units.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from .entities import Page, PaymentView, Reconciliation, page_offset
from .enums import (
    OPEN_PAYMENT_STATUSES,
    REFUNDABLE_PAYMENT_STATUSES,
    PaymentSource,
    PaymentStatus,
    PaymentType,
    Role,
    TripStatus,
)
from .errors import (
    AmountMismatch,
    Conflict,
    Forbidden,
    InvalidTransition,
    NotFound,
    ValidationError,
)
from .notify import notify
from .pricing import round_half_up

logger = logging.getLogger(__name__)

MINOR_UNITS = 100
AMOUNT_TOLERANCE = 1


# ── Amount rules ──────────────────────────────────────────────────────


def calculate_platform_fee(amount: int, rate: float = 0.20) -> int:
    return round_half_up(amount * rate)


def calculate_driver_earnings(amount: int, tip_amount: int, share: float = 0.80) -> int:
    """Driver keeps ``share`` of the fare part and the whole tip."""
    return round_half_up((amount - tip_amount) * share) + tip_amount


def check_amounts(
    *,
    amount: int,
    base_fare: int,
    tip_amount: int = 0,
    discount: int = 0,
    driver_earnings: int = 0,
    refunded_amount: int = 0,
) -> None:
    """Raise ``AmountMismatch`` unless the payment's components reconcile."""
    expected = base_fare + tip_amount - discount
    if abs(expected - amount) > AMOUNT_TOLERANCE:
        raise AmountMismatch(
            f"Payment amount {amount} does not match calculated total {expected}"
        )
    if refunded_amount > amount:
        raise AmountMismatch("Refunded amount cannot exceed payment amount")
    if driver_earnings > base_fare + tip_amount:
        raise AmountMismatch("Driver earnings cannot exceed base fare plus tip")


def _metadata_payment_id(obj: dict) -> Optional[int]:
    raw = (obj.get("metadata") or {}).get("paymentId")
    try:
        return int(raw) if raw else None
    except (TypeError, ValueError):
        return None


def _validate_tip(tip_amount) -> int:
    if isinstance(tip_amount, bool) or not isinstance(tip_amount, int) or tip_amount < 0:
        raise ValidationError("Tip amount must be a non-negative integer")
    return tip_amount


# ── Ledger ────────────────────────────────────────────────────────────


class PaymentLedger:
    def __init__(
        self,
        payments,
        trips,
        riders,
        processor,
        notifier=None,
        drivers=None,
        currency: str = "inr",
        platform_fee_rate: float = 0.20,
        driver_share_rate: float = 0.80,
        frontend_url: str = "http://localhost:3000",
        product_name: str = "RideFlex - Trip Payment",
        promo_codes: Optional[dict[str, int]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.payments = payments
        self.trips = trips
        self.riders = riders
        self.processor = processor
        self.notifier = notifier
        self.drivers = drivers
        self.currency = currency
        self.platform_fee_rate = platform_fee_rate
        self.driver_share_rate = driver_share_rate
        self.frontend_url = frontend_url.rstrip("/")
        self.product_name = product_name
        self.promo_codes = {k.upper(): v for k, v in (promo_codes or {}).items()}
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    # ── helpers ───────────────────────────────────────────────────

    async def _get(self, payment_id: int):
        payment = await self.payments.get_by_id(payment_id)
        if not payment:
            raise NotFound("Payment not found")
        return payment

    async def _payable_trip(self, trip_id: int, rider_id: int):
        trip = await self.trips.get_by_id(trip_id)
        if not trip:
            raise NotFound("Trip not found")
        if trip.rider_id != rider_id:
            raise Forbidden("You can only pay for your own trips")
        if TripStatus(trip.status) != TripStatus.COMPLETED:
            raise Conflict("Trip must be completed before payment")
        return trip

    def _discount(self, promo_code: Optional[str], fare: int) -> int:
        if not promo_code:
            return 0
        percent = self.promo_codes.get(promo_code.strip().upper())
        if percent is None:
            raise ValidationError(f"Unknown promo code {promo_code!r}")
        return round_half_up(fare * percent / 100)

    def _trip_amounts(self, fare: int, tip_amount: int, discount: int) -> dict:
        amount = fare + tip_amount - discount
        if amount < 1:
            raise ValidationError("Payment amount must be at least 1")
        amounts = dict(
            amount=amount,
            base_fare=fare,
            tip_amount=tip_amount,
            discount=discount,
            platform_fee=calculate_platform_fee(amount, self.platform_fee_rate),
            driver_earnings=calculate_driver_earnings(
                amount, tip_amount, self.driver_share_rate
            ),
        )
        check_amounts(
            amount=amount,
            base_fare=fare,
            tip_amount=tip_amount,
            discount=discount,
            driver_earnings=amounts["driver_earnings"],
        )
        return amounts

    async def _ensure_payable(self, trip) -> None:
        existing = await self.payments.find_blocking_for_trip(trip.id)
        if existing:
            raise Conflict("Trip already paid for")

    # ── checkout session flow ─────────────────────────────────────

    async def open_checkout(
        self,
        trip_id: int,
        rider_id: int,
        tip_amount: int = 0,
        promo_code: Optional[str] = None,
        customer_email: Optional[str] = None,
    ):
        tip_amount = _validate_tip(tip_amount)
        trip = await self._payable_trip(trip_id, rider_id)
        await self._ensure_payable(trip)

        discount = self._discount(promo_code, trip.total_fare)
        amounts = self._trip_amounts(trip.total_fare, tip_amount, discount)

        payment = await self.payments.create_payment(
            rider_id=rider_id,
            driver_id=trip.driver_id,
            trip_id=trip.id,
            type=PaymentType.TRIP_PAYMENT,
            currency=self.currency,
            status=PaymentStatus.CREATED,
            promo_code=promo_code,
            **amounts,
        )

        session = await self.processor.create_checkout_session(
            amount_minor=payment.amount * MINOR_UNITS,
            currency=self.currency,
            product_name=self.product_name,
            description=f"From {trip.pickup_address} to {trip.dropoff_address}",
            customer_email=customer_email,
            success_url=f"{self.frontend_url}/payment-success?payment_id={payment.id}",
            cancel_url=f"{self.frontend_url}/payment-cancel?payment_id={payment.id}",
            metadata={
                "paymentId": str(payment.id),
                "tripId": str(trip.id),
                "riderId": str(rider_id),
                "driverId": str(trip.driver_id),
                "type": PaymentType.TRIP_PAYMENT.value,
            },
        )

        payment.stripe_session_id = session.id
        payment.session_url = session.url
        payment.expires_at = session.expires_at
        payment.status = PaymentStatus.PENDING
        logger.info(
            "Payment %s for trip %s opened checkout %s (amount %s)",
            payment.id, trip.id, session.id, payment.amount,
        )
        return payment

    async def cancel_checkout(self, payment_id: int):
        payment = await self._get(payment_id)
        status = PaymentStatus(payment.status)
        if status == PaymentStatus.CANCELLED:
            return payment
        if status not in (PaymentStatus.CREATED, PaymentStatus.PENDING):
            raise InvalidTransition(f"Cannot cancel a payment that is {status.value}")
        payment.status = PaymentStatus.CANCELLED
        logger.info("Payment %s cancelled by rider", payment.id)
        return payment

    # ── reconciliation ────────────────────────────────────────────

    async def reconcile_completion(
        self,
        payment_id: int,
        source: PaymentSource,
        *,
        intent_id: Optional[str] = None,
        customer_id: Optional[str] = None,
    ) -> Reconciliation:
        payment = await self._get(payment_id)
        result = Reconciliation(payment=payment)
        status = PaymentStatus(payment.status)

        if status != PaymentStatus.PAID:
            if status not in OPEN_PAYMENT_STATUSES:
                raise InvalidTransition(
                    f"Payment {payment_id} is {status.value} and cannot be settled"
                )
            result.payment_updated = await self.payments.mark_paid(
                payment,
                completed_at=self.clock(),
                stripe_payment_intent_id=intent_id,
                stripe_customer_id=customer_id,
            )
            if result.payment_updated:
                logger.info("Payment %s marked paid via %s", payment.id, source.value)
                if PaymentType(payment.type) == PaymentType.TRIP_PAYMENT:
                    result.trip = await self.trips.mark_paid(payment.trip_id, payment.id)
            else:
                logger.info(
                    "Payment %s already settled by a concurrent %s trigger",
                    payment.id, source.value,
                )

        if PaymentType(payment.type) == PaymentType.TRIP_PAYMENT:
            result.stats_updated = await self._apply_rider_stats(payment, source)
        result.rider = await self.riders.get_by_id(payment.rider_id)
        if result.trip is None:
            result.trip = await self.trips.get_by_id(payment.trip_id)

        if result.payment_updated:
            await notify(
                self.notifier, "payment.receipt",
                payment_id=payment.id, rider_id=payment.rider_id,
                amount=payment.amount, currency=payment.currency,
            )
        return result

    async def _apply_rider_stats(self, payment, source: PaymentSource) -> bool:
        earlier = await self.payments.count_paid_before(
            payment.rider_id, payment.created_at, exclude_id=payment.id
        )
        expected = earlier + 1
        rider = await self.riders.get_by_id(payment.rider_id)
        if not rider:
            logger.warning("Payment %s references missing rider %s", payment.id, payment.rider_id)
            return False
        if (rider.total_trips or 0) >= expected:
            logger.info(
                "Rider %s stats already account for payment %s (%s)",
                rider.id, payment.id, source.value,
            )
            return False

        total_spent = await self.payments.sum_paid_amount(payment.rider_id)
        applied = await self.riders.apply_trip_stats(
            rider,
            expected_trips=expected,
            total_amount_spent=total_spent,
            paid_at=self.clock(),
        )
        if applied:
            logger.info(
                "Rider %s stats updated via %s: trips=%s spent=%s",
                rider.id, source.value, expected, total_spent,
            )
        return applied

    # ── processor notifications ───────────────────────────────────

    async def handle_processor_event(self, event) -> bool:
        """Apply a verified processor event.  Returns whether it was handled."""
        obj = event.data or {}
        try:
            if event.type == "checkout.session.completed":
                payment_id = _metadata_payment_id(obj)
                if payment_id is None:
                    logger.warning(
                        "Checkout session %s has no usable paymentId", obj.get("id")
                    )
                    return False
                await self.reconcile_completion(
                    payment_id,
                    PaymentSource.WEBHOOK,
                    intent_id=obj.get("payment_intent"),
                    customer_id=obj.get("customer"),
                )
                return True

            if event.type == "payment_intent.succeeded":
                payment = await self.payments.get_by_intent_id(obj.get("id"))
                if not payment:
                    logger.info("No payment for succeeded intent %s", obj.get("id"))
                    return False
                await self.reconcile_completion(payment.id, PaymentSource.WEBHOOK)
                return True

            if event.type == "payment_intent.payment_failed":
                payment = await self.payments.get_by_intent_id(obj.get("id"))
                if not payment:
                    logger.info("No payment for failed intent %s", obj.get("id"))
                    return False
                reason = (obj.get("last_payment_error") or {}).get("message")
                self._fail(payment, reason)
                return True

            if event.type == "checkout.session.expired":
                payment_id = _metadata_payment_id(obj)
                payment = (
                    await self.payments.get_by_id(payment_id)
                    if payment_id is not None
                    else None
                )
                if not payment:
                    return False
                self._expire(payment)
                return True
        except InvalidTransition as exc:
            logger.warning("Ignoring stale %s event %s: %s", event.type, event.id, exc)
            return False
        except NotFound:
            logger.warning(
                "Ignoring %s event %s for an unknown payment", event.type, event.id
            )
            return False

        logger.info("Unhandled event type: %s", event.type)
        return False

    def _fail(self, payment, reason: Optional[str]) -> None:
        if PaymentStatus(payment.status) not in OPEN_PAYMENT_STATUSES:
            raise InvalidTransition(
                f"Payment {payment.id} is {PaymentStatus(payment.status).value}"
            )
        payment.status = PaymentStatus.FAILED
        payment.failed_at = self.clock()
        payment.failure_reason = reason
        logger.info("Payment %s failed: %s", payment.id, reason)

    def _expire(self, payment) -> None:
        if PaymentStatus(payment.status) not in (PaymentStatus.CREATED, PaymentStatus.PENDING):
            raise InvalidTransition(
                f"Payment {payment.id} is {PaymentStatus(payment.status).value}"
            )
        payment.status = PaymentStatus.EXPIRED
        payment.expired_at = self.clock()
        logger.info("Payment %s expired", payment.id)

    async def expire_stale_checkouts(self, now: Optional[datetime] = None) -> int:
        expired = await self.payments.expire_stale(now or self.clock())
        if expired:
            logger.info("Expired %d stale checkout(s)", expired)
        return expired

    # ── payment intent flow ───────────────────────────────────────

    async def open_intent(
        self,
        trip_id: int,
        rider_id: int,
        tip_amount: int = 0,
        payment_method_id: Optional[str] = None,
        customer_id: Optional[str] = None,
    ):
        """Charge a saved payment method directly.  Returns ``(payment, intent)``."""
        tip_amount = _validate_tip(tip_amount)
        trip = await self._payable_trip(trip_id, rider_id)
        await self._ensure_payable(trip)
        amounts = self._trip_amounts(trip.total_fare, tip_amount, 0)

        payment = await self.payments.create_payment(
            rider_id=rider_id,
            driver_id=trip.driver_id,
            trip_id=trip.id,
            type=PaymentType.TRIP_PAYMENT,
            currency=self.currency,
            status=PaymentStatus.CREATED,
            stripe_customer_id=customer_id,
            **amounts,
        )
        intent = await self.processor.create_payment_intent(
            amount_minor=payment.amount * MINOR_UNITS,
            currency=self.currency,
            customer_id=customer_id,
            payment_method_id=payment_method_id,
            return_url=f"{self.frontend_url}/payment-return",
            metadata={
                "paymentId": str(payment.id),
                "tripId": str(trip.id),
                "riderId": str(rider_id),
                "driverId": str(trip.driver_id),
            },
        )
        payment.stripe_payment_intent_id = intent.id
        payment.status = PaymentStatus.PROCESSING
        if intent.status == "succeeded":
            await self.reconcile_completion(payment.id, PaymentSource.INTENT)
        return payment, intent

    async def sync_intent(self, intent_id: str):
        """Pull the latest intent state (used by the return redirect)."""
        payment = await self.payments.get_by_intent_id(intent_id)
        if not payment:
            raise NotFound("Payment not found")
        intent = await self.processor.retrieve_payment_intent(intent_id)
        status = PaymentStatus(payment.status)
        if intent.status == "succeeded":
            if status != PaymentStatus.PAID:
                await self.reconcile_completion(payment.id, PaymentSource.INTENT)
        elif status in OPEN_PAYMENT_STATUSES:
            if intent.status == "canceled":
                payment.status = PaymentStatus.CANCELLED
            elif intent.failure_message:
                self._fail(payment, intent.failure_message)
        return payment, intent

    # ── tips and refunds ──────────────────────────────────────────

    async def process_tip(
        self,
        trip_id: int,
        rider_id: int,
        tip_amount: int,
        payment_method_id: Optional[str] = None,
        customer_id: Optional[str] = None,
    ):
        tip_amount = _validate_tip(tip_amount)
        if tip_amount <= 0:
            raise ValidationError("Tip amount must be greater than 0")
        trip = await self._payable_trip(trip_id, rider_id)

        intent = await self.processor.create_payment_intent(
            amount_minor=tip_amount * MINOR_UNITS,
            currency=self.currency,
            customer_id=customer_id,
            payment_method_id=payment_method_id,
            description=f"Tip for trip {trip.id}",
            metadata={"tripId": str(trip.id), "type": PaymentType.TIP.value},
        )
        succeeded = intent.status == "succeeded"
        payment = await self.payments.create_payment(
            rider_id=rider_id,
            driver_id=trip.driver_id,
            trip_id=trip.id,
            type=PaymentType.TIP,
            amount=tip_amount,
            base_fare=0,
            tip_amount=tip_amount,
            discount=0,
            platform_fee=0,
            driver_earnings=tip_amount,
            currency=self.currency,
            status=PaymentStatus.PAID if succeeded else PaymentStatus.PROCESSING,
            stripe_payment_intent_id=intent.id,
            stripe_customer_id=customer_id,
            completed_at=self.clock() if succeeded else None,
        )
        logger.info("Tip payment %s for trip %s: %s", payment.id, trip.id, intent.status)
        return payment, intent

    async def refund(
        self,
        payment_id: int,
        amount: Optional[int] = None,
        reason: Optional[str] = None,
    ):
        payment = await self._get(payment_id)
        status = PaymentStatus(payment.status)
        if status not in REFUNDABLE_PAYMENT_STATUSES:
            raise InvalidTransition(f"Cannot refund a payment that is {status.value}")
        already = payment.refunded_amount or 0
        remaining = payment.amount - already
        amount = remaining if amount is None else amount
        if amount <= 0 or amount > remaining:
            raise AmountMismatch(
                f"Refund of {amount} exceeds the refundable {remaining}"
            )
        if not payment.stripe_payment_intent_id:
            raise Conflict("Payment has no processor charge to refund")

        await self.processor.refund(
            payment.stripe_payment_intent_id, amount_minor=amount * MINOR_UNITS
        )
        payment.refunded_amount = already + amount
        payment.refund_reason = reason
        payment.status = (
            PaymentStatus.REFUNDED
            if payment.refunded_amount == payment.amount
            else PaymentStatus.PARTIALLY_REFUNDED
        )
        logger.info(
            "Payment %s refunded %s (total refunded %s)",
            payment.id, amount, payment.refunded_amount,
        )
        return payment

    # ── read side ─────────────────────────────────────────────────

    async def history(
        self, role: Role, user_id: int, page: int = 1, limit: int = 10
    ) -> Page:
        """Newest-first payments of a driver (as payee) or a rider (as payer)."""
        offset = page_offset(page, limit)
        party = (
            {"driver_id": user_id}
            if Role(role) == Role.DRIVER
            else {"rider_id": user_id}
        )
        payments, total = await self.payments.list_for_party(
            **party, offset=offset, limit=limit
        )
        return Page(items=payments, total=total, page=page, limit=limit)

    async def details(self, payment_id: int, role: Role, user_id: int) -> PaymentView:
        """One payment with its trip, rider and driver.  Payments outside the
        caller's own history are reported as missing."""
        payment = await self.payments.get_by_id(payment_id)
        role = Role(role)
        if payment and role != Role.ADMIN:
            owner = payment.driver_id if role == Role.DRIVER else payment.rider_id
            if owner != user_id:
                payment = None
        if not payment:
            raise NotFound("Payment not found")

        driver = None
        if payment.driver_id and self.drivers is not None:
            driver = await self.drivers.get_by_id(payment.driver_id)
        return PaymentView(
            payment=payment,
            trip=await self.trips.get_by_id(payment.trip_id),
            rider=await self.riders.get_by_id(payment.rider_id),
            driver=driver,
        )


class PaymentMethods:
    """Saved cards on the rider's processor customer record."""

    def __init__(self, riders, processor):
        self.riders = riders
        self.processor = processor

    async def _rider(self, rider_id: int):
        rider = await self.riders.get_by_id(rider_id)
        if not rider:
            raise NotFound("No rider found with that ID")
        return rider

    async def list_methods(self, rider_id: int) -> list[dict]:
        rider = await self._rider(rider_id)
        if not rider.stripe_customer_id:
            return []
        return await self.processor.list_payment_methods(rider.stripe_customer_id)

    async def attach(self, rider_id: int, payment_method_id: str) -> dict:
        if not payment_method_id:
            raise ValidationError("Payment method ID is required")
        rider = await self._rider(rider_id)
        if not rider.stripe_customer_id:
            rider.stripe_customer_id = await self.processor.create_customer(
                email=rider.email,
                name=rider.name,
                phone=rider.phone_no,
                metadata={"userId": str(rider.id), "userType": "rider"},
            )
            logger.info("Created processor customer for rider %s", rider.id)
        return await self.processor.attach_payment_method(
            payment_method_id, rider.stripe_customer_id
        )

    async def _owned(self, rider_id: int, payment_method_id: str):
        """The rider, once ``payment_method_id`` is known to be one of their cards."""
        rider = await self._rider(rider_id)
        if not rider.stripe_customer_id:
            raise NotFound("No payment methods found")
        saved = await self.processor.list_payment_methods(rider.stripe_customer_id)
        if not any(card["id"] == payment_method_id for card in saved):
            raise Forbidden("Payment method does not belong to you")
        return rider

    async def set_default(self, rider_id: int, payment_method_id: str) -> None:
        rider = await self._owned(rider_id, payment_method_id)
        await self.processor.set_default_payment_method(
            rider.stripe_customer_id, payment_method_id
        )

    async def detach(self, rider_id: int, payment_method_id: str) -> None:
        rider = await self._owned(rider_id, payment_method_id)
        await self.processor.detach_payment_method(payment_method_id)
        logger.info("Rider %s removed payment method %s", rider.id, payment_method_id)
