"""
Payment endpoints
=================

POST   /api/v1/payments/create-session        -- open a hosted checkout (rider)
GET    /api/v1/payments/success?payment_id=   -- checkout success redirect
GET    /api/v1/payments/cancel?payment_id=    -- checkout cancel redirect
POST   /api/v1/payments/create-intent         -- charge a saved card (rider)
GET    /api/v1/payments/return?payment_intent= -- intent return redirect
POST   /api/v1/payments/tip                   -- tip the driver (rider)
POST   /api/v1/payments/{payment_id}/refund   -- refund (admin)
GET    /api/v1/payments/methods               -- saved cards (rider)
POST   /api/v1/payments/methods               -- save a card (rider)
DELETE /api/v1/payments/methods/{pm_id}       -- remove a card (rider)
PATCH  /api/v1/payments/methods/{pm_id}/default -- default card (rider)
POST   /api/v1/payments/webhook               -- processor notifications
GET    /api/v1/payments/history?page=&limit= -- own payments (rider, driver)
GET    /api/v1/payments/{payment_id}         -- one payment with its parties

The success redirect and the ``checkout.session.completed`` webhook both
settle the same payment; either may arrive first, twice, or concurrently.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request

from rideflex.api.dependencies import (
    Principal,
    get_payment_ledger,
    get_payment_methods,
    get_principal,
    get_processor,
)
from rideflex.api.middleware import limiter
from rideflex.api.schemas import (
    CheckoutRequest,
    CheckoutResponse,
    PaymentDetailResponse,
    PaymentHistoryResponse,
    PaymentIntentRequest,
    PaymentIntentResponse,
    PaymentMethodRequest,
    PaymentMethodResponse,
    PaymentResponse,
    ReconciliationResponse,
    RefundRequest,
    RiderSummary,
    TipRequest,
    TripResponse,
    WebhookAck,
)
from rideflex.config import settings
from rideflex.domain.enums import PaymentSource, Role
from rideflex.domain.matching import driver_profile
from rideflex.domain.payments import PaymentLedger, PaymentMethods
from rideflex.infrastructure.processor import PaymentProcessor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])


# ── Checkout session flow ─────────────────────────────────────────────


@router.post(
    "/create-session",
    response_model=CheckoutResponse,
    summary="Open a checkout session for a completed trip",
)
@limiter.limit(settings.rate_limit)
async def create_session(
    request: Request,
    body: CheckoutRequest,
    principal: Principal = Depends(get_principal),
    ledger: PaymentLedger = Depends(get_payment_ledger),
):
    principal.ensure(Role.RIDER)
    payment = await ledger.open_checkout(
        trip_id=body.trip_id,
        rider_id=principal.id,
        tip_amount=body.tip_amount,
        promo_code=body.promo_code,
        customer_email=body.customer_email,
    )
    return CheckoutResponse(
        payment_id=payment.id,
        session_id=payment.stripe_session_id,
        url=payment.session_url,
        amount=payment.amount,
    )


@router.get(
    "/success",
    response_model=ReconciliationResponse,
    summary="Settle a payment after the checkout success redirect",
)
@limiter.limit(settings.rate_limit)
async def payment_success(
    request: Request,
    payment_id: int = Query(...),
    ledger: PaymentLedger = Depends(get_payment_ledger),
):
    result = await ledger.reconcile_completion(payment_id, PaymentSource.REDIRECT)
    return ReconciliationResponse.from_result(result)


@router.get(
    "/cancel",
    response_model=PaymentResponse,
    summary="Mark a checkout as abandoned by the rider",
)
@limiter.limit(settings.rate_limit)
async def payment_cancel(
    request: Request,
    payment_id: int = Query(...),
    ledger: PaymentLedger = Depends(get_payment_ledger),
):
    payment = await ledger.cancel_checkout(payment_id)
    return PaymentResponse.from_payment(payment)


# ── Payment intent flow ───────────────────────────────────────────────


@router.post(
    "/create-intent",
    response_model=PaymentIntentResponse,
    summary="Charge a completed trip to a saved payment method",
)
@limiter.limit(settings.rate_limit)
async def create_intent(
    request: Request,
    body: PaymentIntentRequest,
    principal: Principal = Depends(get_principal),
    ledger: PaymentLedger = Depends(get_payment_ledger),
    methods: PaymentMethods = Depends(get_payment_methods),
):
    principal.ensure(Role.RIDER)
    rider = await methods.riders.get_by_id(principal.id)
    payment, intent = await ledger.open_intent(
        trip_id=body.trip_id,
        rider_id=principal.id,
        tip_amount=body.tip_amount,
        payment_method_id=body.payment_method_id,
        customer_id=rider.stripe_customer_id if rider else None,
    )
    return PaymentIntentResponse(
        payment=PaymentResponse.from_payment(payment),
        intent_id=intent.id,
        intent_status=intent.status,
        client_secret=intent.client_secret,
    )


@router.get(
    "/return",
    response_model=PaymentIntentResponse,
    summary="Sync a payment after the intent return redirect",
)
@limiter.limit(settings.rate_limit)
async def payment_return(
    request: Request,
    payment_intent: str = Query(...),
    ledger: PaymentLedger = Depends(get_payment_ledger),
):
    payment, intent = await ledger.sync_intent(payment_intent)
    return PaymentIntentResponse(
        payment=PaymentResponse.from_payment(payment),
        intent_id=intent.id,
        intent_status=intent.status,
    )


# ── Tips and refunds ──────────────────────────────────────────────────


@router.post(
    "/tip",
    status_code=201,
    response_model=PaymentIntentResponse,
    summary="Tip the driver of a completed trip",
)
@limiter.limit(settings.rate_limit)
async def tip_driver(
    request: Request,
    body: TipRequest,
    principal: Principal = Depends(get_principal),
    ledger: PaymentLedger = Depends(get_payment_ledger),
    methods: PaymentMethods = Depends(get_payment_methods),
):
    principal.ensure(Role.RIDER)
    rider = await methods.riders.get_by_id(principal.id)
    payment, intent = await ledger.process_tip(
        trip_id=body.trip_id,
        rider_id=principal.id,
        tip_amount=body.tip_amount,
        payment_method_id=body.payment_method_id,
        customer_id=rider.stripe_customer_id if rider else None,
    )
    return PaymentIntentResponse(
        payment=PaymentResponse.from_payment(payment),
        intent_id=intent.id,
        intent_status=intent.status,
        client_secret=intent.client_secret,
    )


@router.post(
    "/{payment_id}/refund",
    response_model=PaymentResponse,
    summary="Refund a paid payment in full or in part",
)
@limiter.limit(settings.rate_limit)
async def refund_payment(
    request: Request,
    payment_id: int,
    body: RefundRequest,
    principal: Principal = Depends(get_principal),
    ledger: PaymentLedger = Depends(get_payment_ledger),
):
    principal.ensure(Role.ADMIN)
    payment = await ledger.refund(payment_id, amount=body.amount, reason=body.reason)
    return PaymentResponse.from_payment(payment)


# ── Saved payment methods ─────────────────────────────────────────────


@router.get(
    "/methods",
    response_model=list[PaymentMethodResponse],
    summary="List the rider's saved cards",
)
@limiter.limit(settings.rate_limit)
async def list_methods(
    request: Request,
    principal: Principal = Depends(get_principal),
    methods: PaymentMethods = Depends(get_payment_methods),
):
    principal.ensure(Role.RIDER)
    return await methods.list_methods(principal.id)


@router.post(
    "/methods",
    status_code=201,
    response_model=PaymentMethodResponse,
    summary="Save a card for the rider",
)
@limiter.limit(settings.rate_limit)
async def add_method(
    request: Request,
    body: PaymentMethodRequest,
    principal: Principal = Depends(get_principal),
    methods: PaymentMethods = Depends(get_payment_methods),
):
    principal.ensure(Role.RIDER)
    return await methods.attach(principal.id, body.payment_method_id)


@router.delete(
    "/methods/{payment_method_id}",
    status_code=204,
    summary="Remove a saved card",
)
@limiter.limit(settings.rate_limit)
async def remove_method(
    request: Request,
    payment_method_id: str,
    principal: Principal = Depends(get_principal),
    methods: PaymentMethods = Depends(get_payment_methods),
):
    principal.ensure(Role.RIDER)
    await methods.detach(principal.id, payment_method_id)


@router.patch(
    "/methods/{payment_method_id}/default",
    status_code=204,
    summary="Make a saved card the default",
)
@limiter.limit(settings.rate_limit)
async def set_default_method(
    request: Request,
    payment_method_id: str,
    principal: Principal = Depends(get_principal),
    methods: PaymentMethods = Depends(get_payment_methods),
):
    principal.ensure(Role.RIDER)
    await methods.set_default(principal.id, payment_method_id)


# ── Processor webhook ─────────────────────────────────────────────────


@router.post(
    "/webhook",
    response_model=WebhookAck,
    summary="Receive processor notifications",
    description=(
        "The raw body is verified against the ``Stripe-Signature`` header. "
        "A failure while applying the event returns 5xx so the processor "
        "redelivers it."
    ),
)
async def webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    processor: PaymentProcessor = Depends(get_processor),
    ledger: PaymentLedger = Depends(get_payment_ledger),
):
    payload = await request.body()
    event = processor.construct_event(payload, stripe_signature or "")
    logger.info("Webhook %s received: %s", event.id, event.type)
    handled = await ledger.handle_processor_event(event)
    return WebhookAck(handled=handled)


# ── History ───────────────────────────────────────────────────────────


@router.get(
    "/history",
    response_model=PaymentHistoryResponse,
    summary="The caller's payments, newest first",
)
@limiter.limit(settings.rate_limit)
async def payment_history(
    request: Request,
    page: int = Query(1),
    limit: int = Query(10),
    principal: Principal = Depends(get_principal),
    ledger: PaymentLedger = Depends(get_payment_ledger),
):
    principal.ensure(Role.RIDER, Role.DRIVER)
    result = await ledger.history(principal.role, principal.id, page=page, limit=limit)
    return PaymentHistoryResponse.from_page(result)


# Declared last so the literal paths above are matched first.
@router.get(
    "/{payment_id}",
    response_model=PaymentDetailResponse,
    summary="Get a payment with its trip, rider and driver",
)
@limiter.limit(settings.rate_limit)
async def get_payment(
    request: Request,
    payment_id: int,
    principal: Principal = Depends(get_principal),
    ledger: PaymentLedger = Depends(get_payment_ledger),
):
    view = await ledger.details(payment_id, principal.role, principal.id)
    base = PaymentResponse.from_payment(view.payment)
    return PaymentDetailResponse(
        **base.model_dump(),
        trip=TripResponse.from_trip(view.trip) if view.trip else None,
        rider=RiderSummary.model_validate(view.rider) if view.rider else None,
        driver=driver_profile(view.driver) if view.driver else None,
    )
