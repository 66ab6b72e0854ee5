"""
Payment processor port and its Stripe adapter.

The ledger talks to ``PaymentProcessor`` only.  ``StripeProcessor`` maps the
calls onto the ``stripe`` SDK; the SDK is synchronous, so every call is
pushed to Starlette's threadpool to keep the event loop free.

Amounts cross this boundary in minor units (paise).  SDK failures surface
as ``UpstreamError``; a webhook whose signature does not verify surfaces as
``ValidationError``.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

import stripe
from starlette.concurrency import run_in_threadpool

from rideflex.domain.errors import UpstreamError, ValidationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckoutSession:
    id: str
    url: str
    expires_at: Optional[datetime] = None


@dataclass(frozen=True)
class PaymentIntent:
    id: str
    status: str
    client_secret: Optional[str] = None
    failure_message: Optional[str] = None


@dataclass(frozen=True)
class ProcessorEvent:
    id: str
    type: str
    data: dict = field(default_factory=dict)


class PaymentProcessor(ABC):
    @abstractmethod
    async def create_checkout_session(
        self,
        *,
        amount_minor: int,
        currency: str,
        product_name: str,
        description: str,
        customer_email: Optional[str],
        success_url: str,
        cancel_url: str,
        metadata: dict,
    ) -> CheckoutSession: ...

    @abstractmethod
    async def create_payment_intent(
        self,
        *,
        amount_minor: int,
        currency: str,
        customer_id: Optional[str],
        payment_method_id: Optional[str],
        metadata: dict,
        return_url: Optional[str] = None,
        description: Optional[str] = None,
    ) -> PaymentIntent: ...

    @abstractmethod
    async def retrieve_payment_intent(self, intent_id: str) -> PaymentIntent: ...

    @abstractmethod
    async def refund(self, intent_id: str, *, amount_minor: int) -> str: ...

    @abstractmethod
    async def create_customer(
        self, *, email: str, name: str, phone: Optional[str], metadata: dict
    ) -> str: ...

    @abstractmethod
    async def list_payment_methods(self, customer_id: str) -> list[dict]: ...

    @abstractmethod
    async def attach_payment_method(
        self, payment_method_id: str, customer_id: str
    ) -> dict: ...

    @abstractmethod
    async def detach_payment_method(self, payment_method_id: str) -> None: ...

    @abstractmethod
    async def set_default_payment_method(
        self, customer_id: str, payment_method_id: str
    ) -> None: ...

    @abstractmethod
    def construct_event(self, payload: bytes, signature: str) -> ProcessorEvent: ...


def _card(method: Any) -> dict:
    card = method.card
    return {
        "id": method.id,
        "brand": card.brand if card else None,
        "last4": card.last4 if card else None,
        "exp_month": card.exp_month if card else None,
        "exp_year": card.exp_year if card else None,
    }


def _intent(obj: Any) -> PaymentIntent:
    error = obj.last_payment_error
    return PaymentIntent(
        id=obj.id,
        status=obj.status,
        client_secret=obj.client_secret,
        failure_message=error.message if error else None,
    )


class StripeProcessor(PaymentProcessor):
    def __init__(self, secret_key: str, webhook_secret: str):
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret

    async def _call(self, func, *args, **params):
        try:
            return await run_in_threadpool(func, *args, api_key=self.secret_key, **params)
        except stripe.StripeError as exc:
            logger.error("Stripe call %s failed: %s", func.__qualname__, exc)
            raise UpstreamError(f"Payment processor error: {exc.user_message or exc}") from exc

    async def create_checkout_session(
        self,
        *,
        amount_minor,
        currency,
        product_name,
        description,
        customer_email,
        success_url,
        cancel_url,
        metadata,
    ) -> CheckoutSession:
        params = dict(
            payment_method_types=["card"],
            mode="payment",
            line_items=[
                {
                    "price_data": {
                        "currency": currency,
                        "product_data": {
                            "name": product_name,
                            "description": description,
                        },
                        "unit_amount": amount_minor,
                    },
                    "quantity": 1,
                }
            ],
            success_url=success_url,
            cancel_url=cancel_url,
            metadata=metadata,
        )
        if customer_email:
            params["customer_email"] = customer_email
        session = await self._call(stripe.checkout.Session.create, **params)
        expires_at = (
            datetime.fromtimestamp(session.expires_at, tz=timezone.utc)
            if session.expires_at
            else None
        )
        return CheckoutSession(id=session.id, url=session.url, expires_at=expires_at)

    async def create_payment_intent(
        self,
        *,
        amount_minor,
        currency,
        customer_id,
        payment_method_id,
        metadata,
        return_url=None,
        description=None,
    ) -> PaymentIntent:
        params: dict[str, Any] = dict(
            amount=amount_minor, currency=currency, metadata=metadata
        )
        if customer_id:
            params["customer"] = customer_id
        if description:
            params["description"] = description
        if payment_method_id:
            params.update(payment_method=payment_method_id, confirm=True)
            if return_url:
                params["return_url"] = return_url
        else:
            params["automatic_payment_methods"] = {"enabled": True}
        return _intent(await self._call(stripe.PaymentIntent.create, **params))

    async def retrieve_payment_intent(self, intent_id: str) -> PaymentIntent:
        return _intent(await self._call(stripe.PaymentIntent.retrieve, id=intent_id))

    async def refund(self, intent_id: str, *, amount_minor: int) -> str:
        refund = await self._call(
            stripe.Refund.create, payment_intent=intent_id, amount=amount_minor
        )
        return refund.id

    async def create_customer(self, *, email, name, phone, metadata) -> str:
        params = dict(email=email, name=name, metadata=metadata)
        if phone:
            params["phone"] = phone
        customer = await self._call(stripe.Customer.create, **params)
        return customer.id

    async def list_payment_methods(self, customer_id: str) -> list[dict]:
        methods = await self._call(
            stripe.PaymentMethod.list, customer=customer_id, type="card"
        )
        return [_card(m) for m in methods.data]

    async def attach_payment_method(self, payment_method_id, customer_id) -> dict:
        method = await self._call(
            stripe.PaymentMethod.attach, payment_method_id, customer=customer_id
        )
        return _card(method)

    async def detach_payment_method(self, payment_method_id: str) -> None:
        await self._call(stripe.PaymentMethod.detach, payment_method_id)

    async def set_default_payment_method(self, customer_id, payment_method_id) -> None:
        await self._call(
            stripe.Customer.modify,
            customer_id,
            invoice_settings={"default_payment_method": payment_method_id},
        )

    def construct_event(self, payload: bytes, signature: str) -> ProcessorEvent:
        if not signature:
            raise ValidationError("Missing Stripe-Signature header")
        try:
            stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except stripe.SignatureVerificationError as exc:
            logger.warning("Webhook signature verification failed: %s", exc)
            raise ValidationError(f"Webhook Error: {exc}") from exc
        except ValueError as exc:
            raise ValidationError(f"Webhook Error: invalid payload ({exc})") from exc
        body = json.loads(payload)
        return ProcessorEvent(
            id=body.get("id", ""),
            type=body.get("type", ""),
            data=(body.get("data") or {}).get("object") or {},
        )
