"""
services/payment/providers.py
Payment provider adapters. Each adapter creates a checkout session, issues
refunds and verifies/parses webhooks for one gateway.

Gateway SDK calls are blocking, so they run in a worker thread behind
a per-provider circuit breaker.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable, Dict, Mapping, Optional

import razorpay
import stripe
from pybreaker import CircuitBreaker, CircuitBreakerError, CircuitBreakerListener

from config.settings import settings
from shared.errors import ExternalProviderError, ValidationError
from shared.models.models import PaymentProviderName
from shared.utils.security import verify_razorpay_webhook_signature, verify_stripe_signature

logger = logging.getLogger(__name__)


# ── Value types ───────────────────────────────────────────────

@dataclass
class ProviderSession:
    provider_ref: str
    client_secret: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ProviderRefund:
    provider_ref: Optional[str]
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class WebhookEvent:
    kind: str                       # "succeeded" | "failed" | "attempt_failed" | "ignored"
    event_type: str
    provider_ref: Optional[str] = None
    meta: Dict[str, Any] = field(default_factory=dict)


def to_minor_units(amount: Decimal) -> int:
    """Rupees/dollars to paise/cents."""
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


# ── Circuit breaker ───────────────────────────────────────────

class _BreakerLogListener(CircuitBreakerListener):
    def state_change(self, cb, old_state, new_state):
        previous = old_state.name if old_state else None
        logger.warning(f"Circuit breaker '{cb.name}' {previous} -> {new_state.name}")


def _make_breaker(name: str) -> CircuitBreaker:
    return CircuitBreaker(
        fail_max=settings.PROVIDER_BREAKER_FAIL_MAX,
        reset_timeout=settings.PROVIDER_BREAKER_RESET_SECONDS,
        listeners=[_BreakerLogListener()],
        name=name,
    )


class PaymentProvider:
    """Base adapter. Subclasses implement the blocking _create/_refund calls."""

    name: PaymentProviderName

    def __init__(self):
        self.breaker = _make_breaker(self.name.value)

    async def _call(self, operation: str, func: Callable, *args) -> Any:
        try:
            return await asyncio.to_thread(self.breaker.call, func, *args)
        except CircuitBreakerError:
            logger.error(f"{self.name.value} {operation} rejected: circuit open")
            raise ExternalProviderError(
                f"{self.name.value} is temporarily unavailable", provider=self.name.value
            )
        except Exception as e:
            logger.error(f"{self.name.value} {operation} failed: {e}")
            raise ExternalProviderError(
                f"{self.name.value} {operation} failed", provider=self.name.value
            )

    async def create_session(
        self, amount: Decimal, currency: str, receipt: str, description: str = "Appointment"
    ) -> ProviderSession:
        return await self._call(
            "create_session", self._create_session, amount, currency, receipt, description
        )

    async def refund(
        self, provider_ref: str, amount: Decimal, meta: Optional[dict] = None
    ) -> ProviderRefund:
        return await self._call("refund", self._refund, provider_ref, amount, meta or {})

    def _create_session(self, amount, currency, receipt, description) -> ProviderSession:
        raise NotImplementedError

    def _refund(self, provider_ref, amount, meta) -> ProviderRefund:
        raise NotImplementedError

    def verify_webhook(self, body: bytes, headers: Mapping[str, str]) -> bool:
        raise NotImplementedError

    def parse_webhook(self, payload: dict) -> WebhookEvent:
        raise NotImplementedError


# ── Razorpay ──────────────────────────────────────────────────

class RazorpayProvider(PaymentProvider):
    """Orders API for checkout, payment refunds keyed by the captured payment id."""

    name = PaymentProviderName.RAZORPAY

    def _client(self) -> razorpay.Client:
        return razorpay.Client(auth=(settings.RAZORPAY_KEY_ID, settings.RAZORPAY_KEY_SECRET))

    def _create_session(self, amount, currency, receipt, description) -> ProviderSession:
        order = self._client().order.create({
            "amount": to_minor_units(amount),
            "currency": currency,
            "receipt": receipt,
            "notes": {"description": description},
        })
        return ProviderSession(provider_ref=order["id"], client_secret=None, raw=order)

    def _refund(self, provider_ref, amount, meta) -> ProviderRefund:
        # Refunds target the captured payment, not the order
        payment_id = meta.get("payment_id")
        if not payment_id:
            raise ValueError(f"No captured payment id recorded for order {provider_ref}")
        refund = self._client().payment.refund(payment_id, {"amount": to_minor_units(amount)})
        return ProviderRefund(provider_ref=refund.get("id"), raw=refund)

    def verify_webhook(self, body: bytes, headers: Mapping[str, str]) -> bool:
        return verify_razorpay_webhook_signature(body, headers.get("x-razorpay-signature", ""))

    def parse_webhook(self, payload: dict) -> WebhookEvent:
        event_type = payload.get("event", "")
        body = payload.get("payload", {})
        entity = body.get("payment", {}).get("entity", {})

        if event_type == "payment.captured":
            return WebhookEvent(
                kind="succeeded",
                event_type=event_type,
                provider_ref=entity.get("order_id"),
                meta={"payment_id": entity.get("id"), "method": entity.get("method")},
            )
        if event_type == "order.paid":
            order = body.get("order", {}).get("entity", {})
            return WebhookEvent(
                kind="succeeded",
                event_type=event_type,
                provider_ref=order.get("id"),
                meta={"payment_id": entity.get("id")},
            )
        if event_type == "payment.failed":
            # One attempt on the order failed; the order itself can still be paid
            return WebhookEvent(
                kind="attempt_failed",
                event_type=event_type,
                provider_ref=entity.get("order_id"),
                meta={
                    "failed_payment_id": entity.get("id"),
                    "error": entity.get("error_description"),
                },
            )
        return WebhookEvent(kind="ignored", event_type=event_type)


# ── Stripe ────────────────────────────────────────────────────

class StripeProvider(PaymentProvider):
    """Checkout Sessions and refunds through the stripe SDK."""

    name = PaymentProviderName.STRIPE

    def _create_session(self, amount, currency, receipt, description) -> ProviderSession:
        session = stripe.checkout.Session.create(
            api_key=settings.STRIPE_SECRET_KEY,
            mode="payment",
            client_reference_id=receipt,
            success_url=settings.STRIPE_SUCCESS_URL,
            cancel_url=settings.STRIPE_CANCEL_URL,
            line_items=[{
                "quantity": 1,
                "price_data": {
                    "currency": currency.lower(),
                    "unit_amount": to_minor_units(amount),
                    "product_data": {"name": description},
                },
            }],
            metadata={"receipt": receipt},
        )
        return ProviderSession(
            provider_ref=session.id,
            client_secret=session.url,
            raw={"id": session.id, "url": session.url},
        )

    def _refund(self, provider_ref, amount, meta) -> ProviderRefund:
        payment_intent = meta.get("payment_intent")
        if not payment_intent:
            raise ValueError(f"No payment intent recorded for session {provider_ref}")
        refund = stripe.Refund.create(
            api_key=settings.STRIPE_SECRET_KEY,
            payment_intent=payment_intent,
            amount=to_minor_units(amount),
        )
        return ProviderRefund(
            provider_ref=refund.id,
            raw={"id": refund.id, "status": refund.status},
        )

    def verify_webhook(self, body: bytes, headers: Mapping[str, str]) -> bool:
        return verify_stripe_signature(body, headers.get("stripe-signature", ""))

    def parse_webhook(self, payload: dict) -> WebhookEvent:
        event_type = payload.get("type", "")
        obj = payload.get("data", {}).get("object", {})

        if event_type == "checkout.session.completed":
            return WebhookEvent(
                kind="succeeded",
                event_type=event_type,
                provider_ref=obj.get("id"),
                meta={"payment_intent": obj.get("payment_intent"), "event_id": payload.get("id")},
            )
        if event_type in ("checkout.session.expired", "checkout.session.async_payment_failed"):
            return WebhookEvent(
                kind="failed",
                event_type=event_type,
                provider_ref=obj.get("id"),
                meta={"event_id": payload.get("id")},
            )
        return WebhookEvent(kind="ignored", event_type=event_type)


# ── Registry ──────────────────────────────────────────────────

_providers: Dict[PaymentProviderName, PaymentProvider] = {
    PaymentProviderName.RAZORPAY: RazorpayProvider(),
    PaymentProviderName.STRIPE: StripeProvider(),
}


def get_provider(name) -> PaymentProvider:
    """Look up an adapter by enum or its string value."""
    try:
        return _providers[PaymentProviderName(name)]
    except (KeyError, ValueError):
        raise ValidationError(f"Unknown payment provider: {name}")


def decode_webhook_body(body: bytes) -> dict:
    """Raises ValueError for undecodable bodies and non-object payloads."""
    payload = json.loads(body or b"{}")
    if not isinstance(payload, dict):
        raise ValueError("Webhook payload must be a JSON object")
    return payload
