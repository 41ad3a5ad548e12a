"""
services/payment/router.py
Checkout sessions, gateway webhooks (Razorpay and Stripe) and refunds.
"""

import logging
from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.settings import settings
from services.payment.coordinator import PaymentCoordinator
from services.payment.providers import decode_webhook_body, get_provider
from shared.middleware.auth import get_current_user, require_customer
from shared.models.models import Payment, PaymentProviderName, User
from shared.schemas.schemas import (
    PaymentCreateRequest,
    PaymentResponse,
    PaymentSessionResponse,
    RefundRequest,
    RefundResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["Payments"])


# ── Checkout ──────────────────────────────────────────────────

@router.post("/session", response_model=PaymentSessionResponse)
async def create_payment_session(
    data: PaymentCreateRequest,
    current_user: User = Depends(require_customer),
    db: AsyncSession = Depends(get_db),
):
    """
    Open a checkout session for an unpaid appointment.
    Razorpay clients open checkout with provider_ref (order id) + key_id;
    Stripe clients redirect to client_secret (hosted checkout URL).
    """
    payment, session = await PaymentCoordinator(db).create_payment_session(
        data.appointment_id, data.provider, current_user
    )
    return PaymentSessionResponse(
        payment_id=payment.id,
        provider=payment.provider,
        provider_ref=session.provider_ref,
        client_secret=session.client_secret,
        amount=payment.amount,
        currency=payment.currency,
        key_id=settings.RAZORPAY_KEY_ID if payment.provider == PaymentProviderName.RAZORPAY else None,
    )


# ── Webhooks ──────────────────────────────────────────────────

@router.post("/webhook/{provider}", include_in_schema=False)
async def provider_webhook(
    provider: PaymentProviderName,
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    """
    Gateway callback. The signature is checked against the raw body before
    anything is parsed. Replays are acknowledged with 200 so the gateway
    stops retrying.
    """
    body = await request.body()
    adapter = get_provider(provider)
    if not adapter.verify_webhook(body, request.headers):
        logger.warning(f"Rejected {provider.value} webhook with invalid signature")
        raise HTTPException(status_code=400, detail="Invalid webhook signature")

    try:
        payload = decode_webhook_body(body)
    except ValueError:
        raise HTTPException(status_code=400, detail="Malformed webhook body")

    event = adapter.parse_webhook(payload)
    outcome = await PaymentCoordinator(db).handle_provider_webhook(provider, event)
    return {"status": outcome}


# ── Refunds ───────────────────────────────────────────────────

@router.post("/{payment_id}/refund", response_model=RefundResponse)
async def refund_payment(
    payment_id: UUID,
    data: RefundRequest = RefundRequest(),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Full refund when amount is omitted. Payment owner or admin."""
    refund = await PaymentCoordinator(db).request_refund(
        payment_id, current_user, data.amount, data.reason
    )
    return RefundResponse.model_validate(refund)


# ── Read Endpoints ────────────────────────────────────────────

@router.get("/me/history", response_model=List[PaymentResponse])
async def my_payment_history(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(Payment)
        .where(Payment.user_id == current_user.id)
        .order_by(Payment.created_at.desc())
        .limit(50)
    )
    return [PaymentResponse.model_validate(p) for p in result.scalars().all()]


@router.get("/{payment_id}", response_model=PaymentResponse)
async def get_payment(
    payment_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    payment = await PaymentCoordinator(db).get_for_actor(payment_id, current_user)
    return PaymentResponse.model_validate(payment)


@router.get("/{payment_id}/refunds", response_model=List[RefundResponse])
async def list_payment_refunds(
    payment_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    coordinator = PaymentCoordinator(db)
    payment = await coordinator.get_for_actor(payment_id, current_user)
    return [RefundResponse.model_validate(r) for r in await coordinator.list_refunds(payment)]
