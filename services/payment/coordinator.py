"""
services/payment/coordinator.py
Links gateway payments to appointments: opens checkout sessions, applies
webhook outcomes exactly once and issues refunds.
"""

import logging
import uuid
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from services.appointment.scheduler import TERMINAL_STATUSES, AppointmentScheduler, describe_time
from services.notification.dispatcher import notify
from services.payment.providers import ProviderSession, WebhookEvent, get_provider
from shared.errors import Conflict, ExternalProviderError, Forbidden, NotFound, ValidationError
from shared.models.models import (
    Appointment,
    AppointmentPaymentStatus,
    NotificationType,
    Payment,
    PaymentProviderName,
    PaymentStatus,
    Refund,
    RefundStatus,
    User,
    UserRole,
)
from shared.utils.dates import utcnow

logger = logging.getLogger(__name__)


class PaymentCoordinator:

    def __init__(self, db: AsyncSession):
        self.db = db
        self.scheduler = AppointmentScheduler(db)

    async def get_payment(self, payment_id: uuid.UUID) -> Payment:
        result = await self.db.execute(select(Payment).where(Payment.id == payment_id))
        payment = result.scalar_one_or_none()
        if not payment:
            raise NotFound("Payment not found")
        return payment

    async def get_for_actor(self, payment_id: uuid.UUID, actor: User) -> Payment:
        payment = await self.get_payment(payment_id)
        if actor.role != UserRole.ADMIN and payment.user_id != actor.id:
            raise Forbidden("Not authorized to view this payment")
        return payment

    async def list_refunds(self, payment: Payment) -> List[Refund]:
        result = await self.db.execute(
            select(Refund).where(Refund.payment_id == payment.id).order_by(Refund.created_at)
        )
        return list(result.scalars().all())

    # ── Checkout ──────────────────────────────────────────────

    async def create_payment_session(
        self,
        appointment_id: uuid.UUID,
        provider_name: PaymentProviderName,
        actor: User,
    ) -> tuple[Payment, ProviderSession]:
        appointment = await self.scheduler.get(appointment_id)
        if appointment.customer_id != actor.id:
            raise Forbidden("Only the customer who booked can pay for this appointment")
        if appointment.payment_status != AppointmentPaymentStatus.UNPAID:
            raise Conflict("Appointment is already paid")
        if appointment.status in TERMINAL_STATUSES:
            raise Conflict(f"Cannot pay for a {appointment.status.value} appointment")

        provider = get_provider(provider_name)
        payment = Payment(
            user_id=actor.id,
            appointment_id=appointment.id,
            provider=provider.name,
            amount=appointment.price,
            currency=settings.DEFAULT_CURRENCY,
            status=PaymentStatus.CREATED,
        )
        self.db.add(payment)
        await self.db.commit()

        try:
            session = await provider.create_session(
                payment.amount,
                payment.currency,
                receipt=str(payment.id),
                description=f"Appointment {appointment.id}",
            )
        except ExternalProviderError:
            logger.error(f"Payment {payment.id} left created without a gateway session")
            raise
        payment.provider_ref = session.provider_ref
        payment.meta = {"session": {"id": session.provider_ref}}
        await self.db.flush()

        logger.info(
            f"Payment {payment.id} opened with {provider.name.value} ref {session.provider_ref} "
            f"for appointment {appointment.id}"
        )
        return payment, session

    # ── Webhooks ──────────────────────────────────────────────

    async def handle_provider_webhook(
        self, provider_name: PaymentProviderName, event: WebhookEvent
    ) -> str:
        """
        Apply a verified webhook event. Replays and events for unknown refs
        are no-ops; the returned string is only for the response body.
        """
        if event.kind == "ignored" or not event.provider_ref:
            logger.info(f"Webhook {event.event_type} from {provider_name.value} ignored")
            return "ignored"

        result = await self.db.execute(
            select(Payment).where(
                Payment.provider == provider_name,
                Payment.provider_ref == event.provider_ref,
            )
        )
        payment = result.scalar_one_or_none()
        if not payment:
            logger.warning(f"Webhook for unknown {provider_name.value} ref {event.provider_ref}")
            return "not_found"

        if event.kind == "attempt_failed":
            # The order stays payable; the customer can retry on the same checkout
            await self._record_failed_attempt(payment, event.meta)
            logger.info(f"Payment {payment.id} attempt failed ({event.event_type}), still open")
            return "attempt_failed"

        if event.kind == "failed":
            if await self._set_payment_status(payment, PaymentStatus.FAILED, event.meta):
                logger.info(f"Payment {payment.id} failed ({event.event_type})")
                return "failed"
            return "duplicate"

        if not await self._set_payment_status(
            payment,
            PaymentStatus.PAID,
            event.meta,
            from_statuses=(PaymentStatus.CREATED, PaymentStatus.FAILED),
            paid_at=utcnow(),
        ):
            logger.info(f"Duplicate success webhook for payment {payment.id}")
            return "duplicate"

        logger.info(f"Payment {payment.id} marked paid via {event.event_type}")
        if payment.appointment_id:
            await self.db.execute(
                update(Appointment)
                .where(
                    Appointment.id == payment.appointment_id,
                    Appointment.payment_status == AppointmentPaymentStatus.UNPAID,
                )
                .values(payment_status=AppointmentPaymentStatus.PAID, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            appointment = await self.scheduler.confirm(
                payment.appointment_id, actor=None, source="payment"
            )
            notify(
                self.db,
                payment.user_id,
                NotificationType.PAYMENT_SUCCESS,
                appointment_id=appointment.id,
                amount=payment.amount,
                currency=payment.currency,
                when=describe_time(appointment),
            )
        return "paid"

    async def _set_payment_status(
        self,
        payment: Payment,
        new_status: PaymentStatus,
        meta: dict,
        from_statuses: tuple = (PaymentStatus.CREATED,),
        **values,
    ) -> bool:
        """from_statuses -> new_status, exactly once."""
        merged = dict(payment.meta or {})
        merged.update({k: v for k, v in meta.items() if v is not None})
        result = await self.db.execute(
            update(Payment)
            .where(Payment.id == payment.id, Payment.status.in_(from_statuses))
            .values(status=new_status, meta=merged, updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        await self.db.refresh(payment)
        return result.rowcount == 1

    async def _record_failed_attempt(self, payment: Payment, meta: dict) -> None:
        """Append a failed attempt to meta while the payment is still open."""
        merged = dict(payment.meta or {})
        attempts = list(merged.get("failed_attempts", []))
        attempts.append({k: v for k, v in meta.items() if v is not None})
        merged["failed_attempts"] = attempts
        await self.db.execute(
            update(Payment)
            .where(Payment.id == payment.id, Payment.status == PaymentStatus.CREATED)
            .values(meta=merged, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await self.db.refresh(payment)

    # ── Refunds ───────────────────────────────────────────────

    async def request_refund(
        self,
        payment_id: uuid.UUID,
        actor: User,
        amount: Optional[Decimal] = None,
        reason: Optional[str] = None,
    ) -> Refund:
        """
        Refund all or part of a paid payment. The refund row is committed
        before the provider call, so a gateway failure leaves it `initiated`.
        """
        payment = await self.get_payment(payment_id)
        if actor.role != UserRole.ADMIN and payment.user_id != actor.id:
            raise Forbidden("Not authorized to refund this payment")
        if payment.status != PaymentStatus.PAID:
            raise Conflict(f"Cannot refund a {payment.status.value} payment")

        amount = Decimal(payment.amount if amount is None else amount)
        if amount <= 0:
            raise ValidationError("Refund amount must be positive")
        if amount > payment.amount:
            raise ValidationError("Refund amount exceeds the payment amount")

        refund = Refund(
            payment_id=payment.id,
            requested_by_id=actor.id,
            amount=amount,
            reason=reason,
            provider=payment.provider,
            status=RefundStatus.INITIATED,
        )
        self.db.add(refund)
        await self.db.commit()

        provider = get_provider(payment.provider)
        try:
            outcome = await provider.refund(payment.provider_ref, amount, payment.meta)
        except ExternalProviderError:
            logger.error(f"Refund {refund.id} for payment {payment.id} left initiated")
            raise

        refund.status = RefundStatus.SUCCEEDED
        refund.provider_ref = outcome.provider_ref
        refund.meta = outcome.raw or None

        if amount == payment.amount:
            await self.db.execute(
                update(Payment)
                .where(Payment.id == payment.id, Payment.status == PaymentStatus.PAID)
                .values(status=PaymentStatus.REFUNDED, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            await self.db.refresh(payment)
            if payment.appointment_id:
                await self.db.execute(
                    update(Appointment)
                    .where(Appointment.id == payment.appointment_id)
                    .values(payment_status=AppointmentPaymentStatus.REFUNDED, updated_at=utcnow())
                    .execution_options(synchronize_session=False)
                )

        await self.db.flush()
        notify(
            self.db,
            payment.user_id,
            NotificationType.REFUND_PROCESSED,
            appointment_id=payment.appointment_id,
            amount=amount,
            currency=payment.currency,
        )
        logger.info(f"Refund {refund.id} of {amount} succeeded for payment {payment.id}")
        return refund
