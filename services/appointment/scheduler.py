"""
services/appointment/scheduler.py
Appointment state machine. Orchestrates slot reservation, creation,
rescheduling, cancellation, confirmation and completion.

    pending   --confirm-->    confirmed   (barber/admin or payment webhook)
    pending   --cancel-->     canceled
    confirmed --complete-->   completed   (barber/admin)
    confirmed --cancel-->     canceled    (only before start)
    pending   --reschedule--> pending     (customer, reschedule_count + 1)

Every transition is a conditional UPDATE guarded on the current status.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from services.availability.ledger import AvailabilityLedger
from services.notification.dispatcher import notify
from shared.errors import Conflict, Forbidden, NotFound, ValidationError
from shared.models.models import (
    Appointment,
    AppointmentAuditLog,
    AppointmentStatus,
    Barber,
    NotificationType,
    Service,
    Slot,
    User,
    UserRole,
)
from shared.utils.dates import as_utc, utcnow

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = (AppointmentStatus.CANCELED, AppointmentStatus.COMPLETED)


def describe_time(appointment: Appointment) -> str:
    return as_utc(appointment.start_at).strftime("%d %b %Y %H:%M UTC")


class AppointmentScheduler:

    def __init__(self, db: AsyncSession):
        self.db = db
        self.ledger = AvailabilityLedger(db)

    # ── Lookups ───────────────────────────────────────────────

    async def get(self, appointment_id: uuid.UUID) -> Appointment:
        result = await self.db.execute(
            select(Appointment).where(Appointment.id == appointment_id)
        )
        appointment = result.scalar_one_or_none()
        if not appointment:
            raise NotFound("Appointment not found")
        return appointment

    async def _barber(self, barber_id: uuid.UUID) -> Barber:
        result = await self.db.execute(select(Barber).where(Barber.id == barber_id))
        barber = result.scalar_one_or_none()
        if not barber:
            raise NotFound("Barber not found")
        return barber

    async def _service_name(self, service_id: uuid.UUID) -> str:
        name = await self.db.scalar(select(Service.name).where(Service.id == service_id))
        return name or "service"

    async def _is_barber_of(self, actor: User, appointment: Appointment) -> bool:
        if actor.role != UserRole.BARBER:
            return False
        owner = await self.db.scalar(
            select(Barber.user_id).where(Barber.id == appointment.barber_id)
        )
        return owner == actor.id

    async def get_for_actor(self, appointment_id: uuid.UUID, actor: User) -> Appointment:
        """Participants and admins can read an appointment."""
        appointment = await self.get(appointment_id)
        if actor.role == UserRole.ADMIN or appointment.customer_id == actor.id:
            return appointment
        if await self._is_barber_of(actor, appointment):
            return appointment
        raise Forbidden("Not authorized to view this appointment")

    async def _require_barber_or_admin(self, actor: User, appointment: Appointment) -> None:
        if actor.role == UserRole.ADMIN:
            return
        if not await self._is_barber_of(actor, appointment):
            raise Forbidden("Only the barber or an admin can do this")

    # ── Audit ─────────────────────────────────────────────────

    def _log_status_change(
        self,
        appointment: Appointment,
        from_status: Optional[AppointmentStatus],
        to_status: AppointmentStatus,
        changed_by: Optional[User],
        reason: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> None:
        """Append an immutable audit log entry for every status change."""
        self.db.add(AppointmentAuditLog(
            appointment_id=appointment.id,
            from_status=from_status.value if from_status else None,
            to_status=to_status.value,
            changed_by_id=changed_by.id if changed_by else None,
            reason=reason,
            audit_metadata=metadata,
        ))

    async def _transition(
        self,
        appointment: Appointment,
        expected: AppointmentStatus,
        **values,
    ) -> bool:
        """Conditional write: applies values only if status is still `expected`."""
        result = await self.db.execute(
            update(Appointment)
            .where(Appointment.id == appointment.id, Appointment.status == expected)
            .values(updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        await self.db.refresh(appointment)
        return result.rowcount == 1

    # ── Book ──────────────────────────────────────────────────

    async def book(
        self,
        customer: User,
        barber_id: uuid.UUID,
        service_id: uuid.UUID,
        start: datetime,
        notes: Optional[str] = None,
    ) -> Appointment:
        """
        Reserve the slot, then create the appointment. If the slot cannot be
        reserved no appointment is written.
        """
        start = as_utc(start)
        if start <= utcnow():
            raise ValidationError("Appointment time must be in the future")
        if notes and len(notes) > settings.APPOINTMENT_NOTES_MAX_LENGTH:
            raise ValidationError("Notes are too long")

        barber = await self._barber(barber_id)
        if barber.user_id == customer.id:
            raise Forbidden("You cannot book your own shop")

        result = await self.db.execute(select(Service).where(Service.id == service_id))
        service = result.scalar_one_or_none()
        if not service or service.barber_id != barber.id:
            raise NotFound("Service not found for this barber")
        if not service.active:
            raise ValidationError("Service is not active")

        end = start + timedelta(minutes=service.duration_min)
        day = await self.ledger.resolve_date(barber.id, start)

        appointment_id = uuid.uuid4()
        await self.ledger.reserve(barber.id, day, start, end, appointment_id)

        appointment = Appointment(
            id=appointment_id,
            customer_id=customer.id,
            barber_id=barber.id,
            service_id=service.id,
            start_at=start,
            end_at=end,
            price=service.price,
            status=AppointmentStatus.PENDING,
            notes=notes,
        )
        self.db.add(appointment)
        await self.db.flush()

        self._log_status_change(appointment, None, AppointmentStatus.PENDING, customer)
        notify(
            self.db,
            barber.user_id,
            NotificationType.APPOINTMENT_BOOKED,
            appointment_id=appointment.id,
            service_name=service.name,
            when=describe_time(appointment),
        )
        logger.info(f"Appointment {appointment.id} booked with barber {barber.id} at {start.isoformat()}")
        return appointment

    # ── Reschedule ────────────────────────────────────────────

    async def reschedule(
        self, appointment_id: uuid.UUID, actor: User, new_start: datetime
    ) -> Appointment:
        """
        Move a pending appointment. The new slot is reserved before the old
        one is released, so a failure leaves the appointment and its current
        slot untouched.
        """
        appointment = await self.get(appointment_id)
        if appointment.customer_id != actor.id:
            raise Forbidden("Only the customer who booked can reschedule")
        if appointment.status != AppointmentStatus.PENDING:
            raise Conflict("Only pending appointments can be rescheduled")

        new_start = as_utc(new_start)
        if new_start <= utcnow():
            raise ValidationError("Appointment time must be in the future")
        old_start = as_utc(appointment.start_at)
        if new_start == old_start:
            raise ValidationError("New time is the same as the current time")

        new_end = new_start + (as_utc(appointment.end_at) - old_start)
        result = await self.db.execute(
            select(Slot).where(Slot.appointment_id == appointment.id)
        )
        current_slot = result.scalars().first()

        same_slot = (
            current_slot is not None
            and as_utc(current_slot.start_at) <= new_start
            and as_utc(current_slot.end_at) >= new_end
        )
        new_slot = None
        if not same_slot:
            day = await self.ledger.resolve_date(appointment.barber_id, new_start)
            new_slot = await self.ledger.reserve(
                appointment.barber_id, day, new_start, new_end, appointment.id
            )

        moved = await self._transition(
            appointment,
            AppointmentStatus.PENDING,
            start_at=new_start,
            end_at=new_end,
            reschedule_count=Appointment.reschedule_count + 1,
        )
        if not moved:
            if new_slot is not None:
                await self._release_slot(new_slot, appointment.id)
            raise Conflict(f"Appointment is now {appointment.status.value} and cannot be rescheduled")

        if current_slot is not None and not same_slot:
            await self._release_slot(current_slot, appointment.id)

        self._log_status_change(
            appointment,
            AppointmentStatus.PENDING,
            AppointmentStatus.PENDING,
            actor,
            reason="rescheduled",
            metadata={"from": old_start.isoformat(), "to": new_start.isoformat()},
        )
        barber = await self._barber(appointment.barber_id)
        notify(
            self.db,
            barber.user_id,
            NotificationType.APPOINTMENT_RESCHEDULED,
            appointment_id=appointment.id,
            when=describe_time(appointment),
        )
        logger.info(
            f"Appointment {appointment.id} rescheduled {old_start.isoformat()} -> {new_start.isoformat()}"
        )
        return appointment

    async def _release_slot(self, slot: Slot, appointment_id: uuid.UUID) -> None:
        """Release one specific slot (an appointment can briefly hold two)."""
        await self.db.execute(
            update(Slot)
            .where(Slot.id == slot.id, Slot.appointment_id == appointment_id)
            .values(is_booked=False, appointment_id=None)
            .execution_options(synchronize_session=False)
        )
        await self.db.refresh(slot)

    # ── Cancel ────────────────────────────────────────────────

    async def cancel(
        self, appointment_id: uuid.UUID, actor: User, reason: Optional[str] = None
    ) -> Appointment:
        """Write the canceled status first, then release the slot."""
        appointment = await self.get(appointment_id)

        if actor.role == UserRole.ADMIN:
            canceled_by = "admin"
        elif appointment.customer_id == actor.id:
            canceled_by = "customer"
        elif await self._is_barber_of(actor, appointment):
            canceled_by = "barber"
        else:
            raise Forbidden("Not authorized to cancel this appointment")

        for _ in range(2):
            current = appointment.status
            if current == AppointmentStatus.CANCELED:
                raise Conflict("Appointment is already canceled")
            if current == AppointmentStatus.COMPLETED:
                raise Conflict("Completed appointments cannot be canceled")
            if current == AppointmentStatus.CONFIRMED and as_utc(appointment.start_at) <= utcnow():
                raise Conflict("Confirmed appointments can only be canceled before they start")

            notes = appointment.notes or ""
            if reason:
                notes = f"{notes} Cancellation reason: {reason}".strip()
            if await self._transition(
                appointment,
                current,
                status=AppointmentStatus.CANCELED,
                canceled_at=utcnow(),
                canceled_by=canceled_by,
                notes=notes or None,
            ):
                break
            # Lost a race with another transition; re-evaluate on the fresh row
        else:
            raise Conflict("Appointment changed concurrently, please retry")

        await self.ledger.release(appointment.id)
        self._log_status_change(appointment, current, AppointmentStatus.CANCELED, actor, reason)

        barber = await self._barber(appointment.barber_id)
        recipients = {appointment.customer_id, barber.user_id} - {actor.id}
        for user_id in recipients:
            notify(
                self.db,
                user_id,
                NotificationType.APPOINTMENT_CANCELED,
                appointment_id=appointment.id,
                when=describe_time(appointment),
                canceled_by=canceled_by,
            )
        logger.info(f"Appointment {appointment.id} canceled by {canceled_by}")
        return appointment

    # ── Confirm ───────────────────────────────────────────────

    async def confirm(
        self,
        appointment_id: uuid.UUID,
        actor: Optional[User] = None,
        source: str = "barber",
    ) -> Appointment:
        """
        pending -> confirmed. Confirming an already-confirmed appointment is a
        no-op. With actor=None the call comes from the payment coordinator and
        a precondition mismatch is reported as handled rather than raised.
        """
        appointment = await self.get(appointment_id)
        if actor is not None:
            await self._require_barber_or_admin(actor, appointment)

        if await self._transition(
            appointment,
            AppointmentStatus.PENDING,
            status=AppointmentStatus.CONFIRMED,
            confirmed_at=utcnow(),
        ):
            self._log_status_change(
                appointment,
                AppointmentStatus.PENDING,
                AppointmentStatus.CONFIRMED,
                actor,
                metadata={"source": source},
            )
            notify(
                self.db,
                appointment.customer_id,
                NotificationType.APPOINTMENT_CONFIRMED,
                appointment_id=appointment.id,
                service_name=await self._service_name(appointment.service_id),
                when=describe_time(appointment),
            )
            logger.info(f"Appointment {appointment.id} confirmed via {source}")
            return appointment

        if appointment.status == AppointmentStatus.CONFIRMED:
            return appointment
        if actor is None:
            logger.warning(
                f"Confirm via {source} ignored: appointment {appointment.id} is {appointment.status.value}"
            )
            return appointment
        raise Conflict(f"Cannot confirm a {appointment.status.value} appointment")

    # ── Complete ──────────────────────────────────────────────

    async def complete(self, appointment_id: uuid.UUID, actor: User) -> Appointment:
        appointment = await self.get(appointment_id)
        await self._require_barber_or_admin(actor, appointment)

        if not await self._transition(
            appointment,
            AppointmentStatus.CONFIRMED,
            status=AppointmentStatus.COMPLETED,
            completed_at=utcnow(),
        ):
            raise Conflict(
                f"Only confirmed appointments can be completed (current: {appointment.status.value})"
            )

        self._log_status_change(
            appointment, AppointmentStatus.CONFIRMED, AppointmentStatus.COMPLETED, actor
        )
        notify(
            self.db,
            appointment.customer_id,
            NotificationType.APPOINTMENT_COMPLETED,
            appointment_id=appointment.id,
            when=describe_time(appointment),
        )
        logger.info(f"Appointment {appointment.id} completed")
        return appointment
