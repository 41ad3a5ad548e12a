"""
services/availability/ledger.py
Availability ledger: the single source of truth for which barber time windows
are free. Reservation is one conditional UPDATE on the slot row, so two
concurrent reserves of the same slot cannot both succeed.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import List, Optional, Sequence, Tuple

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from shared.errors import Conflict, NotFound, SlotUnavailable, ValidationError
from shared.models.models import Appointment, AppointmentStatus, Availability, Slot
from shared.utils.dates import as_utc, local_date, overlaps, utcnow

logger = logging.getLogger(__name__)

SlotBounds = Tuple[datetime, datetime]


@dataclass
class ReconcileResult:
    scanned: int = 0
    released_orphaned: int = 0
    released_terminal: int = 0


def find_overlap(bounds: Sequence[SlotBounds]) -> Optional[Tuple[SlotBounds, SlotBounds]]:
    """Pairwise interval check; returns the first overlapping pair or None."""
    for i, (start1, end1) in enumerate(bounds):
        for start2, end2 in bounds[i + 1:]:
            if overlaps(start1, end1, start2, end2):
                return (start1, end1), (start2, end2)
    return None


class AvailabilityLedger:
    """Reserve/release primitives plus slot publishing for one DB session."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ── Reads ─────────────────────────────────────────────────

    async def get_day(self, barber_id: uuid.UUID, day: date) -> Optional[Availability]:
        result = await self.db.execute(
            select(Availability).where(
                Availability.barber_id == barber_id,
                Availability.date == day,
            )
        )
        return result.scalar_one_or_none()

    async def open_slots(self, barber_id: uuid.UUID, day: date) -> List[Slot]:
        """Unbooked slots for a day that have not started yet."""
        now = utcnow()
        record = await self.get_day(barber_id, day)
        if not record:
            return []
        return [s for s in record.slots if not s.is_booked and as_utc(s.start_at) > now]

    async def weekly_schedule(self, barber_id: uuid.UUID, week_start: date) -> List[Availability]:
        week_end = week_start + timedelta(days=6)
        result = await self.db.execute(
            select(Availability)
            .where(
                Availability.barber_id == barber_id,
                Availability.date >= week_start,
                Availability.date <= week_end,
            )
            .order_by(Availability.date)
        )
        return list(result.scalars().all())

    async def resolve_date(self, barber_id: uuid.UUID, start: datetime) -> date:
        """
        Ledger date key for an instant: the local date in the timezone of the
        barber's availability record that covers it.
        """
        guess = local_date(start, settings.DEFAULT_TIMEZONE)
        result = await self.db.execute(
            select(Availability.date, Availability.timezone).where(
                Availability.barber_id == barber_id,
                Availability.date >= guess - timedelta(days=1),
                Availability.date <= guess + timedelta(days=1),
            )
        )
        for day, tz_name in result.all():
            if local_date(start, tz_name) == day:
                return day
        return guess

    # ── Publishing ────────────────────────────────────────────

    async def _get_or_create_day(
        self, barber_id: uuid.UUID, day: date, tz_name: Optional[str]
    ) -> Availability:
        record = await self.get_day(barber_id, day)
        if record is None:
            record = Availability(
                barber_id=barber_id,
                date=day,
                timezone=tz_name or settings.DEFAULT_TIMEZONE,
                slots=[],
            )
            self.db.add(record)
            await self.db.flush()
        elif tz_name and tz_name != record.timezone:
            record.timezone = tz_name
        return record

    def _check_on_day(self, bounds: Sequence[SlotBounds], day: date, tz_name: str) -> None:
        for start, _ in bounds:
            if local_date(start, tz_name) != day:
                raise ValidationError(
                    f"Slot starting {as_utc(start).isoformat()} does not fall on {day.isoformat()} ({tz_name})"
                )

    async def publish(
        self,
        barber_id: uuid.UUID,
        day: date,
        slots: Sequence[SlotBounds],
        tz_name: Optional[str] = None,
    ) -> Availability:
        """
        Replace the unbooked slots of a day with the given set.
        Booked slots are kept as they are; an input identical to a booked
        slot is treated as that slot.
        """
        bounds = sorted(((as_utc(s), as_utc(e)) for s, e in slots), key=lambda b: b[0])
        for start, end in bounds:
            if end <= start:
                raise ValidationError("Slot end must be after its start")

        clash = find_overlap(bounds)
        if clash:
            (s1, e1), (s2, e2) = clash
            raise ValidationError(
                f"Slots overlap: {s1.isoformat()}-{e1.isoformat()} and {s2.isoformat()}-{e2.isoformat()}"
            )

        record = await self._get_or_create_day(barber_id, day, tz_name)
        self._check_on_day(bounds, day, record.timezone)

        # Conditional delete: a slot booked concurrently survives
        await self.db.execute(
            delete(Slot)
            .where(Slot.availability_id == record.id, Slot.is_booked.is_(False))
            .execution_options(synchronize_session=False)
        )

        booked = (
            await self.db.execute(
                select(Slot.start_at, Slot.end_at).where(
                    Slot.availability_id == record.id, Slot.is_booked.is_(True)
                )
            )
        ).all()
        booked_bounds = [(as_utc(s), as_utc(e)) for s, e in booked]

        created = 0
        for start, end in bounds:
            if (start, end) in booked_bounds:
                continue
            for b_start, b_end in booked_bounds:
                if overlaps(start, end, b_start, b_end):
                    raise ValidationError(
                        f"Slot {start.isoformat()}-{end.isoformat()} overlaps a booked slot"
                    )
            self.db.add(Slot(availability_id=record.id, start_at=start, end_at=end))
            created += 1

        await self.db.flush()
        await self.db.refresh(record, attribute_names=["slots"])
        logger.info(
            f"Published {created} slots for barber {barber_id} on {day} "
            f"({len(booked_bounds)} booked kept)"
        )
        return record

    async def add_slot(
        self,
        barber_id: uuid.UUID,
        day: date,
        start: datetime,
        end: datetime,
        tz_name: Optional[str] = None,
    ) -> Slot:
        start, end = as_utc(start), as_utc(end)
        if end <= start:
            raise ValidationError("Slot end must be after its start")

        record = await self._get_or_create_day(barber_id, day, tz_name)
        self._check_on_day([(start, end)], day, record.timezone)
        await self.db.refresh(record, attribute_names=["slots"])

        for existing in record.slots:
            if overlaps(start, end, existing.start_at, existing.end_at):
                raise ValidationError("Time slot overlaps with an existing slot")

        slot = Slot(availability_id=record.id, start_at=start, end_at=end)
        self.db.add(slot)
        await self.db.flush()
        return slot

    async def remove_slot(
        self, barber_id: uuid.UUID, day: date, start: datetime, end: datetime
    ) -> None:
        result = await self.db.execute(
            select(Slot)
            .join(Availability, Availability.id == Slot.availability_id)
            .where(
                Availability.barber_id == barber_id,
                Availability.date == day,
                Slot.start_at == as_utc(start),
                Slot.end_at == as_utc(end),
            )
        )
        slot = result.scalar_one_or_none()
        if not slot:
            raise NotFound("Time slot not found")
        if slot.is_booked:
            raise Conflict("Cannot remove a booked slot")

        result = await self.db.execute(
            delete(Slot)
            .where(Slot.id == slot.id, Slot.is_booked.is_(False))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise Conflict("Cannot remove a booked slot")
        self.db.expunge(slot)

    # ── Reservation ───────────────────────────────────────────

    async def _containing_slot(
        self, barber_id: uuid.UUID, day: date, start: datetime, end: datetime, open_only: bool
    ) -> Optional[Slot]:
        stmt = (
            select(Slot)
            .join(Availability, Availability.id == Slot.availability_id)
            .where(
                Availability.barber_id == barber_id,
                Availability.date == day,
                Slot.start_at <= as_utc(start),
                Slot.end_at >= as_utc(end),
            )
            .order_by(Slot.is_booked, Slot.start_at)
            .limit(1)
        )
        if open_only:
            stmt = stmt.where(Slot.is_booked.is_(False))
        return (await self.db.execute(stmt)).scalar_one_or_none()

    async def find_open_slot(
        self, barber_id: uuid.UUID, day: date, start: datetime, end: datetime
    ) -> Slot:
        slot = await self._containing_slot(barber_id, day, start, end, open_only=True)
        if not slot:
            raise NotFound("No open slot covers the requested time")
        return slot

    async def reserve(
        self,
        barber_id: uuid.UUID,
        day: date,
        start: datetime,
        end: datetime,
        appointment_id: uuid.UUID,
    ) -> Slot:
        """
        Mark the slot containing [start, end) as booked for appointment_id.
        Raises NotFound when no published slot covers the window and
        SlotUnavailable when it is (or just became) booked.
        """
        slot = await self._containing_slot(barber_id, day, start, end, open_only=False)
        if not slot:
            raise NotFound("No open slot covers the requested time")
        if slot.is_booked:
            raise SlotUnavailable()

        result = await self.db.execute(
            update(Slot)
            .where(Slot.id == slot.id, Slot.is_booked.is_(False))
            .values(is_booked=True, appointment_id=appointment_id)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.warning(f"Reserve race lost on slot {slot.id} for barber {barber_id}")
            raise SlotUnavailable()

        await self.db.refresh(slot)
        logger.info(f"Slot {slot.id} reserved for appointment {appointment_id}")
        return slot

    async def release(self, appointment_id: uuid.UUID) -> bool:
        """
        Free the slot held by an appointment. Idempotent: returns False when
        nothing was held.
        """
        result = await self.db.execute(
            select(Slot).where(Slot.appointment_id == appointment_id)
        )
        slot = result.scalars().first()
        if slot is None:
            logger.info(f"Release no-op: appointment {appointment_id} holds no slot")
            return False

        result = await self.db.execute(
            update(Slot)
            .where(Slot.id == slot.id, Slot.appointment_id == appointment_id)
            .values(is_booked=False, appointment_id=None)
            .execution_options(synchronize_session=False)
        )
        await self.db.refresh(slot)
        released = result.rowcount == 1
        if released:
            logger.info(f"Slot {slot.id} released from appointment {appointment_id}")
        return released

    # ── Reconciliation ────────────────────────────────────────

    async def reconcile(self) -> ReconcileResult:
        """
        Sweep booked slots whose appointment is missing, canceled or completed
        and free them. Safe to run at any time.
        """
        outcome = ReconcileResult()
        rows = (
            await self.db.execute(
                select(Slot.id, Slot.appointment_id, Appointment.id, Appointment.status)
                .outerjoin(Appointment, Appointment.id == Slot.appointment_id)
                .where(Slot.is_booked.is_(True))
            )
        ).all()
        outcome.scanned = len(rows)

        for slot_id, held_by, appointment_id, status in rows:
            if appointment_id is not None and status not in (
                AppointmentStatus.CANCELED,
                AppointmentStatus.COMPLETED,
            ):
                continue

            stmt = update(Slot).where(Slot.id == slot_id, Slot.is_booked.is_(True))
            stmt = stmt.where(
                Slot.appointment_id.is_(None) if held_by is None else Slot.appointment_id == held_by
            )
            result = await self.db.execute(
                stmt.values(is_booked=False, appointment_id=None)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                continue
            if appointment_id is None:
                outcome.released_orphaned += 1
            else:
                outcome.released_terminal += 1

        if outcome.released_orphaned or outcome.released_terminal:
            logger.warning(
                f"Reconciliation released {outcome.released_orphaned} orphaned and "
                f"{outcome.released_terminal} terminal slot holds"
            )
        return outcome
