"""
services/availability/router.py
Publishing and reading barber time slots.
Reads are public; writes are limited to the shop owner or an admin.
"""

from datetime import date, datetime, timedelta
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.availability.ledger import AvailabilityLedger
from services.barber.router import authorize_barber_owner, get_barber_or_404
from shared.middleware.auth import require_barber
from shared.models.models import User
from shared.schemas.schemas import (
    AvailabilityPublishRequest,
    AvailabilityResponse,
    MessageResponse,
    PublicSlotResponse,
    SlotAddRequest,
    SlotResponse,
    WeeklyScheduleResponse,
)
from shared.utils.dates import as_utc, utcnow

router = APIRouter(prefix="/availability", tags=["Availability"])


def _public_day(record) -> AvailabilityResponse:
    """Hide which appointment holds a booked slot from public readers."""
    response = AvailabilityResponse.model_validate(record)
    for slot in response.slots:
        slot.appointment_id = None
    return response


# ── Public Reads ──────────────────────────────────────────────

@router.get("/{barber_id}/slots", response_model=List[PublicSlotResponse])
async def get_open_slots(
    barber_id: UUID,
    day: date = Query(..., alias="date"),
    db: AsyncSession = Depends(get_db),
):
    """Open (unbooked, not yet started) slots for one day."""
    await get_barber_or_404(barber_id, db)
    slots = await AvailabilityLedger(db).open_slots(barber_id, day)
    return [PublicSlotResponse.model_validate(s) for s in slots]


@router.get("/{barber_id}/week", response_model=WeeklyScheduleResponse)
async def get_weekly_schedule(
    barber_id: UUID,
    start: Optional[date] = Query(None, description="First day of the week, defaults to today"),
    db: AsyncSession = Depends(get_db),
):
    await get_barber_or_404(barber_id, db)
    week_start = start or utcnow().date()
    records = await AvailabilityLedger(db).weekly_schedule(barber_id, week_start)
    return WeeklyScheduleResponse(
        barber_id=barber_id,
        week_start=week_start,
        week_end=week_start + timedelta(days=6),
        days=[_public_day(r) for r in records],
    )


# ── Owner Endpoints ───────────────────────────────────────────

@router.get("/{barber_id}/day", response_model=Optional[AvailabilityResponse])
async def get_day(
    barber_id: UUID,
    day: date = Query(..., alias="date"),
    current_user: User = Depends(require_barber),
    db: AsyncSession = Depends(get_db),
):
    """Full day record including which appointment holds each slot."""
    await authorize_barber_owner(barber_id, current_user, db)
    record = await AvailabilityLedger(db).get_day(barber_id, day)
    return AvailabilityResponse.model_validate(record) if record else None


@router.put("/{barber_id}", response_model=AvailabilityResponse)
async def publish_availability(
    barber_id: UUID,
    data: AvailabilityPublishRequest,
    current_user: User = Depends(require_barber),
    db: AsyncSession = Depends(get_db),
):
    """Replace the unbooked slots of a day. Booked slots are never touched."""
    await authorize_barber_owner(barber_id, current_user, db)
    record = await AvailabilityLedger(db).publish(
        barber_id,
        data.date,
        [(s.start_at, s.end_at) for s in data.slots],
        data.timezone,
    )
    return AvailabilityResponse.model_validate(record)


@router.post("/{barber_id}/slots", response_model=SlotResponse, status_code=status.HTTP_201_CREATED)
async def add_slot(
    barber_id: UUID,
    data: SlotAddRequest,
    current_user: User = Depends(require_barber),
    db: AsyncSession = Depends(get_db),
):
    await authorize_barber_owner(barber_id, current_user, db)
    slot = await AvailabilityLedger(db).add_slot(
        barber_id, data.date, data.start_at, data.end_at, data.timezone
    )
    return SlotResponse.model_validate(slot)


@router.delete("/{barber_id}/slots", response_model=MessageResponse)
async def remove_slot(
    barber_id: UUID,
    day: date = Query(..., alias="date"),
    start_at: datetime = Query(...),
    end_at: datetime = Query(...),
    current_user: User = Depends(require_barber),
    db: AsyncSession = Depends(get_db),
):
    await authorize_barber_owner(barber_id, current_user, db)
    await AvailabilityLedger(db).remove_slot(barber_id, day, as_utc(start_at), as_utc(end_at))
    return MessageResponse(message="Slot removed")

