"""
services/appointment/router.py
HTTP surface for the appointment lifecycle. All state changes go through
AppointmentScheduler; this module only maps requests and authorization.
"""

from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.appointment.scheduler import AppointmentScheduler
from shared.middleware.auth import get_current_user, require_customer
from shared.models.models import Appointment, AppointmentStatus, Barber, User, UserRole
from shared.schemas.schemas import (
    AppointmentCancelRequest,
    AppointmentCreateRequest,
    AppointmentRescheduleRequest,
    AppointmentResponse,
)
from shared.utils.dates import utcnow

router = APIRouter(prefix="/appointments", tags=["Appointments"])


@router.post("", response_model=AppointmentResponse, status_code=status.HTTP_201_CREATED)
async def book_appointment(
    data: AppointmentCreateRequest,
    current_user: User = Depends(require_customer),
    db: AsyncSession = Depends(get_db),
):
    """
    Book a service with a barber. The covering slot is reserved first; if
    someone else got it the call fails with 409 and nothing is written.
    The appointment starts pending until the barber confirms or payment lands.
    """
    appointment = await AppointmentScheduler(db).book(
        current_user, data.barber_id, data.service_id, data.start_at, data.notes
    )
    return AppointmentResponse.model_validate(appointment)


@router.get("", response_model=List[AppointmentResponse])
async def list_appointments(
    status_filter: Optional[str] = Query(None, alias="status"),
    upcoming: bool = Query(False),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Customers see their own, barbers see their shop's, admins see all.
    upcoming=true keeps pending and confirmed visits that have not started,
    soonest first.
    """
    if current_user.role == UserRole.BARBER:
        barber_id = await db.scalar(select(Barber.id).where(Barber.user_id == current_user.id))
        if not barber_id:
            return []
        query = select(Appointment).where(Appointment.barber_id == barber_id)
    elif current_user.role == UserRole.ADMIN:
        query = select(Appointment)
    else:
        query = select(Appointment).where(Appointment.customer_id == current_user.id)

    if status_filter:
        try:
            query = query.where(Appointment.status == AppointmentStatus(status_filter))
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Invalid status: {status_filter}")

    if upcoming:
        query = query.where(
            Appointment.start_at > utcnow(),
            Appointment.status.in_([AppointmentStatus.PENDING, AppointmentStatus.CONFIRMED]),
        ).order_by(Appointment.start_at)
    else:
        query = query.order_by(Appointment.start_at.desc())

    result = await db.execute(query.offset((page - 1) * page_size).limit(page_size))
    return [AppointmentResponse.model_validate(a) for a in result.scalars().all()]


@router.get("/{appointment_id}", response_model=AppointmentResponse)
async def get_appointment(
    appointment_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    appointment = await AppointmentScheduler(db).get_for_actor(appointment_id, current_user)
    return AppointmentResponse.model_validate(appointment)


@router.post("/{appointment_id}/confirm", response_model=AppointmentResponse)
async def confirm_appointment(
    appointment_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Barber (or admin) confirms a pending appointment. Repeat calls are no-ops."""
    appointment = await AppointmentScheduler(db).confirm(appointment_id, actor=current_user)
    return AppointmentResponse.model_validate(appointment)


@router.post("/{appointment_id}/reschedule", response_model=AppointmentResponse)
async def reschedule_appointment(
    appointment_id: UUID,
    data: AppointmentRescheduleRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    appointment = await AppointmentScheduler(db).reschedule(
        appointment_id, current_user, data.start_at
    )
    return AppointmentResponse.model_validate(appointment)


@router.post("/{appointment_id}/cancel", response_model=AppointmentResponse)
async def cancel_appointment(
    appointment_id: UUID,
    data: AppointmentCancelRequest = AppointmentCancelRequest(),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    appointment = await AppointmentScheduler(db).cancel(appointment_id, current_user, data.reason)
    return AppointmentResponse.model_validate(appointment)


@router.post("/{appointment_id}/complete", response_model=AppointmentResponse)
async def complete_appointment(
    appointment_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    appointment = await AppointmentScheduler(db).complete(appointment_id, current_user)
    return AppointmentResponse.model_validate(appointment)
