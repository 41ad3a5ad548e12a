"""
services/barber/router.py
Barber shop profiles: create (promotes the user to barber), read, update, list.
"""

import math
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from shared.middleware.auth import get_current_user, require_barber
from shared.models.models import Barber, User, UserRole
from shared.schemas.schemas import (
    BarberCreateRequest,
    BarberResponse,
    BarberUpdateRequest,
    PaginatedResponse,
)

router = APIRouter(prefix="/barbers", tags=["Barbers"])


# ── Helpers ───────────────────────────────────────────────────

async def get_barber_or_404(barber_id: UUID, db: AsyncSession) -> Barber:
    result = await db.execute(select(Barber).where(Barber.id == barber_id))
    barber = result.scalar_one_or_none()
    if not barber:
        raise HTTPException(status_code=404, detail="Barber not found")
    return barber


async def get_barber_for_user(user: User, db: AsyncSession) -> Barber:
    result = await db.execute(select(Barber).where(Barber.user_id == user.id))
    barber = result.scalar_one_or_none()
    if not barber:
        raise HTTPException(status_code=404, detail="Barber profile not found")
    return barber


async def authorize_barber_owner(barber_id: UUID, user: User, db: AsyncSession) -> Barber:
    """The barber who owns the shop, or an admin."""
    barber = await get_barber_or_404(barber_id, db)
    if user.role != UserRole.ADMIN and barber.user_id != user.id:
        raise HTTPException(status_code=403, detail="You can only manage your own shop")
    return barber


# ── Public Endpoints ──────────────────────────────────────────

@router.get("", response_model=PaginatedResponse)
async def list_barbers(
    city: Optional[str] = Query(None, max_length=100),
    verified: Optional[bool] = Query(None),
    min_rating: Optional[float] = Query(None, ge=0, le=5),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
):
    """List barbers, best rated first."""
    query = select(Barber)
    if city:
        query = query.where(func.lower(Barber.city) == city.lower())
    if verified is not None:
        query = query.where(Barber.is_verified.is_(verified))
    if min_rating is not None:
        query = query.where(Barber.rating >= min_rating)

    total = await db.scalar(select(func.count()).select_from(query.subquery())) or 0
    result = await db.execute(
        query.order_by(Barber.rating.desc(), Barber.rating_count.desc(), Barber.shop_name)
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    items = [BarberResponse.model_validate(b) for b in result.scalars().all()]
    return PaginatedResponse(
        items=items,
        total=total,
        page=page,
        page_size=page_size,
        pages=math.ceil(total / page_size) if total else 0,
    )


# ── Own Profile ───────────────────────────────────────────────

@router.post("", response_model=BarberResponse, status_code=status.HTTP_201_CREATED)
async def create_barber_profile(
    data: BarberCreateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Create a shop profile for the current user and promote them to barber."""
    existing = await db.scalar(select(Barber.id).where(Barber.user_id == current_user.id))
    if existing:
        raise HTTPException(status_code=409, detail="Barber profile already exists")

    barber = Barber(user_id=current_user.id, services=[], **data.model_dump())
    db.add(barber)
    if current_user.role == UserRole.CUSTOMER:
        current_user.role = UserRole.BARBER
    await db.flush()
    return BarberResponse.model_validate(barber)


@router.get("/me", response_model=BarberResponse)
async def get_my_barber_profile(
    current_user: User = Depends(require_barber),
    db: AsyncSession = Depends(get_db),
):
    barber = await get_barber_for_user(current_user, db)
    return BarberResponse.model_validate(barber)


@router.put("/me", response_model=BarberResponse)
async def update_my_barber_profile(
    data: BarberUpdateRequest,
    current_user: User = Depends(require_barber),
    db: AsyncSession = Depends(get_db),
):
    """Update shop details. Rating and verification are not client-writable."""
    barber = await get_barber_for_user(current_user, db)
    for field, value in data.model_dump(exclude_unset=True).items():
        setattr(barber, field, value)
    await db.flush()
    return BarberResponse.model_validate(barber)


@router.get("/{barber_id}", response_model=BarberResponse)
async def get_barber(barber_id: UUID, db: AsyncSession = Depends(get_db)):
    barber = await get_barber_or_404(barber_id, db)
    return BarberResponse.model_validate(barber)
