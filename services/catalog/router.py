"""
services/catalog/router.py
Service catalog: what each barber offers, with price and duration.
Prices are snapshotted into appointments, so edits never touch bookings.
"""

from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import RedisCache, get_redis
from services.barber.router import authorize_barber_owner, get_barber_for_user, get_barber_or_404
from shared.middleware.auth import require_barber
from shared.models.models import Service, User
from shared.schemas.schemas import (
    MessageResponse,
    ServiceCreateRequest,
    ServiceResponse,
    ServiceUpdateRequest,
)

router = APIRouter(prefix="/services", tags=["Services"])

CATEGORIES_CACHE_KEY = "catalog:categories"


# ── Helpers ───────────────────────────────────────────────────

async def _get_service_or_404(service_id: UUID, db: AsyncSession) -> Service:
    result = await db.execute(select(Service).where(Service.id == service_id))
    service = result.scalar_one_or_none()
    if not service:
        raise HTTPException(status_code=404, detail="Service not found")
    return service


async def _ensure_unique_name(
    db: AsyncSession, barber_id: UUID, name: str, exclude_id: UUID = None
) -> None:
    query = select(Service.id).where(Service.barber_id == barber_id, Service.name == name)
    if exclude_id:
        query = query.where(Service.id != exclude_id)
    if await db.scalar(query):
        raise HTTPException(status_code=409, detail="Service with this name already exists")


# ── Public Endpoints ──────────────────────────────────────────

@router.get("/categories", response_model=List[str])
async def list_categories(
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Distinct categories of active services (cached)."""
    cache = RedisCache(redis)
    cached = await cache.get(CATEGORIES_CACHE_KEY)
    if cached is not None:
        return cached

    result = await db.execute(
        select(Service.category).where(Service.active.is_(True)).distinct().order_by(Service.category)
    )
    categories = list(result.scalars().all())
    await cache.set(CATEGORIES_CACHE_KEY, categories)
    return categories


@router.get("/barber/{barber_id}", response_model=List[ServiceResponse])
async def list_barber_services(
    barber_id: UUID,
    include_inactive: bool = Query(False),
    db: AsyncSession = Depends(get_db),
):
    await get_barber_or_404(barber_id, db)
    query = select(Service).where(Service.barber_id == barber_id)
    if not include_inactive:
        query = query.where(Service.active.is_(True))
    result = await db.execute(query.order_by(Service.name))
    return [ServiceResponse.model_validate(s) for s in result.scalars().all()]


@router.get("/{service_id}", response_model=ServiceResponse)
async def get_service(service_id: UUID, db: AsyncSession = Depends(get_db)):
    return ServiceResponse.model_validate(await _get_service_or_404(service_id, db))


# ── Barber Endpoints ──────────────────────────────────────────

@router.post("", response_model=ServiceResponse, status_code=status.HTTP_201_CREATED)
async def create_service(
    data: ServiceCreateRequest,
    current_user: User = Depends(require_barber),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    barber = await get_barber_for_user(current_user, db)
    await _ensure_unique_name(db, barber.id, data.name)

    service = Service(barber_id=barber.id, **data.model_dump())
    db.add(service)
    await db.flush()
    await RedisCache(redis).delete(CATEGORIES_CACHE_KEY)
    return ServiceResponse.model_validate(service)


@router.put("/{service_id}", response_model=ServiceResponse)
async def update_service(
    service_id: UUID,
    data: ServiceUpdateRequest,
    current_user: User = Depends(require_barber),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    service = await _get_service_or_404(service_id, db)
    await authorize_barber_owner(service.barber_id, current_user, db)

    updates = data.model_dump(exclude_unset=True)
    if "name" in updates and updates["name"] != service.name:
        await _ensure_unique_name(db, service.barber_id, updates["name"], exclude_id=service.id)
    for field, value in updates.items():
        setattr(service, field, value)
    await db.flush()
    await RedisCache(redis).delete(CATEGORIES_CACHE_KEY)
    return ServiceResponse.model_validate(service)


@router.post("/{service_id}/toggle", response_model=ServiceResponse)
async def toggle_service(
    service_id: UUID,
    current_user: User = Depends(require_barber),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    service = await _get_service_or_404(service_id, db)
    await authorize_barber_owner(service.barber_id, current_user, db)
    service.active = not service.active
    await db.flush()
    await RedisCache(redis).delete(CATEGORIES_CACHE_KEY)
    return ServiceResponse.model_validate(service)


@router.delete("/{service_id}", response_model=MessageResponse)
async def delete_service(
    service_id: UUID,
    current_user: User = Depends(require_barber),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Soft delete: existing appointments keep pointing at the service."""
    service = await _get_service_or_404(service_id, db)
    await authorize_barber_owner(service.barber_id, current_user, db)
    service.active = False
    await RedisCache(redis).delete(CATEGORIES_CACHE_KEY)
    return MessageResponse(message="Service deactivated")
