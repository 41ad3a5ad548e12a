"""
services/notification/router.py
In-app notification inbox. Email/SMS delivery of the same rows happens in
tasks.notification_tasks.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from shared.middleware.auth import get_current_user
from shared.models.models import Notification, User
from shared.schemas.schemas import MessageResponse, NotificationListResponse, NotificationResponse
from shared.utils.dates import utcnow

router = APIRouter(prefix="/notifications", tags=["Notifications"])


async def _unread_count(db: AsyncSession, user_id: UUID) -> int:
    count = await db.scalar(
        select(func.count(Notification.id)).where(
            Notification.user_id == user_id,
            Notification.read_at.is_(None),
        )
    )
    return count or 0


@router.get("", response_model=NotificationListResponse)
async def get_my_notifications(
    unread_only: bool = Query(False),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=50),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Get authenticated user's in-app notifications, newest first."""
    query = (
        select(Notification)
        .where(Notification.user_id == current_user.id)
        .order_by(Notification.created_at.desc())
    )
    if unread_only:
        query = query.where(Notification.read_at.is_(None))

    # One extra row tells us whether another page exists
    query = query.offset((page - 1) * page_size).limit(page_size + 1)
    rows = list((await db.execute(query)).scalars().all())

    return NotificationListResponse(
        items=[NotificationResponse.model_validate(n) for n in rows[:page_size]],
        unread_count=await _unread_count(db, current_user.id),
        page=page,
        has_more=len(rows) > page_size,
    )


@router.post("/{notification_id}/read", response_model=MessageResponse)
async def mark_read(
    notification_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    exists = await db.scalar(
        select(Notification.id).where(
            Notification.id == notification_id, Notification.user_id == current_user.id
        )
    )
    if not exists:
        raise HTTPException(status_code=404, detail="Notification not found")

    await db.execute(
        update(Notification)
        .where(Notification.id == notification_id, Notification.read_at.is_(None))
        .values(read_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    return MessageResponse(message="Marked as read")


@router.post("/read-all", response_model=MessageResponse)
async def mark_all_read(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    await db.execute(
        update(Notification)
        .where(Notification.user_id == current_user.id, Notification.read_at.is_(None))
        .values(read_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    return MessageResponse(message="All notifications marked as read")


@router.get("/unread-count")
async def unread_count(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return {"unread_count": await _unread_count(db, current_user.id)}
