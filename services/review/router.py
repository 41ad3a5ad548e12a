"""
services/review/router.py
Rating and review management.
"""

from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.barber.router import get_barber_or_404
from services.review import aggregator
from shared.middleware.auth import get_current_user
from shared.models.models import Review, User
from shared.schemas.schemas import (
    MessageResponse,
    RatingStatsResponse,
    ReviewCreateRequest,
    ReviewResponse,
    ReviewUpdateRequest,
)

router = APIRouter(prefix="/reviews", tags=["Reviews"])


def _with_name(review: Review, user_name: str = None) -> ReviewResponse:
    response = ReviewResponse.model_validate(review)
    response.user_name = user_name
    return response


@router.post("", response_model=ReviewResponse, status_code=status.HTTP_201_CREATED)
async def create_review(
    data: ReviewCreateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Review a barber.
    - Requires at least one completed appointment with that barber
    - One review per customer per barber
    """
    review = await aggregator.create_review(
        db, current_user, data.barber_id, data.rating, data.comment
    )
    return _with_name(review, current_user.name)


@router.put("/{review_id}", response_model=ReviewResponse)
async def update_review(
    review_id: UUID,
    data: ReviewUpdateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    review = await aggregator.update_review(
        db, current_user, review_id, data.rating, data.comment
    )
    await db.refresh(review)
    return _with_name(review, current_user.name)


@router.delete("/{review_id}", response_model=MessageResponse)
async def delete_review(
    review_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Author or admin."""
    await aggregator.delete_review(db, current_user, review_id)
    return MessageResponse(message="Review deleted")


@router.get("/me", response_model=List[ReviewResponse])
async def my_reviews(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(Review)
        .where(Review.user_id == current_user.id)
        .order_by(Review.created_at.desc())
    )
    return [_with_name(r, current_user.name) for r in result.scalars().all()]


@router.get("/barber/{barber_id}", response_model=List[ReviewResponse])
async def get_barber_reviews(
    barber_id: UUID,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=50),
    db: AsyncSession = Depends(get_db),
):
    """Public: reviews for a barber, newest first."""
    result = await db.execute(
        select(Review, User.name)
        .join(User, User.id == Review.user_id)
        .where(Review.barber_id == barber_id)
        .order_by(Review.created_at.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    return [_with_name(review, name) for review, name in result.all()]


@router.get("/barber/{barber_id}/stats", response_model=RatingStatsResponse)
async def get_barber_rating_stats(barber_id: UUID, db: AsyncSession = Depends(get_db)):
    barber = await get_barber_or_404(barber_id, db)
    return RatingStatsResponse(
        barber_id=barber.id,
        rating=barber.rating,
        rating_count=barber.rating_count,
        distribution=await aggregator.rating_distribution(db, barber_id),
    )
