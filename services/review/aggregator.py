"""
services/review/aggregator.py
Review rules and the denormalized barber rating.
"""

import logging
import uuid
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Optional, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from services.notification.dispatcher import notify
from shared.errors import Conflict, Forbidden, NotFound
from shared.models.models import (
    Appointment,
    AppointmentStatus,
    Barber,
    NotificationType,
    Review,
    User,
    UserRole,
)

logger = logging.getLogger(__name__)


async def recompute_barber_rating(db: AsyncSession, barber_id: uuid.UUID) -> Tuple[Decimal, int]:
    """Full rescan of the barber's reviews; 0 / 0 when there are none."""
    await db.flush()
    avg, count = (
        await db.execute(
            select(func.avg(Review.rating), func.count(Review.id)).where(
                Review.barber_id == barber_id
            )
        )
    ).one()
    rating = Decimal(str(avg or 0)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    await db.execute(
        update(Barber)
        .where(Barber.id == barber_id)
        .values(rating=rating, rating_count=count)
        .execution_options(synchronize_session=False)
    )
    logger.info(f"Barber {barber_id} rating recomputed: {rating} over {count} reviews")
    return rating, count


async def rating_distribution(db: AsyncSession, barber_id: uuid.UUID) -> Dict[int, int]:
    rows = (
        await db.execute(
            select(Review.rating, func.count(Review.id))
            .where(Review.barber_id == barber_id)
            .group_by(Review.rating)
        )
    ).all()
    distribution = {stars: 0 for stars in range(1, 6)}
    for stars, count in rows:
        distribution[int(stars)] = count
    return distribution


async def _get_review(db: AsyncSession, review_id: uuid.UUID) -> Review:
    result = await db.execute(select(Review).where(Review.id == review_id))
    review = result.scalar_one_or_none()
    if not review:
        raise NotFound("Review not found")
    return review


async def create_review(
    db: AsyncSession,
    user: User,
    barber_id: uuid.UUID,
    rating: int,
    comment: Optional[str] = None,
) -> Review:
    """Only customers with a completed appointment at the shop may review it, once."""
    barber = await db.scalar(select(Barber).where(Barber.id == barber_id))
    if not barber:
        raise NotFound("Barber not found")

    completed = await db.scalar(
        select(func.count(Appointment.id)).where(
            Appointment.customer_id == user.id,
            Appointment.barber_id == barber_id,
            Appointment.status == AppointmentStatus.COMPLETED,
        )
    )
    if not completed:
        raise Forbidden("You can only review barbers you have completed an appointment with")

    existing = await db.scalar(
        select(Review.id).where(Review.barber_id == barber_id, Review.user_id == user.id)
    )
    if existing:
        raise Conflict("You have already reviewed this barber")

    review = Review(barber_id=barber_id, user_id=user.id, rating=rating, comment=comment)
    db.add(review)
    await recompute_barber_rating(db, barber_id)
    notify(db, barber.user_id, NotificationType.REVIEW_RECEIVED, rating=rating)
    return review


async def update_review(
    db: AsyncSession,
    user: User,
    review_id: uuid.UUID,
    rating: Optional[int] = None,
    comment: Optional[str] = None,
) -> Review:
    review = await _get_review(db, review_id)
    if review.user_id != user.id:
        raise Forbidden("You can only edit your own review")
    if rating is not None:
        review.rating = rating
    if comment is not None:
        review.comment = comment
    await recompute_barber_rating(db, review.barber_id)
    return review


async def delete_review(db: AsyncSession, user: User, review_id: uuid.UUID) -> None:
    review = await _get_review(db, review_id)
    if user.role != UserRole.ADMIN and review.user_id != user.id:
        raise Forbidden("You can only delete your own review")
    barber_id = review.barber_id
    await db.delete(review)
    await recompute_barber_rating(db, barber_id)
