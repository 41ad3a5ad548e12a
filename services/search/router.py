"""
services/search/router.py
Barber recommendations: a deterministic score over rating, category fit
and price fit. Results are cached briefly in Redis per query.
"""

import hashlib
import json
from decimal import Decimal
from typing import List, Optional, Tuple

from fastapi import APIRouter, Depends
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import RedisCache, get_redis
from shared.models.models import Barber
from shared.schemas.schemas import BarberResponse, RecommendationRequest, RecommendationResponse

router = APIRouter(prefix="/search", tags=["Search"])

RATING_WEIGHT = 20
CATEGORY_BONUS = 15
BUDGET_BONUS = 10
MAX_RESULTS = 10
CACHE_TTL_SECONDS = 120


def score_barber(
    barber: Barber, category: Optional[str], budget: Optional[Decimal]
) -> Tuple[int, List[str]]:
    active = [s for s in barber.services if s.active]
    rating = float(barber.rating or 0)
    score = rating * RATING_WEIGHT
    reasons = [f"Rated {rating:.2f} by {barber.rating_count} customers"]

    if category and any(s.category.lower() == category.lower() for s in active):
        score += CATEGORY_BONUS
        reasons.append(f"Offers {category}")

    if budget is not None and active:
        average = sum((Decimal(s.price) for s in active), Decimal(0)) / len(active)
        if average <= budget:
            score += BUDGET_BONUS
            reasons.append("Average price within budget")

    return int(round(score)), reasons


def _cache_key(data: RecommendationRequest) -> str:
    raw = json.dumps(data.model_dump(mode="json"), sort_keys=True)
    return "recommendations:" + hashlib.sha256(raw.encode()).hexdigest()[:16]


@router.post("/recommendations", response_model=List[RecommendationResponse])
async def recommend_barbers(
    data: RecommendationRequest,
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Top verified barbers in a city for an optional category and budget."""
    cache = RedisCache(redis)
    key = _cache_key(data)
    cached = await cache.get(key)
    if cached is not None:
        return cached

    result = await db.execute(
        select(Barber).where(
            Barber.is_verified.is_(True),
            func.lower(Barber.city) == data.city.strip().lower(),
        )
    )
    ranked = []
    for barber in result.scalars().all():
        score, reasons = score_barber(barber, data.category, data.budget)
        ranked.append((score, barber, reasons))
    # Ties keep a stable order by shop name
    ranked.sort(key=lambda item: (-item[0], item[1].shop_name))

    response = [
        RecommendationResponse(
            barber=BarberResponse.model_validate(barber), score=score, reasons=reasons
        )
        for score, barber, reasons in ranked[:MAX_RESULTS]
    ]
    await cache.set(key, [r.model_dump(mode="json") for r in response], ttl=CACHE_TTL_SECONDS)
    return response
