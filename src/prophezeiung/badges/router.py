"""Badge API endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from prophezeiung.badges import service
from prophezeiung.badges.catalog import BadgeCatalog, BadgeDefinition
from prophezeiung.badges.engine import BadgeEngine
from prophezeiung.badges.exceptions import (
    AggregationError,
    AwardPersistenceError,
    BadgeNotFoundError,
    RoundNotFoundError,
    RoundNotPublishedError,
)
from prophezeiung.badges.round_results import RoundResultsAwarder
from prophezeiung.badges.schemas import (
    AllBadgesResponse,
    AwardedBadgeResponse,
    AwardedBadgesResponse,
    BadgeHolderResponse,
    BadgeHoldersResponse,
    BadgeResponse,
    EarnedBadgeResponse,
    EvaluationResponse,
    ManualAwardRequest,
    ManualAwardResponse,
    RoundAwardResponse,
    UserBadgesResponse,
    UserSummary,
)
from prophezeiung.db.models import Badge
from prophezeiung.dependencies import get_badge_catalog, get_db, get_redis_dep, require_admin

router = APIRouter(prefix="/api/v1", tags=["Badges"])
admin_router = APIRouter(prefix="/api/v1/admin", tags=["Admin"], dependencies=[Depends(require_admin)])


def _badge_response(badge: Badge | BadgeDefinition) -> BadgeResponse:
    return BadgeResponse(
        key=badge.key,
        name=badge.name,
        description=badge.description,
        requirement=badge.requirement,
        category=getattr(badge.category, "value", badge.category),
        rarity=getattr(badge.rarity, "value", badge.rarity),
        threshold=badge.threshold,
    )


# ── Public endpoints ──


@router.get("/badges", response_model=AllBadgesResponse)
async def list_badges(catalog: BadgeCatalog = Depends(get_badge_catalog)):  # noqa: B008
    """All badge definitions in canonical order."""
    return AllBadgesResponse(badges=[_badge_response(d) for d in catalog.definitions])


@router.get("/badges/awarded", response_model=AwardedBadgesResponse)
async def list_awarded_badges(db: AsyncSession = Depends(get_db)):  # noqa: B008
    """Hall of fame: every badge earned at least once, with its first achiever."""
    entries = await service.get_awarded_badges(db)
    return AwardedBadgesResponse(
        badges=[
            AwardedBadgeResponse(
                badge=_badge_response(e.badge),
                first_achiever=UserSummary.model_validate(e.first_achiever),
                first_achieved_at=e.first_achieved_at,
                total_achievers=e.total_achievers,
            )
            for e in entries
        ]
    )


@router.get("/badges/{key}/holders", response_model=BadgeHoldersResponse)
async def list_badge_holders(key: str, db: AsyncSession = Depends(get_db)):  # noqa: B008
    """Users holding a badge, earliest first."""
    try:
        holders = await service.get_badge_holders(db, key)
    except BadgeNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Badge not found") from exc

    badge = await service.get_badge(db, key)
    return BadgeHoldersResponse(
        badge=_badge_response(badge),
        holders=[
            BadgeHolderResponse(user=UserSummary.model_validate(ub.user), earned_at=ub.earned_at)
            for ub in holders
        ],
        total=len(holders),
    )


@router.get("/users/{user_id}/badges", response_model=UserBadgesResponse)
async def get_user_badges(user_id: str, db: AsyncSession = Depends(get_db)):  # noqa: B008
    """A user's earned badges, newest first."""
    if await service.get_user(db, user_id) is None:
        raise HTTPException(status_code=404, detail="User not found")

    earned = await service.get_user_badges(db, user_id)
    return UserBadgesResponse(
        user_id=user_id,
        badges=[EarnedBadgeResponse(badge=_badge_response(ub.badge), earned_at=ub.earned_at) for ub in earned],
        total_earned=len(earned),
    )


@router.post("/users/{user_id}/badges/evaluate", response_model=EvaluationResponse)
async def evaluate_user_badges(
    user_id: str,
    db: AsyncSession = Depends(get_db),  # noqa: B008
    redis: object | None = Depends(get_redis_dep),  # noqa: B008
    catalog: BadgeCatalog = Depends(get_badge_catalog),  # noqa: B008
):
    """Run one evaluate-and-award pass and return the newly awarded badges."""
    if await service.get_user(db, user_id) is None:
        raise HTTPException(status_code=404, detail="User not found")

    try:
        result = await BadgeEngine(db, redis, catalog).evaluate_and_award(user_id)
    except (AggregationError, AwardPersistenceError) as exc:
        raise HTTPException(status_code=503, detail="Badge evaluation failed, retry later") from exc

    return EvaluationResponse(
        user_id=user_id,
        newly_awarded=[
            EarnedBadgeResponse(badge=_badge_response(a.definition), earned_at=a.earned_at)
            for a in result.newly_awarded
        ],
    )


# ── Admin endpoints ──


@admin_router.post("/badges/award", response_model=ManualAwardResponse)
async def award_badge(
    body: ManualAwardRequest,
    db: AsyncSession = Depends(get_db),  # noqa: B008
    redis: object | None = Depends(get_redis_dep),  # noqa: B008
    catalog: BadgeCatalog = Depends(get_badge_catalog),  # noqa: B008
):
    """Manually award a badge. Idempotent."""
    if await service.get_user(db, body.user_id) is None:
        raise HTTPException(status_code=404, detail="User not found")

    try:
        user_badge, is_new = await service.award_badge_manually(db, redis, body.user_id, body.badge_key, catalog)
    except BadgeNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Badge not found") from exc
    except AwardPersistenceError as exc:
        raise HTTPException(status_code=503, detail="Badge could not be awarded, retry later") from exc

    return ManualAwardResponse(
        user_id=body.user_id,
        badge=_badge_response(user_badge.badge),
        earned_at=user_badge.earned_at,
        is_new=is_new,
    )


@admin_router.post("/rounds/{round_id}/badges", response_model=RoundAwardResponse)
async def award_round_badges(
    round_id: str,
    db: AsyncSession = Depends(get_db),  # noqa: B008
    redis: object | None = Depends(get_redis_dep),  # noqa: B008
    catalog: BadgeCatalog = Depends(get_badge_catalog),  # noqa: B008
):
    """Award the round-result badges of a published round."""
    try:
        result = await RoundResultsAwarder(db, redis, catalog).award_round(round_id)
    except RoundNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Round not found") from exc
    except RoundNotPublishedError as exc:
        raise HTTPException(status_code=409, detail="Round results are not published") from exc
    except (AggregationError, AwardPersistenceError) as exc:
        raise HTTPException(status_code=503, detail="Round badges could not be awarded, retry later") from exc

    return RoundAwardResponse(
        round_id=round_id,
        awarded=len(result.newly_awarded),
        newly_awarded=[{"user_id": a.user_id, "badge_key": a.badge_key} for a in result.newly_awarded],
    )
