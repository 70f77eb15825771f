"""Badge queries, catalog sync and manual awards."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from prophezeiung.badges.award_writer import AwardWriter
from prophezeiung.badges.catalog import BadgeCatalog, get_catalog
from prophezeiung.badges.exceptions import AwardPersistenceError, BadgeNotFoundError
from prophezeiung.database import dialect_insert
from prophezeiung.db.models import Badge, User, UserBadge

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HallOfFameEntry:
    badge: Badge
    first_achiever: User
    first_achieved_at: datetime
    total_achievers: int


async def sync_catalog(db: AsyncSession, catalog: BadgeCatalog) -> int:
    """Upsert every catalog definition into the badges table. Returns the count."""
    for definition in catalog.definitions:
        values = {
            "name": definition.name,
            "description": definition.description,
            "requirement": definition.requirement,
            "category": definition.category.value,
            "rarity": definition.rarity.value,
            "threshold": definition.threshold,
        }
        stmt = dialect_insert(db, Badge).values(key=definition.key, **values)
        stmt = stmt.on_conflict_do_update(index_elements=["key"], set_=values)
        await db.execute(stmt)

    await db.commit()
    logger.info("Synchronised %d badges", len(catalog))
    return len(catalog)


async def get_user(db: AsyncSession, user_id: str) -> User | None:
    result = await db.execute(select(User).where(User.id == user_id))
    return result.scalar_one_or_none()


async def get_badge(db: AsyncSession, key: str) -> Badge | None:
    result = await db.execute(select(Badge).where(Badge.key == key))
    return result.scalar_one_or_none()


async def get_user_badges(db: AsyncSession, user_id: str) -> list[UserBadge]:
    """A user's badges, newest first."""
    result = await db.execute(
        select(UserBadge)
        .where(UserBadge.user_id == user_id)
        .order_by(UserBadge.earned_at.desc(), UserBadge.id.desc())
    )
    return list(result.scalars().unique())


async def get_awarded_badges(db: AsyncSession) -> list[HallOfFameEntry]:
    """Badges held by at least one user, with their first achiever.

    Sorted by when the badge was first achieved.
    """
    result = await db.execute(select(UserBadge).order_by(UserBadge.earned_at, UserBadge.id))
    entries: dict[int, list[UserBadge]] = {}
    for user_badge in result.scalars().unique():
        entries.setdefault(user_badge.badge_id, []).append(user_badge)

    # dicts keep insertion order, and rows arrive oldest first
    return [
        HallOfFameEntry(
            badge=holders[0].badge,
            first_achiever=holders[0].user,
            first_achieved_at=holders[0].earned_at,
            total_achievers=len(holders),
        )
        for holders in entries.values()
    ]


async def get_badge_holders(db: AsyncSession, key: str) -> list[UserBadge]:
    """Everyone holding a badge, earliest first. Raises BadgeNotFoundError."""
    badge = await get_badge(db, key)
    if badge is None:
        raise BadgeNotFoundError(key)
    result = await db.execute(
        select(UserBadge)
        .where(UserBadge.badge_id == badge.id)
        .order_by(UserBadge.earned_at, UserBadge.id)
    )
    return list(result.scalars().unique())


async def award_badge_manually(
    db: AsyncSession,
    redis: object | None,
    user_id: str,
    key: str,
    catalog: BadgeCatalog | None = None,
) -> tuple[UserBadge, bool]:
    """Award a badge outside of rule evaluation (admin use).

    Idempotent: returns the existing award with is_new=False when the user
    already holds the badge.
    """
    definition = (catalog or get_catalog()).get(key)
    if definition is None:
        raise BadgeNotFoundError(key)

    writer = AwardWriter(db, redis)
    try:
        award = await writer.insert_award_if_absent(user_id, definition, datetime.now(timezone.utc))
        await db.commit()
    except AwardPersistenceError:
        await db.rollback()
        raise
    except SQLAlchemyError as exc:
        await db.rollback()
        raise AwardPersistenceError(user_id, f"commit failed: {exc}") from exc

    if award.inserted:
        logger.info("Badge %s manually awarded to %s", key, user_id)
        await writer.publish([award])

    result = await db.execute(
        select(UserBadge)
        .join(Badge, Badge.id == UserBadge.badge_id)
        .where(UserBadge.user_id == user_id, Badge.key == key)
    )
    return result.scalars().unique().one(), award.inserted
