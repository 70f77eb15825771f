"""Award persistence with atomic duplicate prevention, plus award notifications."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from prophezeiung.badges.catalog import BadgeDefinition
from prophezeiung.badges.exceptions import AggregationError, AwardPersistenceError
from prophezeiung.config import get_settings
from prophezeiung.database import dialect_insert
from prophezeiung.db.models import Badge, UserBadge

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AwardInsertResult:
    """Outcome of one insert-if-absent. inserted=False means the award already existed."""

    user_id: str
    definition: BadgeDefinition
    earned_at: datetime
    inserted: bool

    @property
    def badge_key(self) -> str:
        return self.definition.key


async def get_awarded_badge_keys(db: AsyncSession, user_id: str) -> set[str]:
    """Keys of all badges the user already holds."""
    timeout = get_settings().badge_step_timeout_seconds
    stmt = (
        select(Badge.key)
        .join(UserBadge, UserBadge.badge_id == Badge.id)
        .where(UserBadge.user_id == user_id)
    )
    try:
        result = await asyncio.wait_for(db.execute(stmt), timeout=timeout)
    except TimeoutError as exc:
        raise AggregationError(user_id, f"reading held badges timed out after {timeout}s") from exc
    except (SQLAlchemyError, OSError) as exc:
        raise AggregationError(user_id, str(exc)) from exc
    return set(result.scalars())


class AwardWriter:
    """Writes awards for one session. The caller owns commit and rollback."""

    def __init__(self, db: AsyncSession, redis: object | None = None) -> None:
        self.db = db
        self.redis = redis
        self._timeout = get_settings().badge_step_timeout_seconds

    async def _badge_ids(self, user_id: str, keys: Sequence[str]) -> dict[str, int]:
        try:
            result = await asyncio.wait_for(
                self.db.execute(select(Badge.key, Badge.id).where(Badge.key.in_(keys))),
                timeout=self._timeout,
            )
        except TimeoutError as exc:
            raise AwardPersistenceError(user_id, "badge lookup timed out") from exc
        except (SQLAlchemyError, OSError) as exc:
            raise AwardPersistenceError(user_id, str(exc)) from exc

        ids = {key: badge_id for key, badge_id in result.all()}
        missing = [k for k in keys if k not in ids]
        if missing:
            msg = f"badges missing from database (catalog not synced?): {', '.join(missing)}"
            raise AwardPersistenceError(user_id, msg)
        return ids

    async def _insert_row(self, user_id: str, badge_id: int, earned_at: datetime) -> bool:
        stmt = (
            dialect_insert(self.db, UserBadge)
            .values(user_id=user_id, badge_id=badge_id, earned_at=earned_at)
            .on_conflict_do_nothing(index_elements=["user_id", "badge_id"])
            .returning(UserBadge.id)
        )
        try:
            result = await asyncio.wait_for(self.db.execute(stmt), timeout=self._timeout)
        except TimeoutError as exc:
            raise AwardPersistenceError(user_id, "insert timed out") from exc
        except (SQLAlchemyError, OSError) as exc:
            raise AwardPersistenceError(user_id, str(exc)) from exc
        # No returned row: the (user_id, badge_id) pair already existed.
        return result.scalar_one_or_none() is not None

    async def insert_award_if_absent(
        self,
        user_id: str,
        definition: BadgeDefinition,
        earned_at: datetime,
    ) -> AwardInsertResult:
        """Insert one award atomically. A uniqueness conflict is a no-op."""
        ids = await self._badge_ids(user_id, [definition.key])
        inserted = await self._insert_row(user_id, ids[definition.key], earned_at)
        if not inserted:
            logger.debug("Badge %s already held by %s", definition.key, user_id)
        return AwardInsertResult(user_id, definition, earned_at, inserted)

    async def write(
        self,
        user_id: str,
        definitions: Sequence[BadgeDefinition],
        earned_at: datetime,
    ) -> list[AwardInsertResult]:
        """Insert all awards stamped with ``earned_at``. Returns only the new ones."""
        if not definitions:
            return []
        ids = await self._badge_ids(user_id, [d.key for d in definitions])
        awarded: list[AwardInsertResult] = []
        for definition in definitions:
            if await self._insert_row(user_id, ids[definition.key], earned_at):
                awarded.append(AwardInsertResult(user_id, definition, earned_at, True))
            else:
                logger.info("Badge %s for %s was awarded concurrently", definition.key, user_id)
        return awarded

    async def publish(self, awards: Iterable[AwardInsertResult]) -> None:
        """Emit one badge-awarded event per new award. Best-effort."""
        if self.redis is None:
            return
        channel = get_settings().badge_channel
        for award in awards:
            if not award.inserted:
                continue
            try:
                await self.redis.publish(  # type: ignore[attr-defined]
                    channel,
                    json.dumps({
                        "user_id": award.user_id,
                        "badge_key": award.badge_key,
                        "earned_at": award.earned_at.isoformat(),
                        "name": award.definition.name,
                        "rarity": award.definition.rarity.value,
                    }),
                )
            except Exception:
                logger.warning("Failed to publish badge_awarded notification", exc_info=True)
