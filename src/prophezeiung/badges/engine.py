"""Badge engine: one evaluate-and-award pass per user."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from prophezeiung.badges import award_writer
from prophezeiung.badges.aggregator import get_activity_snapshot
from prophezeiung.badges.award_writer import AwardInsertResult, AwardWriter
from prophezeiung.badges.catalog import BadgeCatalog, BadgeDefinition, get_catalog
from prophezeiung.badges.evaluator import evaluate
from prophezeiung.badges.exceptions import AwardPersistenceError, BadgeError
from prophezeiung.badges.qualitative import evaluate_social

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EvaluationResult:
    """Badges newly awarded by one pass, in canonical order."""

    user_id: str
    earned_at: datetime
    newly_awarded: list[AwardInsertResult] = field(default_factory=list)

    @property
    def badge_keys(self) -> list[str]:
        return [a.badge_key for a in self.newly_awarded]


class BadgeEngine:
    """Evaluates a user's activity against the catalog and persists new awards.

    A pass is all-or-nothing: any failure rolls the session back and
    propagates, so a retried pass starts from committed state only.
    """

    def __init__(
        self,
        db: AsyncSession,
        redis: object | None = None,
        catalog: BadgeCatalog | None = None,
    ) -> None:
        self.db = db
        self.redis = redis
        self.catalog = catalog or get_catalog()

    async def evaluate_and_award(self, user_id: str) -> EvaluationResult:
        """Award every badge the user qualifies for and does not hold yet.

        On failure the session is rolled back, which also expires any ORM
        objects the caller loaded through it.
        """
        earned_at = datetime.now(timezone.utc)
        writer = AwardWriter(self.db, self.redis)
        try:
            snapshot = await get_activity_snapshot(self.db, user_id)
            held = await award_writer.get_awarded_badge_keys(self.db, user_id)

            qualifying: list[BadgeDefinition] = evaluate(snapshot, held, self.catalog)
            qualifying += evaluate_social(snapshot, held, self.catalog)
            qualifying.sort(key=BadgeDefinition.sort_key)

            awarded = await writer.write(user_id, qualifying, earned_at)
            try:
                await self.db.commit()
            except SQLAlchemyError as exc:
                raise AwardPersistenceError(user_id, f"commit failed: {exc}") from exc
        except BadgeError:
            await self.db.rollback()
            logger.exception("Badge evaluation failed for user %s", user_id)
            raise

        if awarded:
            keys = ", ".join(a.badge_key for a in awarded)
            logger.info("Awarded %d badge(s) to %s: %s", len(awarded), user_id, keys)
        await writer.publish(awarded)
        return EvaluationResult(user_id=user_id, earned_at=earned_at, newly_awarded=awarded)
