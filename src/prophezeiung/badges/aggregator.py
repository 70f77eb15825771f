"""Activity aggregator: reads every count the badge rules compare against."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass

from sqlalchemy import and_, func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from prophezeiung.badges.exceptions import AggregationError
from prophezeiung.config import get_settings
from prophezeiung.db.models import Authenticator, Prophecy, Rating, Round

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UserActivitySnapshot:
    """Point-in-time activity counts for one user. Never stored."""

    user_id: str
    prophecies_created: int = 0
    prophecies_fulfilled: int = 0
    ratings_given: int = 0
    ratings_on_resolved: int = 0
    rater_accuracy: float = 0.0  # 0-100
    rounds_participated: int = 0
    max_ratings_given: int = 0  # count of +10 ratings
    min_ratings_given: int = 0  # count of -10 ratings
    passkeys_registered: int = 0
    average_rating_given: float = 0.0  # -10..+10

    def metrics(self) -> dict[str, float]:
        """Metric name -> value, as referenced by catalog entries."""
        values = asdict(self)
        values.pop("user_id")
        return values


def _activity_statement(user_id: str):  # noqa: ANN202
    """One SELECT of scalar subqueries so all counts come from the same read."""
    own_prophecies = select(func.count(Prophecy.id)).where(Prophecy.creator_id == user_id)
    own_ratings = select(func.count(Rating.id)).where(Rating.user_id == user_id)
    resolved_ratings = own_ratings.join(Prophecy, Prophecy.id == Rating.prophecy_id).where(
        Prophecy.fulfilled.is_not(None)
    )
    # -10 = "will certainly happen", so a negative rating predicts fulfillment.
    correct_ratings = resolved_ratings.where(
        or_(
            and_(Rating.value < 0, Prophecy.fulfilled.is_(True)),
            and_(Rating.value >= 0, Prophecy.fulfilled.is_(False)),
        )
    )

    created_in_round = (
        select(Prophecy.id)
        .where(Prophecy.round_id == Round.id, Prophecy.creator_id == user_id)
        .exists()
    )
    rated_in_round = (
        select(Rating.id)
        .join(Prophecy, Prophecy.id == Rating.prophecy_id)
        .where(Prophecy.round_id == Round.id, Rating.user_id == user_id)
        .exists()
    )
    rounds = select(func.count(Round.id)).where(
        Round.results_published_at.is_not(None),
        or_(created_in_round, rated_in_round),
    )

    return select(
        own_prophecies.scalar_subquery().label("prophecies_created"),
        own_prophecies.where(Prophecy.fulfilled.is_(True)).scalar_subquery().label("prophecies_fulfilled"),
        own_ratings.scalar_subquery().label("ratings_given"),
        resolved_ratings.scalar_subquery().label("ratings_on_resolved"),
        correct_ratings.scalar_subquery().label("correct_ratings"),
        rounds.scalar_subquery().label("rounds_participated"),
        own_ratings.where(Rating.value == 10).scalar_subquery().label("max_ratings_given"),
        own_ratings.where(Rating.value == -10).scalar_subquery().label("min_ratings_given"),
        select(func.count(Authenticator.id))
        .where(Authenticator.user_id == user_id)
        .scalar_subquery()
        .label("passkeys_registered"),
        select(func.avg(Rating.value))
        .where(Rating.user_id == user_id)
        .scalar_subquery()
        .label("average_rating_given"),
    )


async def get_activity_snapshot(db: AsyncSession, user_id: str) -> UserActivitySnapshot:
    """Compute a user's activity snapshot. Raises AggregationError."""
    timeout = get_settings().badge_step_timeout_seconds
    try:
        result = await asyncio.wait_for(db.execute(_activity_statement(user_id)), timeout=timeout)
        row = result.one()
    except TimeoutError as exc:
        raise AggregationError(user_id, f"timed out after {timeout}s") from exc
    except (SQLAlchemyError, OSError) as exc:
        raise AggregationError(user_id, str(exc)) from exc

    on_resolved = int(row.ratings_on_resolved or 0)
    accuracy = (int(row.correct_ratings or 0) / on_resolved) * 100 if on_resolved else 0.0

    snapshot = UserActivitySnapshot(
        user_id=user_id,
        prophecies_created=int(row.prophecies_created or 0),
        prophecies_fulfilled=int(row.prophecies_fulfilled or 0),
        ratings_given=int(row.ratings_given or 0),
        ratings_on_resolved=on_resolved,
        rater_accuracy=accuracy,
        rounds_participated=int(row.rounds_participated or 0),
        max_ratings_given=int(row.max_ratings_given or 0),
        min_ratings_given=int(row.min_ratings_given or 0),
        passkeys_registered=int(row.passkeys_registered or 0),
        average_rating_given=float(row.average_rating_given or 0.0),
    )
    logger.debug("Activity snapshot for %s: %s", user_id, snapshot)
    return snapshot
