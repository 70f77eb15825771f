"""Badges awarded once a round's results are published.

Covers the leaderboard, per-round accuracy, bot comparisons and the
timing/behaviour badges that only make sense with a finished round. Round
threshold rules (accuracy_rate_*, leaderboard_champion_*) go through the same
generic comparison as user badges.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from prophezeiung.badges import award_writer
from prophezeiung.badges.award_writer import AwardInsertResult, AwardWriter
from prophezeiung.badges.catalog import BadgeCatalog, BadgeDefinition, get_catalog
from prophezeiung.badges.evaluator import qualifying_definitions
from prophezeiung.badges.exceptions import (
    AggregationError,
    AwardPersistenceError,
    BadgeError,
    RoundNotFoundError,
    RoundNotPublishedError,
)
from prophezeiung.config import get_settings
from prophezeiung.db.models import Prophecy, Rating, Round, User

logger = logging.getLogger(__name__)

LEADERBOARD_POSITION_BADGES = ("leaderboard_1", "leaderboard_2", "leaderboard_3")
SPEEDRUN_WINDOW = timedelta(minutes=10)
MORNING_GLORY_WINDOW = timedelta(hours=24)
HIGH_ODDS_AVERAGE = 5


@dataclass(frozen=True)
class RatingInfo:
    user_id: str
    value: int
    created_at: datetime
    is_bot: bool


@dataclass
class ProphecyRatings:
    """A prophecy with all of its ratings."""

    prophecy_id: str
    creator_id: str
    created_at: datetime
    fulfilled: bool | None
    ratings: list[RatingInfo] = field(default_factory=list)

    @property
    def average_rating(self) -> float | None:
        """Average human rating, ignoring bots and 0 ("no opinion") ratings."""
        values = [r.value for r in self.ratings if not r.is_bot and r.value != 0]
        if not values:
            return None
        return sum(values) / len(values)

    @property
    def is_controversial(self) -> bool:
        values = [r.value for r in self.ratings if not r.is_bot]
        return len(values) >= 2 and min(values) <= -10 and max(values) >= 10


@dataclass(frozen=True)
class RoundAwardResult:
    round_id: str
    earned_at: datetime
    newly_awarded: list[AwardInsertResult] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Pure round computations
# ---------------------------------------------------------------------------


def creator_scores(prophecies: Sequence[ProphecyRatings]) -> dict[str, float]:
    """Sum of average rating over each creator's accepted, fulfilled prophecies."""
    scores: dict[str, float] = defaultdict(float)
    for p in prophecies:
        avg = p.average_rating
        if avg is None or avg <= 0 or p.fulfilled is not True:
            continue
        scores[p.creator_id] += avg
    return dict(scores)


def creator_leaderboard(prophecies: Sequence[ProphecyRatings]) -> list[str]:
    """Creator ids by score, best first. Ties break on id for a stable order."""
    scores = creator_scores(prophecies)
    return [uid for uid, _ in sorted(scores.items(), key=lambda item: (-item[1], item[0]))]


def round_accuracy(prophecies: Sequence[ProphecyRatings], creator_id: str) -> tuple[int, float]:
    """(accepted count, accuracy rate 0-100) of a creator's accepted prophecies.

    Accepted means resolved with an average rating above 0, i.e. the
    community considered it unlikely.
    """
    accepted = [
        p
        for p in prophecies
        if p.creator_id == creator_id and p.fulfilled is not None and (p.average_rating or 0) > 0
    ]
    if not accepted:
        return 0, 0.0
    fulfilled = sum(1 for p in accepted if p.fulfilled is True)
    return len(accepted), fulfilled / len(accepted) * 100


def rater_accuracy(prophecies: Sequence[ProphecyRatings], user_id: str) -> float | None:
    """Share of the user's ratings on resolved prophecies that were right, or None."""
    correct = total = 0
    for p in prophecies:
        if p.fulfilled is None:
            continue
        for r in p.ratings:
            if r.user_id != user_id:
                continue
            total += 1
            if (r.value < 0) == p.fulfilled:
                correct += 1
    if total == 0:
        return None
    return correct / total * 100


def is_speedrunner(prophecies: Sequence[ProphecyRatings], user_id: str) -> bool:
    stamps = [
        r.created_at for p in prophecies for r in p.ratings if r.user_id == user_id and not r.is_bot
    ]
    if not stamps:
        return False
    return max(stamps) - min(stamps) < SPEEDRUN_WINDOW


def is_morning_glory(prophecies: Sequence[ProphecyRatings], user_id: str) -> bool:
    for p in prophecies:
        for r in p.ratings:
            if r.user_id == user_id and not r.is_bot:
                if timedelta(0) <= r.created_at - p.created_at <= MORNING_GLORY_WINDOW:
                    return True
    return False


def went_against_stream(prophecies: Sequence[ProphecyRatings], user_id: str) -> bool:
    """Rated against the sign of the crowd average and turned out right."""
    for p in prophecies:
        avg = p.average_rating
        if p.fulfilled is None or avg is None:
            continue
        rating = next((r for r in p.ratings if r.user_id == user_id), None)
        if rating is None or rating.value == 0:
            continue
        if (rating.value > 0) == (avg > 0):
            continue
        if (rating.value < 0) == p.fulfilled:
            return True
    return False


def is_chaos_agent(prophecies: Sequence[ProphecyRatings], creator_id: str) -> bool:
    own = [p for p in prophecies if p.creator_id == creator_id]
    return (
        any(p.fulfilled is True for p in own)
        and any(p.fulfilled is False for p in own)
        and any(p.is_controversial for p in own)
    )


# ---------------------------------------------------------------------------
# Awarder
# ---------------------------------------------------------------------------


class RoundResultsAwarder:
    """Awards every round-result badge for one published round, all-or-nothing."""

    def __init__(
        self,
        db: AsyncSession,
        redis: object | None = None,
        catalog: BadgeCatalog | None = None,
    ) -> None:
        self.db = db
        self.redis = redis
        self.catalog = catalog or get_catalog()
        self.settings = get_settings()

    async def _execute(self, subject: str, stmt):  # noqa: ANN001, ANN202
        timeout = self.settings.badge_step_timeout_seconds
        try:
            return await asyncio.wait_for(self.db.execute(stmt), timeout=timeout)
        except TimeoutError as exc:
            raise AggregationError(subject, f"timed out after {timeout}s") from exc
        except (SQLAlchemyError, OSError) as exc:
            raise AggregationError(subject, str(exc)) from exc

    async def _load_prophecies(
        self, subject: str, round_ids: Sequence[str]
    ) -> dict[str, list[ProphecyRatings]]:
        """Prophecies with ratings, grouped by round. Two queries regardless of round count."""
        by_round: dict[str, list[ProphecyRatings]] = {rid: [] for rid in round_ids}
        if not round_ids:
            return by_round

        result = await self._execute(
            subject,
            select(
                Prophecy.id, Prophecy.creator_id, Prophecy.round_id, Prophecy.created_at, Prophecy.fulfilled
            )
            .where(Prophecy.round_id.in_(round_ids))
            .order_by(Prophecy.created_at, Prophecy.id),
        )
        by_id: dict[str, ProphecyRatings] = {}
        for pid, creator_id, rid, created_at, fulfilled in result.all():
            info = ProphecyRatings(pid, creator_id, created_at, fulfilled)
            by_id[pid] = info
            by_round[rid].append(info)

        result = await self._execute(
            subject,
            select(Rating.prophecy_id, Rating.user_id, Rating.value, Rating.created_at, User.is_bot)
            .join(User, User.id == Rating.user_id)
            .join(Prophecy, Prophecy.id == Rating.prophecy_id)
            .where(Prophecy.round_id.in_(round_ids))
            .order_by(Rating.created_at, Rating.id),
        )
        for pid, user_id, value, created_at, is_bot in result.all():
            by_id[pid].ratings.append(RatingInfo(user_id, value, created_at, bool(is_bot)))
        return by_round

    async def _bot_ids(self, subject: str) -> dict[str, str]:
        usernames = [self.settings.reference_bot_username, self.settings.random_bot_username]
        result = await self._execute(
            subject, select(User.username, User.id).where(User.username.in_(usernames))
        )
        return dict(result.all())

    def _wins(self, rounds: dict[str, list[ProphecyRatings]], user_id: str) -> int:
        """Published rounds the user finished first in, this one included."""
        return sum(1 for prophecies in rounds.values() if creator_leaderboard(prophecies)[:1] == [user_id])

    def _is_underdog(
        self,
        rounds: dict[str, list[ProphecyRatings]],
        previous_round_ids: Sequence[str],
        user_id: str,
    ) -> bool:
        """Outside the top 3 (while competing) in each of the two previous published rounds."""
        if len(previous_round_ids) < 2:
            return False
        for rid in previous_round_ids:
            prophecies = rounds[rid]
            if not any(p.creator_id == user_id for p in prophecies):
                return False
            if user_id in creator_leaderboard(prophecies)[:3]:
                return False
        return True

    def _candidates(
        self,
        round_id: str,
        rounds: dict[str, list[ProphecyRatings]],
        previous_round_ids: Sequence[str],
        bots: dict[str, str],
    ) -> dict[str, set[str]]:
        """user_id -> keys of every round badge the user qualifies for."""
        prophecies = rounds[round_id]
        candidates: dict[str, set[str]] = defaultdict(set)

        leaderboard = creator_leaderboard(prophecies)
        for key, user_id in zip(LEADERBOARD_POSITION_BADGES, leaderboard):
            candidates[user_id].add(key)

        winner = leaderboard[0] if leaderboard else None
        round_rules = self.catalog.threshold_rules("round")
        for creator_id in {p.creator_id for p in prophecies}:
            accepted, rate = round_accuracy(prophecies, creator_id)
            metrics = {
                "round_accuracy_rate": rate,
                "round_accepted_prophecies": accepted,
                "leaderboard_wins": self._wins(rounds, creator_id) if creator_id == winner else 0,
            }
            candidates[creator_id].update(d.key for d in qualifying_definitions(metrics, (), round_rules))
            if is_chaos_agent(prophecies, creator_id):
                candidates[creator_id].add("special_chaos_agent")

        for p in prophecies:
            avg = p.average_rating
            if p.fulfilled is None or avg is None or avg <= HIGH_ODDS_AVERAGE:
                continue
            candidates[p.creator_id].add("special_unicorn" if p.fulfilled else "special_party_crasher")

        if winner is not None and self._is_underdog(rounds, previous_round_ids, winner):
            candidates[winner].add("special_underdog")

        reference_id = bots.get(self.settings.reference_bot_username)
        random_id = bots.get(self.settings.random_bot_username)
        reference_acc = rater_accuracy(prophecies, reference_id) if reference_id else None
        random_acc = rater_accuracy(prophecies, random_id) if random_id else None

        participants = {p.creator_id for p in prophecies}
        participants.update(r.user_id for p in prophecies for r in p.ratings if not r.is_bot)
        participants.difference_update(bots.values())
        for user_id in participants:
            accuracy = rater_accuracy(prophecies, user_id)
            if accuracy is not None and reference_acc is not None and accuracy > reference_acc:
                candidates[user_id].add("hidden_bot_beater")
            if accuracy and random_acc is not None and accuracy < random_acc:
                candidates[user_id].add("hidden_worse_than_random")
            if is_speedrunner(prophecies, user_id):
                candidates[user_id].add("time_speedrunner")
            if is_morning_glory(prophecies, user_id):
                candidates[user_id].add("time_morning_glory")
            if went_against_stream(prophecies, user_id):
                candidates[user_id].add("special_against_stream")

        return candidates

    async def award_round(self, round_id: str) -> RoundAwardResult:
        """Award all round-result badges for a published round.

        Raises RoundNotFoundError, RoundNotPublishedError, AggregationError
        or AwardPersistenceError. Nothing is committed on failure; the session
        is rolled back and the caller's loaded objects are expired.
        """
        subject = f"round {round_id}"
        earned_at = datetime.now(timezone.utc)
        writer = AwardWriter(self.db, self.redis)
        awarded: list[AwardInsertResult] = []
        try:
            result = await self._execute(
                subject, select(Round.id, Round.results_published_at).where(Round.id == round_id)
            )
            row = result.one_or_none()
            if row is None:
                raise RoundNotFoundError(round_id)
            cutoff = row.results_published_at
            if cutoff is None:
                raise RoundNotPublishedError(round_id)

            result = await self._execute(
                subject,
                select(Round.id, Round.results_published_at)
                .where(Round.results_published_at.is_not(None))
                .order_by(Round.results_published_at.desc(), Round.id),
            )
            # Rounds published later do not count towards this round's badges.
            published = [
                (rid, published_at)
                for rid, published_at in result.all()
                if published_at <= cutoff
            ]
            previous = [rid for rid, published_at in published if published_at < cutoff][:2]
            rounds = await self._load_prophecies(subject, [rid for rid, _ in published])
            bots = await self._bot_ids(subject)

            candidates = self._candidates(round_id, rounds, previous, bots)
            for user_id in sorted(candidates):
                held = await award_writer.get_awarded_badge_keys(self.db, user_id)
                definitions = sorted(
                    (
                        d
                        for key in candidates[user_id] - held
                        if (d := self.catalog.get(key)) is not None
                    ),
                    key=BadgeDefinition.sort_key,
                )
                awarded += await writer.write(user_id, definitions, earned_at)

            try:
                await self.db.commit()
            except SQLAlchemyError as exc:
                raise AwardPersistenceError(subject, f"commit failed: {exc}") from exc
        except BadgeError:
            await self.db.rollback()
            raise

        logger.info("Round %s: awarded %d badge(s)", round_id, len(awarded))
        await writer.publish(awarded)
        return RoundAwardResult(round_id=round_id, earned_at=earned_at, newly_awarded=awarded)
