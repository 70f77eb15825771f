"""Integration: one evaluate-and-award pass against the database."""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone

import pytest
from sqlalchemy import Insert, func, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from prophezeiung.badges import aggregator, award_writer
from prophezeiung.badges.award_writer import AwardWriter
from prophezeiung.badges.engine import BadgeEngine
from prophezeiung.badges.exceptions import AggregationError, AwardPersistenceError
from prophezeiung.badges.round_results import RoundResultsAwarder
from prophezeiung.config import get_settings
from prophezeiung.db.models import UserBadge


async def _award_count(session_factory) -> int:
    async with session_factory() as db:
        return (await db.execute(select(func.count(UserBadge.id)))).scalar_one()


class TestEvaluateAndAward:
    @pytest.mark.asyncio
    async def test_nova_awarded_creator_1_and_5(self, db_session, factory, catalog):
        nova = await factory.user("nova")
        round_ = await factory.round()
        await factory.prophecies(nova, round_, 5)

        result = await BadgeEngine(db_session, None, catalog).evaluate_and_award(nova.id)

        assert result.badge_keys == ["creator_1", "creator_5"]
        assert {a.earned_at for a in result.newly_awarded} == {result.earned_at}

    @pytest.mark.asyncio
    async def test_second_pass_awards_nothing(self, db_session, factory, catalog):
        nova = await factory.user("nova")
        round_ = await factory.round()
        await factory.prophecies(nova, round_, 5)
        engine = BadgeEngine(db_session, None, catalog)

        await engine.evaluate_and_award(nova.id)
        second = await engine.evaluate_and_award(nova.id)

        assert second.newly_awarded == []

    @pytest.mark.asyncio
    async def test_new_tier_only_after_more_activity(self, db_session, factory, catalog):
        nova = await factory.user("nova")
        round_ = await factory.round()
        engine = BadgeEngine(db_session, None, catalog)

        await factory.prophecies(nova, round_, 5)
        await engine.evaluate_and_award(nova.id)
        await factory.prophecies(nova, round_, 10)
        result = await engine.evaluate_and_award(nova.id)

        assert result.badge_keys == ["creator_15"]

    @pytest.mark.asyncio
    async def test_badges_never_revoked(self, db_session, factory, catalog):
        user = await factory.user("uwe")
        engine = BadgeEngine(db_session, None, catalog)

        await factory.passkey(user)
        assert (await engine.evaluate_and_award(user.id)).badge_keys == ["special_passkey_pioneer"]
        await db_session.execute(text("DELETE FROM authenticators"))
        await db_session.commit()
        await engine.evaluate_and_award(user.id)

        held = await award_writer.get_awarded_badge_keys(db_session, user.id)
        assert held == {"special_passkey_pioneer"}

    @pytest.mark.asyncio
    async def test_social_and_threshold_rules_combined(self, db_session, factory, catalog):
        rater = await factory.user("rita")
        creator = await factory.user("carl")
        round_ = await factory.round()
        for prophecy in await factory.prophecies(creator, round_, 20):
            await factory.rating(prophecy, rater, -8)

        result = await BadgeEngine(db_session, None, catalog).evaluate_and_award(rater.id)

        assert "rater_10" in result.badge_keys
        assert "social_friendly" in result.badge_keys
        assert result.badge_keys.index("rater_10") < result.badge_keys.index("social_friendly")

    @pytest.mark.asyncio
    async def test_stale_held_badges_do_not_duplicate(self, db_session, factory, catalog, session_factory, monkeypatch):
        """A pass that reads held badges before a concurrent pass committed inserts nothing twice."""
        nova = await factory.user("nova")
        round_ = await factory.round()
        await factory.prophecies(nova, round_, 5)
        engine = BadgeEngine(db_session, None, catalog)
        await engine.evaluate_and_award(nova.id)
        before = await _award_count(session_factory)

        async def _stale(_db, _user_id):
            return set()

        monkeypatch.setattr(award_writer, "get_awarded_badge_keys", _stale)
        result = await engine.evaluate_and_award(nova.id)

        assert result.newly_awarded == []
        assert await _award_count(session_factory) == before == 2


class TestFailures:
    @pytest.mark.asyncio
    async def test_write_failure_rolls_back_whole_pass(
        self, db_session, factory, catalog, session_factory, monkeypatch
    ):
        nova = await factory.user("nova")
        round_ = await factory.round()
        await factory.prophecies(nova, round_, 5)

        original = AwardWriter._insert_row
        calls = 0

        async def _flaky(self, user_id, badge_id, earned_at):
            nonlocal calls
            calls += 1
            if calls == 2:
                raise AwardPersistenceError(user_id, "disk full")
            return await original(self, user_id, badge_id, earned_at)

        monkeypatch.setattr(AwardWriter, "_insert_row", _flaky)

        with pytest.raises(AwardPersistenceError):
            await BadgeEngine(db_session, None, catalog).evaluate_and_award(nova.id)

        assert await _award_count(session_factory) == 0

    @pytest.mark.asyncio
    async def test_retry_after_failure_awards_everything(self, db_session, factory, catalog, monkeypatch):
        nova = await factory.user("nova")
        uid = nova.id
        round_ = await factory.round()
        await factory.prophecies(nova, round_, 5)
        engine = BadgeEngine(db_session, None, catalog)

        async def _broken(self, user_id, badge_id, earned_at):
            raise AwardPersistenceError(user_id, "connection lost")

        with monkeypatch.context() as m:
            m.setattr(AwardWriter, "_insert_row", _broken)
            with pytest.raises(AwardPersistenceError):
                await engine.evaluate_and_award(uid)

        result = await engine.evaluate_and_award(uid)
        assert result.badge_keys == ["creator_1", "creator_5"]

    @pytest.mark.asyncio
    async def test_aggregation_failure_awards_nothing(self, db_session, factory, catalog, mock_redis, monkeypatch):
        nova = await factory.user("nova")
        monkeypatch.setattr(aggregator, "_activity_statement", lambda _uid: text("SELECT * FROM missing_table"))

        with pytest.raises(AggregationError):
            await BadgeEngine(db_session, mock_redis, catalog).evaluate_and_award(nova.id)

        mock_redis.publish.assert_not_awaited()


class TestNotifications:
    @pytest.mark.asyncio
    async def test_one_event_per_new_badge(self, db_session, factory, catalog, mock_redis):
        nova = await factory.user("nova")
        round_ = await factory.round()
        await factory.prophecies(nova, round_, 5)

        await BadgeEngine(db_session, mock_redis, catalog).evaluate_and_award(nova.id)

        payloads = [json.loads(call.args[1]) for call in mock_redis.publish.await_args_list]
        assert [p["badge_key"] for p in payloads] == ["creator_1", "creator_5"]
        assert all(p["user_id"] == nova.id for p in payloads)

    @pytest.mark.asyncio
    async def test_publish_failure_keeps_awards(self, db_session, factory, catalog, mock_redis):
        nova = await factory.user("nova")
        round_ = await factory.round()
        await factory.prophecy(nova, round_)
        mock_redis.publish.side_effect = ConnectionError("redis down")

        result = await BadgeEngine(db_session, mock_redis, catalog).evaluate_and_award(nova.id)

        assert result.badge_keys == ["creator_1"]
        assert await award_writer.get_awarded_badge_keys(db_session, nova.id) == {"creator_1"}


def _slow_down(m, *, inserts_only: bool = False, delay: float = 0.2) -> None:
    """Delay AsyncSession.execute so it overruns a short step timeout."""
    original = AsyncSession.execute

    async def _slow(self, statement, *args, **kwargs):
        if not inserts_only or isinstance(statement, Insert):
            await asyncio.sleep(delay)
        return await original(self, statement, *args, **kwargs)

    m.setattr(AsyncSession, "execute", _slow)


class TestStepTimeouts:
    @pytest.fixture(autouse=True)
    def _short_timeout(self, monkeypatch):
        monkeypatch.setenv("PROPH_BADGE_STEP_TIMEOUT_SECONDS", "0.05")
        get_settings.cache_clear()

    @pytest.mark.asyncio
    async def test_slow_read_fails_the_pass(
        self, db_session, factory, catalog, session_factory, mock_redis, monkeypatch
    ):
        nova = await factory.user("nova")
        uid = nova.id
        round_ = await factory.round()
        await factory.prophecies(nova, round_, 5)
        engine = BadgeEngine(db_session, mock_redis, catalog)
        with monkeypatch.context() as m:
            _slow_down(m)
            with pytest.raises(AggregationError, match="timed out after 0.05s"):
                await engine.evaluate_and_award(uid)

        assert await _award_count(session_factory) == 0
        mock_redis.publish.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_slow_insert_rolls_back(
        self, db_session, factory, catalog, session_factory, mock_redis, monkeypatch
    ):
        nova = await factory.user("nova")
        uid = nova.id
        round_ = await factory.round()
        await factory.prophecies(nova, round_, 5)
        engine = BadgeEngine(db_session, mock_redis, catalog)
        with monkeypatch.context() as m:
            _slow_down(m, inserts_only=True)
            with pytest.raises(AwardPersistenceError, match="insert timed out"):
                await engine.evaluate_and_award(uid)

        assert await _award_count(session_factory) == 0
        mock_redis.publish.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_slow_round_read_fails(self, db_session, factory, catalog, session_factory, monkeypatch):
        alice = await factory.user("alice")
        bob = await factory.user("bob")
        round_ = await factory.round(published_at=datetime(2026, 4, 1, 12, 0, tzinfo=timezone.utc))
        rid = round_.id
        prophecy = await factory.prophecy(alice, round_, fulfilled=True)
        await factory.rating(prophecy, bob, 4)
        awarder = RoundResultsAwarder(db_session, None, catalog)
        with monkeypatch.context() as m:
            _slow_down(m)
            with pytest.raises(AggregationError, match="timed out after 0.05s"):
                await awarder.award_round(rid)

        assert await _award_count(session_factory) == 0
