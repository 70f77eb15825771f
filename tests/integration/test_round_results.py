"""Integration: badges awarded when a round's results are published."""

from __future__ import annotations

from collections import defaultdict
from datetime import datetime, timedelta, timezone

import pytest

from prophezeiung.badges.exceptions import RoundNotFoundError, RoundNotPublishedError
from prophezeiung.badges.round_results import RoundResultsAwarder

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
PUBLISHED = T0 + timedelta(days=30)


def _by_user(result) -> dict[str, set[str]]:
    awards: dict[str, set[str]] = defaultdict(set)
    for a in result.newly_awarded:
        awards[a.user_id].add(a.badge_key)
    return dict(awards)


@pytest.fixture
def published_round(factory):
    """One published round with creators, raters and both bots."""

    async def _build():
        alice = await factory.user("alice")
        bob = await factory.user("bob")
        carol = await factory.user("carol")
        dave = await factory.user("dave")
        kimberly = await factory.user("kimberly", is_bot=True)
        randolf = await factory.user("randolf", is_bot=True)
        round_ = await factory.round("Runde 1", published_at=PUBLISHED)

        alice_p = [
            await factory.prophecy(alice, round_, fulfilled=fulfilled, created_at=T0)
            for fulfilled in (True, True, True, True, False)
        ]
        bob_p = await factory.prophecy(bob, round_, fulfilled=True, created_at=T0)
        carol_p = await factory.prophecy(carol, round_, fulfilled=False, created_at=T0)

        # dave rates everything on day two, spread over an hour
        late = T0 + timedelta(days=2)
        for i, (prophecy, value) in enumerate([*((p, 3) for p in alice_p), (bob_p, 8), (carol_p, 10)]):
            await factory.rating(prophecy, dave, value, created_at=late + timedelta(minutes=10 * i))
        await factory.rating(carol_p, bob, 4, created_at=T0 + timedelta(hours=1))

        await factory.rating(alice_p[0], kimberly, 5, created_at=T0 + timedelta(hours=2))  # wrong
        await factory.rating(carol_p, randolf, 1, created_at=T0 + timedelta(hours=2))  # right

        users = {"alice": alice, "bob": bob, "carol": carol, "dave": dave}
        return round_, users

    return _build


class TestAwardRound:
    @pytest.mark.asyncio
    async def test_round_badges(self, db_session, catalog, published_round):
        round_, users = await published_round()

        result = await RoundResultsAwarder(db_session, None, catalog).award_round(round_.id)
        awards = _by_user(result)

        assert awards[users["alice"].id] == {"leaderboard_1", "accuracy_rate_60", "accuracy_rate_75"}
        assert awards[users["bob"].id] == {
            "leaderboard_2",
            "special_unicorn",
            "hidden_bot_beater",
            "time_speedrunner",
            "time_morning_glory",
        }
        assert awards[users["carol"].id] == {"special_party_crasher"}
        assert awards[users["dave"].id] == {"hidden_bot_beater", "hidden_worse_than_random"}
        assert len(awards) == 4

    @pytest.mark.asyncio
    async def test_bots_receive_nothing(self, db_session, catalog, published_round):
        round_, users = await published_round()
        result = await RoundResultsAwarder(db_session, None, catalog).award_round(round_.id)
        assert set(_by_user(result)) == {u.id for u in users.values()}

    @pytest.mark.asyncio
    async def test_second_call_awards_nothing(self, db_session, catalog, published_round):
        round_, _ = await published_round()
        awarder = RoundResultsAwarder(db_session, None, catalog)

        await awarder.award_round(round_.id)
        again = await awarder.award_round(round_.id)

        assert again.newly_awarded == []

    @pytest.mark.asyncio
    async def test_notifications_after_commit(self, db_session, catalog, mock_redis, published_round):
        round_, _ = await published_round()
        result = await RoundResultsAwarder(db_session, mock_redis, catalog).award_round(round_.id)
        assert mock_redis.publish.await_count == len(result.newly_awarded)

    @pytest.mark.asyncio
    async def test_unknown_round(self, db_session, catalog):
        with pytest.raises(RoundNotFoundError):
            await RoundResultsAwarder(db_session, None, catalog).award_round("missing")

    @pytest.mark.asyncio
    async def test_unpublished_round(self, db_session, factory, catalog):
        round_ = await factory.round("Offen")
        rid = round_.id
        with pytest.raises(RoundNotPublishedError) as exc_info:
            await RoundResultsAwarder(db_session, None, catalog).award_round(rid)
        assert exc_info.value.round_id == rid


class TestAcrossRounds:
    @pytest.mark.asyncio
    async def test_champion_after_three_wins(self, db_session, factory, catalog):
        alice = await factory.user("alice")
        bob = await factory.user("bob")
        awarder = RoundResultsAwarder(db_session, None, catalog)

        for n in range(1, 4):
            round_ = await factory.round(f"Runde {n}", published_at=PUBLISHED + timedelta(days=n))
            prophecy = await factory.prophecy(alice, round_, fulfilled=True)
            await factory.rating(prophecy, bob, 3)
            result = await awarder.award_round(round_.id)
            keys = _by_user(result).get(alice.id, set())
            if n < 3:
                assert "leaderboard_champion_3" not in keys

        assert "leaderboard_champion_3" in keys

    @pytest.mark.asyncio
    async def test_later_rounds_do_not_count_as_wins(self, db_session, factory, catalog):
        alice = await factory.user("alice")
        bob = await factory.user("bob")
        rounds = []
        for n in range(1, 4):
            round_ = await factory.round(f"Runde {n}", published_at=PUBLISHED + timedelta(days=n))
            prophecy = await factory.prophecy(alice, round_, fulfilled=True)
            await factory.rating(prophecy, bob, 3)
            rounds.append(round_)

        result = await RoundResultsAwarder(db_session, None, catalog).award_round(rounds[0].id)

        assert "leaderboard_champion_3" not in _by_user(result)[alice.id]

    @pytest.mark.asyncio
    async def test_underdog(self, db_session, factory, catalog):
        alice = await factory.user("alice")
        bob = await factory.user("bob")
        carol = await factory.user("carol")
        awarder = RoundResultsAwarder(db_session, None, catalog)

        for n in (1, 2):
            round_ = await factory.round(f"Runde {n}", published_at=PUBLISHED + timedelta(days=n))
            winner = await factory.prophecy(alice, round_, fulfilled=True)
            flop = await factory.prophecy(bob, round_, fulfilled=False)
            await factory.rating(winner, carol, 5)
            await factory.rating(flop, carol, 3)
            await awarder.award_round(round_.id)

        round_ = await factory.round("Runde 3", published_at=PUBLISHED + timedelta(days=3))
        comeback = await factory.prophecy(bob, round_, fulfilled=True)
        await factory.rating(comeback, carol, 5)

        result = await awarder.award_round(round_.id)

        assert "special_underdog" in _by_user(result)[bob.id]

    @pytest.mark.asyncio
    async def test_no_underdog_without_two_previous_rounds(self, db_session, factory, catalog):
        bob = await factory.user("bob")
        carol = await factory.user("carol")
        round_ = await factory.round("Runde 1", published_at=PUBLISHED)
        prophecy = await factory.prophecy(bob, round_, fulfilled=True)
        await factory.rating(prophecy, carol, 5)

        result = await RoundResultsAwarder(db_session, None, catalog).award_round(round_.id)

        assert "special_underdog" not in _by_user(result)[bob.id]
