"""Standalone runner for the badge evaluation consumer.

Reads activity events from Redis Streams and runs one evaluate-and-award
pass per event. Messages are acknowledged only after the pass committed;
a failed pass leaves the message pending. Pending entries are drained at
start and again every badge_pending_retry_seconds. Round events that can
never succeed (unknown or unpublished round) are acknowledged and logged.

Usage: python -m prophezeiung.workers.badge_runner
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import time
from collections.abc import Mapping

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from prophezeiung.badges.catalog import BadgeCatalog, get_catalog
from prophezeiung.badges.engine import BadgeEngine
from prophezeiung.badges.exceptions import RoundNotFoundError, RoundNotPublishedError
from prophezeiung.badges.round_results import RoundResultsAwarder
from prophezeiung.badges.service import sync_catalog
from prophezeiung.config import get_settings
from prophezeiung.database import close_db, get_session_factory, init_db
from prophezeiung.middleware.logging import setup_logging
from prophezeiung.redis_client import close_redis, get_redis, init_redis

logger = logging.getLogger(__name__)

CONSUMER_GROUP = "badge-evaluators"

USER_STREAMS = [
    "activity:prophecy_created",
    "activity:rating_submitted",
    "activity:prophecy_resolved",
]
ROUND_STREAM = "activity:round_published"
STREAMS = [*USER_STREAMS, ROUND_STREAM]

_running = True


def _stream_name(stream: str | bytes) -> str:
    return stream if isinstance(stream, str) else stream.decode()


def parse_event(raw_data: Mapping[str, str]) -> dict[str, str]:
    """Event fields, either flat or JSON-encoded under "data"."""
    data_str = raw_data.get("data")
    if isinstance(data_str, str):
        try:
            data = json.loads(data_str)
        except json.JSONDecodeError:
            return dict(raw_data)
        if isinstance(data, dict):
            return {k: str(v) for k, v in data.items()}
    return dict(raw_data)


async def handle_event(
    session_factory: async_sessionmaker[AsyncSession],
    redis_client: object | None,
    catalog: BadgeCatalog,
    stream: str,
    data: Mapping[str, str],
) -> list[str]:
    """Process one event. Returns awarded badge keys; raises on failure."""
    async with session_factory() as db:
        if stream == ROUND_STREAM:
            round_id = data.get("round_id")
            if not round_id:
                logger.warning("Event on %s without round_id, skipping", stream)
                return []
            result = await RoundResultsAwarder(db, redis_client, catalog).award_round(round_id)
        else:
            user_id = data.get("user_id")
            if not user_id:
                logger.warning("Event on %s without user_id, skipping", stream)
                return []
            result = await BadgeEngine(db, redis_client, catalog).evaluate_and_award(user_id)
    return [a.badge_key for a in result.newly_awarded]


async def process_messages(
    redis_client: aioredis.Redis,
    session_factory: async_sessionmaker[AsyncSession],
    catalog: BadgeCatalog,
    events: list,
) -> int:
    """Handle one XREADGROUP batch. Returns the number of acknowledged messages."""
    acked = 0
    for stream_name, messages in events:
        stream_str = _stream_name(stream_name)

        for msg_id, raw_data in messages:
            try:
                awarded = await handle_event(
                    session_factory, redis_client, catalog, stream_str, parse_event(raw_data or {})
                )
            except (RoundNotFoundError, RoundNotPublishedError) as e:
                # Retrying cannot change the outcome.
                logger.warning("Dropping %s from %s: %s", msg_id, stream_str, e)
                awarded = []
            except Exception:
                logger.exception("Failed to process %s from %s, leaving it pending", msg_id, stream_str)
                continue

            if awarded:
                logger.info("Awarded badges: %s (stream=%s, event=%s)", awarded, stream_str, msg_id)
            await redis_client.xack(stream_str, CONSUMER_GROUP, msg_id)
            acked += 1
    return acked


async def drain_pending(
    redis_client: aioredis.Redis,
    session_factory: async_sessionmaker[AsyncSession],
    catalog: BadgeCatalog,
    consumer_name: str,
    batch_size: int = 100,
) -> int:
    """Retry every entry delivered to this consumer but never acknowledged.

    Reads the pending list batch by batch, continuing after the last id of
    each batch, so entries that fail again do not stall the drain.
    Returns the number of acknowledged messages.
    """
    # "0" starts at the oldest pending entry.
    cursors = {s: "0" for s in STREAMS}
    acked = 0
    while cursors:
        pending = await redis_client.xreadgroup(
            groupname=CONSUMER_GROUP,
            consumername=consumer_name,
            streams=cursors,
            count=batch_size,
        )
        if not pending:
            break
        acked += await process_messages(redis_client, session_factory, catalog, pending)
        cursors = {_stream_name(stream): messages[-1][0] for stream, messages in pending if messages}

    if acked:
        logger.info("Recovered %d pending message(s)", acked)
    return acked


async def consume(
    redis_client: aioredis.Redis,
    session_factory: async_sessionmaker[AsyncSession],
    catalog: BadgeCatalog,
    consumer_name: str,
) -> None:
    """Main consumer loop: drain this consumer's pending entries, then read new ones."""
    retry_every = get_settings().badge_pending_retry_seconds
    await drain_pending(redis_client, session_factory, catalog, consumer_name)
    last_drain = time.monotonic()

    streams = {s: ">" for s in STREAMS}
    while _running:
        if time.monotonic() - last_drain >= retry_every:
            await drain_pending(redis_client, session_factory, catalog, consumer_name)
            last_drain = time.monotonic()

        try:
            events = await redis_client.xreadgroup(
                groupname=CONSUMER_GROUP,
                consumername=consumer_name,
                streams=streams,
                count=100,
                block=5000,
            )
        except aioredis.ResponseError as e:
            logger.error("XREADGROUP error: %s", e)
            await asyncio.sleep(1)
            continue

        if events:
            await process_messages(redis_client, session_factory, catalog, events)


async def ensure_groups(redis_client: aioredis.Redis) -> None:
    """Create the consumer group on every stream (idempotent)."""
    for stream in STREAMS:
        try:
            await redis_client.xgroup_create(stream, CONSUMER_GROUP, id="0", mkstream=True)
            logger.info("Created consumer group %s for %s", CONSUMER_GROUP, stream)
        except aioredis.ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise


async def main() -> None:
    """Run the badge consumer."""
    settings = get_settings()
    setup_logging(settings)
    catalog = get_catalog()

    await init_db(settings.database_url)
    session_factory = get_session_factory()
    async with session_factory() as db:
        await sync_catalog(db, catalog)

    await init_redis(settings.redis_url)
    redis_client = get_redis()
    await ensure_groups(redis_client)

    loop = asyncio.get_running_loop()

    def _stop() -> None:
        global _running  # noqa: PLW0603
        _running = False

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _stop)

    logger.info("Starting badge consumer (consumer=%s)", settings.badge_consumer_name)

    try:
        await consume(redis_client, session_factory, catalog, settings.badge_consumer_name)
    finally:
        await close_redis()
        await close_db()
        logger.info("Badge consumer stopped")


if __name__ == "__main__":
    asyncio.run(main())
