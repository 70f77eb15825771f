"""Retroactive badge evaluation for existing users.

Syncs the catalog, then runs one evaluate-and-award pass for every approved
user. Safe to re-run: users only receive badges they do not hold yet.

Usage: python -m prophezeiung.workers.retroactive
"""

from __future__ import annotations

import asyncio
import logging
import sys

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from prophezeiung.badges.catalog import BadgeCatalog, get_catalog
from prophezeiung.badges.engine import BadgeEngine
from prophezeiung.badges.exceptions import BadgeError
from prophezeiung.badges.service import sync_catalog
from prophezeiung.config import get_settings
from prophezeiung.database import close_db, get_session_factory, init_db
from prophezeiung.db.models import User
from prophezeiung.middleware.logging import setup_logging

logger = logging.getLogger(__name__)


async def run_retroactive(
    session_factory: async_sessionmaker[AsyncSession],
    catalog: BadgeCatalog,
    redis_client: object | None = None,
) -> tuple[int, int]:
    """Evaluate all approved users. Returns (badges awarded, users that failed)."""
    async with session_factory() as db:
        await sync_catalog(db, catalog)
        result = await db.execute(
            select(User.id, User.username).where(User.status == "APPROVED").order_by(User.username)
        )
        users = result.all()
    logger.info("Evaluating %d approved users", len(users))

    total = failed = 0
    for user_id, username in users:
        async with session_factory() as db:
            try:
                evaluation = await BadgeEngine(db, redis_client, catalog).evaluate_and_award(user_id)
            except BadgeError:
                failed += 1
                continue
        count = len(evaluation.newly_awarded)
        if count:
            logger.info("%s: %d new badge(s): %s", username, count, ", ".join(evaluation.badge_keys))
            total += count

    logger.info("Done: %d badge(s) awarded, %d user(s) failed", total, failed)
    return total, failed


async def main() -> int:
    settings = get_settings()
    setup_logging(settings)
    catalog = get_catalog()

    await init_db(settings.database_url)
    try:
        _, failed = await run_retroactive(get_session_factory(), catalog)
    finally:
        await close_db()
    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
