"""Health, readiness, and version endpoints."""

from fastapi import APIRouter, Depends
from sqlalchemy import func, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from prophezeiung.config import get_settings
from prophezeiung.database import get_session
from prophezeiung.db.models import Badge
from prophezeiung.redis_client import get_optional_redis

router = APIRouter()


@router.get("/health")
async def health() -> dict[str, str]:
    """Liveness probe: 200 while the process is alive."""
    return {"status": "healthy"}


@router.get("/ready")
async def readiness(
    db: AsyncSession = Depends(get_session),  # noqa: B008
) -> dict[str, object]:
    """Readiness probe: database reachable, catalog synced, Redis reachable."""
    checks: dict[str, object] = {}

    try:
        await db.execute(text("SELECT 1"))
        synced = (await db.execute(select(func.count(Badge.id)))).scalar_one()
        checks["database"] = "ok"
        checks["badges"] = "ok" if synced else "error: catalog not synced"
    except Exception as exc:
        checks["database"] = f"error: {exc}"

    # Redis only carries notifications; without it the service still awards badges.
    redis = get_optional_redis()
    if redis is None:
        checks["redis"] = "disabled"
    else:
        try:
            await redis.ping()
            checks["redis"] = "ok"
        except Exception as exc:
            checks["redis"] = f"error: {exc}"

    all_ok = all(v in ("ok", "disabled") for v in checks.values())
    return {"status": "ready" if all_ok else "degraded", "checks": checks}


@router.get("/version")
async def version() -> dict[str, str]:
    """Return service version and environment."""
    settings = get_settings()
    return {
        "version": settings.app_version,
        "environment": settings.environment,
    }
