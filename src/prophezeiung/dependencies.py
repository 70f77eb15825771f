"""Shared FastAPI dependencies."""

import secrets

from fastapi import HTTPException, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from prophezeiung.badges.catalog import BadgeCatalog, get_catalog
from prophezeiung.config import get_settings
from prophezeiung.database import get_session as _get_session
from prophezeiung.redis_client import get_optional_redis

get_db = _get_session

_bearer = HTTPBearer(auto_error=False)


def get_redis_dep() -> object | None:
    """Redis client for best-effort badge notifications, or None."""
    return get_optional_redis()


def get_badge_catalog() -> BadgeCatalog:
    """The process-wide badge catalog."""
    return get_catalog()


async def require_admin(
    credentials: HTTPAuthorizationCredentials | None = Security(_bearer),  # noqa: B008
) -> None:
    """Accept only requests bearing the configured admin token. Raises 401/503."""
    token = get_settings().admin_api_token
    if not token:
        raise HTTPException(status_code=503, detail="Admin API is disabled")
    if credentials is None or not secrets.compare_digest(credentials.credentials, token):
        raise HTTPException(
            status_code=401,
            detail="Invalid admin token",
            headers={"WWW-Authenticate": "Bearer"},
        )
