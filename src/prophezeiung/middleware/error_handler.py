"""Global error handlers: consistent JSON error responses."""

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from prophezeiung.badges.exceptions import (
    AggregationError,
    AwardPersistenceError,
    BadgeError,
    BadgeNotFoundError,
)

logger = structlog.get_logger()


def _badge_error_status(exc: BadgeError) -> int:
    if isinstance(exc, BadgeNotFoundError):
        return 404
    if isinstance(exc, (AggregationError, AwardPersistenceError)):
        return 503
    return 500


def setup_error_handlers(app: FastAPI) -> None:
    """Register global exception handlers."""

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(_request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(_request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=422,
            content={"detail": "Validation error", "errors": exc.errors()},
        )

    @app.exception_handler(BadgeError)
    async def badge_exception_handler(request: Request, exc: BadgeError) -> JSONResponse:
        """Badge errors not translated by a route (e.g. raised from a dependency)."""
        status = _badge_error_status(exc)
        logger.warning("badge_error", path=request.url.path, error=str(exc), status=status)
        return JSONResponse(status_code=status, content={"detail": str(exc)})

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Catch-all for unhandled exceptions, always JSON."""
        logger.error(
            "unhandled_exception",
            path=request.url.path,
            method=request.method,
            error=str(exc),
            exc_info=exc,
        )
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"},
        )
