"""FastAPI application for the profile onboarding service.

create_app() wires:
- the onboarding router under /api/v1
- error envelopes for APIError, request validation and rate limits
- security headers and CORS for the onboarding frontend
- a lifespan that runs the pending-sync worker (when degraded mode and
  PENDING_SYNC_INTERVAL_SECONDS allow it) and disposes the engines
- /health (process) and /health/ready (primary database reachable)
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from profile_onboarding.api.deps import DbSession
from profile_onboarding.api.v1.router import router as v1_router
from profile_onboarding.core import database
from profile_onboarding.core.config import settings
from profile_onboarding.core.errors import APIError, StorageUnavailableError
from profile_onboarding.core.rate_limiting import limiter, rate_limit_exceeded_handler
from profile_onboarding.core.responses import ErrorDetail, ErrorResponse
from profile_onboarding.services.pending_sync_reconciler import PendingSyncReconciler
from profile_onboarding.services.pending_sync_worker import PendingSyncWorker

logger = structlog.get_logger()

# Onboarding responses carry personal profile data.
_API_CACHE_CONTROL = "no-store, max-age=0"


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to every response.

    API paths also get Cache-Control: no-store; HSTS is production only.
    """

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        response = await call_next(request)

        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Content-Security-Policy"] = (
            "default-src 'none'; frame-ancestors 'none'"
        )
        if request.url.path.startswith("/api/"):
            response.headers["Cache-Control"] = _API_CACHE_CONTROL
        if settings.environment == "production":
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains"
            )
        return response


def _error_response(
    status_code: int, code: str, message: str, details: list | None = None
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(
            error=ErrorDetail(code=code, message=message, details=details)
        ).model_dump(),
    )


def api_error_handler(_request: Request, exc: APIError) -> JSONResponse:
    """Render an APIError with its own status code and error code."""
    return _error_response(exc.status_code, exc.code, exc.message, exc.details)


def validation_error_handler(
    _request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Render request schema errors as 400 VALIDATION_ERROR.

    Step field errors from the attribute registry are raised as APIError by
    the router; this handler only sees malformed request bodies and params.
    """
    return _error_response(
        400,
        "VALIDATION_ERROR",
        "Request validation failed",
        [
            {"loc": list(e["loc"]), "msg": e["msg"], "type": e["type"]}
            for e in exc.errors()
        ],
    )


def internal_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all: log and return 500 INTERNAL_ERROR without internals."""
    logger.exception("Unhandled exception", exc_info=exc, path=str(request.url.path))
    return _error_response(500, "INTERNAL_ERROR", "An unexpected error occurred")


def build_pending_sync_worker() -> PendingSyncWorker | None:
    """Worker for background reconciliation, or None when disabled.

    Only built when degraded mode is on; without it no pending records are
    ever written.
    """
    if (
        not settings.degraded_mode_enabled
        or settings.pending_sync_interval_seconds <= 0
    ):
        return None
    reconciler = PendingSyncReconciler(
        database.async_session_factory,
        max_attempts=settings.pending_sync_max_attempts,
    )
    return PendingSyncWorker(
        reconciler, interval_seconds=settings.pending_sync_interval_seconds
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Start the pending-sync worker; stop it and dispose engines on exit."""
    worker = build_pending_sync_worker()
    app.state.pending_sync_worker = worker
    logger.info(
        "app.startup",
        degraded_mode=settings.degraded_mode_enabled,
        privileged_path=database.privileged_session_factory is not None,
        pending_sync_worker=worker is not None,
    )
    if worker is not None:
        worker.start()
    try:
        yield
    finally:
        if worker is not None:
            await worker.stop()
        await database.dispose_engines()
        logger.info("app.shutdown")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application instance.
    """
    app = FastAPI(
        title="Profile Onboarding API",
        version="1.0.0",
        description="Multi-role profile onboarding and completion",
        lifespan=lifespan,
    )

    # Starlette runs the LAST added middleware FIRST; CORS must see preflight.
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Accept", "Authorization", "X-Request-ID"],
    )

    app.add_exception_handler(APIError, api_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
    app.add_exception_handler(Exception, internal_error_handler)

    app.state.limiter = limiter

    app.include_router(v1_router, prefix="/api/v1")

    @app.get("/health")
    def health_check() -> dict:
        """Process liveness."""
        return {"status": "healthy"}

    @app.get("/health/ready")
    async def readiness_check(db: DbSession) -> dict:
        """Primary database reachability.

        Raises:
            StorageUnavailableError: If the primary store cannot be queried.
        """
        try:
            await db.execute(text("SELECT 1"))
        except (SQLAlchemyError, OSError) as exc:
            logger.warning("health.not_ready", error=type(exc).__name__)
            raise StorageUnavailableError() from exc
        return {
            "status": "ready",
            "degraded_mode": settings.degraded_mode_enabled,
        }

    return app


# Used by uvicorn: uvicorn profile_onboarding.main:app
app = create_app()
