"""Per-identity rate limits for onboarding submissions (slowapi).

Step submissions share RATE_LIMIT_ONBOARDING; /complete has its own, lower
RATE_LIMIT_COMPLETION because one completion may try the primary store, the
privileged store and the degraded store in turn.

Limits are keyed on the identity the request will act for:
- hosted mode: the JWT subject ("identity:{uuid}")
- local mode: DEFAULT_IDENTITY_ID when configured
- otherwise the client address ("addr:{ip}")
"""

import uuid

import jwt
from fastapi import Request, Response
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.responses import JSONResponse

from profile_onboarding.core.config import settings
from profile_onboarding.core.responses import ErrorDetail, ErrorResponse

_DEFAULT_RETRY_AFTER_SECONDS = 60


def _token_subject(request: Request) -> uuid.UUID | None:
    """Identity in the session cookie, or None if absent or invalid.

    Full validation (and the 401) happens in api/deps.py.
    """
    token = request.cookies.get(settings.auth_cookie_name)
    if not token:
        return None
    try:
        payload = jwt.decode(
            token,
            settings.auth_secret.get_secret_value(),
            algorithms=["HS256"],
            audience=settings.auth_audience,
            issuer=settings.auth_issuer,
        )
        return uuid.UUID(payload["sub"])
    except (jwt.InvalidTokenError, KeyError, ValueError, TypeError):
        return None


def identity_rate_limit_key(request: Request) -> str:
    """Rate limit key for the identity behind a request."""
    if settings.auth_enabled:
        identity_id = _token_subject(request)
    else:
        identity_id = settings.default_identity_id
    if identity_id is not None:
        return f"identity:{identity_id}"
    return f"addr:{get_remote_address(request)}"


# In-memory storage; set RATELIMIT_STORAGE_URL for limits shared across
# instances.
limiter = Limiter(
    key_func=identity_rate_limit_key,
    enabled=settings.rate_limit_enabled,
)


def _retry_after(exc: RateLimitExceeded) -> int:
    """Seconds in the exceeded limit's window."""
    try:
        return int(exc.limit.limit.get_expiry())
    except (AttributeError, TypeError, ValueError):
        return _DEFAULT_RETRY_AFTER_SECONDS


def rate_limit_exceeded_handler(
    _request: Request,
    exc: RateLimitExceeded,
) -> Response:
    """Render 429 RATE_LIMITED in the error envelope with Retry-After."""
    return JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                code="RATE_LIMITED",
                message=f"Too many onboarding requests: {exc.detail}",
            )
        ).model_dump(),
        headers={"Retry-After": str(_retry_after(exc))},
    )
