"""Shared dependencies for API endpoints.

Local-first mode uses DEFAULT_IDENTITY_ID; hosted mode validates the JWT
issued by the identity provider from an httpOnly cookie.
"""

import uuid
from typing import Annotated

import jwt
from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from profile_onboarding.core.config import settings
from profile_onboarding.core.database import (
    async_session_factory,
    get_db,
    privileged_session_factory,
)
from profile_onboarding.services.completion_coordinator import CompletionCoordinator
from profile_onboarding.services.pending_sync_reconciler import PendingSyncReconciler
from profile_onboarding.services.step_controller import Identity, StepController

# Generic 401 detail for every auth failure.
_UNAUTHORIZED_DETAIL = {
    "code": "UNAUTHORIZED",
    "message": "Authentication required",
}


def _unauthorized() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=_UNAUTHORIZED_DETAIL,
    )


async def get_current_identity(request: Request) -> Identity:
    """Resolve the current identity from auth context.

    Validation steps (hosted mode):
    1. Read JWT from cookie
    2. Decode + verify signature (HS256)
    3. Verify exp, aud, iss claims
    4. Extract sub as UUID and the optional email claim

    Args:
        request: HTTP request (injected by FastAPI).

    Returns:
        Identity of the caller.

    Raises:
        HTTPException: 401 for any auth failure.
    """
    if not settings.auth_enabled:
        if settings.default_identity_id is None:
            raise _unauthorized()
        return Identity(
            identity_id=settings.default_identity_id,
            email=settings.default_identity_email,
        )

    token = request.cookies.get(settings.auth_cookie_name)
    if not token:
        raise _unauthorized()

    try:
        payload = jwt.decode(
            token,
            settings.auth_secret.get_secret_value(),
            algorithms=["HS256"],
            audience=settings.auth_audience,
            issuer=settings.auth_issuer,
        )
        identity_id = uuid.UUID(payload["sub"])
    except (jwt.InvalidTokenError, KeyError, ValueError) as exc:
        raise _unauthorized() from exc

    email = payload.get("email")
    return Identity(
        identity_id=identity_id,
        email=email if isinstance(email, str) else None,
    )


def get_step_controller() -> StepController:
    """Build the step controller wired to the configured session factories.

    Returns:
        StepController with tiered completion and degraded reconciliation.
    """
    coordinator = CompletionCoordinator(
        async_session_factory,
        privileged_session_factory=privileged_session_factory,
        degraded_mode_enabled=settings.degraded_mode_enabled,
    )
    reconciler = PendingSyncReconciler(
        async_session_factory,
        max_attempts=settings.pending_sync_max_attempts,
    )
    return StepController(async_session_factory, coordinator, reconciler=reconciler)


CurrentIdentity = Annotated[Identity, Depends(get_current_identity)]
DbSession = Annotated[AsyncSession, Depends(get_db)]
Controller = Annotated[StepController, Depends(get_step_controller)]
