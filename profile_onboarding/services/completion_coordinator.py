"""Completion transaction coordinator.

Turns a validated (base, extension) pair into a completed profile. Three
tiers are tried in order:

1. Primary: identity-scoped session; row-level security applies.
2. Privileged: tried exactly once, and only when the primary path was
   refused for authorization reasons and a privileged session factory is
   configured. Ownership is re-asserted by the repository.
3. Degraded: when degraded mode is enabled, the completion is stored in
   pending_profile_syncs and reported as Degraded rather than Success.

Non-authorization failures (constraint violations, role conflicts, storage
outages) never fall through to the next tier; they end in Failure.
"""

import logging
import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from profile_onboarding.core.enums import ProfileRole
from profile_onboarding.core.errors import APIError, StoreAuthorizationError
from profile_onboarding.core.identity_scope import apply_identity_scope
from profile_onboarding.repositories.draft_repository import DraftRepository
from profile_onboarding.repositories.pending_sync_repository import (
    PendingSyncRepository,
    payload_hash,
)
from profile_onboarding.repositories.profile_repository import (
    ProfileRepository,
    store_errors,
)

logger = logging.getLogger(__name__)

SUCCESS_MESSAGE = "Profile completed successfully."
DEGRADED_MESSAGE = (
    "Your profile has been saved in temporary mode; "
    "we'll sync it fully once our systems are stable."
)
_ACCESS_DENIED_REASON = (
    "Your profile could not be saved because access was denied. "
    "Please try again later."
)


class CompletionStatus(str, Enum):
    """Result category of a completion attempt."""

    SUCCESS = "success"
    DEGRADED = "degraded"
    FAILURE = "failure"


class CompletionPath(str, Enum):
    """Which tier produced the outcome."""

    PRIMARY = "primary"
    PRIVILEGED = "privileged"
    DEGRADED = "degraded"


@dataclass(frozen=True)
class CompletionOutcome:
    """Outcome of CompletionCoordinator.complete().

    Attributes:
        status: Success, Degraded or Failure.
        path: Tier that produced the outcome (None for early failures).
        reason: Failure reason or degraded cause.
        pending_sync_id: Degraded record id, for Degraded outcomes.
    """

    status: CompletionStatus
    path: CompletionPath | None = None
    reason: str | None = None
    pending_sync_id: uuid.UUID | None = None

    @property
    def completed(self) -> bool:
        """Whether the identity may proceed past onboarding."""
        return self.status is not CompletionStatus.FAILURE

    @property
    def message(self) -> str:
        """User-facing message; distinct per status."""
        if self.status is CompletionStatus.SUCCESS:
            return SUCCESS_MESSAGE
        if self.status is CompletionStatus.DEGRADED:
            return DEGRADED_MESSAGE
        return self.reason or _ACCESS_DENIED_REASON


class CompletionCoordinator:
    """Runs the tiered completion transaction.

    Args:
        session_factory: Primary async session factory.
        privileged_session_factory: Factory for the privileged role, or None
            when the secondary path is unavailable.
        degraded_mode_enabled: Accept completions into the degraded store
            when both store paths are refused.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        privileged_session_factory: async_sessionmaker[AsyncSession] | None = None,
        degraded_mode_enabled: bool = False,
    ) -> None:
        self._session_factory = session_factory
        self._privileged_session_factory = privileged_session_factory
        self._degraded_mode_enabled = degraded_mode_enabled

    async def complete(
        self,
        identity_id: uuid.UUID,
        *,
        role: ProfileRole,
        base: Mapping[str, Any],
        extension: Mapping[str, Any],
        actor_id: uuid.UUID,
        email: str | None = None,
    ) -> CompletionOutcome:
        """Complete the identity's profile.

        Args:
            identity_id: Identity whose profile is completed.
            role: Role of the extension.
            base: Validated base profile values.
            extension: Validated extension values.
            actor_id: Identity performing the request.
            email: Identity email for a base row created at commit.

        Returns:
            CompletionOutcome. Only programming errors are raised.
        """
        try:
            await self._commit_primary(identity_id, role, base, extension, email)
        except StoreAuthorizationError as exc:
            logger.warning(
                "Primary completion refused for identity %s: %s",
                identity_id,
                exc.message,
            )
        except APIError as exc:
            logger.warning(
                "Primary completion failed for identity %s: %s", identity_id, exc.code
            )
            return CompletionOutcome(
                status=CompletionStatus.FAILURE,
                path=CompletionPath.PRIMARY,
                reason=exc.message,
            )
        else:
            logger.info("Profile completed for identity %s (primary)", identity_id)
            return CompletionOutcome(
                status=CompletionStatus.SUCCESS, path=CompletionPath.PRIMARY
            )

        if self._privileged_session_factory is not None:
            try:
                await self._commit_privileged(
                    identity_id, actor_id, role, base, extension, email
                )
            except StoreAuthorizationError as exc:
                logger.warning(
                    "Privileged completion refused for identity %s: %s",
                    identity_id,
                    exc.message,
                )
            except APIError as exc:
                logger.warning(
                    "Privileged completion failed for identity %s: %s",
                    identity_id,
                    exc.code,
                )
                return CompletionOutcome(
                    status=CompletionStatus.FAILURE,
                    path=CompletionPath.PRIVILEGED,
                    reason=exc.message,
                )
            else:
                logger.info(
                    "Profile completed for identity %s (privileged)", identity_id
                )
                return CompletionOutcome(
                    status=CompletionStatus.SUCCESS, path=CompletionPath.PRIVILEGED
                )

        if not self._degraded_mode_enabled:
            return CompletionOutcome(
                status=CompletionStatus.FAILURE, reason=_ACCESS_DENIED_REASON
            )

        try:
            pending_id = await self._store_degraded(identity_id, role, base, extension)
        except APIError as exc:
            logger.error(
                "Degraded store rejected completion for identity %s: %s",
                identity_id,
                exc.code,
            )
            return CompletionOutcome(
                status=CompletionStatus.FAILURE,
                path=CompletionPath.DEGRADED,
                reason=_ACCESS_DENIED_REASON,
            )

        logger.warning(
            "Profile for identity %s accepted in degraded mode (pending sync %s)",
            identity_id,
            pending_id,
        )
        return CompletionOutcome(
            status=CompletionStatus.DEGRADED,
            path=CompletionPath.DEGRADED,
            reason="authorization_failure",
            pending_sync_id=pending_id,
        )

    # =========================================================================
    # Tiers
    # =========================================================================

    async def _commit_primary(
        self,
        identity_id: uuid.UUID,
        role: ProfileRole,
        base: Mapping[str, Any],
        extension: Mapping[str, Any],
        email: str | None,
    ) -> None:
        with store_errors():
            async with self._session_factory() as db, db.begin():
                await apply_identity_scope(db, identity_id)
                await ProfileRepository.commit_completion(
                    db,
                    identity_id,
                    role=role,
                    base=base,
                    extension=extension,
                    email=email,
                )
                await self._settle(db, identity_id, role, base, extension)

    async def _commit_privileged(
        self,
        identity_id: uuid.UUID,
        actor_id: uuid.UUID,
        role: ProfileRole,
        base: Mapping[str, Any],
        extension: Mapping[str, Any],
        email: str | None,
    ) -> None:
        assert self._privileged_session_factory is not None  # nosec B101
        with store_errors():
            async with self._privileged_session_factory() as db, db.begin():
                await ProfileRepository.commit_completion_privileged(
                    db,
                    actor_id=actor_id,
                    identity_id=identity_id,
                    role=role,
                    base=base,
                    extension=extension,
                    email=email,
                )
                await self._settle(db, identity_id, role, base, extension)

    async def _store_degraded(
        self,
        identity_id: uuid.UUID,
        role: ProfileRole,
        base: Mapping[str, Any],
        extension: Mapping[str, Any],
    ) -> uuid.UUID:
        """Write (or find) the pending record and return its id."""
        digest = payload_hash(role, base, extension)
        with store_errors():
            async with self._session_factory() as db, db.begin():
                existing = await PendingSyncRepository.find_open(
                    db, identity_id, digest=digest
                )
                if existing is not None:
                    return existing.id
                # A newer degraded payload replaces any older one.
                await PendingSyncRepository.supersede_open(db, identity_id)
                record = await PendingSyncRepository.create(
                    db,
                    identity_id=identity_id,
                    role=role,
                    base=base,
                    extension=extension,
                    reason="primary and privileged completion paths refused",
                )
                return record.id

    @staticmethod
    async def _settle(
        db: AsyncSession,
        identity_id: uuid.UUID,
        role: ProfileRole,
        base: Mapping[str, Any],
        extension: Mapping[str, Any],
    ) -> None:
        """Clear the resume marker and close the identity's degraded records.

        A record holding the committed payload is reconciled; any other open
        record is older than this commit and is superseded.
        """
        await DraftRepository.clear(db, identity_id)
        pending = await PendingSyncRepository.find_open(
            db, identity_id, digest=payload_hash(role, base, extension)
        )
        if pending is not None:
            await PendingSyncRepository.mark_reconciled(db, pending)
        superseded = await PendingSyncRepository.supersede_open(db, identity_id)
        if superseded:
            logger.info(
                "Superseded %d stale pending sync(s) for identity %s",
                superseded,
                identity_id,
            )
