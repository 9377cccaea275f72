"""Repository for the onboarding resume marker.

The marker is advisory: StepController.start() caps it by what the profile
tables actually contain, so a stale or lost marker never skips a step.
"""

import uuid

from sqlalchemy.ext.asyncio import AsyncSession

from profile_onboarding.core.enums import DraftMode, OnboardingStep, ProfileRole
from profile_onboarding.models.onboarding_draft import OnboardingDraft
from profile_onboarding.repositories.profile_repository import store_errors

_TRACKED_STEPS = frozenset(
    {
        OnboardingStep.ROLE_SELECT,
        OnboardingStep.BASIC_INFO,
        OnboardingStep.ROLE_DETAILS,
        OnboardingStep.REVIEW,
    }
)


def _check_step(step: OnboardingStep) -> None:
    if step not in _TRACKED_STEPS:
        msg = f"Step {step.name} is not tracked by the resume marker"
        raise ValueError(msg)


class DraftRepository:
    """Stateless repository for onboarding_drafts.

    All methods are static. Pass an AsyncSession for every call so the
    caller controls transaction boundaries.
    """

    @staticmethod
    async def get(db: AsyncSession, identity_id: uuid.UUID) -> OnboardingDraft | None:
        """Fetch the marker for an identity, or None."""
        with store_errors():
            return await db.get(OnboardingDraft, identity_id)

    @staticmethod
    async def record_step(
        db: AsyncSession,
        identity_id: uuid.UUID,
        step: OnboardingStep,
        role: ProfileRole | None,
        *,
        mode: DraftMode | None = None,
    ) -> OnboardingDraft:
        """Record a validated step, keeping the highest step seen.

        Recording a lower step than the stored one leaves last_step alone,
        so replaying an older submission never moves the marker backwards.

        Args:
            db: Async database session.
            identity_id: Identity UUID. A base profile row must exist.
            step: Step that was just validated and saved.
            role: Role selected at the time of the save.
            mode: Switch the marker's mode, if given.

        Returns:
            The created or updated marker.

        Raises:
            ValueError: If step is IDLE or COMPLETE.
        """
        _check_step(step)
        with store_errors():
            draft = await db.get(OnboardingDraft, identity_id)
            if draft is None:
                draft = OnboardingDraft(
                    identity_id=identity_id,
                    last_step=int(step),
                    mode=(mode or DraftMode.ONBOARDING).value,
                )
                db.add(draft)
            else:
                draft.last_step = max(draft.last_step, int(step))
                if mode is not None:
                    draft.mode = mode.value
            if role is not None:
                draft.role = role.value
            await db.flush()
        return draft

    @staticmethod
    async def reset(
        db: AsyncSession,
        identity_id: uuid.UUID,
        *,
        step: OnboardingStep,
        role: ProfileRole | None,
        mode: DraftMode | None = None,
    ) -> OnboardingDraft:
        """Overwrite the marker, allowing it to move backwards.

        Used when a role change invalidates previously validated steps, and
        when an edit session re-enters the flow.
        """
        _check_step(step)
        with store_errors():
            draft = await db.get(OnboardingDraft, identity_id)
            if draft is None:
                draft = OnboardingDraft(identity_id=identity_id, last_step=int(step))
                db.add(draft)
            draft.last_step = int(step)
            draft.role = role.value if role is not None else None
            draft.mode = (mode or DraftMode.ONBOARDING).value
            await db.flush()
        return draft

    @staticmethod
    async def clear(db: AsyncSession, identity_id: uuid.UUID) -> bool:
        """Delete the marker.

        Returns:
            True if a marker was deleted, False if none existed.
        """
        with store_errors():
            draft = await db.get(OnboardingDraft, identity_id)
            if draft is None:
                return False
            await db.delete(draft)
            await db.flush()
        return True
