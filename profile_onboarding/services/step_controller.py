"""Onboarding step controller.

Implements the onboarding state machine:
- RoleSelect → BasicInfo → RoleDetails → Review → Complete
- Back transitions: BasicInfo → RoleSelect, RoleDetails → BasicInfo,
  Review → RoleDetails (no validation, drafts kept)
- Complete is terminal for onboarding; begin_edit() re-enters a completed
  profile at BasicInfo or RoleDetails without clearing completion.

Each operation is stateless between calls: everything it needs is read
from the profile store and the resume marker. State-changing operations
hold the identity's lock for their whole duration.

Validation problems come back as field errors on StepResult. Integrity
problems (role conflicts, steps out of order) are raised.
"""

import logging
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from profile_onboarding.core.enums import DraftMode, OnboardingStep, ProfileRole
from profile_onboarding.core.errors import (
    APIError,
    InvalidStateError,
    StepOrderError,
)
from profile_onboarding.models.onboarding_draft import OnboardingDraft
from profile_onboarding.models.profile import BaseProfile
from profile_onboarding.repositories.draft_repository import DraftRepository
from profile_onboarding.repositories.pending_sync_repository import (
    PendingSyncRepository,
)
from profile_onboarding.repositories.profile_repository import (
    ProfileRepository,
    base_values,
    extension_values,
)
from profile_onboarding.services import attribute_schema
from profile_onboarding.services.completion_coordinator import (
    DEGRADED_MESSAGE,
    CompletionCoordinator,
    CompletionOutcome,
)
from profile_onboarding.services.pending_sync_reconciler import PendingSyncReconciler
from profile_onboarding.services.review_projector import (
    ReviewProjection,
    ReviewProjector,
)
from profile_onboarding.services.role_routing import (
    AssessmentRouter,
    RouteTableRouter,
    RoutingSignal,
)
from profile_onboarding.services.session_guard import IdentityLocks, get_identity_locks

logger = logging.getLogger(__name__)

ROLE_CHANGED = "role_changed"
"""Signal: a different-role extension exists and must be retired or kept."""

# =============================================================================
# State Machine Definition
# =============================================================================

_FORWARD: dict[OnboardingStep, OnboardingStep] = {
    OnboardingStep.IDLE: OnboardingStep.ROLE_SELECT,
    OnboardingStep.ROLE_SELECT: OnboardingStep.BASIC_INFO,
    OnboardingStep.BASIC_INFO: OnboardingStep.ROLE_DETAILS,
    OnboardingStep.ROLE_DETAILS: OnboardingStep.REVIEW,
    OnboardingStep.REVIEW: OnboardingStep.COMPLETE,
}

_BACK: dict[OnboardingStep, OnboardingStep] = {
    OnboardingStep.BASIC_INFO: OnboardingStep.ROLE_SELECT,
    OnboardingStep.ROLE_DETAILS: OnboardingStep.BASIC_INFO,
    OnboardingStep.REVIEW: OnboardingStep.ROLE_DETAILS,
}

_EDIT_ENTRY_STEPS = frozenset({OnboardingStep.BASIC_INFO, OnboardingStep.ROLE_DETAILS})

# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class Identity:
    """Authenticated identity supplied by the identity collaborator."""

    identity_id: uuid.UUID
    email: str | None = None


@dataclass(frozen=True)
class StepResult:
    """Result of a step operation.

    Attributes:
        step: Step the identity should be shown next.
        ok: False when the submission was rejected by validation or the
            completion failed.
        role: Selected role after the operation.
        field_errors: Field name to message for rejected submissions.
        signals: Out-of-band signals such as ROLE_CHANGED.
        outcome: Completion outcome (confirm_review only).
        routing: Downstream routing signal after a completion.
        message: User-facing message, if any.
    """

    step: OnboardingStep
    ok: bool = True
    role: ProfileRole | None = None
    field_errors: dict[str, str] = field(default_factory=dict)
    signals: tuple[str, ...] = ()
    outcome: CompletionOutcome | None = None
    routing: RoutingSignal | None = None
    message: str | None = None


@dataclass(frozen=True)
class SessionView:
    """Where an identity resumes, with saved drafts for prefilling forms.

    Attributes:
        step: Resume step.
        role: Selected role, if any.
        mode: Onboarding or edit.
        is_complete: Store completion flag.
        degraded: True while a degraded completion awaits reconciliation.
        base: Saved base profile values.
        extension: Saved extension values for the selected role.
        message: User-facing message, if any.
    """

    step: OnboardingStep
    role: ProfileRole | None = None
    mode: DraftMode = DraftMode.ONBOARDING
    is_complete: bool = False
    degraded: bool = False
    base: dict[str, Any] = field(default_factory=dict)
    extension: dict[str, Any] = field(default_factory=dict)
    message: str | None = None


# =============================================================================
# Controller
# =============================================================================


class StepController:
    """Drives one identity through the onboarding steps.

    Args:
        session_factory: Primary async session factory.
        coordinator: Completion coordinator for the final step.
        router: Downstream router; defaults to the assessment route table.
        reconciler: Replays degraded completions on session start, if given.
        locks: Per-identity lock registry; defaults to the app singleton.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        coordinator: CompletionCoordinator,
        *,
        router: AssessmentRouter | None = None,
        reconciler: PendingSyncReconciler | None = None,
        locks: IdentityLocks | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._coordinator = coordinator
        self._router = router or RouteTableRouter()
        self._reconciler = reconciler
        self._locks = locks or get_identity_locks()

    # =========================================================================
    # Resume
    # =========================================================================

    async def start(
        self, identity: Identity, *, client_step: int | None = None
    ) -> SessionView:
        """Compute where the identity resumes.

        Read-only apart from degraded-record reconciliation, so calling it
        repeatedly yields the same view.

        Args:
            identity: Current identity.
            client_step: Step cached by the client, used only when the
                server-side marker is missing. It can lower the resume
                point, never raise it.

        Returns:
            SessionView describing the resume step and saved drafts.
        """
        identity_id = identity.identity_id
        async with self._locks.hold(identity_id):
            if self._reconciler is not None:
                try:
                    await self._reconciler.reconcile_identity(identity_id)
                except (APIError, SQLAlchemyError):
                    logger.exception(
                        "Pending sync reconciliation failed for identity %s; "
                        "resuming without it",
                        identity_id,
                    )

            async with self._session_factory() as db:
                base = await ProfileRepository.get_base(db, identity_id)
                draft = await DraftRepository.get(db, identity_id)
                pending = await PendingSyncRepository.find_open(db, identity_id)
                role = _selected_role(base, draft)
                extension_row = (
                    await ProfileRepository.get_extension(db, identity_id, role)
                    if role is not None
                    else None
                )

        base_data = base_values(base) if base is not None else {}
        extension_data = (
            extension_values(extension_row) if extension_row is not None else {}
        )
        mode = DraftMode(draft.mode) if draft is not None else DraftMode.ONBOARDING
        is_complete = base is not None and base.is_profile_complete

        if pending is not None and not is_complete:
            return SessionView(
                step=OnboardingStep.COMPLETE,
                role=ProfileRole.from_string(pending.role),
                degraded=True,
                base=base_data,
                extension=extension_data,
                message=DEGRADED_MESSAGE,
            )

        if is_complete and mode is not DraftMode.EDIT:
            return SessionView(
                step=OnboardingStep.COMPLETE,
                role=_base_role(base),
                is_complete=True,
                base=base_data,
                extension=extension_data,
            )

        step = _resume_step(
            role,
            base_data if base is not None else None,
            extension_data if extension_row is not None else None,
            draft,
            client_step,
            mode,
        )
        return SessionView(
            step=step,
            role=role,
            mode=mode,
            is_complete=is_complete,
            base=base_data,
            extension=extension_data,
        )

    # =========================================================================
    # Forward steps
    # =========================================================================

    async def select_role(
        self,
        identity: Identity,
        role: str | None,
        *,
        retire_previous: bool = False,
    ) -> StepResult:
        """Choose the identity's role.

        If an extension for a different role already exists it is kept and
        a ROLE_CHANGED signal is returned, unless ``retire_previous`` is set,
        in which case the old extension is archived and removed.

        Args:
            identity: Current identity.
            role: Role discriminant.
            retire_previous: Retire a different-role extension now.

        Returns:
            StepResult advancing to BASIC_INFO, or a field error.

        Raises:
            UnknownRoleError: If the discriminant is not a known role.
            InvalidStateError: If the profile is complete and not in edit mode.
        """
        validation = attribute_schema.validate_step(
            OnboardingStep.ROLE_SELECT, None, {"role": role}
        )
        if not validation.ok:
            return StepResult(
                step=OnboardingStep.ROLE_SELECT,
                ok=False,
                field_errors=validation.field_errors,
            )
        chosen: ProfileRole = validation.cleaned["role"]
        identity_id = identity.identity_id

        async with self._locks.hold(identity_id):
            async with self._session_factory() as db, db.begin():
                base = await ProfileRepository.get_base(db, identity_id)
                draft = await DraftRepository.get(db, identity_id)
                _ensure_editable(base, draft)
                mode = _draft_mode(draft)
                active = await ProfileRepository.get_active_role(db, identity_id)

                if active is not None and active is not chosen:
                    if not retire_previous:
                        await DraftRepository.reset(
                            db,
                            identity_id,
                            step=OnboardingStep.ROLE_SELECT,
                            role=chosen,
                            mode=mode,
                        )
                        logger.info(
                            "Role change %s -> %s pending for identity %s",
                            active.value,
                            chosen.value,
                            identity_id,
                        )
                        return StepResult(
                            step=OnboardingStep.BASIC_INFO,
                            role=chosen,
                            signals=(ROLE_CHANGED,),
                        )
                    await ProfileRepository.retire_extension(
                        db, identity_id, reason="role_change"
                    )

                previous = _selected_role(base, draft)
                await ProfileRepository.write_base_draft(
                    db, identity_id, {}, email=identity.email, role=chosen
                )
                if previous is not None and previous is not chosen:
                    await DraftRepository.reset(
                        db,
                        identity_id,
                        step=OnboardingStep.ROLE_SELECT,
                        role=chosen,
                        mode=mode,
                    )
                else:
                    await DraftRepository.record_step(
                        db, identity_id, OnboardingStep.ROLE_SELECT, chosen
                    )

        logger.info("Identity %s selected role %s", identity_id, chosen.value)
        return StepResult(step=_FORWARD[OnboardingStep.ROLE_SELECT], role=chosen)

    async def submit_basic_info(
        self, identity: Identity, values: Mapping[str, Any]
    ) -> StepResult:
        """Validate and save the base profile step.

        Args:
            identity: Current identity.
            values: Base profile values.

        Returns:
            StepResult advancing to ROLE_DETAILS, or field errors.

        Raises:
            StepOrderError: If no role has been selected.
            InvalidStateError: If the profile is complete and not in edit mode.
        """
        identity_id = identity.identity_id
        async with self._locks.hold(identity_id):
            async with self._session_factory() as db, db.begin():
                base = await ProfileRepository.get_base(db, identity_id)
                draft = await DraftRepository.get(db, identity_id)
                role = _selected_role(base, draft)
                if role is None:
                    raise StepOrderError("Select a role before entering basic information")
                _ensure_editable(base, draft)

                validation = attribute_schema.validate_step(
                    OnboardingStep.BASIC_INFO, role, values
                )
                if not validation.ok:
                    return StepResult(
                        step=OnboardingStep.BASIC_INFO,
                        ok=False,
                        role=role,
                        field_errors=validation.field_errors,
                    )

                await ProfileRepository.write_base_draft(
                    db, identity_id, validation.cleaned, email=identity.email
                )
                await DraftRepository.record_step(
                    db, identity_id, OnboardingStep.BASIC_INFO, role
                )

        return StepResult(step=_FORWARD[OnboardingStep.BASIC_INFO], role=role)

    async def submit_role_details(
        self,
        identity: Identity,
        values: Mapping[str, Any],
        *,
        replace_existing: bool = False,
    ) -> StepResult:
        """Validate and save the role extension step.

        Args:
            identity: Current identity.
            values: Extension values for the selected role.
            replace_existing: Retire a different-role extension first.

        Returns:
            StepResult advancing to REVIEW, or field errors.

        Raises:
            StepOrderError: If basic info has not been saved and validated.
            RoleConflictError: If a different-role extension is active and
                replace_existing is False.
            InvalidStateError: If the profile is complete and not in edit mode.
        """
        identity_id = identity.identity_id
        async with self._locks.hold(identity_id):
            async with self._session_factory() as db, db.begin():
                base = await ProfileRepository.get_base(db, identity_id)
                draft = await DraftRepository.get(db, identity_id)
                role = _selected_role(base, draft)
                if role is None:
                    raise StepOrderError("Select a role before entering role details")
                if base is None or not attribute_schema.validate_fields(
                    attribute_schema.base_rules(), base_values(base)
                ).ok:
                    raise StepOrderError(
                        "Complete basic information before entering role details"
                    )
                _ensure_editable(base, draft)

                validation = attribute_schema.validate_step(
                    OnboardingStep.ROLE_DETAILS, role, values
                )
                if not validation.ok:
                    return StepResult(
                        step=OnboardingStep.ROLE_DETAILS,
                        ok=False,
                        role=role,
                        field_errors=validation.field_errors,
                    )

                await ProfileRepository.write_extension_draft(
                    db,
                    identity_id,
                    role,
                    validation.cleaned,
                    replace=replace_existing,
                )
                await DraftRepository.record_step(
                    db, identity_id, OnboardingStep.ROLE_DETAILS, role
                )

        return StepResult(step=_FORWARD[OnboardingStep.ROLE_DETAILS], role=role)

    async def confirm_review(self, identity: Identity) -> StepResult:
        """Re-validate the saved profile and run the completion transaction.

        Args:
            identity: Current identity.

        Returns:
            StepResult at COMPLETE with a routing signal on Success or
            Degraded; at REVIEW with ok=False on Failure or invalid data.

        Raises:
            StepOrderError: If role details have not been saved, or a role
                change is still pending.
        """
        identity_id = identity.identity_id
        async with self._locks.hold(identity_id):
            async with self._session_factory() as db:
                base = await ProfileRepository.get_base(db, identity_id)
                draft = await DraftRepository.get(db, identity_id)
                role = _base_role(base)
                if base is None or role is None:
                    raise StepOrderError("Select a role before confirming the review")
                if _selected_role(base, draft) is not role:
                    raise StepOrderError(
                        "Role change pending; resubmit role details for the new role"
                    )
                extension_row = await ProfileRepository.get_extension(
                    db, identity_id, role
                )
                if extension_row is None:
                    raise StepOrderError("Complete role details before confirming")
                stored_base = base_values(base)
                stored_extension = extension_values(extension_row)

            validation = attribute_schema.validate_step(
                OnboardingStep.REVIEW,
                role,
                {"base": stored_base, "extension": stored_extension},
            )
            if not validation.ok:
                return StepResult(
                    step=OnboardingStep.REVIEW,
                    ok=False,
                    role=role,
                    field_errors=validation.field_errors,
                )

            outcome = await self._coordinator.complete(
                identity_id,
                role=role,
                base=validation.cleaned["base"],
                extension=validation.cleaned["extension"],
                actor_id=identity_id,
                email=identity.email,
            )

        if not outcome.completed:
            return StepResult(
                step=OnboardingStep.REVIEW,
                ok=False,
                role=role,
                outcome=outcome,
                message=outcome.message,
            )

        return StepResult(
            step=_FORWARD[OnboardingStep.REVIEW],
            role=role,
            outcome=outcome,
            routing=self._router.route(role, outcome.status.value),
            message=outcome.message,
        )

    # =========================================================================
    # Back and edit
    # =========================================================================

    async def go_back(self, identity: Identity, from_step: OnboardingStep) -> StepResult:
        """Step back without validating or discarding drafts.

        Args:
            identity: Current identity.
            from_step: Step currently shown.

        Returns:
            StepResult at the previous step.

        Raises:
            InvalidStateError: If there is no step before ``from_step``.
        """
        if from_step not in _BACK:
            raise InvalidStateError(f"Cannot go back from {from_step.name}")
        async with self._session_factory() as db:
            base = await ProfileRepository.get_base(db, identity.identity_id)
            draft = await DraftRepository.get(db, identity.identity_id)
        return StepResult(step=_BACK[from_step], role=_selected_role(base, draft))

    async def begin_edit(
        self,
        identity: Identity,
        at_step: OnboardingStep = OnboardingStep.BASIC_INFO,
    ) -> StepResult:
        """Re-enter a completed profile for editing.

        The completion flag is left as it is; only a role change clears it.

        Args:
            identity: Current identity.
            at_step: BASIC_INFO or ROLE_DETAILS.

        Returns:
            StepResult at ``at_step``.

        Raises:
            InvalidStateError: If the profile is not complete, or at_step is
                not an edit entry point.
        """
        if at_step not in _EDIT_ENTRY_STEPS:
            raise InvalidStateError(f"Editing cannot start at {at_step.name}")

        identity_id = identity.identity_id
        async with self._locks.hold(identity_id):
            async with self._session_factory() as db, db.begin():
                base = await ProfileRepository.get_base(db, identity_id)
                if base is None or not base.is_profile_complete:
                    raise InvalidStateError("Only a completed profile can be edited")
                role = _base_role(base)
                await DraftRepository.reset(
                    db,
                    identity_id,
                    step=OnboardingStep(at_step - 1),
                    role=role,
                    mode=DraftMode.EDIT,
                )

        logger.info("Identity %s started editing at %s", identity_id, at_step.name)
        return StepResult(step=at_step, role=role)

    async def review(self, identity: Identity) -> ReviewProjection:
        """Project the saved profile for the review step."""
        async with self._session_factory() as db:
            return await ReviewProjector.project(db, identity.identity_id)


# =============================================================================
# Helpers
# =============================================================================


def _base_role(base: BaseProfile | None) -> ProfileRole | None:
    if base is None or not base.role:
        return None
    return ProfileRole.from_string(base.role)


def _selected_role(
    base: BaseProfile | None, draft: OnboardingDraft | None
) -> ProfileRole | None:
    """Role the flow is currently collecting data for.

    The marker's role wins because it records a pending role change that
    the base profile does not reflect yet.
    """
    if draft is not None and draft.role:
        return ProfileRole.from_string(draft.role)
    return _base_role(base)


def _draft_mode(draft: OnboardingDraft | None) -> DraftMode:
    return DraftMode(draft.mode) if draft is not None else DraftMode.ONBOARDING


def _ensure_editable(base: BaseProfile | None, draft: OnboardingDraft | None) -> None:
    if (
        base is not None
        and base.is_profile_complete
        and _draft_mode(draft) is not DraftMode.EDIT
    ):
        raise InvalidStateError(
            "Profile is already complete; begin an edit to change it"
        )


def _resume_step(
    role: ProfileRole | None,
    base: Mapping[str, Any] | None,
    extension: Mapping[str, Any] | None,
    draft: OnboardingDraft | None,
    client_step: int | None,
    mode: DraftMode,
) -> OnboardingStep:
    """Resume step: what the store supports, lowered by the tracker.

    A complete extension for the base role resumes at REVIEW during
    onboarding regardless of the tracker.
    """
    if role is None:
        return OnboardingStep.ROLE_SELECT
    if base is None or not attribute_schema.validate_fields(
        attribute_schema.base_rules(), base
    ).ok:
        supported = OnboardingStep.BASIC_INFO
    elif extension is not None and attribute_schema.validate_extension(role, extension).ok:
        if mode is not DraftMode.EDIT:
            return OnboardingStep.REVIEW
        supported = OnboardingStep.REVIEW
    else:
        supported = OnboardingStep.ROLE_DETAILS

    hint = _tracker_hint(role, draft, client_step)
    if hint is None:
        return supported
    return min(hint, supported)


def _tracker_hint(
    role: ProfileRole, draft: OnboardingDraft | None, client_step: int | None
) -> OnboardingStep | None:
    """Step after the last recorded one; ignored if recorded for another role."""
    if draft is not None:
        if draft.role and draft.role != role.value:
            return None
        last = draft.last_step
    elif client_step is not None:
        last = client_step
    else:
        return None
    last = min(max(int(last), int(OnboardingStep.ROLE_SELECT)), int(OnboardingStep.REVIEW))
    return OnboardingStep(min(last + 1, int(OnboardingStep.REVIEW)))
