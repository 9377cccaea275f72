"""Tests for the onboarding step controller.

Covers the forward flow, resume, step-order enforcement, role changes,
edit mode, and how completion outcomes surface to the caller.
"""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError, ProgrammingError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from profile_onboarding.core.enums import DraftMode, OnboardingStep, ProfileRole
from profile_onboarding.core.errors import (
    InvalidStateError,
    RoleConflictError,
    StepOrderError,
    StoreAuthorizationError,
    UnknownRoleError,
)
from profile_onboarding.models import (
    BaseProfile,
    CapitalProviderProfile,
    PendingProfileSync,
    ProfessionalProfile,
    RetiredRoleExtension,
)
from profile_onboarding.repositories.draft_repository import DraftRepository
from profile_onboarding.repositories.profile_repository import ProfileRepository
from profile_onboarding.services.completion_coordinator import (
    DEGRADED_MESSAGE,
    CompletionCoordinator,
    CompletionStatus,
)
from profile_onboarding.services.pending_sync_reconciler import PendingSyncReconciler
from profile_onboarding.services.session_guard import IdentityLocks
from profile_onboarding.services.step_controller import (
    ROLE_CHANGED,
    Identity,
    StepController,
)
from tests.conftest import (
    TEST_EMAIL,
    TEST_IDENTITY_ID,
    valid_base_values,
    valid_extension_values,
)

_IDENTITY = Identity(identity_id=TEST_IDENTITY_ID, email=TEST_EMAIL)
_SCOPE_TARGET = "profile_onboarding.services.completion_coordinator.apply_identity_scope"


def _controller(
    factory: async_sessionmaker[AsyncSession],
    *,
    degraded: bool = False,
    reconciler: PendingSyncReconciler | None = None,
    locks: IdentityLocks | None = None,
) -> StepController:
    coordinator = CompletionCoordinator(factory, degraded_mode_enabled=degraded)
    return StepController(factory, coordinator, reconciler=reconciler, locks=locks)


@pytest.fixture
def controller(session_factory) -> StepController:
    """Controller with primary-only completion."""
    return _controller(session_factory)


async def _complete_as(controller: StepController, role: ProfileRole):
    await controller.select_role(_IDENTITY, role.value)
    await controller.submit_basic_info(_IDENTITY, valid_base_values())
    await controller.submit_role_details(_IDENTITY, valid_extension_values(role))
    return await controller.confirm_review(_IDENTITY)


async def _base(factory: async_sessionmaker[AsyncSession]) -> BaseProfile | None:
    async with factory() as db:
        return await ProfileRepository.get_base(db, TEST_IDENTITY_ID)


async def _count(factory: async_sessionmaker[AsyncSession], model) -> int:
    async with factory() as db:
        return await db.scalar(select(func.count()).select_from(model))


# =============================================================================
# Forward flow
# =============================================================================


class TestForwardFlow:
    """RoleSelect → BasicInfo → RoleDetails → Review → Complete."""

    async def test_business_onboarding_end_to_end(
        self, controller: StepController, session_factory
    ) -> None:
        """A business identity completes and is routed to its assessment."""
        selected = await controller.select_role(_IDENTITY, "business")
        assert selected.step is OnboardingStep.BASIC_INFO
        assert selected.role is ProfileRole.BUSINESS

        basic = await controller.submit_basic_info(_IDENTITY, valid_base_values())
        assert basic.step is OnboardingStep.ROLE_DETAILS

        details = await controller.submit_role_details(
            _IDENTITY, valid_extension_values(ProfileRole.BUSINESS)
        )
        assert details.step is OnboardingStep.REVIEW

        done = await controller.confirm_review(_IDENTITY)
        assert done.ok
        assert done.step is OnboardingStep.COMPLETE
        assert done.outcome.status is CompletionStatus.SUCCESS
        assert done.routing.next_route == "/sme-assessment"
        assert done.routing.outcome == "success"

        base = await _base(session_factory)
        assert base.is_profile_complete is True
        assert base.role == "business"
        assert base.email == TEST_EMAIL.lower()
        async with session_factory() as db:
            ext = await ProfileRepository.get_extension(
                db, TEST_IDENTITY_ID, ProfileRole.BUSINESS
            )
        assert ext.identity_id == TEST_IDENTITY_ID

        view = await controller.start(_IDENTITY)
        assert view.step is OnboardingStep.COMPLETE
        assert view.is_complete is True
        assert view.role is ProfileRole.BUSINESS

    @pytest.mark.parametrize("role", list(ProfileRole))
    async def test_every_role_completes(
        self, controller: StepController, role: ProfileRole
    ) -> None:
        """Each of the four roles can complete onboarding."""
        result = await _complete_as(controller, role)
        assert result.step is OnboardingStep.COMPLETE
        assert result.role is role

    async def test_empty_role_is_field_error(self, controller: StepController) -> None:
        """An empty role choice stays on RoleSelect with a field error."""
        result = await controller.select_role(_IDENTITY, "")
        assert not result.ok
        assert result.step is OnboardingStep.ROLE_SELECT
        assert result.field_errors == {"role": "Select a role"}

    async def test_unknown_role_raises(self, controller: StepController) -> None:
        """An unrecognised role is an integrity error, not a field error."""
        with pytest.raises(UnknownRoleError):
            await controller.select_role(_IDENTITY, "wizard")

    async def test_invalid_basic_info_not_saved(
        self, controller: StepController, session_factory
    ) -> None:
        """Rejected BasicInfo stays on the step and writes nothing."""
        await controller.select_role(_IDENTITY, "business")

        result = await controller.submit_basic_info(
            _IDENTITY, valid_base_values(bio="short")
        )

        assert not result.ok
        assert result.step is OnboardingStep.BASIC_INFO
        assert "bio" in result.field_errors
        base = await _base(session_factory)
        assert base.bio is None

    async def test_invalid_role_details(self, controller: StepController) -> None:
        """Rejected RoleDetails returns field errors."""
        await controller.select_role(_IDENTITY, "professional")
        await controller.submit_basic_info(_IDENTITY, valid_base_values())

        result = await controller.submit_role_details(_IDENTITY, {})

        assert not result.ok
        assert result.step is OnboardingStep.ROLE_DETAILS
        assert "professional_title" in result.field_errors

    async def test_review_revalidates_stored_values(
        self, controller: StepController, session_factory
    ) -> None:
        """Review re-checks the stored profile before completing."""
        await controller.select_role(_IDENTITY, "business")
        await controller.submit_basic_info(_IDENTITY, valid_base_values())
        await controller.submit_role_details(
            _IDENTITY, valid_extension_values(ProfileRole.BUSINESS)
        )
        async with session_factory() as db, db.begin():
            await ProfileRepository.write_base_draft(
                db, TEST_IDENTITY_ID, {"bio": "now too short"}
            )

        result = await controller.confirm_review(_IDENTITY)

        assert not result.ok
        assert result.step is OnboardingStep.REVIEW
        assert "bio" in result.field_errors
        assert (await _base(session_factory)).is_profile_complete is False

    async def test_review_projection(self, controller: StepController) -> None:
        """review() returns the role first, then saved values."""
        await controller.select_role(_IDENTITY, "business")
        await controller.submit_basic_info(_IDENTITY, valid_base_values())

        projection = await controller.review(_IDENTITY)

        assert projection.items[0].value == "SME / Business"
        assert ("Full Name", "Jane Doe") in [(i.label, i.value) for i in projection.items]


# =============================================================================
# Step order
# =============================================================================


class TestStepOrder:
    """Steps cannot be skipped."""

    async def test_basic_info_requires_role(self, controller: StepController) -> None:
        """BasicInfo before RoleSelect is rejected."""
        with pytest.raises(StepOrderError):
            await controller.submit_basic_info(_IDENTITY, valid_base_values())

    async def test_role_details_requires_basic_info(
        self, controller: StepController
    ) -> None:
        """RoleDetails before BasicInfo has succeeded is rejected."""
        await controller.select_role(_IDENTITY, "business")

        with pytest.raises(StepOrderError) as exc_info:
            await controller.submit_role_details(
                _IDENTITY, valid_extension_values(ProfileRole.BUSINESS)
            )
        assert exc_info.value.code == "INVALID_STEP_ORDER"

    async def test_review_requires_role_details(self, controller: StepController) -> None:
        """Confirming before RoleDetails is rejected."""
        await controller.select_role(_IDENTITY, "business")
        await controller.submit_basic_info(_IDENTITY, valid_base_values())

        with pytest.raises(StepOrderError):
            await controller.confirm_review(_IDENTITY)

    async def test_review_requires_role(self, controller: StepController) -> None:
        """Confirming with nothing saved is rejected."""
        with pytest.raises(StepOrderError):
            await controller.confirm_review(_IDENTITY)


# =============================================================================
# Back transitions
# =============================================================================


class TestGoBack:
    """Tests for go_back()."""

    @pytest.mark.parametrize(
        ("from_step", "expected"),
        [
            (OnboardingStep.BASIC_INFO, OnboardingStep.ROLE_SELECT),
            (OnboardingStep.ROLE_DETAILS, OnboardingStep.BASIC_INFO),
            (OnboardingStep.REVIEW, OnboardingStep.ROLE_DETAILS),
        ],
    )
    async def test_back_one_step(
        self,
        controller: StepController,
        from_step: OnboardingStep,
        expected: OnboardingStep,
    ) -> None:
        """Back moves exactly one step and keeps the role."""
        await controller.select_role(_IDENTITY, "institution")
        result = await controller.go_back(_IDENTITY, from_step)
        assert result.step is expected
        assert result.role is ProfileRole.INSTITUTION

    @pytest.mark.parametrize(
        "from_step", [OnboardingStep.ROLE_SELECT, OnboardingStep.COMPLETE]
    )
    async def test_no_back_from_ends(
        self, controller: StepController, from_step: OnboardingStep
    ) -> None:
        """There is no step before RoleSelect, and Complete is terminal."""
        with pytest.raises(InvalidStateError):
            await controller.go_back(_IDENTITY, from_step)

    async def test_back_keeps_drafts(self, controller: StepController) -> None:
        """Going back does not discard saved values."""
        await controller.select_role(_IDENTITY, "business")
        await controller.submit_basic_info(_IDENTITY, valid_base_values())
        await controller.go_back(_IDENTITY, OnboardingStep.ROLE_DETAILS)

        view = await controller.start(_IDENTITY)

        assert view.base["full_name"] == "Jane Doe"


# =============================================================================
# Resume
# =============================================================================


class TestResume:
    """Tests for start()."""

    async def test_new_identity_starts_at_role_select(
        self, controller: StepController
    ) -> None:
        """Nothing saved means RoleSelect."""
        view = await controller.start(_IDENTITY)
        assert view.step is OnboardingStep.ROLE_SELECT
        assert view.role is None
        assert view.is_complete is False

    async def test_resume_at_role_details_with_prefill(
        self, controller: StepController
    ) -> None:
        """An abandoned session resumes at RoleDetails with BasicInfo prefilled."""
        await controller.select_role(_IDENTITY, "business")
        await controller.submit_basic_info(_IDENTITY, valid_base_values())

        view = await controller.start(_IDENTITY)

        assert view.step is OnboardingStep.ROLE_DETAILS
        assert view.role is ProfileRole.BUSINESS
        assert view.base["full_name"] == "Jane Doe"
        assert view.base["city"] == "Lusaka"

    async def test_start_is_idempotent(self, controller: StepController) -> None:
        """Calling start() twice yields the same view."""
        await controller.select_role(_IDENTITY, "business")
        await controller.submit_basic_info(_IDENTITY, valid_base_values())

        assert await controller.start(_IDENTITY) == await controller.start(_IDENTITY)

    async def test_resubmitting_basic_info_keeps_one_row(
        self, controller: StepController, session_factory
    ) -> None:
        """Saving BasicInfo twice updates the same row with the later values."""
        await controller.select_role(_IDENTITY, "business")
        await controller.submit_basic_info(_IDENTITY, valid_base_values(city="Ndola"))
        await controller.submit_basic_info(_IDENTITY, valid_base_values(city="Kitwe"))

        assert await _count(session_factory, BaseProfile) == 1
        assert (await _base(session_factory)).city == "Kitwe"

    async def test_lost_marker_resumes_from_store(
        self, controller: StepController, session_factory
    ) -> None:
        """Without a marker the store decides: a full extension resumes at Review."""
        await controller.select_role(_IDENTITY, "business")
        await controller.submit_basic_info(_IDENTITY, valid_base_values())
        await controller.submit_role_details(
            _IDENTITY, valid_extension_values(ProfileRole.BUSINESS)
        )
        async with session_factory() as db, db.begin():
            await DraftRepository.clear(db, TEST_IDENTITY_ID)

        view = await controller.start(_IDENTITY)

        assert view.step is OnboardingStep.REVIEW

    async def test_client_step_can_only_lower(
        self, controller: StepController, session_factory
    ) -> None:
        """A client hint lowers the resume point but never raises it."""
        async with session_factory() as db, db.begin():
            await ProfileRepository.write_base_draft(
                db, TEST_IDENTITY_ID, {}, role=ProfileRole.BUSINESS
            )

        high = await controller.start(_IDENTITY, client_step=4)
        assert high.step is OnboardingStep.BASIC_INFO

        async with session_factory() as db, db.begin():
            await ProfileRepository.write_base_draft(
                db, TEST_IDENTITY_ID, valid_base_values()
            )

        assert (await controller.start(_IDENTITY)).step is OnboardingStep.ROLE_DETAILS
        low = await controller.start(_IDENTITY, client_step=1)
        assert low.step is OnboardingStep.BASIC_INFO

    async def test_concurrent_submissions_serialise(
        self, controller: StepController, session_factory
    ) -> None:
        """Two tabs submitting at once leave one consistent row."""
        await controller.select_role(_IDENTITY, "business")

        results = await asyncio.gather(
            controller.submit_basic_info(_IDENTITY, valid_base_values(city="Ndola")),
            controller.submit_basic_info(_IDENTITY, valid_base_values(city="Kitwe")),
        )

        assert all(r.ok for r in results)
        assert await _count(session_factory, BaseProfile) == 1
        assert (await _base(session_factory)).city in {"Ndola", "Kitwe"}


# =============================================================================
# Role changes
# =============================================================================


class TestRoleChange:
    """Switching roles retires the old extension explicitly."""

    async def test_role_change_before_extension(
        self, controller: StepController, session_factory
    ) -> None:
        """Changing role before any extension exists just updates the role."""
        await controller.select_role(_IDENTITY, "business")
        result = await controller.select_role(_IDENTITY, "professional")

        assert result.signals == ()
        assert (await _base(session_factory)).role == "professional"

    async def test_change_after_completion(
        self, controller: StepController, session_factory
    ) -> None:
        """Completed professional switches to capital provider and re-confirms."""
        await _complete_as(controller, ProfileRole.PROFESSIONAL)
        await controller.begin_edit(_IDENTITY)

        changed = await controller.select_role(_IDENTITY, "capital_provider")
        assert changed.signals == (ROLE_CHANGED,)
        assert changed.step is OnboardingStep.BASIC_INFO
        assert changed.role is ProfileRole.CAPITAL_PROVIDER
        assert await _count(session_factory, ProfessionalProfile) == 1

        await controller.submit_basic_info(_IDENTITY, valid_base_values())
        with pytest.raises(RoleConflictError):
            await controller.submit_role_details(
                _IDENTITY, valid_extension_values(ProfileRole.CAPITAL_PROVIDER)
            )
        with pytest.raises(StepOrderError):
            await controller.confirm_review(_IDENTITY)

        details = await controller.submit_role_details(
            _IDENTITY,
            valid_extension_values(ProfileRole.CAPITAL_PROVIDER),
            replace_existing=True,
        )
        assert details.step is OnboardingStep.REVIEW
        assert await _count(session_factory, ProfessionalProfile) == 0
        assert await _count(session_factory, CapitalProviderProfile) == 1
        async with session_factory() as db:
            archived = (await db.execute(select(RetiredRoleExtension))).scalar_one()
        assert archived.role == "professional"
        assert (await _base(session_factory)).is_profile_complete is False

        done = await controller.confirm_review(_IDENTITY)
        assert done.step is OnboardingStep.COMPLETE
        assert done.routing.next_route == "/investor-assessment"
        base = await _base(session_factory)
        assert base.is_profile_complete is True
        assert base.role == "capital_provider"

    async def test_retire_previous_on_select(
        self, controller: StepController, session_factory
    ) -> None:
        """retire_previous archives the old extension at selection time."""
        await _complete_as(controller, ProfileRole.PROFESSIONAL)
        await controller.begin_edit(_IDENTITY)

        result = await controller.select_role(
            _IDENTITY, "institution", retire_previous=True
        )

        assert result.signals == ()
        assert await _count(session_factory, ProfessionalProfile) == 0
        base = await _base(session_factory)
        assert base.role == "institution"
        assert base.is_profile_complete is False

    async def test_pending_change_resumes_at_basic_info(
        self, controller: StepController
    ) -> None:
        """A role change awaiting new details resumes at BasicInfo for the new role."""
        await _complete_as(controller, ProfileRole.PROFESSIONAL)
        await controller.begin_edit(_IDENTITY)
        await controller.select_role(_IDENTITY, "business")

        view = await controller.start(_IDENTITY)

        assert view.step is OnboardingStep.BASIC_INFO
        assert view.role is ProfileRole.BUSINESS


# =============================================================================
# Edit mode and monotonic completion
# =============================================================================


class TestEditMode:
    """Tests for begin_edit() and the completion flag during edits."""

    async def test_complete_profile_is_locked(self, controller: StepController) -> None:
        """Outside an edit, a completed profile rejects step submissions."""
        await _complete_as(controller, ProfileRole.BUSINESS)

        with pytest.raises(InvalidStateError):
            await controller.submit_basic_info(_IDENTITY, valid_base_values())

    async def test_edit_requires_completed_profile(
        self, controller: StepController
    ) -> None:
        """begin_edit() is only for completed profiles."""
        await controller.select_role(_IDENTITY, "business")
        with pytest.raises(InvalidStateError):
            await controller.begin_edit(_IDENTITY)

    async def test_edit_entry_points(self, controller: StepController) -> None:
        """Editing starts at BasicInfo or RoleDetails only."""
        await _complete_as(controller, ProfileRole.BUSINESS)
        with pytest.raises(InvalidStateError):
            await controller.begin_edit(_IDENTITY, OnboardingStep.REVIEW)

    async def test_edit_keeps_completion(
        self, controller: StepController, session_factory
    ) -> None:
        """A non-role-changing edit never clears the completion flag."""
        await _complete_as(controller, ProfileRole.BUSINESS)
        completed_at = (await _base(session_factory)).completed_at

        edit = await controller.begin_edit(_IDENTITY)
        assert edit.step is OnboardingStep.BASIC_INFO

        view = await controller.start(_IDENTITY)
        assert view.step is OnboardingStep.BASIC_INFO
        assert view.mode is DraftMode.EDIT
        assert view.is_complete is True

        await controller.submit_basic_info(_IDENTITY, valid_base_values(city="Kitwe"))
        assert (await _base(session_factory)).is_profile_complete is True

        await controller.submit_role_details(
            _IDENTITY, valid_extension_values(ProfileRole.BUSINESS, industry="Mining")
        )
        done = await controller.confirm_review(_IDENTITY)

        assert done.step is OnboardingStep.COMPLETE
        base = await _base(session_factory)
        assert base.is_profile_complete is True
        assert base.city == "Kitwe"
        assert base.completed_at == completed_at
        assert (await controller.start(_IDENTITY)).step is OnboardingStep.COMPLETE

    async def test_edit_at_role_details(self, controller: StepController) -> None:
        """Editing can start directly at RoleDetails."""
        await _complete_as(controller, ProfileRole.INSTITUTION)

        await controller.begin_edit(_IDENTITY, OnboardingStep.ROLE_DETAILS)

        assert (await controller.start(_IDENTITY)).step is OnboardingStep.ROLE_DETAILS


# =============================================================================
# Completion outcomes
# =============================================================================


class TestCompletionOutcomes:
    """How Failure and Degraded completions surface."""

    async def test_failure_stays_on_review(self, session_factory) -> None:
        """A refused completion keeps the identity on Review with a message."""
        controller = _controller(session_factory)
        with patch(_SCOPE_TARGET, AsyncMock(side_effect=StoreAuthorizationError())):
            result = await _complete_as(controller, ProfileRole.BUSINESS)

        assert not result.ok
        assert result.step is OnboardingStep.REVIEW
        assert result.outcome.status is CompletionStatus.FAILURE
        assert result.routing is None
        assert (await controller.start(_IDENTITY)).step is OnboardingStep.REVIEW

    async def test_degraded_completion(self, session_factory) -> None:
        """A degraded completion advances with a distinct message."""
        controller = _controller(session_factory, degraded=True)
        with patch(_SCOPE_TARGET, AsyncMock(side_effect=StoreAuthorizationError())):
            result = await _complete_as(controller, ProfileRole.BUSINESS)

        assert result.ok
        assert result.step is OnboardingStep.COMPLETE
        assert result.outcome.status is CompletionStatus.DEGRADED
        assert result.message == DEGRADED_MESSAGE
        assert result.routing.outcome == "degraded"

        view = await controller.start(_IDENTITY)
        assert view.step is OnboardingStep.COMPLETE
        assert view.degraded is True
        assert view.is_complete is False
        assert view.message == DEGRADED_MESSAGE

    async def test_next_start_reconciles(self, session_factory) -> None:
        """The next session start replays the degraded completion."""
        reconciler = PendingSyncReconciler(session_factory, max_attempts=3)
        controller = _controller(session_factory, degraded=True, reconciler=reconciler)
        with patch(_SCOPE_TARGET, AsyncMock(side_effect=StoreAuthorizationError())):
            await _complete_as(controller, ProfileRole.BUSINESS)

        view = await controller.start(_IDENTITY)

        assert view.step is OnboardingStep.COMPLETE
        assert view.degraded is False
        assert view.is_complete is True
        assert (await _base(session_factory)).is_profile_complete is True

    async def test_start_survives_replay_driver_errors(self, session_factory) -> None:
        """Replays failing with a driver error are counted; start() still answers."""
        reconciler = PendingSyncReconciler(session_factory, max_attempts=5)
        controller = _controller(session_factory, degraded=True, reconciler=reconciler)
        with patch(_SCOPE_TARGET, AsyncMock(side_effect=StoreAuthorizationError())):
            result = await _complete_as(controller, ProfileRole.BUSINESS)
        broken = AsyncMock(
            side_effect=ProgrammingError("INSERT", {}, Exception("relation missing"))
        )

        with patch.object(ProfileRepository, "commit_completion", broken):
            first = await controller.start(_IDENTITY)
            second = await controller.start(_IDENTITY)

        assert first.degraded is True
        assert second.degraded is True
        async with session_factory() as db:
            record = await db.get(PendingProfileSync, result.outcome.pending_sync_id)
        assert record.attempts == 2

    async def test_start_when_reconciler_unavailable(self, session_factory) -> None:
        """A reconciler that cannot reach the store does not block resuming."""
        reconciler = PendingSyncReconciler(session_factory, max_attempts=3)
        controller = _controller(session_factory, reconciler=reconciler)
        await controller.select_role(_IDENTITY, "business")

        with patch.object(
            reconciler,
            "reconcile_identity",
            AsyncMock(side_effect=OperationalError("SELECT", {}, Exception("down"))),
        ):
            view = await controller.start(_IDENTITY)

        assert view.step is OnboardingStep.BASIC_INFO
        assert view.role is ProfileRole.BUSINESS

    async def test_locks_released(self, session_factory) -> None:
        """No identity lock is left behind after a full flow."""
        locks = IdentityLocks()
        controller = _controller(session_factory, locks=locks)

        await _complete_as(controller, ProfileRole.BUSINESS)

        assert locks.active_count() == 0
