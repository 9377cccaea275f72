"""Onboarding API router.

Endpoints:
- GET  /session          Resume point and saved drafts.
- POST /role             Select the role.
- POST /basic-info       Save base profile step.
- POST /role-details     Save role extension step.
- POST /back             Step back without validation.
- POST /edit             Re-enter a completed profile for editing.
- GET  /review           Review projection of the saved profile.
- POST /complete         Confirm review and complete the profile.
- GET  /schema/{role}    Field rules for building the step forms.
"""

from typing import Annotated, Any, Literal

import structlog
from fastapi import APIRouter, Query, Request
from pydantic import BaseModel, ConfigDict

from profile_onboarding.api.deps import Controller, CurrentIdentity
from profile_onboarding.core.config import settings
from profile_onboarding.core.enums import OnboardingStep, ProfileRole
from profile_onboarding.core.errors import ValidationError
from profile_onboarding.core.rate_limiting import limiter
from profile_onboarding.core.responses import DataResponse
from profile_onboarding.services import attribute_schema
from profile_onboarding.services.review_projector import ReviewProjection
from profile_onboarding.services.step_controller import SessionView, StepResult

logger = structlog.get_logger()

router = APIRouter()


# =============================================================================
# Request Schemas
# =============================================================================


class RoleSelectionRequest(BaseModel):
    """Request body for POST /role.

    ``role`` is optional here so an empty choice is reported as a field
    error by the registry rather than as a schema error.
    """

    model_config = ConfigDict(extra="forbid")

    role: str | None = None
    retire_previous: bool = False


class BasicInfoRequest(BaseModel):
    """Request body for POST /basic-info."""

    model_config = ConfigDict(extra="forbid")

    values: dict[str, Any]


class RoleDetailsRequest(BaseModel):
    """Request body for POST /role-details."""

    model_config = ConfigDict(extra="forbid")

    values: dict[str, Any]
    replace_existing: bool = False


class StepBackRequest(BaseModel):
    """Request body for POST /back."""

    model_config = ConfigDict(extra="forbid")

    from_step: Literal["basic_info", "role_details", "review"]


class EditRequest(BaseModel):
    """Request body for POST /edit."""

    model_config = ConfigDict(extra="forbid")

    at_step: Literal["basic_info", "role_details"] = "basic_info"


# =============================================================================
# Helper Functions
# =============================================================================


def _step_name(step: OnboardingStep) -> str:
    return step.name.lower()


def _step_from_name(name: str) -> OnboardingStep:
    return OnboardingStep[name.upper()]


def _raise_field_errors(result: StepResult) -> None:
    """Raise ValidationError carrying the step's field errors, if any."""
    if result.field_errors:
        raise ValidationError(
            message="Step validation failed",
            details=[
                {"field": name, "error": message}
                for name, message in result.field_errors.items()
            ],
        )


def _result_to_dict(result: StepResult) -> dict:
    """Convert a StepResult to an API response dict.

    Args:
        result: Result of a step operation.

    Returns:
        Dict with step, signals, completion and routing data.
    """
    completion = None
    if result.outcome is not None:
        completion = {
            "status": result.outcome.status.value,
            "path": result.outcome.path.value if result.outcome.path else None,
            "message": result.outcome.message,
            "pending_sync_id": (
                str(result.outcome.pending_sync_id)
                if result.outcome.pending_sync_id
                else None
            ),
        }
    routing = None
    if result.routing is not None:
        routing = {
            "role": result.routing.role.value,
            "outcome": result.routing.outcome,
            "next_route": result.routing.next_route,
        }
    return {
        "step": _step_name(result.step),
        "ok": result.ok,
        "role": result.role.value if result.role else None,
        "signals": list(result.signals),
        "message": result.message,
        "completion": completion,
        "routing": routing,
    }


def _session_to_dict(view: SessionView) -> dict:
    """Convert a SessionView to an API response dict."""
    return {
        "step": _step_name(view.step),
        "role": view.role.value if view.role else None,
        "mode": view.mode.value,
        "is_complete": view.is_complete,
        "degraded": view.degraded,
        "message": view.message,
        "base": view.base,
        "extension": view.extension,
    }


def _projection_to_dict(projection: ReviewProjection) -> dict:
    """Convert a ReviewProjection to an API response dict."""
    return {
        "role": projection.role.value if projection.role else None,
        "is_complete": projection.is_complete,
        "items": [{"label": i.label, "value": i.value} for i in projection.items],
    }


def _rule_to_dict(rule: attribute_schema.FieldRule) -> dict:
    return {
        "name": rule.name,
        "label": rule.label,
        "kind": rule.kind.value,
        "required": rule.required,
        "min_length": rule.min_length,
        "max_length": rule.max_length,
        "min_items": rule.min_items,
        "pattern": rule.pattern,
        "choices": [{"value": v, "label": label} for v, label in rule.choices],
    }


# =============================================================================
# Endpoints
# =============================================================================


ClientStep = Annotated[
    int | None,
    Query(ge=0, le=5, description="Step cached by the client, if any"),
]


@router.get("/session")
async def get_session(
    identity: CurrentIdentity,
    controller: Controller,
    client_step: ClientStep = None,
) -> DataResponse[dict]:
    """Resume point for the current identity.

    Args:
        identity: Current identity (injected).
        controller: Step controller (injected).
        client_step: Client-side cached step, used only as a fallback hint.

    Returns:
        DataResponse with the resume step, mode and saved drafts.
    """
    view = await controller.start(identity, client_step=client_step)
    return DataResponse(data=_session_to_dict(view))


@router.post("/role")
@limiter.limit(settings.rate_limit_onboarding)
async def select_role(
    request: Request,  # noqa: ARG001
    body: RoleSelectionRequest,
    identity: CurrentIdentity,
    controller: Controller,
) -> DataResponse[dict]:
    """Select the identity's role.

    Raises:
        ValidationError: If no role was chosen.
        UnknownRoleError: If the role is not one of the four roles.
    """
    result = await controller.select_role(
        identity, body.role, retire_previous=body.retire_previous
    )
    _raise_field_errors(result)
    logger.info(
        "onboarding.transition",
        identity_id=str(identity.identity_id),
        operation="select_role",
        step=_step_name(result.step),
    )
    return DataResponse(data=_result_to_dict(result))


@router.post("/basic-info")
@limiter.limit(settings.rate_limit_onboarding)
async def submit_basic_info(
    request: Request,  # noqa: ARG001
    body: BasicInfoRequest,
    identity: CurrentIdentity,
    controller: Controller,
) -> DataResponse[dict]:
    """Save the base profile step.

    Raises:
        ValidationError: If any field fails validation.
        StepOrderError: If no role has been selected.
    """
    result = await controller.submit_basic_info(identity, body.values)
    _raise_field_errors(result)
    logger.info(
        "onboarding.transition",
        identity_id=str(identity.identity_id),
        operation="submit_basic_info",
        step=_step_name(result.step),
    )
    return DataResponse(data=_result_to_dict(result))


@router.post("/role-details")
@limiter.limit(settings.rate_limit_onboarding)
async def submit_role_details(
    request: Request,  # noqa: ARG001
    body: RoleDetailsRequest,
    identity: CurrentIdentity,
    controller: Controller,
) -> DataResponse[dict]:
    """Save the role extension step.

    Raises:
        ValidationError: If any field fails validation.
        StepOrderError: If basic info has not been saved.
        RoleConflictError: If another role's extension is active.
    """
    result = await controller.submit_role_details(
        identity, body.values, replace_existing=body.replace_existing
    )
    _raise_field_errors(result)
    logger.info(
        "onboarding.transition",
        identity_id=str(identity.identity_id),
        operation="submit_role_details",
        step=_step_name(result.step),
    )
    return DataResponse(data=_result_to_dict(result))


@router.post("/back")
async def go_back(
    body: StepBackRequest,
    identity: CurrentIdentity,
    controller: Controller,
) -> DataResponse[dict]:
    """Step back one screen. Drafts are kept."""
    result = await controller.go_back(identity, _step_from_name(body.from_step))
    return DataResponse(data=_result_to_dict(result))


@router.post("/edit")
@limiter.limit(settings.rate_limit_onboarding)
async def begin_edit(
    request: Request,  # noqa: ARG001
    body: EditRequest,
    identity: CurrentIdentity,
    controller: Controller,
) -> DataResponse[dict]:
    """Re-enter a completed profile for editing.

    Raises:
        InvalidStateError: If the profile is not complete.
    """
    result = await controller.begin_edit(identity, _step_from_name(body.at_step))
    return DataResponse(data=_result_to_dict(result))


@router.get("/review")
async def get_review(
    identity: CurrentIdentity, controller: Controller
) -> DataResponse[dict]:
    """Review projection of the saved profile.

    Raises:
        NotFoundError: If no profile has been started.
    """
    projection = await controller.review(identity)
    return DataResponse(data=_projection_to_dict(projection))


@router.post("/complete")
@limiter.limit(settings.rate_limit_completion)
async def confirm_review(
    request: Request,  # noqa: ARG001
    identity: CurrentIdentity,
    controller: Controller,
) -> DataResponse[dict]:
    """Confirm the review and complete the profile.

    A completion that fails in the store is reported in the response body
    (completion.status == "failure"), not as an HTTP error.

    Raises:
        ValidationError: If the saved profile no longer validates.
        StepOrderError: If role details have not been saved.
    """
    result = await controller.confirm_review(identity)
    _raise_field_errors(result)
    status = result.outcome.status.value if result.outcome else None
    logger.info(
        "onboarding.completion",
        identity_id=str(identity.identity_id),
        status=status,
        path=result.outcome.path.value if result.outcome and result.outcome.path else None,
    )
    return DataResponse(data=_result_to_dict(result))


@router.get("/schema/{role}")
async def get_schema(role: str) -> DataResponse[dict]:
    """Field rules for the base profile and a role's extension.

    Raises:
        UnknownRoleError: If the role is not one of the four roles.
    """
    resolved = ProfileRole.from_string(role)
    return DataResponse(
        data={
            "role": resolved.value,
            "role_label": resolved.label,
            "base": [_rule_to_dict(r) for r in attribute_schema.base_rules()],
            "extension": [_rule_to_dict(r) for r in attribute_schema.rules(resolved)],
        }
    )
