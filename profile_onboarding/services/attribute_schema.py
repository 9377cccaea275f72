"""Attribute schema registry for base profiles and role extensions.

Declares, per role, which attributes exist and how they are validated, and
provides a single validation entry point used by every onboarding step.

Everything here is pure: no I/O and no mutation of inputs. Validation
failures are returned as field errors, never raised. The one exception is
an unrecognised role discriminant, which raises UnknownRoleError.

Normalisation rules:
- Text values are trimmed; an empty string becomes None.
- List values drop blank items and duplicates, keeping first-seen order.
- Missing optional values take their kind's empty default
  (None, [] or False).
"""

import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from profile_onboarding.core.enums import OnboardingStep, ProfileRole

# =============================================================================
# Rule types
# =============================================================================


class FieldKind(Enum):
    """Value shape a field accepts."""

    TEXT = "text"
    CHOICE = "choice"
    TEXT_LIST = "text_list"
    BOOLEAN = "boolean"
    URL = "url"


@dataclass(frozen=True)
class FieldRule:
    """Validation rule for one attribute.

    Attributes:
        name: Attribute name; matches the column name in the store.
        label: Human-readable label used in errors and the review screen.
        kind: Value shape.
        required: Whether a non-empty value must be supplied.
        min_length: Minimum text length after trimming.
        max_length: Maximum text length after trimming.
        min_items: Minimum number of list items (required lists only).
        pattern: Regex a text value must fully match.
        choices: Allowed (value, label) pairs for CHOICE fields.
    """

    name: str
    label: str
    kind: FieldKind = FieldKind.TEXT
    required: bool = False
    min_length: int | None = None
    max_length: int | None = None
    min_items: int = 0
    pattern: str | None = None
    choices: tuple[tuple[str, str], ...] = ()

    def choice_label(self, value: str) -> str:
        """Return the display label for a choice value (the value if unknown)."""
        return dict(self.choices).get(value, value)


@dataclass(frozen=True)
class StepValidation:
    """Outcome of validating one step's values.

    Attributes:
        ok: True when there are no field errors.
        field_errors: Field name to message.
        cleaned: Normalised values (only meaningful when ok).
    """

    ok: bool
    field_errors: dict[str, str] = field(default_factory=dict)
    cleaned: dict[str, Any] = field(default_factory=dict)


CrossFieldCheck = Callable[[Mapping[str, Any]], dict[str, str]]

# =============================================================================
# Choice sets
# =============================================================================

BUSINESS_STAGES = (
    ("idea", "Idea Stage"),
    ("early", "Early Stage"),
    ("growth", "Growth Stage"),
    ("established", "Established"),
)
EXPERIENCE_LEVELS = (
    ("junior", "Junior"),
    ("mid", "Mid-Level"),
    ("senior", "Senior"),
    ("expert", "Expert"),
)
AVAILABILITY = (
    ("available", "Available"),
    ("limited", "Limited"),
    ("unavailable", "Unavailable"),
)
WORK_MODES = (
    ("remote", "Remote"),
    ("hybrid", "Hybrid"),
    ("on-site", "On-site"),
)
RATE_TYPES = (
    ("hourly", "Hourly Rate"),
    ("daily", "Daily Rate"),
    ("project", "Project-based"),
)
PROVIDER_TYPES = (
    ("angel", "Angel Investor"),
    ("vc", "Venture Capital"),
    ("fund", "Investment Fund"),
    ("corporate", "Corporate Investor"),
    ("dfi", "Development Finance Institution"),
    ("other", "Other"),
)
INSTITUTION_TYPES = (
    ("ministry", "Ministry"),
    ("agency", "Government Agency"),
    ("parastatal", "Parastatal"),
    ("local_authority", "Local Authority"),
    ("regulator", "Regulatory Body"),
    ("other", "Other Institution"),
)

_PHONE_PATTERN = r"^(\+260|0)?[0-9]{9}$"
_URL_PATTERN = re.compile(r"^https?://[^\s/$.?#][^\s]*$", re.IGNORECASE)

# =============================================================================
# Rule tables
# =============================================================================

_BASE_RULES: tuple[FieldRule, ...] = (
    FieldRule("full_name", "Full Name", required=True, min_length=2, max_length=80),
    FieldRule("display_name", "Display Name", max_length=50),
    FieldRule("phone", "Phone", pattern=_PHONE_PATTERN),
    FieldRule("country", "Country", required=True, min_length=2, max_length=60),
    FieldRule("city", "City", required=True, min_length=2, max_length=60),
    FieldRule("bio", "Bio", required=True, min_length=20, max_length=280),
    FieldRule("website_url", "Website", kind=FieldKind.URL),
    FieldRule("linkedin_url", "LinkedIn", kind=FieldKind.URL),
    FieldRule("avatar_url", "Avatar", kind=FieldKind.URL),
)

_ROLE_RULES: dict[ProfileRole, tuple[FieldRule, ...]] = {
    ProfileRole.BUSINESS: (
        FieldRule(
            "business_name", "Business Name", required=True, min_length=2, max_length=100
        ),
        FieldRule("industry", "Industry", required=True, min_length=2, max_length=100),
        FieldRule(
            "business_stage",
            "Business Stage",
            kind=FieldKind.CHOICE,
            required=True,
            choices=BUSINESS_STAGES,
        ),
        FieldRule(
            "services_or_products",
            "Services or Products",
            required=True,
            min_length=10,
            max_length=500,
        ),
        FieldRule("funding_needed", "Funding Needed", kind=FieldKind.BOOLEAN),
        FieldRule("funding_range", "Funding Range", max_length=50),
        FieldRule("team_size_range", "Team Size", max_length=20),
        FieldRule("registration_status", "Registration Status", max_length=50),
        FieldRule(
            "top_needs", "Top Needs", kind=FieldKind.TEXT_LIST, required=True, min_items=1
        ),
        FieldRule(
            "areas_served",
            "Areas Served",
            kind=FieldKind.TEXT_LIST,
            required=True,
            min_items=1,
        ),
        FieldRule("sectors_of_interest", "Sectors of Interest", kind=FieldKind.TEXT_LIST),
        FieldRule("preferred_support", "Preferred Support", kind=FieldKind.TEXT_LIST),
    ),
    ProfileRole.PROFESSIONAL: (
        FieldRule(
            "professional_title",
            "Professional Title",
            required=True,
            min_length=2,
            max_length=100,
        ),
        FieldRule(
            "primary_skills",
            "Primary Skills",
            kind=FieldKind.TEXT_LIST,
            required=True,
            min_items=1,
        ),
        FieldRule(
            "services_offered",
            "Services Offered",
            required=True,
            min_length=10,
            max_length=500,
        ),
        FieldRule(
            "experience_level",
            "Experience Level",
            kind=FieldKind.CHOICE,
            required=True,
            choices=EXPERIENCE_LEVELS,
        ),
        FieldRule(
            "availability",
            "Availability",
            kind=FieldKind.CHOICE,
            required=True,
            choices=AVAILABILITY,
        ),
        FieldRule(
            "work_mode", "Work Mode", kind=FieldKind.CHOICE, required=True, choices=WORK_MODES
        ),
        FieldRule(
            "rate_type", "Rate Type", kind=FieldKind.CHOICE, required=True, choices=RATE_TYPES
        ),
        FieldRule("rate_range", "Rate Range", required=True, max_length=50),
        FieldRule("portfolio_url", "Portfolio", kind=FieldKind.URL),
        FieldRule("certifications", "Certifications", kind=FieldKind.TEXT_LIST),
        FieldRule("languages", "Languages", kind=FieldKind.TEXT_LIST),
        FieldRule(
            "preferred_industries", "Preferred Industries", kind=FieldKind.TEXT_LIST
        ),
    ),
    ProfileRole.CAPITAL_PROVIDER: (
        FieldRule(
            "provider_type",
            "Investor Type",
            kind=FieldKind.CHOICE,
            required=True,
            choices=PROVIDER_TYPES,
        ),
        FieldRule("ticket_size_range", "Ticket Size", required=True, max_length=50),
        FieldRule(
            "investment_stage_focus",
            "Investment Stage Focus",
            kind=FieldKind.TEXT_LIST,
            required=True,
            min_items=1,
        ),
        FieldRule(
            "sectors_of_interest",
            "Sectors of Interest",
            kind=FieldKind.TEXT_LIST,
            required=True,
            min_items=1,
        ),
        FieldRule(
            "investment_preferences",
            "Investment Preferences",
            kind=FieldKind.TEXT_LIST,
            required=True,
            min_items=1,
        ),
        FieldRule(
            "geo_focus",
            "Geographic Focus",
            kind=FieldKind.TEXT_LIST,
            required=True,
            min_items=1,
        ),
        FieldRule("thesis", "Investment Thesis", max_length=1000),
        FieldRule("decision_timeline", "Decision Timeline", max_length=50),
    ),
    ProfileRole.INSTITUTION: (
        FieldRule(
            "institution_name",
            "Institution Name",
            required=True,
            min_length=2,
            max_length=150,
        ),
        FieldRule(
            "department_or_unit",
            "Department or Unit",
            required=True,
            min_length=2,
            max_length=100,
        ),
        FieldRule(
            "institution_type",
            "Institution Type",
            kind=FieldKind.CHOICE,
            required=True,
            choices=INSTITUTION_TYPES,
        ),
        FieldRule(
            "mandate_areas",
            "Mandate Areas",
            kind=FieldKind.TEXT_LIST,
            required=True,
            min_items=1,
        ),
        FieldRule(
            "services_or_programmes",
            "Services or Programmes",
            required=True,
            min_length=10,
            max_length=500,
        ),
        FieldRule(
            "collaboration_interests",
            "Collaboration Interests",
            kind=FieldKind.TEXT_LIST,
            required=True,
            min_items=1,
        ),
        FieldRule(
            "contact_person_title",
            "Contact Person Title",
            required=True,
            min_length=2,
            max_length=100,
        ),
        FieldRule("procurement_portal_url", "Procurement Portal", kind=FieldKind.URL),
        FieldRule("current_initiatives", "Current Initiatives", max_length=500),
        FieldRule("eligibility_criteria", "Eligibility Criteria", max_length=500),
    ),
}


def _funding_range_when_needed(values: Mapping[str, Any]) -> dict[str, str]:
    if values.get("funding_needed") and not values.get("funding_range"):
        return {"funding_range": "Funding Range is required when funding is needed"}
    return {}


_CROSS_FIELD_CHECKS: dict[ProfileRole, tuple[CrossFieldCheck, ...]] = {
    ProfileRole.BUSINESS: (_funding_range_when_needed,),
}

# =============================================================================
# Public API
# =============================================================================


def base_rules() -> tuple[FieldRule, ...]:
    """Rules for the role-independent base profile, in display order."""
    return _BASE_RULES


def rules(role: ProfileRole | str) -> tuple[FieldRule, ...]:
    """Rules for a role's extension, in display order.

    Args:
        role: Role enum or discriminant string.

    Returns:
        Ordered tuple of field rules.

    Raises:
        UnknownRoleError: If the discriminant is not one of the four roles.
    """
    return _ROLE_RULES[_coerce_role(role)]


def validate_step(
    step: OnboardingStep,
    role: ProfileRole | str | None,
    values: Mapping[str, Any],
) -> StepValidation:
    """Validate the values submitted for one onboarding step.

    Args:
        step: ROLE_SELECT, BASIC_INFO, ROLE_DETAILS or REVIEW.
        role: Selected role. Required for ROLE_DETAILS and REVIEW.
        values: Submitted values. For ROLE_SELECT a mapping with a "role"
            key; for REVIEW a mapping with "base" and "extension" mappings.

    Returns:
        StepValidation with field errors and normalised values.

    Raises:
        UnknownRoleError: If a non-empty role discriminant is not recognised.
        ValueError: If the step has no inputs to validate, or a role is
            required but missing.
    """
    if step is OnboardingStep.ROLE_SELECT:
        return _validate_role_select(values)
    if step is OnboardingStep.BASIC_INFO:
        return validate_fields(_BASE_RULES, values)
    if step is OnboardingStep.ROLE_DETAILS:
        return validate_extension(_require_role(role), values)
    if step is OnboardingStep.REVIEW:
        resolved = _require_role(role)
        base = validate_fields(_BASE_RULES, values.get("base") or {})
        extension = validate_extension(resolved, values.get("extension") or {})
        errors = {**base.field_errors, **extension.field_errors}
        return StepValidation(
            ok=not errors,
            field_errors=errors,
            cleaned={"base": base.cleaned, "extension": extension.cleaned},
        )
    msg = f"Step {step.name} has no inputs to validate"
    raise ValueError(msg)


def validate_extension(role: ProfileRole, values: Mapping[str, Any]) -> StepValidation:
    """Validate role extension values, including cross-field checks."""
    result = validate_fields(_ROLE_RULES[role], values)
    errors = dict(result.field_errors)
    for check in _CROSS_FIELD_CHECKS.get(role, ()):
        for name, message in check(result.cleaned).items():
            errors.setdefault(name, message)
    return StepValidation(ok=not errors, field_errors=errors, cleaned=result.cleaned)


def validate_fields(
    field_rules: tuple[FieldRule, ...],
    values: Mapping[str, Any],
) -> StepValidation:
    """Validate and normalise values against an ordered rule set.

    Keys not declared by the rules are reported as field errors.

    Args:
        field_rules: Rules to apply.
        values: Submitted values keyed by field name.

    Returns:
        StepValidation. ``cleaned`` holds every declared field.
    """
    errors: dict[str, str] = {}
    cleaned: dict[str, Any] = {}
    declared = {r.name for r in field_rules}

    for key in values:
        if key not in declared:
            errors[key] = "Unknown field"

    for rule in field_rules:
        value, error = _check(rule, values.get(rule.name))
        cleaned[rule.name] = value
        if error:
            errors[rule.name] = error

    return StepValidation(ok=not errors, field_errors=errors, cleaned=cleaned)


# =============================================================================
# Internals
# =============================================================================


def _coerce_role(role: ProfileRole | str) -> ProfileRole:
    if isinstance(role, ProfileRole):
        return role
    return ProfileRole.from_string(role)


def _require_role(role: ProfileRole | str | None) -> ProfileRole:
    if role is None or role == "":
        msg = "A role must be selected before validating role details"
        raise ValueError(msg)
    return _coerce_role(role)


def _validate_role_select(values: Mapping[str, Any]) -> StepValidation:
    raw = values.get("role")
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return StepValidation(ok=False, field_errors={"role": "Select a role"})
    if not isinstance(raw, str):
        return StepValidation(ok=False, field_errors={"role": "Role must be text"})
    role = _coerce_role(raw.strip())
    return StepValidation(ok=True, cleaned={"role": role})


def _check(rule: FieldRule, raw: Any) -> tuple[Any, str | None]:
    """Normalise one value and return (value, error message or None)."""
    if rule.kind is FieldKind.BOOLEAN:
        if raw is None:
            return False, None
        if not isinstance(raw, bool):
            return False, f"{rule.label} must be true or false"
        return raw, None

    if rule.kind is FieldKind.TEXT_LIST:
        return _check_list(rule, raw)

    if raw is None:
        value = None
    elif isinstance(raw, str):
        value = raw.strip() or None
    else:
        return None, f"{rule.label} must be text"

    if value is None:
        if rule.required:
            return None, f"{rule.label} is required"
        return None, None

    if rule.min_length is not None and len(value) < rule.min_length:
        return value, f"{rule.label} must be at least {rule.min_length} characters"
    if rule.max_length is not None and len(value) > rule.max_length:
        return value, f"{rule.label} must be at most {rule.max_length} characters"
    if rule.pattern is not None and not re.fullmatch(rule.pattern, value):
        return value, f"{rule.label} has an invalid format"
    if rule.kind is FieldKind.URL and not _URL_PATTERN.match(value):
        return value, f"{rule.label} must be a valid URL"
    if rule.kind is FieldKind.CHOICE and value not in dict(rule.choices):
        return value, f"Select a valid {rule.label.lower()}"
    return value, None


def _check_list(rule: FieldRule, raw: Any) -> tuple[list[str], str | None]:
    if raw is None:
        items: list[str] = []
    elif isinstance(raw, list | tuple) and all(isinstance(i, str) for i in raw):
        items = []
        for item in raw:
            stripped = item.strip()
            if stripped and stripped not in items:
                items.append(stripped)
    else:
        return [], f"{rule.label} must be a list of text values"

    minimum = max(rule.min_items, 1) if rule.required else rule.min_items
    if len(items) < minimum:
        noun = "item" if minimum == 1 else "items"
        return items, f"{rule.label} needs at least {minimum} {noun}"
    if rule.max_length is not None and any(len(i) > rule.max_length for i in items):
        return items, f"{rule.label} items must be at most {rule.max_length} characters"
    return items, None
