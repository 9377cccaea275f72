"""Read-only projection of a profile for the review step.

Produces an ordered list of (label, value) pairs: the role first, then base
fields, then extension fields, each in registry order. Empty values are
left out; lists, booleans and choice tokens are rendered for display.
"""

import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from profile_onboarding.core.enums import ProfileRole
from profile_onboarding.core.errors import NotFoundError
from profile_onboarding.repositories.profile_repository import (
    ProfileRepository,
    base_values,
    extension_values,
)
from profile_onboarding.services.attribute_schema import (
    FieldKind,
    FieldRule,
    base_rules,
    rules,
)

ROLE_LABEL = "Role"
_LIST_SEPARATOR = ", "
_TRUE_TEXT = "Yes"


@dataclass(frozen=True)
class ReviewItem:
    """One displayed attribute."""

    label: str
    value: str


@dataclass(frozen=True)
class ReviewProjection:
    """Ordered review items for an identity.

    Attributes:
        role: Role on the base profile, if selected.
        items: Display items in review order.
        is_complete: Whether the stored profile is marked complete.
    """

    role: ProfileRole | None
    items: tuple[ReviewItem, ...]
    is_complete: bool = False


def format_value(rule: FieldRule, value: Any) -> str | None:
    """Render a stored value for display, or None to suppress it.

    Args:
        rule: The field's registry rule.
        value: Stored value.

    Returns:
        Display text, or None for None, "", [] and False.
    """
    if value is None or value is False or value == "" or value == []:
        return None
    if rule.kind is FieldKind.BOOLEAN:
        return _TRUE_TEXT
    if rule.kind is FieldKind.TEXT_LIST:
        return _LIST_SEPARATOR.join(str(v) for v in value)
    if rule.kind is FieldKind.CHOICE:
        return rule.choice_label(value)
    return str(value)


def project_values(
    role: ProfileRole | None,
    base: Mapping[str, Any],
    extension: Mapping[str, Any],
) -> tuple[ReviewItem, ...]:
    """Build review items from plain values. Pure."""
    items: list[ReviewItem] = []
    if role is not None:
        items.append(ReviewItem(ROLE_LABEL, role.label))

    field_sets = [(base_rules(), base)]
    if role is not None:
        field_sets.append((rules(role), extension))

    for field_rules, values in field_sets:
        for rule in field_rules:
            text = format_value(rule, values.get(rule.name))
            if text is not None:
                items.append(ReviewItem(rule.label, text))
    return tuple(items)


class ReviewProjector:
    """Builds ReviewProjection objects from the profile store."""

    @staticmethod
    async def project(db: AsyncSession, identity_id: uuid.UUID) -> ReviewProjection:
        """Project the stored profile for review.

        Args:
            db: Async database session. Nothing is written.
            identity_id: Identity UUID.

        Returns:
            ReviewProjection for the identity.

        Raises:
            NotFoundError: If the identity has no base profile yet.
        """
        base = await ProfileRepository.get_base(db, identity_id)
        if base is None:
            raise NotFoundError("Profile")

        role = ProfileRole.from_string(base.role) if base.role else None
        extension: dict[str, Any] = {}
        if role is not None:
            row = await ProfileRepository.get_extension(db, identity_id, role)
            if row is not None:
                extension = extension_values(row)

        return ReviewProjection(
            role=role,
            items=project_values(role, base_values(base), extension),
            is_complete=base.is_profile_complete,
        )
