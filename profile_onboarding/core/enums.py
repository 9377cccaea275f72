"""Shared enumerations for roles, onboarding steps, and record states.

Values match the check constraints declared on the onboarding tables.
"""

from enum import Enum, IntEnum

from profile_onboarding.core.errors import UnknownRoleError


class ProfileRole(str, Enum):
    """The four mutually exclusive roles an identity may declare."""

    BUSINESS = "business"
    PROFESSIONAL = "professional"
    CAPITAL_PROVIDER = "capital_provider"
    INSTITUTION = "institution"

    @classmethod
    def from_string(cls, value: str) -> "ProfileRole":
        """Convert a discriminant string to enum.

        Args:
            value: Role string from a request or the database.

        Returns:
            The corresponding ProfileRole.

        Raises:
            UnknownRoleError: If the string doesn't match any role.
        """
        for role in cls:
            if role.value == value:
                return role
        raise UnknownRoleError(value)

    @property
    def label(self) -> str:
        """Human-readable role name shown on the review screen."""
        return _ROLE_LABELS[self]


_ROLE_LABELS: dict[ProfileRole, str] = {
    ProfileRole.BUSINESS: "SME / Business",
    ProfileRole.PROFESSIONAL: "Professional / Freelancer",
    ProfileRole.CAPITAL_PROVIDER: "Investor / Capital Provider",
    ProfileRole.INSTITUTION: "Government Institution",
}

ROLE_VALUES: tuple[str, ...] = tuple(r.value for r in ProfileRole)


class OnboardingStep(IntEnum):
    """Step positions in the onboarding flow.

    Integer ordering matters: the resume tracker stores the highest
    validated step and comparisons use plain integer order.
    """

    IDLE = 0
    ROLE_SELECT = 1
    BASIC_INFO = 2
    ROLE_DETAILS = 3
    REVIEW = 4
    COMPLETE = 5


class DraftMode(str, Enum):
    """Whether the tracker belongs to first-time onboarding or an edit."""

    ONBOARDING = "onboarding"
    EDIT = "edit"


class PendingSyncStatus(str, Enum):
    """Lifecycle of a degraded-mode completion record."""

    PENDING = "pending"
    RECONCILED = "reconciled"
    FLAGGED = "flagged"
    SUPERSEDED = "superseded"
