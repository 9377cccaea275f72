"""Downstream routing after a completion.

Once a profile completes, the identity continues to a role-specific
assessment. The onboarding core only emits a routing signal; what happens
at the destination belongs to other services.
"""

from dataclasses import dataclass
from typing import Protocol

from profile_onboarding.core.enums import ProfileRole

ASSESSMENT_ROUTES: dict[ProfileRole, str] = {
    ProfileRole.BUSINESS: "/sme-assessment",
    ProfileRole.PROFESSIONAL: "/professional-assessment",
    ProfileRole.CAPITAL_PROVIDER: "/investor-assessment",
    ProfileRole.INSTITUTION: "/government-assessment",
}


@dataclass(frozen=True)
class RoutingSignal:
    """Where the identity goes after completing.

    Attributes:
        role: Completed role.
        outcome: "success" or "degraded".
        next_route: Path of the next screen.
    """

    role: ProfileRole
    outcome: str
    next_route: str


class AssessmentRouter(Protocol):
    """Decides the next destination for a completed identity."""

    def route(self, role: ProfileRole, outcome: str) -> RoutingSignal:
        """Build the routing signal for a completed role."""
        ...


class RouteTableRouter:
    """Router backed by a static role-to-path table."""

    def __init__(self, routes: dict[ProfileRole, str] | None = None) -> None:
        """Initialize with a route table.

        Args:
            routes: Role to path mapping. Defaults to ASSESSMENT_ROUTES.
        """
        self._routes = dict(routes or ASSESSMENT_ROUTES)

    def route(self, role: ProfileRole, outcome: str) -> RoutingSignal:
        """Build the routing signal for a completed role.

        Args:
            role: Completed role.
            outcome: Completion outcome value.

        Returns:
            RoutingSignal naming the role's next screen.

        Raises:
            KeyError: If the table has no entry for the role.
        """
        return RoutingSignal(role=role, outcome=outcome, next_route=self._routes[role])
