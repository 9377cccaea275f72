"""Role extension models - the role-specific half of a profile.

Four variant tables, one per role, plus two supporting tables:
- role_extension_slots: the single active-extension claim per identity.
  Every variant row references (identity_id, role) in this table and pins
  its own role with a check constraint, so at most one extension can be
  active per identity across all four tables combined.
- retired_role_extensions: archive of extensions removed by a role change.
"""

import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    ForeignKey,
    ForeignKeyConstraint,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    false,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from profile_onboarding.core.enums import ROLE_VALUES, ProfileRole
from profile_onboarding.models.base import Base, JSONColumn, TimestampMixin

_ROLE_CHECK = "role IN (" + ", ".join(f"'{r}'" for r in ROLE_VALUES) + ")"


def _extension_table_args(table: str, role: ProfileRole) -> tuple:
    return (
        ForeignKeyConstraint(
            ["identity_id", "role"],
            ["role_extension_slots.identity_id", "role_extension_slots.role"],
            ondelete="CASCADE",
            name=f"fk_{table}_slot",
        ),
        CheckConstraint(f"role = '{role.value}'", name=f"ck_{table}_role"),
    )


class RoleExtensionSlot(Base):
    """Claim on the single active role extension for an identity."""

    __tablename__ = "role_extension_slots"
    __table_args__ = (
        UniqueConstraint("identity_id", "role", name="uq_role_extension_slots_identity_role"),
        CheckConstraint(_ROLE_CHECK, name="ck_role_extension_slots_role"),
    )

    identity_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("base_profiles.identity_id", ondelete="CASCADE"),
        primary_key=True,
    )
    role: Mapped[str] = mapped_column(String(30), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        server_default=func.now(),
        nullable=False,
    )


class RoleExtensionMixin(TimestampMixin):
    """Key columns shared by the four variant tables."""

    identity_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    role: Mapped[str] = mapped_column(String(30), nullable=False)


# =============================================================================
# Variant tables
# =============================================================================


class BusinessProfile(Base, RoleExtensionMixin):
    """Extension for small and medium businesses."""

    __tablename__ = "business_profiles"
    __table_args__ = _extension_table_args(__tablename__, ProfileRole.BUSINESS)

    business_name: Mapped[str] = mapped_column(String(100), nullable=False)
    industry: Mapped[str] = mapped_column(String(100), nullable=False)
    business_stage: Mapped[str] = mapped_column(String(20), nullable=False)
    services_or_products: Mapped[str] = mapped_column(Text, nullable=False)
    funding_needed: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default=false(), nullable=False
    )
    funding_range: Mapped[str | None] = mapped_column(String(50), nullable=True)
    team_size_range: Mapped[str | None] = mapped_column(String(20), nullable=True)
    registration_status: Mapped[str | None] = mapped_column(String(50), nullable=True)
    top_needs: Mapped[list] = mapped_column(JSONColumn, default=list, nullable=False)
    areas_served: Mapped[list] = mapped_column(JSONColumn, default=list, nullable=False)
    sectors_of_interest: Mapped[list] = mapped_column(
        JSONColumn, default=list, nullable=False
    )
    preferred_support: Mapped[list] = mapped_column(
        JSONColumn, default=list, nullable=False
    )


class ProfessionalProfile(Base, RoleExtensionMixin):
    """Extension for independent professionals and freelancers."""

    __tablename__ = "professional_profiles"
    __table_args__ = _extension_table_args(__tablename__, ProfileRole.PROFESSIONAL)

    professional_title: Mapped[str] = mapped_column(String(100), nullable=False)
    primary_skills: Mapped[list] = mapped_column(JSONColumn, default=list, nullable=False)
    services_offered: Mapped[str] = mapped_column(Text, nullable=False)
    experience_level: Mapped[str] = mapped_column(String(20), nullable=False)
    availability: Mapped[str] = mapped_column(String(20), nullable=False)
    work_mode: Mapped[str] = mapped_column(String(20), nullable=False)
    rate_type: Mapped[str] = mapped_column(String(20), nullable=False)
    rate_range: Mapped[str] = mapped_column(String(50), nullable=False)
    portfolio_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    certifications: Mapped[list] = mapped_column(JSONColumn, default=list, nullable=False)
    languages: Mapped[list] = mapped_column(JSONColumn, default=list, nullable=False)
    preferred_industries: Mapped[list] = mapped_column(
        JSONColumn, default=list, nullable=False
    )


class CapitalProviderProfile(Base, RoleExtensionMixin):
    """Extension for investors and other capital providers."""

    __tablename__ = "capital_provider_profiles"
    __table_args__ = _extension_table_args(__tablename__, ProfileRole.CAPITAL_PROVIDER)

    provider_type: Mapped[str] = mapped_column(String(20), nullable=False)
    ticket_size_range: Mapped[str] = mapped_column(String(50), nullable=False)
    investment_stage_focus: Mapped[list] = mapped_column(
        JSONColumn, default=list, nullable=False
    )
    sectors_of_interest: Mapped[list] = mapped_column(
        JSONColumn, default=list, nullable=False
    )
    investment_preferences: Mapped[list] = mapped_column(
        JSONColumn, default=list, nullable=False
    )
    geo_focus: Mapped[list] = mapped_column(JSONColumn, default=list, nullable=False)
    thesis: Mapped[str | None] = mapped_column(Text, nullable=True)
    decision_timeline: Mapped[str | None] = mapped_column(String(50), nullable=True)


class InstitutionProfile(Base, RoleExtensionMixin):
    """Extension for government and public institutions."""

    __tablename__ = "institution_profiles"
    __table_args__ = _extension_table_args(__tablename__, ProfileRole.INSTITUTION)

    institution_name: Mapped[str] = mapped_column(String(150), nullable=False)
    department_or_unit: Mapped[str] = mapped_column(String(100), nullable=False)
    institution_type: Mapped[str] = mapped_column(String(30), nullable=False)
    mandate_areas: Mapped[list] = mapped_column(JSONColumn, default=list, nullable=False)
    services_or_programmes: Mapped[str] = mapped_column(Text, nullable=False)
    collaboration_interests: Mapped[list] = mapped_column(
        JSONColumn, default=list, nullable=False
    )
    contact_person_title: Mapped[str] = mapped_column(String(100), nullable=False)
    procurement_portal_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    current_initiatives: Mapped[str | None] = mapped_column(Text, nullable=True)
    eligibility_criteria: Mapped[str | None] = mapped_column(Text, nullable=True)


RoleExtension = (
    BusinessProfile | ProfessionalProfile | CapitalProviderProfile | InstitutionProfile
)

ROLE_EXTENSION_MODELS: dict[ProfileRole, type[RoleExtensionMixin]] = {
    ProfileRole.BUSINESS: BusinessProfile,
    ProfileRole.PROFESSIONAL: ProfessionalProfile,
    ProfileRole.CAPITAL_PROVIDER: CapitalProviderProfile,
    ProfileRole.INSTITUTION: InstitutionProfile,
}

# Columns managed by the repository rather than written from step values.
EXTENSION_KEY_COLUMNS: frozenset[str] = frozenset(
    {"identity_id", "role", "created_at", "updated_at"}
)


def extension_field_names(role: ProfileRole) -> tuple[str, ...]:
    """Attribute column names of a role's extension table, in declaration order.

    Args:
        role: The role whose variant table to inspect.

    Returns:
        Column names excluding keys and timestamps.
    """
    table = ROLE_EXTENSION_MODELS[role].__table__
    return tuple(c.name for c in table.columns if c.name not in EXTENSION_KEY_COLUMNS)


# =============================================================================
# Archive
# =============================================================================


class RetiredRoleExtension(Base):
    """Snapshot of an extension removed by a role change."""

    __tablename__ = "retired_role_extensions"
    __table_args__ = (
        CheckConstraint(_ROLE_CHECK, name="ck_retired_role_extensions_role"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    identity_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("base_profiles.identity_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    role: Mapped[str] = mapped_column(String(30), nullable=False)
    payload: Mapped[dict] = mapped_column(JSONColumn, nullable=False)
    reason: Mapped[str] = mapped_column(String(50), nullable=False)
    retired_at: Mapped[datetime] = mapped_column(
        server_default=func.now(),
        nullable=False,
    )
