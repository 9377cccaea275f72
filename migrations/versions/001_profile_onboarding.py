"""Create onboarding tables and ownership policies.

Revision ID: 001_profile_onboarding
Revises:
Create Date: 2026-10-19

Tables:
- base_profiles, role_extension_slots
- business_profiles, professional_profiles, capital_provider_profiles,
  institution_profiles
- retired_role_extensions, onboarding_drafts, pending_profile_syncs

Row-level security on the profile tables compares identity_id with
current_setting('app.current_identity_id'), which the primary completion
path sets per transaction. The privileged role used by the secondary path
is expected to have BYPASSRLS.
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import JSONB

revision: str = "001_profile_onboarding"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

_ROLES = "'business', 'professional', 'capital_provider', 'institution'"
_EMPTY_ARRAY = sa.text("'[]'::jsonb")

_OWNED_TABLES = (
    "base_profiles",
    "role_extension_slots",
    "business_profiles",
    "professional_profiles",
    "capital_provider_profiles",
    "institution_profiles",
    "retired_role_extensions",
    "onboarding_drafts",
)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    ]


def _extension_keys(table: str, role: str) -> list:
    return [
        sa.Column("identity_id", sa.UUID(), primary_key=True),
        sa.Column("role", sa.String(30), nullable=False),
        sa.ForeignKeyConstraint(
            ["identity_id", "role"],
            ["role_extension_slots.identity_id", "role_extension_slots.role"],
            ondelete="CASCADE",
            name=f"fk_{table}_slot",
        ),
        sa.CheckConstraint(f"role = '{role}'", name=f"ck_{table}_role"),
    ]


def _json_list(name: str) -> sa.Column:
    return sa.Column(name, JSONB(), nullable=False, server_default=_EMPTY_ARRAY)


def upgrade() -> None:
    op.create_table(
        "base_profiles",
        sa.Column("identity_id", sa.UUID(), primary_key=True),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("role", sa.String(30), nullable=True),
        sa.Column("display_name", sa.String(50), nullable=True),
        sa.Column("full_name", sa.String(80), nullable=True),
        sa.Column("phone", sa.String(20), nullable=True),
        sa.Column("country", sa.String(60), nullable=True),
        sa.Column("city", sa.String(60), nullable=True),
        sa.Column("bio", sa.Text(), nullable=True),
        sa.Column("website_url", sa.String(500), nullable=True),
        sa.Column("linkedin_url", sa.String(500), nullable=True),
        sa.Column("avatar_url", sa.String(500), nullable=True),
        sa.Column(
            "is_profile_complete",
            sa.Boolean(),
            nullable=False,
            server_default="false",
        ),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            f"role IS NULL OR role IN ({_ROLES})", name="ck_base_profiles_role"
        ),
    )

    op.create_table(
        "role_extension_slots",
        sa.Column(
            "identity_id",
            sa.UUID(),
            sa.ForeignKey("base_profiles.identity_id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("role", sa.String(30), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.UniqueConstraint(
            "identity_id", "role", name="uq_role_extension_slots_identity_role"
        ),
        sa.CheckConstraint(f"role IN ({_ROLES})", name="ck_role_extension_slots_role"),
    )

    op.create_table(
        "business_profiles",
        *_extension_keys("business_profiles", "business"),
        sa.Column("business_name", sa.String(100), nullable=False),
        sa.Column("industry", sa.String(100), nullable=False),
        sa.Column("business_stage", sa.String(20), nullable=False),
        sa.Column("services_or_products", sa.Text(), nullable=False),
        sa.Column(
            "funding_needed", sa.Boolean(), nullable=False, server_default="false"
        ),
        sa.Column("funding_range", sa.String(50), nullable=True),
        sa.Column("team_size_range", sa.String(20), nullable=True),
        sa.Column("registration_status", sa.String(50), nullable=True),
        _json_list("top_needs"),
        _json_list("areas_served"),
        _json_list("sectors_of_interest"),
        _json_list("preferred_support"),
        *_timestamps(),
    )

    op.create_table(
        "professional_profiles",
        *_extension_keys("professional_profiles", "professional"),
        sa.Column("professional_title", sa.String(100), nullable=False),
        _json_list("primary_skills"),
        sa.Column("services_offered", sa.Text(), nullable=False),
        sa.Column("experience_level", sa.String(20), nullable=False),
        sa.Column("availability", sa.String(20), nullable=False),
        sa.Column("work_mode", sa.String(20), nullable=False),
        sa.Column("rate_type", sa.String(20), nullable=False),
        sa.Column("rate_range", sa.String(50), nullable=False),
        sa.Column("portfolio_url", sa.String(500), nullable=True),
        _json_list("certifications"),
        _json_list("languages"),
        _json_list("preferred_industries"),
        *_timestamps(),
    )

    op.create_table(
        "capital_provider_profiles",
        *_extension_keys("capital_provider_profiles", "capital_provider"),
        sa.Column("provider_type", sa.String(20), nullable=False),
        sa.Column("ticket_size_range", sa.String(50), nullable=False),
        _json_list("investment_stage_focus"),
        _json_list("sectors_of_interest"),
        _json_list("investment_preferences"),
        _json_list("geo_focus"),
        sa.Column("thesis", sa.Text(), nullable=True),
        sa.Column("decision_timeline", sa.String(50), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        "institution_profiles",
        *_extension_keys("institution_profiles", "institution"),
        sa.Column("institution_name", sa.String(150), nullable=False),
        sa.Column("department_or_unit", sa.String(100), nullable=False),
        sa.Column("institution_type", sa.String(30), nullable=False),
        _json_list("mandate_areas"),
        sa.Column("services_or_programmes", sa.Text(), nullable=False),
        _json_list("collaboration_interests"),
        sa.Column("contact_person_title", sa.String(100), nullable=False),
        sa.Column("procurement_portal_url", sa.String(500), nullable=True),
        sa.Column("current_initiatives", sa.Text(), nullable=True),
        sa.Column("eligibility_criteria", sa.Text(), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        "retired_role_extensions",
        sa.Column("id", sa.UUID(), primary_key=True),
        sa.Column(
            "identity_id",
            sa.UUID(),
            sa.ForeignKey("base_profiles.identity_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("role", sa.String(30), nullable=False),
        sa.Column("payload", JSONB(), nullable=False),
        sa.Column("reason", sa.String(50), nullable=False),
        sa.Column(
            "retired_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.CheckConstraint(
            f"role IN ({_ROLES})", name="ck_retired_role_extensions_role"
        ),
    )
    op.create_index(
        "ix_retired_role_extensions_identity_id",
        "retired_role_extensions",
        ["identity_id"],
    )

    op.create_table(
        "onboarding_drafts",
        sa.Column(
            "identity_id",
            sa.UUID(),
            sa.ForeignKey("base_profiles.identity_id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("last_step", sa.SmallInteger(), nullable=False),
        sa.Column("role", sa.String(30), nullable=True),
        sa.Column(
            "mode", sa.String(20), nullable=False, server_default="onboarding"
        ),
        *_timestamps(),
        sa.CheckConstraint(
            "last_step BETWEEN 1 AND 4", name="ck_onboarding_drafts_step"
        ),
        sa.CheckConstraint(
            "mode IN ('onboarding', 'edit')", name="ck_onboarding_drafts_mode"
        ),
    )

    op.create_table(
        "pending_profile_syncs",
        sa.Column("id", sa.UUID(), primary_key=True),
        sa.Column("identity_id", sa.UUID(), nullable=False),
        sa.Column("role", sa.String(30), nullable=False),
        sa.Column("base_payload", JSONB(), nullable=False),
        sa.Column("extension_payload", JSONB(), nullable=False),
        sa.Column("payload_hash", sa.String(64), nullable=False),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("reconciled_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "status IN ('pending', 'reconciled', 'flagged', 'superseded')",
            name="ck_pending_profile_syncs_status",
        ),
        sa.CheckConstraint("attempts >= 0", name="ck_pending_profile_syncs_attempts"),
    )
    op.create_index(
        "ix_pending_profile_syncs_identity_id",
        "pending_profile_syncs",
        ["identity_id"],
    )
    # At most one open record per identical payload
    op.create_index(
        "uq_pending_profile_syncs_open_payload",
        "pending_profile_syncs",
        ["identity_id", "payload_hash"],
        unique=True,
        postgresql_where=sa.text("status = 'pending'"),
    )

    # Ownership policies. missing_ok=true makes an unset setting read as NULL,
    # which matches no rows.
    for table in _OWNED_TABLES:
        op.execute(f"ALTER TABLE {table} ENABLE ROW LEVEL SECURITY")
        op.execute(
            f"CREATE POLICY {table}_owner ON {table} "
            "USING (identity_id = current_setting('app.current_identity_id', true)::uuid) "
            "WITH CHECK (identity_id = current_setting('app.current_identity_id', true)::uuid)"
        )


def downgrade() -> None:
    for table in reversed(_OWNED_TABLES):
        op.execute(f"DROP POLICY IF EXISTS {table}_owner ON {table}")

    op.drop_index(
        "uq_pending_profile_syncs_open_payload", table_name="pending_profile_syncs"
    )
    op.drop_index(
        "ix_pending_profile_syncs_identity_id", table_name="pending_profile_syncs"
    )
    op.drop_table("pending_profile_syncs")
    op.drop_table("onboarding_drafts")
    op.drop_index(
        "ix_retired_role_extensions_identity_id", table_name="retired_role_extensions"
    )
    op.drop_table("retired_role_extensions")
    op.drop_table("institution_profiles")
    op.drop_table("capital_provider_profiles")
    op.drop_table("professional_profiles")
    op.drop_table("business_profiles")
    op.drop_table("role_extension_slots")
    op.drop_table("base_profiles")
