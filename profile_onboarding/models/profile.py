"""BaseProfile model - the role-independent half of a profile.

One row per identity. The completion flag lives here and is only ever set
by ProfileRepository.commit_completion().
"""

import uuid
from datetime import datetime

from sqlalchemy import Boolean, CheckConstraint, String, Text, Uuid, false
from sqlalchemy.orm import Mapped, mapped_column

from profile_onboarding.core.enums import ROLE_VALUES
from profile_onboarding.models.base import Base, TimestampMixin

_ROLE_CHECK = "role IN (" + ", ".join(f"'{r}'" for r in ROLE_VALUES) + ")"


class BaseProfile(Base, TimestampMixin):
    """Common attributes shared by every role.

    Attribute columns are nullable because the row is created at role
    selection and filled in by later steps.
    """

    __tablename__ = "base_profiles"
    __table_args__ = (
        CheckConstraint(
            f"role IS NULL OR {_ROLE_CHECK}",
            name="ck_base_profiles_role",
        ),
    )

    identity_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
    )
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    role: Mapped[str | None] = mapped_column(String(30), nullable=True)

    display_name: Mapped[str | None] = mapped_column(String(50), nullable=True)
    full_name: Mapped[str | None] = mapped_column(String(80), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(20), nullable=True)
    country: Mapped[str | None] = mapped_column(String(60), nullable=True)
    city: Mapped[str | None] = mapped_column(String(60), nullable=True)
    bio: Mapped[str | None] = mapped_column(Text, nullable=True)

    website_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    linkedin_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    avatar_url: Mapped[str | None] = mapped_column(String(500), nullable=True)

    is_profile_complete: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        server_default=false(),
        nullable=False,
    )
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
