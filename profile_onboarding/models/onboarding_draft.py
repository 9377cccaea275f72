"""OnboardingDraft model - the advisory resume marker.

Records the highest validated step per identity. It never overrides what
the profile tables actually contain; see StepController.start().
"""

import uuid

from sqlalchemy import CheckConstraint, ForeignKey, SmallInteger, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from profile_onboarding.models.base import Base, TimestampMixin


class OnboardingDraft(Base, TimestampMixin):
    """Per-identity resume marker."""

    __tablename__ = "onboarding_drafts"
    __table_args__ = (
        CheckConstraint("last_step BETWEEN 1 AND 4", name="ck_onboarding_drafts_step"),
        CheckConstraint(
            "mode IN ('onboarding', 'edit')",
            name="ck_onboarding_drafts_mode",
        ),
    )

    identity_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("base_profiles.identity_id", ondelete="CASCADE"),
        primary_key=True,
    )
    last_step: Mapped[int] = mapped_column(SmallInteger, nullable=False)
    role: Mapped[str | None] = mapped_column(String(30), nullable=True)
    mode: Mapped[str] = mapped_column(
        String(20),
        default="onboarding",
        server_default="onboarding",
        nullable=False,
    )
