"""SQLAlchemy ORM models for the onboarding service.

All models are exported from this module for convenient imports:
    from profile_onboarding.models import BaseProfile, OnboardingDraft, ...

Models are organized by concern:
- profile.py: BaseProfile
- role_extensions.py: RoleExtensionSlot, the four variant tables,
  RetiredRoleExtension
- onboarding_draft.py: OnboardingDraft (resume marker)
- pending_sync.py: PendingProfileSync (degraded-mode store)
"""

from profile_onboarding.models.base import Base
from profile_onboarding.models.onboarding_draft import OnboardingDraft
from profile_onboarding.models.pending_sync import PendingProfileSync
from profile_onboarding.models.profile import BaseProfile
from profile_onboarding.models.role_extensions import (
    ROLE_EXTENSION_MODELS,
    BusinessProfile,
    CapitalProviderProfile,
    InstitutionProfile,
    ProfessionalProfile,
    RetiredRoleExtension,
    RoleExtension,
    RoleExtensionSlot,
)

__all__ = [
    "ROLE_EXTENSION_MODELS",
    "Base",
    "BaseProfile",
    "BusinessProfile",
    "CapitalProviderProfile",
    "InstitutionProfile",
    "OnboardingDraft",
    "PendingProfileSync",
    "ProfessionalProfile",
    "RetiredRoleExtension",
    "RoleExtension",
    "RoleExtensionSlot",
]
