"""PendingProfileSync model - degraded-mode completion records.

Written by the completion coordinator when both the primary and the
privileged store paths refuse a completion. Reconciled later by
PendingSyncReconciler, or superseded once a newer completion for the same
identity reaches the profile tables.

No foreign key to base_profiles: the base row may be exactly what the
store refused to write.
"""

import uuid
from datetime import datetime

from sqlalchemy import CheckConstraint, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from profile_onboarding.models.base import Base, JSONColumn, TimestampMixin


class PendingProfileSync(Base, TimestampMixin):
    """A completion accepted in degraded mode, awaiting reconciliation."""

    __tablename__ = "pending_profile_syncs"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'reconciled', 'flagged', 'superseded')",
            name="ck_pending_profile_syncs_status",
        ),
        CheckConstraint("attempts >= 0", name="ck_pending_profile_syncs_attempts"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    identity_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    role: Mapped[str] = mapped_column(String(30), nullable=False)
    base_payload: Mapped[dict] = mapped_column(JSONColumn, nullable=False)
    extension_payload: Mapped[dict] = mapped_column(JSONColumn, nullable=False)
    payload_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20),
        default="pending",
        server_default="pending",
        nullable=False,
    )
    attempts: Mapped[int] = mapped_column(
        Integer,
        default=0,
        server_default="0",
        nullable=False,
    )
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    reconciled_at: Mapped[datetime | None] = mapped_column(nullable=True)
