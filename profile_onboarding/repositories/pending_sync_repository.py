"""Repository for degraded-mode completion records (pending_profile_syncs)."""

import hashlib
import json
import uuid
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from profile_onboarding.core.enums import PendingSyncStatus, ProfileRole
from profile_onboarding.models.pending_sync import PendingProfileSync
from profile_onboarding.repositories.profile_repository import store_errors

# Failure messages are truncated before storage.
_MAX_ERROR_LENGTH = 500


def payload_hash(
    role: ProfileRole,
    base: Mapping[str, Any],
    extension: Mapping[str, Any],
) -> str:
    """Stable SHA-256 of a completion payload.

    Two submissions of the same values produce the same hash, which lets a
    retried degraded completion find the record written by the first try.
    """
    canonical = json.dumps(
        {"role": role.value, "base": base, "extension": extension},
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class PendingSyncRepository:
    """Stateless repository for pending_profile_syncs."""

    @staticmethod
    async def create(
        db: AsyncSession,
        *,
        identity_id: uuid.UUID,
        role: ProfileRole,
        base: Mapping[str, Any],
        extension: Mapping[str, Any],
        reason: str,
    ) -> PendingProfileSync:
        """Store a completion that the profile tables refused.

        Args:
            db: Async database session.
            identity_id: Identity the completion belongs to.
            role: Role of the extension.
            base: Validated base profile values.
            extension: Validated extension values.
            reason: Why the normal paths failed.

        Returns:
            The new pending record.
        """
        record = PendingProfileSync(
            identity_id=identity_id,
            role=role.value,
            base_payload=dict(base),
            extension_payload=dict(extension),
            payload_hash=payload_hash(role, base, extension),
            reason=reason,
            status=PendingSyncStatus.PENDING.value,
            attempts=0,
        )
        with store_errors():
            db.add(record)
            await db.flush()
        return record

    @staticmethod
    async def find_open(
        db: AsyncSession,
        identity_id: uuid.UUID,
        *,
        digest: str | None = None,
    ) -> PendingProfileSync | None:
        """Newest pending record for an identity, optionally matching a hash."""
        stmt = select(PendingProfileSync).where(
            PendingProfileSync.identity_id == identity_id,
            PendingProfileSync.status == PendingSyncStatus.PENDING.value,
        )
        if digest is not None:
            stmt = stmt.where(PendingProfileSync.payload_hash == digest)
        stmt = stmt.order_by(PendingProfileSync.created_at.desc()).limit(1)
        with store_errors():
            result = await db.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def list_open(
        db: AsyncSession,
        *,
        identity_id: uuid.UUID | None = None,
        limit: int = 100,
    ) -> list[PendingProfileSync]:
        """Pending records, oldest first.

        Args:
            db: Async database session.
            identity_id: Restrict to one identity, if given.
            limit: Maximum number of records to return.

        Returns:
            List of pending records.
        """
        stmt = select(PendingProfileSync).where(
            PendingProfileSync.status == PendingSyncStatus.PENDING.value
        )
        if identity_id is not None:
            stmt = stmt.where(PendingProfileSync.identity_id == identity_id)
        stmt = stmt.order_by(PendingProfileSync.created_at.asc()).limit(limit)
        with store_errors():
            result = await db.execute(stmt)
        return list(result.scalars().all())

    @staticmethod
    async def mark_reconciled(
        db: AsyncSession, record: PendingProfileSync
    ) -> PendingProfileSync:
        """Mark a record as written to the profile tables."""
        record.status = PendingSyncStatus.RECONCILED.value
        record.reconciled_at = datetime.now(UTC)
        record.last_error = None
        with store_errors():
            await db.flush()
        return record

    @staticmethod
    async def supersede(
        db: AsyncSession, record: PendingProfileSync
    ) -> PendingProfileSync:
        """Close a record without replaying it."""
        record.status = PendingSyncStatus.SUPERSEDED.value
        record.reconciled_at = datetime.now(UTC)
        with store_errors():
            await db.flush()
        return record

    @staticmethod
    async def supersede_open(db: AsyncSession, identity_id: uuid.UUID) -> int:
        """Close every pending record for an identity.

        Called after a newer completion is committed, so older degraded
        payloads can never be replayed over it.

        Returns:
            Number of records superseded.
        """
        stmt = (
            update(PendingProfileSync)
            .where(
                PendingProfileSync.identity_id == identity_id,
                PendingProfileSync.status == PendingSyncStatus.PENDING.value,
            )
            .values(
                status=PendingSyncStatus.SUPERSEDED.value,
                reconciled_at=datetime.now(UTC),
            )
            .execution_options(synchronize_session="fetch")
        )
        with store_errors():
            result = await db.execute(stmt)
        return result.rowcount or 0

    @staticmethod
    async def record_failure(
        db: AsyncSession,
        record: PendingProfileSync,
        error: str,
        *,
        max_attempts: int,
    ) -> PendingProfileSync:
        """Count a failed replay; flag the record once attempts run out.

        Args:
            db: Async database session.
            record: The record that failed to replay.
            error: Failure description.
            max_attempts: Attempts allowed before flagging for support.

        Returns:
            The updated record.
        """
        record.attempts += 1
        record.last_error = error[:_MAX_ERROR_LENGTH]
        if record.attempts >= max_attempts:
            record.status = PendingSyncStatus.FLAGGED.value
        with store_errors():
            await db.flush()
        return record
