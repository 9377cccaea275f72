"""Reconciliation of degraded-mode completions.

Pending records are replayed through the primary completion path:
- on every session start for that identity (retry-on-next-login), and
- in bulk by the operator script scripts/reconcile_pending_syncs.py.

A record that keeps failing is flagged for support after
``max_attempts`` replays and is no longer retried automatically. Unclassified
driver errors count as failed replays too.
"""

import logging
import uuid
from dataclasses import dataclass
from enum import Enum

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from profile_onboarding.core.enums import PendingSyncStatus, ProfileRole
from profile_onboarding.core.errors import APIError
from profile_onboarding.core.identity_scope import apply_identity_scope
from profile_onboarding.models.pending_sync import PendingProfileSync
from profile_onboarding.repositories.draft_repository import DraftRepository
from profile_onboarding.repositories.pending_sync_repository import (
    PendingSyncRepository,
)
from profile_onboarding.repositories.profile_repository import (
    ProfileRepository,
    store_errors,
)

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 100


class ReplayResult(str, Enum):
    """What happened to one record during a pass."""

    RECONCILED = "reconciled"
    SUPERSEDED = "superseded"
    FAILED = "failed"
    FLAGGED = "flagged"
    SKIPPED = "skipped"


@dataclass
class ReconcileStats:
    """Statistics from a reconciliation pass."""

    examined: int = 0
    reconciled: int = 0
    superseded: int = 0
    failed: int = 0
    flagged: int = 0
    skipped: int = 0

    def count(self, result: ReplayResult) -> None:
        self.examined += 1
        setattr(self, result.value, getattr(self, result.value) + 1)


class PendingSyncReconciler:
    """Replays pending degraded completions into the profile tables.

    Args:
        session_factory: Primary async session factory.
        max_attempts: Failed replays allowed before a record is flagged.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        max_attempts: int,
    ) -> None:
        self._session_factory = session_factory
        self._max_attempts = max_attempts

    async def reconcile_identity(self, identity_id: uuid.UUID) -> ReconcileStats:
        """Replay every pending record for one identity, oldest first."""
        return await self._run(identity_id=identity_id, limit=DEFAULT_BATCH_SIZE)

    async def reconcile_all(self, *, limit: int = DEFAULT_BATCH_SIZE) -> ReconcileStats:
        """Replay up to ``limit`` pending records across all identities."""
        return await self._run(identity_id=None, limit=limit)

    async def _run(
        self, *, identity_id: uuid.UUID | None, limit: int
    ) -> ReconcileStats:
        stats = ReconcileStats()
        async with self._session_factory() as db:
            records = await PendingSyncRepository.list_open(
                db, identity_id=identity_id, limit=limit
            )
            record_ids = [r.id for r in records]

        for record_id in record_ids:
            stats.count(await self._replay(record_id))
        return stats

    async def _replay(self, record_id: uuid.UUID) -> ReplayResult:
        """Replay one record in its own transaction and record the result.

        Only the newest open record of an identity is replayed; older ones
        are superseded so a stale payload never overwrites a newer one.
        """
        try:
            with store_errors():
                async with self._session_factory() as db, db.begin():
                    record = await db.get(PendingProfileSync, record_id)
                    if record is None or record.status != PendingSyncStatus.PENDING.value:
                        return ReplayResult.SKIPPED
                    newest = await PendingSyncRepository.find_open(
                        db, record.identity_id
                    )
                    if newest is not None and newest.id != record.id:
                        await PendingSyncRepository.supersede(db, record)
                        logger.info(
                            "Pending sync %s superseded by %s", record_id, newest.id
                        )
                        return ReplayResult.SUPERSEDED

                    await apply_identity_scope(db, record.identity_id)
                    await ProfileRepository.commit_completion(
                        db,
                        record.identity_id,
                        role=ProfileRole.from_string(record.role),
                        base=record.base_payload,
                        extension=record.extension_payload,
                    )
                    await PendingSyncRepository.mark_reconciled(db, record)
                    await DraftRepository.clear(db, record.identity_id)
                    logger.info(
                        "Reconciled pending sync %s for identity %s",
                        record_id,
                        record.identity_id,
                    )
                    return ReplayResult.RECONCILED
        except (APIError, SQLAlchemyError) as exc:
            return await self._record_failure(record_id, exc)

    async def _record_failure(
        self, record_id: uuid.UUID, exc: Exception
    ) -> ReplayResult:
        if isinstance(exc, APIError):
            label, description = exc.code, f"{exc.code}: {exc.message}"
        else:
            label = type(exc).__name__
            description = f"{label}: {exc}"

        async with self._session_factory() as db, db.begin():
            record = await db.get(PendingProfileSync, record_id)
            if record is None:
                return ReplayResult.SKIPPED
            await PendingSyncRepository.record_failure(
                db,
                record,
                description,
                max_attempts=self._max_attempts,
            )
            flagged = record.status == PendingSyncStatus.FLAGGED.value

        if flagged:
            logger.warning(
                "Pending sync %s flagged for support after %d attempts",
                record_id,
                self._max_attempts,
            )
            return ReplayResult.FLAGGED
        logger.info("Pending sync %s replay failed (%s)", record_id, label)
        return ReplayResult.FAILED
