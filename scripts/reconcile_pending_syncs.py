"""Replay degraded-mode profile completions.

Standalone operator script. Completions accepted while the store refused
both completion paths sit in pending_profile_syncs until they are replayed.
Replays also happen automatically when the identity next opens a session;
this script drains records for identities that have not come back.

Usage:
    python -m scripts.reconcile_pending_syncs
    python -m scripts.reconcile_pending_syncs --identity <uuid>
    python -m scripts.reconcile_pending_syncs --dry-run --limit 20

Records that fail PENDING_SYNC_MAX_ATTEMPTS times are flagged for support
and skipped by later runs.
"""

import argparse
import logging
from collections.abc import Sequence
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from profile_onboarding.repositories.pending_sync_repository import (
    PendingSyncRepository,
)
from profile_onboarding.services.pending_sync_reconciler import (
    DEFAULT_BATCH_SIZE,
    PendingSyncReconciler,
    ReconcileStats,
)

logger = logging.getLogger(__name__)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse command-line options."""
    parser = argparse.ArgumentParser(
        description="Replay pending degraded-mode profile completions."
    )
    parser.add_argument(
        "--identity",
        type=UUID,
        default=None,
        help="Only replay records for this identity.",
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=DEFAULT_BATCH_SIZE,
        help="Maximum number of records to examine.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="List pending records without replaying them.",
    )
    return parser.parse_args(argv)


async def run_reconciliation(
    factory: async_sessionmaker[AsyncSession],
    *,
    max_attempts: int,
    identity_id: UUID | None = None,
    limit: int = DEFAULT_BATCH_SIZE,
    dry_run: bool = False,
) -> ReconcileStats:
    """Run one reconciliation pass.

    Args:
        factory: Primary async session factory.
        max_attempts: Failed replays allowed before a record is flagged.
        identity_id: Restrict the pass to one identity.
        limit: Maximum number of records to examine.
        dry_run: Only count and log the pending records.

    Returns:
        ReconcileStats for the pass.
    """
    if dry_run:
        async with factory() as db:
            records = await PendingSyncRepository.list_open(
                db, identity_id=identity_id, limit=limit
            )
        for record in records:
            logger.info(
                "Pending sync %s: identity=%s role=%s attempts=%d",
                record.id,
                record.identity_id,
                record.role,
                record.attempts,
            )
        return ReconcileStats(examined=len(records))

    reconciler = PendingSyncReconciler(factory, max_attempts=max_attempts)
    if identity_id is not None:
        stats = await reconciler.reconcile_identity(identity_id)
    else:
        stats = await reconciler.reconcile_all(limit=limit)

    logger.info(
        "Reconciliation complete: %d examined, %d reconciled, %d superseded, "
        "%d failed, %d flagged, %d skipped",
        stats.examined,
        stats.reconciled,
        stats.superseded,
        stats.failed,
        stats.flagged,
        stats.skipped,
    )
    return stats


async def main() -> None:
    """CLI entry point: reconcile against the configured database."""
    import sys

    from sqlalchemy.ext.asyncio import create_async_engine

    from profile_onboarding.core.config import settings

    args = parse_args()

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    engine = create_async_engine(settings.database_url, echo=False)
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    stats = await run_reconciliation(
        factory,
        max_attempts=settings.pending_sync_max_attempts,
        identity_id=args.identity,
        limit=args.limit,
        dry_run=args.dry_run,
    )

    await engine.dispose()

    logger.info("Final stats: %s", stats)
    sys.exit(1 if stats.flagged else 0)


if __name__ == "__main__":
    import asyncio

    asyncio.run(main())
