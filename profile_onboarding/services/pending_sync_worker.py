"""Background reconciliation of degraded-mode completions.

Runs PendingSyncReconciler.reconcile_all() on a fixed interval from the
FastAPI lifespan. Identities that never open another session would
otherwise wait for an operator run of scripts/reconcile_pending_syncs.py.
"""

import asyncio
import contextlib
import logging
from datetime import UTC, datetime

from profile_onboarding.services.pending_sync_reconciler import (
    DEFAULT_BATCH_SIZE,
    PendingSyncReconciler,
    ReconcileStats,
)

logger = logging.getLogger(__name__)


class PendingSyncWorker:
    """Periodically replays pending degraded completions.

    Lifecycle:
    - start() creates an asyncio task that runs the reconciliation loop.
    - stop() cancels the task and waits for it to finish.
    - run_once() executes a single pass.

    Args:
        reconciler: Reconciler used for every pass.
        interval_seconds: Seconds between passes.
        batch_size: Maximum records examined per pass.
    """

    def __init__(
        self,
        reconciler: PendingSyncReconciler,
        *,
        interval_seconds: int,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> None:
        self._reconciler = reconciler
        self._interval_seconds = interval_seconds
        self._batch_size = batch_size
        self._task: asyncio.Task[None] | None = None
        self._last_run_at: datetime | None = None
        self._running = False

    @property
    def is_running(self) -> bool:
        """Whether the background task is currently active."""
        return self._running and self._task is not None and not self._task.done()

    @property
    def last_run_at(self) -> datetime | None:
        """Timestamp of the most recent completed pass."""
        return self._last_run_at

    def start(self) -> None:
        """Start the reconciliation loop. No-op if already running."""
        if self.is_running:
            logger.warning("Pending sync worker already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("Pending sync worker started (interval=%ds)", self._interval_seconds)

    async def stop(self) -> None:
        """Cancel the loop and wait for it to finish."""
        self._running = False
        if self._task is not None and not self._task.done():
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        self._task = None
        logger.info("Pending sync worker stopped")

    async def run_once(self) -> ReconcileStats:
        """Execute a single reconciliation pass."""
        stats = await self._reconciler.reconcile_all(limit=self._batch_size)
        self._last_run_at = datetime.now(UTC)
        return stats

    async def _run_loop(self) -> None:
        try:
            while self._running:
                try:
                    stats = await self.run_once()
                    if stats.examined:
                        logger.info(
                            "Pending sync pass: %d examined, %d reconciled, "
                            "%d superseded, %d failed, %d flagged",
                            stats.examined,
                            stats.reconciled,
                            stats.superseded,
                            stats.failed,
                            stats.flagged,
                        )
                except Exception:  # noqa: BLE001
                    logger.exception("Error in pending sync pass")
                await asyncio.sleep(self._interval_seconds)
        except asyncio.CancelledError:
            logger.debug("Pending sync loop cancelled")
            raise
