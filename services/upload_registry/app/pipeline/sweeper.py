"""Periodic maintenance of upload records.

Expires pending records whose credential lapsed, re-dispatches actions that
were never acknowledged, and trims the processed-event dedup window.
"""

import asyncio
import uuid
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from services.upload_registry.app.core.dispatcher import ActionDispatcher
from services.upload_registry.app.core.reconciler import STATE_TRANSITIONS, Reconciler
from services.upload_registry.app.db.models import utc_now
from services.upload_registry.app.db.repository import UploadRepository
from shared.schemas.upload import UploadStatus
from shared.utils.logging import get_logger
from shared.utils.metrics import create_counter

logger = get_logger(__name__)

SWEEP_RECORDS = create_counter(
    "upload_sweeper_records_total",
    "Records handled by the expiry sweeper",
    ["operation"],
)


@dataclass
class SweepResult:
    """Counts from one sweeper pass."""

    expired: int = 0
    redispatched: int = 0
    redispatch_failures: int = 0
    purged_events: int = 0


class ExpirySweeper:
    """Background maintenance loop for the record store."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        dispatcher: ActionDispatcher,
        actions: list[str] | None = None,
        expiry_grace_seconds: int = 300,
        dedup_window_seconds: int = 24 * 3600,
        batch_size: int = 100,
        redispatch_grace_seconds: int = 120,
        interval_seconds: int = 60,
        worker_id: str | None = None,
    ):
        """Initialize sweeper.

        Args:
            session_factory: Factory for database sessions
            dispatcher: Dispatcher used for re-dispatch
            actions: Actions every uploaded record must have acknowledged
            expiry_grace_seconds: Slack after credential expiry before expiring
            dedup_window_seconds: Age after which processed events are purged
            batch_size: Maximum records handled per pass and operation
            redispatch_grace_seconds: Age an upload must reach before the sweeper
                re-dispatches its missing actions
            interval_seconds: Delay between passes in ``run_forever``
            worker_id: Identifier written to the state audit trail
        """
        self.session_factory = session_factory
        self.dispatcher = dispatcher
        self.actions = list(actions) if actions is not None else dispatcher.actions
        self.expiry_grace = timedelta(seconds=expiry_grace_seconds)
        self.dedup_window_seconds = dedup_window_seconds
        self.batch_size = batch_size
        self.redispatch_grace = timedelta(seconds=redispatch_grace_seconds)
        self.interval_seconds = interval_seconds
        self.worker_id = worker_id or f"sweeper-{uuid.uuid4().hex[:8]}"
        self.running = False

    async def run_once(self) -> SweepResult:
        """Run one maintenance pass."""
        result = SweepResult()
        result.expired = await self.expire_stale()
        result.redispatched, result.redispatch_failures = await self.redispatch_missing()
        result.purged_events = await self.purge_processed()

        if result.expired or result.redispatched or result.redispatch_failures or result.purged_events:
            logger.info(
                "sweep_completed",
                expired=result.expired,
                redispatched=result.redispatched,
                redispatch_failures=result.redispatch_failures,
                purged_events=result.purged_events,
            )
        return result

    async def expire_stale(self) -> int:
        """Expire pending records whose credential lapsed beyond the grace period."""
        cutoff = utc_now() - self.expiry_grace
        expired = 0

        async with self.session_factory() as session:
            repository = UploadRepository(session)
            stale = await repository.find_stale_pending(cutoff, limit=self.batch_size)
            for record in stale:
                _, success = await repository.update_status(
                    record_id=record.record_id,
                    new_status=UploadStatus.EXPIRED,
                    expected_status=UploadStatus.PENDING,
                    worker_id=self.worker_id,
                    reason="Credential expired without upload",
                )
                if not success:
                    # A reconcile won the race; nothing to expire
                    continue
                expired += 1
                STATE_TRANSITIONS.labels(
                    from_state=UploadStatus.PENDING.value,
                    to_state=UploadStatus.EXPIRED.value,
                ).inc()
                logger.info(
                    "upload_expired",
                    record_id=str(record.record_id),
                    object_key=record.object_key,
                )
            await session.commit()

        SWEEP_RECORDS.labels(operation="expired").inc(expired)
        return expired

    async def redispatch_missing(self) -> tuple[int, int]:
        """Re-dispatch actions never acknowledged for uploaded records.

        Returns:
            Tuple of (actions dispatched, actions still failing)
        """
        dispatched_count = 0
        failed_count = 0

        async with self.session_factory() as session:
            repository = UploadRepository(session)
            records = await repository.find_uploaded_missing_actions(
                self.actions,
                settled_before=utc_now() - self.redispatch_grace,
                limit=self.batch_size,
            )
            reconciler = Reconciler(
                session=session,
                dispatcher=self.dispatcher,
                actions=self.actions,
                worker_id=self.worker_id,
            )
            for record in records:
                dispatched, failed = await reconciler.dispatch_missing(record)
                dispatched_count += len(dispatched)
                failed_count += len(failed)

        SWEEP_RECORDS.labels(operation="redispatched").inc(dispatched_count)
        return dispatched_count, failed_count

    async def purge_processed(self) -> int:
        """Delete processed-event rows older than the dedup window."""
        older_than = utc_now() - timedelta(seconds=self.dedup_window_seconds)
        async with self.session_factory() as session:
            purged = await UploadRepository(session).purge_processed_events(older_than)
            await session.commit()

        SWEEP_RECORDS.labels(operation="purged").inc(purged)
        return purged

    async def run_forever(self) -> None:
        """Run passes every ``interval_seconds`` until stopped."""
        self.running = True
        logger.info("sweeper_started", worker_id=self.worker_id, interval=self.interval_seconds)
        while self.running:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("sweep_error", error=str(e), error_type=type(e).__name__)
            await asyncio.sleep(self.interval_seconds)
        logger.info("sweeper_stopped", worker_id=self.worker_id)

    def stop(self) -> None:
        """Stop after the current pass."""
        self.running = False
