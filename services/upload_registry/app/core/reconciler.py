"""Reconciliation of storage notifications against upload records.

The reconciler is the only component that moves a record from pending to
uploaded. Transitions go through the repository's conditional update, so any
number of concurrent or redelivered notifications for the same object yield
exactly one winner.
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from uuid import UUID

from sqlalchemy import exc as sa_exc
from sqlalchemy.ext.asyncio import AsyncSession

from services.upload_registry.app.core.dispatcher import ActionDispatcher
from services.upload_registry.app.core.errors import TransientStoreError
from services.upload_registry.app.db.models import UploadRecordModel, ensure_utc, utc_now
from services.upload_registry.app.db.repository import UploadRepository
from shared.schemas.events import NormalizedEvent, StorageEventType
from shared.schemas.upload import UploadStatus
from shared.utils.logging import get_logger
from shared.utils.metrics import create_counter

logger = get_logger(__name__)

# Metrics
STATE_TRANSITIONS = create_counter(
    "upload_state_transitions_total",
    "Total upload record state transitions",
    ["from_state", "to_state"],
)
LATE_COMPLETIONS = create_counter(
    "upload_late_completions_total",
    "Uploads confirmed after their credential expired",
)
ANOMALIES = create_counter(
    "upload_anomalies_total",
    "Notifications contradicting a terminal record",
    ["event_type"],
)


class Outcome(str, Enum):
    """Result of reconciling one normalized event."""

    UPLOADED = "uploaded"
    IGNORED = "ignored"
    DUPLICATE_IGNORED = "duplicate_ignored"
    ANOMALY = "anomaly"


@dataclass
class ReconcileResult:
    """What reconciling one event did."""

    outcome: Outcome
    record_id: UUID | None = None
    dispatched: list[str] = field(default_factory=list)
    failed_actions: list[str] = field(default_factory=list)
    reason: str | None = None


class Reconciler:
    """Applies normalized storage events to the record store."""

    def __init__(
        self,
        session: AsyncSession,
        dispatcher: ActionDispatcher,
        actions: list[str] | None = None,
        dedup_window_seconds: int = 24 * 3600,
        worker_id: str | None = None,
        store_timeout_seconds: float | None = None,
        clock_skew_seconds: float = 1.0,
    ):
        """Initialize reconciler.

        Args:
            session: Database session owned by the caller
            dispatcher: Dispatcher for downstream actions
            actions: Actions every confirmed upload triggers (defaults to the
                dispatcher's configured actions)
            dedup_window_seconds: How long processed event ids are remembered
            worker_id: Identifier written to the state audit trail
            store_timeout_seconds: Upper bound on the record store work for one
                event; dispatch is bounded separately by the dispatcher
            clock_skew_seconds: Slack when comparing provider event time with
                record creation time
        """
        self.session = session
        self.repository = UploadRepository(session)
        self.dispatcher = dispatcher
        self.actions = list(actions) if actions is not None else dispatcher.actions
        self.dedup_window = timedelta(seconds=dedup_window_seconds)
        self.worker_id = worker_id or f"reconciler-{uuid.uuid4().hex[:8]}"
        self.store_timeout_seconds = store_timeout_seconds
        self.clock_skew = timedelta(seconds=clock_skew_seconds)

    async def reconcile(self, event: NormalizedEvent) -> ReconcileResult:
        """Reconcile one normalized event.

        Args:
            event: Canonical storage event

        Returns:
            ReconcileResult describing the outcome

        Raises:
            TransientStoreError: If the record store is unreachable
        """
        try:
            result = await self._apply(event)
            if result.outcome == Outcome.UPLOADED:
                # Dispatch runs after the transition commit, outside the store bound
                record = await self.repository.get_by_id(result.record_id)
                result.dispatched, result.failed_actions = await self.dispatch_missing(record)
            return result
        except (sa_exc.OperationalError, sa_exc.InterfaceError, sa_exc.TimeoutError) as e:
            raise TransientStoreError(str(e)) from e
        except sa_exc.DBAPIError as e:
            if e.connection_invalidated:
                raise TransientStoreError(str(e)) from e
            raise
        except TimeoutError as e:
            raise TransientStoreError("Record store timed out") from e

    async def _apply(self, event: NormalizedEvent) -> ReconcileResult:
        if self.store_timeout_seconds is None:
            return await self._reconcile(event)
        return await asyncio.wait_for(self._reconcile(event), timeout=self.store_timeout_seconds)

    async def _reconcile(self, event: NormalizedEvent) -> ReconcileResult:
        record = await self.repository.get_live_by_object_key(event.object_key)

        if record is None:
            logger.info(
                "event_unmatched",
                object_key=event.object_key,
                event_type=event.event_type.value,
                raw_event_id=event.raw_event_id,
            )
            return ReconcileResult(outcome=Outcome.IGNORED, reason="no_live_record")

        if record.status == UploadStatus.UPLOADED:
            return await self._on_uploaded(record, event)

        if event.event_type != StorageEventType.CREATED:
            logger.info(
                "pending_event_ignored",
                record_id=str(record.record_id),
                object_key=event.object_key,
                event_type=event.event_type.value,
            )
            return ReconcileResult(
                outcome=Outcome.IGNORED,
                record_id=record.record_id,
                reason=f"{event.event_type.value}_on_pending",
            )

        return await self._complete(record, event)

    async def _on_uploaded(
        self,
        record: UploadRecordModel,
        event: NormalizedEvent,
    ) -> ReconcileResult:
        if event.event_type == StorageEventType.REMOVED:
            ANOMALIES.labels(event_type=event.event_type.value).inc()
            logger.warning(
                "uploaded_object_removed",
                record_id=str(record.record_id),
                object_key=record.object_key,
                raw_event_id=event.raw_event_id,
            )
            return ReconcileResult(
                outcome=Outcome.ANOMALY,
                record_id=record.record_id,
                reason="removed_after_upload",
            )

        since = utc_now() - self.dedup_window
        if await self.repository.is_event_processed(event.raw_event_id, since):
            logger.info(
                "duplicate_event_ignored",
                record_id=str(record.record_id),
                raw_event_id=event.raw_event_id,
            )
            return ReconcileResult(
                outcome=Outcome.DUPLICATE_IGNORED,
                record_id=record.record_id,
                reason="event_already_processed",
            )

        logger.info(
            "renotification_ignored",
            record_id=str(record.record_id),
            raw_event_id=event.raw_event_id,
        )
        return ReconcileResult(
            outcome=Outcome.IGNORED,
            record_id=record.record_id,
            reason="already_uploaded",
        )

    async def _complete(
        self,
        record: UploadRecordModel,
        event: NormalizedEvent,
    ) -> ReconcileResult:
        record_id = record.record_id
        event_time = ensure_utc(event.provider_timestamp)
        if event_time < ensure_utc(record.created_at) - self.clock_skew:
            # A notification for an earlier upload to the same key
            logger.info(
                "event_predates_record",
                record_id=str(record_id),
                object_key=record.object_key,
                event_time=event_time.isoformat(),
                raw_event_id=event.raw_event_id,
            )
            return ReconcileResult(
                outcome=Outcome.IGNORED,
                record_id=record_id,
                reason="event_predates_record",
            )

        late = ensure_utc(record.credential_expiry) < utc_now()

        updated, success = await self.repository.update_status(
            record_id=record_id,
            new_status=UploadStatus.UPLOADED,
            expected_status=UploadStatus.PENDING,
            worker_id=self.worker_id,
            reason=f"Storage event {event.provider_event_name or event.event_type.value}",
            uploaded_at=event.provider_timestamp,
            content_length=event.size,
            etag=event.etag,
        )

        if not success:
            current = updated.status if updated is not None else None
            logger.info(
                "transition_lost",
                record_id=str(record_id),
                current_status=current.value if current else None,
                raw_event_id=event.raw_event_id,
            )
            if current == UploadStatus.UPLOADED:
                return ReconcileResult(
                    outcome=Outcome.DUPLICATE_IGNORED,
                    record_id=record_id,
                    reason="concurrent_transition",
                )
            return ReconcileResult(
                outcome=Outcome.IGNORED,
                record_id=record_id,
                reason=f"record_{current.value if current else 'missing'}",
            )

        await self.repository.mark_event_processed(
            raw_event_id=event.raw_event_id,
            object_key=event.object_key,
            record_id=record_id,
        )
        await self.session.commit()

        STATE_TRANSITIONS.labels(
            from_state=UploadStatus.PENDING.value,
            to_state=UploadStatus.UPLOADED.value,
        ).inc()

        if late:
            LATE_COMPLETIONS.inc()
            logger.info(
                "late_completion_accepted",
                record_id=str(record_id),
                object_key=record.object_key,
                credential_expiry=ensure_utc(record.credential_expiry).isoformat(),
            )

        logger.info(
            "upload_reconciled",
            record_id=str(record_id),
            object_key=record.object_key,
            size=event.size,
        )

        return ReconcileResult(outcome=Outcome.UPLOADED, record_id=record_id)

    async def dispatch_missing(
        self,
        record: UploadRecordModel,
    ) -> tuple[list[str], list[str]]:
        """Dispatch every configured action not yet acknowledged for a record.

        Each acknowledged action is committed before the next is sent, so a
        crash mid-way re-dispatches only what was never acknowledged.

        Args:
            record: Uploaded record

        Returns:
            Tuple of (newly dispatched actions, failed actions)
        """
        already = await self.repository.get_dispatched_actions(record.record_id)
        dispatched: list[str] = []
        failed: list[str] = []

        for action in self.actions:
            if action in already:
                continue
            result = await self.dispatcher.dispatch(action, record)
            if not result.acknowledged:
                failed.append(action)
                continue
            await self.repository.record_dispatched_action(
                record_id=record.record_id,
                action=action,
                message_id=result.message_id,
            )
            await self.session.commit()
            dispatched.append(action)

        if failed:
            logger.warning(
                "dispatch_incomplete",
                record_id=str(record.record_id),
                failed_actions=failed,
            )
        return dispatched, failed
