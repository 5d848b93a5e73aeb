"""Downstream action dispatch over SQS."""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone

from services.upload_registry.app.db.models import UploadRecordModel, ensure_utc
from shared.schemas.events import UploadActionRequestedEvent
from shared.utils.logging import get_correlation_id, get_logger
from shared.utils.metrics import create_counter
from shared.utils.sqs import SQSClient, is_fifo_queue

logger = get_logger(__name__)

# Metrics
DISPATCHES = create_counter(
    "upload_dispatches_total",
    "Total downstream action dispatches",
    ["action", "result"],
)


@dataclass
class DispatchResult:
    """Outcome of one dispatch attempt."""

    action: str
    acknowledged: bool
    message_id: str | None = None
    error: str | None = None


class ActionDispatcher:
    """Sends ``UploadActionRequested`` events to per-action queues."""

    def __init__(
        self,
        sqs_client: SQSClient,
        targets: dict[str, str],
        timeout_seconds: float = 10.0,
    ):
        """Initialize dispatcher.

        Args:
            sqs_client: Configured SQS client
            targets: Mapping of action name to queue URL
            timeout_seconds: Upper bound on one send
        """
        self.sqs_client = sqs_client
        self.targets = dict(targets)
        self.timeout_seconds = timeout_seconds

    @property
    def actions(self) -> list[str]:
        """Actions this dispatcher can deliver."""
        return sorted(self.targets)

    async def dispatch(self, action: str, record: UploadRecordModel) -> DispatchResult:
        """Dispatch one action for a confirmed upload.

        Never raises for delivery failure; the caller records the action
        only when the result is acknowledged.

        Args:
            action: Action name
            record: Uploaded record the action is about

        Returns:
            DispatchResult describing the attempt
        """
        queue_url = self.targets.get(action)
        if queue_url is None:
            DISPATCHES.labels(action=action, result="unknown_action").inc()
            logger.error(
                "dispatch_unknown_action",
                action=action,
                record_id=str(record.record_id),
            )
            return DispatchResult(action=action, acknowledged=False, error="Unknown action")

        event = UploadActionRequestedEvent(
            action=action,
            record_id=record.record_id,
            object_key=record.object_key,
            uploaded_at=ensure_utc(record.uploaded_at) or datetime.now(timezone.utc),
            correlation_id=get_correlation_id() or str(record.record_id),
        )

        group_id = None
        dedup_id = None
        if is_fifo_queue(queue_url):
            group_id = str(record.record_id)
            dedup_id = f"{record.record_id}:{action}"

        try:
            message_id = await asyncio.wait_for(
                self.sqs_client.send_message(
                    event,
                    message_group_id=group_id,
                    deduplication_id=dedup_id,
                    queue_url=queue_url,
                ),
                timeout=self.timeout_seconds,
            )
        except Exception as e:
            DISPATCHES.labels(action=action, result="failed").inc()
            logger.error(
                "dispatch_failed",
                action=action,
                record_id=str(record.record_id),
                error=str(e) or type(e).__name__,
                error_type=type(e).__name__,
            )
            return DispatchResult(
                action=action,
                acknowledged=False,
                error=str(e) or type(e).__name__,
            )

        DISPATCHES.labels(action=action, result="acknowledged").inc()
        logger.info(
            "action_dispatched",
            action=action,
            record_id=str(record.record_id),
            message_id=message_id,
        )
        return DispatchResult(action=action, acknowledged=True, message_id=message_id)
