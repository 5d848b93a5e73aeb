"""Queue worker consuming storage notifications."""

import asyncio
import signal
import uuid
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from services.upload_registry.app.config import Settings, get_settings
from services.upload_registry.app.core.dispatcher import ActionDispatcher
from services.upload_registry.app.core.errors import MalformedEventError, TransientStoreError
from services.upload_registry.app.core.normalizer import EventNormalizer
from services.upload_registry.app.core.reconciler import Reconciler, ReconcileResult
from services.upload_registry.app.pipeline.sweeper import ExpirySweeper
from shared.schemas.events import DeadLetterMessage, NormalizedEvent
from shared.utils.db import close_db, get_session_factory, init_db
from shared.utils.logging import configure_logging, get_logger, set_correlation_id
from shared.utils.metrics import create_counter
from shared.utils.sqs import SQSClient

logger = get_logger(__name__)

# Metrics
RECONCILE_OUTCOMES = create_counter(
    "upload_reconcile_outcomes_total",
    "Total reconcile outcomes",
    ["outcome"],
)
DEAD_LETTERED = create_counter(
    "upload_dead_lettered_total",
    "Total notification messages moved to the dead letter queue",
    ["reason"],
)
MESSAGE_RETRIES = create_counter(
    "upload_message_retries_total",
    "Total notification messages scheduled for retry",
)


class ReconcilerWorker:
    """Worker that consumes storage notifications and reconciles uploads."""

    def __init__(
        self,
        settings: Settings | None = None,
        worker_id: str | None = None,
        sqs_client: SQSClient | None = None,
        dispatcher: ActionDispatcher | None = None,
        normalizer: EventNormalizer | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ):
        """Initialize reconciler worker.

        Args:
            settings: Service settings (defaults to environment settings)
            worker_id: Unique worker identifier
            sqs_client: SQS client for the notifications and dead letter queues
            dispatcher: Dispatcher for downstream actions
            normalizer: Notification normalizer
            session_factory: Database session factory (initialized on start if omitted)
        """
        self.settings = settings or get_settings()
        self.worker_id = worker_id or f"worker-{uuid.uuid4().hex[:8]}"
        self.max_concurrent = self.settings.worker_concurrency
        self.queue_url = self.settings.sqs_notifications_queue_url
        self.running = False
        self.semaphore = asyncio.Semaphore(self.max_concurrent)
        self._tasks: set[asyncio.Task] = set()
        self._sweeper_task: asyncio.Task | None = None
        self._owns_db = session_factory is None
        self.session_factory = session_factory

        self.sqs_client = sqs_client or SQSClient(
            queue_url=self.queue_url,
            region=self.settings.sqs_region,
            endpoint_url=self.settings.sqs_endpoint_url,
        )
        self.dispatcher = dispatcher or ActionDispatcher(
            sqs_client=self.sqs_client,
            targets=self.settings.dispatch_targets,
            timeout_seconds=self.settings.dispatch_timeout_seconds,
        )
        self.normalizer = normalizer or EventNormalizer(
            key_prefix=self.settings.key_prefix,
            bucket_filter=self.settings.bucket_filter,
            track_removals=self.settings.track_removals,
        )
        self.sweeper: ExpirySweeper | None = None

    async def start(self) -> None:
        """Start the worker."""
        logger.info("worker_starting", worker_id=self.worker_id, queue_url=self.queue_url)
        self.running = True

        if self.session_factory is None:
            init_db(
                database_url=self.settings.database_url,
                pool_size=self.max_concurrent + 2,
                max_overflow=self.settings.db_max_overflow,
                pool_timeout=self.settings.db_pool_timeout,
                echo=self.settings.db_echo,
            )
            self.session_factory = get_session_factory()

        # Set up signal handlers
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda: asyncio.create_task(self.stop()))

        if self.settings.sweeper_enabled:
            self.sweeper = ExpirySweeper(
                session_factory=self.session_factory,
                dispatcher=self.dispatcher,
                actions=self.settings.configured_actions,
                expiry_grace_seconds=self.settings.expiry_grace_seconds,
                dedup_window_seconds=self.settings.dedup_window_seconds,
                batch_size=self.settings.redispatch_batch_size,
                redispatch_grace_seconds=self.settings.redispatch_grace_seconds,
                interval_seconds=self.settings.sweep_interval_seconds,
                worker_id=f"{self.worker_id}-sweeper",
            )
            self._sweeper_task = asyncio.create_task(self.sweeper.run_forever())

        await self._poll_loop()

    async def stop(self) -> None:
        """Stop the worker gracefully."""
        logger.info("worker_stopping", worker_id=self.worker_id)
        self.running = False

        if self.sweeper is not None:
            self.sweeper.stop()
        if self._sweeper_task is not None:
            self._sweeper_task.cancel()
            await asyncio.gather(self._sweeper_task, return_exceptions=True)

        # Wait for in-flight tasks
        if self._tasks:
            logger.info("waiting_for_tasks", count=len(self._tasks))
            await asyncio.gather(*self._tasks, return_exceptions=True)

        if self._owns_db:
            await close_db()

        logger.info("worker_stopped", worker_id=self.worker_id)

    async def _poll_loop(self) -> None:
        """Main polling loop for SQS messages."""
        while self.running:
            try:
                messages = await self.sqs_client.receive_messages(
                    queue_url=self.queue_url,
                    max_messages=min(self.max_concurrent, 10),
                    visibility_timeout=self.settings.visibility_timeout_seconds,
                    wait_time=self.settings.poll_wait_seconds,
                )

                if not messages:
                    continue

                for message in messages:
                    task = asyncio.create_task(self._process_message(message))
                    self._tasks.add(task)
                    task.add_done_callback(self._tasks.discard)

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("poll_error", error=str(e))
                await asyncio.sleep(5)

    async def _process_message(self, message: dict[str, Any]) -> None:
        async with self.semaphore:
            set_correlation_id(message.get("MessageId"))
            await self.handle_message(message)

    async def handle_message(self, message: dict[str, Any]) -> list[ReconcileResult] | None:
        """Process a single SQS message.

        The message is deleted only after every event in it was reconciled.

        Args:
            message: Raw SQS message

        Returns:
            Reconcile results, or None if the message was dead-lettered or retried
        """
        message_id = message.get("MessageId")

        try:
            events = self.normalizer.normalize(message.get("Body", ""))
        except MalformedEventError as e:
            logger.warning("malformed_message", message_id=message_id, error=str(e))
            await self._move_to_dlq(message, e, reason="malformed")
            return None

        results: list[ReconcileResult] = []
        try:
            for event in events:
                result = await self._reconcile(event)
                RECONCILE_OUTCOMES.labels(outcome=result.outcome.value).inc()
                results.append(result)
        except asyncio.CancelledError:
            # Left undeleted; the queue redelivers it
            raise
        except TransientStoreError as e:
            logger.warning(
                "transient_processing_error",
                message_id=message_id,
                error=str(e) or type(e).__name__,
            )
            await self._handle_failure(message, e)
            return None
        except Exception as e:
            # Only store outages are retried
            logger.exception(
                "processing_error",
                message_id=message_id,
                error=str(e) or type(e).__name__,
                error_type=type(e).__name__,
            )
            await self._move_to_dlq(message, e, reason="unprocessable")
            return None

        await self.sqs_client.delete_message(
            queue_url=self.queue_url,
            receipt_handle=message.get("ReceiptHandle"),
        )
        logger.info(
            "message_processed",
            message_id=message_id,
            event_count=len(events),
            outcomes=[r.outcome.value for r in results],
        )
        return results

    async def _reconcile(self, event: NormalizedEvent) -> ReconcileResult:
        async with self.session_factory() as session:
            reconciler = Reconciler(
                session=session,
                dispatcher=self.dispatcher,
                actions=self.settings.configured_actions,
                dedup_window_seconds=self.settings.dedup_window_seconds,
                worker_id=self.worker_id,
                store_timeout_seconds=self.settings.store_timeout_seconds,
                clock_skew_seconds=self.settings.event_clock_skew_seconds,
            )
            return await reconciler.reconcile(event)

    def retry_delay(self, receive_count: int) -> int:
        """Visibility backoff for a message received ``receive_count`` times."""
        attempt = max(receive_count, 1)
        return min(
            self.settings.retry_base_delay_seconds * (2 ** (attempt - 1)),
            self.settings.max_retry_delay_seconds,
        )

    async def _handle_failure(self, message: dict[str, Any], error: Exception) -> None:
        """Handle processing failure.

        Args:
            message: Original SQS message
            error: Exception raised while processing
        """
        attributes = message.get("Attributes", {})
        receive_count = int(attributes.get("ApproximateReceiveCount", "1"))

        if receive_count >= self.settings.max_receive_count:
            logger.warning(
                "max_retries_exceeded",
                message_id=message.get("MessageId"),
                receive_count=receive_count,
            )
            await self._move_to_dlq(message, error, reason="max_retries")
            return

        delay = self.retry_delay(receive_count)
        MESSAGE_RETRIES.inc()
        logger.info(
            "scheduling_retry",
            message_id=message.get("MessageId"),
            retry_count=receive_count,
            delay_seconds=delay,
        )
        try:
            await self.sqs_client.change_visibility(
                queue_url=self.queue_url,
                receipt_handle=message.get("ReceiptHandle"),
                visibility_timeout=delay,
            )
        except Exception as e:
            # The message reappears after the original visibility timeout
            logger.error("visibility_change_error", error=str(e))

    async def _move_to_dlq(self, message: dict[str, Any], error: Exception, reason: str) -> None:
        """Move message to dead-letter queue.

        Args:
            message: Original SQS message
            error: Exception that made the message unprocessable
            reason: Metric label for why the message was dead-lettered
        """
        attributes = message.get("Attributes", {})
        dlq_url = self.settings.sqs_dlq_url

        try:
            if dlq_url:
                dlq_message = DeadLetterMessage(
                    original_body=message.get("Body"),
                    original_message_id=message.get("MessageId"),
                    error=str(error) or type(error).__name__,
                    error_type=type(error).__name__,
                    receive_count=int(attributes.get("ApproximateReceiveCount", "1")),
                    worker_id=self.worker_id,
                )
                await self.sqs_client.send_message(dlq_message, queue_url=dlq_url)
            else:
                logger.error(
                    "dlq_not_configured",
                    message_id=message.get("MessageId"),
                    body=(message.get("Body") or "")[:1000],
                )

            # Delete from main queue
            await self.sqs_client.delete_message(
                queue_url=self.queue_url,
                receipt_handle=message.get("ReceiptHandle"),
            )

            DEAD_LETTERED.labels(reason=reason).inc()
            logger.info(
                "moved_to_dlq",
                message_id=message.get("MessageId"),
                reason=reason,
            )

        except Exception as e:
            logger.error("dlq_move_error", error=str(e), message_id=message.get("MessageId"))


async def run_worker() -> None:
    """Run the reconciler worker."""
    settings = get_settings()
    configure_logging(
        service_name=f"{settings.service_name}-worker",
        log_level=settings.log_level,
        json_format=settings.log_json,
    )
    worker = ReconcilerWorker(settings=settings)
    await worker.start()


if __name__ == "__main__":
    asyncio.run(run_worker())
