"""Tests for the expiry sweeper."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import update

from services.upload_registry.app.core.reconciler import Reconciler
from services.upload_registry.app.db.models import ProcessedEventModel, UploadRecordModel
from services.upload_registry.app.db.repository import UploadRepository
from services.upload_registry.app.pipeline.sweeper import ExpirySweeper
from shared.schemas.upload import UploadStatus


@pytest.fixture
def sweeper(session_factory, dispatcher) -> ExpirySweeper:
    """Sweeper with a five minute expiry grace and a one minute redispatch grace."""
    return ExpirySweeper(
        session_factory=session_factory,
        dispatcher=dispatcher,
        expiry_grace_seconds=300,
        dedup_window_seconds=3600,
        redispatch_grace_seconds=60,
        worker_id="sweeper-test",
    )


async def _status(session_factory, record_id) -> UploadStatus:
    async with session_factory() as session:
        record = await UploadRepository(session).get_by_id(record_id)
        return record.status


async def _backdate_upload(session_factory, record_id, minutes: int) -> None:
    async with session_factory() as session:
        await session.execute(
            update(UploadRecordModel)
            .where(UploadRecordModel.record_id == record_id)
            .values(updated_at=datetime.now(timezone.utc) - timedelta(minutes=minutes))
        )
        await session.commit()


class TestExpireStale:
    """Tests for expiring lapsed pending records."""

    @pytest.mark.asyncio
    async def test_expires_after_grace(self, sweeper, make_pending_record, session_factory):
        """Test pending records past expiry plus grace become expired."""
        now = datetime.now(timezone.utc)
        lapsed = await make_pending_record("uploads/lapsed", credential_expiry=now - timedelta(hours=1))
        in_grace = await make_pending_record("uploads/grace", credential_expiry=now - timedelta(seconds=60))
        fresh = await make_pending_record("uploads/fresh")

        result = await sweeper.run_once()

        assert result.expired == 1
        assert await _status(session_factory, lapsed.record_id) == UploadStatus.EXPIRED
        assert await _status(session_factory, in_grace.record_id) == UploadStatus.PENDING
        assert await _status(session_factory, fresh.record_id) == UploadStatus.PENDING

    @pytest.mark.asyncio
    async def test_uploaded_records_are_left_alone(
        self, sweeper, make_pending_record, make_event, session_factory, dispatcher
    ):
        """Test a record confirmed late is never expired."""
        record = await make_pending_record(
            "uploads/late",
            credential_expiry=datetime.now(timezone.utc) - timedelta(hours=1),
        )
        async with session_factory() as session:
            await Reconciler(session, dispatcher).reconcile(make_event("uploads/late"))

        result = await sweeper.run_once()

        assert result.expired == 0
        assert await _status(session_factory, record.record_id) == UploadStatus.UPLOADED


class TestRedispatch:
    """Tests for re-dispatching unacknowledged actions."""

    @pytest.mark.asyncio
    async def test_missing_action_is_redispatched(
        self, sweeper, make_pending_record, make_event, session_factory, dispatcher, mock_sqs_client
    ):
        """Test an action that failed at confirmation is sent by the sweeper."""
        record = await make_pending_record("uploads/42")

        async def scan_down(message, queue_url=None, **kwargs):
            if queue_url.endswith("upload-scan"):
                raise ConnectionError("scan queue down")
            return "msg-ok"

        mock_sqs_client.send_message = AsyncMock(side_effect=scan_down)
        async with session_factory() as session:
            await Reconciler(session, dispatcher).reconcile(make_event("uploads/42"))
        await _backdate_upload(session_factory, record.record_id, minutes=10)

        mock_sqs_client.send_message = AsyncMock(return_value="msg-retry")
        result = await sweeper.run_once()

        assert result.redispatched == 1
        assert result.redispatch_failures == 0
        assert mock_sqs_client.send_message.await_count == 1
        assert mock_sqs_client.send_message.call_args.args[0].action == "scan"
        async with session_factory() as session:
            actions = await UploadRepository(session).get_dispatched_actions(record.record_id)
        assert actions == {"audit", "quota", "scan"}

    @pytest.mark.asyncio
    async def test_fresh_upload_is_not_redispatched(
        self, sweeper, make_pending_record, make_event, session_factory, dispatcher, mock_sqs_client
    ):
        """Test an upload confirmed within the grace is left to its reconciler."""
        record = await make_pending_record("uploads/42")

        async def scan_down(message, queue_url=None, **kwargs):
            if queue_url.endswith("upload-scan"):
                raise ConnectionError("scan queue down")
            return "msg-ok"

        mock_sqs_client.send_message = AsyncMock(side_effect=scan_down)
        async with session_factory() as session:
            await Reconciler(session, dispatcher).reconcile(make_event("uploads/42"))

        mock_sqs_client.send_message = AsyncMock(return_value="msg-retry")
        result = await sweeper.run_once()

        assert result.redispatched == 0
        mock_sqs_client.send_message.assert_not_called()
        async with session_factory() as session:
            actions = await UploadRepository(session).get_dispatched_actions(record.record_id)
        assert actions == {"audit", "quota"}

    @pytest.mark.asyncio
    async def test_complete_records_are_not_redispatched(
        self, sweeper, make_pending_record, make_event, session_factory, dispatcher, mock_sqs_client
    ):
        """Test records with every action acknowledged are skipped."""
        await make_pending_record("uploads/42")
        async with session_factory() as session:
            await Reconciler(session, dispatcher).reconcile(make_event("uploads/42"))
        mock_sqs_client.send_message.reset_mock()

        result = await sweeper.run_once()

        assert result.redispatched == 0
        mock_sqs_client.send_message.assert_not_called()


class TestPurge:
    """Tests for trimming the dedup window."""

    @pytest.mark.asyncio
    async def test_old_processed_events_are_purged(self, sweeper, session_factory):
        """Test processed events older than the window are deleted."""
        async with session_factory() as session:
            session.add(
                ProcessedEventModel(
                    raw_event_id="uploads/uploads/old:1",
                    object_key="uploads/old",
                    processed_at=datetime.now(timezone.utc) - timedelta(hours=2),
                )
            )
            session.add(
                ProcessedEventModel(
                    raw_event_id="uploads/uploads/new:1",
                    object_key="uploads/new",
                )
            )
            await session.commit()

        result = await sweeper.run_once()

        assert result.purged_events == 1


class TestRunForever:
    """Tests for the sweeper loop."""

    @pytest.mark.asyncio
    async def test_errors_do_not_stop_the_loop(self, sweeper):
        """Test a failing pass is logged and the loop continues until stopped."""
        calls = []

        async def failing_pass():
            calls.append(1)
            if len(calls) >= 2:
                sweeper.stop()
            raise RuntimeError("database unavailable")

        sweeper.run_once = failing_pass
        sweeper.interval_seconds = 0

        await sweeper.run_forever()

        assert len(calls) == 2
