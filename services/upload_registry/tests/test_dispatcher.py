"""Tests for downstream action dispatch."""

import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest

from services.upload_registry.app.core.dispatcher import ActionDispatcher
from shared.schemas.events import UploadActionRequestedEvent


@pytest.fixture
def uploaded_record():
    """In-memory uploaded record."""
    record = MagicMock()
    record.record_id = uuid4()
    record.object_key = "uploads/42"
    record.uploaded_at = datetime(2026, 10, 16, 12, 0, tzinfo=timezone.utc)
    return record


class TestDispatch:
    """Tests for ActionDispatcher.dispatch."""

    @pytest.mark.asyncio
    async def test_acknowledged_dispatch(self, dispatcher, mock_sqs_client, uploaded_record):
        """Test a successful send is acknowledged with the message id."""
        result = await dispatcher.dispatch("scan", uploaded_record)

        assert result.acknowledged is True
        assert result.message_id == "test-message-id-123"
        assert result.error is None

        call = mock_sqs_client.send_message.call_args
        event = call.args[0]
        assert isinstance(event, UploadActionRequestedEvent)
        assert event.action == "scan"
        assert event.record_id == uploaded_record.record_id
        assert event.object_key == "uploads/42"
        assert call.kwargs["queue_url"] == "http://test/queue/upload-scan"
        assert call.kwargs["message_group_id"] is None
        assert call.kwargs["deduplication_id"] is None

    @pytest.mark.asyncio
    async def test_fifo_queue_ids(self, mock_sqs_client, uploaded_record):
        """Test FIFO targets get a per-record group and per-action dedup id."""
        dispatcher = ActionDispatcher(
            sqs_client=mock_sqs_client,
            targets={"scan": "http://test/queue/upload-scan.fifo"},
        )

        await dispatcher.dispatch("scan", uploaded_record)

        kwargs = mock_sqs_client.send_message.call_args.kwargs
        assert kwargs["message_group_id"] == str(uploaded_record.record_id)
        assert kwargs["deduplication_id"] == f"{uploaded_record.record_id}:scan"

    @pytest.mark.asyncio
    async def test_send_failure_is_not_raised(self, dispatcher, mock_sqs_client, uploaded_record):
        """Test delivery failures are reported, not raised."""
        mock_sqs_client.send_message = AsyncMock(side_effect=ConnectionError("queue unreachable"))

        result = await dispatcher.dispatch("audit", uploaded_record)

        assert result.acknowledged is False
        assert "queue unreachable" in result.error

    @pytest.mark.asyncio
    async def test_send_timeout(self, mock_sqs_client, uploaded_record):
        """Test a send exceeding the timeout is not acknowledged."""

        async def slow_send(*args, **kwargs):
            await asyncio.sleep(1)
            return "late"

        mock_sqs_client.send_message = AsyncMock(side_effect=slow_send)
        dispatcher = ActionDispatcher(
            sqs_client=mock_sqs_client,
            targets={"scan": "http://test/queue/upload-scan"},
            timeout_seconds=0.01,
        )

        result = await dispatcher.dispatch("scan", uploaded_record)

        assert result.acknowledged is False
        assert result.error == "TimeoutError"

    @pytest.mark.asyncio
    async def test_unknown_action(self, dispatcher, mock_sqs_client, uploaded_record):
        """Test actions without a target are never acknowledged."""
        result = await dispatcher.dispatch("thumbnail", uploaded_record)

        assert result.acknowledged is False
        mock_sqs_client.send_message.assert_not_called()

    def test_actions_are_sorted(self, dispatcher):
        """Test configured actions are listed in a stable order."""
        assert dispatcher.actions == ["audit", "quota", "scan"]
