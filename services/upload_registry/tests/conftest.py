"""Pytest fixtures for Upload Registry tests."""

import json
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator
from unittest.mock import AsyncMock, MagicMock

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from services.upload_registry.app.config import Settings, get_settings
from services.upload_registry.app.core.authorization import AuthorizationIssuer
from services.upload_registry.app.core.dispatcher import ActionDispatcher
from services.upload_registry.app.db.models import Base, UploadRecordModel
from services.upload_registry.app.db.repository import UploadRepository
from services.upload_registry.app.dependencies import get_db, get_issuer
from services.upload_registry.app.main import app
from shared.schemas.events import NormalizedEvent, StorageEventType

TEST_TARGETS = {
    "audit": "http://test/queue/upload-audit",
    "quota": "http://test/queue/upload-quota",
    "scan": "http://test/queue/upload-scan",
}
TEST_DLQ_URL = "http://test/queue/upload-notifications-dlq"
TEST_NOTIFICATIONS_URL = "http://test/queue/upload-notifications"


@pytest.fixture
async def db_engine():
    """Create in-memory SQLite database engine for testing."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the test engine."""
    return async_sessionmaker(
        bind=db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create database session for testing."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def mock_sqs_client():
    """Create mock SQS client for testing."""
    mock = MagicMock()
    mock.queue_url = TEST_NOTIFICATIONS_URL
    mock.send_message = AsyncMock(return_value="test-message-id-123")
    mock.receive_messages = AsyncMock(return_value=[])
    mock.delete_message = AsyncMock()
    mock.change_visibility = AsyncMock()
    return mock


@pytest.fixture
def dispatcher(mock_sqs_client) -> ActionDispatcher:
    """Dispatcher delivering to the mock SQS client."""
    return ActionDispatcher(
        sqs_client=mock_sqs_client,
        targets=TEST_TARGETS,
        timeout_seconds=1.0,
    )


@pytest.fixture
def mock_storage_client():
    """Create mock storage signing client for testing."""
    mock = MagicMock()
    mock.bucket = "uploads"

    async def presign(key, content_type=None, expires_in=900):
        headers = {"Content-Type": content_type} if content_type else {}
        return {
            "presigned_url": f"http://localhost:4566/uploads/{key}?X-Amz-Signature=abc",
            "expires_at": datetime.now(timezone.utc) + timedelta(seconds=expires_in),
            "headers": headers,
        }

    mock.generate_presigned_upload_url = AsyncMock(side_effect=presign)
    return mock


@pytest.fixture
def issuer(mock_storage_client) -> AuthorizationIssuer:
    """Authorization issuer backed by the mock storage client."""
    return AuthorizationIssuer(storage_client=mock_storage_client)


@pytest.fixture
def test_settings():
    """Create test settings."""
    return Settings(
        environment="test",
        log_json=False,
        database_url="sqlite+aiosqlite:///:memory:",
        sqs_endpoint_url=None,
        sqs_notifications_queue_url=TEST_NOTIFICATIONS_URL,
        sqs_dlq_url=TEST_DLQ_URL,
        s3_endpoint_url=None,
        dispatch_targets=TEST_TARGETS,
        dispatch_timeout_seconds=1.0,
        sweeper_enabled=False,
        store_timeout_seconds=5.0,
    )


@pytest.fixture
async def test_client(session_factory, issuer, test_settings) -> AsyncGenerator[AsyncClient, None]:
    """Create test client with mocked dependencies."""

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    def override_get_issuer():
        return issuer

    def override_get_settings():
        return test_settings

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_issuer] = override_get_issuer
    app.dependency_overrides[get_settings] = override_get_settings

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture
def make_pending_record(session_factory):
    """Factory creating a committed pending record."""

    async def _make(
        object_key: str = "uploads/42",
        credential_expiry: datetime | None = None,
    ) -> UploadRecordModel:
        async with session_factory() as session:
            repository = UploadRepository(session)
            record, created = await repository.create_if_absent(
                object_key=object_key,
                bucket="uploads",
                credential_expiry=credential_expiry
                or datetime.now(timezone.utc) + timedelta(minutes=15),
            )
            await session.commit()
            assert created
            return record

    return _make


@pytest.fixture
def make_event():
    """Factory building normalized storage events."""

    def _make(
        object_key: str = "uploads/42",
        event_type: StorageEventType = StorageEventType.CREATED,
        raw_event_id: str | None = None,
        size: int | None = 1024,
        provider_timestamp: datetime | None = None,
    ) -> NormalizedEvent:
        return NormalizedEvent(
            object_key=object_key,
            bucket="uploads",
            event_type=event_type,
            provider_timestamp=provider_timestamp or datetime.now(timezone.utc),
            raw_event_id=raw_event_id or f"uploads/{object_key}:0062E5B8E6A1",
            provider_event_name="ObjectCreated:Put",
            size=size,
            etag="d41d8cd98f00b204e9800998ecf8427e",
        )

    return _make


@pytest.fixture
def s3_notification():
    """Factory building native S3 notification bodies."""

    def _make(
        key: str = "uploads/42",
        event_name: str = "ObjectCreated:Put",
        bucket: str = "uploads",
        sequencer: str = "0062E5B8E6A1",
        event_time: str | None = None,
    ) -> dict:
        return {
            "Records": [
                {
                    "eventVersion": "2.1",
                    "eventSource": "aws:s3",
                    "awsRegion": "us-east-1",
                    "eventTime": event_time
                    or datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z",
                    "eventName": event_name,
                    "responseElements": {
                        "x-amz-request-id": "C3D13FE58DE4C810",
                        "x-amz-id-2": "FMyUVURIY8/IgAtTv8xRjskZQpcIZ9KG4V5Wp6S7S/JRWeUWerMUE5JgHvANOjpD",
                    },
                    "s3": {
                        "s3SchemaVersion": "1.0",
                        "bucket": {"name": bucket, "arn": f"arn:aws:s3:::{bucket}"},
                        "object": {
                            "key": key,
                            "size": 1024,
                            "eTag": "d41d8cd98f00b204e9800998ecf8427e",
                            "sequencer": sequencer,
                        },
                    },
                }
            ]
        }

    return _make


@pytest.fixture
def sqs_message(s3_notification):
    """Factory wrapping a notification body in an SQS message."""

    def _make(body: dict | str | None = None, receive_count: int = 1, message_id: str = "msg-1") -> dict:
        if body is None:
            body = s3_notification()
        return {
            "MessageId": message_id,
            "ReceiptHandle": f"receipt-{message_id}",
            "Body": body if isinstance(body, str) else json.dumps(body),
            "Attributes": {"ApproximateReceiveCount": str(receive_count)},
        }

    return _make
