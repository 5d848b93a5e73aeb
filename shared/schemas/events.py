"""Event schemas for SQS messaging."""

from datetime import datetime, timezone
from enum import Enum
from typing import Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    """Return current UTC time with timezone info."""
    return datetime.now(timezone.utc)


class BaseEvent(BaseModel):
    """Base event schema."""

    correlation_id: str = Field(..., description="Request correlation ID for tracing")
    timestamp: datetime = Field(default_factory=utc_now)


class StorageEventType(str, Enum):
    """Canonical storage event type."""

    CREATED = "created"
    REMOVED = "removed"
    UNKNOWN = "unknown"


class NormalizedEvent(BaseModel):
    """Canonical storage notification consumed by the reconciler.

    Produced by the event normalizer from provider payloads. Ephemeral: only
    ``raw_event_id`` outlives it, inside the dedup window.
    """

    model_config = ConfigDict(frozen=True)

    object_key: str
    bucket: str
    event_type: StorageEventType
    provider_timestamp: datetime
    raw_event_id: str = Field(..., description="Provider-stable id used for deduplication")
    provider_event_name: str = ""
    size: Optional[int] = None
    etag: Optional[str] = None


class UploadActionRequestedEvent(BaseEvent):
    """Event sent to a downstream subscriber after an upload is confirmed.

    Subscribers must be idempotent on ``(record_id, action)``.
    """

    event_type: Literal["UploadActionRequested"] = "UploadActionRequested"
    action: str
    record_id: UUID
    object_key: str
    uploaded_at: datetime


class DeadLetterMessage(BaseModel):
    """Envelope for a queue message that could not be processed."""

    original_body: Optional[str] = None
    original_message_id: Optional[str] = None
    error: str
    error_type: str
    receive_count: int = 0
    worker_id: str
    timestamp: datetime = Field(default_factory=utc_now)
