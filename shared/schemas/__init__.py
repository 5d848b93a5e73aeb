"""Shared Pydantic schemas for the upload registry."""

from shared.schemas.events import (
    DeadLetterMessage,
    NormalizedEvent,
    StorageEventType,
    UploadActionRequestedEvent,
)
from shared.schemas.notifications import (
    EventBridgeS3Event,
    S3EventRecord,
    S3Notification,
    SNSEnvelope,
)
from shared.schemas.upload import LIVE_STATUSES, UploadRecordView, UploadStatus

__all__ = [
    "DeadLetterMessage",
    "NormalizedEvent",
    "StorageEventType",
    "UploadActionRequestedEvent",
    "EventBridgeS3Event",
    "S3EventRecord",
    "S3Notification",
    "SNSEnvelope",
    "LIVE_STATUSES",
    "UploadRecordView",
    "UploadStatus",
]
