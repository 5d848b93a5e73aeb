"""Upload record schema models."""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field


class UploadStatus(str, Enum):
    """Upload lifecycle status."""

    PENDING = "pending"
    UPLOADED = "uploaded"
    FAILED = "failed"
    EXPIRED = "expired"


# Statuses that reserve an object key
LIVE_STATUSES: tuple[UploadStatus, ...] = (
    UploadStatus.PENDING,
    UploadStatus.UPLOADED,
)


class UploadRecordView(BaseModel):
    """Read-only view of an upload record."""

    record_id: UUID
    object_key: str
    bucket: str
    status: UploadStatus
    credential_expiry: datetime
    created_at: datetime
    updated_at: datetime
    uploaded_at: Optional[datetime] = None
    content_length: Optional[int] = None
    etag: Optional[str] = None
    error_message: Optional[str] = None
    dispatched_actions: list[str] = Field(default_factory=list)
