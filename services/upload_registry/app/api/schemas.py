"""Request and response schemas for Upload Registry API."""

from datetime import datetime
from typing import Any, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from shared.schemas.upload import UploadRecordView, UploadStatus


class UploadRequest(BaseModel):
    """Request schema for an upload credential."""

    object_key: Optional[str] = Field(
        None,
        description="Desired object key (generated under the key prefix if omitted)",
        min_length=1,
        max_length=1024,
    )
    content_type: Optional[str] = Field(
        None, description="Content type the upload must declare", max_length=255
    )


class CredentialResponse(BaseModel):
    """Temporary upload credential."""

    url: str
    method: str = "PUT"
    headers: dict[str, str] = Field(default_factory=dict)
    expires_at: datetime


class UploadRequestResponse(BaseModel):
    """Response schema for an upload request."""

    record_id: UUID
    object_key: str
    status: UploadStatus
    credential: CredentialResponse
    expires_at: datetime


class UploadRecordResponse(UploadRecordView):
    """Response schema for upload record details."""

    content_type: Optional[str] = None


class ErrorResponse(BaseModel):
    """Standardized error response schema."""

    error_code: str = Field(..., description="Machine-readable error code")
    message: str = Field(..., description="Human-readable error message")
    details: Optional[dict[str, Any]] = Field(
        None, description="Additional error details"
    )
    correlation_id: Optional[str] = Field(
        None, description="Request correlation ID for tracing"
    )


class HealthResponse(BaseModel):
    """Health check response."""

    status: Literal["healthy", "unhealthy"]
    service: str
    version: str = "0.1.0"


class ReadinessResponse(BaseModel):
    """Readiness check response."""

    ready: bool
    checks: dict[str, bool] = Field(default_factory=dict)
