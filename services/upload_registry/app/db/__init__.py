"""Record store for upload records."""

from services.upload_registry.app.db.models import (
    Base,
    DispatchedActionModel,
    ProcessedEventModel,
    UploadRecordModel,
    UploadStateAuditModel,
)
from services.upload_registry.app.db.repository import UploadRepository

__all__ = [
    "Base",
    "DispatchedActionModel",
    "ProcessedEventModel",
    "UploadRecordModel",
    "UploadStateAuditModel",
    "UploadRepository",
]
