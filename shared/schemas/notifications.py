"""Provider notification payloads delivered by the storage event queue.

Only the fields the normalizer reads are modelled; everything else is
ignored so provider additions never break parsing.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class _ProviderModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class S3Bucket(_ProviderModel):
    """Bucket reference inside an S3 notification."""

    name: str = Field(..., min_length=1)


class S3Object(_ProviderModel):
    """Object reference inside an S3 notification (key is URL-encoded)."""

    key: str = Field(..., min_length=1)
    size: Optional[int] = None
    e_tag: Optional[str] = Field(None, alias="eTag")
    sequencer: Optional[str] = None


class S3Entity(_ProviderModel):
    """The ``s3`` block of a notification record."""

    bucket: S3Bucket
    obj: S3Object = Field(..., alias="object")


class S3EventRecord(_ProviderModel):
    """One sub-event of a native S3 notification."""

    event_source: str = Field("aws:s3", alias="eventSource")
    event_name: str = Field(..., alias="eventName")
    event_time: datetime = Field(..., alias="eventTime")
    response_elements: dict[str, str] = Field(default_factory=dict, alias="responseElements")
    s3: S3Entity


class S3Notification(_ProviderModel):
    """Native S3 notification body (may batch several records)."""

    records: list[S3EventRecord] = Field(..., alias="Records")


class SNSEnvelope(_ProviderModel):
    """SNS fan-out wrapper around a provider notification."""

    type: str = Field(..., alias="Type")
    message: str = Field(..., alias="Message")
    message_id: Optional[str] = Field(None, alias="MessageId")


class EventBridgeObject(_ProviderModel):
    """Object reference inside an EventBridge S3 event (key is not encoded)."""

    key: str = Field(..., min_length=1)
    size: Optional[int] = None
    etag: Optional[str] = None
    sequencer: Optional[str] = None


class EventBridgeDetail(_ProviderModel):
    """The ``detail`` block of an EventBridge S3 event."""

    bucket: S3Bucket
    obj: EventBridgeObject = Field(..., alias="object")


class EventBridgeS3Event(_ProviderModel):
    """S3 event routed through EventBridge."""

    id: str
    source: str
    detail_type: str = Field(..., alias="detail-type")
    time: datetime
    detail: EventBridgeDetail
