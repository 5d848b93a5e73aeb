"""Storage notification normalization.

Turns provider payloads (native S3 notifications, SNS fan-out envelopes and
EventBridge S3 events) into ``NormalizedEvent`` values for the reconciler.
"""

import json
from typing import Any
from urllib.parse import unquote_plus

from pydantic import ValidationError

from services.upload_registry.app.core.errors import MalformedEventError
from shared.schemas.events import NormalizedEvent, StorageEventType
from shared.schemas.notifications import (
    EventBridgeS3Event,
    S3EventRecord,
    S3Notification,
    SNSEnvelope,
)
from shared.utils.logging import get_logger

logger = get_logger(__name__)

S3_TEST_EVENT = "s3:TestEvent"

EVENTBRIDGE_SOURCE = "aws.s3"
EVENTBRIDGE_DETAIL_TYPES = {
    "Object Created": StorageEventType.CREATED,
    "Object Deleted": StorageEventType.REMOVED,
}


def classify_event_name(event_name: str) -> StorageEventType:
    """Map a native S3 event name to a canonical event type.

    Args:
        event_name: Provider event name (e.g., "ObjectCreated:Put")

    Returns:
        CREATED, REMOVED or UNKNOWN
    """
    if event_name.startswith("ObjectCreated:"):
        return StorageEventType.CREATED
    if event_name.startswith("ObjectRemoved:"):
        return StorageEventType.REMOVED
    return StorageEventType.UNKNOWN


def _strip_etag(etag: str | None) -> str | None:
    if etag is None:
        return None
    return etag.strip('"') or None


class EventNormalizer:
    """Stateless translator from provider notifications to canonical events."""

    def __init__(
        self,
        key_prefix: str = "",
        bucket_filter: str | None = None,
        track_removals: bool = True,
    ):
        """Initialize normalizer.

        Args:
            key_prefix: Only keys under this prefix are emitted
            bucket_filter: Only notifications for this bucket are emitted
            track_removals: Emit REMOVED events instead of discarding them
        """
        self.key_prefix = key_prefix
        self.bucket_filter = bucket_filter
        self.track_removals = track_removals

    def normalize(self, raw: str | bytes | dict[str, Any]) -> list[NormalizedEvent]:
        """Normalize one queue message body.

        Args:
            raw: Message body as received from the queue

        Returns:
            Canonical events to reconcile (possibly empty)

        Raises:
            MalformedEventError: If the body can never be parsed
        """
        payload = self._decode(raw)

        if payload.get("Type") == "Notification" and "Message" in payload:
            try:
                envelope = SNSEnvelope.model_validate(payload)
            except ValidationError as e:
                raise MalformedEventError(f"Invalid SNS envelope: {e}") from e
            payload = self._decode(envelope.message)

        if payload.get("Event") == S3_TEST_EVENT:
            logger.debug("test_event_discarded", bucket=payload.get("Bucket"))
            return []

        try:
            if "Records" in payload:
                events = self._from_s3_notification(S3Notification.model_validate(payload))
            elif payload.get("source") == EVENTBRIDGE_SOURCE:
                events = self._from_eventbridge(EventBridgeS3Event.model_validate(payload))
            else:
                raise MalformedEventError(
                    f"Unrecognised notification envelope: keys={sorted(payload)[:10]}"
                )
        except ValidationError as e:
            raise MalformedEventError(f"Notification missing required fields: {e}") from e

        return [event for event in events if self._accepts(event)]

    def _decode(self, raw: str | bytes | dict[str, Any]) -> dict[str, Any]:
        if isinstance(raw, dict):
            return raw
        try:
            payload = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise MalformedEventError(f"Invalid JSON: {e}") from e
        if not isinstance(payload, dict):
            raise MalformedEventError(f"Expected a JSON object, got {type(payload).__name__}")
        return payload

    def _from_s3_notification(self, notification: S3Notification) -> list[NormalizedEvent]:
        events = []
        for record in notification.records:
            event_type = classify_event_name(record.event_name)
            if event_type == StorageEventType.UNKNOWN:
                logger.debug("event_name_discarded", event_name=record.event_name)
                continue
            events.append(self._from_s3_record(record, event_type))
        return events

    def _from_s3_record(
        self,
        record: S3EventRecord,
        event_type: StorageEventType,
    ) -> NormalizedEvent:
        bucket = record.s3.bucket.name
        key = unquote_plus(record.s3.obj.key)
        sequencer = record.s3.obj.sequencer
        if sequencer:
            raw_event_id = f"{bucket}/{key}:{sequencer}"
        else:
            request_id = record.response_elements.get("x-amz-request-id")
            raw_event_id = f"{bucket}/{key}:{request_id or record.event_time.isoformat()}"

        return NormalizedEvent(
            object_key=key,
            bucket=bucket,
            event_type=event_type,
            provider_timestamp=record.event_time,
            raw_event_id=raw_event_id,
            provider_event_name=record.event_name,
            size=record.s3.obj.size,
            etag=_strip_etag(record.s3.obj.e_tag),
        )

    def _from_eventbridge(self, event: EventBridgeS3Event) -> list[NormalizedEvent]:
        event_type = EVENTBRIDGE_DETAIL_TYPES.get(event.detail_type)
        if event_type is None:
            logger.debug("event_name_discarded", event_name=event.detail_type)
            return []

        bucket = event.detail.bucket.name
        key = event.detail.obj.key
        sequencer = event.detail.obj.sequencer
        raw_event_id = f"{bucket}/{key}:{sequencer}" if sequencer else event.id

        return [
            NormalizedEvent(
                object_key=key,
                bucket=bucket,
                event_type=event_type,
                provider_timestamp=event.time,
                raw_event_id=raw_event_id,
                provider_event_name=event.detail_type,
                size=event.detail.obj.size,
                etag=_strip_etag(event.detail.obj.etag),
            )
        ]

    def _accepts(self, event: NormalizedEvent) -> bool:
        if event.event_type == StorageEventType.REMOVED and not self.track_removals:
            return False
        if self.bucket_filter and event.bucket != self.bucket_filter:
            logger.debug("bucket_filtered", bucket=event.bucket, object_key=event.object_key)
            return False
        if not event.object_key.startswith(self.key_prefix):
            logger.debug("key_prefix_filtered", object_key=event.object_key)
            return False
        return True
