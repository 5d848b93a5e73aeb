"""Upload intake: reserves an object key and hands out a credential."""

import re
import uuid
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from services.upload_registry.app.core.authorization import AuthorizationIssuer, UploadCredential
from services.upload_registry.app.core.errors import (
    ConflictError,
    CredentialIssueError,
    InvalidObjectKeyError,
)
from services.upload_registry.app.db.models import UploadRecordModel, ensure_utc, utc_now
from services.upload_registry.app.db.repository import UploadRepository
from shared.schemas.upload import UploadStatus
from shared.utils.logging import get_logger

logger = get_logger(__name__)

# S3 key pattern: alphanumeric, hyphens, underscores, periods, forward slashes
OBJECT_KEY_PATTERN = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9\-_./]{0,1023}$")

INTAKE_WORKER_ID = "intake"


@dataclass
class IntakeResult:
    """Credential and record produced by one intake request."""

    credential: UploadCredential
    record: UploadRecordModel


class UploadIntakeService:
    """Creates pending upload records and issues their credentials."""

    def __init__(
        self,
        session: AsyncSession,
        issuer: AuthorizationIssuer,
        key_prefix: str = "uploads/",
        credential_ttl_seconds: int = 900,
        default_content_type: str | None = None,
        expiry_grace_seconds: int = 300,
    ):
        """Initialize intake service.

        Args:
            session: Database session
            issuer: Authorization issuer for upload credentials
            key_prefix: Prefix every object key must live under
            credential_ttl_seconds: Lifetime of issued credentials
            default_content_type: Content type applied when none is requested
            expiry_grace_seconds: Slack after credential expiry before a key
                held by a pending record can be reissued
        """
        self.repository = UploadRepository(session)
        self.session = session
        self.issuer = issuer
        self.key_prefix = key_prefix
        self.credential_ttl_seconds = credential_ttl_seconds
        self.default_content_type = default_content_type
        self.expiry_grace = timedelta(seconds=expiry_grace_seconds)

    def generate_key(self) -> str:
        """Generate a fresh object key under the configured prefix."""
        return f"{self.key_prefix}{uuid.uuid4().hex}"

    def validate_key(self, object_key: str) -> str:
        """Validate a caller-provided object key.

        Raises:
            InvalidObjectKeyError: If the key is malformed or outside the prefix
        """
        if not OBJECT_KEY_PATTERN.match(object_key):
            raise InvalidObjectKeyError(
                "Object keys must start with an alphanumeric character and contain only "
                "alphanumerics, hyphens, underscores, periods and forward slashes"
            )
        if ".." in object_key.split("/") or "//" in object_key:
            raise InvalidObjectKeyError("Object keys must not contain empty or '..' segments")
        if not object_key.startswith(self.key_prefix) or object_key == self.key_prefix:
            raise InvalidObjectKeyError(f"Object keys must live under '{self.key_prefix}'")
        return object_key

    async def request_upload(
        self,
        desired_key: str | None = None,
        content_type: str | None = None,
    ) -> IntakeResult:
        """Reserve an object key and issue an upload credential.

        The store is not contacted; the client uploads directly and the
        reconciler confirms completion from the provider's notification.

        Args:
            desired_key: Caller-chosen object key, or None to generate one
            content_type: Content type the upload must declare

        Returns:
            IntakeResult with the credential and the pending record

        Raises:
            InvalidObjectKeyError: If the desired key is not acceptable
            ConflictError: If a live record already holds the key
            CredentialIssueError: If the credential could not be signed
        """
        object_key = self.validate_key(desired_key) if desired_key else self.generate_key()
        content_type = content_type or self.default_content_type

        record = await self._reserve(object_key, content_type)

        try:
            credential = await self.issuer.issue_credential(
                object_key=object_key,
                operation="put_object",
                ttl=self.credential_ttl_seconds,
                content_type=content_type,
            )
        except CredentialIssueError as e:
            await self.repository.update_status(
                record_id=record.record_id,
                new_status=UploadStatus.FAILED,
                expected_status=UploadStatus.PENDING,
                worker_id=INTAKE_WORKER_ID,
                reason=f"Credential issue failed: {e}",
            )
            await self.session.commit()
            raise

        await self.session.commit()

        logger.info(
            "upload_requested",
            record_id=str(record.record_id),
            object_key=object_key,
            credential_expiry=record.credential_expiry.isoformat(),
        )

        return IntakeResult(credential=credential, record=record)

    async def _reserve(self, object_key: str, content_type: str | None) -> UploadRecordModel:
        """Create the pending record, reclaiming a key whose credential lapsed."""
        for attempt in range(2):
            credential_expiry = utc_now() + timedelta(seconds=self.credential_ttl_seconds)
            record, created = await self.repository.create_if_absent(
                object_key=object_key,
                bucket=self.issuer.bucket,
                credential_expiry=credential_expiry,
                content_type=content_type,
            )
            if created:
                return record

            reclaimable = (
                attempt == 0
                and record.status == UploadStatus.PENDING
                and ensure_utc(record.credential_expiry) + self.expiry_grace <= utc_now()
            )
            if not reclaimable:
                logger.info(
                    "upload_key_conflict",
                    object_key=object_key,
                    existing_record_id=str(record.record_id),
                    existing_status=record.status.value,
                )
                raise ConflictError(object_key, existing_record_id=record.record_id)

            # Lapsed credential: retire the old record so the key can be reissued
            _, expired = await self.repository.update_status(
                record_id=record.record_id,
                new_status=UploadStatus.EXPIRED,
                expected_status=UploadStatus.PENDING,
                worker_id=INTAKE_WORKER_ID,
                reason="Credential lapsed before reissue",
            )
            if expired:
                logger.info(
                    "lapsed_upload_expired_for_reissue",
                    record_id=str(record.record_id),
                    object_key=object_key,
                )

        raise ConflictError(object_key)
