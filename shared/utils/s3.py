"""Object store signing clients."""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any

from aiobotocore.session import get_session

from shared.utils.logging import get_logger

logger = get_logger(__name__)


class StorageClient(ABC):
    """Abstract base class for object store signing clients."""

    bucket: str

    @abstractmethod
    async def generate_presigned_upload_url(
        self,
        key: str,
        content_type: str | None = None,
        expires_in: int = 900,
    ) -> dict[str, Any]:
        """Generate a time-bounded URL for a single PUT of ``key``."""
        pass


class S3Client(StorageClient):
    """Async S3 client wrapper."""

    def __init__(
        self,
        bucket: str,
        region: str = "us-east-1",
        endpoint_url: str | None = None,
        access_key: str | None = None,
        secret_key: str | None = None,
    ):
        """Initialize S3 client.

        Args:
            bucket: S3 bucket name
            region: AWS region
            endpoint_url: Custom endpoint (for LocalStack/MinIO)
            access_key: AWS access key (or fake for LocalStack)
            secret_key: AWS secret key (or fake for LocalStack)
        """
        self.bucket = bucket
        self.region = region
        self.endpoint_url = endpoint_url
        # Use fake credentials for LocalStack if endpoint_url is set but no credentials
        self.access_key = access_key or ("test" if endpoint_url else None)
        self.secret_key = secret_key or ("test" if endpoint_url else None)
        self._session = get_session()

    async def generate_presigned_upload_url(
        self,
        key: str,
        content_type: str | None = None,
        expires_in: int = 900,
    ) -> dict[str, Any]:
        """Generate a pre-signed URL for uploading.

        Signing is local; the bucket is not contacted.

        Args:
            key: S3 object key
            content_type: MIME type the client must send, if constrained
            expires_in: URL expiration time in seconds

        Returns:
            Dict with presigned_url, expires_at and required headers
        """
        params: dict[str, Any] = {"Bucket": self.bucket, "Key": key}
        headers: dict[str, str] = {}
        if content_type:
            params["ContentType"] = content_type
            headers["Content-Type"] = content_type

        async with self._session.create_client(
            "s3",
            region_name=self.region,
            endpoint_url=self.endpoint_url,
            aws_access_key_id=self.access_key,
            aws_secret_access_key=self.secret_key,
        ) as client:
            url = await client.generate_presigned_url(
                "put_object",
                Params=params,
                ExpiresIn=expires_in,
            )

        expires_at = datetime.now(timezone.utc) + timedelta(seconds=expires_in)

        logger.info(
            "presigned_upload_url_generated",
            bucket=self.bucket,
            key=key,
            expires_at=expires_at.isoformat(),
        )

        return {
            "presigned_url": url,
            "expires_at": expires_at,
            "headers": headers,
        }


def get_storage_client(
    bucket: str,
    region: str = "us-east-1",
    endpoint_url: str | None = None,
    access_key: str | None = None,
    secret_key: str | None = None,
) -> StorageClient:
    """Create the storage client used to sign upload credentials.

    Args:
        bucket: S3 bucket name
        region: AWS region
        endpoint_url: Custom endpoint URL (for LocalStack/MinIO)
        access_key: AWS access key
        secret_key: AWS secret key
    """
    logger.info(
        "creating_storage_client",
        storage_type="s3",
        bucket=bucket,
        endpoint_url=endpoint_url,
    )
    return S3Client(
        bucket=bucket,
        region=region,
        endpoint_url=endpoint_url,
        access_key=access_key,
        secret_key=secret_key,
    )
