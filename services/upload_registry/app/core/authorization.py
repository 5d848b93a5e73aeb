"""Authorization issuer for temporary upload credentials."""

from datetime import datetime

from pydantic import BaseModel, Field

from services.upload_registry.app.core.errors import CredentialIssueError
from shared.utils.logging import get_logger
from shared.utils.s3 import StorageClient

logger = get_logger(__name__)

SUPPORTED_OPERATIONS = {"put_object": "PUT"}


class UploadCredential(BaseModel):
    """Opaque, operation-scoped credential handed to the uploading client."""

    url: str
    method: str = "PUT"
    headers: dict[str, str] = Field(default_factory=dict)
    object_key: str
    expires_at: datetime


class AuthorizationIssuer:
    """Issues time-bounded upload credentials through a signing client."""

    def __init__(
        self,
        storage_client: StorageClient,
        public_endpoint_url: str | None = None,
        internal_endpoint_url: str | None = None,
    ):
        """Initialize issuer.

        Args:
            storage_client: Client that signs object store requests
            public_endpoint_url: Endpoint browsers should use, if different
            internal_endpoint_url: Endpoint the signing client targets
        """
        self.storage_client = storage_client
        self.public_endpoint_url = public_endpoint_url
        self.internal_endpoint_url = internal_endpoint_url

    @property
    def bucket(self) -> str:
        """Bucket credentials are issued for."""
        return self.storage_client.bucket

    async def issue_credential(
        self,
        object_key: str,
        operation: str = "put_object",
        ttl: int = 900,
        content_type: str | None = None,
    ) -> UploadCredential:
        """Issue a credential permitting one operation on one object key.

        Args:
            object_key: Object key the credential is scoped to
            operation: Store operation to authorize
            ttl: Lifetime in seconds
            content_type: Content type the upload must declare

        Returns:
            Signed upload credential

        Raises:
            ValueError: If the operation is not supported
            CredentialIssueError: If the signing client fails
        """
        method = SUPPORTED_OPERATIONS.get(operation)
        if method is None:
            raise ValueError(f"Unsupported operation: {operation}")
        if ttl <= 0:
            raise ValueError("ttl must be positive")

        try:
            result = await self.storage_client.generate_presigned_upload_url(
                key=object_key,
                content_type=content_type,
                expires_in=ttl,
            )
        except Exception as e:
            logger.error(
                "credential_issue_failed",
                object_key=object_key,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise CredentialIssueError(str(e)) from e

        url = result["presigned_url"]
        if self.internal_endpoint_url and self.public_endpoint_url:
            url = url.replace(self.internal_endpoint_url, self.public_endpoint_url)

        return UploadCredential(
            url=url,
            method=method,
            headers=result.get("headers") or {},
            object_key=object_key,
            expires_at=result["expires_at"],
        )
