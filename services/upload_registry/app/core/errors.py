"""Error taxonomy for the upload registry.

Only ``ConflictError`` and ``InvalidObjectKeyError`` are user-visible; the
rest surface through logs and metrics.
"""

from uuid import UUID


class UploadRegistryError(Exception):
    """Base class for upload registry errors."""


class ConflictError(UploadRegistryError):
    """Raised when a requested object key is held by a live upload record."""

    def __init__(self, object_key: str, existing_record_id: UUID | None = None):
        self.object_key = object_key
        self.existing_record_id = existing_record_id
        super().__init__(f"Object key already has a live upload: {object_key}")


class InvalidObjectKeyError(UploadRegistryError, ValueError):
    """Raised when a requested object key is not acceptable."""


class CredentialIssueError(UploadRegistryError):
    """Raised when the signing capability cannot issue a credential."""


class MalformedEventError(UploadRegistryError):
    """Raised for notifications that will never parse.

    Terminal for the message: the worker dead-letters it instead of retrying.
    """


class TransientStoreError(UploadRegistryError):
    """Raised when the record store is temporarily unavailable."""
