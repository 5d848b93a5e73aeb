"""Core business logic for the upload registry."""

from services.upload_registry.app.core.errors import (
    ConflictError,
    CredentialIssueError,
    InvalidObjectKeyError,
    MalformedEventError,
    TransientStoreError,
    UploadRegistryError,
)
from services.upload_registry.app.core.state_machine import (
    InvalidTransitionError,
    StateMachine,
)

__all__ = [
    "ConflictError",
    "CredentialIssueError",
    "InvalidObjectKeyError",
    "MalformedEventError",
    "TransientStoreError",
    "UploadRegistryError",
    "InvalidTransitionError",
    "StateMachine",
]
