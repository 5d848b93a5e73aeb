"""FastAPI dependency injection."""

from typing import Annotated, AsyncGenerator

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from services.upload_registry.app.config import Settings, get_settings
from services.upload_registry.app.core.authorization import AuthorizationIssuer
from shared.utils.db import get_db_session
from shared.utils.s3 import StorageClient, get_storage_client


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Get database session dependency."""
    async with get_db_session() as session:
        yield session


def get_s3_client(
    settings: Annotated[Settings, Depends(get_settings)],
) -> StorageClient:
    """Get storage signing client dependency."""
    return get_storage_client(
        bucket=settings.s3_bucket,
        region=settings.s3_region,
        endpoint_url=settings.s3_endpoint_url,
    )


def get_issuer(
    storage_client: Annotated[StorageClient, Depends(get_s3_client)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> AuthorizationIssuer:
    """Get authorization issuer dependency."""
    return AuthorizationIssuer(
        storage_client=storage_client,
        public_endpoint_url=settings.s3_public_endpoint_url,
        internal_endpoint_url=settings.s3_endpoint_url,
    )


# Type aliases for cleaner function signatures
DBSession = Annotated[AsyncSession, Depends(get_db)]
Issuer = Annotated[AuthorizationIssuer, Depends(get_issuer)]
AppSettings = Annotated[Settings, Depends(get_settings)]
