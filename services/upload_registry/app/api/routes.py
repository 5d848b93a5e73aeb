"""API routes for Upload Registry service."""

from uuid import UUID

from fastapi import APIRouter, HTTPException, status

from services.upload_registry.app.api.schemas import (
    CredentialResponse,
    ErrorResponse,
    HealthResponse,
    ReadinessResponse,
    UploadRecordResponse,
    UploadRequest,
    UploadRequestResponse,
)
from services.upload_registry.app.core.errors import (
    ConflictError,
    CredentialIssueError,
    InvalidObjectKeyError,
)
from services.upload_registry.app.core.intake import UploadIntakeService
from services.upload_registry.app.db.repository import UploadRepository
from services.upload_registry.app.dependencies import AppSettings, DBSession, Issuer
from shared.utils.db import check_db
from shared.utils.logging import get_correlation_id, get_logger
from shared.utils.metrics import create_counter, create_histogram

logger = get_logger(__name__)

router = APIRouter()

# Metrics
INTAKE_REQUESTS = create_counter(
    "upload_intake_requests_total",
    "Total upload intake requests",
    ["status"],
)
REQUEST_LATENCY = create_histogram(
    "upload_registry_request_duration_seconds",
    "Request latency in seconds",
    ["endpoint"],
)


def create_error_response(
    error_code: str,
    message: str,
    details: dict | None = None,
) -> dict:
    """Create a standardized error response dict.

    Args:
        error_code: Machine-readable error code (e.g., "RECORD_NOT_FOUND")
        message: Human-readable error message
        details: Optional additional error details

    Returns:
        Dict suitable for HTTPException detail parameter
    """
    response = ErrorResponse(
        error_code=error_code,
        message=message,
        details=details,
        correlation_id=get_correlation_id(),
    )
    return response.model_dump(exclude_none=True)


@router.get("/health", response_model=HealthResponse)
async def health_check(settings: AppSettings) -> HealthResponse:
    """Health check endpoint.

    Returns basic liveness status without touching dependencies.
    """
    return HealthResponse(status="healthy", service=settings.service_name)


@router.get("/ready", response_model=ReadinessResponse)
async def readiness_check(db: DBSession) -> ReadinessResponse:
    """Readiness check endpoint.

    Verifies the record store answers queries.
    """
    checks = {}

    try:
        checks["database"] = await check_db(db)
    except Exception as e:
        logger.warning("readiness_check_database_failed", error=str(e))
        checks["database"] = False

    return ReadinessResponse(ready=all(checks.values()), checks=checks)


@router.post(
    "/requests",
    response_model=UploadRequestResponse,
    status_code=status.HTTP_201_CREATED,
)
async def request_upload(
    request: UploadRequest,
    db: DBSession,
    issuer: Issuer,
    settings: AppSettings,
) -> UploadRequestResponse:
    """Reserve an object key and issue a temporary upload credential.

    The client uploads directly to the object store with the returned
    credential; the record becomes uploaded once the store's notification
    is reconciled.
    """
    with REQUEST_LATENCY.labels(endpoint="request_upload").time():
        intake = UploadIntakeService(
            session=db,
            issuer=issuer,
            key_prefix=settings.key_prefix,
            credential_ttl_seconds=settings.credential_ttl_seconds,
            default_content_type=settings.default_content_type,
            expiry_grace_seconds=settings.expiry_grace_seconds,
        )

        try:
            result = await intake.request_upload(
                desired_key=request.object_key,
                content_type=request.content_type,
            )
        except InvalidObjectKeyError as e:
            INTAKE_REQUESTS.labels(status="invalid").inc()
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=create_error_response(
                    error_code="INVALID_OBJECT_KEY",
                    message=str(e),
                    details={"object_key": request.object_key},
                ),
            )
        except ConflictError as e:
            INTAKE_REQUESTS.labels(status="conflict").inc()
            details = {"object_key": e.object_key}
            if e.existing_record_id:
                details["existing_record_id"] = str(e.existing_record_id)
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=create_error_response(
                    error_code="OBJECT_KEY_CONFLICT",
                    message=str(e),
                    details=details,
                ),
            )
        except CredentialIssueError:
            INTAKE_REQUESTS.labels(status="credential_failed").inc()
            raise HTTPException(
                status_code=status.HTTP_502_BAD_GATEWAY,
                detail=create_error_response(
                    error_code="CREDENTIAL_ISSUE_FAILED",
                    message="Upload credential could not be issued",
                ),
            )

        INTAKE_REQUESTS.labels(status="issued").inc()
        record = result.record
        credential = result.credential

        return UploadRequestResponse(
            record_id=record.record_id,
            object_key=record.object_key,
            status=record.status,
            credential=CredentialResponse(
                url=credential.url,
                method=credential.method,
                headers=credential.headers,
                expires_at=credential.expires_at,
            ),
            expires_at=credential.expires_at,
        )


@router.get("/records/{record_id}", response_model=UploadRecordResponse)
async def get_record(
    record_id: UUID,
    db: DBSession,
) -> UploadRecordResponse:
    """Get upload record details by ID."""
    with REQUEST_LATENCY.labels(endpoint="get_record").time():
        repository = UploadRepository(db)
        record = await repository.get_by_id(record_id)

        if record is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail=create_error_response(
                    error_code="RECORD_NOT_FOUND",
                    message="Upload record not found",
                    details={"record_id": str(record_id)},
                ),
            )

        dispatched = await repository.get_dispatched_actions(record_id)

        return UploadRecordResponse(
            record_id=record.record_id,
            object_key=record.object_key,
            bucket=record.bucket,
            status=record.status,
            credential_expiry=record.credential_expiry,
            content_type=record.content_type,
            content_length=record.content_length,
            etag=record.etag,
            error_message=record.error_message,
            dispatched_actions=sorted(dispatched),
            created_at=record.created_at,
            updated_at=record.updated_at,
            uploaded_at=record.uploaded_at,
        )
