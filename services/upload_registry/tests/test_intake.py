"""Tests for upload intake and credential issuance."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from services.upload_registry.app.core.authorization import AuthorizationIssuer
from services.upload_registry.app.core.errors import (
    ConflictError,
    CredentialIssueError,
    InvalidObjectKeyError,
)
from services.upload_registry.app.core.intake import UploadIntakeService
from services.upload_registry.app.db.repository import UploadRepository
from shared.schemas.upload import UploadStatus


@pytest.fixture
def intake(db_session, issuer) -> UploadIntakeService:
    """Intake service with a 15 minute credential lifetime."""
    return UploadIntakeService(
        session=db_session,
        issuer=issuer,
        key_prefix="uploads/",
        credential_ttl_seconds=900,
        expiry_grace_seconds=300,
    )


class TestAuthorizationIssuer:
    """Tests for credential issuance."""

    @pytest.mark.asyncio
    async def test_issue_put_credential(self, issuer, mock_storage_client):
        """Test a put credential is scoped to the key and expires."""
        credential = await issuer.issue_credential("uploads/42", ttl=300)

        assert credential.method == "PUT"
        assert credential.object_key == "uploads/42"
        assert "uploads/42" in credential.url
        assert credential.expires_at > datetime.now(timezone.utc)
        mock_storage_client.generate_presigned_upload_url.assert_awaited_once_with(
            key="uploads/42", content_type=None, expires_in=300
        )

    @pytest.mark.asyncio
    async def test_rewrites_public_endpoint(self, mock_storage_client):
        """Test presigned URLs are rewritten for browser access."""
        issuer = AuthorizationIssuer(
            storage_client=mock_storage_client,
            public_endpoint_url="https://files.example.com",
            internal_endpoint_url="http://localhost:4566",
        )

        credential = await issuer.issue_credential("uploads/42")

        assert credential.url.startswith("https://files.example.com/uploads/uploads/42")

    @pytest.mark.asyncio
    async def test_unsupported_operation(self, issuer):
        """Test only put_object credentials are issued."""
        with pytest.raises(ValueError):
            await issuer.issue_credential("uploads/42", operation="delete_object")

    @pytest.mark.asyncio
    async def test_signing_failure(self, issuer, mock_storage_client):
        """Test signing errors surface as CredentialIssueError."""
        mock_storage_client.generate_presigned_upload_url = AsyncMock(
            side_effect=RuntimeError("no credentials")
        )

        with pytest.raises(CredentialIssueError):
            await issuer.issue_credential("uploads/42")


class TestRequestUpload:
    """Tests for UploadIntakeService.request_upload."""

    @pytest.mark.asyncio
    async def test_desired_key(self, intake, db_session):
        """Test intake for uploads/42 returns a credential and a pending record."""
        result = await intake.request_upload(desired_key="uploads/42")

        assert result.record.object_key == "uploads/42"
        assert result.record.status == UploadStatus.PENDING
        assert result.credential.object_key == "uploads/42"

        stored = await UploadRepository(db_session).get_live_by_object_key("uploads/42")
        assert stored.record_id == result.record.record_id

    @pytest.mark.asyncio
    async def test_generated_key(self, intake):
        """Test a key is generated under the prefix when none is requested."""
        result = await intake.request_upload()

        assert result.record.object_key.startswith("uploads/")
        assert len(result.record.object_key) > len("uploads/")

    @pytest.mark.asyncio
    async def test_default_content_type(self, db_session, issuer, mock_storage_client):
        """Test the configured default content type binds the credential."""
        intake = UploadIntakeService(
            session=db_session,
            issuer=issuer,
            default_content_type="application/octet-stream",
        )

        result = await intake.request_upload(desired_key="uploads/blob")

        assert result.record.content_type == "application/octet-stream"
        assert result.credential.headers == {"Content-Type": "application/octet-stream"}

    @pytest.mark.asyncio
    async def test_credential_expiry_matches_ttl(self, intake):
        """Test the record expiry tracks the credential lifetime."""
        before = datetime.now(timezone.utc)
        result = await intake.request_upload(desired_key="uploads/ttl")

        expiry = result.record.credential_expiry
        if expiry.tzinfo is None:
            expiry = expiry.replace(tzinfo=timezone.utc)
        assert before + timedelta(seconds=890) < expiry < before + timedelta(seconds=910)

    @pytest.mark.parametrize(
        "key",
        ["other/42", "uploads/", "/uploads/42", "uploads/../etc/passwd", "uploads//42", "uploads/a b"],
    )
    @pytest.mark.asyncio
    async def test_invalid_keys(self, intake, key):
        """Test malformed or out-of-prefix keys are rejected."""
        with pytest.raises(InvalidObjectKeyError):
            await intake.request_upload(desired_key=key)

    @pytest.mark.asyncio
    async def test_conflict_with_pending_record(self, intake):
        """Test a key held by a pending record cannot be reissued."""
        first = await intake.request_upload(desired_key="uploads/42")

        with pytest.raises(ConflictError) as exc_info:
            await intake.request_upload(desired_key="uploads/42")

        assert exc_info.value.existing_record_id == first.record.record_id

    @pytest.mark.asyncio
    async def test_conflict_with_uploaded_record(self, intake, db_session):
        """Test an uploaded object key cannot be overwritten through intake."""
        first = await intake.request_upload(desired_key="uploads/42")
        await UploadRepository(db_session).update_status(
            first.record.record_id,
            UploadStatus.UPLOADED,
            expected_status=UploadStatus.PENDING,
        )
        await db_session.commit()

        with pytest.raises(ConflictError):
            await intake.request_upload(desired_key="uploads/42")

    @pytest.mark.asyncio
    async def test_lapsed_pending_record_is_reclaimed(self, intake, make_pending_record, db_session):
        """Test a key whose credential lapsed is expired and reissued."""
        stale = await make_pending_record(
            object_key="uploads/42",
            credential_expiry=datetime.now(timezone.utc) - timedelta(minutes=10),
        )

        result = await intake.request_upload(desired_key="uploads/42")

        assert result.record.record_id != stale.record_id
        assert result.record.status == UploadStatus.PENDING
        old = await UploadRepository(db_session).get_by_id(stale.record_id)
        await db_session.refresh(old)
        assert old.status == UploadStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_recently_lapsed_record_is_not_reclaimed(
        self, intake, make_pending_record, db_session
    ):
        """Test a credential that lapsed within the grace window still holds its key."""
        recent = await make_pending_record(
            object_key="uploads/42",
            credential_expiry=datetime.now(timezone.utc) - timedelta(seconds=1),
        )

        with pytest.raises(ConflictError):
            await intake.request_upload(desired_key="uploads/42")

        held = await UploadRepository(db_session).get_by_id(recent.record_id)
        await db_session.refresh(held)
        assert held.status == UploadStatus.PENDING

    @pytest.mark.asyncio
    async def test_credential_failure_marks_record_failed(
        self, intake, mock_storage_client, db_session
    ):
        """Test a signing failure fails the record and frees the key."""
        mock_storage_client.generate_presigned_upload_url = AsyncMock(
            side_effect=RuntimeError("signer down")
        )

        with pytest.raises(CredentialIssueError):
            await intake.request_upload(desired_key="uploads/42")

        repository = UploadRepository(db_session)
        assert await repository.get_live_by_object_key("uploads/42") is None

        mock_storage_client.generate_presigned_upload_url = AsyncMock(
            return_value={
                "presigned_url": "http://localhost:4566/uploads/uploads/42",
                "expires_at": datetime.now(timezone.utc) + timedelta(minutes=15),
                "headers": {},
            }
        )
        retry = await intake.request_upload(desired_key="uploads/42")

        assert retry.record.status == UploadStatus.PENDING
        audit = await repository.list_state_audit(retry.record.record_id)
        assert audit == []
