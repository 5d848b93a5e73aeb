"""SQLAlchemy models for the upload record store."""

from datetime import datetime, timezone
from uuid import UUID, uuid4

from sqlalchemy import (
    BigInteger,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from shared.schemas.upload import UploadStatus


def utc_now() -> datetime:
    """Return current UTC time with timezone info."""
    return datetime.now(timezone.utc)


def _status_enum() -> Enum:
    return Enum(
        UploadStatus,
        name="upload_status",
        values_callable=lambda x: [e.value for e in x],
    )


# Partial index predicate: only live records reserve an object key
LIVE_RECORD_PREDICATE = text("status IN ('pending', 'uploaded')")


class Base(DeclarativeBase):
    """Base class for SQLAlchemy models."""

    pass


class UploadRecordModel(Base):
    """SQLAlchemy model for upload_records table."""

    __tablename__ = "upload_records"

    record_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    object_key: Mapped[str] = mapped_column(String(1024), nullable=False)
    bucket: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[UploadStatus] = mapped_column(
        _status_enum(),
        default=UploadStatus.PENDING,
        nullable=False,
    )
    credential_expiry: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    content_type: Mapped[str | None] = mapped_column(String(255), nullable=True)
    content_length: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    etag: Mapped[str | None] = mapped_column(String(128), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        nullable=False,
    )
    uploaded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index(
            "uq_upload_records_live_object_key",
            "object_key",
            unique=True,
            postgresql_where=LIVE_RECORD_PREDICATE,
            sqlite_where=LIVE_RECORD_PREDICATE,
        ),
        Index("idx_upload_records_object_key", "object_key"),
        Index("idx_upload_records_status_expiry", "status", "credential_expiry"),
    )


class DispatchedActionModel(Base):
    """SQLAlchemy model for upload_dispatched_actions table.

    One row per acknowledged downstream action; the unique constraint makes
    the per-record action set grow-only and race-free.
    """

    __tablename__ = "upload_dispatched_actions"

    dispatch_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    record_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("upload_records.record_id", ondelete="CASCADE"),
        nullable=False,
    )
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    message_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    dispatched_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("record_id", "action", name="uq_dispatched_action"),
    )


class UploadStateAuditModel(Base):
    """SQLAlchemy model for upload_state_audit table."""

    __tablename__ = "upload_state_audit"

    audit_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    record_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("upload_records.record_id", ondelete="CASCADE"),
        nullable=False,
    )
    previous_state: Mapped[UploadStatus] = mapped_column(_status_enum(), nullable=False)
    new_state: Mapped[UploadStatus] = mapped_column(_status_enum(), nullable=False)
    worker_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        nullable=False,
    )

    __table_args__ = (
        Index("idx_upload_state_audit_record_id", "record_id"),
    )


class ProcessedEventModel(Base):
    """SQLAlchemy model for processed_upload_events table (the dedup window)."""

    __tablename__ = "processed_upload_events"

    raw_event_id: Mapped[str] = mapped_column(String(1536), primary_key=True)
    object_key: Mapped[str] = mapped_column(String(1024), nullable=False)
    record_id: Mapped[UUID | None] = mapped_column(PG_UUID(as_uuid=True), nullable=True)
    processed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        nullable=False,
    )

    __table_args__ = (
        Index("idx_processed_upload_events_processed_at", "processed_at"),
    )


def ensure_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from stores without tz support."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
