"""Database repository for upload record operations."""

from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import and_, delete, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from services.upload_registry.app.core.state_machine import StateMachine
from services.upload_registry.app.db.models import (
    LIVE_RECORD_PREDICATE,
    DispatchedActionModel,
    ProcessedEventModel,
    UploadRecordModel,
    UploadStateAuditModel,
    utc_now,
)
from shared.schemas.upload import LIVE_STATUSES, UploadStatus


class UploadRepository:
    """Repository for upload record operations.

    The only mutation primitive for status is ``update_status``, a single
    conditional UPDATE keyed on record id and expected prior status.
    """

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session."""
        self.session = session

    def _insert(self, model: type):
        """Dialect-specific INSERT supporting ON CONFLICT DO NOTHING."""
        dialect_name = self.session.bind.dialect.name if self.session.bind else "postgresql"
        if dialect_name == "sqlite":
            return sqlite_insert(model)
        return pg_insert(model)

    async def get_by_id(self, record_id: UUID) -> UploadRecordModel | None:
        """Get upload record by ID."""
        query = select(UploadRecordModel).where(UploadRecordModel.record_id == record_id)
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def get_live_by_object_key(self, object_key: str) -> UploadRecordModel | None:
        """Get the pending or uploaded record holding an object key.

        Args:
            object_key: Object key in the external store

        Returns:
            Upload record or None if no live record holds the key
        """
        query = select(UploadRecordModel).where(
            and_(
                UploadRecordModel.object_key == object_key,
                UploadRecordModel.status.in_(LIVE_STATUSES),
            )
        )
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def create_if_absent(
        self,
        object_key: str,
        bucket: str,
        credential_expiry: datetime,
        content_type: str | None = None,
    ) -> tuple[UploadRecordModel, bool]:
        """Create a pending record unless a live record already holds the key.

        Uses INSERT ... ON CONFLICT DO NOTHING against the partial unique
        index on live object keys, so concurrent intakes for the same key
        cannot both succeed.

        Args:
            object_key: Target object key
            bucket: Bucket the credential is issued for
            credential_expiry: When the issued credential stops working
            content_type: Content type the credential is bound to

        Returns:
            Tuple of (record, created flag)
            - created=True: a new pending record was inserted
            - created=False: the existing live record for the key
        """
        now = utc_now()
        stmt = (
            self._insert(UploadRecordModel)
            .values(
                record_id=uuid4(),
                object_key=object_key,
                bucket=bucket,
                status=UploadStatus.PENDING,
                credential_expiry=credential_expiry,
                content_type=content_type,
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing(
                index_elements=["object_key"],
                index_where=LIVE_RECORD_PREDICATE,
            )
            .returning(UploadRecordModel.record_id)
        )

        for _ in range(2):
            result = await self.session.execute(stmt)
            inserted_id = result.scalar_one_or_none()

            if inserted_id is not None:
                record = await self.get_by_id(inserted_id)
                if record is None:
                    raise RuntimeError("Inserted upload record not found")
                return record, True

            existing = await self.get_live_by_object_key(object_key)
            if existing is not None:
                return existing, False
            # The conflicting row left the live set between statements; insert again

        raise RuntimeError(f"Object key stayed contended: {object_key}")

    async def update_status(
        self,
        record_id: UUID,
        new_status: UploadStatus,
        expected_status: UploadStatus,
        worker_id: str | None = None,
        reason: str | None = None,
        **values: Any,
    ) -> tuple[UploadRecordModel | None, bool]:
        """Conditionally update record status.

        A single UPDATE ... WHERE record_id = :id AND status = :expected.
        Exactly one of any number of concurrent callers can win.

        Args:
            record_id: Record UUID
            new_status: Status to set
            expected_status: Status the record must currently have
            worker_id: ID of the worker making the update
            reason: Free-text reason stored in the audit trail
            **values: Extra column values to set with the transition

        Returns:
            Tuple of (record, success flag)
            If the precondition fails, returns (current record, False)
            If the record does not exist, returns (None, False)

        Raises:
            InvalidTransitionError: If expected -> new is not a lifecycle edge
        """
        StateMachine.validate_transition(expected_status, new_status)

        record = await self.get_by_id(record_id)
        if record is None:
            return None, False

        update_values: dict[str, Any] = {"status": new_status, "updated_at": utc_now()}
        update_values.update(values)
        if new_status == UploadStatus.FAILED and reason:
            update_values.setdefault("error_message", reason)

        stmt = (
            update(UploadRecordModel)
            .where(
                and_(
                    UploadRecordModel.record_id == record_id,
                    UploadRecordModel.status == expected_status,
                )
            )
            .values(**update_values)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)

        if result.rowcount == 0:
            await self.session.refresh(record)
            return record, False

        self.session.add(
            UploadStateAuditModel(
                record_id=record_id,
                previous_state=expected_status,
                new_state=new_status,
                worker_id=worker_id,
                reason=reason,
            )
        )
        await self.session.flush()

        await self.session.refresh(record)
        return record, True

    async def get_dispatched_actions(self, record_id: UUID) -> set[str]:
        """Get the set of actions already acknowledged for a record."""
        query = select(DispatchedActionModel.action).where(
            DispatchedActionModel.record_id == record_id
        )
        result = await self.session.execute(query)
        return set(result.scalars().all())

    async def record_dispatched_action(
        self,
        record_id: UUID,
        action: str,
        message_id: str | None = None,
    ) -> bool:
        """Add an action to a record's dispatched set.

        Returns:
            True if the action was newly recorded, False if already present
        """
        stmt = (
            self._insert(DispatchedActionModel)
            .values(
                dispatch_id=uuid4(),
                record_id=record_id,
                action=action,
                message_id=message_id,
                dispatched_at=utc_now(),
            )
            .on_conflict_do_nothing(index_elements=["record_id", "action"])
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def is_event_processed(self, raw_event_id: str, since: datetime) -> bool:
        """Check whether a provider event id was seen inside the dedup window."""
        query = select(ProcessedEventModel.raw_event_id).where(
            and_(
                ProcessedEventModel.raw_event_id == raw_event_id,
                ProcessedEventModel.processed_at >= since,
            )
        )
        result = await self.session.execute(query)
        return result.scalar_one_or_none() is not None

    async def mark_event_processed(
        self,
        raw_event_id: str,
        object_key: str,
        record_id: UUID | None = None,
    ) -> bool:
        """Remember a provider event id.

        Returns:
            True if newly recorded, False if the id was already known
        """
        stmt = (
            self._insert(ProcessedEventModel)
            .values(
                raw_event_id=raw_event_id,
                object_key=object_key,
                record_id=record_id,
                processed_at=utc_now(),
            )
            .on_conflict_do_nothing(index_elements=["raw_event_id"])
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def purge_processed_events(self, older_than: datetime) -> int:
        """Delete dedup entries that fell out of the window."""
        stmt = (
            delete(ProcessedEventModel)
            .where(ProcessedEventModel.processed_at < older_than)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount or 0

    async def find_stale_pending(
        self,
        cutoff: datetime,
        limit: int = 100,
    ) -> list[UploadRecordModel]:
        """Find pending records whose credential expired before ``cutoff``."""
        query = (
            select(UploadRecordModel)
            .where(
                and_(
                    UploadRecordModel.status == UploadStatus.PENDING,
                    UploadRecordModel.credential_expiry < cutoff,
                )
            )
            .order_by(UploadRecordModel.credential_expiry)
            .limit(limit)
        )
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def find_uploaded_missing_actions(
        self,
        actions: list[str],
        settled_before: datetime | None = None,
        limit: int = 100,
    ) -> list[UploadRecordModel]:
        """Find uploaded records that have not had every action acknowledged.

        Args:
            actions: Configured action names
            settled_before: Only records that became uploaded before this time
            limit: Maximum records to return
        """
        if not actions:
            return []

        complete = (
            select(DispatchedActionModel.record_id)
            .where(DispatchedActionModel.action.in_(actions))
            .group_by(DispatchedActionModel.record_id)
            .having(func.count(func.distinct(DispatchedActionModel.action)) >= len(actions))
        )
        conditions = [
            UploadRecordModel.status == UploadStatus.UPLOADED,
            UploadRecordModel.record_id.not_in(complete),
        ]
        if settled_before is not None:
            # updated_at is the local time of the pending -> uploaded transition
            conditions.append(UploadRecordModel.updated_at < settled_before)

        query = (
            select(UploadRecordModel)
            .where(and_(*conditions))
            .order_by(UploadRecordModel.updated_at)
            .limit(limit)
        )
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def list_state_audit(self, record_id: UUID) -> list[UploadStateAuditModel]:
        """List audit entries for a record, oldest first."""
        query = (
            select(UploadStateAuditModel)
            .where(UploadStateAuditModel.record_id == record_id)
            .order_by(UploadStateAuditModel.created_at)
        )
        result = await self.session.execute(query)
        return list(result.scalars().all())
