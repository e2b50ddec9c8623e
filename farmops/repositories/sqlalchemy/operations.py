"""SQLAlchemy implementation of the operation, approval and ledger repositories."""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from farmops.dto import (
    ApprovalRequestRecord,
    BulkOperationRecord,
    FailureDetailRecord,
    ProgressDelta,
    RetryLogEntryRecord,
)
from farmops.models import (
    TERMINAL_STATUSES,
    ApprovalRequest,
    ApprovalStatus,
    BulkOperation,
    OperationFailure,
    OperationRetry,
    OperationStatus,
    OperationType,
)
from farmops.repositories.interfaces import (
    ApprovalRequestRepository,
    BulkOperationRepository,
    FailureLedgerRepository,
    RetryLogRepository,
)


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _operation_record(row: BulkOperation) -> BulkOperationRecord:
    return BulkOperationRecord(
        id=row.id,
        farm_id=row.farm_id,
        operation_type=OperationType(row.operation_type),
        status=OperationStatus(row.status),
        total_items=row.total_items,
        created_by=row.created_by,
        created_at=row.created_at,
        processed_items=row.processed_items,
        success_count=row.success_count,
        failure_count=row.failure_count,
        retry_count=row.retry_count,
        cancel_requested=row.cancel_requested,
        started_at=row.started_at,
        completed_at=row.completed_at,
        duration_ms=row.duration_ms,
        error_message=row.error_message,
        details=dict(row.details or {}),
    )


def _request_record(row: ApprovalRequest) -> ApprovalRequestRecord:
    return ApprovalRequestRecord(
        id=row.id,
        farm_id=row.farm_id,
        target_item_ids=[int(i) for i in row.target_item_ids],
        proposed_changes=dict(row.proposed_changes),
        reason=row.reason,
        created_by=row.created_by,
        created_at=row.created_at,
        status=ApprovalStatus(row.status),
        approved_by=row.approved_by,
        approved_at=row.approved_at,
        approver_notes=row.approver_notes,
        rejected_by=row.rejected_by,
        rejected_at=row.rejected_at,
        rejection_reason=row.rejection_reason,
        operation_id=row.operation_id,
    )


def _failure_record(row: OperationFailure) -> FailureDetailRecord:
    return FailureDetailRecord(
        operation_id=row.operation_id,
        item_id=row.item_id,
        item_type=row.item_type,
        error_code=row.error_code,
        error_message=row.error_message,
        item_data=row.item_data,
        created_at=row.created_at,
    )


def _retry_record(row: OperationRetry) -> RetryLogEntryRecord:
    return RetryLogEntryRecord(
        operation_id=row.operation_id,
        item_id=row.item_id,
        attempt_number=row.attempt_number,
        timestamp=row.attempted_at,
        outcome=row.outcome,
        error_code=row.error_code,
        error_message=row.error_message,
    )


class SqlAlchemyBulkOperationRepository(BulkOperationRepository):
    """Operation rows; every state change is a single guarded UPDATE."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def add(self, operation: BulkOperationRecord) -> None:
        self._session.add(
            BulkOperation(
                id=operation.id,
                farm_id=operation.farm_id,
                operation_type=operation.operation_type,
                status=operation.status,
                total_items=operation.total_items,
                processed_items=operation.processed_items,
                success_count=operation.success_count,
                failure_count=operation.failure_count,
                retry_count=operation.retry_count,
                cancel_requested=operation.cancel_requested,
                created_by=operation.created_by,
                created_at=operation.created_at,
                details=operation.details,
            )
        )
        await self._session.flush()

    async def get(self, operation_id: str) -> BulkOperationRecord | None:
        stmt = select(BulkOperation).where(BulkOperation.id == operation_id)
        row = (await self._session.scalars(stmt)).first()
        return _operation_record(row) if row is not None else None

    async def _guarded_update(self, stmt) -> bool:  # type: ignore[no-untyped-def]
        result = await self._session.execute(
            stmt.execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def claim(self, operation_id: str, *, started_at: datetime) -> bool:
        stmt = (
            update(BulkOperation)
            .where(
                BulkOperation.id == operation_id,
                BulkOperation.status == OperationStatus.pending,
            )
            .values(status=OperationStatus.in_progress, started_at=started_at)
        )
        return await self._guarded_update(stmt)

    async def increment_progress(self, operation_id: str, delta: ProgressDelta) -> bool:
        outcomes = BulkOperation.success_count + BulkOperation.failure_count
        stmt = (
            update(BulkOperation)
            .where(
                BulkOperation.id == operation_id,
                BulkOperation.status == OperationStatus.in_progress,
                BulkOperation.processed_items + delta.processed <= BulkOperation.total_items,
                outcomes + delta.success + delta.failure
                <= BulkOperation.processed_items + delta.processed,
            )
            .values(
                processed_items=BulkOperation.processed_items + delta.processed,
                success_count=BulkOperation.success_count + delta.success,
                failure_count=BulkOperation.failure_count + delta.failure,
            )
        )
        return await self._guarded_update(stmt)

    async def finish(
        self,
        operation_id: str,
        *,
        status: OperationStatus,
        completed_at: datetime,
        duration_ms: int,
        error_message: str | None,
    ) -> bool:
        stmt = (
            update(BulkOperation)
            .where(
                BulkOperation.id == operation_id,
                BulkOperation.status == OperationStatus.in_progress,
            )
            .values(
                status=status,
                completed_at=completed_at,
                duration_ms=duration_ms,
                error_message=error_message,
            )
        )
        return await self._guarded_update(stmt)

    async def request_cancel(self, operation_id: str) -> bool:
        stmt = (
            update(BulkOperation)
            .where(
                BulkOperation.id == operation_id,
                BulkOperation.status.not_in(TERMINAL_STATUSES),
            )
            .values(cancel_requested=True)
        )
        return await self._guarded_update(stmt)

    async def is_cancel_requested(self, operation_id: str) -> bool:
        stmt = select(BulkOperation.cancel_requested).where(BulkOperation.id == operation_id)
        return bool((await self._session.scalars(stmt)).first())

    async def increment_retry_count(self, operation_id: str) -> None:
        stmt = (
            update(BulkOperation)
            .where(BulkOperation.id == operation_id)
            .values(retry_count=BulkOperation.retry_count + 1)
        )
        await self._guarded_update(stmt)

    async def list_by_farm(
        self,
        *,
        farm_id: int,
        operation_type: OperationType | None,
        status: OperationStatus | None,
        limit: int,
        offset: int,
    ) -> tuple[list[BulkOperationRecord], int]:
        conditions = [BulkOperation.farm_id == farm_id]
        if operation_type is not None:
            conditions.append(BulkOperation.operation_type == operation_type)
        if status is not None:
            conditions.append(BulkOperation.status == status)

        total = await self._session.scalar(
            select(func.count()).select_from(BulkOperation).where(*conditions)
        )
        stmt = (
            select(BulkOperation)
            .where(*conditions)
            .order_by(BulkOperation.created_at.desc(), BulkOperation.id.desc())
            .limit(limit)
            .offset(offset)
        )
        rows = (await self._session.scalars(stmt)).all()
        return [_operation_record(row) for row in rows], int(total or 0)

    async def search(self, *, farm_id: int, query: str, limit: int) -> list[BulkOperationRecord]:
        pattern = f"%{_escape_like(query)}%"
        stmt = (
            select(BulkOperation)
            .where(
                BulkOperation.farm_id == farm_id,
                BulkOperation.id.ilike(pattern, escape="\\"),
            )
            .order_by(BulkOperation.created_at.desc(), BulkOperation.id.desc())
            .limit(limit)
        )
        rows = (await self._session.scalars(stmt)).all()
        return [_operation_record(row) for row in rows]

    async def list_for_stats(
        self,
        *,
        farm_id: int,
        start: datetime | None,
        end: datetime | None,
        operation_type: OperationType | None,
        status: OperationStatus | None,
    ) -> list[BulkOperationRecord]:
        stmt = select(BulkOperation).where(BulkOperation.farm_id == farm_id)
        if start is not None:
            stmt = stmt.where(BulkOperation.created_at >= start)
        if end is not None:
            stmt = stmt.where(BulkOperation.created_at <= end)
        if operation_type is not None:
            stmt = stmt.where(BulkOperation.operation_type == operation_type)
        if status is not None:
            stmt = stmt.where(BulkOperation.status == status)
        rows = (await self._session.scalars(stmt)).all()
        return [_operation_record(row) for row in rows]

    async def terminal_ids_before(self, *, farm_id: int, cutoff: datetime) -> list[str]:
        stmt = select(BulkOperation.id).where(
            BulkOperation.farm_id == farm_id,
            BulkOperation.status.in_(TERMINAL_STATUSES),
            BulkOperation.created_at < cutoff,
        )
        return list((await self._session.scalars(stmt)).all())

    async def delete_many(self, operation_ids: Sequence[str]) -> int:
        if not operation_ids:
            return 0
        result = await self._session.execute(
            delete(BulkOperation)
            .where(BulkOperation.id.in_(operation_ids))
            .execution_options(synchronize_session=False)
        )
        return int(result.rowcount or 0)


class SqlAlchemyApprovalRequestRepository(ApprovalRequestRepository):
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def add(self, request: ApprovalRequestRecord) -> None:
        self._session.add(
            ApprovalRequest(
                id=request.id,
                farm_id=request.farm_id,
                target_item_ids=list(request.target_item_ids),
                proposed_changes=request.proposed_changes,
                reason=request.reason,
                status=request.status,
                created_by=request.created_by,
                created_at=request.created_at,
            )
        )
        await self._session.flush()

    async def get(self, request_id: str) -> ApprovalRequestRecord | None:
        stmt = select(ApprovalRequest).where(ApprovalRequest.id == request_id)
        row = (await self._session.scalars(stmt)).first()
        return _request_record(row) if row is not None else None

    async def _decide(self, request_id: str, **values) -> bool:  # type: ignore[no-untyped-def]
        stmt = (
            update(ApprovalRequest)
            .where(
                ApprovalRequest.id == request_id,
                ApprovalRequest.status == ApprovalStatus.pending_approval,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def mark_approved(
        self, request_id: str, *, approved_by: str, approved_at: datetime, notes: str | None
    ) -> bool:
        return await self._decide(
            request_id,
            status=ApprovalStatus.approved,
            approved_by=approved_by,
            approved_at=approved_at,
            approver_notes=notes,
        )

    async def mark_rejected(
        self, request_id: str, *, rejected_by: str, rejected_at: datetime, reason: str
    ) -> bool:
        return await self._decide(
            request_id,
            status=ApprovalStatus.rejected,
            rejected_by=rejected_by,
            rejected_at=rejected_at,
            rejection_reason=reason,
        )

    async def attach_operation(self, request_id: str, operation_id: str) -> None:
        await self._session.execute(
            update(ApprovalRequest)
            .where(ApprovalRequest.id == request_id)
            .values(operation_id=operation_id)
            .execution_options(synchronize_session=False)
        )

    async def list_by_farm(
        self, *, farm_id: int, status: ApprovalStatus | None, limit: int, offset: int
    ) -> tuple[list[ApprovalRequestRecord], int]:
        conditions = [ApprovalRequest.farm_id == farm_id]
        if status is not None:
            conditions.append(ApprovalRequest.status == status)
        total = await self._session.scalar(
            select(func.count()).select_from(ApprovalRequest).where(*conditions)
        )
        stmt = (
            select(ApprovalRequest)
            .where(*conditions)
            .order_by(ApprovalRequest.created_at.desc(), ApprovalRequest.id.desc())
            .limit(limit)
            .offset(offset)
        )
        rows = (await self._session.scalars(stmt)).all()
        return [_request_record(row) for row in rows], int(total or 0)

    async def list_all_for_farm(self, farm_id: int) -> list[ApprovalRequestRecord]:
        stmt = select(ApprovalRequest).where(ApprovalRequest.farm_id == farm_id)
        rows = (await self._session.scalars(stmt)).all()
        return [_request_record(row) for row in rows]

    async def delete_for_operations(self, operation_ids: Sequence[str]) -> int:
        if not operation_ids:
            return 0
        result = await self._session.execute(
            delete(ApprovalRequest)
            .where(ApprovalRequest.operation_id.in_(operation_ids))
            .execution_options(synchronize_session=False)
        )
        return int(result.rowcount or 0)


class SqlAlchemyFailureLedgerRepository(FailureLedgerRepository):
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def append(self, detail: FailureDetailRecord) -> bool:
        stmt = (
            insert(OperationFailure)
            .values(
                operation_id=detail.operation_id,
                item_id=detail.item_id,
                item_type=detail.item_type,
                error_code=detail.error_code,
                error_message=detail.error_message,
                item_data=detail.item_data,
                created_at=detail.created_at,
            )
            .on_conflict_do_nothing(constraint="uq_operation_failure_item")
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def get(self, operation_id: str, item_id: int) -> FailureDetailRecord | None:
        stmt = select(OperationFailure).where(
            OperationFailure.operation_id == operation_id,
            OperationFailure.item_id == item_id,
        )
        row = (await self._session.scalars(stmt)).first()
        return _failure_record(row) if row is not None else None

    async def list_for_operation(self, operation_id: str) -> list[FailureDetailRecord]:
        return await self.list_for_operations([operation_id])

    async def list_for_operations(
        self, operation_ids: Sequence[str]
    ) -> list[FailureDetailRecord]:
        if not operation_ids:
            return []
        stmt = (
            select(OperationFailure)
            .where(OperationFailure.operation_id.in_(operation_ids))
            .order_by(OperationFailure.created_at, OperationFailure.item_id)
        )
        rows = (await self._session.scalars(stmt)).all()
        return [_failure_record(row) for row in rows]

    async def delete_for_operations(self, operation_ids: Sequence[str]) -> int:
        if not operation_ids:
            return 0
        result = await self._session.execute(
            delete(OperationFailure).where(OperationFailure.operation_id.in_(operation_ids))
        )
        return int(result.rowcount or 0)


class SqlAlchemyRetryLogRepository(RetryLogRepository):
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def append(self, entry: RetryLogEntryRecord) -> bool:
        stmt = (
            insert(OperationRetry)
            .values(
                operation_id=entry.operation_id,
                item_id=entry.item_id,
                attempt_number=entry.attempt_number,
                outcome=entry.outcome,
                error_code=entry.error_code,
                error_message=entry.error_message,
                attempted_at=entry.timestamp,
            )
            .on_conflict_do_nothing(constraint="uq_operation_retry_attempt")
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def list_for_operation(
        self, operation_id: str, item_id: int | None = None
    ) -> list[RetryLogEntryRecord]:
        stmt = select(OperationRetry).where(OperationRetry.operation_id == operation_id)
        if item_id is not None:
            stmt = stmt.where(OperationRetry.item_id == item_id)
        stmt = stmt.order_by(OperationRetry.item_id, OperationRetry.attempt_number)
        rows = (await self._session.scalars(stmt)).all()
        return [_retry_record(row) for row in rows]

    async def list_for_operations(
        self, operation_ids: Sequence[str]
    ) -> list[RetryLogEntryRecord]:
        if not operation_ids:
            return []
        stmt = (
            select(OperationRetry)
            .where(OperationRetry.operation_id.in_(operation_ids))
            .order_by(
                OperationRetry.operation_id,
                OperationRetry.item_id,
                OperationRetry.attempt_number,
            )
        )
        rows = (await self._session.scalars(stmt)).all()
        return [_retry_record(row) for row in rows]

    async def delete_for_operations(self, operation_ids: Sequence[str]) -> int:
        if not operation_ids:
            return 0
        result = await self._session.execute(
            delete(OperationRetry).where(OperationRetry.operation_id.in_(operation_ids))
        )
        return int(result.rowcount or 0)
