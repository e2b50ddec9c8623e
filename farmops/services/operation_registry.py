"""Lifecycle of BulkOperation records.

The module-level helpers run inside a caller-supplied unit of work so the
approval gate can create an operation in the same transaction that approves
its request. ``OperationRegistry`` wraps each of them in its own unit of work.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

import structlog

from farmops.core.clock import Clock, SystemClock
from farmops.core.exceptions import InvalidStateError, NotFoundError, ValidationError
from farmops.dto import (
    BulkOperationRecord,
    FailureDetailRecord,
    OperationPage,
    ProgressDelta,
    RetryLogEntryRecord,
)
from farmops.infra.unit_of_work import UnitOfWork
from farmops.models.bulk_operation import TERMINAL_STATUSES, OperationStatus, OperationType
from farmops.repositories.interfaces import PermissionChecker
from farmops.services.authorization import require_elevated_role

logger = structlog.get_logger(__name__)

# statuses that require every item to be accounted for
_FULLY_COUNTED = frozenset({OperationStatus.completed, OperationStatus.failed})


def duration_ms(started_at: datetime, completed_at: datetime) -> int:
    return max(0, int((completed_at - started_at).total_seconds() * 1000))


async def require_operation(uow: UnitOfWork, operation_id: str) -> BulkOperationRecord:
    operation = await uow.operations.get(operation_id)
    if operation is None:
        raise NotFoundError(f"operation not found: {operation_id}")
    return operation


async def create_operation(
    uow: UnitOfWork,
    *,
    farm_id: int,
    operation_type: OperationType,
    total_items: int,
    created_by: str,
    details: dict[str, Any] | None,
    now: datetime,
) -> BulkOperationRecord:
    if total_items < 1:
        raise ValidationError("total_items must be at least 1")
    operation = BulkOperationRecord(
        id=str(uuid.uuid4()),
        farm_id=farm_id,
        operation_type=OperationType(operation_type),
        status=OperationStatus.pending,
        total_items=total_items,
        created_by=created_by,
        created_at=now,
        details=dict(details or {}),
    )
    await uow.operations.add(operation)
    logger.info(
        "bulk_operation_created",
        operation_id=operation.id,
        farm_id=farm_id,
        operation_type=operation.operation_type.value,
        total_items=total_items,
    )
    return operation


async def begin_execution(
    uow: UnitOfWork, operation_id: str, *, now: datetime
) -> BulkOperationRecord:
    if not await uow.operations.claim(operation_id, started_at=now):
        current = await require_operation(uow, operation_id)
        raise InvalidStateError(
            f"operation {operation_id} is {current.status.value}, expected pending"
        )
    return await require_operation(uow, operation_id)


async def record_progress(uow: UnitOfWork, operation_id: str, delta: ProgressDelta) -> None:
    if min(delta.processed, delta.success, delta.failure) < 0:
        raise ValidationError("progress deltas must not be negative")
    if not await uow.operations.increment_progress(operation_id, delta):
        current = await require_operation(uow, operation_id)
        if current.status is not OperationStatus.in_progress:
            raise InvalidStateError(
                f"operation {operation_id} is {current.status.value}, expected in-progress"
            )
        raise InvalidStateError(
            f"progress {delta} would exceed the counters of operation {operation_id}"
        )


async def finish_operation(
    uow: UnitOfWork,
    operation_id: str,
    final_status: OperationStatus,
    *,
    now: datetime,
    error_message: str | None = None,
) -> BulkOperationRecord:
    final_status = OperationStatus(final_status)
    if final_status not in TERMINAL_STATUSES:
        raise InvalidStateError(f"{final_status.value} is not a terminal status")
    current = await require_operation(uow, operation_id)
    if current.status is not OperationStatus.in_progress or current.started_at is None:
        raise InvalidStateError(
            f"operation {operation_id} is {current.status.value}, expected in-progress"
        )
    if final_status in _FULLY_COUNTED and not (
        current.success_count + current.failure_count
        == current.processed_items
        == current.total_items
    ):
        raise InvalidStateError(
            f"operation {operation_id} has {current.processed_items}/{current.total_items} "
            f"items accounted for; cannot finish as {final_status.value}"
        )
    finished = await uow.operations.finish(
        operation_id,
        status=final_status,
        completed_at=now,
        duration_ms=duration_ms(current.started_at, now),
        error_message=error_message,
    )
    if not finished:
        raise InvalidStateError(f"operation {operation_id} was finished concurrently")
    return await require_operation(uow, operation_id)


class OperationRegistry:
    def __init__(
        self,
        uow_factory: Callable[[], UnitOfWork],
        *,
        permissions: PermissionChecker | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._uow_factory = uow_factory
        self._permissions = permissions
        self._clock = clock or SystemClock()

    async def create_operation(
        self,
        *,
        farm_id: int,
        operation_type: OperationType,
        total_items: int,
        created_by: str,
        details: dict[str, Any] | None = None,
    ) -> BulkOperationRecord:
        async with self._uow_factory() as uow:
            return await create_operation(
                uow,
                farm_id=farm_id,
                operation_type=operation_type,
                total_items=total_items,
                created_by=created_by,
                details=details,
                now=self._clock.now(),
            )

    async def begin_execution(self, operation_id: str) -> BulkOperationRecord:
        async with self._uow_factory() as uow:
            operation = await begin_execution(uow, operation_id, now=self._clock.now())
        logger.info("bulk_operation_claimed", operation_id=operation_id)
        return operation

    async def record_progress(
        self, operation_id: str, delta: ProgressDelta
    ) -> BulkOperationRecord:
        async with self._uow_factory() as uow:
            await record_progress(uow, operation_id, delta)
            return await require_operation(uow, operation_id)

    async def finish(
        self,
        operation_id: str,
        final_status: OperationStatus,
        error_message: str | None = None,
    ) -> BulkOperationRecord:
        async with self._uow_factory() as uow:
            operation = await finish_operation(
                uow,
                operation_id,
                final_status,
                now=self._clock.now(),
                error_message=error_message,
            )
        logger.info(
            "bulk_operation_finished",
            operation_id=operation_id,
            status=operation.status.value,
            duration_ms=operation.duration_ms,
        )
        return operation

    async def get(self, operation_id: str) -> BulkOperationRecord:
        async with self._uow_factory() as uow:
            return await require_operation(uow, operation_id)

    async def request_cancel(self, operation_id: str) -> BulkOperationRecord:
        async with self._uow_factory() as uow:
            if not await uow.operations.request_cancel(operation_id):
                current = await require_operation(uow, operation_id)
                raise InvalidStateError(
                    f"operation {operation_id} is already {current.status.value}"
                )
            operation = await require_operation(uow, operation_id)
        logger.info("bulk_operation_cancel_requested", operation_id=operation_id)
        return operation

    async def list_operations(
        self,
        *,
        farm_id: int,
        operation_type: OperationType | None = None,
        status: OperationStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> OperationPage:
        async with self._uow_factory() as uow:
            items, total = await uow.operations.list_by_farm(
                farm_id=farm_id,
                operation_type=operation_type,
                status=status,
                limit=limit,
                offset=offset,
            )
        return OperationPage(items=items, total=total)

    async def search_operations(
        self, *, farm_id: int, query: str, limit: int = 20
    ) -> list[BulkOperationRecord]:
        query = query.strip()
        if not query:
            return []
        async with self._uow_factory() as uow:
            return await uow.operations.search(farm_id=farm_id, query=query, limit=limit)

    async def get_failure_details(self, operation_id: str) -> list[FailureDetailRecord]:
        async with self._uow_factory() as uow:
            await require_operation(uow, operation_id)
            return await uow.failures.list_for_operation(operation_id)

    async def get_retry_log(
        self, operation_id: str, item_id: int | None = None
    ) -> list[RetryLogEntryRecord]:
        async with self._uow_factory() as uow:
            await require_operation(uow, operation_id)
            return await uow.retries.list_for_operation(operation_id, item_id)

    async def purge_older_than(self, farm_id: int, days: int, *, requested_by: str) -> int:
        """Delete terminal operations created more than ``days`` ago.

        Their failure details, retry log and originating approval requests go
        with them. Pending and in-progress operations are never purged. The
        caller needs an elevated role on the farm.
        """

        if days < 1:
            raise ValidationError("days must be at least 1")
        await require_elevated_role(
            self._permissions, requested_by, farm_id, "purge bulk operations"
        )
        cutoff = self._clock.now() - timedelta(days=days)
        async with self._uow_factory() as uow:
            operation_ids = await uow.operations.terminal_ids_before(
                farm_id=farm_id, cutoff=cutoff
            )
            if not operation_ids:
                return 0
            await uow.approvals.delete_for_operations(operation_ids)
            await uow.failures.delete_for_operations(operation_ids)
            await uow.retries.delete_for_operations(operation_ids)
            purged = await uow.operations.delete_many(operation_ids)
        logger.info(
            "bulk_operations_purged",
            farm_id=farm_id,
            older_than_days=days,
            purged=purged,
        )
        return purged
