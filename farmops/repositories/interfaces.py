"""Repository abstractions for the service layer."""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime
from typing import Protocol

from farmops.dto import (
    ApprovalRequestRecord,
    BulkOperationRecord,
    EntityRecord,
    FailureDetailRecord,
    ItemFailure,
    ProgressDelta,
    RetryLogEntryRecord,
)
from farmops.models.approval_request import ApprovalStatus
from farmops.models.bulk_operation import OperationStatus, OperationType
from farmops.schemas.changes import AnimalEdit, HealthRecordEdit


class BulkOperationRepository(Protocol):
    """Persistence boundary of the operation registry.

    ``claim``, ``increment_progress`` and ``finish`` are compare-and-set
    writes: they return False instead of raising when the guard does not hold.
    """

    async def add(self, operation: BulkOperationRecord) -> None: ...

    async def get(self, operation_id: str) -> BulkOperationRecord | None: ...

    async def claim(self, operation_id: str, *, started_at: datetime) -> bool: ...

    async def increment_progress(self, operation_id: str, delta: ProgressDelta) -> bool: ...

    async def finish(
        self,
        operation_id: str,
        *,
        status: OperationStatus,
        completed_at: datetime,
        duration_ms: int,
        error_message: str | None,
    ) -> bool: ...

    async def request_cancel(self, operation_id: str) -> bool: ...

    async def is_cancel_requested(self, operation_id: str) -> bool: ...

    async def increment_retry_count(self, operation_id: str) -> None: ...

    async def list_by_farm(
        self,
        *,
        farm_id: int,
        operation_type: OperationType | None,
        status: OperationStatus | None,
        limit: int,
        offset: int,
    ) -> tuple[list[BulkOperationRecord], int]: ...

    async def search(self, *, farm_id: int, query: str, limit: int) -> list[BulkOperationRecord]: ...

    async def list_for_stats(
        self,
        *,
        farm_id: int,
        start: datetime | None,
        end: datetime | None,
        operation_type: OperationType | None,
        status: OperationStatus | None,
    ) -> list[BulkOperationRecord]: ...

    async def terminal_ids_before(self, *, farm_id: int, cutoff: datetime) -> list[str]: ...

    async def delete_many(self, operation_ids: Sequence[str]) -> int: ...


class ApprovalRequestRepository(Protocol):
    async def add(self, request: ApprovalRequestRecord) -> None: ...

    async def get(self, request_id: str) -> ApprovalRequestRecord | None: ...

    async def mark_approved(
        self, request_id: str, *, approved_by: str, approved_at: datetime, notes: str | None
    ) -> bool: ...

    async def mark_rejected(
        self, request_id: str, *, rejected_by: str, rejected_at: datetime, reason: str
    ) -> bool: ...

    async def attach_operation(self, request_id: str, operation_id: str) -> None: ...

    async def list_by_farm(
        self, *, farm_id: int, status: ApprovalStatus | None, limit: int, offset: int
    ) -> tuple[list[ApprovalRequestRecord], int]: ...

    async def list_all_for_farm(self, farm_id: int) -> list[ApprovalRequestRecord]: ...

    async def delete_for_operations(self, operation_ids: Sequence[str]) -> int: ...


class FailureLedgerRepository(Protocol):
    async def append(self, detail: FailureDetailRecord) -> bool: ...

    async def get(self, operation_id: str, item_id: int) -> FailureDetailRecord | None: ...

    async def list_for_operation(self, operation_id: str) -> list[FailureDetailRecord]: ...

    async def list_for_operations(
        self, operation_ids: Sequence[str]
    ) -> list[FailureDetailRecord]: ...

    async def delete_for_operations(self, operation_ids: Sequence[str]) -> int: ...


class RetryLogRepository(Protocol):
    async def append(self, entry: RetryLogEntryRecord) -> bool: ...

    async def list_for_operation(
        self, operation_id: str, item_id: int | None = None
    ) -> list[RetryLogEntryRecord]: ...

    async def list_for_operations(
        self, operation_ids: Sequence[str]
    ) -> list[RetryLogEntryRecord]: ...

    async def delete_for_operations(self, operation_ids: Sequence[str]) -> int: ...


class EntityStore(Protocol):
    """Business records the engine edits (external collaborator).

    ``update`` only touches records of ``farm_id``; it returns None on success
    or an ItemFailure for a per-item business error (a record of another farm
    is NOT_FOUND), and raises SystemicFailure when the store is unreachable.
    """

    async def read_many(self, ids: Sequence[int]) -> list[EntityRecord]: ...

    async def list_for_farm(
        self,
        farm_id: int,
        *,
        status: str | None,
        breed: str | None,
        gender: str | None,
        limit: int,
        offset: int,
    ) -> tuple[list[EntityRecord], int]: ...

    async def update(
        self, item_id: int, change: AnimalEdit | HealthRecordEdit, *, farm_id: int
    ) -> ItemFailure | None: ...


class PermissionChecker(Protocol):
    async def has_elevated_role(self, user_id: str, farm_id: int) -> bool: ...
