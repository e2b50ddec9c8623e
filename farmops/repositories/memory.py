"""In-process implementations of the repository protocols.

Used by the test-suite and by ``STORAGE_BACKEND=memory``. All state of one
store lives in a single ``OperationState`` guarded by one ``asyncio.Lock``;
the in-memory unit of work holds that lock for its whole duration, so every
compare-and-set below runs without interleaving.
"""

from __future__ import annotations

import asyncio
import copy
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime

from farmops.core.exceptions import SystemicFailure
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
from farmops.models.bulk_operation import TERMINAL_STATUSES, OperationStatus, OperationType
from farmops.schemas.changes import AnimalEdit, AnimalStatus, HealthRecordEdit


@dataclass
class OperationState:
    operations: dict[str, BulkOperationRecord] = field(default_factory=dict)
    requests: dict[str, ApprovalRequestRecord] = field(default_factory=dict)
    failures: dict[tuple[str, int], FailureDetailRecord] = field(default_factory=dict)
    retries: dict[tuple[str, int, int], RetryLogEntryRecord] = field(default_factory=dict)

    def snapshot(self) -> OperationState:
        return copy.deepcopy(self)

    def restore(self, snapshot: OperationState) -> None:
        self.operations = snapshot.operations
        self.requests = snapshot.requests
        self.failures = snapshot.failures
        self.retries = snapshot.retries


class InMemoryOperationStore:
    """Shared state for every in-memory unit of work of one application."""

    def __init__(self) -> None:
        self.state = OperationState()
        self.lock = asyncio.Lock()


class InMemoryBulkOperationRepository:
    def __init__(self, state: OperationState) -> None:
        self._state = state

    async def add(self, operation: BulkOperationRecord) -> None:
        self._state.operations[operation.id] = copy.deepcopy(operation)

    async def get(self, operation_id: str) -> BulkOperationRecord | None:
        operation = self._state.operations.get(operation_id)
        return copy.deepcopy(operation) if operation is not None else None

    async def claim(self, operation_id: str, *, started_at: datetime) -> bool:
        operation = self._state.operations.get(operation_id)
        if operation is None or operation.status is not OperationStatus.pending:
            return False
        operation.status = OperationStatus.in_progress
        operation.started_at = started_at
        return True

    async def increment_progress(self, operation_id: str, delta: ProgressDelta) -> bool:
        operation = self._state.operations.get(operation_id)
        if operation is None or operation.status is not OperationStatus.in_progress:
            return False
        processed = operation.processed_items + delta.processed
        outcomes = operation.success_count + operation.failure_count + delta.success + delta.failure
        if processed > operation.total_items or outcomes > processed:
            return False
        operation.processed_items = processed
        operation.success_count += delta.success
        operation.failure_count += delta.failure
        return True

    async def finish(
        self,
        operation_id: str,
        *,
        status: OperationStatus,
        completed_at: datetime,
        duration_ms: int,
        error_message: str | None,
    ) -> bool:
        operation = self._state.operations.get(operation_id)
        if operation is None or operation.status is not OperationStatus.in_progress:
            return False
        operation.status = status
        operation.completed_at = completed_at
        operation.duration_ms = duration_ms
        operation.error_message = error_message
        return True

    async def request_cancel(self, operation_id: str) -> bool:
        operation = self._state.operations.get(operation_id)
        if operation is None or operation.status in TERMINAL_STATUSES:
            return False
        operation.cancel_requested = True
        return True

    async def is_cancel_requested(self, operation_id: str) -> bool:
        operation = self._state.operations.get(operation_id)
        return bool(operation and operation.cancel_requested)

    async def increment_retry_count(self, operation_id: str) -> None:
        operation = self._state.operations.get(operation_id)
        if operation is not None:
            operation.retry_count += 1

    def _farm_operations(self, farm_id: int) -> list[BulkOperationRecord]:
        rows = [op for op in self._state.operations.values() if op.farm_id == farm_id]
        rows.sort(key=lambda op: (op.created_at, op.id), reverse=True)
        return rows

    async def list_by_farm(
        self,
        *,
        farm_id: int,
        operation_type: OperationType | None,
        status: OperationStatus | None,
        limit: int,
        offset: int,
    ) -> tuple[list[BulkOperationRecord], int]:
        rows = [
            op
            for op in self._farm_operations(farm_id)
            if (operation_type is None or op.operation_type is operation_type)
            and (status is None or op.status is status)
        ]
        page = rows[offset : offset + limit]
        return copy.deepcopy(page), len(rows)

    async def search(self, *, farm_id: int, query: str, limit: int) -> list[BulkOperationRecord]:
        needle = query.lower()
        rows = [op for op in self._farm_operations(farm_id) if needle in op.id.lower()]
        return copy.deepcopy(rows[:limit])

    async def list_for_stats(
        self,
        *,
        farm_id: int,
        start: datetime | None,
        end: datetime | None,
        operation_type: OperationType | None,
        status: OperationStatus | None,
    ) -> list[BulkOperationRecord]:
        rows = [
            op
            for op in self._farm_operations(farm_id)
            if (start is None or op.created_at >= start)
            and (end is None or op.created_at <= end)
            and (operation_type is None or op.operation_type is operation_type)
            and (status is None or op.status is status)
        ]
        return copy.deepcopy(rows)

    async def terminal_ids_before(self, *, farm_id: int, cutoff: datetime) -> list[str]:
        return [
            op.id
            for op in self._state.operations.values()
            if op.farm_id == farm_id and op.status in TERMINAL_STATUSES and op.created_at < cutoff
        ]

    async def delete_many(self, operation_ids: Sequence[str]) -> int:
        removed = 0
        for operation_id in operation_ids:
            if self._state.operations.pop(operation_id, None) is not None:
                removed += 1
        return removed


class InMemoryApprovalRequestRepository:
    def __init__(self, state: OperationState) -> None:
        self._state = state

    async def add(self, request: ApprovalRequestRecord) -> None:
        self._state.requests[request.id] = copy.deepcopy(request)

    async def get(self, request_id: str) -> ApprovalRequestRecord | None:
        request = self._state.requests.get(request_id)
        return copy.deepcopy(request) if request is not None else None

    async def mark_approved(
        self, request_id: str, *, approved_by: str, approved_at: datetime, notes: str | None
    ) -> bool:
        request = self._state.requests.get(request_id)
        if request is None or request.status is not ApprovalStatus.pending_approval:
            return False
        request.status = ApprovalStatus.approved
        request.approved_by = approved_by
        request.approved_at = approved_at
        request.approver_notes = notes
        return True

    async def mark_rejected(
        self, request_id: str, *, rejected_by: str, rejected_at: datetime, reason: str
    ) -> bool:
        request = self._state.requests.get(request_id)
        if request is None or request.status is not ApprovalStatus.pending_approval:
            return False
        request.status = ApprovalStatus.rejected
        request.rejected_by = rejected_by
        request.rejected_at = rejected_at
        request.rejection_reason = reason
        return True

    async def attach_operation(self, request_id: str, operation_id: str) -> None:
        request = self._state.requests.get(request_id)
        if request is not None:
            request.operation_id = operation_id

    async def list_by_farm(
        self, *, farm_id: int, status: ApprovalStatus | None, limit: int, offset: int
    ) -> tuple[list[ApprovalRequestRecord], int]:
        rows = [
            r
            for r in await self.list_all_for_farm(farm_id)
            if status is None or r.status is status
        ]
        return rows[offset : offset + limit], len(rows)

    async def list_all_for_farm(self, farm_id: int) -> list[ApprovalRequestRecord]:
        rows = [r for r in self._state.requests.values() if r.farm_id == farm_id]
        rows.sort(key=lambda r: (r.created_at, r.id), reverse=True)
        return copy.deepcopy(rows)

    async def delete_for_operations(self, operation_ids: Sequence[str]) -> int:
        targets = set(operation_ids)
        doomed = [rid for rid, r in self._state.requests.items() if r.operation_id in targets]
        for request_id in doomed:
            del self._state.requests[request_id]
        return len(doomed)


class InMemoryFailureLedgerRepository:
    def __init__(self, state: OperationState) -> None:
        self._state = state

    async def append(self, detail: FailureDetailRecord) -> bool:
        key = (detail.operation_id, detail.item_id)
        if key in self._state.failures:
            return False
        self._state.failures[key] = detail
        return True

    async def get(self, operation_id: str, item_id: int) -> FailureDetailRecord | None:
        return self._state.failures.get((operation_id, item_id))

    async def list_for_operation(self, operation_id: str) -> list[FailureDetailRecord]:
        return await self.list_for_operations([operation_id])

    async def list_for_operations(
        self, operation_ids: Sequence[str]
    ) -> list[FailureDetailRecord]:
        targets = set(operation_ids)
        rows = [f for f in self._state.failures.values() if f.operation_id in targets]
        return sorted(rows, key=lambda f: (f.created_at, f.item_id))

    async def delete_for_operations(self, operation_ids: Sequence[str]) -> int:
        targets = set(operation_ids)
        doomed = [key for key in self._state.failures if key[0] in targets]
        for key in doomed:
            del self._state.failures[key]
        return len(doomed)


class InMemoryRetryLogRepository:
    def __init__(self, state: OperationState) -> None:
        self._state = state

    async def append(self, entry: RetryLogEntryRecord) -> bool:
        key = (entry.operation_id, entry.item_id, entry.attempt_number)
        if key in self._state.retries:
            return False
        self._state.retries[key] = entry
        return True

    async def list_for_operation(
        self, operation_id: str, item_id: int | None = None
    ) -> list[RetryLogEntryRecord]:
        rows = [
            e
            for e in self._state.retries.values()
            if e.operation_id == operation_id and (item_id is None or e.item_id == item_id)
        ]
        return sorted(rows, key=lambda e: (e.item_id, e.attempt_number))

    async def list_for_operations(
        self, operation_ids: Sequence[str]
    ) -> list[RetryLogEntryRecord]:
        targets = set(operation_ids)
        rows = [e for e in self._state.retries.values() if e.operation_id in targets]
        return sorted(rows, key=lambda e: (e.operation_id, e.item_id, e.attempt_number))

    async def delete_for_operations(self, operation_ids: Sequence[str]) -> int:
        targets = set(operation_ids)
        doomed = [key for key in self._state.retries if key[0] in targets]
        for key in doomed:
            del self._state.retries[key]
        return len(doomed)


class InMemoryEntityStore:
    """Animal records kept in a dict, with health events appended to a list."""

    def __init__(self, records: Iterable[EntityRecord] = ()) -> None:
        self._records: dict[int, EntityRecord] = {}
        self.health_records: list[dict] = []
        self.available = True
        for record in records:
            self.add(record)

    def add(self, record: EntityRecord) -> None:
        self._records[record.id] = record

    def snapshot(self, item_id: int) -> EntityRecord | None:
        return self._records.get(item_id)

    async def read_many(self, ids: Sequence[int]) -> list[EntityRecord]:
        if not self.available:
            raise SystemicFailure("entity store unavailable")
        return [self._records[i] for i in ids if i in self._records]

    async def list_for_farm(
        self,
        farm_id: int,
        *,
        status: str | None = None,
        breed: str | None = None,
        gender: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> tuple[list[EntityRecord], int]:
        if not self.available:
            raise SystemicFailure("entity store unavailable")
        wanted = {"status": status, "breed": breed, "gender": gender}
        rows = [
            r
            for r in sorted(self._records.values(), key=lambda r: r.id)
            if r.farm_id == farm_id
            and all(v is None or r.attributes.get(k) == v for k, v in wanted.items())
        ]
        return rows[offset : offset + limit], len(rows)

    async def update(
        self, item_id: int, change: AnimalEdit | HealthRecordEdit, *, farm_id: int
    ) -> ItemFailure | None:
        if not self.available:
            raise SystemicFailure("entity store unavailable")
        record = self._records.get(item_id)
        if record is None or record.farm_id != farm_id:
            return ItemFailure("NOT_FOUND", f"animal {item_id} not found in farm {farm_id}")
        if record.attributes.get("status") == AnimalStatus.deceased.value:
            return ItemFailure("INVALID_CHANGE", f"animal {item_id} is deceased")
        if isinstance(change, HealthRecordEdit):
            self.health_records.append(
                {
                    "animal_id": item_id,
                    "event_type": change.event_type.value,
                    "details": change.details,
                    "record_date": change.record_date,
                }
            )
            return None
        self._records[item_id] = replace(record, attributes={**record.attributes, **change.updates()})
        return None


class StaticPermissionChecker:
    """Grants elevated roles from a fixed ``{farm_id: {user_id, ...}}`` map."""

    def __init__(self, grants: dict[int, Iterable[str]] | None = None) -> None:
        self._grants = {farm: set(users) for farm, users in (grants or {}).items()}

    def grant(self, farm_id: int, user_id: str) -> None:
        self._grants.setdefault(farm_id, set()).add(user_id)

    async def has_elevated_role(self, user_id: str, farm_id: int) -> bool:
        return user_id in self._grants.get(farm_id, set())
