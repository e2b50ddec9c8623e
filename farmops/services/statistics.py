from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime

from farmops.core.exceptions import ValidationError
from farmops.dto import ApprovalStats, OperationStats
from farmops.infra.unit_of_work import UnitOfWork
from farmops.models.approval_request import ApprovalStatus
from farmops.models.bulk_operation import OperationStatus, OperationType
from farmops.models.operation_ledger import RetryOutcome


def _as_utc(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class StatisticsAggregator:
    """Read-only rollups over operations and approval requests of one farm."""

    def __init__(self, uow_factory: Callable[[], UnitOfWork]) -> None:
        self._uow_factory = uow_factory

    async def get_stats(
        self,
        farm_id: int,
        start: datetime | None = None,
        end: datetime | None = None,
        operation_type: OperationType | None = None,
        status: OperationStatus | None = None,
    ) -> OperationStats:
        start, end = _as_utc(start), _as_utc(end)
        if start is not None and end is not None and start > end:
            raise ValidationError("start must not be after end")
        async with self._uow_factory() as uow:
            operations = await uow.operations.list_for_stats(
                farm_id=farm_id,
                start=start,
                end=end,
                operation_type=operation_type,
                status=status,
            )
            operation_ids = [op.id for op in operations]
            failures = await uow.failures.list_for_operations(operation_ids)
            retries = await uow.retries.list_for_operations(operation_ids)

        stats = OperationStats(
            farm_id=farm_id,
            total=len(operations),
            by_status={s.value: 0 for s in OperationStatus},
            by_type={t.value: 0 for t in OperationType},
        )
        durations: list[int] = []
        for op in operations:
            stats.by_status[op.status.value] += 1
            stats.by_type[op.operation_type.value] += 1
            stats.total_items += op.total_items
            stats.total_processed += op.processed_items
            stats.total_success += op.success_count
            stats.total_failures += op.failure_count
            if op.status.is_terminal and op.duration_ms is not None:
                durations.append(op.duration_ms)
        if durations:
            stats.average_duration_ms = round(sum(durations) / len(durations))

        recovered = {
            (entry.operation_id, entry.item_id)
            for entry in retries
            if entry.outcome is RetryOutcome.success
        }
        stats.resolved_failures = sum(
            1 for f in failures if (f.operation_id, f.item_id) in recovered
        )
        return stats

    async def get_approval_stats(self, farm_id: int) -> ApprovalStats:
        async with self._uow_factory() as uow:
            requests = await uow.approvals.list_all_for_farm(farm_id)

        stats = ApprovalStats(farm_id=farm_id, total_requests=len(requests))
        decision_seconds: list[float] = []
        for request in requests:
            if request.status is ApprovalStatus.pending_approval:
                stats.pending_requests += 1
                continue
            if request.status is ApprovalStatus.approved:
                stats.approved_requests += 1
                stats.total_items_affected += len(request.target_item_ids)
            else:
                stats.rejected_requests += 1
            if request.decided_at is not None:
                decision_seconds.append((request.decided_at - request.created_at).total_seconds())

        decided = stats.approved_requests + stats.rejected_requests
        if decided:
            stats.approval_rate = round(stats.approved_requests / decided * 100, 1)
        if decision_seconds:
            stats.average_decision_seconds = round(sum(decision_seconds) / len(decision_seconds), 1)
        return stats
