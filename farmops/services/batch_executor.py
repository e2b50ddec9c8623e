"""Sequential execution of a claimed bulk operation, plus per-item retries."""

from __future__ import annotations

from collections.abc import Callable, Iterable, Sequence
from datetime import datetime, timedelta
from typing import Any

import structlog

from farmops.core.clock import Clock, SystemClock
from farmops.core.exceptions import (
    ConflictError,
    InvalidStateError,
    NotFoundError,
    SystemicFailure,
    ValidationError,
)
from farmops.dto import (
    BulkOperationRecord,
    FailureDetailRecord,
    ItemFailure,
    ProgressDelta,
    RetryLogEntryRecord,
)
from farmops.infra.unit_of_work import UnitOfWork
from farmops.logging import bound_operation
from farmops.models.bulk_operation import OperationStatus
from farmops.models.operation_ledger import RetryOutcome
from farmops.repositories.interfaces import EntityStore, PermissionChecker
from farmops.schemas.changes import (
    AnimalEdit,
    HealthRecordEdit,
    change_snapshot,
    item_type_for,
    parse_change,
)
from farmops.services import operation_registry as registry
from farmops.services.authorization import require_elevated_role

logger = structlog.get_logger(__name__)

SYSTEMIC = "SYSTEMIC"
ABORTED = "ABORTED"
DEADLINE_EXCEEDED = "DEADLINE_EXCEEDED"
DEFAULT_MAX_RETRY_ATTEMPTS = 5


def unique_items(items: Iterable[int]) -> list[int]:
    """Drop repeated ids, keeping the first occurrence."""

    return list(dict.fromkeys(int(i) for i in items))


def _failure_detail(
    operation_id: str,
    item_id: int,
    change: AnimalEdit | HealthRecordEdit,
    failure: ItemFailure,
    now: datetime,
) -> FailureDetailRecord:
    return FailureDetailRecord(
        operation_id=operation_id,
        item_id=item_id,
        item_type=item_type_for(change),
        error_code=failure.code,
        error_message=failure.message,
        item_data={"item_id": item_id, **change_snapshot(change)},
        created_at=now,
    )


class BatchExecutor:
    """Applies one change to every item of an operation.

    Item failures are recorded and the walk continues. Any other error after
    the claim (a ``SystemicFailure`` from the entity store, a database error
    while recording progress) or an elapsed deadline stops it, and every item
    not yet recorded is written off as a failure so the counters still close.
    Cancellation is checked between items and records nothing further.
    """

    def __init__(
        self,
        uow_factory: Callable[[], UnitOfWork],
        entity_store: EntityStore,
        *,
        permissions: PermissionChecker | None = None,
        clock: Clock | None = None,
        max_retry_attempts: int = DEFAULT_MAX_RETRY_ATTEMPTS,
        deadline_seconds: float | None = None,
    ) -> None:
        self._uow_factory = uow_factory
        self._entity_store = entity_store
        self._permissions = permissions
        self._clock = clock or SystemClock()
        self._max_retry_attempts = max_retry_attempts
        self._deadline = timedelta(seconds=deadline_seconds) if deadline_seconds else None

    async def execute(
        self,
        operation: BulkOperationRecord,
        items: Sequence[int],
        change: AnimalEdit | HealthRecordEdit | dict[str, Any],
    ) -> BulkOperationRecord:
        parsed = parse_change(change)
        targets = unique_items(items)
        if len(targets) != operation.total_items:
            raise ValidationError(
                f"operation {operation.id} expects {operation.total_items} items, "
                f"got {len(targets)} unique"
            )

        with bound_operation(operation.id, operation.farm_id):
            async with self._uow_factory() as uow:
                claimed = await registry.begin_execution(uow, operation.id, now=self._clock.now())
            logger.info("bulk_operation_claimed", total_items=claimed.total_items)

            deadline_at = (
                claimed.started_at + self._deadline
                if self._deadline is not None and claimed.started_at is not None
                else None
            )
            final_status = OperationStatus.completed
            error_message: str | None = None
            abandoned: list[tuple[int, ItemFailure]] = []

            index = 0
            try:
                for index, item_id in enumerate(targets):
                    async with self._uow_factory() as uow:
                        cancelled = await uow.operations.is_cancel_requested(operation.id)
                    if cancelled:
                        final_status = OperationStatus.cancelled
                        logger.info("bulk_operation_cancelled", processed_items=index)
                        break

                    if deadline_at is not None and self._clock.now() >= deadline_at:
                        final_status = OperationStatus.failed
                        error_message = "execution deadline exceeded"
                        abandoned = [
                            (pending, ItemFailure(DEADLINE_EXCEEDED, error_message))
                            for pending in targets[index:]
                        ]
                        logger.warning("bulk_operation_deadline_exceeded", processed_items=index)
                        break

                    failure = await self._entity_store.update(
                        item_id, parsed, farm_id=operation.farm_id
                    )
                    await self._record_outcome(operation.id, item_id, parsed, failure)
            except Exception as exc:
                # the unit of work rolled back, so targets[index] has no recorded outcome
                final_status = OperationStatus.failed
                error_message = str(exc) or exc.__class__.__name__
                abandoned = [(targets[index], ItemFailure(SYSTEMIC, error_message))]
                abandoned += [
                    (pending, ItemFailure(ABORTED, "not attempted: batch aborted"))
                    for pending in targets[index + 1 :]
                ]
                logger.error(
                    "bulk_operation_aborted",
                    item_id=targets[index],
                    error=error_message,
                    error_type=exc.__class__.__name__,
                    remaining_items=len(abandoned),
                    exc_info=not isinstance(exc, SystemicFailure),
                )

            try:
                if abandoned:
                    await self._record_abandoned(operation.id, parsed, abandoned)
                async with self._uow_factory() as uow:
                    finished = await registry.finish_operation(
                        uow,
                        operation.id,
                        final_status,
                        now=self._clock.now(),
                        error_message=error_message,
                    )
            except Exception:
                logger.exception("bulk_operation_unfinished", status=final_status.value)
                raise
            logger.info(
                "bulk_operation_finished",
                status=finished.status.value,
                processed_items=finished.processed_items,
                success_count=finished.success_count,
                failure_count=finished.failure_count,
                duration_ms=finished.duration_ms,
            )
            return finished

    async def _record_outcome(
        self,
        operation_id: str,
        item_id: int,
        change: AnimalEdit | HealthRecordEdit,
        failure: ItemFailure | None,
    ) -> None:
        async with self._uow_factory() as uow:
            if failure is None:
                await registry.record_progress(uow, operation_id, ProgressDelta.succeeded())
                return
            await registry.record_progress(uow, operation_id, ProgressDelta.failed())
            await uow.failures.append(
                _failure_detail(operation_id, item_id, change, failure, self._clock.now())
            )
        logger.info(
            "bulk_item_failed",
            item_id=item_id,
            error_code=failure.code,
            error_message=failure.message,
        )

    async def _record_abandoned(
        self,
        operation_id: str,
        change: AnimalEdit | HealthRecordEdit,
        abandoned: list[tuple[int, ItemFailure]],
    ) -> None:
        now = self._clock.now()
        async with self._uow_factory() as uow:
            await registry.record_progress(uow, operation_id, ProgressDelta.failed(len(abandoned)))
            for item_id, failure in abandoned:
                await uow.failures.append(_failure_detail(operation_id, item_id, change, failure, now))

    async def retry_item(
        self,
        operation_id: str,
        item_id: int,
        change: AnimalEdit | HealthRecordEdit | dict[str, Any] | None = None,
        *,
        requested_by: str,
    ) -> RetryLogEntryRecord:
        """Re-apply the change to one failed item of a finished operation.

        Only users with an elevated role on the operation's farm may retry.
        The outcome goes to the retry log only; the operation's counters and
        its failure details stay as the original run left them.
        """

        async with self._uow_factory() as uow:
            operation = await registry.require_operation(uow, operation_id)
            await require_elevated_role(
                self._permissions, requested_by, operation.farm_id, "retry bulk items"
            )
            if not operation.status.is_terminal:
                raise InvalidStateError(
                    f"operation {operation_id} is {operation.status.value}; "
                    "only finished operations can be retried"
                )
            if await uow.failures.get(operation_id, item_id) is None:
                raise NotFoundError(f"no recorded failure for item {item_id} in {operation_id}")
            history = await uow.retries.list_for_operation(operation_id, item_id)

        if any(entry.outcome is RetryOutcome.success for entry in history):
            raise InvalidStateError(f"item {item_id} was already retried successfully")
        last_attempt = max((entry.attempt_number for entry in history), default=0)
        if last_attempt >= self._max_retry_attempts:
            raise InvalidStateError(
                f"item {item_id} reached the limit of {self._max_retry_attempts} retry attempts"
            )

        if change is None:
            change = operation.details.get("proposed_changes")
            if change is None:
                raise ValidationError(f"operation {operation_id} has no recorded change to retry")
        parsed = parse_change(change)
        attempt = last_attempt + 1

        with bound_operation(operation.id, operation.farm_id):
            try:
                failure = await self._entity_store.update(
                    item_id, parsed, farm_id=operation.farm_id
                )
            except SystemicFailure as exc:
                await self._log_attempt(
                    operation_id, item_id, attempt, ItemFailure(SYSTEMIC, str(exc))
                )
                logger.error("bulk_item_retry_aborted", item_id=item_id, attempt=attempt)
                raise
            entry = await self._log_attempt(operation_id, item_id, attempt, failure)
            logger.info(
                "bulk_item_retried",
                item_id=item_id,
                attempt=attempt,
                outcome=entry.outcome.value,
            )
            return entry

    async def _log_attempt(
        self,
        operation_id: str,
        item_id: int,
        attempt: int,
        failure: ItemFailure | None,
    ) -> RetryLogEntryRecord:
        entry = RetryLogEntryRecord(
            operation_id=operation_id,
            item_id=item_id,
            attempt_number=attempt,
            timestamp=self._clock.now(),
            outcome=RetryOutcome.success if failure is None else RetryOutcome.failure,
            error_code=failure.code if failure else None,
            error_message=failure.message if failure else None,
        )
        async with self._uow_factory() as uow:
            if not await uow.retries.append(entry):
                raise ConflictError(
                    f"retry attempt {attempt} for item {item_id} was recorded concurrently"
                )
            await uow.operations.increment_retry_count(operation_id)
        return entry

    async def resolved_item_ids(self, operation_id: str) -> set[int]:
        """Items whose recorded failure was later fixed by a successful retry."""

        async with self._uow_factory() as uow:
            await registry.require_operation(uow, operation_id)
            failed = {f.item_id for f in await uow.failures.list_for_operation(operation_id)}
            retries = await uow.retries.list_for_operation(operation_id)
        return {
            entry.item_id
            for entry in retries
            if entry.outcome is RetryOutcome.success and entry.item_id in failed
        }
