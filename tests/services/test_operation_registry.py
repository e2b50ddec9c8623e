import pytest

from farmops.core.exceptions import (
    AuthorizationError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from farmops.dto import FailureDetailRecord, ProgressDelta, RetryLogEntryRecord
from farmops.infra.unit_of_work import InMemoryUnitOfWork
from farmops.models.bulk_operation import OperationStatus, OperationType
from farmops.models.operation_ledger import RetryOutcome
from farmops.services.operation_registry import OperationRegistry
from tests.factories import ADMIN, FARM_ID, OTHER_FARM_ID, VIEWER

pytestmark = pytest.mark.unit


async def _create(registry, total=3, farm_id=FARM_ID, operation_type=OperationType.data_import):
    return await registry.create_operation(
        farm_id=farm_id,
        operation_type=operation_type,
        total_items=total,
        created_by=ADMIN,
        details={"source": "herd.csv"},
    )


async def _started(registry, total=3):
    operation = await _create(registry, total)
    return await registry.begin_execution(operation.id)


@pytest.mark.asyncio
async def test_create_operation_starts_pending_with_zero_counters(registry, clock) -> None:
    operation = await _create(registry)

    assert operation.status is OperationStatus.pending
    assert operation.created_at == clock.now()
    assert (operation.processed_items, operation.success_count, operation.failure_count) == (
        0,
        0,
        0,
    )
    assert operation.started_at is None
    assert (await registry.get(operation.id)).details == {"source": "herd.csv"}


@pytest.mark.asyncio
async def test_create_operation_requires_items(registry) -> None:
    with pytest.raises(ValidationError):
        await _create(registry, total=0)


@pytest.mark.asyncio
async def test_begin_execution_claims_once(registry, clock) -> None:
    operation = await _create(registry)

    claimed = await registry.begin_execution(operation.id)

    assert claimed.status is OperationStatus.in_progress
    assert claimed.started_at == clock.now()
    with pytest.raises(InvalidStateError):
        await registry.begin_execution(operation.id)


@pytest.mark.asyncio
async def test_begin_execution_unknown_operation(registry) -> None:
    with pytest.raises(NotFoundError):
        await registry.begin_execution("missing")


@pytest.mark.asyncio
async def test_record_progress_accumulates(registry) -> None:
    operation = await _started(registry, total=3)

    await registry.record_progress(operation.id, ProgressDelta.succeeded())
    updated = await registry.record_progress(operation.id, ProgressDelta.failed(2))

    assert updated.processed_items == 3
    assert updated.success_count == 1
    assert updated.failure_count == 2


@pytest.mark.asyncio
async def test_record_progress_requires_in_progress(registry) -> None:
    operation = await _create(registry)

    with pytest.raises(InvalidStateError):
        await registry.record_progress(operation.id, ProgressDelta.succeeded())


@pytest.mark.asyncio
async def test_record_progress_rejects_negative_delta(registry) -> None:
    operation = await _started(registry)

    with pytest.raises(ValidationError):
        await registry.record_progress(operation.id, ProgressDelta(processed=-1))


@pytest.mark.asyncio
async def test_record_progress_cannot_exceed_total(registry) -> None:
    operation = await _started(registry, total=2)

    with pytest.raises(InvalidStateError):
        await registry.record_progress(operation.id, ProgressDelta.succeeded(3))

    assert (await registry.get(operation.id)).processed_items == 0


@pytest.mark.asyncio
async def test_record_progress_outcomes_cannot_exceed_processed(registry) -> None:
    operation = await _started(registry, total=2)

    with pytest.raises(InvalidStateError):
        await registry.record_progress(operation.id, ProgressDelta(processed=1, success=2))


@pytest.mark.asyncio
async def test_finish_sets_duration(registry, clock) -> None:
    operation = await _started(registry, total=1)
    await registry.record_progress(operation.id, ProgressDelta.succeeded())
    clock.advance(seconds=2, milliseconds=500)

    finished = await registry.finish(operation.id, OperationStatus.completed)

    assert finished.status is OperationStatus.completed
    assert finished.completed_at == clock.now()
    assert finished.duration_ms == 2500


@pytest.mark.asyncio
async def test_finish_completed_requires_every_item_counted(registry) -> None:
    operation = await _started(registry, total=2)
    await registry.record_progress(operation.id, ProgressDelta.succeeded())

    with pytest.raises(InvalidStateError):
        await registry.finish(operation.id, OperationStatus.completed)
    with pytest.raises(InvalidStateError):
        await registry.finish(operation.id, OperationStatus.failed, "boom")


@pytest.mark.asyncio
async def test_finish_cancelled_allows_partial_progress(registry) -> None:
    operation = await _started(registry, total=4)
    await registry.record_progress(operation.id, ProgressDelta.succeeded())

    finished = await registry.finish(operation.id, OperationStatus.cancelled)

    assert finished.status is OperationStatus.cancelled
    assert finished.processed_items == 1


@pytest.mark.asyncio
async def test_finish_rejects_non_terminal_target(registry) -> None:
    operation = await _started(registry)

    with pytest.raises(InvalidStateError):
        await registry.finish(operation.id, OperationStatus.pending)


@pytest.mark.asyncio
async def test_terminal_status_is_a_sink(registry) -> None:
    operation = await _started(registry, total=1)
    await registry.finish(operation.id, OperationStatus.cancelled)

    with pytest.raises(InvalidStateError):
        await registry.finish(operation.id, OperationStatus.cancelled)
    with pytest.raises(InvalidStateError):
        await registry.begin_execution(operation.id)
    with pytest.raises(InvalidStateError):
        await registry.record_progress(operation.id, ProgressDelta.succeeded())


@pytest.mark.asyncio
async def test_finish_pending_operation_fails(registry) -> None:
    operation = await _create(registry)

    with pytest.raises(InvalidStateError):
        await registry.finish(operation.id, OperationStatus.cancelled)


@pytest.mark.asyncio
async def test_request_cancel_sets_flag(registry) -> None:
    operation = await _started(registry)

    flagged = await registry.request_cancel(operation.id)

    assert flagged.cancel_requested is True
    assert flagged.status is OperationStatus.in_progress


@pytest.mark.asyncio
async def test_request_cancel_on_terminal_operation_fails(registry) -> None:
    operation = await _started(registry, total=1)
    await registry.finish(operation.id, OperationStatus.cancelled)

    with pytest.raises(InvalidStateError):
        await registry.request_cancel(operation.id)
    with pytest.raises(NotFoundError):
        await registry.request_cancel("missing")


@pytest.mark.asyncio
async def test_list_operations_newest_first_with_filters(registry, clock) -> None:
    first = await _create(registry)
    clock.advance(minutes=1)
    second = await _create(registry, operation_type=OperationType.data_export)
    clock.advance(minutes=1)
    third = await _create(registry)
    await _create(registry, farm_id=OTHER_FARM_ID)
    await registry.begin_execution(third.id)

    page = await registry.list_operations(farm_id=FARM_ID)
    exports = await registry.list_operations(
        farm_id=FARM_ID, operation_type=OperationType.data_export
    )
    pending = await registry.list_operations(farm_id=FARM_ID, status=OperationStatus.pending)
    limited = await registry.list_operations(farm_id=FARM_ID, limit=1, offset=1)

    assert [op.id for op in page.items] == [third.id, second.id, first.id]
    assert page.total == 3
    assert [op.id for op in exports.items] == [second.id]
    assert {op.id for op in pending.items} == {first.id, second.id}
    assert [op.id for op in limited.items] == [second.id]
    assert limited.total == 3


@pytest.mark.asyncio
async def test_search_operations_matches_id_fragment(registry) -> None:
    operation = await _create(registry)
    await _create(registry, farm_id=OTHER_FARM_ID)

    found = await registry.search_operations(farm_id=FARM_ID, query=operation.id[:8].upper())

    assert [op.id for op in found] == [operation.id]
    assert await registry.search_operations(farm_id=FARM_ID, query="   ") == []
    assert await registry.search_operations(farm_id=FARM_ID, query="%") == []


@pytest.mark.asyncio
async def test_failure_details_and_retry_log_require_operation(registry) -> None:
    with pytest.raises(NotFoundError):
        await registry.get_failure_details("missing")
    with pytest.raises(NotFoundError):
        await registry.get_retry_log("missing")


async def _seed_ledger(uow_factory, operation_id, now):
    async with uow_factory() as uow:
        await uow.failures.append(
            FailureDetailRecord(
                operation_id=operation_id,
                item_id=7,
                item_type="animal",
                error_code="NOT_FOUND",
                error_message="animal 7 not found",
                item_data={"item_id": 7},
                created_at=now,
            )
        )
        await uow.retries.append(
            RetryLogEntryRecord(
                operation_id=operation_id,
                item_id=7,
                attempt_number=1,
                timestamp=now,
                outcome=RetryOutcome.failure,
                error_code="NOT_FOUND",
            )
        )


@pytest.mark.asyncio
async def test_purge_removes_old_terminal_operations_and_their_ledger(
    registry, uow_factory, clock
) -> None:
    old_done = await _started(registry, total=1)
    await registry.finish(old_done.id, OperationStatus.cancelled)
    await _seed_ledger(uow_factory, old_done.id, clock.now())
    old_running = await _started(registry, total=1)
    old_pending = await _create(registry)
    clock.advance(days=100)
    recent_done = await _started(registry, total=1)
    await registry.finish(recent_done.id, OperationStatus.cancelled)

    purged = await registry.purge_older_than(FARM_ID, 90, requested_by=ADMIN)

    assert purged == 1
    remaining = {op.id for op in (await registry.list_operations(farm_id=FARM_ID)).items}
    assert remaining == {old_running.id, old_pending.id, recent_done.id}
    async with uow_factory() as uow:
        assert await uow.failures.list_for_operation(old_done.id) == []
        assert await uow.retries.list_for_operation(old_done.id) == []


@pytest.mark.asyncio
async def test_purge_removes_originating_request(gate, registry, clock) -> None:
    request = await gate.submit_request(
        farm_id=FARM_ID,
        target_item_ids=[1],
        proposed_changes={"kind": "animal_edit", "breed": "Hereford"},
        reason="pedigree correction",
        requester=ADMIN,
    )
    await gate.approve(request.id, ADMIN)
    clock.advance(days=31)

    assert await registry.purge_older_than(FARM_ID, 30, requested_by=ADMIN) == 1
    with pytest.raises(NotFoundError):
        await gate.get_request(request.id)


@pytest.mark.asyncio
async def test_purge_keeps_operations_inside_window(registry, clock) -> None:
    operation = await _started(registry, total=1)
    await registry.finish(operation.id, OperationStatus.cancelled)
    clock.advance(hours=23)

    assert await registry.purge_older_than(FARM_ID, 1, requested_by=ADMIN) == 0


@pytest.mark.asyncio
async def test_purge_requires_positive_days(registry) -> None:
    with pytest.raises(ValidationError):
        await registry.purge_older_than(FARM_ID, 0, requested_by=ADMIN)


@pytest.mark.asyncio
async def test_purge_requires_elevated_role_on_the_farm(registry, clock) -> None:
    operation = await _started(registry, total=1)
    await registry.finish(operation.id, OperationStatus.cancelled)
    clock.advance(days=100)

    with pytest.raises(AuthorizationError):
        await registry.purge_older_than(FARM_ID, 90, requested_by=VIEWER)
    with pytest.raises(AuthorizationError):
        await registry.purge_older_than(OTHER_FARM_ID, 90, requested_by=ADMIN)

    assert (await registry.get(operation.id)).status is OperationStatus.cancelled


@pytest.mark.asyncio
async def test_purge_is_refused_without_a_permission_checker(uow_factory, clock) -> None:
    unguarded = OperationRegistry(uow_factory, clock=clock)

    with pytest.raises(AuthorizationError):
        await unguarded.purge_older_than(FARM_ID, 90, requested_by=ADMIN)


@pytest.mark.asyncio
async def test_failed_unit_of_work_leaves_state_untouched(operation_store, registry) -> None:
    operation = await _create(registry)

    with pytest.raises(RuntimeError):
        async with InMemoryUnitOfWork(operation_store) as uow:
            await uow.operations.claim(operation.id, started_at=operation.created_at)
            raise RuntimeError("boom")

    assert (await registry.get(operation.id)).status is OperationStatus.pending
