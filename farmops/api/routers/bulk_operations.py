from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query, Request, status

from farmops.api.deps import (
    get_approval_gate,
    get_batch_executor,
    get_current_user_id,
    get_operation_registry,
    get_statistics,
)
from farmops.dto import ProgressDelta
from farmops.models.bulk_operation import OperationStatus, OperationType
from farmops.schemas.bulk_operations import (
    FailureDetailOut,
    FinishBody,
    OperationCreate,
    OperationOut,
    OperationPageOut,
    OperationStatsOut,
    ProgressBody,
    PurgeBody,
    PurgeResponse,
    RetryBody,
    RetryLogEntryOut,
)
from farmops.schemas.bulk_requests import CandidateOut, CandidatePageOut
from farmops.schemas.common import ErrorResponse
from farmops.services.approval_gate import ApprovalGate
from farmops.services.batch_executor import BatchExecutor
from farmops.services.operation_registry import OperationRegistry
from farmops.services.statistics import StatisticsAggregator

router = APIRouter(prefix="/bulk", tags=["bulk-operations"])

_STATE_ERRORS = {
    404: {"model": ErrorResponse, "description": "Unknown operation"},
    409: {"model": ErrorResponse, "description": "Transition not allowed"},
}


@router.post(
    "/operations",
    response_model=OperationOut,
    status_code=status.HTTP_201_CREATED,
    summary="Register an operation that does not need approval",
)
async def create_operation(
    body: OperationCreate,
    user_id: str = Depends(get_current_user_id),
    registry: OperationRegistry = Depends(get_operation_registry),
):
    operation = await registry.create_operation(
        farm_id=body.farm_id,
        operation_type=body.operation_type,
        total_items=body.total_items,
        created_by=user_id,
        details=body.details,
    )
    return OperationOut.model_validate(operation)


@router.get("/operations", response_model=OperationPageOut, summary="List operations")
async def list_operations(
    farm_id: int = Query(...),
    operation_type: OperationType | None = Query(default=None),
    status_filter: OperationStatus | None = Query(default=None, alias="status"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    registry: OperationRegistry = Depends(get_operation_registry),
):
    page = await registry.list_operations(
        farm_id=farm_id,
        operation_type=operation_type,
        status=status_filter,
        limit=limit,
        offset=offset,
    )
    return OperationPageOut(
        items=[OperationOut.model_validate(op) for op in page.items], total=page.total
    )


@router.get(
    "/operations/search",
    response_model=list[OperationOut],
    summary="Find operations by id fragment",
)
async def search_operations(
    farm_id: int = Query(...),
    q: str = Query(..., min_length=1, max_length=64),
    limit: int = Query(20, ge=1, le=100),
    registry: OperationRegistry = Depends(get_operation_registry),
):
    rows = await registry.search_operations(farm_id=farm_id, query=q, limit=limit)
    return [OperationOut.model_validate(op) for op in rows]


@router.get(
    "/operations/{operation_id}",
    response_model=OperationOut,
    responses={404: {"model": ErrorResponse}},
)
async def get_operation(
    operation_id: str, registry: OperationRegistry = Depends(get_operation_registry)
):
    return OperationOut.model_validate(await registry.get(operation_id))


@router.post(
    "/operations/{operation_id}/start", response_model=OperationOut, responses=_STATE_ERRORS
)
async def start_operation(
    operation_id: str,
    _: str = Depends(get_current_user_id),
    registry: OperationRegistry = Depends(get_operation_registry),
):
    return OperationOut.model_validate(await registry.begin_execution(operation_id))


@router.post(
    "/operations/{operation_id}/progress",
    response_model=OperationOut,
    responses={400: {"model": ErrorResponse}, **_STATE_ERRORS},
)
async def record_progress(
    operation_id: str,
    body: ProgressBody,
    _: str = Depends(get_current_user_id),
    registry: OperationRegistry = Depends(get_operation_registry),
):
    delta = ProgressDelta(processed=body.processed, success=body.success, failure=body.failure)
    return OperationOut.model_validate(await registry.record_progress(operation_id, delta))


@router.post(
    "/operations/{operation_id}/finish", response_model=OperationOut, responses=_STATE_ERRORS
)
async def finish_operation(
    operation_id: str,
    body: FinishBody,
    _: str = Depends(get_current_user_id),
    registry: OperationRegistry = Depends(get_operation_registry),
):
    operation = await registry.finish(operation_id, body.status, body.error_message)
    return OperationOut.model_validate(operation)


@router.post(
    "/operations/{operation_id}/cancel", response_model=OperationOut, responses=_STATE_ERRORS
)
async def cancel_operation(
    operation_id: str,
    _: str = Depends(get_current_user_id),
    registry: OperationRegistry = Depends(get_operation_registry),
):
    return OperationOut.model_validate(await registry.request_cancel(operation_id))


@router.get(
    "/operations/{operation_id}/failures",
    response_model=list[FailureDetailOut],
    responses={404: {"model": ErrorResponse}},
)
async def list_failures(
    operation_id: str, registry: OperationRegistry = Depends(get_operation_registry)
):
    rows = await registry.get_failure_details(operation_id)
    return [FailureDetailOut.model_validate(row) for row in rows]


@router.get(
    "/operations/{operation_id}/retries",
    response_model=list[RetryLogEntryOut],
    responses={404: {"model": ErrorResponse}},
)
async def list_retries(
    operation_id: str,
    item_id: int | None = Query(default=None),
    registry: OperationRegistry = Depends(get_operation_registry),
):
    rows = await registry.get_retry_log(operation_id, item_id)
    return [RetryLogEntryOut.model_validate(row) for row in rows]


@router.post(
    "/operations/{operation_id}/items/{item_id}/retry",
    response_model=RetryLogEntryOut,
    summary="Retry one failed item of a finished operation",
    responses={403: {"model": ErrorResponse}, 503: {"model": ErrorResponse}, **_STATE_ERRORS},
)
async def retry_item(
    operation_id: str,
    item_id: int,
    body: RetryBody | None = None,
    user_id: str = Depends(get_current_user_id),
    executor: BatchExecutor = Depends(get_batch_executor),
):
    change = body.proposed_changes if body else None
    entry = await executor.retry_item(operation_id, item_id, change, requested_by=user_id)
    return RetryLogEntryOut.model_validate(entry)


@router.get("/stats", response_model=OperationStatsOut, summary="Operation statistics")
async def operation_stats(
    farm_id: int = Query(...),
    start_date: datetime | None = Query(default=None),
    end_date: datetime | None = Query(default=None),
    operation_type: OperationType | None = Query(default=None),
    status_filter: OperationStatus | None = Query(default=None, alias="status"),
    stats: StatisticsAggregator = Depends(get_statistics),
):
    result = await stats.get_stats(
        farm_id,
        start=start_date,
        end=end_date,
        operation_type=operation_type,
        status=status_filter,
    )
    return OperationStatsOut.model_validate(result)


@router.post(
    "/purge",
    response_model=PurgeResponse,
    summary="Delete finished operations older than the retention window",
    responses={400: {"model": ErrorResponse}, 403: {"model": ErrorResponse}},
)
async def purge_operations(
    body: PurgeBody,
    request: Request,
    user_id: str = Depends(get_current_user_id),
    registry: OperationRegistry = Depends(get_operation_registry),
):
    days = body.older_than_days
    if days is None:
        days = request.app.state.settings.bulk_retention_days
    purged = await registry.purge_older_than(body.farm_id, days, requested_by=user_id)
    return PurgeResponse(purged=purged)


@router.get(
    "/candidates",
    response_model=CandidatePageOut,
    summary="Animals a batch edit can target",
    responses={503: {"model": ErrorResponse}},
)
async def list_candidates(
    farm_id: int = Query(...),
    status_filter: str | None = Query(default=None, alias="status", max_length=32),
    breed: str | None = Query(default=None, max_length=255),
    gender: str | None = Query(default=None, max_length=16),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    gate: ApprovalGate = Depends(get_approval_gate),
):
    page = await gate.list_candidates(
        farm_id=farm_id,
        status=status_filter,
        breed=breed,
        gender=gender,
        limit=limit,
        offset=offset,
    )
    return CandidatePageOut(
        items=[CandidateOut.model_validate(r) for r in page.items], total=page.total
    )
