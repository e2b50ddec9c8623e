from __future__ import annotations

from fastapi import APIRouter, Depends, Query, status

from farmops.api.deps import get_approval_gate, get_current_user_id, get_statistics
from farmops.models.approval_request import ApprovalStatus
from farmops.schemas.bulk_requests import (
    AppliedChanges,
    ApprovalRequestCreate,
    ApprovalRequestCreated,
    ApprovalRequestOut,
    ApprovalRequestPageOut,
    ApprovalStatsOut,
    ApproveBody,
    ApproveResponse,
    RejectBody,
    RejectResponse,
)
from farmops.schemas.common import ErrorResponse
from farmops.services.approval_gate import ApprovalGate
from farmops.services.statistics import StatisticsAggregator

router = APIRouter(prefix="/bulk/requests", tags=["bulk-requests"])

_DECISION_ERRORS = {
    403: {"model": ErrorResponse, "description": "Approver lacks an elevated farm role"},
    404: {"model": ErrorResponse, "description": "Unknown request"},
    409: {"model": ErrorResponse, "description": "Request already decided"},
}


@router.post(
    "",
    response_model=ApprovalRequestCreated,
    status_code=status.HTTP_201_CREATED,
    summary="Submit a batch edit for approval",
    responses={400: {"model": ErrorResponse}},
)
async def submit_request(
    body: ApprovalRequestCreate,
    user_id: str = Depends(get_current_user_id),
    gate: ApprovalGate = Depends(get_approval_gate),
):
    request = await gate.submit_request(
        farm_id=body.farm_id,
        target_item_ids=body.target_item_ids,
        proposed_changes=body.proposed_changes,
        reason=body.reason,
        requester=user_id,
    )
    return ApprovalRequestCreated(request_id=request.id, status=request.status)


@router.get("", response_model=ApprovalRequestPageOut, summary="List approval requests")
async def list_requests(
    farm_id: int = Query(...),
    status_filter: ApprovalStatus | None = Query(default=None, alias="status"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    gate: ApprovalGate = Depends(get_approval_gate),
):
    page = await gate.list_requests(
        farm_id=farm_id, status=status_filter, limit=limit, offset=offset
    )
    return ApprovalRequestPageOut(
        items=[ApprovalRequestOut.model_validate(r) for r in page.items],
        total=page.total,
    )


@router.get("/stats", response_model=ApprovalStatsOut, summary="Approval statistics")
async def approval_stats(
    farm_id: int = Query(...),
    stats: StatisticsAggregator = Depends(get_statistics),
):
    return ApprovalStatsOut.model_validate(await stats.get_approval_stats(farm_id))


@router.get(
    "/{request_id}",
    response_model=ApprovalRequestOut,
    responses={404: {"model": ErrorResponse}},
)
async def get_request(request_id: str, gate: ApprovalGate = Depends(get_approval_gate)):
    return ApprovalRequestOut.model_validate(await gate.get_request(request_id))


@router.post(
    "/{request_id}/approve",
    response_model=ApproveResponse,
    summary="Approve a request and run its batch edit",
    responses=_DECISION_ERRORS,
)
async def approve_request(
    request_id: str,
    body: ApproveBody | None = None,
    user_id: str = Depends(get_current_user_id),
    gate: ApprovalGate = Depends(get_approval_gate),
):
    outcome = await gate.approve(request_id, user_id, notes=body.notes if body else None)
    operation = outcome.operation
    return ApproveResponse(
        operation_id=operation.id,
        status=operation.status.value,
        applied_changes=AppliedChanges(
            total_items=operation.total_items,
            successful_updates=operation.success_count,
            failed_updates=operation.failure_count,
        ),
    )


@router.post(
    "/{request_id}/reject",
    response_model=RejectResponse,
    summary="Reject a request",
    responses={400: {"model": ErrorResponse}, **_DECISION_ERRORS},
)
async def reject_request(
    request_id: str,
    body: RejectBody,
    user_id: str = Depends(get_current_user_id),
    gate: ApprovalGate = Depends(get_approval_gate),
):
    request = await gate.reject(request_id, user_id, body.rejection_reason)
    return RejectResponse(rejected_at=request.rejected_at)
