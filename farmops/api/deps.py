"""API dependency helpers and service providers.

Collaborators are created once by ``create_app`` and kept on ``app.state``;
services are cheap wrappers built per request around them.
"""

from fastapi import Header, HTTPException, Request

from farmops.services.approval_gate import ApprovalGate
from farmops.services.batch_executor import BatchExecutor
from farmops.services.health import HealthService
from farmops.services.operation_registry import OperationRegistry
from farmops.services.statistics import StatisticsAggregator

__all__ = [
    "get_current_user_id",
    "get_operation_registry",
    "get_batch_executor",
    "get_approval_gate",
    "get_statistics",
    "get_health_service",
]


def get_current_user_id(x_user_id: str | None = Header(default=None)) -> str:
    """Principal id forwarded by the authenticating proxy."""

    if x_user_id is None or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="missing X-User-Id header")
    return x_user_id.strip()


def get_operation_registry(request: Request) -> OperationRegistry:
    state = request.app.state
    return OperationRegistry(state.uow_factory, permissions=state.permissions, clock=state.clock)


def get_batch_executor(request: Request) -> BatchExecutor:
    state = request.app.state
    return BatchExecutor(
        state.uow_factory,
        state.entity_store,
        permissions=state.permissions,
        clock=state.clock,
        max_retry_attempts=state.settings.bulk_max_retry_attempts,
        deadline_seconds=state.settings.bulk_execution_deadline_seconds,
    )


def get_approval_gate(request: Request) -> ApprovalGate:
    state = request.app.state
    return ApprovalGate(
        state.uow_factory,
        entity_store=state.entity_store,
        permissions=state.permissions,
        executor=get_batch_executor(request),
        clock=state.clock,
        max_batch_items=state.settings.bulk_max_items,
    )


def get_statistics(request: Request) -> StatisticsAggregator:
    return StatisticsAggregator(request.app.state.uow_factory)


def get_health_service(request: Request) -> HealthService:
    return HealthService(request.app.state.uow_factory)
