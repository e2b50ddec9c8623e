"""Approval workflow in front of batch edits.

A request is submitted, then decided exactly once. Approving it creates the
batch-edit operation in the same unit of work and runs it right away.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable, Sequence
from typing import Any

import structlog

from farmops.core.clock import Clock, SystemClock
from farmops.core.exceptions import InvalidStateError, NotFoundError, ValidationError
from farmops.dto import (
    ApprovalOutcome,
    ApprovalRequestPage,
    ApprovalRequestRecord,
    CandidatePage,
)
from farmops.infra.unit_of_work import UnitOfWork
from farmops.models.approval_request import ApprovalStatus
from farmops.models.bulk_operation import OperationType
from farmops.repositories.interfaces import EntityStore, PermissionChecker
from farmops.schemas.changes import AnimalEdit, HealthRecordEdit, change_snapshot, parse_change
from farmops.services import operation_registry as registry
from farmops.services.authorization import require_elevated_role
from farmops.services.batch_executor import BatchExecutor, unique_items

logger = structlog.get_logger(__name__)

DEFAULT_MAX_BATCH_ITEMS = 500


async def _require_request(uow: UnitOfWork, request_id: str) -> ApprovalRequestRecord:
    request = await uow.approvals.get(request_id)
    if request is None:
        raise NotFoundError(f"approval request not found: {request_id}")
    return request


def _ensure_pending(request: ApprovalRequestRecord) -> None:
    if request.status is not ApprovalStatus.pending_approval:
        raise InvalidStateError(f"approval request {request.id} is already {request.status.value}")


class ApprovalGate:
    def __init__(
        self,
        uow_factory: Callable[[], UnitOfWork],
        *,
        entity_store: EntityStore,
        permissions: PermissionChecker,
        executor: BatchExecutor,
        clock: Clock | None = None,
        max_batch_items: int = DEFAULT_MAX_BATCH_ITEMS,
    ) -> None:
        self._uow_factory = uow_factory
        self._entity_store = entity_store
        self._permissions = permissions
        self._executor = executor
        self._clock = clock or SystemClock()
        self._max_batch_items = max_batch_items

    async def _require_elevated(self, user_id: str, farm_id: int) -> None:
        await require_elevated_role(self._permissions, user_id, farm_id, "decide requests")

    async def submit_request(
        self,
        *,
        farm_id: int,
        target_item_ids: Sequence[int],
        proposed_changes: AnimalEdit | HealthRecordEdit | dict[str, Any],
        reason: str,
        requester: str,
    ) -> ApprovalRequestRecord:
        targets = unique_items(target_item_ids)
        if not targets:
            raise ValidationError("target_item_ids must not be empty")
        if len(targets) > self._max_batch_items:
            raise ValidationError(
                f"at most {self._max_batch_items} items per request, got {len(targets)}"
            )
        if not reason or not reason.strip():
            raise ValidationError("reason must not be blank")
        change = parse_change(proposed_changes)

        records = await self._entity_store.read_many(targets)
        foreign = sorted(r.id for r in records if r.farm_id != farm_id)
        if foreign:
            raise ValidationError(f"items {foreign} belong to another farm")
        if not records:
            raise ValidationError(f"none of the target items exist in farm {farm_id}")

        request = ApprovalRequestRecord(
            id=str(uuid.uuid4()),
            farm_id=farm_id,
            target_item_ids=targets,
            proposed_changes=change_snapshot(change),
            reason=reason.strip(),
            created_by=requester,
            created_at=self._clock.now(),
        )
        async with self._uow_factory() as uow:
            await uow.approvals.add(request)
        logger.info(
            "approval_request_submitted",
            request_id=request.id,
            farm_id=farm_id,
            item_count=len(targets),
            kind=change.kind,
        )
        return request

    async def approve(
        self, request_id: str, approver: str, notes: str | None = None
    ) -> ApprovalOutcome:
        async with self._uow_factory() as uow:
            request = await _require_request(uow, request_id)
            await self._require_elevated(approver, request.farm_id)
            _ensure_pending(request)

            now = self._clock.now()
            if not await uow.approvals.mark_approved(
                request_id, approved_by=approver, approved_at=now, notes=notes
            ):
                # lost the compare-and-set to a concurrent decision
                raise InvalidStateError(f"approval request {request_id} was decided concurrently")
            operation = await registry.create_operation(
                uow,
                farm_id=request.farm_id,
                operation_type=OperationType.batch_edit,
                total_items=len(request.target_item_ids),
                created_by=approver,
                details={
                    "approval_request_id": request.id,
                    "target_item_ids": list(request.target_item_ids),
                    "proposed_changes": request.proposed_changes,
                },
                now=now,
            )
            await uow.approvals.attach_operation(request_id, operation.id)
            request = await _require_request(uow, request_id)

        logger.info(
            "approval_request_approved",
            request_id=request_id,
            operation_id=operation.id,
            approver=approver,
        )
        finished = await self._executor.execute(
            operation, request.target_item_ids, request.proposed_changes
        )
        return ApprovalOutcome(request=request, operation=finished)

    async def reject(
        self, request_id: str, approver: str, rejection_reason: str
    ) -> ApprovalRequestRecord:
        if not rejection_reason or not rejection_reason.strip():
            raise ValidationError("rejection_reason must not be blank")
        async with self._uow_factory() as uow:
            request = await _require_request(uow, request_id)
            await self._require_elevated(approver, request.farm_id)
            _ensure_pending(request)
            if not await uow.approvals.mark_rejected(
                request_id,
                rejected_by=approver,
                rejected_at=self._clock.now(),
                reason=rejection_reason.strip(),
            ):
                raise InvalidStateError(f"approval request {request_id} was decided concurrently")
            request = await _require_request(uow, request_id)
        logger.info("approval_request_rejected", request_id=request_id, approver=approver)
        return request

    async def get_request(self, request_id: str) -> ApprovalRequestRecord:
        async with self._uow_factory() as uow:
            return await _require_request(uow, request_id)

    async def list_requests(
        self,
        *,
        farm_id: int,
        status: ApprovalStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> ApprovalRequestPage:
        async with self._uow_factory() as uow:
            items, total = await uow.approvals.list_by_farm(
                farm_id=farm_id, status=status, limit=limit, offset=offset
            )
        return ApprovalRequestPage(items=items, total=total)

    async def list_candidates(
        self,
        *,
        farm_id: int,
        status: str | None = None,
        breed: str | None = None,
        gender: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> CandidatePage:
        """Animals of the farm a batch edit can be built from, oldest id first."""

        items, total = await self._entity_store.list_for_farm(
            farm_id, status=status, breed=breed, gender=gender, limit=limit, offset=offset
        )
        return CandidatePage(items=items, total=total)
