"""Plain records exchanged between repositories and services."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from farmops.models.approval_request import ApprovalStatus
from farmops.models.bulk_operation import OperationStatus, OperationType
from farmops.models.operation_ledger import RetryOutcome


@dataclass
class BulkOperationRecord:
    id: str
    farm_id: int
    operation_type: OperationType
    status: OperationStatus
    total_items: int
    created_by: str
    created_at: datetime
    processed_items: int = 0
    success_count: int = 0
    failure_count: int = 0
    retry_count: int = 0
    cancel_requested: bool = False
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_ms: int | None = None
    error_message: str | None = None
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class ApprovalRequestRecord:
    id: str
    farm_id: int
    target_item_ids: list[int]
    proposed_changes: dict[str, Any]
    reason: str
    created_by: str
    created_at: datetime
    status: ApprovalStatus = ApprovalStatus.pending_approval
    approved_by: str | None = None
    approved_at: datetime | None = None
    approver_notes: str | None = None
    rejected_by: str | None = None
    rejected_at: datetime | None = None
    rejection_reason: str | None = None
    operation_id: str | None = None

    @property
    def decided_at(self) -> datetime | None:
        return self.approved_at or self.rejected_at


@dataclass(frozen=True)
class FailureDetailRecord:
    operation_id: str
    item_id: int
    item_type: str
    error_code: str
    error_message: str
    item_data: dict[str, Any] | None
    created_at: datetime


@dataclass(frozen=True)
class RetryLogEntryRecord:
    operation_id: str
    item_id: int
    attempt_number: int
    timestamp: datetime
    outcome: RetryOutcome
    error_code: str | None = None
    error_message: str | None = None


@dataclass(frozen=True)
class ProgressDelta:
    processed: int = 0
    success: int = 0
    failure: int = 0

    @classmethod
    def succeeded(cls, count: int = 1) -> ProgressDelta:
        return cls(processed=count, success=count)

    @classmethod
    def failed(cls, count: int = 1) -> ProgressDelta:
        return cls(processed=count, failure=count)


@dataclass(frozen=True)
class EntityRecord:
    """What the entity store hands back from ``read_many``."""

    id: int
    farm_id: int
    item_type: str = "animal"
    attributes: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ItemFailure:
    """Non-fatal failure of a single item; recorded in the ledger, never raised."""

    code: str
    message: str


@dataclass
class OperationPage:
    items: list[BulkOperationRecord]
    total: int


@dataclass
class ApprovalRequestPage:
    items: list[ApprovalRequestRecord]
    total: int


@dataclass
class CandidatePage:
    items: list[EntityRecord]
    total: int


@dataclass
class ApprovalOutcome:
    request: ApprovalRequestRecord
    operation: BulkOperationRecord


@dataclass
class OperationStats:
    farm_id: int
    total: int = 0
    by_status: dict[str, int] = field(default_factory=dict)
    by_type: dict[str, int] = field(default_factory=dict)
    total_items: int = 0
    total_processed: int = 0
    total_success: int = 0
    total_failures: int = 0
    resolved_failures: int = 0
    average_duration_ms: int = 0


@dataclass
class ApprovalStats:
    farm_id: int
    total_requests: int = 0
    pending_requests: int = 0
    approved_requests: int = 0
    rejected_requests: int = 0
    total_items_affected: int = 0
    approval_rate: float = 0.0
    average_decision_seconds: float = 0.0
