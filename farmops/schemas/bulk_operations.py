from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from farmops.models.bulk_operation import OperationStatus, OperationType
from farmops.models.operation_ledger import RetryOutcome


class OperationCreate(BaseModel):
    farm_id: int
    operation_type: OperationType
    total_items: int
    details: dict[str, Any] = Field(default_factory=dict)


class ProgressBody(BaseModel):
    processed: int = 0
    success: int = 0
    failure: int = 0


class FinishBody(BaseModel):
    status: OperationStatus
    error_message: str | None = None


class RetryBody(BaseModel):
    proposed_changes: dict[str, Any] | None = None


class PurgeBody(BaseModel):
    farm_id: int
    older_than_days: int | None = None


class PurgeResponse(BaseModel):
    success: bool = True
    purged: int


class OperationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    farm_id: int
    operation_type: OperationType
    status: OperationStatus
    total_items: int
    processed_items: int
    success_count: int
    failure_count: int
    retry_count: int
    cancel_requested: bool
    created_by: str
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_ms: int | None = None
    error_message: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)


class OperationPageOut(BaseModel):
    items: list[OperationOut]
    total: int


class FailureDetailOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    operation_id: str
    item_id: int
    item_type: str
    error_code: str
    error_message: str
    item_data: dict[str, Any] | None = None
    created_at: datetime


class RetryLogEntryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    operation_id: str
    item_id: int
    attempt_number: int
    timestamp: datetime
    outcome: RetryOutcome
    error_code: str | None = None
    error_message: str | None = None


class OperationStatsOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    farm_id: int
    total: int
    by_status: dict[str, int]
    by_type: dict[str, int]
    total_items: int
    total_processed: int
    total_success: int
    total_failures: int
    resolved_failures: int
    average_duration_ms: int
