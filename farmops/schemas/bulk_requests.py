from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from farmops.models.approval_request import ApprovalStatus


class ApprovalRequestCreate(BaseModel):
    farm_id: int
    target_item_ids: list[int]
    # validated by the service so an unknown kind is a 400, not a 422
    proposed_changes: dict[str, Any]
    reason: str

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "farm_id": 1,
                    "target_item_ids": [101, 102, 103],
                    "proposed_changes": {"kind": "animal_edit", "status": "sold"},
                    "reason": "Sold at the autumn auction",
                }
            ]
        }
    }


class ApprovalRequestCreated(BaseModel):
    request_id: str
    status: ApprovalStatus


class ApproveBody(BaseModel):
    notes: str | None = Field(default=None, max_length=10000)


class RejectBody(BaseModel):
    rejection_reason: str


class AppliedChanges(BaseModel):
    total_items: int
    successful_updates: int
    failed_updates: int


class ApproveResponse(BaseModel):
    success: bool = True
    operation_id: str
    status: str
    applied_changes: AppliedChanges


class RejectResponse(BaseModel):
    success: bool = True
    rejected_at: datetime


class ApprovalRequestOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    farm_id: int
    target_item_ids: list[int]
    proposed_changes: dict[str, Any]
    reason: str
    status: ApprovalStatus
    created_by: str
    created_at: datetime
    approved_by: str | None = None
    approved_at: datetime | None = None
    approver_notes: str | None = None
    rejected_by: str | None = None
    rejected_at: datetime | None = None
    rejection_reason: str | None = None
    operation_id: str | None = None


class ApprovalRequestPageOut(BaseModel):
    items: list[ApprovalRequestOut]
    total: int


class ApprovalStatsOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    farm_id: int
    total_requests: int
    pending_requests: int
    approved_requests: int
    rejected_requests: int
    total_items_affected: int
    approval_rate: float = Field(description="Approved share of decided requests, in percent")
    average_decision_seconds: float


class CandidateOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    farm_id: int
    item_type: str
    attributes: dict[str, Any]


class CandidatePageOut(BaseModel):
    items: list[CandidateOut]
    total: int
