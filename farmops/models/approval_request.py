from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import BigInteger, DateTime, ForeignKey, Index, String, Text, text
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from farmops.models.base import Base


class ApprovalStatus(str, Enum):
    pending_approval = "pending_approval"
    approved = "approved"
    rejected = "rejected"


class ApprovalRequest(Base):
    """A proposed mass mutation awaiting authorization.

    Mutated exactly once (approve or reject); the row is kept for audit until
    the retention sweep removes it together with the operation it produced.
    """

    __tablename__ = "approval_requests"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    farm_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    target_item_ids: Mapped[list[int]] = mapped_column(JSONB, nullable=False)
    proposed_changes: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[ApprovalStatus] = mapped_column(
        SQLEnum(ApprovalStatus, name="approval_status"),
        nullable=False,
        default=ApprovalStatus.pending_approval,
        server_default=text("'pending_approval'"),
    )
    created_by: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    approved_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    approver_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    rejected_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    rejected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    operation_id: Mapped[str | None] = mapped_column(
        String(64),
        ForeignKey("bulk_operations.id", ondelete="SET NULL"),
        nullable=True,
        unique=True,
    )

    __table_args__ = (Index("ix_approval_requests_farm_id_status", "farm_id", "status"),)
