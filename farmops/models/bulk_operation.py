from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from farmops.models.base import Base


class OperationType(str, Enum):
    batch_edit = "batch-edit"
    data_import = "import"
    data_export = "export"
    bulk_register = "bulk-register"


class OperationStatus(str, Enum):
    pending = "pending"
    in_progress = "in-progress"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {OperationStatus.completed, OperationStatus.failed, OperationStatus.cancelled}
)


def _enum_values(enum_cls: type[Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class BulkOperation(Base):
    """Execution record of one batch job.

    Counters are only ever moved with ``SET x = x + :delta`` statements so a
    concurrent reader never observes processed_items going backwards.
    """

    __tablename__ = "bulk_operations"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    farm_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    operation_type: Mapped[OperationType] = mapped_column(
        SQLEnum(OperationType, name="bulk_operation_type", values_callable=_enum_values),
        nullable=False,
    )
    status: Mapped[OperationStatus] = mapped_column(
        SQLEnum(OperationStatus, name="bulk_operation_status", values_callable=_enum_values),
        nullable=False,
        default=OperationStatus.pending,
        server_default=text("'pending'"),
    )
    total_items: Mapped[int] = mapped_column(Integer, nullable=False)
    processed_items: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0")
    success_count: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0")
    failure_count: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0")
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0")
    cancel_requested: Mapped[bool] = mapped_column(
        Boolean, nullable=False, server_default=text("false")
    )
    created_by: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    details: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False, default=dict)

    __table_args__ = (
        Index("ix_bulk_operations_farm_id_created_at", "farm_id", "created_at"),
        Index("ix_bulk_operations_farm_id_status", "farm_id", "status"),
        CheckConstraint(
            "processed_items >= 0 AND processed_items <= total_items",
            name="ck_bulk_operations_processed_range",
        ),
        CheckConstraint(
            "success_count + failure_count <= processed_items",
            name="ck_bulk_operations_outcomes",
        ),
    )
