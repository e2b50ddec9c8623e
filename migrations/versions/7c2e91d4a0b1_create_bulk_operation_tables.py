"""create bulk operation tables

Revision ID: 7c2e91d4a0b1
Revises:
Create Date: 2026-10-19 00:00:00.000000
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "7c2e91d4a0b1"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

_operation_type = postgresql.ENUM(
    "batch-edit", "import", "export", "bulk-register", name="bulk_operation_type"
)
_operation_status = postgresql.ENUM(
    "pending", "in-progress", "completed", "failed", "cancelled", name="bulk_operation_status"
)
_approval_status = postgresql.ENUM(
    "pending_approval", "approved", "rejected", name="approval_status"
)
_retry_outcome = postgresql.ENUM("success", "failure", name="retry_outcome")


def upgrade() -> None:
    op.create_table(
        "animals",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("farm_id", sa.BigInteger(), nullable=False),
        sa.Column("unique_tag_id", sa.String(length=100), nullable=True, unique=True),
        sa.Column("breed", sa.String(length=255), nullable=True),
        sa.Column("gender", sa.String(length=16), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="active"),
        sa.Column("health_status", sa.String(length=32), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
        ),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
        ),
    )
    op.create_index("ix_animals_farm_id", "animals", ["farm_id"])

    op.create_table(
        "animal_health_records",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column(
            "animal_id",
            sa.BigInteger(),
            sa.ForeignKey("animals.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("record_date", sa.Date(), nullable=False),
        sa.Column("event_type", sa.String(length=32), nullable=False),
        sa.Column("details", sa.Text(), nullable=True),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
        ),
    )
    op.create_index("ix_animal_health_records_animal_id", "animal_health_records", ["animal_id"])

    op.create_table(
        "farm_permissions",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("farm_id", sa.BigInteger(), nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("role", sa.String(length=16), nullable=False, server_default="viewer"),
        sa.Column("granted_by", sa.String(length=64), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
        ),
    )
    op.create_index(
        "ix_farm_permissions_farm_id_user_id", "farm_permissions", ["farm_id", "user_id"]
    )

    op.create_table(
        "bulk_operations",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("farm_id", sa.BigInteger(), nullable=False),
        sa.Column("operation_type", _operation_type, nullable=False),
        sa.Column("status", _operation_status, nullable=False, server_default="pending"),
        sa.Column("total_items", sa.Integer(), nullable=False),
        sa.Column("processed_items", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("success_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failure_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "cancel_requested", sa.Boolean(), nullable=False, server_default=sa.text("false")
        ),
        sa.Column("created_by", sa.String(length=64), nullable=False),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
        ),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_ms", sa.BigInteger(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("details", postgresql.JSONB(), nullable=False, server_default="{}"),
        sa.CheckConstraint(
            "processed_items >= 0 AND processed_items <= total_items",
            name="ck_bulk_operations_processed_range",
        ),
        sa.CheckConstraint(
            "success_count + failure_count <= processed_items",
            name="ck_bulk_operations_outcomes",
        ),
    )
    op.create_index(
        "ix_bulk_operations_farm_id_created_at", "bulk_operations", ["farm_id", "created_at"]
    )
    op.create_index("ix_bulk_operations_farm_id_status", "bulk_operations", ["farm_id", "status"])

    op.create_table(
        "approval_requests",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("farm_id", sa.BigInteger(), nullable=False),
        sa.Column("target_item_ids", postgresql.JSONB(), nullable=False),
        sa.Column("proposed_changes", postgresql.JSONB(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("status", _approval_status, nullable=False, server_default="pending_approval"),
        sa.Column("created_by", sa.String(length=64), nullable=False),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
        ),
        sa.Column("approved_by", sa.String(length=64), nullable=True),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("approver_notes", sa.Text(), nullable=True),
        sa.Column("rejected_by", sa.String(length=64), nullable=True),
        sa.Column("rejected_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        sa.Column(
            "operation_id",
            sa.String(length=64),
            sa.ForeignKey("bulk_operations.id", ondelete="SET NULL"),
            nullable=True,
            unique=True,
        ),
    )
    op.create_index(
        "ix_approval_requests_farm_id_status", "approval_requests", ["farm_id", "status"]
    )

    op.create_table(
        "operation_failure_details",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column(
            "operation_id",
            sa.String(length=64),
            sa.ForeignKey("bulk_operations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("item_id", sa.BigInteger(), nullable=False),
        sa.Column("item_type", sa.String(length=50), nullable=False),
        sa.Column("error_code", sa.String(length=50), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=False),
        sa.Column("item_data", postgresql.JSONB(), nullable=True),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
        ),
        sa.UniqueConstraint("operation_id", "item_id", name="uq_operation_failure_item"),
    )

    op.create_table(
        "operation_retry_log",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column(
            "operation_id",
            sa.String(length=64),
            sa.ForeignKey("bulk_operations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("item_id", sa.BigInteger(), nullable=False),
        sa.Column("attempt_number", sa.Integer(), nullable=False),
        sa.Column("outcome", _retry_outcome, nullable=False),
        sa.Column("error_code", sa.String(length=50), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column(
            "attempted_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.UniqueConstraint(
            "operation_id", "item_id", "attempt_number", name="uq_operation_retry_attempt"
        ),
    )


def downgrade() -> None:
    op.drop_table("operation_retry_log")
    op.drop_table("operation_failure_details")
    op.drop_index("ix_approval_requests_farm_id_status", table_name="approval_requests")
    op.drop_table("approval_requests")
    op.drop_index("ix_bulk_operations_farm_id_status", table_name="bulk_operations")
    op.drop_index("ix_bulk_operations_farm_id_created_at", table_name="bulk_operations")
    op.drop_table("bulk_operations")
    op.drop_index("ix_farm_permissions_farm_id_user_id", table_name="farm_permissions")
    op.drop_table("farm_permissions")
    op.drop_index("ix_animal_health_records_animal_id", table_name="animal_health_records")
    op.drop_table("animal_health_records")
    op.drop_index("ix_animals_farm_id", table_name="animals")
    op.drop_table("animals")
    for enum in (_retry_outcome, _approval_status, _operation_status, _operation_type):
        enum.drop(op.get_bind(), checkfirst=True)
