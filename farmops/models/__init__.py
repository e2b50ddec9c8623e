# Imported for metadata discovery (Alembic autogenerate and test create_all)
from .approval_request import ApprovalRequest, ApprovalStatus
from .base import Base
from .bulk_operation import (
    TERMINAL_STATUSES,
    BulkOperation,
    OperationStatus,
    OperationType,
)
from .farm_records import Animal, AnimalHealthRecord, FarmPermission, FarmRole
from .operation_ledger import OperationFailure, OperationRetry, RetryOutcome

__all__ = [
    "Base",
    "ApprovalRequest",
    "ApprovalStatus",
    "BulkOperation",
    "OperationStatus",
    "OperationType",
    "TERMINAL_STATUSES",
    "OperationFailure",
    "OperationRetry",
    "RetryOutcome",
    "Animal",
    "AnimalHealthRecord",
    "FarmPermission",
    "FarmRole",
]
