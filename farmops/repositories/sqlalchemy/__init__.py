"""SQLAlchemy implementations of repository interfaces."""

from .entities import SqlAlchemyEntityStore, SqlAlchemyPermissionChecker
from .operations import (
    SqlAlchemyApprovalRequestRepository,
    SqlAlchemyBulkOperationRepository,
    SqlAlchemyFailureLedgerRepository,
    SqlAlchemyRetryLogRepository,
)

__all__ = [
    "SqlAlchemyApprovalRequestRepository",
    "SqlAlchemyBulkOperationRepository",
    "SqlAlchemyEntityStore",
    "SqlAlchemyFailureLedgerRepository",
    "SqlAlchemyPermissionChecker",
    "SqlAlchemyRetryLogRepository",
]
