from .operations import (
    ApprovalOutcome,
    ApprovalRequestPage,
    ApprovalRequestRecord,
    ApprovalStats,
    BulkOperationRecord,
    CandidatePage,
    EntityRecord,
    FailureDetailRecord,
    ItemFailure,
    OperationPage,
    OperationStats,
    ProgressDelta,
    RetryLogEntryRecord,
)

__all__ = [
    "ApprovalOutcome",
    "ApprovalRequestPage",
    "ApprovalRequestRecord",
    "ApprovalStats",
    "BulkOperationRecord",
    "CandidatePage",
    "EntityRecord",
    "FailureDetailRecord",
    "ItemFailure",
    "OperationPage",
    "OperationStats",
    "ProgressDelta",
    "RetryLogEntryRecord",
]
