"""Core idempotent processing components."""
from .event_ledger import ClaimResult, EventLedger, EventLedgerError, LedgerStatus
from .redemption_ledger import (
    RedemptionError,
    RedemptionLedger,
    RedemptionOutcome,
    derive_transaction_id,
)
from .work_queue import (
    BatchStats,
    JobPriority,
    JobResult,
    JobStatus,
    JobType,
    JobValidationError,
    WorkQueue,
    WorkQueueError,
)

__all__ = [
    "BatchStats",
    "ClaimResult",
    "EventLedger",
    "EventLedgerError",
    "JobPriority",
    "JobResult",
    "JobStatus",
    "JobType",
    "JobValidationError",
    "LedgerStatus",
    "RedemptionError",
    "RedemptionLedger",
    "RedemptionOutcome",
    "WorkQueue",
    "WorkQueueError",
    "derive_transaction_id",
]
