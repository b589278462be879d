"""Services for the ledger kernel (write side)."""

from ledger_kernel.services.local_store import (
    DatedWriteGuard,
    LocalStore,
    PurgeResult,
    WriteOrigin,
    model_for,
)
from ledger_kernel.services.sequence_service import SequenceService
from ledger_kernel.services.sync_queue import (
    QueueSelection,
    QueueStats,
    SyncQueueService,
)

__all__ = [
    "DatedWriteGuard",
    "LocalStore",
    "PurgeResult",
    "QueueSelection",
    "QueueStats",
    "SequenceService",
    "SyncQueueService",
    "WriteOrigin",
    "model_for",
]
