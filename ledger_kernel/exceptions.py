"""
Typed Exception Hierarchy for the Ledger Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

The sync queue has to decide, per failed entry, whether to retry, to park
the entry as Failed, or to abort the whole action before anything is written.
That decision is made by exception TYPE and the ``retryable`` flag, never by
parsing messages:

    try:
        remote.create("financial_transactions", record)
    except NetworkError:
        # transient -> entry back to Pending, backoff
    except LedgerKernelError as e:
        # non-retryable -> entry Failed with e.code

Every exception carries:
  1. A ``code`` class attribute (machine-readable, stored on queue entries)
  2. A ``retryable`` class attribute (only NetworkError is retryable)
  3. Structured attributes set before the message is built

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    LedgerKernelError (base)
    |
    +-- ValidationError
    |   +-- RecordNotFoundError
    |   +-- InsufficientStockError
    |   +-- InvalidLifecycleTransitionError
    |
    +-- AuthorizationError
    |   +-- SessionExpiredError
    |
    +-- ConflictError
    |   +-- AllocationConflictError
    |   +-- BackdatedWriteError
    |
    +-- NetworkError
    |
    +-- LedgerIntegrityError
    |   +-- OverpaymentError
    |
    +-- SyncQueueError
        +-- QueueEntryNotFoundError
        +-- QueueEntryInFlightError
        +-- RemoteCallError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category        | Code                        | When Raised
----------------|-----------------------------|-----------------------------------------
Validation      | VALIDATION_ERROR            | Malformed input, rejected before enqueue
                | RECORD_NOT_FOUND            | Referenced id does not exist
                | INSUFFICIENT_STOCK          | Sale exceeds available weight (reject)
                | INVALID_LIFECYCLE_TRANSITION| e.g. purge of an ACTIVE record
----------------|-----------------------------|-----------------------------------------
Authorization   | AUTHORIZATION_DENIED        | Viewer attempting a write
                | SESSION_EXPIRED             | Remote credentials no longer valid
----------------|-----------------------------|-----------------------------------------
Conflict        | CONFLICT                    | Remote rejects stale/invalid state
                | ALLOCATION_CONFLICT         | Remote FIFO plan differs from local plan
                | BACKDATED_WRITE             | Write dated inside a snapshotted month
----------------|-----------------------------|-----------------------------------------
Network         | NETWORK_UNAVAILABLE         | Transient connectivity failure
----------------|-----------------------------|-----------------------------------------
Integrity       | INTEGRITY_VIOLATION         | An invariant would be broken
                | OVERPAYMENT                 | paid_amount would exceed amount
----------------|-----------------------------|-----------------------------------------
Sync queue      | QUEUE_ENTRY_NOT_FOUND       | Unknown queue entry id
                | QUEUE_ENTRY_IN_FLIGHT       | Cancelling an entry already Sending
                | REMOTE_CALL_FAILED          | Untyped remote failure during replay

===============================================================================
"""

from __future__ import annotations

from typing import Any


class LedgerKernelError(Exception):
    """
    Base exception for all ledger kernel errors.

    All subclasses must have a ``code`` class attribute for machine-readable
    error identification.
    """

    code: str = "LEDGER_KERNEL_ERROR"
    retryable: bool = False


# Validation


class ValidationError(LedgerKernelError):
    """Malformed input. Raised before any local write or enqueue."""

    code: str = "VALIDATION_ERROR"

    def __init__(self, field: str, reason: str, value: Any = None):
        self.field = field
        self.reason = reason
        self.value = value
        super().__init__(f"Invalid {field}: {reason}")


class RecordNotFoundError(ValidationError):
    """Record with given id does not exist (or is purged)."""

    code: str = "RECORD_NOT_FOUND"

    def __init__(self, table: str, record_id: str):
        self.table = table
        self.record_id = record_id
        super().__init__("id", f"{table} record {record_id} not found", record_id)


class InsufficientStockError(ValidationError):
    """A sale would take an item's weight below zero under the reject policy."""

    code: str = "INSUFFICIENT_STOCK"

    def __init__(self, item_name: str, requested: Any, available: Any):
        self.item_name = item_name
        self.requested = requested
        self.available = available
        super().__init__(
            "weight",
            f"not enough stock of {item_name!r}: requested {requested}, "
            f"available {available}",
            requested,
        )


class InvalidLifecycleTransitionError(ValidationError):
    """Lifecycle transition not allowed (e.g. purging an ACTIVE record)."""

    code: str = "INVALID_LIFECYCLE_TRANSITION"

    def __init__(self, table: str, record_id: str, current: str, target: str):
        self.table = table
        self.record_id = record_id
        self.current = current
        self.target = target
        super().__init__(
            "lifecycle_state",
            f"{table} {record_id} cannot move from {current} to {target}",
            current,
        )


# Authorization


class AuthorizationError(LedgerKernelError):
    """Role check failure. Fatal, never retried."""

    code: str = "AUTHORIZATION_DENIED"

    def __init__(self, role: str, operation: str):
        self.role = role
        self.operation = operation
        super().__init__(f"Role '{role}' is not allowed to {operation}")


class SessionExpiredError(AuthorizationError):
    """Remote credentials are no longer valid."""

    code: str = "SESSION_EXPIRED"

    def __init__(self, operation: str):
        self.role = "anonymous"
        self.operation = operation
        LedgerKernelError.__init__(
            self, f"Session expired while attempting to {operation}"
        )


# Conflict


class ConflictError(LedgerKernelError):
    """Remote rejected the write because of stale or invalid state."""

    code: str = "CONFLICT"

    def __init__(self, table: str, record_id: str | None, reason: str):
        self.table = table
        self.record_id = record_id
        self.reason = reason
        super().__init__(f"Conflict on {table} {record_id or ''}: {reason}".strip())


class AllocationConflictError(ConflictError):
    """Remote FIFO allocation differs from the plan computed locally."""

    code: str = "ALLOCATION_CONFLICT"

    def __init__(
        self,
        contact_id: str,
        expected_plan: dict[str, str],
        actual_plan: dict[str, str],
    ):
        self.contact_id = contact_id
        self.expected_plan = expected_plan
        self.actual_plan = actual_plan
        super().__init__(
            "ledger_transactions",
            None,
            f"allocation plan for contact {contact_id} is stale: "
            f"expected {expected_plan}, remote {actual_plan}",
        )


class BackdatedWriteError(ConflictError):
    """Write dated inside a month already covered by a snapshot."""

    code: str = "BACKDATED_WRITE"

    def __init__(self, table: str, record_id: str, record_date: Any, boundary: Any):
        self.record_date = record_date
        self.boundary = boundary
        super().__init__(
            table,
            record_id,
            f"date {record_date} precedes snapshot boundary {boundary}",
        )


# Network


class NetworkError(LedgerKernelError):
    """Transient connectivity failure. Retried with bounded backoff."""

    code: str = "NETWORK_UNAVAILABLE"
    retryable: bool = True

    def __init__(self, operation: str, detail: str = ""):
        self.operation = operation
        self.detail = detail
        super().__init__(
            f"Network unavailable during {operation}" + (f": {detail}" if detail else "")
        )


# Integrity


class LedgerIntegrityError(LedgerKernelError):
    """An invariant would be violated. The operation is aborted, not partially applied."""

    code: str = "INTEGRITY_VIOLATION"

    def __init__(self, invariant: str, detail: str):
        self.invariant = invariant
        self.detail = detail
        super().__init__(f"Integrity violation ({invariant}): {detail}")


class OverpaymentError(LedgerIntegrityError):
    """paid_amount would exceed amount on a payable/receivable."""

    code: str = "OVERPAYMENT"

    def __init__(self, ledger_id: str, amount: Any, paid_amount: Any):
        self.ledger_id = ledger_id
        self.amount = amount
        self.paid_amount = paid_amount
        super().__init__(
            "paid_amount <= amount",
            f"ledger entry {ledger_id}: paid {paid_amount} exceeds amount {amount}",
        )


# Sync queue


class SyncQueueError(LedgerKernelError):
    """Base exception for sync queue errors."""

    code: str = "SYNC_QUEUE_ERROR"


class QueueEntryNotFoundError(SyncQueueError):
    """Queue entry with given id does not exist (already applied or cancelled)."""

    code: str = "QUEUE_ENTRY_NOT_FOUND"

    def __init__(self, entry_id: str):
        self.entry_id = entry_id
        super().__init__(f"Sync queue entry not found: {entry_id}")


class QueueEntryInFlightError(SyncQueueError):
    """Entry is Sending; the caller must wait for Applied or Failed."""

    code: str = "QUEUE_ENTRY_IN_FLIGHT"

    def __init__(self, entry_id: str, status: str):
        self.entry_id = entry_id
        self.status = status
        super().__init__(
            f"Sync queue entry {entry_id} is {status} and cannot be cancelled"
        )


class RemoteCallError(SyncQueueError):
    """The remote raised something outside the typed hierarchy while replaying an entry."""

    code: str = "REMOTE_CALL_FAILED"

    def __init__(self, entry_id: str, detail: str):
        self.entry_id = entry_id
        self.detail = detail
        super().__init__(f"Remote call for sync entry {entry_id} failed: {detail}")
