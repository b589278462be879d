"""Value enums shared by models, engines and services."""

from __future__ import annotations

from enum import Enum


class Account(str, Enum):
    """Where money sits."""

    CASH = "cash"
    BANK = "bank"


class Direction(str, Enum):
    """Money into or out of the account."""

    IN = "in"
    OUT = "out"


class StockKind(str, Enum):
    PURCHASE = "purchase"
    SALE = "sale"


class PaymentMethod(str, Enum):
    CASH = "cash"
    BANK = "bank"
    CREDIT = "credit"


class LedgerKind(str, Enum):
    """Payable = we owe the contact; receivable = the contact owes us."""

    PAYABLE = "payable"
    RECEIVABLE = "receivable"
    ADVANCE = "advance"


class LedgerStatus(str, Enum):
    UNPAID = "unpaid"
    PARTIALLY_PAID = "partially_paid"
    PAID = "paid"


class ContactKind(str, Enum):
    VENDOR = "vendor"
    CLIENT = "client"
    BOTH = "both"


class LoanKind(str, Enum):
    """Payable = money borrowed; receivable = money lent."""

    PAYABLE = "payable"
    RECEIVABLE = "receivable"


class LoanStatus(str, Enum):
    ACTIVE = "active"
    PAID = "paid"


class Role(str, Enum):
    """Remote roles. Viewers are read-only."""

    ADMIN = "admin"
    VIEWER = "viewer"


class QueueStatus(str, Enum):
    """Sync queue entry state. APPLIED entries are deleted, never stored."""

    PENDING = "pending"
    SENDING = "sending"
    APPLIED = "applied"
    FAILED = "failed"


class SyncAction(str, Enum):
    """Remote operation a queue entry replays."""

    CREATE = "create"
    UPDATE = "update"
    SOFT_DELETE = "soft_delete"
    RESTORE = "restore"
    PURGE = "purge"
    ALLOCATE_PAYMENT = "allocate_payment"
    APPLY_CREDIT = "apply_credit"


class OversellPolicy(str, Enum):
    """What a sale larger than the available weight does."""

    REJECT = "reject"
    CLAMP = "clamp"
    ALLOW_NEGATIVE = "allow_negative"


class BackdatePolicy(str, Enum):
    """What a write dated inside an already-snapshotted month does."""

    INVALIDATE = "invalidate"
    REJECT = "reject"
