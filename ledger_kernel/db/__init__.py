"""Database layer - engine, base classes, column types and record serialization."""

from ledger_kernel.db.base import (
    UUID,
    Base,
    DecimalString,
    SoftDeleteMixin,
    TrackedBase,
    UTCDateTime,
    UUIDString,
)
from ledger_kernel.db.engine import Database
from ledger_kernel.db.types import Currency, Money, Sequence, Weight

__all__ = [
    "Database",
    "Base",
    "TrackedBase",
    "SoftDeleteMixin",
    "UUIDString",
    "DecimalString",
    "UTCDateTime",
    "UUID",
    "Money",
    "Weight",
    "Currency",
    "Sequence",
]
