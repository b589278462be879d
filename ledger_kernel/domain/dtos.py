"""
DTOs -- Pure domain data transfer objects.

Responsibility:
    Immutable inputs and outputs of the calculation engines: account
    movements for the balance fold, open ledger items for FIFO allocation,
    stock events for weighted-average costing.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.
    from_model() class methods are boundary converters, called only from
    selectors and services (never from engine logic).

Invariants enforced:
    - Amounts and weights are Decimal, never float.
    - Every DTO carries its ordering key (date, created_at, id), so engines
      can sort deterministically without touching the database.
"""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass
from decimal import Decimal
from typing import Any
from uuid import UUID

from ledger_kernel.domain.enums import Direction, StockKind


@dataclass(frozen=True, slots=True)
class Movement:
    """One money movement on one account: positive in, negative out."""

    id: UUID
    date: dt.date
    created_at: dt.datetime
    amount: Decimal

    @property
    def sort_key(self) -> tuple:
        return (self.date, self.created_at, str(self.id))

    @classmethod
    def from_model(cls, tx: Any) -> Movement:
        amount = tx.actual_amount if tx.direction == Direction.IN.value else -tx.actual_amount
        return cls(id=tx.id, date=tx.date, created_at=tx.created_at, amount=amount)


@dataclass(frozen=True, slots=True)
class OpenItem:
    """
    A ledger entry as seen by the allocator.

    For payables/receivables ``amount`` and ``paid_amount`` are the entry's
    values.  For advances ``amount`` is negative (unused credit).
    """

    id: UUID
    date: dt.date
    created_at: dt.datetime
    amount: Decimal
    paid_amount: Decimal = Decimal("0")

    @property
    def outstanding(self) -> Decimal:
        return self.amount - self.paid_amount

    @property
    def sort_key(self) -> tuple:
        return (self.date, self.created_at, str(self.id))

    @classmethod
    def from_model(cls, entry: Any) -> OpenItem:
        return cls(
            id=entry.id,
            date=entry.date,
            created_at=entry.created_at,
            amount=entry.amount,
            paid_amount=entry.paid_amount,
        )


@dataclass(frozen=True, slots=True)
class StockEvent:
    """A purchase or sale of one item, or an opening position (purchase)."""

    id: UUID
    date: dt.date
    created_at: dt.datetime
    item_name: str
    kind: StockKind
    weight: Decimal
    price_per_unit: Decimal

    def __post_init__(self) -> None:
        if self.weight < 0:
            raise ValueError(f"Stock weight must be non-negative, got {self.weight}")
        if self.price_per_unit < 0:
            raise ValueError(f"Stock price must be non-negative, got {self.price_per_unit}")

    @property
    def sort_key(self) -> tuple:
        return (self.date, self.created_at, str(self.id))

    @classmethod
    def from_model(cls, tx: Any) -> StockEvent:
        return cls(
            id=tx.id,
            date=tx.date,
            created_at=tx.created_at,
            item_name=tx.item_name,
            kind=StockKind(tx.kind),
            weight=tx.weight,
            price_per_unit=tx.price_per_unit,
        )

    @classmethod
    def from_initial(cls, item: Any) -> StockEvent:
        return cls(
            id=item.id,
            date=item.date,
            created_at=item.created_at,
            item_name=item.item_name,
            kind=StockKind.PURCHASE,
            weight=item.weight,
            price_per_unit=item.price_per_unit,
        )
