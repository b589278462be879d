"""
Module: ledger_kernel.models.stock
Responsibility: Stock purchases/sales and opening stock.  The weighted-average
    cost basis is derived from these rows by the inventory costing engine;
    nothing here stores an average.

Invariants enforced:
    - weight >= 0 and price_per_unit >= 0 (validated before write).
    - actual_amount = weight * price_per_unit on create and on every update.
"""

from __future__ import annotations

import datetime as dt
from decimal import Decimal
from uuid import UUID

from sqlalchemy import Date, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from ledger_kernel.db.base import DecimalString, SoftDeleteMixin, TrackedBase, UUIDString


class StockTransaction(SoftDeleteMixin, TrackedBase):
    """One purchase or sale of a stock item."""

    __tablename__ = "stock_transactions"

    __table_args__ = (
        Index("idx_stock_tx_item_date", "item_name", "date", "created_at"),
        Index("idx_stock_tx_contact", "contact_id"),
    )

    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    item_name: Mapped[str] = mapped_column(String(200), nullable=False)

    # purchase | sale (domain.enums.StockKind)
    kind: Mapped[str] = mapped_column(String(10), nullable=False)

    weight: Mapped[Decimal] = mapped_column(DecimalString(), nullable=False)
    price_per_unit: Mapped[Decimal] = mapped_column(DecimalString(), nullable=False)

    expected_amount: Mapped[Decimal] = mapped_column(DecimalString(), nullable=False)
    actual_amount: Mapped[Decimal] = mapped_column(DecimalString(), nullable=False)
    difference: Mapped[Decimal] = mapped_column(DecimalString(), nullable=False)

    # cash | bank | credit (domain.enums.PaymentMethod)
    payment_method: Mapped[str] = mapped_column(String(10), nullable=False)

    bank_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("banks.id"), nullable=True
    )
    contact_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("contacts.id", ondelete="SET NULL"), nullable=True
    )
    description: Mapped[str] = mapped_column(String(1000), nullable=False, default="")

    def __repr__(self) -> str:
        return (
            f"<StockTransaction {self.id}: {self.date} {self.kind} "
            f"{self.item_name} {self.weight} @ {self.price_per_unit}>"
        )


class InitialStockItem(TrackedBase):
    """Opening stock, folded before any stock transaction as a purchase."""

    __tablename__ = "initial_stock"

    item_name: Mapped[str] = mapped_column(String(200), nullable=False, unique=True)
    weight: Mapped[Decimal] = mapped_column(DecimalString(), nullable=False)
    price_per_unit: Mapped[Decimal] = mapped_column(DecimalString(), nullable=False)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
