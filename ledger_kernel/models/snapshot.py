"""
Module: ledger_kernel.models.snapshot
Responsibility: Monthly balance checkpoints.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - snapshot_month is the first day of a month and UNIQUE; the constraint
      is what resolves concurrent creation races (the loser re-reads).
    - A snapshot describes every non-deleted record dated strictly before
      snapshot_month.  It is immutable except through
      SnapshotService.regenerate() or backdate invalidation.
    - Map values are stored as decimal strings inside JSON so no precision
      is lost to JSON floats.
"""

from __future__ import annotations

import datetime as dt
from decimal import Decimal

from sqlalchemy import JSON, Date, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from ledger_kernel.db.base import DecimalString, TrackedBase


class MonthlySnapshot(TrackedBase):
    """Balance position as of the first instant of ``snapshot_month``."""

    __tablename__ = "monthly_snapshots"

    __table_args__ = (
        UniqueConstraint("snapshot_month", name="uq_monthly_snapshot_month"),
    )

    snapshot_month: Mapped[dt.date] = mapped_column(Date, nullable=False)

    cash_balance: Mapped[Decimal] = mapped_column(DecimalString(), nullable=False)

    # {bank_id: "amount"}
    bank_balances: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    # {item_name: {"weight": "w", "value": "v"}}
    stock_items: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    total_receivables: Mapped[Decimal] = mapped_column(DecimalString(), nullable=False)
    total_payables: Mapped[Decimal] = mapped_column(DecimalString(), nullable=False)

    def bank_balance(self, bank_id) -> Decimal:
        return Decimal(self.bank_balances.get(str(bank_id), "0"))

    def __repr__(self) -> str:
        return f"<MonthlySnapshot {self.snapshot_month}: cash={self.cash_balance}>"
