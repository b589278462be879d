"""
Module: ledger_kernel.models.financial
Responsibility: ORM persistence for cash and bank transactions, the rows every
    balance is folded from.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - difference = actual_amount - expected_amount (maintained by LocalStore on
      every create/update).
    - bank_id is set iff account == "bank" (validated by the action layer).
    - (account, date, created_at) index supports the ordered balance fold.
    - Soft-deleted rows stay in the table for audit and restore but are
      excluded from balances.

Failure modes:
    - IntegrityError if a referenced contact/bank/stock/loan/advance row does
      not exist yet (remote replay out of order is prevented by the queue).
"""

from __future__ import annotations

import datetime as dt
from decimal import Decimal
from uuid import UUID

from sqlalchemy import Date, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from ledger_kernel.db.base import DecimalString, SoftDeleteMixin, TrackedBase, UUIDString


class FinancialTransaction(SoftDeleteMixin, TrackedBase):
    """
    A cash or bank movement.

    Contract:
        ``actual_amount`` is what moved; ``expected_amount`` is what was
        invoiced or quoted.  Balances use ``actual_amount`` signed by
        ``direction``.

    Non-goals:
        - Does not store a running balance; balances are always derived
          (BalanceCalculator) or checkpointed (MonthlySnapshot).
    """

    __tablename__ = "financial_transactions"

    __table_args__ = (
        Index("idx_fin_tx_account_date", "account", "date", "created_at"),
        Index("idx_fin_tx_bank", "bank_id"),
        Index("idx_fin_tx_contact", "contact_id"),
        Index("idx_fin_tx_category", "category"),
    )

    date: Mapped[dt.date] = mapped_column(Date, nullable=False)

    # cash | bank (domain.enums.Account)
    account: Mapped[str] = mapped_column(String(10), nullable=False)

    bank_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("banks.id"), nullable=True
    )

    # in | out (domain.enums.Direction)
    direction: Mapped[str] = mapped_column(String(3), nullable=False)

    category: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str] = mapped_column(String(1000), nullable=False, default="")

    expected_amount: Mapped[Decimal] = mapped_column(DecimalString(), nullable=False)
    actual_amount: Mapped[Decimal] = mapped_column(DecimalString(), nullable=False)
    difference: Mapped[Decimal] = mapped_column(DecimalString(), nullable=False)

    contact_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("contacts.id", ondelete="SET NULL"), nullable=True
    )
    linked_stock_tx_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("stock_transactions.id", ondelete="SET NULL"),
        nullable=True,
    )
    linked_loan_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("loans.id", ondelete="SET NULL"), nullable=True
    )
    advance_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("ledger_transactions.id", ondelete="SET NULL"),
        nullable=True,
    )

    @property
    def signed_amount(self) -> Decimal:
        """actual_amount with the sign of its direction."""
        if self.direction == "in":
            return self.actual_amount
        return -self.actual_amount

    def __repr__(self) -> str:
        return (
            f"<FinancialTransaction {self.id}: {self.date} {self.account} "
            f"{self.direction} {self.actual_amount} [{self.category}]>"
        )
