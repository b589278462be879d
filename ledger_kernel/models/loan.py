"""
Module: ledger_kernel.models.loan
Responsibility: Loans borrowed from or lent to contacts, and their repayments.

Invariants enforced:
    - A loan moves to status "paid" once the sum of its payments reaches the
      principal (LoanService.record_payment).
    - Each LoanPayment points at the FinancialTransaction that moved the money.
"""

from __future__ import annotations

import datetime as dt
from decimal import Decimal
from uuid import UUID

from sqlalchemy import Date, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from ledger_kernel.db.base import DecimalString, TrackedBase, UUIDString


class Loan(TrackedBase):
    """A loan. ``kind`` payable = borrowed, receivable = lent."""

    __tablename__ = "loans"

    __table_args__ = (
        Index("idx_loan_contact", "contact_id"),
    )

    contact_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("contacts.id", ondelete="SET NULL"), nullable=True
    )
    kind: Mapped[str] = mapped_column(String(12), nullable=False)
    principal: Mapped[Decimal] = mapped_column(DecimalString(), nullable=False)
    interest_rate: Mapped[Decimal] = mapped_column(DecimalString(), nullable=False)
    issue_date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    due_date: Mapped[dt.date | None] = mapped_column(Date, nullable=True)

    # active | paid (domain.enums.LoanStatus)
    status: Mapped[str] = mapped_column(String(10), nullable=False)


class LoanPayment(TrackedBase):
    """One repayment of a loan."""

    __tablename__ = "loan_payments"

    __table_args__ = (
        Index("idx_loan_payment_loan", "loan_id"),
    )

    loan_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("loans.id", ondelete="CASCADE"), nullable=False
    )
    amount: Mapped[Decimal] = mapped_column(DecimalString(), nullable=False)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    financial_transaction_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("financial_transactions.id", ondelete="SET NULL"),
        nullable=True,
    )
