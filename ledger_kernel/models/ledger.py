"""
Module: ledger_kernel.models.ledger
Responsibility: Payables, receivables and advance credits per contact, and
    the installments that settle them.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - 0 <= paid_amount <= amount for payable/receivable entries
      (checked by PaymentAllocator and LocalStore before flush,
      OverpaymentError otherwise, and by a CHECK constraint).
    - Advance entries store amount as a NEGATIVE number (unused credit),
      paid_amount 0 and status "paid".  Consuming credit moves amount toward
      zero; an advance at zero stays active and drops out of credit queries.
    - status is derived from (amount, paid_amount), never set freely.
    - Installments are immutable (LocalStore rejects updates) and sum to
      their entry's paid_amount.
    - Installments cascade with their ledger entry on purge.
"""

from __future__ import annotations

import datetime as dt
from decimal import Decimal
from uuid import UUID

from sqlalchemy import CheckConstraint, Date, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from ledger_kernel.db.base import DecimalString, SoftDeleteMixin, TrackedBase, UUIDString


class LedgerTransaction(SoftDeleteMixin, TrackedBase):
    """
    An obligation (payable/receivable) or an advance credit for a contact.

    Guarantees:
        - (contact_id, kind, status, date, created_at) index serves the FIFO
          outstanding-entries query.
    """

    __tablename__ = "ledger_transactions"

    # DecimalString is text on SQLite; compare numerically.
    __table_args__ = (
        Index(
            "idx_ledger_contact_outstanding",
            "contact_id", "kind", "status", "date", "created_at",
        ),
        CheckConstraint(
            "kind IN ('payable', 'receivable', 'advance')",
            name="ck_ledger_transactions_valid_kind",
        ),
        CheckConstraint(
            "status IN ('unpaid', 'partially_paid', 'paid')",
            name="ck_ledger_transactions_valid_status",
        ),
        CheckConstraint(
            "kind = 'advance' OR ("
            "CAST(paid_amount AS NUMERIC) >= 0 "
            "AND CAST(paid_amount AS NUMERIC) <= CAST(amount AS NUMERIC))",
            name="ck_ledger_transactions_paid_within_amount",
        ),
        CheckConstraint(
            "kind <> 'advance' OR ("
            "CAST(amount AS NUMERIC) <= 0 AND CAST(paid_amount AS NUMERIC) = 0)",
            name="ck_ledger_transactions_advance_credit",
        ),
    )

    date: Mapped[dt.date] = mapped_column(Date, nullable=False)

    # payable | receivable | advance (domain.enums.LedgerKind)
    kind: Mapped[str] = mapped_column(String(12), nullable=False)

    description: Mapped[str] = mapped_column(String(1000), nullable=False, default="")

    amount: Mapped[Decimal] = mapped_column(DecimalString(), nullable=False)
    paid_amount: Mapped[Decimal] = mapped_column(DecimalString(), nullable=False)

    # unpaid | partially_paid | paid (domain.enums.LedgerStatus)
    status: Mapped[str] = mapped_column(String(16), nullable=False)

    contact_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("contacts.id", ondelete="SET NULL"), nullable=True
    )

    @property
    def outstanding(self) -> Decimal:
        return self.amount - self.paid_amount

    def __repr__(self) -> str:
        return (
            f"<LedgerTransaction {self.id}: {self.kind} {self.amount} "
            f"paid={self.paid_amount} {self.status}>"
        )


class PaymentInstallment(TrackedBase):
    """One payment applied to one ledger entry. Immutable once created."""

    __tablename__ = "payment_installments"

    __table_args__ = (
        Index("idx_installment_ledger", "ledger_transaction_id"),
        CheckConstraint(
            "CAST(amount AS NUMERIC) > 0",
            name="ck_payment_installments_positive_amount",
        ),
        CheckConstraint(
            "payment_method IN ('cash', 'bank')",
            name="ck_payment_installments_valid_method",
        ),
    )

    ledger_transaction_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("ledger_transactions.id", ondelete="CASCADE"),
        nullable=False,
    )

    amount: Mapped[Decimal] = mapped_column(DecimalString(), nullable=False)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)

    # cash | bank (domain.enums.PaymentMethod)
    payment_method: Mapped[str] = mapped_column(String(10), nullable=False)
