"""
Module: ledger_kernel.selectors.ledger_selector
Responsibility: Read-only queries over accounts payable/receivable: the
    FIFO list of open entries for a contact, the contact's advance credit,
    and outstanding totals as of a date.
Architecture position: Kernel > Selectors.

Invariants enforced:
    - FIFO order is (date, created_at, id) ascending, identical on device and
      server.
    - Deleted entries are never open and never carry credit.
    - Outstanding as of a date counts only installments dated before it, so
      snapshot totals do not depend on when a payment was keyed in.
"""

from __future__ import annotations

import datetime as dt
from collections import defaultdict
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select

from ledger_kernel.domain.dtos import OpenItem
from ledger_kernel.domain.enums import LedgerKind, LedgerStatus
from ledger_kernel.domain.lifecycle import LifecycleState
from ledger_kernel.models.ledger import LedgerTransaction, PaymentInstallment
from ledger_kernel.selectors.base import BaseSelector

_FIFO_ORDER = (
    LedgerTransaction.date,
    LedgerTransaction.created_at,
    LedgerTransaction.id,
)


class LedgerSelector(BaseSelector):
    """Selector for ledger entries and their installments."""

    def _active(self):
        return select(LedgerTransaction).where(
            LedgerTransaction.lifecycle_state == LifecycleState.ACTIVE.value
        )

    def open_items(self, contact_id: UUID, kind: LedgerKind) -> list[OpenItem]:
        """Unpaid and partially paid entries of ``kind`` for a contact, oldest first."""
        stmt = (
            self._active()
            .where(
                LedgerTransaction.contact_id == contact_id,
                LedgerTransaction.kind == kind.value,
                LedgerTransaction.status.in_(
                    [LedgerStatus.UNPAID.value, LedgerStatus.PARTIALLY_PAID.value]
                ),
            )
            .order_by(*_FIFO_ORDER)
        )
        return [OpenItem.from_model(e) for e in self.session.execute(stmt).scalars()]

    def advances(self, contact_id: UUID) -> list[OpenItem]:
        """Advance entries with unused credit (negative amount), oldest first."""
        stmt = (
            self._active()
            .where(
                LedgerTransaction.contact_id == contact_id,
                LedgerTransaction.kind == LedgerKind.ADVANCE.value,
            )
            .order_by(*_FIFO_ORDER)
        )
        return [
            OpenItem.from_model(e)
            for e in self.session.execute(stmt).scalars()
            if e.amount < 0
        ]

    def available_credit(self, contact_id: UUID) -> Decimal:
        """Unused advance credit of a contact, as a positive amount."""
        return -sum((a.amount for a in self.advances(contact_id)), Decimal("0"))

    def outstanding_totals(
        self, before: dt.date | None = None
    ) -> tuple[Decimal, Decimal]:
        """
        (total_receivables, total_payables).

        With ``before`` set, only entries dated before it count, each reduced
        by its installments dated before it.  Advances are credit, not
        obligations, and are excluded.
        """
        stmt = self._active().where(
            LedgerTransaction.kind.in_(
                [LedgerKind.RECEIVABLE.value, LedgerKind.PAYABLE.value]
            )
        )
        if before is not None:
            stmt = stmt.where(LedgerTransaction.date < before)
        entries = list(self.session.execute(stmt).scalars())

        paid: dict[UUID, Decimal] = defaultdict(lambda: Decimal("0"))
        if before is not None and entries:
            rows = self.session.execute(
                select(PaymentInstallment.ledger_transaction_id, PaymentInstallment.amount)
                .where(PaymentInstallment.date < before)
            ).all()
            for ledger_id, amount in rows:
                paid[ledger_id] += amount

        receivables = Decimal("0")
        payables = Decimal("0")
        for entry in entries:
            settled = paid[entry.id] if before is not None else entry.paid_amount
            outstanding = entry.amount - settled
            if entry.kind == LedgerKind.RECEIVABLE.value:
                receivables += outstanding
            else:
                payables += outstanding
        return receivables, payables

    def installments(self, ledger_id: UUID) -> list[PaymentInstallment]:
        """Installments of one entry in payment order."""
        return list(
            self.session.execute(
                select(PaymentInstallment)
                .where(PaymentInstallment.ledger_transaction_id == ledger_id)
                .order_by(
                    PaymentInstallment.date,
                    PaymentInstallment.created_at,
                    PaymentInstallment.id,
                )
            ).scalars()
        )
