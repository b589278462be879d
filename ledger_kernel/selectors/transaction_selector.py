"""
Module: ledger_kernel.selectors.transaction_selector
Responsibility: Read-only queries over cash/bank and stock transactions,
    returned as the DTOs the balance fold and costing engine consume.
Architecture position: Kernel > Selectors.

Invariants enforced:
    - Rows come back in (date, created_at, id) order.
    - Deleted transactions are excluded.
    - Opening stock (initial_stock) is returned as purchase events.
"""

from __future__ import annotations

import datetime as dt
from collections import defaultdict
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select

from ledger_kernel.domain.dtos import Movement, StockEvent
from ledger_kernel.domain.enums import Account
from ledger_kernel.domain.lifecycle import LifecycleState
from ledger_kernel.exceptions import ValidationError
from ledger_kernel.models.contact import Bank
from ledger_kernel.models.financial import FinancialTransaction
from ledger_kernel.models.stock import InitialStockItem, StockTransaction
from ledger_kernel.selectors.base import BaseSelector

CASH = "cash"


def parse_account(selector: str | UUID) -> tuple[Account, UUID | None]:
    """
    ``"cash"`` -> (CASH, None); a bank id (UUID or its string) -> (BANK, id).

    Raises:
        ValidationError: Neither "cash" nor a UUID.
    """
    if isinstance(selector, UUID):
        return Account.BANK, selector
    if selector == CASH:
        return Account.CASH, None
    try:
        return Account.BANK, UUID(str(selector))
    except ValueError as exc:
        raise ValidationError("account", "must be 'cash' or a bank id", selector) from exc


class TransactionSelector(BaseSelector):
    """Selector for financial and stock transactions."""

    def movements(
        self,
        account: str | UUID,
        *,
        date_from: dt.date | None = None,
        date_to: dt.date | None = None,
        before: dt.date | None = None,
    ) -> list[Movement]:
        """Signed movements of one account, in fold order."""
        kind, bank_id = parse_account(account)
        stmt = select(FinancialTransaction).where(
            FinancialTransaction.lifecycle_state == LifecycleState.ACTIVE.value,
            FinancialTransaction.account == kind.value,
        )
        if bank_id is not None:
            stmt = stmt.where(FinancialTransaction.bank_id == bank_id)
        if date_from is not None:
            stmt = stmt.where(FinancialTransaction.date >= date_from)
        if date_to is not None:
            stmt = stmt.where(FinancialTransaction.date <= date_to)
        if before is not None:
            stmt = stmt.where(FinancialTransaction.date < before)
        stmt = stmt.order_by(
            FinancialTransaction.date,
            FinancialTransaction.created_at,
            FinancialTransaction.id,
        )
        return [Movement.from_model(tx) for tx in self.session.execute(stmt).scalars()]

    def balances_before(self, before: dt.date) -> tuple[Decimal, dict[UUID, Decimal]]:
        """Cash balance and per-bank balances from every transaction dated before ``before``."""
        cash = Decimal("0")
        banks: dict[UUID, Decimal] = defaultdict(lambda: Decimal("0"))
        for bank_id in self.bank_ids():
            banks[bank_id] = Decimal("0")

        stmt = select(FinancialTransaction).where(
            FinancialTransaction.lifecycle_state == LifecycleState.ACTIVE.value,
            FinancialTransaction.date < before,
        )
        for tx in self.session.execute(stmt).scalars():
            amount = Movement.from_model(tx).amount
            if tx.account == Account.CASH.value:
                cash += amount
            elif tx.bank_id is not None:
                banks[tx.bank_id] += amount
        return cash, dict(banks)

    def bank_ids(self) -> list[UUID]:
        return list(self.session.execute(select(Bank.id).order_by(Bank.name)).scalars())

    def stock_events(
        self,
        *,
        before: dt.date | None = None,
        through: dt.date | None = None,
        item_name: str | None = None,
    ) -> list[StockEvent]:
        """Opening stock plus stock transactions, in costing order."""
        stmt = select(StockTransaction).where(
            StockTransaction.lifecycle_state == LifecycleState.ACTIVE.value
        )
        initial = select(InitialStockItem)
        if before is not None:
            stmt = stmt.where(StockTransaction.date < before)
            initial = initial.where(InitialStockItem.date < before)
        if through is not None:
            stmt = stmt.where(StockTransaction.date <= through)
            initial = initial.where(InitialStockItem.date <= through)
        if item_name is not None:
            stmt = stmt.where(StockTransaction.item_name == item_name)
            initial = initial.where(InitialStockItem.item_name == item_name)

        events = [StockEvent.from_initial(i) for i in self.session.execute(initial).scalars()]
        events.extend(StockEvent.from_model(tx) for tx in self.session.execute(stmt).scalars())
        events.sort(key=lambda e: e.sort_key)
        return events
