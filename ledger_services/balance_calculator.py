"""
ledger_services.balance_calculator -- Running balances over checkpoints.

Responsibility:
    Compose the nearest monthly snapshot (or the full history when there is
    none) with the transactions in a date range to produce running account
    balances, and summarise the current position across accounts, ledgers
    and stock.

Architecture position:
    Services -- read-only orchestration over selectors, the snapshot cache
    and the balance/costing engines.

Invariants enforced:
    - Opening balance for a range starting on D = snapshot for the latest
      month starting on or before D plus every movement from that month up
      to D (exclusive); with no snapshot, every movement before D.
    - Both paths give the same number: snapshots hold exactly what a full
      replay up to their month produces.
    - In-range movements fold in (date, created_at, id) order.

Failure modes:
    - ValidationError for an account selector that is neither "cash" nor a
      bank id, or a range whose start is after its end.
"""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field
from decimal import Decimal
from uuid import UUID

from sqlalchemy.orm import Session

from ledger_engines.balances import BalanceFoldEngine, BalanceRow
from ledger_engines.costing import InventoryCostingEngine, StockPosition
from ledger_kernel.domain.clock import Clock
from ledger_kernel.exceptions import ValidationError
from ledger_kernel.logging_config import get_logger
from ledger_kernel.selectors.ledger_selector import LedgerSelector
from ledger_kernel.selectors.transaction_selector import TransactionSelector, parse_account
from ledger_services.snapshot_service import SnapshotService, reporting_engine

logger = get_logger("services.balance_calculator")

ONE_DAY = dt.timedelta(days=1)


@dataclass(frozen=True)
class BalanceStatement:
    """Running balances of one account over a date range."""

    account: str
    date_from: dt.date | None
    date_to: dt.date | None
    opening_balance: Decimal
    rows: tuple[BalanceRow, ...]

    @property
    def closing_balance(self) -> Decimal:
        return self.rows[-1].balance if self.rows else self.opening_balance


@dataclass(frozen=True)
class Position:
    """Cross-account position as of the end of ``as_of``."""

    as_of: dt.date
    cash: Decimal
    banks: dict[UUID, Decimal] = field(default_factory=dict)
    total_receivables: Decimal = Decimal("0")
    total_payables: Decimal = Decimal("0")
    stock: dict[str, StockPosition] = field(default_factory=dict)

    @property
    def stock_value(self) -> Decimal:
        return sum((p.value for p in self.stock.values()), Decimal("0"))


class BalanceCalculator:
    """
    Account balance queries.

    Contract:
        Read-only.  Never creates snapshots; it only uses the ones that
        exist, so it is safe for viewers.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock,
        *,
        snapshots: SnapshotService | None = None,
        costing_engine: InventoryCostingEngine | None = None,
    ):
        self.session = session
        self._clock = clock
        self._snapshots = snapshots or SnapshotService(session, clock)
        self._costing = reporting_engine(costing_engine or InventoryCostingEngine())
        self._fold = BalanceFoldEngine()
        self._transactions = TransactionSelector(session)

    def opening_balance(
        self, account: str | UUID, day: dt.date, *, use_snapshots: bool = True
    ) -> Decimal:
        """Balance of ``account`` at the start of ``day``."""
        kind, bank_id = parse_account(account)
        snapshot = self._snapshots.nearest_on_or_before(day) if use_snapshots else None

        if snapshot is None:
            movements = self._transactions.movements(account, before=day)
            return self._fold.closing(Decimal("0"), movements)

        base = snapshot.cash_balance if bank_id is None else snapshot.bank_balance(bank_id)
        movements = self._transactions.movements(
            account, date_from=snapshot.snapshot_month, before=day
        )
        logger.debug(
            "opening_from_snapshot",
            extra={
                "account": kind.value,
                "snapshot_month": snapshot.snapshot_month.isoformat(),
                "incremental_count": len(movements),
            },
        )
        return self._fold.closing(base, movements)

    def running_balances(
        self,
        account: str | UUID,
        date_from: dt.date | None = None,
        date_to: dt.date | None = None,
    ) -> BalanceStatement:
        """
        Ordered (transaction id, balance) rows for ``account`` in the range.

        Raises:
            ValidationError: date_from after date_to, or a bad account.
        """
        if date_from is not None and date_to is not None and date_from > date_to:
            raise ValidationError("date_from", "must not be after date_to", date_from)

        opening = (
            self.opening_balance(account, date_from) if date_from is not None else Decimal("0")
        )
        movements = self._transactions.movements(
            account, date_from=date_from, date_to=date_to
        )
        rows = self._fold.fold(opening=opening, movements=movements)
        return BalanceStatement(
            account=str(account),
            date_from=date_from,
            date_to=date_to,
            opening_balance=opening,
            rows=rows,
        )

    def balance_as_of(self, account: str | UUID, day: dt.date) -> Decimal:
        """Balance at the end of ``day``."""
        return self.opening_balance(account, day + ONE_DAY)

    def stock_positions(self, as_of: dt.date | None = None) -> dict[str, StockPosition]:
        """Per-item weight and value at the end of ``as_of`` (default today)."""
        as_of = as_of or self._clock.today()
        snapshot = self._snapshots.nearest_on_or_before(as_of + ONE_DAY)
        events = self._transactions.stock_events(through=as_of)
        if snapshot is None:
            return self._costing.fold(events=events)

        opening = {
            name: StockPosition(name, Decimal(v["weight"]), Decimal(v["value"]))
            for name, v in snapshot.stock_items.items()
        }
        incremental = [e for e in events if e.date >= snapshot.snapshot_month]
        return self._costing.fold(events=incremental, opening=opening)

    def current_position(self, as_of: dt.date | None = None) -> Position:
        """Cash, every bank, outstanding ledgers and stock at the end of ``as_of``."""
        as_of = as_of or self._clock.today()
        banks = {
            bank_id: self.balance_as_of(bank_id, as_of)
            for bank_id in self._transactions.bank_ids()
        }
        receivables, payables = LedgerSelector(self.session).outstanding_totals(as_of + ONE_DAY)
        position = Position(
            as_of=as_of,
            cash=self.balance_as_of("cash", as_of),
            banks=banks,
            total_receivables=receivables,
            total_payables=payables,
            stock=self.stock_positions(as_of),
        )
        logger.info(
            "position_computed",
            extra={
                "as_of": as_of.isoformat(),
                "cash": str(position.cash),
                "bank_count": len(banks),
                "item_count": len(position.stock),
            },
        )
        return position
