"""
ledger_services.snapshot_service -- Monthly balance checkpoints.

Responsibility:
    Produce, cache and invalidate MonthlySnapshot rows.  A snapshot for
    month M is the position built from every non-deleted record dated
    strictly before the first day of M: cash balance, per-bank balances,
    per-item stock weight/value and outstanding receivables/payables.

Architecture position:
    Services -- stateful orchestration over kernel selectors and the
    costing engine.  Runs against the local store on the device and against
    the shared store inside SqlRemoteBackend.

Invariants enforced:
    - One snapshot per month (unique snapshot_month).  A losing concurrent
      creator rolls back its savepoint and returns the winner's row.
    - Only an admin creates or regenerates snapshots; any role reads them.
    - Backdated writes: a write dated before an existing snapshot's month
      either deletes the affected snapshots (INVALIDATE, they are rebuilt
      lazily) or is refused with BackdatedWriteError (REJECT).

Failure modes:
    - AuthorizationError when a viewer needs a snapshot that does not exist.
    - BackdatedWriteError under the REJECT backdate policy.

Audit relevance:
    Snapshot creation, regeneration and invalidation are logged with the
    month and the totals, so a stale checkpoint can always be traced to
    the write that invalidated it.
"""

from __future__ import annotations

import datetime as dt
from collections.abc import Sequence
from dataclasses import dataclass, field
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ledger_engines.costing import InventoryCostingEngine, StockPosition
from ledger_kernel.domain.clock import Clock
from ledger_kernel.domain.enums import BackdatePolicy, OversellPolicy, Role
from ledger_kernel.exceptions import AuthorizationError, BackdatedWriteError
from ledger_kernel.logging_config import get_logger
from ledger_kernel.models.snapshot import MonthlySnapshot
from ledger_kernel.selectors.ledger_selector import LedgerSelector
from ledger_kernel.selectors.transaction_selector import TransactionSelector

logger = get_logger("services.snapshot")

# Tables whose rows move a snapshot's numbers
SNAPSHOT_TABLES = frozenset({
    "financial_transactions",
    "stock_transactions",
    "initial_stock",
    "ledger_transactions",
    "payment_installments",
})


def month_start(day: dt.date) -> dt.date:
    return day.replace(day=1)


def reporting_engine(engine: InventoryCostingEngine) -> InventoryCostingEngine:
    """
    Costing engine for folding history.

    REJECT guards new sales only; history already on record is folded as
    is so that a later deletion of a purchase cannot make reports fail.
    """
    if engine.oversell_policy is not OversellPolicy.REJECT:
        return engine
    return InventoryCostingEngine(OversellPolicy.ALLOW_NEGATIVE, engine.wastage_percentage)


@dataclass(frozen=True)
class SnapshotValues:
    """Computed snapshot content, before persistence."""

    snapshot_month: dt.date
    cash_balance: Decimal
    bank_balances: dict[UUID, Decimal] = field(default_factory=dict)
    stock_items: dict[str, StockPosition] = field(default_factory=dict)
    total_receivables: Decimal = Decimal("0")
    total_payables: Decimal = Decimal("0")


class SnapshotService:
    """
    Monthly snapshot cache.

    Contract:
        Flush-only.  Creation runs inside a savepoint so a unique-constraint
        loss never poisons the caller's transaction.

    Guarantees:
        - ``get_or_create_snapshot`` returns the same row for the same
          month no matter how many callers race.
        - Implements the Local Store's dated-write guard (``check``).

    Non-goals:
        - Does not sync snapshot rows; each store computes its own.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock,
        *,
        role: Role = Role.ADMIN,
        backdate_policy: BackdatePolicy = BackdatePolicy.INVALIDATE,
        costing_engine: InventoryCostingEngine | None = None,
    ):
        self.session = session
        self._clock = clock
        self._role = role
        self._backdate_policy = backdate_policy
        self._costing = reporting_engine(costing_engine or InventoryCostingEngine())

    # =========================================================================
    # Reads
    # =========================================================================

    def get(self, month: dt.date) -> MonthlySnapshot | None:
        return self.session.execute(
            select(MonthlySnapshot).where(MonthlySnapshot.snapshot_month == month_start(month))
        ).scalar_one_or_none()

    def nearest_on_or_before(self, day: dt.date) -> MonthlySnapshot | None:
        """Latest snapshot usable as the opening position for ``day``."""
        return self.session.execute(
            select(MonthlySnapshot)
            .where(MonthlySnapshot.snapshot_month <= day)
            .order_by(MonthlySnapshot.snapshot_month.desc())
            .limit(1)
        ).scalar_one_or_none()

    def list_snapshots(self) -> list[MonthlySnapshot]:
        return list(
            self.session.execute(
                select(MonthlySnapshot).order_by(MonthlySnapshot.snapshot_month)
            ).scalars()
        )

    # =========================================================================
    # Computation
    # =========================================================================

    def compute(self, month: dt.date) -> SnapshotValues:
        """Replay every non-deleted record dated before ``month`` (no writes)."""
        boundary = month_start(month)
        transactions = TransactionSelector(self.session)
        cash, banks = transactions.balances_before(boundary)
        stock = self._costing.fold(events=transactions.stock_events(before=boundary))
        receivables, payables = LedgerSelector(self.session).outstanding_totals(boundary)
        return SnapshotValues(
            snapshot_month=boundary,
            cash_balance=cash,
            bank_balances=banks,
            stock_items=stock,
            total_receivables=receivables,
            total_payables=payables,
        )

    def _to_model(self, values: SnapshotValues) -> MonthlySnapshot:
        return MonthlySnapshot(
            id=uuid4(),
            snapshot_month=values.snapshot_month,
            cash_balance=values.cash_balance,
            bank_balances={str(k): str(v) for k, v in values.bank_balances.items()},
            stock_items={name: pos.as_json() for name, pos in sorted(values.stock_items.items())},
            total_receivables=values.total_receivables,
            total_payables=values.total_payables,
            created_at=self._clock.now(),
        )

    # =========================================================================
    # Writes
    # =========================================================================

    def get_or_create_snapshot(self, month: dt.date) -> MonthlySnapshot:
        """
        Return the snapshot for ``month``, computing it if needed.

        Raises:
            AuthorizationError: The snapshot is missing and the caller is
                not an admin.
        """
        boundary = month_start(month)
        existing = self.get(boundary)
        if existing is not None:
            return existing

        if self._role != Role.ADMIN:
            raise AuthorizationError(self._role.value, "create snapshots")

        snapshot = self._to_model(self.compute(boundary))
        savepoint = self.session.begin_nested()
        try:
            self.session.add(snapshot)
            self.session.flush()
            savepoint.commit()
        except IntegrityError:
            savepoint.rollback()
            winner = self.get(boundary)
            if winner is None:
                raise
            logger.info(
                "snapshot_creation_race_lost",
                extra={"snapshot_month": boundary.isoformat()},
            )
            return winner

        logger.info(
            "snapshot_created",
            extra={
                "snapshot_month": boundary.isoformat(),
                "cash_balance": str(snapshot.cash_balance),
                "bank_count": len(snapshot.bank_balances),
                "item_count": len(snapshot.stock_items),
                "total_receivables": str(snapshot.total_receivables),
                "total_payables": str(snapshot.total_payables),
            },
        )
        return snapshot

    def regenerate(self, month: dt.date) -> MonthlySnapshot:
        """Administrative replacement of one month's snapshot."""
        if self._role != Role.ADMIN:
            raise AuthorizationError(self._role.value, "regenerate snapshots")
        boundary = month_start(month)
        self.session.execute(
            delete(MonthlySnapshot).where(MonthlySnapshot.snapshot_month == boundary)
        )
        logger.warning("snapshot_regenerating", extra={"snapshot_month": boundary.isoformat()})
        return self.get_or_create_snapshot(boundary)

    def invalidate_after(self, day: dt.date) -> int:
        """Delete every snapshot whose month starts after ``day``."""
        result = self.session.execute(
            delete(MonthlySnapshot).where(MonthlySnapshot.snapshot_month > day)
        )
        count = result.rowcount or 0
        if count:
            logger.warning(
                "snapshots_invalidated",
                extra={"from_date": day.isoformat(), "count": count},
            )
        return count

    # =========================================================================
    # Dated-write guard
    # =========================================================================

    def check(self, table: str, record_id: UUID, dates: Sequence[dt.date]) -> None:
        """
        Called by the Local Store before a write touching ``dates``.

        Raises:
            BackdatedWriteError: REJECT policy and a snapshot covers the
                earliest date.
        """
        if table not in SNAPSHOT_TABLES or not dates:
            return
        earliest = min(dates)
        latest = self.session.execute(
            select(MonthlySnapshot.snapshot_month)
            .where(MonthlySnapshot.snapshot_month > earliest)
            .order_by(MonthlySnapshot.snapshot_month.desc())
            .limit(1)
        ).scalar_one_or_none()
        if latest is None:
            return

        if self._backdate_policy is BackdatePolicy.REJECT:
            logger.warning(
                "backdated_write_rejected",
                extra={
                    "table": table,
                    "record_id": str(record_id),
                    "record_date": earliest.isoformat(),
                    "boundary": latest.isoformat(),
                },
            )
            raise BackdatedWriteError(table, str(record_id), earliest, latest)

        self.invalidate_after(earliest)
