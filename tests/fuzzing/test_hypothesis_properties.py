"""
Hypothesis-based property tests.

Properties checked:
- Allocation: every unit of a payment is either applied or becomes an
  advance; entries are settled strictly oldest first; nothing is overpaid.
- Advance consumption: consumed credit plus remainder equals the obligation.
- Costing: under REJECT and CLAMP no item's weight ever goes below zero.
- Balance fold: the last running balance equals the closing balance,
  whatever order the movements arrive in.
- Snapshots: an opening balance computed from a snapshot equals a full
  replay of the history.
"""

from datetime import UTC, date, datetime, timedelta
from decimal import Decimal
from uuid import uuid4

import pytest
from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st

from ledger_engines.allocation import PaymentAllocationEngine
from ledger_engines.balances import BalanceFoldEngine
from ledger_engines.costing import InventoryCostingEngine
from ledger_kernel.db.engine import Database
from ledger_kernel.domain.clock import DeterministicClock
from ledger_kernel.domain.dtos import Movement, OpenItem, StockEvent
from ledger_kernel.domain.enums import OversellPolicy, StockKind
from ledger_kernel.exceptions import InsufficientStockError
from ledger_kernel.services.local_store import LocalStore
from ledger_services.balance_calculator import BalanceCalculator
from ledger_services.snapshot_service import SnapshotService

T0 = datetime(2024, 1, 1, tzinfo=UTC)
DAY0 = date(2024, 1, 1)

PROPERTY_SETTINGS = settings(
    max_examples=60,
    deadline=None,
    suppress_health_check=[HealthCheck.too_slow],
)


# =============================================================================
# Strategies
# =============================================================================

cents = st.integers(min_value=1, max_value=10**9).map(lambda c: Decimal(c) / Decimal(100))
days = st.integers(min_value=0, max_value=180)


@st.composite
def open_items(draw, max_size=8):
    items = []
    for _ in range(draw(st.integers(min_value=0, max_value=max_size))):
        amount = draw(cents)
        paid = draw(st.integers(min_value=0, max_value=100)) * amount / Decimal(100)
        items.append(
            OpenItem(
                id=uuid4(),
                date=DAY0 + timedelta(days=draw(days)),
                created_at=T0 + timedelta(seconds=draw(st.integers(0, 10_000))),
                amount=amount,
                paid_amount=paid,
            )
        )
    return items


@st.composite
def advances(draw, max_size=5):
    return [
        OpenItem(
            id=uuid4(),
            date=DAY0 + timedelta(days=draw(days)),
            created_at=T0,
            amount=-draw(cents),
        )
        for _ in range(draw(st.integers(min_value=0, max_value=max_size)))
    ]


@st.composite
def stock_events(draw, max_size=15):
    events = []
    for i in range(draw(st.integers(min_value=1, max_value=max_size))):
        events.append(
            StockEvent(
                id=uuid4(),
                date=DAY0 + timedelta(days=draw(days)),
                created_at=T0 + timedelta(seconds=i),
                item_name=draw(st.sampled_from(["rice", "lentils"])),
                kind=draw(st.sampled_from([StockKind.PURCHASE, StockKind.SALE])),
                weight=Decimal(draw(st.integers(min_value=0, max_value=500_000))) / Decimal(1000),
                price_per_unit=draw(cents),
            )
        )
    return events


@st.composite
def movements(draw, max_size=20):
    return [
        Movement(
            id=uuid4(),
            date=DAY0 + timedelta(days=draw(days)),
            created_at=T0 + timedelta(seconds=i),
            amount=draw(cents) * draw(st.sampled_from([1, -1])),
        )
        for i in range(draw(st.integers(min_value=0, max_value=max_size)))
    ]


# =============================================================================
# Allocation
# =============================================================================


class TestAllocationProperties:

    @PROPERTY_SETTINGS
    @given(amount=cents, items=open_items())
    def test_conservation(self, amount, items):
        plan = PaymentAllocationEngine().allocate(amount=amount, items=items)

        assert plan.total_applied + plan.advance_amount == amount
        assert plan.advance_amount >= 0
        assert all(line.applied > 0 for line in plan.lines)

    @PROPERTY_SETTINGS
    @given(amount=cents, items=open_items())
    def test_no_entry_overpaid(self, amount, items):
        by_id = {item.id: item for item in items}

        plan = PaymentAllocationEngine().allocate(amount=amount, items=items)

        for line in plan.lines:
            assert line.paid_amount <= by_id[line.entry_id].amount

    @PROPERTY_SETTINGS
    @given(amount=cents, items=open_items())
    def test_oldest_first(self, amount, items):
        by_id = {item.id: item for item in items}

        plan = PaymentAllocationEngine().allocate(amount=amount, items=items)

        keys = [by_id[line.entry_id].sort_key for line in plan.lines]
        assert keys == sorted(keys)
        for line in plan.lines[:-1]:
            assert line.paid_amount == by_id[line.entry_id].amount
        if plan.advance_amount > 0:
            assert sum((i.outstanding for i in items), Decimal("0")) == plan.total_applied

    @PROPERTY_SETTINGS
    @given(obligation=cents, credit=advances())
    def test_consumption_conservation(self, obligation, credit):
        plan = PaymentAllocationEngine().consume_advances(obligation=obligation, advances=credit)

        assert plan.total_consumed + plan.remainder == obligation
        assert all(line.amount <= 0 for line in plan.lines)
        if plan.remainder > 0:
            assert plan.total_consumed == sum((-a.amount for a in credit), Decimal("0"))


# =============================================================================
# Costing
# =============================================================================


class TestCostingProperties:

    @PROPERTY_SETTINGS
    @given(events=stock_events())
    def test_reject_never_goes_negative(self, events):
        engine = InventoryCostingEngine(OversellPolicy.REJECT)
        try:
            positions = engine.fold(events=events)
        except InsufficientStockError as exc:
            assert exc.requested > exc.available
            return
        assert all(p.weight >= 0 for p in positions.values())

    @PROPERTY_SETTINGS
    @given(events=stock_events())
    def test_clamp_never_goes_negative(self, events):
        positions = InventoryCostingEngine(OversellPolicy.CLAMP).fold(events=events)
        assert all(p.weight >= 0 for p in positions.values())

    @PROPERTY_SETTINGS
    @given(events=stock_events())
    def test_purchases_only_weight_is_sum(self, events):
        purchases = [e for e in events if e.kind is StockKind.PURCHASE]

        positions = InventoryCostingEngine().fold(events=purchases)

        for name, position in positions.items():
            expected = sum((e.weight for e in purchases if e.item_name == name), Decimal("0"))
            assert position.weight == expected


# =============================================================================
# Balances
# =============================================================================


class TestBalanceProperties:

    @PROPERTY_SETTINGS
    @given(opening=cents, rows=movements())
    def test_last_row_is_closing(self, opening, rows):
        engine = BalanceFoldEngine()

        folded = engine.fold(opening=opening, movements=rows)

        closing = engine.closing(opening, rows)
        assert (folded[-1].balance if folded else opening) == closing

    @PROPERTY_SETTINGS
    @given(opening=cents, rows=movements(), data=st.data())
    def test_input_order_irrelevant(self, opening, rows, data):
        shuffled = data.draw(st.permutations(rows))
        engine = BalanceFoldEngine()

        assert engine.fold(opening=opening, movements=shuffled) == engine.fold(
            opening=opening, movements=rows
        )


# =============================================================================
# Snapshots
# =============================================================================


@pytest.mark.slow
class TestSnapshotProperties:

    @settings(max_examples=25, deadline=None, suppress_health_check=[HealthCheck.too_slow])
    @given(
        history=st.lists(
            st.tuples(days, cents, st.sampled_from(["in", "out"])), min_size=1, max_size=12
        ),
        snapshot_months=st.lists(st.integers(min_value=2, max_value=6), max_size=3),
        probe=days,
    )
    def test_snapshot_opening_equals_replay(self, history, snapshot_months, probe):
        database = Database("sqlite://")
        database.create_tables()
        clock = DeterministicClock(datetime(2024, 8, 1, tzinfo=UTC))
        try:
            with database.session_scope() as session:
                store = LocalStore(session, clock)
                for offset, amount, direction in history:
                    clock.advance(1)
                    store.create(
                        "financial_transactions",
                        {
                            "date": DAY0 + timedelta(days=offset),
                            "account": "cash",
                            "direction": direction,
                            "category": "Sales",
                            "expected_amount": amount,
                            "actual_amount": amount,
                        },
                    )
                snapshots = SnapshotService(session, clock)
                calculator = BalanceCalculator(session, clock, snapshots=snapshots)
                day = DAY0 + timedelta(days=probe)
                replayed = calculator.opening_balance("cash", day, use_snapshots=False)

                for month in snapshot_months:
                    snapshots.get_or_create_snapshot(date(2024, month, 1))

                assert calculator.opening_balance("cash", day) == replayed
        finally:
            database.dispose()
