"""
Tests for BalanceCalculator.

Covers:
- Running balances over a date range
- Snapshot-based opening balance equal to a full replay
- Current position across cash, banks, ledgers and stock
"""

import pytest
from datetime import date
from decimal import Decimal

from ledger_kernel.domain.enums import LedgerKind
from ledger_kernel.exceptions import ValidationError
from ledger_services.balance_calculator import BalanceCalculator
from ledger_services.snapshot_service import SnapshotService


def _tx(store, day, amount, direction="in", account="cash", bank_id=None):
    return store.create(
        "financial_transactions",
        {
            "date": day,
            "account": account,
            "bank_id": bank_id,
            "direction": direction,
            "category": "Sales",
            "expected_amount": Decimal(amount),
            "actual_amount": Decimal(amount),
        },
    )


@pytest.fixture
def snapshots(session, clock):
    return SnapshotService(session, clock)


@pytest.fixture
def calculator(session, clock, snapshots):
    return BalanceCalculator(session, clock, snapshots=snapshots)


@pytest.fixture
def history(store):
    """Cash movements spread over January to April."""
    rows = [
        (date(2024, 1, 3), "1000", "in"),
        (date(2024, 1, 20), "250", "out"),
        (date(2024, 2, 2), "75.25", "out"),
        (date(2024, 2, 28), "400", "in"),
        (date(2024, 3, 5), "60", "out"),
        (date(2024, 3, 18), "10.50", "in"),
        (date(2024, 4, 1), "90", "out"),
    ]
    return [_tx(store, day, amount, direction) for day, amount, direction in rows]


class TestRunningBalances:

    def test_rows_in_range(self, calculator, history):
        statement = calculator.running_balances("cash", date(2024, 2, 1), date(2024, 2, 29))

        assert statement.opening_balance == Decimal("750")
        assert [row.balance for row in statement.rows] == [Decimal("674.75"), Decimal("1074.75")]
        assert statement.closing_balance == Decimal("1074.75")

    def test_full_history(self, calculator, history):
        statement = calculator.running_balances("cash")
        assert statement.opening_balance == Decimal("0")
        assert len(statement.rows) == len(history)
        assert statement.closing_balance == Decimal("935.25")

    def test_empty_range_closing_is_opening(self, calculator, history):
        statement = calculator.running_balances("cash", date(2024, 5, 1), date(2024, 5, 31))
        assert statement.rows == ()
        assert statement.closing_balance == Decimal("935.25")

    def test_inverted_range_rejected(self, calculator):
        with pytest.raises(ValidationError):
            calculator.running_balances("cash", date(2024, 3, 1), date(2024, 2, 1))

    def test_bad_account_rejected(self, calculator):
        with pytest.raises(ValidationError):
            calculator.running_balances("petty")

    def test_bank_accounts_are_separate(self, store, calculator, make_bank):
        first = make_bank("First")
        second = make_bank("Second")
        _tx(store, date(2024, 1, 1), "100", account="bank", bank_id=first)
        _tx(store, date(2024, 1, 1), "40", account="bank", bank_id=second)

        assert calculator.balance_as_of(first, date(2024, 1, 31)) == Decimal("100")
        assert calculator.balance_as_of(str(second), date(2024, 1, 31)) == Decimal("40")
        assert calculator.balance_as_of("cash", date(2024, 1, 31)) == Decimal("0")


class TestSnapshotEquivalence:

    @pytest.mark.parametrize(
        "day",
        [date(2024, 2, 1), date(2024, 3, 1), date(2024, 3, 10), date(2024, 3, 18), date(2024, 4, 2)],
    )
    def test_snapshot_opening_equals_full_replay(self, calculator, snapshots, history, day):
        replayed = calculator.opening_balance("cash", day, use_snapshots=False)
        snapshots.get_or_create_snapshot(date(2024, 2, 1))
        snapshots.get_or_create_snapshot(date(2024, 3, 1))

        assert calculator.opening_balance("cash", day) == replayed

    def test_statement_identical_with_snapshots(self, calculator, snapshots, history):
        before = calculator.running_balances("cash", date(2024, 3, 10), date(2024, 4, 30))
        snapshots.get_or_create_snapshot(date(2024, 3, 1))

        after = calculator.running_balances("cash", date(2024, 3, 10), date(2024, 4, 30))

        assert after == before


class TestPosition:

    def test_current_position(self, store, calculator, make_bank, make_contact, make_entry):
        bank_id = make_bank()
        _tx(store, date(2024, 1, 2), "500")
        _tx(store, date(2024, 1, 3), "200", account="bank", bank_id=bank_id)
        contact = make_contact()
        make_entry(contact, "300", date(2024, 1, 4))
        make_entry(contact, "80", date(2024, 1, 5), kind=LedgerKind.RECEIVABLE)
        store.create(
            "initial_stock",
            {"item_name": "rice", "weight": "10", "price_per_unit": "5", "date": date(2024, 1, 1)},
        )

        position = calculator.current_position(date(2024, 1, 31))

        assert position.cash == Decimal("500")
        assert position.banks == {bank_id: Decimal("200")}
        assert position.total_payables == Decimal("300")
        assert position.total_receivables == Decimal("80")
        assert position.stock_value == Decimal("50")

    def test_stock_positions_with_snapshot(self, store, calculator, snapshots):
        store.create(
            "initial_stock",
            {"item_name": "rice", "weight": "100", "price_per_unit": "10", "date": date(2024, 1, 1)},
        )
        store.create(
            "stock_transactions",
            {
                "date": date(2024, 2, 3),
                "item_name": "rice",
                "kind": "sale",
                "weight": "40",
                "price_per_unit": "15",
                "expected_amount": "600",
                "actual_amount": "600",
                "payment_method": "cash",
            },
        )
        without = calculator.stock_positions(date(2024, 2, 28))
        snapshots.get_or_create_snapshot(date(2024, 2, 1))

        with_snapshot = calculator.stock_positions(date(2024, 2, 28))

        assert with_snapshot["rice"].weight == without["rice"].weight == Decimal("60")
        assert with_snapshot["rice"].value == without["rice"].value == Decimal("600")
