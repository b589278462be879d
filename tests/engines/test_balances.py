"""Tests for the running-balance fold."""

from datetime import UTC, date, datetime, timedelta
from decimal import Decimal
from uuid import uuid4

from ledger_engines.balances import BalanceFoldEngine
from ledger_kernel.domain.dtos import Movement

T0 = datetime(2024, 1, 1, tzinfo=UTC)


def _movement(amount: str, day: date, offset: int = 0) -> Movement:
    return Movement(
        id=uuid4(),
        date=day,
        created_at=T0 + timedelta(seconds=offset),
        amount=Decimal(amount),
    )


class TestBalanceFold:

    def setup_method(self):
        self.engine = BalanceFoldEngine()

    def test_running_balance_per_row(self):
        rows = self.engine.fold(
            opening=Decimal("100"),
            movements=[
                _movement("50", date(2024, 1, 2)),
                _movement("-30", date(2024, 1, 3)),
            ],
        )

        assert [row.balance for row in rows] == [Decimal("150"), Decimal("120")]

    def test_same_date_ordered_by_created_at(self):
        second = _movement("-10", date(2024, 1, 2), offset=5)
        first = _movement("40", date(2024, 1, 2), offset=1)

        rows = self.engine.fold(opening=Decimal("0"), movements=[second, first])

        assert [row.transaction_id for row in rows] == [first.id, second.id]
        assert rows[-1].balance == Decimal("30")

    def test_no_movements_no_rows(self):
        assert self.engine.fold(opening=Decimal("5"), movements=[]) == ()

    def test_closing_matches_last_row(self):
        movements = [_movement("12.50", date(2024, 1, d)) for d in range(1, 6)]

        rows = self.engine.fold(opening=Decimal("1"), movements=movements)

        assert BalanceFoldEngine.closing(Decimal("1"), movements) == rows[-1].balance
        assert rows[-1].balance == Decimal("63.50")

    def test_deterministic(self):
        movements = [_movement(str(i), date(2024, 1, 1), offset=i % 3) for i in range(10)]

        first = self.engine.fold(opening=Decimal("0"), movements=movements)
        second = self.engine.fold(opening=Decimal("0"), movements=list(reversed(movements)))

        assert first == second
