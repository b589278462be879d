"""
Module: ledger_engines.balances
Responsibility:
    Running-balance fold over an account's signed movements.

Architecture position:
    Engines -- pure calculation layer, zero I/O.

Invariants enforced:
    - Movements are folded in (date, created_at, id) order, so movements
      sharing a date always come out in the same order.
    - Decimal arithmetic only; the same inputs give bit-identical rows.
"""

from __future__ import annotations

import datetime as dt
from collections.abc import Sequence
from dataclasses import dataclass
from decimal import Decimal
from uuid import UUID

from ledger_engines.tracer import traced_engine
from ledger_kernel.domain.dtos import Movement


@dataclass(frozen=True)
class BalanceRow:
    """Balance of the account right after one transaction."""

    transaction_id: UUID
    date: dt.date
    amount: Decimal
    balance: Decimal


class BalanceFoldEngine:
    """Stateless running-balance fold."""

    @traced_engine("balance_fold", "1.0", fingerprint_fields=("opening", "movements"))
    def fold(
        self, *, opening: Decimal, movements: Sequence[Movement]
    ) -> tuple[BalanceRow, ...]:
        rows: list[BalanceRow] = []
        balance = opening
        for movement in sorted(movements, key=lambda m: m.sort_key):
            balance += movement.amount
            rows.append(
                BalanceRow(
                    transaction_id=movement.id,
                    date=movement.date,
                    amount=movement.amount,
                    balance=balance,
                )
            )
        return tuple(rows)

    @staticmethod
    def closing(opening: Decimal, movements: Sequence[Movement]) -> Decimal:
        """Balance after every movement, without the per-row trace."""
        return opening + sum((m.amount for m in movements), Decimal("0"))
