"""
Module: ledger_engines.allocation
Responsibility:
    Plan how a payment settles a contact's open ledger entries (FIFO) and
    how a new obligation consumes the contact's advance credit.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    Imports only ledger_kernel.domain DTOs/enums and the kernel logger.

Invariants enforced:
    - Conservation: total_applied + advance_amount == amount.
    - No overpayment: no line takes an entry past its amount.
    - FIFO: entries are settled in (date, created_at, id) order and an
      entry is only touched once every older entry is fully paid.
    - Advance consumption: consumed + remainder == obligation, and no
      advance is consumed past zero.

Failure modes:
    - ValueError on a non-positive payment amount or a negative obligation.

Usage:
    from ledger_engines.allocation import PaymentAllocationEngine

    engine = PaymentAllocationEngine()
    plan = engine.allocate(amount=Decimal("1200"), items=open_items)
    plan.lines            # one line per entry touched
    plan.advance_amount   # unallocated remainder -> new advance
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from decimal import Decimal
from uuid import UUID

from ledger_engines.tracer import traced_engine
from ledger_kernel.domain.dtos import OpenItem
from ledger_kernel.domain.enums import LedgerStatus
from ledger_kernel.logging_config import get_logger

logger = get_logger("engines.allocation")

ZERO = Decimal("0")


def canonical_amount(value: Decimal) -> str:
    """Scale-independent text of an amount: 100.000000000 and 100 both give "100"."""
    return format(value.normalize(), "f")


def derive_status(amount: Decimal, paid_amount: Decimal) -> LedgerStatus:
    """Status of a payable/receivable from its amount and paid amount."""
    if paid_amount <= ZERO:
        return LedgerStatus.UNPAID
    if paid_amount >= amount:
        return LedgerStatus.PAID
    return LedgerStatus.PARTIALLY_PAID


@dataclass(frozen=True)
class AllocationLine:
    """
    Settlement of one entry.

    Guarantees:
        - ``paid_amount`` is the entry's new paid amount, never above its
          amount.
    """

    entry_id: UUID
    applied: Decimal
    paid_amount: Decimal
    status: LedgerStatus


@dataclass(frozen=True)
class AllocationPlan:
    """
    Complete FIFO allocation of one payment.

    Guarantees:
        - ``total_applied + advance_amount == amount``.
    """

    amount: Decimal
    lines: tuple[AllocationLine, ...]
    advance_amount: Decimal

    @property
    def total_applied(self) -> Decimal:
        return sum((line.applied for line in self.lines), ZERO)

    def as_mapping(self) -> dict[str, str]:
        """entry id -> applied amount, the form compared across device and server."""
        return {str(line.entry_id): canonical_amount(line.applied) for line in self.lines}


@dataclass(frozen=True)
class CreditLine:
    """Consumption of one advance; ``amount`` is the advance's new (<= 0) amount."""

    advance_id: UUID
    consumed: Decimal
    amount: Decimal

    @property
    def exhausted(self) -> bool:
        return self.amount == ZERO


@dataclass(frozen=True)
class CreditPlan:
    """
    Advance consumption for one new obligation.

    Guarantees:
        - ``total_consumed + remainder == obligation``.
        - ``remainder`` is zero when the credit covers the whole obligation,
          in which case no new ledger entry is created.
    """

    obligation: Decimal
    lines: tuple[CreditLine, ...]
    remainder: Decimal

    @property
    def total_consumed(self) -> Decimal:
        return sum((line.consumed for line in self.lines), ZERO)

    def as_mapping(self) -> dict[str, str]:
        return {str(line.advance_id): canonical_amount(line.consumed) for line in self.lines}


class PaymentAllocationEngine:
    """
    FIFO payment allocation and advance consumption.

    Contract:
        Stateless; every call takes the full list of candidate entries and
        returns a plan.  Applying the plan is the caller's job.

    Non-goals:
        - Does not choose which ledger kind a payment settles.
        - Does not create installment or advance records.
    """

    @traced_engine("payment_allocation", "1.0", fingerprint_fields=("amount", "items"))
    def allocate(self, *, amount: Decimal, items: Sequence[OpenItem]) -> AllocationPlan:
        """
        Settle ``items`` oldest first with ``amount``.

        Args:
            amount: Positive payment amount.
            items: Open payables or receivables of one contact, any order.

        Returns:
            AllocationPlan; ``advance_amount`` is the part of the payment
            that exceeded everything outstanding.

        Raises:
            ValueError: If ``amount`` is not positive.
        """
        if amount <= ZERO:
            raise ValueError(f"Payment amount must be positive, got {amount}")

        remaining = amount
        lines: list[AllocationLine] = []
        for item in sorted(items, key=lambda i: i.sort_key):
            if remaining <= ZERO:
                break
            outstanding = item.outstanding
            if outstanding <= ZERO:
                continue
            applied = min(remaining, outstanding)
            remaining -= applied
            paid_amount = item.paid_amount + applied
            lines.append(
                AllocationLine(
                    entry_id=item.id,
                    applied=applied,
                    paid_amount=paid_amount,
                    status=derive_status(item.amount, paid_amount),
                )
            )

        plan = AllocationPlan(amount=amount, lines=tuple(lines), advance_amount=remaining)

        # INVARIANT: conservation -- every unit of the payment is accounted for
        assert plan.total_applied + plan.advance_amount == amount, (
            f"Allocation conservation violated: "
            f"{plan.total_applied} + {plan.advance_amount} != {amount}"
        )

        logger.info(
            "payment_allocation_planned",
            extra={
                "amount": str(amount),
                "entries_touched": len(lines),
                "total_applied": str(plan.total_applied),
                "advance_amount": str(remaining),
            },
        )
        return plan

    @traced_engine(
        "advance_consumption", "1.0", fingerprint_fields=("obligation", "advances")
    )
    def consume_advances(
        self, *, obligation: Decimal, advances: Sequence[OpenItem]
    ) -> CreditPlan:
        """
        Offset a new obligation against existing advance credit, oldest first.

        Args:
            obligation: Amount of the new payable/receivable (>= 0).
            advances: The contact's advance entries (negative amounts).

        Raises:
            ValueError: If ``obligation`` is negative.
        """
        if obligation < ZERO:
            raise ValueError(f"Obligation must be non-negative, got {obligation}")

        remaining = obligation
        lines: list[CreditLine] = []
        for advance in sorted(advances, key=lambda a: a.sort_key):
            if remaining <= ZERO:
                break
            credit = -advance.amount
            if credit <= ZERO:
                continue
            consumed = min(remaining, credit)
            remaining -= consumed
            lines.append(
                CreditLine(
                    advance_id=advance.id,
                    consumed=consumed,
                    amount=advance.amount + consumed,
                )
            )

        plan = CreditPlan(obligation=obligation, lines=tuple(lines), remainder=remaining)
        logger.info(
            "advance_consumption_planned",
            extra={
                "obligation": str(obligation),
                "advances_touched": len(lines),
                "consumed": str(plan.total_consumed),
                "remainder": str(remaining),
            },
        )
        return plan
