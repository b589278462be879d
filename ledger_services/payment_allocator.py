"""
ledger_services.payment_allocator -- FIFO settlement and advance credit.

Responsibility:
    Apply a payment to a contact's open payables or receivables oldest
    first, turn any overpayment into a reusable advance, record the money
    movement, and offset new obligations against existing advances.

Architecture position:
    Services -- stateful orchestration.  Plans come from
    ledger_engines.allocation.PaymentAllocationEngine; this service applies
    them to ORM rows.  The same class runs on the device (with
    client-generated ids) and inside SqlRemoteBackend (re-deriving the plan
    and reusing the device's ids).

Invariants enforced:
    - Atomicity: every write of one ``allocate`` or
      ``apply_credit_against_advance`` call happens inside one savepoint;
      any failure rolls all of them back.
    - 0 <= paid_amount <= amount on every touched entry (OverpaymentError
      otherwise).
    - One PaymentInstallment per entry touched; installments of an entry
      always sum to its paid_amount.
    - An advance is a ledger entry of kind ADVANCE with negative amount and
      status PAID.  Fully consumed advances stay ACTIVE at amount 0 so the
      transaction that funded them keeps its advance_id link.
    - Stale plans: when an expected plan is supplied (queue replay) and the
      freshly derived plan differs, AllocationConflictError is raised before
      anything is written.

Failure modes:
    - ValidationError for a non-positive amount or an unsupported method.
    - AuthorizationError for a viewer.
    - AllocationConflictError for a stale expected plan.
    - OverpaymentError if an entry would be paid past its amount.

Audit relevance:
    Each allocation logs the contact, amount, entries touched and the
    advance created, keyed by the money-moving transaction id.
"""

from __future__ import annotations

import datetime as dt
from collections.abc import Mapping
from dataclasses import dataclass
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy.orm import Session

from ledger_engines.allocation import (
    AllocationPlan,
    CreditPlan,
    PaymentAllocationEngine,
)
from ledger_kernel.domain.clock import Clock
from ledger_kernel.domain.enums import (
    Account,
    Direction,
    LedgerKind,
    LedgerStatus,
    PaymentMethod,
    Role,
)
from ledger_kernel.domain.lifecycle import LifecycleState
from ledger_kernel.exceptions import (
    AllocationConflictError,
    AuthorizationError,
    OverpaymentError,
    RecordNotFoundError,
    ValidationError,
)
from ledger_kernel.logging_config import get_logger
from ledger_kernel.models.contact import Contact
from ledger_kernel.models.financial import FinancialTransaction
from ledger_kernel.models.ledger import LedgerTransaction, PaymentInstallment
from ledger_kernel.selectors.ledger_selector import LedgerSelector
from ledger_kernel.services.local_store import DatedWriteGuard

logger = get_logger("services.payment_allocator")

SETTLEMENT_CATEGORY = {
    LedgerKind.PAYABLE: "A/P Settlement",
    LedgerKind.RECEIVABLE: "A/R Settlement",
}


@dataclass(frozen=True)
class PaymentResult:
    """What one ``allocate`` call wrote."""

    contact_id: UUID
    kind: LedgerKind
    plan: AllocationPlan
    installment_ids: dict[UUID, UUID]
    advance_id: UUID | None
    financial_transaction_id: UUID | None

    @property
    def written_ids(self) -> list[UUID]:
        ids = [line.entry_id for line in self.plan.lines]
        ids.extend(self.installment_ids.values())
        if self.advance_id is not None:
            ids.append(self.advance_id)
        if self.financial_transaction_id is not None:
            ids.append(self.financial_transaction_id)
        return ids


@dataclass(frozen=True)
class CreditResult:
    """What one ``apply_credit_against_advance`` call wrote."""

    contact_id: UUID
    kind: LedgerKind
    plan: CreditPlan
    entry_id: UUID | None

    @property
    def written_ids(self) -> list[UUID]:
        ids = [line.advance_id for line in self.plan.lines]
        if self.entry_id is not None:
            ids.append(self.entry_id)
        return ids


class PaymentAllocator:
    """
    Applies allocation and advance-consumption plans to the ledger.

    Contract:
        Flush-only; writes happen inside a savepoint of the caller's
        transaction.

    Non-goals:
        - Does not enqueue anything; the action facade enqueues one
          ALLOCATE_PAYMENT or APPLY_CREDIT entry for the whole call.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock,
        *,
        role: Role = Role.ADMIN,
        guard: DatedWriteGuard | None = None,
        engine: PaymentAllocationEngine | None = None,
    ):
        self.session = session
        self._clock = clock
        self._role = role
        self._guard = guard
        self._engine = engine or PaymentAllocationEngine()
        self._ledgers = LedgerSelector(session)

    def _require_admin(self, operation: str) -> None:
        if self._role != Role.ADMIN:
            raise AuthorizationError(self._role.value, operation)

    def _require_contact(self, contact_id: UUID) -> Contact:
        contact = self.session.get(Contact, contact_id)
        if contact is None or contact.lifecycle_state != LifecycleState.ACTIVE.value:
            raise RecordNotFoundError("contacts", str(contact_id))
        return contact

    def _check_date(self, table: str, record_id: UUID, day: dt.date) -> None:
        if self._guard is not None:
            self._guard.check(table, record_id, [day])

    # =========================================================================
    # Plans (read-only)
    # =========================================================================

    def plan(self, contact_id: UUID, amount: Decimal, kind: LedgerKind) -> AllocationPlan:
        """FIFO plan for paying ``amount`` against ``kind`` entries; no writes."""
        if amount <= 0:
            raise ValidationError("amount", "must be positive", amount)
        return self._engine.allocate(
            amount=amount, items=self._ledgers.open_items(contact_id, kind)
        )

    def credit_plan(self, contact_id: UUID, obligation: Decimal) -> CreditPlan:
        if obligation < 0:
            raise ValidationError("amount", "must not be negative", obligation)
        return self._engine.consume_advances(
            obligation=obligation, advances=self._ledgers.advances(contact_id)
        )

    # =========================================================================
    # Allocation
    # =========================================================================

    def allocate(
        self,
        contact_id: UUID,
        amount: Decimal,
        date: dt.date,
        method: PaymentMethod,
        *,
        kind: LedgerKind = LedgerKind.PAYABLE,
        bank_id: UUID | None = None,
        description: str = "",
        installment_ids: Mapping[UUID, UUID] | None = None,
        advance_id: UUID | None = None,
        financial_transaction_id: UUID | None = None,
        record_money_movement: bool = True,
        expected_plan: Mapping[str, str] | None = None,
    ) -> PaymentResult:
        """
        Settle ``kind`` entries of a contact, oldest first.

        Args:
            contact_id: Contact paying or being paid.
            amount: Positive payment amount.
            date: Payment date (installments and the money movement).
            method: CASH or BANK.
            kind: PAYABLE (we pay) or RECEIVABLE (we are paid).
            bank_id: Required for BANK.
            installment_ids / advance_id / financial_transaction_id:
                Ids to reuse (queue replay); generated when absent.
            record_money_movement: Also write the cash/bank transaction.
            expected_plan: entry id -> applied amount computed on the
                device; a mismatch raises AllocationConflictError.

        Returns:
            PaymentResult.
        """
        self._require_admin("record payments")
        if kind not in SETTLEMENT_CATEGORY:
            raise ValidationError("kind", "must be payable or receivable", kind.value)
        if method not in (PaymentMethod.CASH, PaymentMethod.BANK):
            raise ValidationError("payment_method", "must be cash or bank", method.value)
        if method is PaymentMethod.BANK and bank_id is None:
            raise ValidationError("bank_id", "required for bank payments")
        self._require_contact(contact_id)

        plan = self.plan(contact_id, amount, kind)
        if expected_plan is not None and dict(expected_plan) != plan.as_mapping():
            logger.warning(
                "allocation_plan_conflict",
                extra={
                    "contact_id": str(contact_id),
                    "expected": dict(expected_plan),
                    "actual": plan.as_mapping(),
                },
            )
            raise AllocationConflictError(
                str(contact_id), dict(expected_plan), plan.as_mapping()
            )

        installment_ids = dict(installment_ids or {})
        now = self._clock.now()
        written_installments: dict[UUID, UUID] = {}
        new_advance_id: UUID | None = None
        fin_id: UUID | None = None

        savepoint = self.session.begin_nested()
        try:
            for line in plan.lines:
                entry = self.session.get(LedgerTransaction, line.entry_id)
                if line.paid_amount > entry.amount or line.paid_amount < 0:
                    raise OverpaymentError(str(entry.id), entry.amount, line.paid_amount)
                entry.paid_amount = line.paid_amount
                entry.status = line.status.value
                entry.updated_at = now

                inst_id = installment_ids.get(entry.id) or uuid4()
                self._check_date("payment_installments", inst_id, date)
                self.session.add(
                    PaymentInstallment(
                        id=inst_id,
                        ledger_transaction_id=entry.id,
                        amount=line.applied,
                        date=date,
                        payment_method=method.value,
                        created_at=now,
                    )
                )
                written_installments[entry.id] = inst_id

            if plan.advance_amount > 0:
                new_advance_id = advance_id or uuid4()
                self._check_date("ledger_transactions", new_advance_id, date)
                self.session.add(
                    LedgerTransaction(
                        id=new_advance_id,
                        date=date,
                        kind=LedgerKind.ADVANCE.value,
                        description=description or "Advance from overpayment",
                        amount=-plan.advance_amount,
                        paid_amount=Decimal("0"),
                        status=LedgerStatus.PAID.value,
                        contact_id=contact_id,
                        created_at=now,
                    )
                )
                # The money movement references the advance through advance_id.
                self.session.flush()

            if record_money_movement:
                fin_id = financial_transaction_id or uuid4()
                self._check_date("financial_transactions", fin_id, date)
                self.session.add(
                    FinancialTransaction(
                        id=fin_id,
                        date=date,
                        account=(
                            Account.CASH.value if method is PaymentMethod.CASH else Account.BANK.value
                        ),
                        bank_id=bank_id if method is PaymentMethod.BANK else None,
                        direction=(
                            Direction.OUT.value if kind is LedgerKind.PAYABLE else Direction.IN.value
                        ),
                        category=SETTLEMENT_CATEGORY[kind],
                        description=description,
                        expected_amount=amount,
                        actual_amount=amount,
                        difference=Decimal("0"),
                        contact_id=contact_id,
                        advance_id=new_advance_id,
                        created_at=now,
                    )
                )

            self.session.flush()
            savepoint.commit()
        except Exception:
            savepoint.rollback()
            logger.warning(
                "payment_allocation_rolled_back",
                extra={"contact_id": str(contact_id), "amount": str(amount)},
                exc_info=True,
            )
            raise

        result = PaymentResult(
            contact_id=contact_id,
            kind=kind,
            plan=plan,
            installment_ids=written_installments,
            advance_id=new_advance_id,
            financial_transaction_id=fin_id,
        )
        logger.info(
            "payment_allocated",
            extra={
                "contact_id": str(contact_id),
                "kind": kind.value,
                "amount": str(amount),
                "entries_touched": len(plan.lines),
                "advance_amount": str(plan.advance_amount),
                "advance_id": str(new_advance_id) if new_advance_id else None,
                "financial_transaction_id": str(fin_id) if fin_id else None,
            },
        )
        return result

    # =========================================================================
    # Advance consumption
    # =========================================================================

    def apply_credit_against_advance(
        self,
        contact_id: UUID,
        new_obligation_amount: Decimal,
        *,
        kind: LedgerKind,
        date: dt.date,
        description: str = "",
        entry_id: UUID | None = None,
        expected_plan: Mapping[str, str] | None = None,
    ) -> CreditResult:
        """
        Record a new obligation, consuming the contact's advances first.

        Only the unconsumed remainder becomes a new ``kind`` entry; when the
        advances cover everything, no entry is created.
        """
        self._require_admin("record obligations")
        if kind not in SETTLEMENT_CATEGORY:
            raise ValidationError("kind", "must be payable or receivable", kind.value)
        self._require_contact(contact_id)

        plan = self.credit_plan(contact_id, new_obligation_amount)
        if expected_plan is not None and dict(expected_plan) != plan.as_mapping():
            raise AllocationConflictError(
                str(contact_id), dict(expected_plan), plan.as_mapping()
            )

        now = self._clock.now()
        new_entry_id: UUID | None = None

        savepoint = self.session.begin_nested()
        try:
            for line in plan.lines:
                # Advances are outside snapshot totals; only the remainder is dated.
                advance = self.session.get(LedgerTransaction, line.advance_id)
                advance.amount = line.amount
                advance.updated_at = now

            if plan.remainder > 0:
                new_entry_id = entry_id or uuid4()
                self._check_date("ledger_transactions", new_entry_id, date)
                self.session.add(
                    LedgerTransaction(
                        id=new_entry_id,
                        date=date,
                        kind=kind.value,
                        description=description,
                        amount=plan.remainder,
                        paid_amount=Decimal("0"),
                        status=LedgerStatus.UNPAID.value,
                        contact_id=contact_id,
                        created_at=now,
                    )
                )

            self.session.flush()
            savepoint.commit()
        except Exception:
            savepoint.rollback()
            raise

        logger.info(
            "advance_credit_applied",
            extra={
                "contact_id": str(contact_id),
                "kind": kind.value,
                "obligation": str(new_obligation_amount),
                "consumed": str(plan.total_consumed),
                "advances_exhausted": sum(1 for line in plan.lines if line.exhausted),
                "remainder": str(plan.remainder),
                "entry_id": str(new_entry_id) if new_entry_id else None,
            },
        )
        return CreditResult(
            contact_id=contact_id, kind=kind, plan=plan, entry_id=new_entry_id
        )
