"""
ledger_services.actions -- User-level bookkeeping actions.

Responsibility:
    The write surface of the application.  Each action validates its input,
    writes the local store and its sync queue entries in one local
    transaction, and returns a ``concurrent.futures.Future`` that resolves
    once every queue entry the action produced has been applied remotely
    (or rejects with the typed error of the first entry that failed).

Architecture position:
    Services -- outermost orchestration.  Composes LocalStore, the Payment
    Allocator, the Snapshot Service (as dated-write guard) and the costing
    engine.  Never talks to the remote store directly, except for
    ``import_all``, which is a bulk replace rather than a queued mutation.

Invariants enforced:
    - Local errors (validation, authorization, insufficient stock,
      backdated writes under REJECT) are raised synchronously and leave the
      local store and the queue untouched.
    - All entries of one action share a correlation id.
    - Payment allocation and advance consumption are queued as ONE composite
      entry carrying the locally computed plan and every client-generated
      id, so the remote applies them atomically and detects stale plans.
    - Stock sales are checked against the oversell policy before anything
      is written.

Failure modes:
    - Synchronous: ValidationError, InsufficientStockError,
      AuthorizationError, BackdatedWriteError, RecordNotFoundError,
      InvalidLifecycleTransitionError, QueueEntry* errors.
    - Through the future: any LedgerKernelError the remote raised for a
      non-retryable entry; CancelledError when an entry is cancelled.

Usage:
    future = ledger.actions.record_payment(contact_id, Decimal("150"),
                                           date(2024, 3, 1), PaymentMethod.CASH)
    result = future.result(timeout=30)
"""

from __future__ import annotations

import datetime as dt
import threading
from collections.abc import Callable, Iterable
from concurrent.futures import Future
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, TypeVar
from uuid import UUID, uuid4

from sqlalchemy.orm import Session

from ledger_engines.allocation import PaymentAllocationEngine
from ledger_engines.costing import InventoryCostingEngine
from ledger_kernel.db.engine import Database
from ledger_kernel.db.serialization import coerce_values, record_to_dict
from ledger_kernel.domain.clock import Clock
from ledger_kernel.domain.dtos import StockEvent
from ledger_kernel.domain.enums import (
    Account,
    ContactKind,
    Direction,
    LedgerKind,
    LedgerStatus,
    LoanKind,
    LoanStatus,
    OversellPolicy,
    PaymentMethod,
    Role,
    StockKind,
    SyncAction,
)
from ledger_kernel.exceptions import AuthorizationError, ValidationError
from ledger_kernel.logging_config import LogContext, get_logger
from ledger_kernel.models.stock import StockTransaction
from ledger_kernel.models.sync_queue import SyncQueueEntry
from ledger_kernel.selectors.transaction_selector import TransactionSelector, parse_account
from ledger_kernel.services.local_store import LocalStore
from ledger_kernel.services.sync_queue import QueueStats, SyncQueueService
from ledger_services.backup import ImportReport, export_tables, import_tables
from ledger_services.events import SyncEvent, SyncEventBus, SyncEventKind
from ledger_services.payment_allocator import CreditResult, PaymentAllocator, PaymentResult
from ledger_services.remote import RemoteBackend
from ledger_services.snapshot_service import SnapshotService

logger = get_logger("services.actions")

T = TypeVar("T")

ZERO = Decimal("0")

INITIAL_BALANCE = "Initial Balance"
FUNDS_TRANSFER = "Funds Transfer"
LOAN_PAYMENT = "Loan Payment"

STOCK_CATEGORY = {
    StockKind.PURCHASE: ("Stock Purchase", Direction.OUT, LedgerKind.PAYABLE),
    StockKind.SALE: ("Stock Sale", Direction.IN, LedgerKind.RECEIVABLE),
}

ADVANCE_CATEGORY = {
    Direction.OUT: "Advance Payment",
    Direction.IN: "Advance Received",
}

LOAN_CATEGORY = {
    LoanKind.PAYABLE: ("Loan In", Direction.IN),
    LoanKind.RECEIVABLE: ("Loan Out", Direction.OUT),
}


# =============================================================================
# Result types
# =============================================================================


@dataclass(frozen=True)
class StockResult:
    """What ``add_stock_transaction`` wrote."""

    stock_transaction: dict[str, Any]
    financial_transaction: dict[str, Any] | None = None
    credit: CreditResult | None = None


@dataclass(frozen=True)
class LoanResult:
    loan: dict[str, Any]
    financial_transaction: dict[str, Any]
    payment: dict[str, Any] | None = None


@dataclass(frozen=True)
class ImportOutcome:
    """Reports of a local import and, when a remote is configured, the remote one."""

    local: ImportReport
    remote: ImportReport | None = None

    @property
    def ok(self) -> bool:
        return self.local.ok and (self.remote is None or self.remote.ok)


# =============================================================================
# Futures
# =============================================================================


@dataclass
class _Tracked:
    future: Future
    remaining: set[UUID]
    value: Any


class PendingActions:
    """
    Futures of submitted actions, settled from sync events.

    Contract:
        ``track`` is called inside the action's local transaction, before
        commit, so the worker cannot apply an entry the tracker has not seen
        yet.  Entries that disappear without an event (dropped because the
        record was deleted before it ever synced) are settled by
        ``settle_missing``.
    """

    def __init__(self, bus: SyncEventBus):
        self._lock = threading.Lock()
        self._actions: dict[str, _Tracked] = {}
        self._by_entry: dict[UUID, str] = {}
        bus.subscribe(self._on_applied, SyncEventKind.ENTRY_APPLIED)
        bus.subscribe(self._on_failed, SyncEventKind.ENTRY_FAILED)

    def track(self, correlation_id: str, entry_ids: Iterable[UUID], value: Any) -> Future:
        future: Future = Future()
        remaining = set(entry_ids)
        if not remaining:
            future.set_result(value)
            return future
        with self._lock:
            self._actions[correlation_id] = _Tracked(future, remaining, value)
            for entry_id in remaining:
                self._by_entry[entry_id] = correlation_id
        return future

    def discard(self, correlation_id: str) -> None:
        """Forget an action whose local transaction rolled back."""
        with self._lock:
            tracked = self._actions.pop(correlation_id, None)
            if tracked is not None:
                for entry_id in tracked.remaining:
                    self._by_entry.pop(entry_id, None)

    def pending_count(self) -> int:
        with self._lock:
            return len(self._actions)

    def _release(self, entry_id: UUID) -> _Tracked | None:
        """Drop one entry; return the action when it was its last one."""
        correlation_id = self._by_entry.pop(entry_id, None)
        if correlation_id is None:
            return None
        tracked = self._actions[correlation_id]
        tracked.remaining.discard(entry_id)
        if tracked.remaining:
            return None
        del self._actions[correlation_id]
        return tracked

    def _on_applied(self, event: SyncEvent) -> None:
        with self._lock:
            done = self._release(event.entry_id)
        if done is not None and not done.future.done():
            done.future.set_result(done.value)

    def _on_failed(self, event: SyncEvent) -> None:
        with self._lock:
            correlation_id = self._by_entry.get(event.entry_id)
            tracked = self._actions.pop(correlation_id, None) if correlation_id else None
            if tracked is not None:
                for entry_id in tracked.remaining:
                    self._by_entry.pop(entry_id, None)
        if tracked is not None and not tracked.future.done():
            tracked.future.set_exception(event.error)

    def cancel(self, entry_id: UUID) -> None:
        """The entry was cancelled: its action will never complete."""
        with self._lock:
            correlation_id = self._by_entry.get(entry_id)
            tracked = self._actions.pop(correlation_id, None) if correlation_id else None
            if tracked is not None:
                for other in tracked.remaining:
                    self._by_entry.pop(other, None)
        if tracked is not None:
            tracked.future.cancel()

    def settle_missing(self, existing: set[UUID]) -> int:
        """Treat tracked entries no longer in the queue as applied."""
        finished: list[_Tracked] = []
        with self._lock:
            for entry_id in [e for e in self._by_entry if e not in existing]:
                done = self._release(entry_id)
                if done is not None:
                    finished.append(done)
        for done in finished:
            if not done.future.done():
                done.future.set_result(done.value)
        return len(finished)


# =============================================================================
# Unit of work
# =============================================================================


@dataclass
class _UnitOfWork:
    """Services bound to one local transaction and one correlation id."""

    session: Session
    correlation_id: str
    queue: SyncQueueService
    store: LocalStore
    snapshots: SnapshotService
    allocator: PaymentAllocator


class LedgerActions:
    """
    Action facade.

    Contract:
        Every mutating method runs in its own local transaction and returns
        a Future; reads of local state go through the Ledger object instead.

    Non-goals:
        - Does not replay the queue; the SyncWorker does.
    """

    def __init__(
        self,
        database: Database,
        clock: Clock,
        *,
        pending: PendingActions,
        role: Role = Role.ADMIN,
        costing_engine: InventoryCostingEngine | None = None,
        allocation_engine: PaymentAllocationEngine | None = None,
        snapshot_options: dict[str, Any] | None = None,
        remote: RemoteBackend | None = None,
        on_enqueue: Callable[[], None] | None = None,
    ):
        self._database = database
        self._clock = clock
        self._pending = pending
        self._role = role
        self._costing = costing_engine or InventoryCostingEngine()
        self._allocation = allocation_engine or PaymentAllocationEngine()
        self._snapshot_options = dict(snapshot_options or {})
        self._remote = remote
        self._on_enqueue = on_enqueue
        self.device_id: str | None = None

    # =========================================================================
    # Plumbing
    # =========================================================================

    def _unit_of_work(self, session: Session, correlation_id: str) -> _UnitOfWork:
        queue = SyncQueueService(session, self._clock)
        snapshots = SnapshotService(
            session,
            self._clock,
            role=self._role,
            costing_engine=self._costing,
            **self._snapshot_options,
        )
        return _UnitOfWork(
            session=session,
            correlation_id=correlation_id,
            queue=queue,
            store=LocalStore(
                session,
                self._clock,
                queue,
                role=self._role,
                guard=snapshots,
                correlation_id=correlation_id,
            ),
            snapshots=snapshots,
            allocator=PaymentAllocator(
                session,
                self._clock,
                role=self._role,
                guard=snapshots,
                engine=self._allocation,
            ),
        )

    def _submit(self, operation: str, work: Callable[[_UnitOfWork], T]) -> Future:
        """Run ``work`` in one local transaction and track its queue entries."""
        correlation_id = str(uuid4())
        with LogContext.bind(correlation_id=correlation_id, device_id=self.device_id):
            try:
                with self._database.session_scope() as session:
                    uow = self._unit_of_work(session, correlation_id)
                    value = work(uow)
                    entry_ids = [
                        e.id for e in uow.queue.entries() if e.correlation_id == correlation_id
                    ]
                    future = self._pending.track(correlation_id, entry_ids, value)
            except Exception:
                self._pending.discard(correlation_id)
                raise

            logger.info(
                "action_submitted",
                extra={"operation": operation, "entry_count": len(entry_ids)},
            )

        self._settle_missing()
        if entry_ids and self._on_enqueue is not None:
            self._on_enqueue()
        return future

    def _settle_missing(self) -> None:
        if not self._pending.pending_count():
            return
        with self._database.session_scope() as session:
            existing = {e.id for e in SyncQueueService(session, self._clock).entries()}
        self._pending.settle_missing(existing)

    @staticmethod
    def _positive(name: str, value: Decimal) -> Decimal:
        value = Decimal(value)
        if value <= 0:
            raise ValidationError(name, "must be positive", value)
        return value

    @staticmethod
    def _method_account(method: PaymentMethod, bank_id: UUID | None) -> tuple[Account, UUID | None]:
        if method is PaymentMethod.CASH:
            return Account.CASH, None
        if method is PaymentMethod.BANK:
            if bank_id is None:
                raise ValidationError("bank_id", "required for bank payments")
            return Account.BANK, bank_id
        raise ValidationError("payment_method", "must be cash or bank", method.value)

    def _money_movement(
        self,
        uow: _UnitOfWork,
        *,
        date: dt.date,
        account: Account,
        bank_id: UUID | None,
        direction: Direction,
        category: str,
        amount: Decimal,
        description: str = "",
        expected_amount: Decimal | None = None,
        **links: Any,
    ) -> Any:
        return uow.store.create(
            "financial_transactions",
            {
                "date": date,
                "account": account,
                "bank_id": bank_id,
                "direction": direction,
                "category": category,
                "description": description,
                "expected_amount": amount if expected_amount is None else expected_amount,
                "actual_amount": amount,
                **links,
            },
        )

    # =========================================================================
    # Contacts and banks
    # =========================================================================

    def add_contact(
        self,
        name: str,
        kind: ContactKind = ContactKind.BOTH,
        *,
        phone: str | None = None,
        address: str | None = None,
    ) -> Future:
        if not name or not name.strip():
            raise ValidationError("name", "must not be empty", name)

        def work(uow: _UnitOfWork) -> dict[str, Any]:
            contact = uow.store.create(
                "contacts",
                {"name": name.strip(), "kind": kind, "phone": phone, "address": address},
            )
            return record_to_dict(contact)

        return self._submit("add_contact", work)

    def add_bank(self, name: str) -> Future:
        if not name or not name.strip():
            raise ValidationError("name", "must not be empty", name)
        return self._submit(
            "add_bank",
            lambda uow: record_to_dict(uow.store.create("banks", {"name": name.strip()})),
        )

    def delete_contact(self, contact_id: UUID) -> Future:
        return self._submit(
            "delete_contact",
            lambda uow: record_to_dict(uow.store.soft_delete("contacts", contact_id)),
        )

    # =========================================================================
    # Cash and bank transactions
    # =========================================================================

    def add_transaction(
        self,
        *,
        date: dt.date,
        account: Account,
        direction: Direction,
        category: str,
        actual_amount: Decimal,
        expected_amount: Decimal | None = None,
        bank_id: UUID | None = None,
        description: str = "",
        contact_id: UUID | None = None,
    ) -> Future:
        """
        Record a cash or bank movement.

        Raises:
            ValidationError: Negative amounts, or bank_id not matching the
                account.
        """
        account = Account(account)
        direction = Direction(direction)
        actual_amount = Decimal(actual_amount)
        if actual_amount < 0:
            raise ValidationError("actual_amount", "must not be negative", actual_amount)
        if expected_amount is not None and Decimal(expected_amount) < 0:
            raise ValidationError("expected_amount", "must not be negative", expected_amount)
        if (account is Account.BANK) != (bank_id is not None):
            raise ValidationError("bank_id", "required for bank and forbidden for cash", bank_id)
        if not category:
            raise ValidationError("category", "must not be empty", category)

        def work(uow: _UnitOfWork) -> dict[str, Any]:
            tx = self._money_movement(
                uow,
                date=date,
                account=account,
                bank_id=bank_id,
                direction=direction,
                category=category,
                amount=actual_amount,
                expected_amount=expected_amount,
                description=description,
                contact_id=contact_id,
            )
            return record_to_dict(tx)

        return self._submit("add_transaction", work)

    def update_transaction(
        self,
        record_id: UUID,
        patch: dict[str, Any],
        *,
        table: str = "financial_transactions",
    ) -> Future:
        return self._submit(
            "update_transaction",
            lambda uow: record_to_dict(uow.store.update(table, record_id, patch)),
        )

    def delete_transaction(
        self, record_id: UUID, *, table: str = "financial_transactions"
    ) -> Future:
        """Move a record to the recycle bin."""
        return self._submit(
            "delete_transaction",
            lambda uow: record_to_dict(uow.store.soft_delete(table, record_id)),
        )

    def restore_transaction(
        self, record_id: UUID, *, table: str = "financial_transactions"
    ) -> Future:
        return self._submit(
            "restore_transaction",
            lambda uow: record_to_dict(uow.store.restore(table, record_id)),
        )

    def transfer_funds(
        self,
        amount: Decimal,
        date: dt.date,
        from_account: str | UUID,
        to_account: str | UUID,
        description: str = "",
    ) -> Future:
        """
        Move money between cash and a bank, or between two banks.

        Writes an OUT transaction on the source and an IN transaction on the
        destination, both categorized "Funds Transfer".
        """
        amount = self._positive("amount", amount)
        source, source_bank = parse_account(from_account)
        target, target_bank = parse_account(to_account)
        if (source, source_bank) == (target, target_bank):
            raise ValidationError("to_account", "must differ from from_account", to_account)

        def label(account: Account) -> str:
            return "Cash" if account is Account.CASH else "Bank"

        def work(uow: _UnitOfWork) -> tuple[dict[str, Any], dict[str, Any]]:
            note = description or FUNDS_TRANSFER
            out_tx = self._money_movement(
                uow,
                date=date,
                account=source,
                bank_id=source_bank,
                direction=Direction.OUT,
                category=FUNDS_TRANSFER,
                amount=amount,
                description=f"Transfer to {label(target)}: {note}",
            )
            in_tx = self._money_movement(
                uow,
                date=date,
                account=target,
                bank_id=target_bank,
                direction=Direction.IN,
                category=FUNDS_TRANSFER,
                amount=amount,
                description=f"Transfer from {label(source)}: {note}",
            )
            return record_to_dict(out_tx), record_to_dict(in_tx)

        return self._submit("transfer_funds", work)

    def set_initial_balances(
        self,
        date: dt.date,
        cash: Decimal,
        banks: dict[UUID, Decimal] | None = None,
    ) -> Future:
        """
        Replace the opening balances.

        Existing "Initial Balance" transactions are soft-deleted; one new
        transaction is written for cash and one per bank.  A negative
        opening balance is written as an OUT movement.
        """
        banks = dict(banks or {})

        def work(uow: _UnitOfWork) -> list[dict[str, Any]]:
            for old in uow.store.query(
                "financial_transactions", {"category": INITIAL_BALANCE}
            ):
                uow.store.soft_delete("financial_transactions", old.id)

            written = []
            openings: list[tuple[Account, UUID | None, Decimal]] = [
                (Account.CASH, None, Decimal(cash))
            ]
            openings.extend((Account.BANK, bank_id, Decimal(v)) for bank_id, v in banks.items())
            for account, bank_id, value in openings:
                tx = self._money_movement(
                    uow,
                    date=date,
                    account=account,
                    bank_id=bank_id,
                    direction=Direction.IN if value >= 0 else Direction.OUT,
                    category=INITIAL_BALANCE,
                    amount=abs(value),
                    description=INITIAL_BALANCE,
                )
                written.append(record_to_dict(tx))
            return written

        return self._submit("set_initial_balances", work)

    # =========================================================================
    # Payables, receivables and advances
    # =========================================================================

    def _enqueue_credit(
        self,
        uow: _UnitOfWork,
        result: CreditResult,
        entry_id: UUID,
        payload: dict[str, Any],
    ) -> None:
        advance_ids = [str(line.advance_id) for line in result.plan.lines]
        uow.queue.enqueue(
            SyncAction.APPLY_CREDIT,
            "ledger_transactions",
            None,
            {**payload, "entry_id": str(entry_id), "plan": result.plan.as_mapping()},
            depends_on=[str(result.contact_id), *advance_ids],
            writes=[*advance_ids, str(entry_id)],
            correlation_id=uow.correlation_id,
        )

    def _apply_credit(
        self,
        uow: _UnitOfWork,
        contact_id: UUID,
        amount: Decimal,
        kind: LedgerKind,
        date: dt.date,
        description: str,
    ) -> CreditResult:
        entry_id = uuid4()
        result = uow.allocator.apply_credit_against_advance(
            contact_id,
            amount,
            kind=kind,
            date=date,
            description=description,
            entry_id=entry_id,
        )
        self._enqueue_credit(
            uow,
            result,
            entry_id,
            {
                "contact_id": str(contact_id),
                "obligation": str(amount),
                "kind": kind.value,
                "date": date.isoformat(),
                "description": description,
            },
        )
        return result

    def add_obligation(
        self,
        contact_id: UUID,
        amount: Decimal,
        kind: LedgerKind,
        date: dt.date,
        description: str = "",
    ) -> Future:
        """
        Record a payable or receivable.

        The contact's advances are consumed first; only the remainder
        becomes an open entry.
        """
        amount = self._positive("amount", amount)
        kind = LedgerKind(kind)
        return self._submit(
            "add_obligation",
            lambda uow: self._apply_credit(uow, contact_id, amount, kind, date, description),
        )

    def record_payment(
        self,
        contact_id: UUID,
        amount: Decimal,
        date: dt.date,
        method: PaymentMethod,
        *,
        kind: LedgerKind = LedgerKind.PAYABLE,
        bank_id: UUID | None = None,
        description: str = "",
    ) -> Future:
        """
        Pay (payable) or collect (receivable) against a contact's open
        entries, oldest first; an overpayment becomes an advance.
        """
        amount = self._positive("amount", amount)
        method = PaymentMethod(method)
        kind = LedgerKind(kind)
        self._method_account(method, bank_id)

        def work(uow: _UnitOfWork) -> PaymentResult:
            result = uow.allocator.allocate(
                contact_id,
                amount,
                date,
                method,
                kind=kind,
                bank_id=bank_id,
                description=description,
            )
            touched = [str(line.entry_id) for line in result.plan.lines]
            depends_on = [str(contact_id), *touched]
            if bank_id is not None:
                depends_on.append(str(bank_id))
            uow.queue.enqueue(
                SyncAction.ALLOCATE_PAYMENT,
                "ledger_transactions",
                None,
                {
                    "contact_id": str(contact_id),
                    "amount": str(amount),
                    "date": date.isoformat(),
                    "method": method.value,
                    "kind": kind.value,
                    "bank_id": str(bank_id) if bank_id else None,
                    "description": description,
                    "installment_ids": {
                        str(k): str(v) for k, v in result.installment_ids.items()
                    },
                    "advance_id": str(result.advance_id) if result.advance_id else None,
                    "financial_transaction_id": (
                        str(result.financial_transaction_id)
                        if result.financial_transaction_id
                        else None
                    ),
                    "record_money_movement": True,
                    "plan": result.plan.as_mapping(),
                },
                depends_on=depends_on,
                writes=[str(i) for i in result.written_ids],
                correlation_id=uow.correlation_id,
            )
            return result

        return self._submit("record_payment", work)

    def record_advance_payment(
        self,
        contact_id: UUID,
        amount: Decimal,
        date: dt.date,
        method: PaymentMethod,
        *,
        direction: Direction = Direction.OUT,
        bank_id: UUID | None = None,
        description: str = "",
    ) -> Future:
        """
        Record money paid to (OUT) or received from (IN) a contact ahead of
        any obligation.  The credit is an advance entry that later
        obligations consume.
        """
        amount = self._positive("amount", amount)
        direction = Direction(direction)
        account, bank_id = self._method_account(PaymentMethod(method), bank_id)
        category = ADVANCE_CATEGORY[direction]

        def work(uow: _UnitOfWork) -> tuple[dict[str, Any], dict[str, Any]]:
            uow.store.get("contacts", contact_id, include_deleted=False)
            advance = uow.store.create(
                "ledger_transactions",
                {
                    "date": date,
                    "kind": LedgerKind.ADVANCE,
                    "description": description or category,
                    "amount": -amount,
                    "paid_amount": ZERO,
                    "status": LedgerStatus.PAID,
                    "contact_id": contact_id,
                },
            )
            tx = self._money_movement(
                uow,
                date=date,
                account=account,
                bank_id=bank_id,
                direction=direction,
                category=category,
                amount=amount,
                description=description,
                contact_id=contact_id,
                advance_id=advance.id,
            )
            return record_to_dict(advance), record_to_dict(tx)

        return self._submit("record_advance_payment", work)

    # =========================================================================
    # Stock
    # =========================================================================

    def _check_oversell(
        self,
        session: Session,
        item_name: str,
        candidate: StockEvent | None,
        exclude_id: UUID | None = None,
    ) -> None:
        """Fold the item's history with ``candidate`` in; REJECT raises."""
        if self._costing.oversell_policy is not OversellPolicy.REJECT:
            return
        events = [
            e for e in TransactionSelector(session).stock_events(item_name=item_name)
            if e.id != exclude_id
        ]
        if candidate is not None:
            events.append(candidate)
        self._costing.fold(events=events)

    def set_initial_stock(
        self,
        item_name: str,
        weight: Decimal,
        price_per_unit: Decimal,
        date: dt.date,
    ) -> Future:
        """Create or replace the opening stock of one item."""
        weight, price_per_unit = Decimal(weight), Decimal(price_per_unit)
        if weight < 0 or price_per_unit < 0:
            raise ValidationError("weight", "weight and price must not be negative", weight)

        def work(uow: _UnitOfWork) -> dict[str, Any]:
            values = {"weight": weight, "price_per_unit": price_per_unit, "date": date}
            existing = uow.store.query("initial_stock", {"item_name": item_name})
            if existing:
                record = uow.store.update("initial_stock", existing[0].id, values)
            else:
                record = uow.store.create("initial_stock", {"item_name": item_name, **values})
            return record_to_dict(record)

        return self._submit("set_initial_stock", work)

    def add_stock_transaction(
        self,
        *,
        date: dt.date,
        item_name: str,
        kind: StockKind,
        weight: Decimal,
        price_per_unit: Decimal,
        payment_method: PaymentMethod,
        bank_id: UUID | None = None,
        contact_id: UUID | None = None,
        description: str = "",
        expected_amount: Decimal | None = None,
    ) -> Future:
        """
        Record a purchase or sale.

        Cash and bank payments also write the linked "Stock Purchase" /
        "Stock Sale" movement.  Credit payments consume the contact's
        advances and leave the remainder as a payable (purchase) or a
        receivable (sale).

        Raises:
            InsufficientStockError: A sale larger than the stock on hand
                under the REJECT oversell policy.
        """
        kind = StockKind(kind)
        method = PaymentMethod(payment_method)
        weight, price_per_unit = Decimal(weight), Decimal(price_per_unit)
        if weight < 0:
            raise ValidationError("weight", "must not be negative", weight)
        if price_per_unit < 0:
            raise ValidationError("price_per_unit", "must not be negative", price_per_unit)
        if not item_name:
            raise ValidationError("item_name", "must not be empty", item_name)
        if method is PaymentMethod.CREDIT and contact_id is None:
            raise ValidationError("contact_id", "required for credit")
        account, bank_id = (
            (None, None) if method is PaymentMethod.CREDIT else self._method_account(method, bank_id)
        )
        actual = weight * price_per_unit
        category, direction, ledger_kind = STOCK_CATEGORY[kind]

        def work(uow: _UnitOfWork) -> StockResult:
            stock_id = uuid4()
            if kind is StockKind.SALE:
                self._check_oversell(
                    uow.session,
                    item_name,
                    StockEvent(
                        id=stock_id,
                        date=date,
                        created_at=self._clock.now(),
                        item_name=item_name,
                        kind=kind,
                        weight=weight,
                        price_per_unit=price_per_unit,
                    ),
                )

            stock = uow.store.create(
                "stock_transactions",
                {
                    "id": stock_id,
                    "date": date,
                    "item_name": item_name,
                    "kind": kind,
                    "weight": weight,
                    "price_per_unit": price_per_unit,
                    "expected_amount": actual if expected_amount is None else expected_amount,
                    "actual_amount": actual,
                    "payment_method": method,
                    "bank_id": bank_id,
                    "contact_id": contact_id,
                    "description": description,
                },
            )
            if method is PaymentMethod.CREDIT:
                credit = self._apply_credit(
                    uow,
                    contact_id,
                    actual,
                    ledger_kind,
                    date,
                    description or f"{category}: {item_name}",
                )
                return StockResult(record_to_dict(stock), credit=credit)

            tx = self._money_movement(
                uow,
                date=date,
                account=account,
                bank_id=bank_id,
                direction=direction,
                category=category,
                amount=actual,
                expected_amount=expected_amount,
                description=description or f"{category}: {item_name}",
                contact_id=contact_id,
                linked_stock_tx_id=stock.id,
            )
            return StockResult(record_to_dict(stock), financial_transaction=record_to_dict(tx))

        return self._submit("add_stock_transaction", work)

    def update_stock_transaction(self, stock_id: UUID, patch: dict[str, Any]) -> Future:
        """
        Edit a stock row; actual_amount is recomputed as weight x price and
        the linked cash/bank movement follows.
        """
        allowed = {
            "date", "item_name", "weight", "price_per_unit",
            "description", "expected_amount", "contact_id",
        }
        unknown = sorted(set(patch) - allowed)
        if unknown:
            raise ValidationError(unknown[0], "cannot be changed on a stock transaction")

        def work(uow: _UnitOfWork) -> dict[str, Any]:
            current = uow.store.get("stock_transactions", stock_id, include_deleted=False)
            weight = Decimal(patch.get("weight", current.weight))
            price = Decimal(patch.get("price_per_unit", current.price_per_unit))
            if weight < 0 or price < 0:
                raise ValidationError("weight", "weight and price must not be negative", weight)
            date = (
                coerce_values(StockTransaction, {"date": patch["date"]})["date"]
                if "date" in patch
                else current.date
            )
            item_name = patch.get("item_name", current.item_name)
            candidate = StockEvent(
                id=current.id,
                date=date,
                created_at=current.created_at,
                item_name=item_name,
                kind=StockKind(current.kind),
                weight=weight,
                price_per_unit=price,
            )
            self._check_oversell(uow.session, item_name, candidate, exclude_id=current.id)
            if item_name != current.item_name:
                self._check_oversell(uow.session, current.item_name, None, exclude_id=current.id)

            actual = weight * price
            values = dict(patch)
            values["actual_amount"] = actual
            if "expected_amount" not in patch and current.expected_amount == current.actual_amount:
                values["expected_amount"] = actual
            updated = uow.store.update("stock_transactions", stock_id, values)

            for linked in uow.store.query(
                "financial_transactions", {"linked_stock_tx_id": stock_id}
            ):
                uow.store.update(
                    "financial_transactions",
                    linked.id,
                    {
                        "date": date,
                        "actual_amount": actual,
                        "expected_amount": updated.expected_amount,
                    },
                )
            return record_to_dict(updated)

        return self._submit("update_stock_transaction", work)

    # =========================================================================
    # Loans
    # =========================================================================

    def add_loan(
        self,
        contact_id: UUID,
        kind: LoanKind,
        principal: Decimal,
        issue_date: dt.date,
        method: PaymentMethod,
        *,
        interest_rate: Decimal = ZERO,
        due_date: dt.date | None = None,
        bank_id: UUID | None = None,
    ) -> Future:
        """Borrow (payable) or lend (receivable) and record the disbursement."""
        kind = LoanKind(kind)
        principal = self._positive("principal", principal)
        if Decimal(interest_rate) < 0:
            raise ValidationError("interest_rate", "must not be negative", interest_rate)
        if due_date is not None and due_date < issue_date:
            raise ValidationError("due_date", "must not be before issue_date", due_date)
        account, bank_id = self._method_account(PaymentMethod(method), bank_id)
        category, direction = LOAN_CATEGORY[kind]

        def work(uow: _UnitOfWork) -> LoanResult:
            uow.store.get("contacts", contact_id, include_deleted=False)
            loan = uow.store.create(
                "loans",
                {
                    "contact_id": contact_id,
                    "kind": kind,
                    "principal": principal,
                    "interest_rate": Decimal(interest_rate),
                    "issue_date": issue_date,
                    "due_date": due_date,
                    "status": LoanStatus.ACTIVE,
                },
            )
            tx = self._money_movement(
                uow,
                date=issue_date,
                account=account,
                bank_id=bank_id,
                direction=direction,
                category=category,
                amount=principal,
                description=(
                    "Loan received" if kind is LoanKind.PAYABLE else "Loan given"
                ),
                contact_id=contact_id,
                linked_loan_id=loan.id,
            )
            return LoanResult(record_to_dict(loan), record_to_dict(tx))

        return self._submit("add_loan", work)

    def record_loan_payment(
        self,
        loan_id: UUID,
        amount: Decimal,
        date: dt.date,
        method: PaymentMethod,
        *,
        bank_id: UUID | None = None,
        notes: str = "",
    ) -> Future:
        """A loan becomes paid once its payments reach the principal."""
        amount = self._positive("amount", amount)
        account, bank_id = self._method_account(PaymentMethod(method), bank_id)

        def work(uow: _UnitOfWork) -> LoanResult:
            loan = uow.store.get("loans", loan_id)
            kind = LoanKind(loan.kind)
            tx = self._money_movement(
                uow,
                date=date,
                account=account,
                bank_id=bank_id,
                direction=Direction.OUT if kind is LoanKind.PAYABLE else Direction.IN,
                category=LOAN_PAYMENT,
                amount=amount,
                description=notes or f"Payment for loan {loan_id}",
                contact_id=loan.contact_id,
                linked_loan_id=loan_id,
            )
            payment = uow.store.create(
                "loan_payments",
                {
                    "loan_id": loan_id,
                    "amount": amount,
                    "date": date,
                    "financial_transaction_id": tx.id,
                },
            )
            paid = sum(
                (p.amount for p in uow.store.query("loan_payments", {"loan_id": loan_id})),
                ZERO,
            )
            if paid >= loan.principal and loan.status != LoanStatus.PAID.value:
                loan = uow.store.update("loans", loan_id, {"status": LoanStatus.PAID})
                logger.info("loan_paid_off", extra={"loan_id": str(loan_id), "paid": str(paid)})
            return LoanResult(record_to_dict(loan), record_to_dict(tx), record_to_dict(payment))

        return self._submit("record_loan_payment", work)

    # =========================================================================
    # Recycle bin
    # =========================================================================

    def empty_recycle_bin(self) -> Future:
        """Permanently delete every record in the recycle bin (admin only)."""
        return self._submit("empty_recycle_bin", lambda uow: uow.store.empty_recycle_bin())

    def purge(self, table: str, record_id: UUID) -> Future:
        return self._submit("purge", lambda uow: uow.store.purge(table, record_id))

    def recycle_bin(self, table: str) -> list[dict[str, Any]]:
        with self._database.session_scope() as session:
            store = LocalStore(session, self._clock, role=self._role)
            return [record_to_dict(r) for r in store.query(table, recycle_bin=True)]

    # =========================================================================
    # Queue management
    # =========================================================================

    def cancel_entry(self, entry_id: UUID) -> None:
        """
        Drop a Pending or Failed entry.  The local write it mirrors stays;
        the action's future is cancelled.

        Raises:
            QueueEntryNotFoundError: Already applied or cancelled.
            QueueEntryInFlightError: Currently Sending.
        """
        with self._database.session_scope() as session:
            SyncQueueService(session, self._clock).cancel(entry_id)
        self._pending.cancel(entry_id)

    def retry_failed(self, entry_id: UUID) -> None:
        with self._database.session_scope() as session:
            SyncQueueService(session, self._clock).retry_failed(entry_id)
        if self._on_enqueue is not None:
            self._on_enqueue()

    def queue_entries(self) -> list[SyncQueueEntry]:
        with self._database.session_scope() as session:
            return SyncQueueService(session, self._clock).entries()

    def queue_stats(self) -> QueueStats:
        with self._database.session_scope() as session:
            return SyncQueueService(session, self._clock).stats()

    # =========================================================================
    # Backup
    # =========================================================================

    def export_all(self) -> dict[str, Any]:
        with self._database.session_scope() as session:
            return export_tables(session)

    def import_all(self, payload: dict[str, Any]) -> ImportOutcome:
        """
        Replace every synced table locally and, when a remote is
        configured, on the remote as well.

        Raises:
            ValidationError: The sync queue is not empty; pending entries
                would replay against the replaced data.
            AuthorizationError: Viewer role.
        """
        if self._role != Role.ADMIN:
            raise AuthorizationError(self._role.value, "import")
        stats = self.queue_stats()
        if stats.total:
            raise ValidationError("sync_queue", "must be empty before an import", stats.total)

        local = import_tables(self._database, payload)
        remote = None
        if local.ok and self._remote is not None:
            remote = self._remote.import_all(payload)
        outcome = ImportOutcome(local, remote)
        logger.info(
            "backup_import_finished",
            extra={"ok": outcome.ok, "remote": remote is not None},
        )
        return outcome
