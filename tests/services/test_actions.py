"""
Tests for LedgerActions through the Ledger application object.

Covers:
- Futures resolving once the worker applied every entry of an action
- Local validation and stock errors raised synchronously with nothing queued
- Payments, advances and credit consumption mirrored on the remote
- Transfers, opening balances, stock and loans
- Recycle bin and queue management
- Import preconditions
"""

import pytest
from concurrent.futures import CancelledError
from datetime import date
from decimal import Decimal
from uuid import UUID, uuid4

from ledger_kernel.domain.enums import (
    Account,
    ContactKind,
    Direction,
    LedgerKind,
    LoanKind,
    PaymentMethod,
    Role,
    StockKind,
)
from ledger_kernel.exceptions import (
    AuthorizationError,
    ConflictError,
    InsufficientStockError,
    LedgerIntegrityError,
    OverpaymentError,
    ValidationError,
)
from ledger_services.ledger import Ledger


def _id(record: dict) -> UUID:
    return UUID(record["id"])


@pytest.fixture
def actions(ledger):
    return ledger.actions


@pytest.fixture
def contact(ledger, actions) -> UUID:
    future = actions.add_contact("Acme Traders", ContactKind.BOTH)
    ledger.sync_now()
    return _id(future.result(timeout=1))


@pytest.fixture
def bank(ledger, actions) -> UUID:
    future = actions.add_bank("City Bank")
    ledger.sync_now()
    return _id(future.result(timeout=1))


class TestFutures:

    def test_resolves_after_sync(self, ledger, actions, remote):
        future = actions.add_contact("Acme", ContactKind.VENDOR, phone="555")
        assert not future.done()
        assert actions.queue_stats().pending == 1

        ledger.sync_now()

        contact = future.result(timeout=1)
        assert contact["name"] == "Acme"
        assert contact["kind"] == "vendor"
        assert [c["id"] for c in remote.query("contacts")] == [contact["id"]]
        assert actions.queue_stats().total == 0

    def test_name_trimmed(self, ledger, actions):
        future = actions.add_bank("  City  ")
        ledger.sync_now()
        assert future.result(timeout=1)["name"] == "City"

    def test_blank_name_raises_synchronously(self, actions):
        with pytest.raises(ValidationError):
            actions.add_contact("   ")
        assert actions.queue_stats().total == 0

    def test_remote_rejection_fails_future(self, ledger, actions, remote):
        remote.create("banks", {"id": str(uuid4()), "name": "City"})

        future = actions.add_bank("City")
        ledger.sync_now()

        with pytest.raises(ConflictError):
            future.result(timeout=1)
        assert actions.queue_stats().failed == 1

    def test_delete_before_sync_settles_create(self, ledger, actions, remote):
        created = actions.add_contact("Short-lived")
        [record] = ledger.query("contacts")
        contact_id = _id(record)

        deleted = actions.delete_contact(contact_id)

        assert created.done()
        assert deleted.done()
        assert actions.queue_stats().total == 0
        assert remote.query("contacts", recycle_bin=True) == []


class TestTransactions:

    def test_cash_transaction(self, ledger, actions, remote):
        future = actions.add_transaction(
            date=date(2024, 2, 1),
            account=Account.CASH,
            direction=Direction.IN,
            category="Sales",
            actual_amount=Decimal("250"),
        )
        ledger.sync_now()

        tx = future.result(timeout=1)
        assert Decimal(tx["expected_amount"]) == Decimal("250")
        assert ledger.balance_as_of("cash", date(2024, 2, 1)) == Decimal("250")
        assert len(remote.query("financial_transactions")) == 1

    def test_bank_requires_bank_id(self, actions):
        with pytest.raises(ValidationError):
            actions.add_transaction(
                date=date(2024, 2, 1),
                account=Account.BANK,
                direction=Direction.IN,
                category="Sales",
                actual_amount=Decimal("10"),
            )

    def test_cash_forbids_bank_id(self, actions, bank):
        with pytest.raises(ValidationError):
            actions.add_transaction(
                date=date(2024, 2, 1),
                account=Account.CASH,
                direction=Direction.IN,
                category="Sales",
                actual_amount=Decimal("10"),
                bank_id=bank,
            )

    def test_negative_amount_rejected(self, actions):
        with pytest.raises(ValidationError):
            actions.add_transaction(
                date=date(2024, 2, 1),
                account=Account.CASH,
                direction=Direction.OUT,
                category="Rent",
                actual_amount=Decimal("-1"),
            )

    def test_delete_and_restore_round_trip(self, ledger, actions, remote):
        tx = actions.add_transaction(
            date=date(2024, 2, 1),
            account=Account.CASH,
            direction=Direction.IN,
            category="Sales",
            actual_amount=Decimal("100"),
        )
        ledger.sync_now()
        tx_id = _id(tx.result(timeout=1))

        actions.delete_transaction(tx_id)
        ledger.sync_now()
        assert ledger.balance_as_of("cash", date(2024, 2, 1)) == Decimal("0")
        assert len(actions.recycle_bin("financial_transactions")) == 1
        assert len(remote.query("financial_transactions", recycle_bin=True)) == 1

        restored = actions.restore_transaction(tx_id)
        ledger.sync_now()

        assert restored.result(timeout=1)["lifecycle_state"] == "active"
        assert ledger.balance_as_of("cash", date(2024, 2, 1)) == Decimal("100")
        assert len(remote.query("financial_transactions")) == 1

    def test_update_transaction(self, ledger, actions, remote):
        tx = actions.add_transaction(
            date=date(2024, 2, 1),
            account=Account.CASH,
            direction=Direction.IN,
            category="Sales",
            actual_amount=Decimal("100"),
        )
        ledger.sync_now()

        actions.update_transaction(_id(tx.result(timeout=1)), {"actual_amount": "80"})
        ledger.sync_now()

        assert ledger.balance_as_of("cash", date(2024, 2, 1)) == Decimal("80")
        stored = remote.query("financial_transactions")[0]
        assert Decimal(stored["actual_amount"]) == Decimal("80")

    def test_transfer_writes_two_movements(self, ledger, actions, bank):
        actions.set_initial_balances(date(2024, 1, 1), Decimal("1000"))

        future = actions.transfer_funds(Decimal("300"), date(2024, 1, 5), "cash", bank)
        ledger.sync_now()

        out_tx, in_tx = future.result(timeout=1)
        assert out_tx["direction"] == "out"
        assert in_tx["direction"] == "in"
        assert out_tx["category"] == in_tx["category"] == "Funds Transfer"
        assert ledger.balance_as_of("cash", date(2024, 1, 5)) == Decimal("700")
        assert ledger.balance_as_of(bank, date(2024, 1, 5)) == Decimal("300")

    def test_transfer_to_same_account_rejected(self, actions):
        with pytest.raises(ValidationError):
            actions.transfer_funds(Decimal("10"), date(2024, 1, 5), "cash", "cash")

    def test_initial_balances_replaced(self, ledger, actions, bank):
        actions.set_initial_balances(date(2024, 1, 1), Decimal("500"), {bank: Decimal("200")})
        actions.set_initial_balances(date(2024, 1, 1), Decimal("-50"))
        ledger.sync_now()

        assert ledger.balance_as_of("cash", date(2024, 1, 31)) == Decimal("-50")
        assert ledger.balance_as_of(bank, date(2024, 1, 31)) == Decimal("0")
        assert actions.queue_stats().total == 0


class TestPayments:

    def test_fifo_payment_mirrored_remotely(self, ledger, actions, remote, contact):
        first = actions.add_obligation(contact, Decimal("1000"), LedgerKind.PAYABLE, date(2024, 1, 1))
        second = actions.add_obligation(contact, Decimal("500"), LedgerKind.PAYABLE, date(2024, 1, 10))
        payment = actions.record_payment(
            contact, Decimal("1200"), date(2024, 1, 15), PaymentMethod.CASH
        )
        ledger.sync_now()

        first_id = first.result(timeout=1).entry_id
        second_id = second.result(timeout=1).entry_id
        result = payment.result(timeout=1)
        assert result.plan.as_mapping() == {str(first_id): "1000", str(second_id): "200"}
        remote_second = remote.query("ledger_transactions", {"id": str(second_id)})[0]
        assert remote_second["status"] == "partially_paid"
        assert Decimal(remote_second["paid_amount"]) == Decimal("200")
        assert ledger.balance_as_of("cash", date(2024, 1, 15)) == Decimal("-1200")

    def test_overpayment_becomes_credit_for_next_obligation(self, ledger, actions, remote, contact):
        actions.add_obligation(contact, Decimal("1000"), LedgerKind.PAYABLE, date(2024, 1, 1))
        payment = actions.record_payment(
            contact, Decimal("1200"), date(2024, 1, 15), PaymentMethod.CASH
        )
        ledger.sync_now()
        assert payment.result(timeout=1).advance_id is not None
        assert ledger.available_credit(contact) == Decimal("200")

        credit = actions.add_obligation(contact, Decimal("300"), LedgerKind.PAYABLE, date(2024, 2, 1))
        ledger.sync_now()

        result = credit.result(timeout=1)
        assert ledger.available_credit(contact) == Decimal("0")
        [item] = ledger.open_items(contact, LedgerKind.PAYABLE)
        assert item.id == result.entry_id
        assert item.outstanding == Decimal("100")
        remote_entry = remote.query("ledger_transactions", {"id": str(result.entry_id)})[0]
        assert Decimal(remote_entry["amount"]) == Decimal("100")

    def test_bank_payment_requires_bank(self, actions, contact):
        with pytest.raises(ValidationError):
            actions.record_payment(contact, Decimal("10"), date(2024, 1, 1), PaymentMethod.BANK)

    def test_advance_payment(self, ledger, actions, contact):
        future = actions.record_advance_payment(
            contact, Decimal("400"), date(2024, 1, 5), PaymentMethod.CASH
        )
        ledger.sync_now()

        advance, tx = future.result(timeout=1)
        assert Decimal(advance["amount"]) == Decimal("-400")
        assert tx["category"] == "Advance Payment"
        assert ledger.available_credit(contact) == Decimal("400")

    def test_receivable_collection(self, ledger, actions, contact):
        actions.add_obligation(contact, Decimal("80"), LedgerKind.RECEIVABLE, date(2024, 1, 1))
        actions.record_payment(
            contact, Decimal("80"), date(2024, 1, 9), PaymentMethod.CASH,
            kind=LedgerKind.RECEIVABLE,
        )
        ledger.sync_now()

        assert ledger.open_items(contact, LedgerKind.RECEIVABLE) == []
        assert ledger.balance_as_of("cash", date(2024, 1, 9)) == Decimal("80")

    def test_editing_paid_amount_past_amount_rejected(self, ledger, actions, contact):
        obligation = actions.add_obligation(contact, Decimal("1000"), LedgerKind.PAYABLE, date(2024, 1, 1))
        ledger.sync_now()
        entry_id = obligation.result(timeout=1).entry_id

        with pytest.raises(OverpaymentError):
            actions.update_transaction(
                entry_id, {"paid_amount": "5000"}, table="ledger_transactions"
            )

        assert actions.queue_stats().total == 0
        [item] = ledger.open_items(contact, LedgerKind.PAYABLE)
        assert item.outstanding == Decimal("1000")

    def test_installments_cannot_be_edited(self, ledger, actions, remote, contact):
        obligation = actions.add_obligation(contact, Decimal("1000"), LedgerKind.PAYABLE, date(2024, 1, 1))
        payment = actions.record_payment(contact, Decimal("400"), date(2024, 1, 2), PaymentMethod.CASH)
        ledger.sync_now()
        entry_id = obligation.result(timeout=1).entry_id
        installment_id = payment.result(timeout=1).installment_ids[entry_id]

        with pytest.raises(LedgerIntegrityError):
            actions.update_transaction(
                installment_id, {"amount": "999"}, table="payment_installments"
            )

        [remote_installment] = remote.query("payment_installments")
        assert Decimal(remote_installment["amount"]) == Decimal("400")


class TestStock:

    def test_purchase_and_sale(self, ledger, actions, remote):
        actions.add_stock_transaction(
            date=date(2024, 1, 2),
            item_name="rice",
            kind=StockKind.PURCHASE,
            weight=Decimal("100"),
            price_per_unit=Decimal("10"),
            payment_method=PaymentMethod.CASH,
        )
        sale = actions.add_stock_transaction(
            date=date(2024, 1, 5),
            item_name="rice",
            kind=StockKind.SALE,
            weight=Decimal("40"),
            price_per_unit=Decimal("15"),
            payment_method=PaymentMethod.CASH,
        )
        ledger.sync_now()

        result = sale.result(timeout=1)
        assert result.financial_transaction["category"] == "Stock Sale"
        assert result.financial_transaction["linked_stock_tx_id"] == result.stock_transaction["id"]
        rice = ledger.stock_positions(date(2024, 1, 31))["rice"]
        assert rice.weight == Decimal("60")
        assert rice.value == Decimal("600")
        assert ledger.balance_as_of("cash", date(2024, 1, 31)) == Decimal("-400")
        assert len(remote.query("stock_transactions")) == 2

    def test_oversell_rejected_synchronously(self, actions):
        actions.set_initial_stock("rice", Decimal("10"), Decimal("5"), date(2024, 1, 1))
        before = actions.queue_stats().total

        with pytest.raises(InsufficientStockError):
            actions.add_stock_transaction(
                date=date(2024, 1, 5),
                item_name="rice",
                kind=StockKind.SALE,
                weight=Decimal("11"),
                price_per_unit=Decimal("8"),
                payment_method=PaymentMethod.CASH,
            )

        assert actions.queue_stats().total == before

    def test_credit_purchase_creates_payable(self, ledger, actions, contact):
        future = actions.add_stock_transaction(
            date=date(2024, 1, 2),
            item_name="rice",
            kind=StockKind.PURCHASE,
            weight=Decimal("10"),
            price_per_unit=Decimal("10"),
            payment_method=PaymentMethod.CREDIT,
            contact_id=contact,
        )
        ledger.sync_now()

        result = future.result(timeout=1)
        assert result.financial_transaction is None
        [item] = ledger.open_items(contact, LedgerKind.PAYABLE)
        assert item.id == result.credit.entry_id
        assert item.outstanding == Decimal("100")

    def test_credit_requires_contact(self, actions):
        with pytest.raises(ValidationError):
            actions.add_stock_transaction(
                date=date(2024, 1, 2),
                item_name="rice",
                kind=StockKind.PURCHASE,
                weight=Decimal("1"),
                price_per_unit=Decimal("1"),
                payment_method=PaymentMethod.CREDIT,
            )

    def test_update_recomputes_linked_movement(self, ledger, actions):
        purchase = actions.add_stock_transaction(
            date=date(2024, 1, 2),
            item_name="rice",
            kind=StockKind.PURCHASE,
            weight=Decimal("10"),
            price_per_unit=Decimal("10"),
            payment_method=PaymentMethod.CASH,
        )
        ledger.sync_now()
        stock_id = _id(purchase.result(timeout=1).stock_transaction)

        actions.update_stock_transaction(stock_id, {"weight": "12"})
        ledger.sync_now()

        assert ledger.balance_as_of("cash", date(2024, 1, 2)) == Decimal("-120")
        assert ledger.stock_positions(date(2024, 1, 2))["rice"].weight == Decimal("12")

    def test_update_rejects_unknown_field(self, actions):
        with pytest.raises(ValidationError):
            actions.update_stock_transaction(uuid4(), {"kind": "sale"})

    def test_initial_stock_replaced(self, ledger, actions):
        actions.set_initial_stock("rice", Decimal("10"), Decimal("5"), date(2024, 1, 1))
        actions.set_initial_stock("rice", Decimal("20"), Decimal("5"), date(2024, 1, 1))
        ledger.sync_now()

        assert len(ledger.query("initial_stock")) == 1
        assert ledger.stock_positions(date(2024, 1, 1))["rice"].weight == Decimal("20")


class TestLoans:

    def test_loan_paid_off(self, ledger, actions, contact):
        loan = actions.add_loan(
            contact, LoanKind.PAYABLE, Decimal("1000"), date(2024, 1, 1), PaymentMethod.CASH
        )
        ledger.sync_now()
        loan_id = _id(loan.result(timeout=1).loan)

        actions.record_loan_payment(loan_id, Decimal("600"), date(2024, 2, 1), PaymentMethod.CASH)
        last = actions.record_loan_payment(
            loan_id, Decimal("400"), date(2024, 3, 1), PaymentMethod.CASH
        )
        ledger.sync_now()

        result = last.result(timeout=1)
        assert result.loan["status"] == "paid"
        assert result.financial_transaction["direction"] == "out"
        assert ledger.balance_as_of("cash", date(2024, 3, 1)) == Decimal("0")

    def test_due_before_issue_rejected(self, actions, contact):
        with pytest.raises(ValidationError):
            actions.add_loan(
                contact, LoanKind.RECEIVABLE, Decimal("100"), date(2024, 2, 1),
                PaymentMethod.CASH, due_date=date(2024, 1, 1),
            )


class TestRecycleBin:

    def test_empty_recycle_bin(self, ledger, actions, remote, contact):
        actions.delete_contact(contact)
        ledger.sync_now()

        purged = actions.empty_recycle_bin()
        ledger.sync_now()

        assert purged.result(timeout=1).count == 1
        assert actions.recycle_bin("contacts") == []
        assert remote.query("contacts", recycle_bin=True) == []


class TestQueueManagement:

    def test_cancel_pending_entry(self, ledger, actions, remote):
        future = actions.add_bank("City")
        [entry] = actions.queue_entries()

        actions.cancel_entry(entry.id)

        assert future.cancelled()
        with pytest.raises(CancelledError):
            future.result(timeout=0)
        assert len(ledger.query("banks")) == 1
        ledger.sync_now()
        assert remote.query("banks") == []

    def test_retry_failed_after_fix(self, ledger, actions, remote, monkeypatch):
        real_create = remote.create

        def reject(table, record):
            raise ConflictError(table, str(record["id"]), "rejected")

        monkeypatch.setattr(remote, "create", reject)
        actions.add_bank("City")
        ledger.sync_now()
        [entry] = actions.queue_entries()
        assert entry.last_error_code == "CONFLICT"

        monkeypatch.setattr(remote, "create", real_create)
        actions.retry_failed(entry.id)
        ledger.sync_now()

        assert actions.queue_stats().total == 0
        assert len(remote.query("banks")) == 1


class TestBackup:

    def test_import_requires_empty_queue(self, actions):
        actions.add_bank("City")
        with pytest.raises(ValidationError):
            actions.import_all({"banks": []})

    def test_viewer_cannot_import(self, local_db, clock):
        viewer = Ledger(local_db, clock=clock, role=Role.VIEWER)
        with pytest.raises(AuthorizationError):
            viewer.actions.import_all({})

    def test_export_import_round_trip(self, ledger, actions, remote, contact):
        actions.add_obligation(contact, Decimal("100"), LedgerKind.PAYABLE, date(2024, 1, 1))
        ledger.sync_now()
        dump = actions.export_all()

        outcome = actions.import_all(dump)

        assert outcome.ok
        assert outcome.remote is not None
        assert outcome.local.imported["contacts"] == 1
        assert [i.outstanding for i in ledger.open_items(contact, LedgerKind.PAYABLE)] == [
            Decimal("100")
        ]
