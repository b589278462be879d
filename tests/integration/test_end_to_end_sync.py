"""
End-to-end sync tests: devices, the replay worker and a shared remote store.

Covers:
- A ledger built from a settings file replaying on its background thread
- Offline work resolving once connectivity returns
- Crash recovery: entries left Sending are resent and applied once
- Two devices paying the same contact: the stale plan is rejected remotely
"""

from __future__ import annotations

import threading
from datetime import date
from decimal import Decimal
from uuid import UUID

import pytest
import yaml

from ledger_config import get_active_config
from ledger_config.schema import SyncPolicy
from ledger_kernel.db.engine import Database
from ledger_kernel.domain.clock import SystemClock
from ledger_kernel.domain.enums import ContactKind, LedgerKind, PaymentMethod
from ledger_kernel.exceptions import AllocationConflictError, NetworkError
from ledger_kernel.services.sync_queue import SyncQueueService
from ledger_services.ledger import Ledger
from ledger_services.remote import SqlRemoteBackend

FAST_SYNC = SyncPolicy(
    backoff_base_seconds=0.05,
    backoff_max_seconds=0.2,
    poll_interval_seconds=0.05,
)


def _id(record: dict) -> UUID:
    return UUID(record["id"])


class SwitchableRemote(SqlRemoteBackend):
    """SqlRemoteBackend that refuses every call while offline."""

    def __init__(self, database, clock):
        super().__init__(database, clock)
        self.online = threading.Event()

    def _check_online(self, operation):
        if not self.online.is_set():
            raise NetworkError(operation, "offline")

    def create(self, table, record):
        self._check_online(f"create {table}")
        return super().create(table, record)

    def is_available(self):
        return self.online.is_set()


@pytest.fixture
def file_databases(tmp_path):
    local = Database(f"sqlite:///{tmp_path}/device.db")
    remote = Database(f"sqlite:///{tmp_path}/server.db")
    local.create_tables()
    remote.create_tables()
    yield local, remote
    local.dispose()
    remote.dispose()


class TestBackgroundReplay:

    def test_ledger_from_settings(self, tmp_path):
        path = tmp_path / "device.yaml"
        path.write_text(
            yaml.safe_dump(
                {
                    "config_id": "e2e",
                    "version": 1,
                    "local_database": {"url": f"sqlite:///{tmp_path}/local.db"},
                    "remote_database": {"url": f"sqlite:///{tmp_path}/remote.db"},
                    "sync": {
                        "backoff_base_seconds": 0.05,
                        "backoff_max_seconds": 0.2,
                        "poll_interval_seconds": 0.05,
                    },
                }
            )
        )

        with Ledger.from_settings(get_active_config(path)) as ledger:
            assert ledger.worker.is_running
            contact = _id(ledger.actions.add_contact("Acme", ContactKind.VENDOR).result(timeout=10))
            ledger.actions.add_obligation(
                contact, Decimal("300"), LedgerKind.PAYABLE, date(2024, 1, 1)
            ).result(timeout=10)
            payment = ledger.actions.record_payment(
                contact, Decimal("120"), date(2024, 1, 2), PaymentMethod.CASH
            ).result(timeout=10)

            [remote_entry] = ledger.remote.query("ledger_transactions")
            assert Decimal(remote_entry["paid_amount"]) == Decimal("120")
            assert payment.advance_id is None
            assert ledger.actions.queue_stats().total == 0

        assert not ledger.worker.is_running

    def test_offline_work_resolves_when_connectivity_returns(self, file_databases):
        local, remote_db = file_databases
        remote = SwitchableRemote(remote_db, SystemClock())
        ledger = Ledger(local, remote=remote, sync_policy=FAST_SYNC)
        ledger.init()
        try:
            future = ledger.actions.add_bank("City")
            with pytest.raises(TimeoutError):
                future.result(timeout=0.3)
            assert ledger.actions.queue_stats().pending == 1

            remote.online.set()

            bank = future.result(timeout=10)
            assert [b["id"] for b in remote.query("banks")] == [bank["id"]]
        finally:
            ledger.shutdown()


class TestCrashRecovery:

    def test_entry_left_sending_is_resent_once(self, file_databases, clock):
        local, remote_db = file_databases
        remote = SqlRemoteBackend(remote_db, clock)
        first = Ledger(local, clock=clock, remote=remote)
        first.init(start_worker=False)
        first.actions.add_contact("Acme")
        with local.session_scope() as session:
            queue = SyncQueueService(session, clock)
            [entry] = queue.entries()
            queue.mark_sending(entry)
            record = entry.payload["record"]
        # The remote applied it, then the device died before confirming.
        remote.create("contacts", record)

        restarted = Ledger(local, clock=clock, remote=remote)
        restarted.init(start_worker=False)

        assert restarted.sync_now() == 1
        assert len(remote.query("contacts")) == 1
        assert restarted.actions.queue_stats().total == 0

    def test_payment_resent_after_crash_applied_once(self, ledger, remote, local_db, clock):
        contact = ledger.actions.add_contact("Acme")
        ledger.sync_now()
        contact_id = _id(contact.result(timeout=1))
        ledger.actions.add_obligation(contact_id, Decimal("100"), LedgerKind.PAYABLE, date(2024, 1, 1))
        ledger.sync_now()
        ledger.actions.record_payment(contact_id, Decimal("40"), date(2024, 1, 2), PaymentMethod.CASH)
        with local_db.session_scope() as session:
            [entry] = SyncQueueService(session, clock).entries()
            entry_id, payload = entry.id, dict(entry.payload)
        remote.allocate_payment(entry_id, payload)

        ledger.sync_now()

        [remote_entry] = remote.query("ledger_transactions")
        assert Decimal(remote_entry["paid_amount"]) == Decimal("40")
        assert len(remote.query("financial_transactions")) == 1
        assert len(remote.query("payment_installments")) == 1


class TestTwoDevices:

    @pytest.fixture
    def second_device(self, remote, clock):
        database = Database("sqlite://")
        ledger = Ledger(database, clock=clock, remote=remote)
        ledger.init(start_worker=False)
        yield ledger
        ledger.shutdown()
        database.dispose()

    def test_stale_plan_rejected(self, ledger, second_device, remote):
        contact = ledger.actions.add_contact("Acme")
        ledger.sync_now()
        contact_id = _id(contact.result(timeout=1))
        older = ledger.actions.add_obligation(
            contact_id, Decimal("50"), LedgerKind.PAYABLE, date(2024, 1, 1)
        )
        ledger.actions.add_obligation(contact_id, Decimal("100"), LedgerKind.PAYABLE, date(2024, 1, 5))
        ledger.sync_now()
        older_id = older.result(timeout=1).entry_id
        assert second_device.actions.import_all(ledger.actions.export_all()).ok

        first_pays = ledger.actions.record_payment(
            contact_id, Decimal("50"), date(2024, 1, 10), PaymentMethod.CASH
        )
        ledger.sync_now()
        second_pays = second_device.actions.record_payment(
            contact_id, Decimal("50"), date(2024, 1, 11), PaymentMethod.CASH
        )
        second_device.sync_now()

        first_pays.result(timeout=1)
        with pytest.raises(AllocationConflictError):
            second_pays.result(timeout=1)
        remote_older = remote.query("ledger_transactions", {"id": str(older_id)})[0]
        assert Decimal(remote_older["paid_amount"]) == Decimal("50")
        assert len(remote.query("financial_transactions")) == 1
        assert second_device.actions.queue_stats().failed == 1

