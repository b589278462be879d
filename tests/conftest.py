"""
Pytest fixtures for the ledger kernel test suite.

Provides:
- In-memory SQLite databases for the device (local) and the server (remote)
- A deterministic clock
- Captured structured logs
- Small builders for contacts, banks and ledger entries

Every in-memory Database holds exactly one connection (StaticPool), so a
test never keeps the ``session`` fixture open while also going through
``Database.session_scope`` on the same database.
"""

import json
import logging
from datetime import UTC, date, datetime
from decimal import Decimal
from io import StringIO
from uuid import UUID

import pytest

from ledger_engines.costing import InventoryCostingEngine
from ledger_kernel.db.engine import Database
from ledger_kernel.domain.clock import DeterministicClock
from ledger_kernel.domain.enums import LedgerKind, LedgerStatus
from ledger_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from ledger_kernel.services.local_store import LocalStore
from ledger_kernel.services.sync_queue import SyncQueueService
from ledger_services.ledger import Ledger
from ledger_services.remote import SqlRemoteBackend


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture ledger_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, store):
            store.create("banks", {"name": "City"})
            assert any(r["message"] == "record_created" for r in captured_logs())
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("ledger_kernel")
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)


# =============================================================================
# Clock and databases
# =============================================================================


@pytest.fixture
def clock() -> DeterministicClock:
    return DeterministicClock(datetime(2024, 3, 1, 9, 0, 0, tzinfo=UTC))


def _memory_database() -> Database:
    database = Database("sqlite://")
    database.create_tables()
    return database


@pytest.fixture
def local_db():
    database = _memory_database()
    yield database
    database.dispose()


@pytest.fixture
def remote_db():
    database = _memory_database()
    yield database
    database.dispose()


@pytest.fixture
def session(local_db):
    """A raw session on the local database; rolled back after the test."""
    session = local_db.session()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def queue(session, clock) -> SyncQueueService:
    return SyncQueueService(session, clock)


@pytest.fixture
def store(session, clock, queue) -> LocalStore:
    return LocalStore(session, clock, queue)


@pytest.fixture
def remote(remote_db, clock) -> SqlRemoteBackend:
    return SqlRemoteBackend(remote_db, clock)


@pytest.fixture
def ledger(local_db, remote, clock):
    """A device ledger wired to an in-memory remote, worker driven by sync_now()."""
    ledger = Ledger(
        local_db,
        clock=clock,
        remote=remote,
        costing_engine=InventoryCostingEngine(),
    )
    ledger.init(start_worker=False)
    yield ledger
    ledger.shutdown()


# =============================================================================
# Builders
# =============================================================================


@pytest.fixture
def make_contact(store):
    def _make(name: str = "Acme Traders", kind: str = "both") -> UUID:
        return store.create("contacts", {"name": name, "kind": kind}).id

    return _make


@pytest.fixture
def make_bank(store):
    def _make(name: str = "City Bank") -> UUID:
        return store.create("banks", {"name": name}).id

    return _make


@pytest.fixture
def make_entry(store, clock):
    """Create a payable/receivable entry; advances the clock so created_at is unique."""

    def _make(
        contact_id: UUID,
        amount: str,
        day: date,
        kind: LedgerKind = LedgerKind.PAYABLE,
    ) -> UUID:
        clock.advance(1)
        return store.create(
            "ledger_transactions",
            {
                "date": day,
                "kind": kind,
                "amount": Decimal(amount),
                "paid_amount": Decimal("0"),
                "status": LedgerStatus.UNPAID,
                "contact_id": contact_id,
            },
        ).id

    return _make
