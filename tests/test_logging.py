"""
Tests for structured logging (ledger_kernel/logging_config.py).

Covers:
- JSON line format, extras and kernel exception fields
- LogContext binding, validation and per-thread isolation
- configure_logging owning exactly one handler
- Sync context on real lines: action correlation, queue entry and device ids
"""

import json
import logging
import threading
from decimal import Decimal
from io import StringIO
from uuid import uuid4

import pytest

from ledger_kernel.db.engine import Database
from ledger_kernel.domain.enums import LedgerKind
from ledger_kernel.exceptions import NetworkError
from ledger_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    get_logger,
    reset_logging,
)
from ledger_services.ledger import Ledger
from ledger_services.remote import SqlRemoteBackend


@pytest.fixture(autouse=True)
def _own_logging():
    """Give each test a fresh handler, then restore the suite configuration."""
    reset_logging()
    yield
    reset_logging()
    configure_logging(level=logging.DEBUG)


@pytest.fixture
def lines():
    stream = StringIO()
    configure_logging(level=logging.DEBUG, stream=stream)

    def _read() -> list[dict]:
        return [json.loads(line) for line in stream.getvalue().splitlines() if line]

    return _read


class TestStructuredFormatter:

    def test_line_shape(self, lines):
        get_logger("test").info("hello")

        [record] = lines()
        assert record["message"] == "hello"
        assert record["level"] == "INFO"
        assert record["logger"] == "ledger_kernel.test"
        assert "ts" in record

    def test_domain_values_serialized(self, lines):
        entry_id = uuid4()
        get_logger("test").info(
            "sync_entry_enqueued",
            extra={"entry_id": entry_id, "amount": Decimal("12.50"), "kind": LedgerKind.PAYABLE},
        )

        [record] = lines()
        assert record["entry_id"] == str(entry_id)
        assert record["amount"] == "12.50"
        assert record["kind"] == "payable"

    def test_kernel_exception_fields(self, lines):
        try:
            raise NetworkError("create banks", "connection refused")
        except NetworkError:
            get_logger("test").warning("sync_entry_retry_scheduled", exc_info=True)

        [record] = lines()
        assert record["exc_code"] == "NETWORK_UNAVAILABLE"
        assert record["exc_retryable"] is True
        assert record["exc_operation"] == "create banks"
        assert record["exc_detail"] == "connection refused"
        assert "traceback" in record

    def test_plain_exception_has_no_code(self, lines):
        try:
            raise ValueError("boom")
        except ValueError:
            get_logger("test").error("failed", exc_info=True)

        [record] = lines()
        assert record["exc_type"] == "ValueError"
        assert "exc_code" not in record


class TestLogContext:

    def test_bind_restores_previous_value(self):
        LogContext.set(correlation_id="outer")
        with LogContext.bind(correlation_id="inner", queue_entry_id="q1"):
            assert LogContext.get_all() == {"correlation_id": "inner", "queue_entry_id": "q1"}
        assert LogContext.get_all() == {"correlation_id": "outer"}

    def test_none_values_skipped(self):
        with LogContext.bind(device_id=None, record_id="r1"):
            assert LogContext.get_all() == {"record_id": "r1"}

    def test_unknown_field_rejected(self):
        with pytest.raises(TypeError):
            LogContext.set(entry_id="x")

    def test_other_threads_do_not_inherit(self):
        seen = {}
        LogContext.set(device_id="main-device")
        worker = threading.Thread(target=lambda: seen.update(LogContext.get_all()))
        worker.start()
        worker.join()
        assert seen == {}


class TestConfigureLogging:

    def test_second_call_returns_first_handler(self):
        first = configure_logging(handler=logging.StreamHandler(StringIO()))
        second = configure_logging(handler=logging.StreamHandler(StringIO()))

        handlers = logging.getLogger("ledger_kernel").handlers
        assert second is first
        assert handlers.count(first) == 1
        assert sum(isinstance(h.formatter, StructuredFormatter) for h in handlers) == 1

    def test_reset_leaves_foreign_handlers(self):
        foreign = logging.NullHandler()
        root = logging.getLogger("ledger_kernel")
        root.addHandler(foreign)
        try:
            installed = configure_logging(stream=StringIO())
            reset_logging()
            assert installed not in root.handlers
            assert foreign in root.handlers
        finally:
            root.removeHandler(foreign)


class TestSyncContext:

    def test_action_lines_share_correlation_and_device(self, ledger, lines):
        ledger.actions.add_contact("Acme")

        records = lines()
        [submitted] = [r for r in records if r["message"] == "action_submitted"]
        [created] = [r for r in records if r["message"] == "record_created"]
        assert created["correlation_id"] == submitted["correlation_id"]
        assert submitted["device_id"] == str(ledger.device_id)
        assert "correlation_id" not in LogContext.get_all()

    def test_delivery_lines_carry_queue_entry_and_record(self, ledger, lines):
        future = ledger.actions.add_bank("City")
        ledger.sync_now()
        bank = future.result(timeout=1)

        [applied] = [r for r in lines() if r["message"] == "sync_entry_applied"]
        assert applied["record_id"] == bank["id"]
        assert applied["device_id"] == str(ledger.device_id)
        assert "queue_entry_id" in applied
        assert "queue_entry_id" not in LogContext.get_all()

    def test_worker_thread_lines_carry_device(self, tmp_path, clock, lines):
        local = Database(f"sqlite:///{tmp_path}/device.db")
        server = Database(f"sqlite:///{tmp_path}/server.db")
        server.create_tables()
        ledger = Ledger(local, clock=clock, remote=SqlRemoteBackend(server, clock))
        ledger.init(start_worker=True)
        try:
            ledger.actions.add_bank("City").result(timeout=10)
        finally:
            ledger.shutdown()
            local.dispose()
            server.dispose()

        [applied] = [r for r in lines() if r["message"] == "sync_entry_applied"]
        assert applied["device_id"] == str(ledger.device_id)

    def test_two_ledgers_keep_their_own_device(self, ledger, remote, clock, lines):
        other_db = Database("sqlite://")
        other = Ledger(other_db, clock=clock, remote=remote)
        other.init(start_worker=False)
        try:
            ledger.actions.add_bank("First")
            other.actions.add_bank("Second")
        finally:
            other.shutdown()
            other_db.dispose()

        devices = [r["device_id"] for r in lines() if r["message"] == "action_submitted"]
        assert devices == [str(ledger.device_id), str(other.device_id)]
        assert ledger.device_id != other.device_id
