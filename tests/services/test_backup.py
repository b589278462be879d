"""
Tests for backup export and import.

Covers:
- Export format and parent-first ordering
- Full replace on import, including tables missing from the payload
- Abort on the first bad table with a report of what was loaded
"""

from datetime import date
from decimal import Decimal
from uuid import uuid4

from ledger_kernel.models import SYNCED_TABLES
from ledger_kernel.services.local_store import LocalStore
from ledger_services.backup import BACKUP_FORMAT_VERSION, export_tables, import_tables


def _seed(local_db, clock):
    with local_db.session_scope() as session:
        store = LocalStore(session, clock)
        contact = store.create("contacts", {"name": "Acme", "kind": "both"})
        store.create(
            "ledger_transactions",
            {
                "date": date(2024, 1, 1),
                "kind": "payable",
                "amount": Decimal("100"),
                "paid_amount": Decimal("0"),
                "status": "unpaid",
                "contact_id": contact.id,
            },
        )
        return contact.id


def _export(database):
    with database.session_scope() as session:
        return export_tables(session)


class TestExport:

    def test_every_synced_table_present(self, local_db, clock):
        _seed(local_db, clock)

        payload = _export(local_db)

        assert payload["format_version"] == BACKUP_FORMAT_VERSION
        assert set(SYNCED_TABLES) <= set(payload)
        assert len(payload["contacts"]) == 1
        assert payload["ledger_transactions"][0]["amount"].startswith("100")

    def test_values_are_json_safe(self, local_db, clock):
        contact_id = _seed(local_db, clock)

        [row] = _export(local_db)["contacts"]

        assert row["id"] == str(contact_id)
        assert isinstance(row["created_at"], str)


class TestImport:

    def test_into_empty_database(self, local_db, remote_db, clock):
        _seed(local_db, clock)
        payload = _export(local_db)

        report = import_tables(remote_db, payload)

        assert report.ok
        assert report.imported["contacts"] == 1
        assert report.imported["ledger_transactions"] == 1
        assert _export(remote_db)["ledger_transactions"] == payload["ledger_transactions"]

    def test_replaces_existing_rows(self, local_db, clock):
        _seed(local_db, clock)

        report = import_tables(local_db, {"contacts": []})

        assert report.ok
        payload = _export(local_db)
        assert payload["contacts"] == []
        assert payload["ledger_transactions"] == []

    def test_bad_row_reported(self, local_db, clock):
        _seed(local_db, clock)
        payload = _export(local_db)
        payload["ledger_transactions"] = [{"id": str(uuid4()), "amount": "lots"}]

        report = import_tables(local_db, payload)

        assert not report.ok
        assert report.failed_table == "ledger_transactions"
        assert report.error_code == "VALIDATION_ERROR"
        assert report.imported["contacts"] == 1
        assert "ledger_transactions" not in report.imported
        assert report.as_dict()["failed_table"] == "ledger_transactions"
