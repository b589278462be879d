"""
ledger_services.backup -- Full export and full-replace import.

Responsibility:
    Dump every synced table of a database to a JSON-safe mapping and load
    such a mapping back, replacing what is there.

Architecture position:
    Services -- used by the Ledger application object for the device's
    store and by SqlRemoteBackend for the shared store.

Invariants enforced:
    - Export is one consistent read (one session).
    - Import clears tables children-first, then inserts parents-first, in
      SYNCED_TABLES order.
    - There is no cross-table transaction: each table is cleared and loaded
      in its own transaction.  The first failing table aborts the import;
      tables already loaded stay loaded and the report says where it
      stopped.

Failure modes:
    - ValidationError from a record that does not fit its table; reported
      in ImportReport, never raised.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ledger_kernel.db.engine import Database
from ledger_kernel.db.serialization import coerce_values, record_to_dict
from ledger_kernel.exceptions import LedgerKernelError
from ledger_kernel.logging_config import get_logger
from ledger_kernel.models import SYNCED_TABLES, TABLE_MODELS

logger = get_logger("services.backup")

BACKUP_FORMAT_VERSION = 1


@dataclass
class ImportReport:
    """Outcome of one import: rows loaded per table and where it stopped."""

    imported: dict[str, int] = field(default_factory=dict)
    failed_table: str | None = None
    error_code: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.failed_table is None

    def as_dict(self) -> dict[str, Any]:
        return {
            "imported": dict(self.imported),
            "failed_table": self.failed_table,
            "error_code": self.error_code,
            "error": self.error,
        }


def export_tables(session: Session) -> dict[str, Any]:
    """Every row of every synced table, parents first."""
    payload: dict[str, Any] = {"format_version": BACKUP_FORMAT_VERSION}
    for table in SYNCED_TABLES:
        model = TABLE_MODELS[table]
        rows = session.execute(select(model).order_by(model.created_at, model.id)).scalars()
        payload[table] = [record_to_dict(row) for row in rows]
    logger.info(
        "backup_exported",
        extra={"row_counts": {t: len(payload[t]) for t in SYNCED_TABLES}},
    )
    return payload


def import_tables(database: Database, payload: dict[str, Any]) -> ImportReport:
    """
    Replace the contents of every synced table with ``payload``.

    Tables missing from ``payload`` are cleared and left empty.
    """
    report = ImportReport()

    for table in reversed(SYNCED_TABLES):
        try:
            with database.session_scope() as session:
                session.execute(delete(TABLE_MODELS[table]))
        except SQLAlchemyError as exc:
            return _abort(report, table, "CLEAR_FAILED", exc)

    for table in SYNCED_TABLES:
        model = TABLE_MODELS[table]
        rows = payload.get(table) or []
        try:
            with database.session_scope() as session:
                for row in rows:
                    session.add(model(**coerce_values(model, row)))
                session.flush()
        except LedgerKernelError as exc:
            return _abort(report, table, exc.code, exc)
        except SQLAlchemyError as exc:
            return _abort(report, table, "IMPORT_FAILED", exc)
        report.imported[table] = len(rows)

    logger.info("backup_imported", extra={"row_counts": report.imported})
    return report


def _abort(report: ImportReport, table: str, code: str, exc: Exception) -> ImportReport:
    report.failed_table = table
    report.error_code = code
    report.error = str(exc)[:1000]
    logger.error(
        "backup_import_aborted",
        extra={"table": table, "error_code": code, "imported": report.imported},
    )
    return report
