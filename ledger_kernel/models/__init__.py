"""
ORM models for the ledger kernel.

``SYNCED_TABLES`` lists the tables mirrored to the remote store in parent-
before-child order; export, import and purge cascades follow it.
"""

from ledger_kernel.models.app_state import APP_STATE_ID, AppState
from ledger_kernel.models.contact import Bank, Contact
from ledger_kernel.models.financial import FinancialTransaction
from ledger_kernel.models.ledger import LedgerTransaction, PaymentInstallment
from ledger_kernel.models.loan import Loan, LoanPayment
from ledger_kernel.models.snapshot import MonthlySnapshot
from ledger_kernel.models.stock import InitialStockItem, StockTransaction
from ledger_kernel.models.sync_queue import AppliedOperation, SequenceCounter, SyncQueueEntry

TABLE_MODELS = {
    model.__tablename__: model
    for model in (
        Bank,
        Contact,
        Loan,
        LedgerTransaction,
        StockTransaction,
        InitialStockItem,
        FinancialTransaction,
        PaymentInstallment,
        LoanPayment,
        MonthlySnapshot,
    )
}

# Parent tables before children
SYNCED_TABLES: tuple[str, ...] = tuple(TABLE_MODELS)

# Tables whose rows go through the recycle bin
SOFT_DELETE_TABLES: tuple[str, ...] = (
    "contacts",
    "financial_transactions",
    "stock_transactions",
    "ledger_transactions",
)

__all__ = [
    "APP_STATE_ID",
    "AppState",
    "AppliedOperation",
    "Bank",
    "Contact",
    "FinancialTransaction",
    "InitialStockItem",
    "LedgerTransaction",
    "Loan",
    "LoanPayment",
    "MonthlySnapshot",
    "PaymentInstallment",
    "SequenceCounter",
    "StockTransaction",
    "SyncQueueEntry",
    "TABLE_MODELS",
    "SYNCED_TABLES",
    "SOFT_DELETE_TABLES",
]
