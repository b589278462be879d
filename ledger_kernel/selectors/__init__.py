"""Selectors for the ledger kernel (read side)."""

from ledger_kernel.selectors.ledger_selector import LedgerSelector
from ledger_kernel.selectors.transaction_selector import (
    CASH,
    TransactionSelector,
    parse_account,
)

__all__ = [
    "CASH",
    "LedgerSelector",
    "TransactionSelector",
    "parse_account",
]
