"""
Ledger Kernel - offline-first bookkeeping core

A local-first store for cash, bank, stock and payable/receivable ledgers with:
- Client-generated identifiers reused by the remote store
- A durable, ordered sync queue replayed idempotently
- Soft delete with an explicit recycle bin
- Decimal arithmetic throughout
"""

__version__ = "0.1.0"
