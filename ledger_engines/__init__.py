"""
Module: ledger_engines
Responsibility:
    Pure calculation engines: FIFO payment allocation and advance
    consumption, weighted-average inventory costing, and the running
    balance fold.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import ledger_kernel.domain, ledger_kernel.exceptions and the
    kernel logger.  MUST NOT import ledger_services.

Invariants enforced:
    - Engines never read the clock; dates come in as parameters.
    - Decimal-only arithmetic.
    - Identical inputs always produce identical outputs.

Audit relevance:
    Every engine entry point is wrapped in ``@traced_engine`` and emits a
    LEDGER_ENGINE_TRACE log record.
"""

from ledger_engines.allocation import (
    AllocationLine,
    AllocationPlan,
    CreditLine,
    CreditPlan,
    PaymentAllocationEngine,
    derive_status,
)
from ledger_engines.balances import BalanceFoldEngine, BalanceRow
from ledger_engines.costing import InventoryCostingEngine, SaleCost, StockPosition
from ledger_engines.tracer import traced_engine

__all__ = [
    "AllocationLine",
    "AllocationPlan",
    "BalanceFoldEngine",
    "BalanceRow",
    "CreditLine",
    "CreditPlan",
    "InventoryCostingEngine",
    "PaymentAllocationEngine",
    "SaleCost",
    "StockPosition",
    "derive_status",
    "traced_engine",
]
