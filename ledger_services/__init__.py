"""
ledger_services -- Package init and public API.

Responsibility:
    Stateful orchestration over the kernel and the engines: balances and
    snapshots, payment allocation, the remote backend, the replay worker,
    the action facade and the Ledger application object.

Architecture position:
    Services -- outermost layer.

    Dependency direction:
        ledger_services/ -> ledger_engines/  (allowed)
        ledger_services/ -> ledger_kernel/   (allowed)
        ledger_engines/  -> ledger_services/ (FORBIDDEN)
        ledger_kernel/   -> ledger_services/ (FORBIDDEN)
"""

from ledger_kernel.logging_config import get_logger

logger = get_logger("services")

from ledger_services.actions import (  # noqa: E402
    ImportOutcome,
    LedgerActions,
    LoanResult,
    PendingActions,
    StockResult,
)
from ledger_services.backup import ImportReport, export_tables, import_tables  # noqa: E402
from ledger_services.balance_calculator import (  # noqa: E402
    BalanceCalculator,
    BalanceStatement,
    Position,
)
from ledger_services.events import SyncEvent, SyncEventBus, SyncEventKind  # noqa: E402
from ledger_services.ledger import Ledger  # noqa: E402
from ledger_services.payment_allocator import (  # noqa: E402
    CreditResult,
    PaymentAllocator,
    PaymentResult,
)
from ledger_services.remote import (  # noqa: E402
    RemoteBackend,
    RemoteCredentials,
    SqlRemoteBackend,
)
from ledger_services.snapshot_service import SnapshotService  # noqa: E402
from ledger_services.sync_worker import SyncWorker, backoff_delay  # noqa: E402

__all__ = [
    "BalanceCalculator",
    "BalanceStatement",
    "CreditResult",
    "ImportOutcome",
    "ImportReport",
    "Ledger",
    "LedgerActions",
    "LoanResult",
    "PaymentAllocator",
    "PaymentResult",
    "PendingActions",
    "Position",
    "RemoteBackend",
    "RemoteCredentials",
    "SnapshotService",
    "SqlRemoteBackend",
    "StockResult",
    "SyncEvent",
    "SyncEventBus",
    "SyncEventKind",
    "SyncWorker",
    "backoff_delay",
    "export_tables",
    "import_tables",
]
