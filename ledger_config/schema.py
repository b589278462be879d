"""
Ledger settings schema.

Frozen dataclasses the YAML settings file is parsed into.  The loader
produces them; ``ledger_config.get_active_config()`` hands the resulting
``LedgerSettings`` to ``ledger_services.ledger.Ledger``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal

from ledger_kernel.domain.enums import BackdatePolicy, OversellPolicy, Role

# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DatabaseSettings:
    """Connection settings for one database (local store or remote store)."""

    url: str
    echo: bool = False
    pool_size: int = 5
    max_overflow: int = 10


# ---------------------------------------------------------------------------
# Policies
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SyncPolicy:
    """
    Replay worker tuning.

    Retry delay after the n-th consecutive transient failure is
    min(backoff_base_seconds * 2 ** (n - 1), backoff_max_seconds).
    """

    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 300.0
    poll_interval_seconds: float = 1.0
    auto_start: bool = True


@dataclass(frozen=True)
class InventoryPolicy:
    oversell_policy: OversellPolicy = OversellPolicy.REJECT
    wastage_percentage: Decimal = Decimal("0")


@dataclass(frozen=True)
class SnapshotPolicy:
    """What a write dated inside an already snapshotted month does."""

    backdate_policy: BackdatePolicy = BackdatePolicy.INVALIDATE


# ---------------------------------------------------------------------------
# Root
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LedgerSettings:
    """Complete settings for one device."""

    config_id: str
    version: int
    currency: str
    role: Role
    local_database: DatabaseSettings
    remote_database: DatabaseSettings | None = None
    sync: SyncPolicy = field(default_factory=SyncPolicy)
    inventory: InventoryPolicy = field(default_factory=InventoryPolicy)
    snapshot: SnapshotPolicy = field(default_factory=SnapshotPolicy)
    checksum: str = ""
