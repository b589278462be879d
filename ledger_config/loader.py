"""
Settings loader (``ledger_config.loader``).

Responsibility
--------------
Loads the YAML settings file and parses it into ``ledger_config.schema``
dataclasses.  Runtime callers go through ``ledger_config.get_active_config()``.

Invariants enforced
-------------------
* Every parsed object is a frozen dataclass from ``schema.py``.
* Required keys raise ``KeyError``; unknown enum values raise ``ValueError``.
* Decimal settings are parsed from their string form, never through float.
* ``compute_checksum`` is a deterministic SHA-256 over canonical JSON.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
"""

from __future__ import annotations

import hashlib
import json
from decimal import Decimal
from pathlib import Path
from typing import Any

import yaml

from ledger_config.schema import (
    DatabaseSettings,
    InventoryPolicy,
    LedgerSettings,
    SnapshotPolicy,
    SyncPolicy,
)
from ledger_kernel.db.types import validate_currency
from ledger_kernel.domain.enums import BackdatePolicy, OversellPolicy, Role


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def parse_decimal(value: Any) -> Decimal:
    if isinstance(value, float):
        return Decimal(repr(value))
    return Decimal(str(value))


def parse_database(data: dict[str, Any]) -> DatabaseSettings:
    return DatabaseSettings(
        url=data["url"],
        echo=bool(data.get("echo", False)),
        pool_size=int(data.get("pool_size", 5)),
        max_overflow=int(data.get("max_overflow", 10)),
    )


def parse_sync_policy(data: dict[str, Any]) -> SyncPolicy:
    """Parse a SyncPolicy; the backoff ceiling may not be below its base."""
    policy = SyncPolicy(
        backoff_base_seconds=float(data.get("backoff_base_seconds", 1.0)),
        backoff_max_seconds=float(data.get("backoff_max_seconds", 300.0)),
        poll_interval_seconds=float(data.get("poll_interval_seconds", 1.0)),
        auto_start=bool(data.get("auto_start", True)),
    )
    if policy.backoff_base_seconds <= 0:
        raise ValueError("sync.backoff_base_seconds must be positive")
    if policy.backoff_max_seconds < policy.backoff_base_seconds:
        raise ValueError("sync.backoff_max_seconds must be >= backoff_base_seconds")
    return policy


def parse_inventory_policy(data: dict[str, Any]) -> InventoryPolicy:
    wastage = parse_decimal(data.get("wastage_percentage", "0"))
    if wastage < 0:
        raise ValueError("inventory.wastage_percentage must be non-negative")
    return InventoryPolicy(
        oversell_policy=OversellPolicy(data.get("oversell_policy", "reject")),
        wastage_percentage=wastage,
    )


def parse_snapshot_policy(data: dict[str, Any]) -> SnapshotPolicy:
    return SnapshotPolicy(
        backdate_policy=BackdatePolicy(data.get("backdate_policy", "invalidate")),
    )


def parse_settings(data: dict[str, Any]) -> LedgerSettings:
    """
    Parse the whole settings document.

    Raises:
        KeyError: missing ``config_id``, ``version`` or ``local_database``.
        ValueError: invalid currency, role or policy value.
    """
    currency = validate_currency(data.get("currency", "BDT"))
    remote = data.get("remote_database")
    return LedgerSettings(
        config_id=data["config_id"],
        version=int(data["version"]),
        currency=currency,
        role=Role(data.get("role", "admin")),
        local_database=parse_database(data["local_database"]),
        remote_database=parse_database(remote) if remote else None,
        sync=parse_sync_policy(data.get("sync") or {}),
        inventory=parse_inventory_policy(data.get("inventory") or {}),
        snapshot=parse_snapshot_policy(data.get("snapshot") or {}),
        checksum=compute_checksum(data),
    )


def compute_checksum(data: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON serialization of ``data``."""
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()
