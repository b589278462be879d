"""
ledger_config -- single public entrypoint for device settings.

Responsibility:
    Provides the ONLY way to obtain settings at runtime through
    ``get_active_config()``.  No other component reads settings files or
    environment variables directly.

Architecture position:
    Configuration -- sits above ``ledger_kernel`` and below
    ``ledger_services``.  The kernel MUST NEVER import from
    ``ledger_config``; the Ledger application object passes the parsed
    policies down as plain values.

Failure modes:
    - ``FileNotFoundError`` -- settings file not found.
    - ``KeyError`` / ``ValueError`` -- schema validation failures.

Audit relevance:
    Every successful call emits a ``LEDGER_CONFIG_TRACE`` log entry with the
    config id, version and checksum, tying a device's behaviour to the exact
    settings it ran with.
"""

from __future__ import annotations

import logging
from pathlib import Path

from ledger_config.loader import load_yaml_file, parse_settings
from ledger_config.schema import (
    DatabaseSettings,
    InventoryPolicy,
    LedgerSettings,
    SnapshotPolicy,
    SyncPolicy,
)

_logger = logging.getLogger("ledger_kernel.config")

# Default settings directory
_DEFAULT_CONFIG_DIR = Path(__file__).parent / "sets"
_DEFAULT_CONFIG_NAME = "default.yaml"


def get_active_config(path: Path | str | None = None) -> LedgerSettings:
    """The ONLY public settings entrypoint.

    Args:
        path: Settings file to load.  Defaults to
            ``ledger_config/sets/default.yaml``.

    Returns:
        Frozen ``LedgerSettings``.

    Raises:
        FileNotFoundError: If the file does not exist.
        KeyError / ValueError: If the file fails schema validation.
    """
    settings_path = Path(path) if path is not None else _DEFAULT_CONFIG_DIR / _DEFAULT_CONFIG_NAME
    settings = parse_settings(load_yaml_file(settings_path))

    _logger.info(
        "LEDGER_CONFIG_TRACE",
        extra={
            "trace_type": "LEDGER_CONFIG_TRACE",
            "config_id": settings.config_id,
            "config_version": settings.version,
            "checksum": settings.checksum,
            "role": settings.role.value,
            "has_remote": settings.remote_database is not None,
        },
    )
    return settings


__all__ = [
    "DatabaseSettings",
    "InventoryPolicy",
    "LedgerSettings",
    "SnapshotPolicy",
    "SyncPolicy",
    "get_active_config",
]
