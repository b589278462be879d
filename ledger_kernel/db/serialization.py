"""
Module: ledger_kernel.db.serialization
Responsibility: Convert ORM rows to JSON-safe dicts (queue payloads, export)
    and back to typed column values (replay, import).

Invariants enforced:
    - Decimals travel as strings, never JSON floats.
    - UUIDs travel as canonical strings; dates and datetimes as ISO 8601.
    - coerce_values() rejects unknown column names, so a payload can never
      write outside the target table's schema.

Failure modes:
    - ValidationError on unknown columns or unparseable values.
"""

from __future__ import annotations

import datetime as dt
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy import Date, inspect

from ledger_kernel.db.base import Base, DecimalString, UTCDateTime, UUIDString
from ledger_kernel.exceptions import ValidationError


def to_json_value(value: Any) -> Any:
    """One Python column value -> JSON-safe value."""
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, (dt.datetime, dt.date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): to_json_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_json_value(v) for v in value]
    return str(value)


def record_to_dict(record: Base) -> dict[str, Any]:
    """Every mapped column of ``record`` as a JSON-safe dict."""
    return {
        column.key: to_json_value(getattr(record, column.key))
        for column in inspect(type(record)).columns
    }


def _coerce(column_type: Any, key: str, value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, Enum):
        value = value.value
    try:
        if isinstance(column_type, UUIDString):
            return value if isinstance(value, UUID) else UUID(str(value))
        if isinstance(column_type, DecimalString):
            if isinstance(value, float):
                return Decimal(repr(value))
            return Decimal(str(value))
        if isinstance(column_type, UTCDateTime):
            if isinstance(value, dt.datetime):
                return value
            return dt.datetime.fromisoformat(str(value))
        if isinstance(column_type, Date):
            if isinstance(value, dt.datetime):
                return value.date()
            if isinstance(value, dt.date):
                return value
            return dt.date.fromisoformat(str(value))
    except (ValueError, TypeError, InvalidOperation) as exc:
        raise ValidationError(key, f"cannot parse {value!r}: {exc}", value) from exc
    return value


def coerce_values(model: type[Base], data: dict[str, Any]) -> dict[str, Any]:
    """
    JSON-safe dict -> typed column values for ``model``.

    Raises:
        ValidationError: If a key is not a column of ``model`` or a value
            cannot be parsed into the column's type.
    """
    columns = {column.key: column for column in inspect(model).columns}
    values: dict[str, Any] = {}
    for key, value in data.items():
        column = columns.get(key)
        if column is None:
            raise ValidationError(key, f"not a column of {model.__tablename__}", value)
        values[key] = _coerce(column.type, key, value)
    return values


def referenced_ids(model: type[Base], data: dict[str, Any]) -> list[str]:
    """Ids referenced through foreign keys in ``data`` (queue dependency set)."""
    refs: list[str] = []
    for column in inspect(model).columns:
        if column.foreign_keys and data.get(column.key) is not None:
            refs.append(str(data[column.key]))
    return refs
